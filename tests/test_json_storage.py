"""Tests for the local JSON file provider."""

import json

import pytest

from conftest import make_entry, rich_entry, write_entry_file
from devlog_store.config import JsonStorageConfig
from devlog_store.errors import MalformedDataError, NotFoundError
from devlog_store.ids import COUNTER_FILENAME
from devlog_store.locking import read_json, write_json
from devlog_store.models import EntryFilter, EntryStatus, EntryType
from devlog_store.storage.json_storage import INDEX_FILENAME, JsonStorageProvider


class TestInitialize:
    def test_creates_directory_and_index(self, json_provider, devlog_dir):
        index = read_json(devlog_dir / INDEX_FILENAME)
        assert index["entries"] == {}
        assert index["lastId"] == 0
        assert index["version"] == "1.0"

    def test_corrupt_index_is_fatal(self, devlog_dir):
        devlog_dir.mkdir()
        (devlog_dir / INDEX_FILENAME).write_text("{oops", encoding="utf-8")
        with pytest.raises(MalformedDataError):
            JsonStorageProvider(JsonStorageConfig(directory=devlog_dir)).initialize()

    def test_allocator_catches_up_with_index(self, devlog_dir):
        devlog_dir.mkdir()
        write_json(devlog_dir / INDEX_FILENAME, {"version": "1.0", "entries": {}, "lastId": 41})
        provider = JsonStorageProvider(JsonStorageConfig(directory=devlog_dir))
        provider.initialize()
        assert provider.save(make_entry()).id == 42


class TestSaveAndGet:
    """Tests for save/get round trips."""

    def test_assigns_sequential_ids(self, json_provider):
        assert json_provider.save(make_entry("one")).id == 1
        assert json_provider.save(make_entry("two")).id == 2
        assert json_provider.next_id() == 3

    def test_round_trip_is_deep_equal(self, json_provider):
        saved = json_provider.save(rich_entry())
        assert json_provider.get(saved.id) == saved

    def test_writes_file_and_index_row(self, json_provider, devlog_dir):
        saved = json_provider.save(make_entry())
        assert (devlog_dir / "1.json").is_file()
        row = read_json(devlog_dir / INDEX_FILENAME)["entries"]["1"]
        assert row["filename"] == "1.json"
        assert row["title"] == "Add login"
        assert row["updatedAt"] == saved.updated_at

    def test_stamps_timestamps(self, json_provider):
        saved = json_provider.save(make_entry())
        assert saved.created_at
        assert saved.updated_at >= saved.created_at

    def test_update_keeps_created_at(self, json_provider):
        saved = json_provider.save(make_entry())
        created = saved.created_at
        saved.created_at = "2000-01-01T00:00:00.000+00:00"
        saved.description = "changed"
        assert json_provider.save(saved).created_at == created

    def test_updated_at_never_moves_backwards(self, json_provider):
        entry = make_entry(updated_at="2999-01-01T00:00:00.000+00:00")
        saved = json_provider.save(entry)
        assert saved.updated_at == "2999-01-01T00:00:00.000+00:00"
        saved.updated_at = "2000-01-01T00:00:00.000+00:00"
        assert json_provider.save(saved).updated_at == "2999-01-01T00:00:00.000+00:00"

    def test_missing_entry_is_none(self, json_provider):
        assert json_provider.get(99) is None
        assert not json_provider.exists(99)

    def test_legacy_string_ids_are_kept(self, json_provider):
        saved = json_provider.save(make_entry(id="legacy-key"))
        assert saved.id == "legacy-key"
        assert json_provider.get("legacy-key").title == "Add login"
        assert json_provider.next_id() == 1

    def test_padded_slug_pattern_and_rename(self, devlog_dir):
        provider = JsonStorageProvider(
            JsonStorageConfig(directory=devlog_dir, file_pattern="entries/{padded_id}-{slug}.json")
        )
        provider.initialize()
        saved = provider.save(make_entry("First title"))
        assert (devlog_dir / "entries" / "001-first-title.json").is_file()

        saved.title = "Second title"
        provider.save(saved)
        assert not (devlog_dir / "entries" / "001-first-title.json").exists()
        assert (devlog_dir / "entries" / "001-second-title.json").is_file()
        assert provider.entry_files() == [devlog_dir / "entries" / "001-second-title.json"]


class TestDelete:
    def test_removes_file_and_row(self, json_provider, devlog_dir):
        saved = json_provider.save(make_entry())
        json_provider.delete(saved.id)
        assert not (devlog_dir / "1.json").exists()
        assert json_provider.get(saved.id) is None

    def test_missing_raises(self, json_provider):
        with pytest.raises(NotFoundError):
            json_provider.delete(5)

    def test_ids_not_reused_after_delete(self, json_provider):
        saved = json_provider.save(make_entry("a"))
        json_provider.delete(saved.id)
        assert json_provider.save(make_entry("b")).id == 2

    def test_explicit_id_advances_allocator(self, json_provider):
        json_provider.save(make_entry("pinned", id=3))
        ids = [json_provider.save(make_entry(f"other {n}")).id for n in range(3)]
        assert ids == [4, 5, 6]
        assert json_provider.get(3).title == "pinned"
        assert len(json_provider.list()) == 4


class TestListAndSearch:
    """Tests for list/search."""

    def test_sorted_newest_first(self, json_provider):
        json_provider.save(make_entry("old", updated_at="2024-01-01T00:00:00.000+00:00"))
        json_provider.save(make_entry("new", updated_at="2999-01-01T00:00:00.000+00:00"))
        assert [e.title for e in json_provider.list()] == ["new", "old"]

    def test_filter(self, json_provider):
        json_provider.save(make_entry("a", status=EntryStatus.DONE))
        json_provider.save(make_entry("b", type=EntryType.BUGFIX, tags=["ui"]))
        assert [e.title for e in json_provider.list(EntryFilter(status=[EntryStatus.DONE]))] == ["a"]
        assert [e.title for e in json_provider.list(EntryFilter(tags=["ui"]))] == ["b"]

    def test_corrupt_file_is_skipped(self, json_provider, devlog_dir, caplog):
        json_provider.save(make_entry("good"))
        json_provider.save(make_entry("bad"))
        (devlog_dir / "2.json").write_text("{broken", encoding="utf-8")

        with caplog.at_level("WARNING"):
            titles = [e.title for e in json_provider.list()]
        assert titles == ["good"]
        assert any(
            getattr(r, "event", None) == "storage.skipped_corrupt_entry" for r in caplog.records
        )

    def test_missing_file_is_skipped(self, json_provider, devlog_dir):
        json_provider.save(make_entry("gone"))
        (devlog_dir / "1.json").unlink()
        assert json_provider.list() == []

    def test_search_is_case_insensitive_substring(self, json_provider):
        json_provider.save(make_entry("Add OAuth login", description="uses tokens"))
        json_provider.save(make_entry("Fix crash"))
        assert [e.title for e in json_provider.search("oauth")] == ["Add OAuth login"]
        assert [e.title for e in json_provider.search("TOKENS")] == ["Add OAuth login"]

    def test_stats(self, json_provider):
        json_provider.save(make_entry("a", status=EntryStatus.DONE))
        json_provider.save(make_entry("b"))
        stats = json_provider.get_stats()
        assert stats.total_entries == 2
        assert stats.by_status["done"] == 1
        assert stats.by_type["feature"] == 2


class TestRebuildIndex:
    def test_picks_up_files_written_elsewhere(self, json_provider, devlog_dir):
        json_provider.save(make_entry("local"))
        other = make_entry("from remote", id=7, created_at="2024-01-01T00:00:00.000+00:00",
                           updated_at="2024-01-01T00:00:00.000+00:00")
        write_entry_file(devlog_dir / "7.json", other.to_dict())

        assert json_provider.rebuild_index() == 2
        index = read_json(devlog_dir / INDEX_FILENAME)
        assert set(index["entries"]) == {"1", "7"}
        assert index["lastId"] == 7
        assert json_provider.get(7).title == "from remote"

    def test_drops_rows_without_files(self, json_provider, devlog_dir):
        json_provider.save(make_entry())
        (devlog_dir / "1.json").unlink()
        json_provider.rebuild_index()
        assert read_json(devlog_dir / INDEX_FILENAME)["entries"] == {}
        assert read_json(devlog_dir / INDEX_FILENAME)["lastId"] == 1

    def test_ignores_counter_and_index(self, json_provider, devlog_dir):
        json_provider.save(make_entry())
        assert (devlog_dir / COUNTER_FILENAME).exists()
        assert json_provider.rebuild_index() == 1

    def test_unchanged_index_is_not_rewritten(self, json_provider, devlog_dir):
        json_provider.save(make_entry())
        json_provider.rebuild_index()
        before = (devlog_dir / INDEX_FILENAME).read_text(encoding="utf-8")
        json_provider.rebuild_index()
        assert (devlog_dir / INDEX_FILENAME).read_text(encoding="utf-8") == before


class TestIndexMatchesFiles:
    def test_rows_and_files_match_after_mixed_operations(self, json_provider, devlog_dir):
        ids = [json_provider.save(make_entry(f"entry {n}")).id for n in range(4)]
        json_provider.delete(ids[1])
        renamed = json_provider.get(ids[2])
        renamed.title = "renamed"
        json_provider.save(renamed)

        index = json.loads((devlog_dir / INDEX_FILENAME).read_text(encoding="utf-8"))
        indexed = {row["filename"] for row in index["entries"].values()}
        on_disk = {p.name for p in json_provider.entry_files()}
        assert indexed == on_disk
