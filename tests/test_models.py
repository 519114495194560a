"""Tests for the entry model, timestamps and filters."""

from hypothesis import given, strategies as st

from conftest import make_entry, rich_entry
from devlog_store.models import (
    AIContext,
    DevlogEntry,
    EntryFilter,
    EntryPriority,
    EntryStats,
    EntryStatus,
    EntryType,
    ExternalReference,
    ExternalSystem,
    generate_key,
    later_timestamp,
    normalize_title,
    parse_timestamp,
    sort_by_updated,
)


class TestEnums:
    """Tests for status/priority enums."""

    def test_review_alias_maps_to_in_review(self):
        assert EntryStatus("review") is EntryStatus.IN_REVIEW

    def test_terminal_statuses(self):
        assert EntryStatus.DONE.is_terminal
        assert EntryStatus.CLOSED.is_terminal
        assert EntryStatus.ARCHIVED.is_terminal
        assert not EntryStatus.IN_PROGRESS.is_terminal

    def test_priority_weight_ordering(self):
        weights = [p.weight for p in (
            EntryPriority.LOW, EntryPriority.MEDIUM, EntryPriority.HIGH, EntryPriority.CRITICAL
        )]
        assert weights == sorted(weights)


class TestKeys:
    def test_generate_key_slugifies(self):
        assert generate_key("Add Login  Page!") == "add-login-page"

    def test_generate_key_truncates(self):
        assert len(generate_key("x" * 80)) == 50

    def test_normalize_title(self):
        assert normalize_title("  Add   LOGIN ") == "add login"

    def test_entry_defaults_key_from_title(self):
        assert make_entry("Fix the bug").key == "fix-the-bug"


class TestTimestamps:
    def test_parse_accepts_z_suffix(self):
        assert parse_timestamp("2024-01-01T00:00:00Z").utcoffset().total_seconds() == 0

    def test_later_timestamp_prefers_first_on_tie(self):
        a = "2024-01-01T00:00:00.000+00:00"
        b = "2024-01-01T00:00:00Z"
        assert later_timestamp(a, b) == a

    def test_later_timestamp_compares_instants(self):
        assert later_timestamp("2024-01-01T02:00:00+02:00", "2024-01-01T00:30:00Z") == (
            "2024-01-01T00:30:00Z"
        )


class TestEntrySerialization:
    """Tests for to_dict/from_dict."""

    def test_uses_camel_case_keys(self):
        data = rich_entry().to_dict()
        assert "createdAt" in data
        assert "aiContext" in data
        assert data["aiContext"]["contextVersion"] == 1
        assert data["context"]["acceptanceCriteria"] == ["Login works", "Logout works"]

    def test_round_trip_rich_entry(self):
        entry = rich_entry()
        entry.id = 7
        entry.set_external_reference(ExternalReference(ExternalSystem.JIRA, "PROJ-1", url="https://jira"))
        assert DevlogEntry.from_dict(entry.to_dict()) == entry

    def test_from_dict_defaults_missing_fields(self):
        entry = DevlogEntry.from_dict({"title": "Bare"})
        assert entry.type is EntryType.TASK
        assert entry.status is EntryStatus.NEW
        assert entry.priority is EntryPriority.MEDIUM
        assert entry.ai_context == AIContext()
        assert entry.notes == []

    def test_from_dict_unknown_enum_values_default(self):
        entry = DevlogEntry.from_dict({"title": "x", "type": "epic", "status": "review"})
        assert entry.type is EntryType.TASK
        assert entry.status is EntryStatus.IN_REVIEW

    def test_string_ids_are_kept(self):
        assert DevlogEntry.from_dict({"title": "x", "id": "legacy-slug"}).id == "legacy-slug"

    @given(
        title=st.text(min_size=1, max_size=40),
        tags=st.lists(st.text(max_size=10), max_size=4),
        hours=st.one_of(st.none(), st.floats(min_value=0, max_value=1000, allow_nan=False)),
    )
    def test_round_trip_property(self, title, tags, hours):
        """from_dict(to_dict(e)) == e for arbitrary titles, tags and hours."""
        entry = DevlogEntry(title=title, id=1, tags=tags, estimated_hours=hours)
        assert DevlogEntry.from_dict(entry.to_dict()) == entry


class TestExternalReferences:
    def test_one_reference_per_system(self):
        entry = make_entry()
        entry.set_external_reference(ExternalReference(ExternalSystem.GITHUB, "1"))
        entry.set_external_reference(ExternalReference(ExternalSystem.GITHUB, "2"))
        entry.set_external_reference(ExternalReference(ExternalSystem.JIRA, "J-1"))
        assert [(r.system, r.id) for r in entry.external_references] == [
            (ExternalSystem.GITHUB, "2"),
            (ExternalSystem.JIRA, "J-1"),
        ]


class TestEntryFilter:
    """Tests for filter predicates."""

    def test_status_any_of(self):
        f = EntryFilter(status=[EntryStatus.NEW, EntryStatus.DONE])
        assert f.matches(make_entry(status=EntryStatus.DONE))
        assert not f.matches(make_entry(status=EntryStatus.BLOCKED))

    def test_tags_any_of(self):
        f = EntryFilter(tags=["auth", "ui"])
        assert f.matches(make_entry(tags=["ui"]))
        assert not f.matches(make_entry(tags=["db"]))

    def test_date_only_upper_bound_includes_whole_day(self):
        f = EntryFilter(to_date="2024-03-01")
        assert f.matches(make_entry(created_at="2024-03-01T23:59:59.000+00:00"))
        assert not f.matches(make_entry(created_at="2024-03-02T00:00:00.000+00:00"))

    def test_created_bounds_are_normalized(self):
        lower, upper = EntryFilter(from_date="2024-03-01", to_date="2024-03-01").created_bounds()
        assert lower == "2024-03-01T00:00:00.000+00:00"
        assert upper == "2024-03-02T00:00:00.000+00:00"

    def test_assignee_exact(self):
        f = EntryFilter(assignee="alice")
        assert f.matches(make_entry(assignee="alice"))
        assert not f.matches(make_entry(assignee="alicia"))


class TestStats:
    def test_counts_and_completion_time(self):
        entries = [
            make_entry("a", status=EntryStatus.DONE,
                       created_at="2024-01-01T00:00:00.000+00:00",
                       updated_at="2024-01-03T00:00:00.000+00:00"),
            make_entry("b", type=EntryType.BUGFIX),
        ]
        stats = EntryStats.from_entries(entries)
        assert stats.total_entries == 2
        assert stats.by_status["done"] == 1
        assert stats.by_status["new"] == 1
        assert stats.by_type["bugfix"] == 1
        assert stats.average_completion_time == 2.0
        assert stats.to_dict()["totalEntries"] == 2

    def test_sort_by_updated_newest_first(self):
        old = make_entry("old", updated_at="2024-01-01T00:00:00.000+00:00")
        new = make_entry("new", updated_at="2024-02-01T00:00:00.000+00:00")
        assert [e.title for e in sort_by_updated([old, new])] == ["new", "old"]
