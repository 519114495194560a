"""Local file/JSON storage: one file per entry plus a summary index.

Layout::

    <directory>/
        index.json          {version, entries: {id: summary}, lastId, lastModified}
        .devlog-counter     ID allocator state
        1.json              one file per entry (name from ``file_pattern``)

The index is the fast path for listing. After every save/delete each index
row has a file on disk and each entry file has an index row.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterator, Optional

from ..config import JsonStorageConfig
from ..errors import MalformedDataError, NotFoundError
from ..ids import IdAllocator
from ..locking import file_lock, locked_json_update, read_json, write_json
from ..models import (
    DevlogEntry,
    EntryFilter,
    EntryId,
    IndexRecord,
    generate_key,
    now_iso,
    sort_by_updated,
)
from .base import StorageProvider, search_entries

INDEX_FILENAME = "index.json"
INDEX_VERSION = "1.0"


def empty_index() -> dict[str, Any]:
    return {"version": INDEX_VERSION, "entries": {}, "lastId": 0, "lastModified": now_iso()}


class JsonStorageProvider(StorageProvider):
    """Entries as individual JSON files under one directory.

    IDs are integers from the shared ``IdAllocator`` by default. With
    ``ids_from_index`` the index ``lastId`` high-water mark is used instead,
    allocated under the index lock; the git provider uses this so IDs follow
    the shared repository rather than a machine-local counter.

    Entries written by older versions may carry string IDs; they are read
    and updated as-is, never converted.
    """

    backend = "json"

    def __init__(
        self,
        config: Optional[JsonStorageConfig] = None,
        allocator: Optional[IdAllocator] = None,
        ids_from_index: bool = False,
        logger: Optional[logging.Logger] = None,
    ):
        super().__init__(logger)
        self.config = config or JsonStorageConfig()
        self.directory = Path(self.config.directory)
        self.index_path = self.directory / INDEX_FILENAME
        self.ids_from_index = ids_from_index
        self.allocator = None
        if not ids_from_index:
            self.allocator = allocator or IdAllocator(self.directory, logger=self.log)

    # ========== Lifecycle ==========

    def initialize(self) -> None:
        """Create the directory and index; align the allocator with the index.

        Raises:
            MalformedDataError: If an existing index is not valid JSON
        """
        self.directory.mkdir(parents=True, exist_ok=True)
        index = read_json(self.index_path)
        if index is None:
            index = empty_index()
            write_json(self.index_path, index)
        elif not isinstance(index, dict) or not isinstance(index.get("entries"), dict):
            raise MalformedDataError(f"Index {self.index_path} has no entries table")
        if self.allocator is not None:
            self.allocator.ensure_at_least(int(index.get("lastId") or 0))
        self._initialized = True

    # ========== Paths & index ==========

    def filename_for(self, entry: DevlogEntry) -> str:
        """Relative filename for ``entry`` from the configured pattern."""
        slug = generate_key(entry.title) or "entry"
        padded = (
            str(entry.id).zfill(self.config.min_padding)
            if isinstance(entry.id, int)
            else str(entry.id)
        )
        return self.config.file_pattern.format(id=entry.id, padded_id=padded, slug=slug)

    def _read_index(self) -> dict[str, Any]:
        index = read_json(self.index_path, default=None)
        if index is None:
            return empty_index()
        return index

    def _records(self) -> Iterator[tuple[str, IndexRecord]]:
        for key, row in self._read_index().get("entries", {}).items():
            try:
                yield key, IndexRecord.from_dict(row)
            except (KeyError, TypeError, AttributeError) as e:
                self._log_skipped(f"index row {key}", e)

    def _load(self, filename: str) -> Optional[DevlogEntry]:
        data = read_json(self.directory / filename)
        if data is None:
            return None
        try:
            return DevlogEntry.from_dict(data)
        except (ValueError, TypeError, AttributeError) as e:
            raise MalformedDataError(f"Invalid entry file {filename}: {e}") from e

    @staticmethod
    def _high_water(index: dict[str, Any], entry_id: EntryId) -> None:
        if isinstance(entry_id, int):
            index["lastId"] = max(int(index.get("lastId") or 0), entry_id)

    # ========== Provider contract ==========

    def exists(self, entry_id: EntryId) -> bool:
        return str(entry_id) in self._read_index().get("entries", {})

    def get(self, entry_id: EntryId) -> Optional[DevlogEntry]:
        """Load one entry.

        Raises:
            MalformedDataError: If the entry file exists but cannot be parsed
        """
        row = self._read_index().get("entries", {}).get(str(entry_id))
        if row is None:
            return None
        return self._load(row["filename"])

    def next_id(self) -> int:
        if self.allocator is not None:
            return self.allocator.current_value() + 1
        return int(self._read_index().get("lastId") or 0) + 1

    def _previous(self, entry_id: Optional[EntryId]) -> Optional[DevlogEntry]:
        if entry_id is None:
            return None
        try:
            return self.get(entry_id)
        except MalformedDataError as e:
            self._log_skipped(f"previous version of {entry_id}", e)
            return None

    def save(self, entry: DevlogEntry) -> DevlogEntry:
        self.directory.mkdir(parents=True, exist_ok=True)
        previous = self._previous(entry.id)
        if entry.id is None and self.allocator is not None:
            entry.id = self.allocator.next()
        elif isinstance(entry.id, int) and self.allocator is not None:
            self.allocator.ensure_at_least(entry.id)

        with locked_json_update(self.index_path, default=empty_index()) as index:
            entries = index.setdefault("entries", {})
            if entry.id is None:
                entry.id = int(index.get("lastId") or 0) + 1
            self._stamp(entry, previous)
            filename = self.filename_for(entry)

            write_json(self.directory / filename, entry.to_dict())

            old = entries.get(str(entry.id))
            if old is not None and old.get("filename") not in (None, filename):
                (self.directory / old["filename"]).unlink(missing_ok=True)

            entries[str(entry.id)] = IndexRecord.from_entry(entry, filename).to_dict()
            self._high_water(index, entry.id)
            index["lastModified"] = now_iso()

        self._log_saved(entry)
        return entry

    def delete(self, entry_id: EntryId) -> None:
        """Remove the index row, then the file (a missing file is fine).

        Raises:
            NotFoundError: If the ID has no index row
        """
        with locked_json_update(self.index_path, default=empty_index()) as index:
            row = index.get("entries", {}).pop(str(entry_id), None)
            if row is None:
                raise NotFoundError(entry_id)
            index["lastModified"] = now_iso()

        (self.directory / row["filename"]).unlink(missing_ok=True)
        self._log_deleted(entry_id)

    def list(self, filter: Optional[EntryFilter] = None) -> list[DevlogEntry]:
        """List entries, pre-filtering on index summaries before loading bodies."""
        result = []
        for key, record in self._records():
            if filter is not None and not filter.matches_summary(
                record.status, record.type, record.priority, record.created_at
            ):
                continue
            try:
                entry = self._load(record.filename)
            except MalformedDataError as e:
                self._log_skipped(record.filename, e)
                continue
            if entry is None:
                self._log_skipped(record.filename, FileNotFoundError(record.filename))
                continue
            if filter is None or filter.matches(entry):
                result.append(entry)
        return sort_by_updated(result)

    def search(self, query: str) -> list[DevlogEntry]:
        return search_entries(self.list(), query)

    # ========== Maintenance ==========

    def entry_files(self) -> list[Path]:
        """All entry files on disk (anything JSON except the index)."""
        root = self.directory / Path(self.config.file_pattern).parent
        return sorted(
            p for p in root.glob("*.json")
            if p != self.index_path and not p.name.startswith(".")
        )

    def rebuild_index(self) -> int:
        """Regenerate the index from the entry files on disk.

        Unreadable files are skipped. ``lastId`` never moves backwards and
        the index is only rewritten when something changed.

        Returns:
            Number of entries indexed
        """
        rows = {}
        loaded = []
        for path in self.entry_files():
            try:
                entry = DevlogEntry.from_dict(read_json(path))
            except (MalformedDataError, ValueError, TypeError, AttributeError) as e:
                self._log_skipped(str(path), e)
                continue
            if entry.id is None:
                self._log_skipped(str(path), ValueError("entry has no id"))
                continue
            filename = path.relative_to(self.directory).as_posix()
            rows[str(entry.id)] = IndexRecord.from_entry(entry, filename).to_dict()
            loaded.append(entry)

        with file_lock(self.index_path):
            index = self._read_index()
            before = (index.get("entries"), index.get("lastId"))
            index["entries"] = rows
            for entry in loaded:
                self._high_water(index, entry.id)
            if (index["entries"], index.get("lastId")) != before:
                index["lastModified"] = now_iso()
                write_json(self.index_path, index)

        self.log.info(
            f"Rebuilt index with {len(rows)} entries",
            extra={"event": "storage.index_rebuilt", "backend": self.backend},
        )
        return len(rows)
