"""The contract every storage provider implements."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Iterable, Optional

from ..models import (
    DevlogEntry,
    EntryFilter,
    EntryId,
    EntryStats,
    later_timestamp,
    now_iso,
    sort_by_updated,
)


class StorageProvider(ABC):
    """Uniform CRUD + search + stats interface over one backend.

    ``save`` is an upsert. ``get`` returns None for a missing entry while
    ``delete`` raises ``NotFoundError``. Unless documented otherwise,
    ``list`` and ``search`` return entries newest ``updatedAt`` first.
    """

    #: Short backend name used in errors and log records
    backend = "storage"
    is_remote = False

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.log = logger or logging.getLogger(type(self).__module__)
        self._initialized = False

    @abstractmethod
    def initialize(self) -> None:
        """Acquire dependencies and prepare the backend for use."""

    @abstractmethod
    def exists(self, entry_id: EntryId) -> bool:
        ...

    @abstractmethod
    def get(self, entry_id: EntryId) -> Optional[DevlogEntry]:
        ...

    @abstractmethod
    def save(self, entry: DevlogEntry) -> DevlogEntry:
        """Insert or replace ``entry``, assigning an ID if it has none."""

    @abstractmethod
    def delete(self, entry_id: EntryId) -> None:
        ...

    @abstractmethod
    def list(self, filter: Optional[EntryFilter] = None) -> list[DevlogEntry]:
        ...

    @abstractmethod
    def search(self, query: str) -> list[DevlogEntry]:
        ...

    @abstractmethod
    def next_id(self) -> Optional[EntryId]:
        """ID the next new entry would receive, or None if the backend assigns it."""

    def get_stats(self) -> EntryStats:
        return EntryStats.from_entries(self.list())

    def dispose(self) -> None:
        self._initialized = False

    def __enter__(self):
        self.initialize()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.dispose()
        return False

    # ========== Helpers for subclasses ==========

    def _stamp(self, entry: DevlogEntry, previous: Optional[DevlogEntry] = None) -> None:
        """Fill in timestamps; ``updatedAt`` never moves backwards.

        ``createdAt`` of an existing entry is kept; only a brand new entry
        without one is stamped with the current time.
        """
        now = now_iso()
        if previous is not None and previous.created_at:
            entry.created_at = previous.created_at
        elif not entry.created_at:
            entry.created_at = now
        floor = previous.updated_at if previous is not None else ""
        entry.updated_at = later_timestamp(later_timestamp(now, entry.updated_at), floor)

    def _log_saved(self, entry: DevlogEntry) -> None:
        self.log.debug(
            f"Saved devlog entry {entry.id}: {entry.title}",
            extra={"event": "entry.saved", "entry_id": entry.id, "backend": self.backend},
        )

    def _log_deleted(self, entry_id: EntryId) -> None:
        self.log.debug(
            f"Deleted devlog entry {entry_id}",
            extra={"event": "entry.deleted", "entry_id": entry_id, "backend": self.backend},
        )

    def _log_skipped(self, where: str, error: Exception) -> None:
        self.log.warning(
            f"Skipping unreadable entry {where}: {error}",
            extra={"event": "storage.skipped_corrupt_entry", "backend": self.backend},
        )


def filter_entries(entries: Iterable[DevlogEntry], filter: Optional[EntryFilter]) -> list[DevlogEntry]:
    """Apply ``filter`` in memory and sort newest first."""
    if filter is not None:
        entries = (e for e in entries if filter.matches(e))
    return sort_by_updated(entries)


def search_entries(entries: Iterable[DevlogEntry], query: str) -> list[DevlogEntry]:
    """Case-insensitive substring search, newest first."""
    return sort_by_updated(e for e in entries if e.matches_text(query))


__all__ = [
    "StorageProvider",
    "filter_entries",
    "search_entries",
]
