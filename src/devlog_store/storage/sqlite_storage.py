"""Embedded SQL storage on SQLite with an FTS5 full-text index.

Composite fields are stored as JSON text columns; the ``entries_fts``
external-content table mirrors ``title`` and ``description`` and is kept in
sync by triggers.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import Any, Callable, Optional

from ..errors import BackendUnavailable, NotFoundError
from ..ids import IdAllocator
from ..models import DevlogEntry, EntryFilter, EntryId, EntryStats, parse_timestamp
from .base import StorageProvider

# (column, declaration) in table order; used for creation and migration
COLUMNS = [
    ("id", "INTEGER PRIMARY KEY"),
    ("key", "TEXT NOT NULL DEFAULT ''"),
    ("title", "TEXT NOT NULL"),
    ("type", "TEXT NOT NULL"),
    ("description", "TEXT NOT NULL DEFAULT ''"),
    ("status", "TEXT NOT NULL"),
    ("priority", "TEXT NOT NULL"),
    ("created_at", "TEXT NOT NULL"),
    ("updated_at", "TEXT NOT NULL"),
    ("estimated_hours", "REAL"),
    ("actual_hours", "REAL"),
    ("assignee", "TEXT"),
    ("tags", "TEXT"),
    ("files", "TEXT"),
    ("related_devlogs", "TEXT"),
    ("context", "TEXT"),
    ("ai_context", "TEXT"),
    ("external_references", "TEXT"),
    ("notes", "TEXT"),
]

# column -> (camelCase key, empty value)
JSON_COLUMNS = {
    "tags": ("tags", []),
    "files": ("files", []),
    "related_devlogs": ("relatedDevlogs", []),
    "context": ("context", {}),
    "ai_context": ("aiContext", {}),
    "external_references": ("externalReferences", []),
    "notes": ("notes", []),
}


def entry_to_row(entry: DevlogEntry) -> dict[str, Any]:
    """Flatten an entry into column values, JSON-encoding composite fields."""
    data = entry.to_dict()
    row = {
        "id": entry.id,
        "key": entry.key,
        "title": entry.title,
        "type": entry.type.value,
        "description": entry.description,
        "status": entry.status.value,
        "priority": entry.priority.value,
        "created_at": entry.created_at,
        "updated_at": entry.updated_at,
        "estimated_hours": entry.estimated_hours,
        "actual_hours": entry.actual_hours,
        "assignee": entry.assignee,
    }
    for column, (name, _) in JSON_COLUMNS.items():
        row[column] = json.dumps(data[name], ensure_ascii=False)
    return row


def row_to_entry(row: dict[str, Any]) -> DevlogEntry:
    """Rebuild an entry from a row; absent or bad JSON columns become empty."""
    data: dict[str, Any] = {
        "id": row.get("id"),
        "key": row.get("key") or "",
        "title": row.get("title") or "",
        "type": row.get("type"),
        "description": row.get("description") or "",
        "status": row.get("status"),
        "priority": row.get("priority"),
        "createdAt": row.get("created_at") or "",
        "updatedAt": row.get("updated_at") or "",
        "estimatedHours": row.get("estimated_hours"),
        "actualHours": row.get("actual_hours"),
        "assignee": row.get("assignee"),
    }
    for column, (name, empty) in JSON_COLUMNS.items():
        raw = row.get(column)
        value = empty
        if raw:
            try:
                value = json.loads(raw)
            except (json.JSONDecodeError, TypeError):
                value = empty
        data[name] = value if isinstance(value, type(empty)) else empty
    return DevlogEntry.from_dict(data)


def average_completion_days(pairs) -> Optional[float]:
    """Mean days between (created_at, updated_at) pairs, skipping bad stamps."""
    days = []
    for created, updated in pairs:
        try:
            delta = parse_timestamp(updated) - parse_timestamp(created)
        except (ValueError, AttributeError, TypeError):
            continue
        days.append(delta.total_seconds() / 86400)
    return sum(days) / len(days) if days else None


def escape_fts_query(query: str) -> str:
    """Turn free text into an FTS5 query of quoted prefix terms.

    Every whitespace-separated word must match; FTS5 operators in the input
    are treated as plain words.
    """
    terms = []
    for word in query.split():
        quoted = word.replace('"', '""')
        terms.append(f'"{quoted}"*')
    return " ".join(terms)


class SQLiteStorageProvider(StorageProvider):
    """Entries as rows of one SQLite table.

    IDs are integers. With a file database they come from an ``IdAllocator``
    next to the database file; ``:memory:`` databases use ``MAX(id) + 1``.
    String IDs are never stored: reads treat them as absent and ``save``
    rejects them.

    Args:
        file_path: Database file, or ``":memory:"``
        connect: Driver entry point, injectable; defaults to ``sqlite3.connect``
    """

    backend = "sqlite"
    SCHEMA_VERSION = 2

    def __init__(
        self,
        file_path: Path | str = ".devlog/devlog.db",
        connect: Optional[Callable[..., sqlite3.Connection]] = None,
        allocator: Optional[IdAllocator] = None,
        logger: Optional[logging.Logger] = None,
    ):
        super().__init__(logger)
        self.in_memory = str(file_path) == ":memory:"
        self.db_path = None if self.in_memory else Path(file_path)
        self._connect = connect or sqlite3.connect
        self.allocator = allocator
        if self.allocator is None and self.db_path is not None:
            self.allocator = IdAllocator(self.db_path.parent, logger=self.log)
        self._connection: Optional[sqlite3.Connection] = None

    # ========== Connection & schema ==========

    def initialize(self) -> None:
        """Open the database and create or migrate the schema.

        Raises:
            BackendUnavailable: If the driver cannot open the database or
                lacks FTS5/JSON1 support
        """
        if self._initialized:
            return
        try:
            if self.db_path is not None:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = self._connect(":memory:" if self.in_memory else str(self.db_path))
            conn.row_factory = sqlite3.Row
            if not self.in_memory:
                conn.execute("PRAGMA journal_mode = WAL")
            self._connection = conn
            self._ensure_schema(conn)
        except sqlite3.Error as e:
            self._close()
            raise BackendUnavailable(self.backend, f"Cannot initialize database: {e}", e) from e

        if self.allocator is not None:
            self.allocator.ensure_at_least(self._max_id())
        self._initialized = True

    def _get_connection(self) -> sqlite3.Connection:
        if self._connection is None:
            self.initialize()
        return self._connection

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        cursor = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
        )
        if cursor.fetchone() is None:
            self._init_schema(conn)
            return
        row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
        version = row[0] if row and row[0] is not None else 0
        if version < self.SCHEMA_VERSION:
            self._migrate_schema(conn, version)

    def _init_schema(self, conn: sqlite3.Connection) -> None:
        columns = ",\n                ".join(f"{name} {decl}" for name, decl in COLUMNS)
        conn.executescript(f"""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY
            );

            CREATE TABLE IF NOT EXISTS entries (
                {columns}
            );

            CREATE INDEX IF NOT EXISTS idx_status ON entries(status);
            CREATE INDEX IF NOT EXISTS idx_type ON entries(type);
            CREATE INDEX IF NOT EXISTS idx_priority ON entries(priority);
            CREATE INDEX IF NOT EXISTS idx_updated_at ON entries(updated_at);

            CREATE VIRTUAL TABLE IF NOT EXISTS entries_fts USING fts5(
                title,
                description,
                content='entries',
                content_rowid='id'
            );

            CREATE TRIGGER IF NOT EXISTS entries_ai AFTER INSERT ON entries BEGIN
                INSERT INTO entries_fts(rowid, title, description)
                VALUES (new.id, new.title, new.description);
            END;

            CREATE TRIGGER IF NOT EXISTS entries_ad AFTER DELETE ON entries BEGIN
                INSERT INTO entries_fts(entries_fts, rowid, title, description)
                VALUES ('delete', old.id, old.title, old.description);
            END;

            CREATE TRIGGER IF NOT EXISTS entries_au AFTER UPDATE ON entries BEGIN
                INSERT INTO entries_fts(entries_fts, rowid, title, description)
                VALUES ('delete', old.id, old.title, old.description);
                INSERT INTO entries_fts(rowid, title, description)
                VALUES (new.id, new.title, new.description);
            END;
        """)
        conn.execute("DELETE FROM schema_version")
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (self.SCHEMA_VERSION,))
        conn.commit()

    def _migrate_schema(self, conn: sqlite3.Connection, from_version: int) -> None:
        """Add columns introduced since ``from_version``; existing rows get defaults."""
        existing = {row["name"] for row in conn.execute("PRAGMA table_info(entries)")}
        for name, decl in COLUMNS:
            if existing and name not in existing:
                decl = decl.replace(" NOT NULL", "")
                conn.execute(f"ALTER TABLE entries ADD COLUMN {name} {decl}")
                self.log.info(
                    f"Added column {name} to entries",
                    extra={"event": "sqlite.migrated_column", "column": name},
                )
        # Creates anything still missing (FTS table, triggers, indexes)
        self._init_schema(conn)

    def _close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    def dispose(self) -> None:
        self._close()
        super().dispose()

    def _max_id(self) -> int:
        row = self._get_connection().execute("SELECT MAX(id) FROM entries").fetchone()
        return row[0] or 0

    # ========== Provider contract ==========

    def exists(self, entry_id: EntryId) -> bool:
        if not isinstance(entry_id, int):
            return False
        cursor = self._get_connection().execute("SELECT 1 FROM entries WHERE id = ?", (entry_id,))
        return cursor.fetchone() is not None

    def get(self, entry_id: EntryId) -> Optional[DevlogEntry]:
        if not isinstance(entry_id, int):
            return None
        cursor = self._get_connection().execute("SELECT * FROM entries WHERE id = ?", (entry_id,))
        row = cursor.fetchone()
        return row_to_entry(dict(row)) if row is not None else None

    def next_id(self) -> int:
        if self.allocator is not None:
            return self.allocator.current_value() + 1
        return self._max_id() + 1

    def save(self, entry: DevlogEntry) -> DevlogEntry:
        """Upsert keyed by ``id``.

        Raises:
            TypeError: If the entry carries a non-integer ID
        """
        if entry.id is not None and not isinstance(entry.id, int):
            raise TypeError(f"SQLite storage requires integer IDs, got {entry.id!r}")
        conn = self._get_connection()
        previous = self.get(entry.id) if entry.id is not None else None
        if entry.id is None:
            entry.id = self.allocator.next() if self.allocator is not None else self._max_id() + 1
        elif self.allocator is not None:
            self.allocator.ensure_at_least(entry.id)
        self._stamp(entry, previous)

        row = entry_to_row(entry)
        names = list(row)
        placeholders = ", ".join(f":{n}" for n in names)
        updates = ", ".join(f"{n} = excluded.{n}" for n in names if n != "id")
        with conn:
            conn.execute(
                f"INSERT INTO entries ({', '.join(names)}) VALUES ({placeholders}) "
                f"ON CONFLICT(id) DO UPDATE SET {updates}",
                row,
            )
        self._log_saved(entry)
        return entry

    def delete(self, entry_id: EntryId) -> None:
        conn = self._get_connection()
        if not isinstance(entry_id, int):
            raise NotFoundError(entry_id)
        with conn:
            cursor = conn.execute("DELETE FROM entries WHERE id = ?", (entry_id,))
        if cursor.rowcount == 0:
            raise NotFoundError(entry_id)
        self._log_deleted(entry_id)

    def list(self, filter: Optional[EntryFilter] = None) -> list[DevlogEntry]:
        conditions = []
        params: list[Any] = []

        if filter is not None:
            for column, values in (
                ("status", filter.status),
                ("type", filter.type),
                ("priority", filter.priority),
            ):
                if values:
                    conditions.append(f"{column} IN ({', '.join('?' for _ in values)})")
                    params.extend(v.value for v in values)
            if filter.assignee:
                conditions.append("assignee = ?")
                params.append(filter.assignee)
            lower, upper = filter.created_bounds()
            if lower:
                conditions.append("created_at >= ?")
                params.append(lower)
            if upper:
                conditions.append("created_at < ?")
                params.append(upper)
            if filter.tags:
                conditions.append(
                    "EXISTS (SELECT 1 FROM json_each(entries.tags) WHERE json_each.value IN "
                    f"({', '.join('?' for _ in filter.tags)}))"
                )
                params.extend(filter.tags)

        where_clause = ""
        if conditions:
            where_clause = "WHERE " + " AND ".join(conditions)

        cursor = self._get_connection().execute(
            f"SELECT * FROM entries {where_clause} ORDER BY updated_at DESC", params
        )
        return [row_to_entry(dict(row)) for row in cursor.fetchall()]

    def search(self, query: str) -> list[DevlogEntry]:
        """Full-text search over title and description, best match first.

        Each word matches as a prefix; all words must be present.
        """
        fts_query = escape_fts_query(query)
        if not fts_query:
            return []
        cursor = self._get_connection().execute(
            """
            SELECT entries.* FROM entries_fts
            JOIN entries ON entries.id = entries_fts.rowid
            WHERE entries_fts MATCH ?
            ORDER BY entries_fts.rank
            """,
            (fts_query,),
        )
        return [row_to_entry(dict(row)) for row in cursor.fetchall()]

    def get_stats(self) -> EntryStats:
        conn = self._get_connection()
        stats = EntryStats.empty()

        stats.total_entries = conn.execute("SELECT COUNT(*) FROM entries").fetchone()[0]
        for column, target in (
            ("status", stats.by_status),
            ("type", stats.by_type),
            ("priority", stats.by_priority),
        ):
            cursor = conn.execute(f"SELECT {column}, COUNT(*) FROM entries GROUP BY {column}")
            for value, count in cursor.fetchall():
                target[value] = count

        cursor = conn.execute("SELECT created_at, updated_at FROM entries WHERE status = 'done'")
        stats.average_completion_time = average_completion_days(cursor.fetchall())
        return stats
