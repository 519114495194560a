"""Client-server SQL storage (PostgreSQL, MySQL) on SQLAlchemy Core.

Uses the same ``entries`` layout as the SQLite provider. Upserts and
full-text search use each dialect's native construct:

- PostgreSQL: ``ON CONFLICT DO UPDATE``, GIN index over
  ``to_tsvector('english', title || ' ' || description)``, ``ts_rank``
- MySQL: ``ON DUPLICATE KEY UPDATE``, ``FULLTEXT(title, description)``,
  ``MATCH ... AGAINST``

Other dialects SQLAlchemy can reach (SQLite is handy for tests) use their own
upsert where one exists, otherwise delete+insert, and case-insensitive
``LIKE`` search.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from typing import Any, Callable, Optional

from sqlalchemy import (
    Column,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    cast,
    create_engine,
    delete,
    func,
    insert,
    literal_column,
    or_,
    select,
    text,
)
from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, NoSuchModuleError, OperationalError, SQLAlchemyError

from ..errors import BackendUnavailable, NotFoundError
from ..ids import IdAllocator
from ..models import DevlogEntry, EntryFilter, EntryId, EntryStats
from .base import StorageProvider
from .sqlite_storage import average_completion_days, entry_to_row, row_to_entry

metadata = MetaData()

entries_table = Table(
    "entries",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=False),
    Column("key", String(255), nullable=False, default=""),
    Column("title", String(500), nullable=False),
    Column("type", String(32), nullable=False),
    Column("description", Text, nullable=False, default=""),
    Column("status", String(32), nullable=False, index=True),
    Column("priority", String(32), nullable=False),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False, index=True),
    Column("estimated_hours", Float),
    Column("actual_hours", Float),
    Column("assignee", String(255)),
    Column("tags", Text),
    Column("files", Text),
    Column("related_devlogs", Text),
    Column("context", Text),
    Column("ai_context", Text),
    Column("external_references", Text),
    Column("notes", Text),
)

# Same expression as the GIN index so PostgreSQL can use it
fulltext_document = entries_table.c.title + literal_column("' '") + entries_table.c.description

# Attempts at claiming a fresh ID before giving up
INSERT_ATTEMPTS = 5

# Driver each URL scheme gets when none is named
DEFAULT_DRIVERS = {
    "postgres": "postgresql+psycopg",
    "postgresql": "postgresql+psycopg",
    "mysql": "mysql+pymysql",
}


def normalize_url(connection_string: str) -> str:
    """Pin the default driver for bare ``postgres://``/``mysql://`` URLs."""
    scheme, sep, rest = connection_string.partition("://")
    if sep and scheme in DEFAULT_DRIVERS:
        return f"{DEFAULT_DRIVERS[scheme]}://{rest}"
    return connection_string


def default_engine_factory(url: str, **options: Any) -> Engine:
    return create_engine(url, pool_pre_ping=True, **options)


class SqlServerStorageProvider(StorageProvider):
    """Entries as rows in a PostgreSQL or MySQL database.

    IDs are integers: ``MAX(id) + 1`` taken in the inserting transaction by
    default, or from an injected ``IdAllocator``. New entries are written with
    a plain INSERT, so concurrent writers never overwrite each other.

    Args:
        connection_string: SQLAlchemy URL (``postgres://`` and ``mysql://``
            are accepted and mapped to psycopg / PyMySQL)
        options: Extra keyword arguments for the engine factory
        engine_factory: Callable building the Engine; injectable
    """

    def __init__(
        self,
        connection_string: str,
        options: Optional[dict[str, Any]] = None,
        engine_factory: Optional[Callable[..., Engine]] = None,
        allocator: Optional[IdAllocator] = None,
        logger: Optional[logging.Logger] = None,
    ):
        super().__init__(logger)
        self.url = normalize_url(connection_string)
        self.options = dict(options or {})
        self._engine_factory = engine_factory or default_engine_factory
        self.allocator = allocator
        self.engine: Optional[Engine] = None
        self.backend = self.url.split("://", 1)[0].split("+", 1)[0]

    # ========== Lifecycle ==========

    def initialize(self) -> None:
        """Connect, create the table and the dialect's full-text index.

        Raises:
            BackendUnavailable: If the driver is missing or the server is
                unreachable
        """
        if self._initialized:
            return
        try:
            self.engine = self._engine_factory(self.url, **self.options)
            metadata.create_all(self.engine)
            self._ensure_fulltext_index()
        except (ImportError, NoSuchModuleError) as e:
            raise BackendUnavailable(
                self.backend, f"Database driver not available for {self.backend}: {e}", e
            ) from e
        except SQLAlchemyError as e:
            self._dispose_engine()
            raise BackendUnavailable(self.backend, f"Cannot initialize database: {e}", e) from e
        self._initialized = True

    def _ensure_fulltext_index(self) -> None:
        dialect = self.engine.dialect.name
        with self.engine.begin() as conn:
            if dialect == "postgresql":
                conn.execute(text(
                    "CREATE INDEX IF NOT EXISTS idx_entries_fts ON entries "
                    "USING GIN (to_tsvector('english', title || ' ' || description))"
                ))
            elif dialect == "mysql":
                found = conn.execute(text(
                    "SELECT COUNT(*) FROM information_schema.statistics "
                    "WHERE table_schema = DATABASE() AND table_name = 'entries' "
                    "AND index_name = 'ft_entries_title_description'"
                )).scalar()
                if not found:
                    conn.execute(text(
                        "ALTER TABLE entries ADD FULLTEXT INDEX "
                        "ft_entries_title_description (title, description)"
                    ))

    def _dispose_engine(self) -> None:
        if self.engine is not None:
            self.engine.dispose()
            self.engine = None

    def dispose(self) -> None:
        self._dispose_engine()
        super().dispose()

    @contextmanager
    def _begin(self):
        if self.engine is None:
            self.initialize()
        try:
            with self.engine.begin() as conn:
                yield conn
        except OperationalError as e:
            raise BackendUnavailable(self.backend, f"Database unavailable: {e}", e) from e

    @property
    def dialect(self) -> str:
        if self.engine is None:
            self.initialize()
        return self.engine.dialect.name

    # ========== Provider contract ==========

    def exists(self, entry_id: EntryId) -> bool:
        if not isinstance(entry_id, int):
            return False
        with self._begin() as conn:
            found = conn.execute(
                select(entries_table.c.id).where(entries_table.c.id == entry_id)
            ).first()
        return found is not None

    def get(self, entry_id: EntryId) -> Optional[DevlogEntry]:
        if not isinstance(entry_id, int):
            return None
        with self._begin() as conn:
            row = conn.execute(
                select(entries_table).where(entries_table.c.id == entry_id)
            ).mappings().first()
        return row_to_entry(dict(row)) if row is not None else None

    def _max_id(self) -> int:
        with self._begin() as conn:
            return conn.execute(select(func.max(entries_table.c.id))).scalar() or 0

    def next_id(self) -> int:
        if self.allocator is not None:
            return self.allocator.current_value() + 1
        return self._max_id() + 1

    def _upsert(self, conn, row: dict[str, Any]) -> None:
        dialect = conn.dialect.name
        columns = [c for c in row if c != "id"]
        if dialect == "postgresql":
            stmt = postgresql.insert(entries_table).values(row)
            stmt = stmt.on_conflict_do_update(
                index_elements=[entries_table.c.id],
                set_={c: stmt.excluded[c] for c in columns},
            )
        elif dialect == "mysql":
            stmt = mysql.insert(entries_table).values(row)
            stmt = stmt.on_duplicate_key_update({c: stmt.inserted[c] for c in columns})
        elif dialect == "sqlite":
            stmt = sqlite.insert(entries_table).values(row)
            stmt = stmt.on_conflict_do_update(
                index_elements=[entries_table.c.id],
                set_={c: stmt.excluded[c] for c in columns},
            )
        else:
            conn.execute(delete(entries_table).where(entries_table.c.id == row["id"]))
            stmt = insert(entries_table).values(row)
        conn.execute(stmt)

    def _insert_new(self, entry: DevlogEntry) -> None:
        """Insert an entry that has no ID yet.

        The ID is taken inside the inserting transaction and written with a
        plain INSERT, so a concurrent writer that claimed the same ID makes
        the insert fail instead of being overwritten. Such collisions are
        retried with a fresh ID.

        Raises:
            BackendUnavailable: If every attempt collided
        """
        for attempt in range(1, INSERT_ATTEMPTS + 1):
            try:
                with self._begin() as conn:
                    if self.allocator is not None:
                        entry.id = self.allocator.next()
                    else:
                        entry.id = (conn.execute(select(func.max(entries_table.c.id))).scalar() or 0) + 1
                    conn.execute(insert(entries_table).values(entry_to_row(entry)))
                return
            except IntegrityError as e:
                self.log.warning(
                    f"ID {entry.id} taken by a concurrent writer (attempt {attempt})",
                    extra={"event": "storage.id_collision", "entry_id": entry.id},
                )
                entry.id = None
                if attempt == INSERT_ATTEMPTS:
                    raise BackendUnavailable(
                        self.backend, f"Could not allocate an entry ID after {attempt} attempts", e
                    ) from e

    def save(self, entry: DevlogEntry) -> DevlogEntry:
        """Insert a new entry or upsert one that already has an ID.

        Raises:
            TypeError: If the entry carries a non-integer ID
        """
        if entry.id is not None and not isinstance(entry.id, int):
            raise TypeError(f"{self.backend} storage requires integer IDs, got {entry.id!r}")
        if entry.id is None:
            self._stamp(entry)
            self._insert_new(entry)
        else:
            self._stamp(entry, self.get(entry.id))
            if self.allocator is not None:
                self.allocator.ensure_at_least(entry.id)
            with self._begin() as conn:
                self._upsert(conn, entry_to_row(entry))
        self._log_saved(entry)
        return entry

    def delete(self, entry_id: EntryId) -> None:
        if not isinstance(entry_id, int):
            raise NotFoundError(entry_id)
        with self._begin() as conn:
            result = conn.execute(delete(entries_table).where(entries_table.c.id == entry_id))
        if result.rowcount == 0:
            raise NotFoundError(entry_id)
        self._log_deleted(entry_id)

    def _tag_condition(self, tags: list[str]):
        dialect = self.dialect
        column = entries_table.c.tags
        if dialect == "postgresql":
            return or_(*(
                cast(column, postgresql.JSONB).op("@>")(cast(json.dumps([tag]), postgresql.JSONB))
                for tag in tags
            ))
        if dialect == "mysql":
            return or_(*(func.json_contains(column, json.dumps(tag)) == 1 for tag in tags))
        return or_(*(column.contains(json.dumps(tag), autoescape=True) for tag in tags))

    def list(self, filter: Optional[EntryFilter] = None) -> list[DevlogEntry]:
        stmt = select(entries_table)
        t = entries_table.c

        if filter is not None:
            if filter.status:
                stmt = stmt.where(t.status.in_([s.value for s in filter.status]))
            if filter.type:
                stmt = stmt.where(t.type.in_([v.value for v in filter.type]))
            if filter.priority:
                stmt = stmt.where(t.priority.in_([p.value for p in filter.priority]))
            if filter.assignee:
                stmt = stmt.where(t.assignee == filter.assignee)
            lower, upper = filter.created_bounds()
            if lower:
                stmt = stmt.where(t.created_at >= lower)
            if upper:
                stmt = stmt.where(t.created_at < upper)
            if filter.tags:
                stmt = stmt.where(self._tag_condition(filter.tags))

        stmt = stmt.order_by(t.updated_at.desc())
        with self._begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [row_to_entry(dict(row)) for row in rows]

    def search(self, query: str) -> list[DevlogEntry]:
        """Native full-text search ranked by relevance (LIKE on other dialects)."""
        query = query.strip()
        if not query:
            return []
        t = entries_table.c
        dialect = self.dialect

        if dialect == "postgresql":
            vector = func.to_tsvector(literal_column("'english'::regconfig"), fulltext_document)
            ts_query = func.plainto_tsquery(literal_column("'english'::regconfig"), query)
            stmt = (
                select(entries_table)
                .where(vector.op("@@")(ts_query))
                .order_by(func.ts_rank(vector, ts_query).desc())
            )
        elif dialect == "mysql":
            match = mysql.match(t.title, t.description, against=query)
            stmt = select(entries_table).where(match).order_by(match.desc())
        else:
            needle = query.lower()
            stmt = (
                select(entries_table)
                .where(or_(
                    func.lower(t.title, type_=Text).contains(needle, autoescape=True),
                    func.lower(t.description, type_=Text).contains(needle, autoescape=True),
                ))
                .order_by(t.updated_at.desc())
            )

        with self._begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [row_to_entry(dict(row)) for row in rows]

    def get_stats(self) -> EntryStats:
        stats = EntryStats.empty()
        t = entries_table.c
        with self._begin() as conn:
            stats.total_entries = conn.execute(select(func.count()).select_from(entries_table)).scalar()
            for column, target in (
                (t.status, stats.by_status),
                (t.type, stats.by_type),
                (t.priority, stats.by_priority),
            ):
                for value, count in conn.execute(select(column, func.count()).group_by(column)):
                    target[value] = count
            done = conn.execute(
                select(t.created_at, t.updated_at).where(t.status == "done")
            ).all()
        stats.average_completion_time = average_completion_days(done)
        return stats
