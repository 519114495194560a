"""Build the storage provider selected by a ``StorageConfig``."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from ..config import STORAGE_TYPES, StorageConfig
from ..errors import UnsupportedStorageError
from .base import StorageProvider

SQLITE_FILENAME = "devlog.db"


def create_provider(
    config: StorageConfig,
    drivers: Optional[Mapping[str, Any]] = None,
    logger: Optional[logging.Logger] = None,
) -> StorageProvider:
    """Create an uninitialized provider for ``config.type``.

    Args:
        config: Storage configuration
        drivers: Per-type injection points, keyed by storage type:
            ``sqlite`` a ``sqlite3.connect``-like callable,
            ``postgres``/``mysql`` a SQLAlchemy engine factory,
            ``git`` a ``GitRunner``, ``github`` an httpx transport
        logger: Logger handed to the provider

    Raises:
        UnsupportedStorageError: If the type is unknown
        ValueError: If the type's own settings are missing
    """
    drivers = drivers or {}
    kind = config.type
    if kind not in STORAGE_TYPES:
        raise UnsupportedStorageError(f"Unsupported storage type: {kind!r}")
    driver = drivers.get(kind)

    # Backend modules are imported lazily so unused drivers never load
    if kind == "json":
        from .json_storage import JsonStorageProvider

        return JsonStorageProvider(config.json, logger=logger)

    if kind == "sqlite":
        from .sqlite_storage import SQLiteStorageProvider

        file_path = config.file_path or config.json.directory / SQLITE_FILENAME
        return SQLiteStorageProvider(file_path, connect=driver, logger=logger)

    if kind in ("postgres", "mysql"):
        if not config.connection_string:
            raise ValueError(f"{kind} storage requires connection_string")
        from .sql_server import SqlServerStorageProvider

        return SqlServerStorageProvider(
            config.connection_string,
            options=config.options,
            engine_factory=driver,
            logger=logger,
        )

    if kind == "git":
        if config.git is None or not config.git.repository:
            raise ValueError("git storage requires [storage.git] repository")
        from .git_storage import GitStorageProvider

        return GitStorageProvider(config.git, runner=driver, logger=logger)

    if config.github is None:
        raise ValueError("github storage requires [storage.github] owner and repo")
    from .github_storage import GitHubStorageProvider

    return GitHubStorageProvider(config.github, transport=driver, logger=logger)
