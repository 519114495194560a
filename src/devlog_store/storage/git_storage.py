"""Git-backed storage: JSON entry files in a dedicated repository.

The provider keeps a working copy (``~/.devlog/repos/<name>`` by default)
and writes entries there in the ``RepositoryStructure`` layout. With
``auto_sync`` every save/delete is committed and pushed immediately, so a
burst of saves produces a burst of commits.

IDs are integers from the repository index ``lastId`` high-water mark.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional, Union

from ..config import GitStorageConfig
from ..errors import GitCommandError, MalformedDataError
from ..git.conflicts import ConflictResolver, ConflictStrategy, Prompt
from ..git.operations import GitOperations, GitRunner
from ..git.repository import RepositoryStructure, ValidationReport
from ..locking import write_json
from ..models import DevlogEntry, EntryFilter, EntryId, EntryStats, GitSyncStatus
from .base import StorageProvider
from .json_storage import JsonStorageProvider, empty_index

UNINITIALIZED = "uninitialized"
READY = "ready"


@dataclass
class SyncResult:
    """What a ``sync()`` call did."""
    resolved_files: list[Path] = field(default_factory=list)
    committed: bool = False


class GitStorageProvider(StorageProvider):
    """Entries stored as files in a git working copy, synced with a remote.

    Args:
        config: Repository, branch, credentials and sync settings
        runner: Git command runner, injectable for tests
        prompt: Callable used by the ``interactive`` conflict strategy
    """

    backend = "git"
    is_remote = True

    def __init__(
        self,
        config: GitStorageConfig,
        runner: Optional[GitRunner] = None,
        prompt: Optional[Prompt] = None,
        logger: Optional[logging.Logger] = None,
    ):
        super().__init__(logger)
        self.config = config
        self.local_path = config.get_local_path()
        self.git = GitOperations(self.local_path, config, runner=runner, logger=self.log)
        self.structure = RepositoryStructure(self.local_path, config.path, logger=self.log)
        self.store = JsonStorageProvider(
            self.structure.storage_config(), ids_from_index=True, logger=self.log
        )
        self.resolver = ConflictResolver(config.conflict_resolution, prompt=prompt, logger=self.log)
        self.state = UNINITIALIZED

    # ========== Lifecycle ==========

    def initialize(self) -> None:
        """Clone or pull the repository and make sure the layout exists.

        Raises:
            GitCommandError: If clone or pull fails (stderr attached)
        """
        if self.state == READY:
            return
        if self.git.is_repository():
            self._pull()
        else:
            self.git.clone()

        was_initialized = self.structure.is_initialized()
        self.structure.initialize()
        self.store.initialize()
        if not was_initialized and self.config.auto_sync:
            self.git.commit_and_push("Initialize devlog structure")

        self.state = READY
        self._initialized = True

    def _ready(self) -> None:
        if self.state != READY:
            self.initialize()

    def dispose(self) -> None:
        self.store.dispose()
        self.state = UNINITIALIZED
        super().dispose()

    # ========== Sync ==========

    def _index_relative(self) -> Path:
        return self.structure.index_path.relative_to(self.local_path)

    def resolve_conflicts(
        self,
        strategy: Optional[Union[str, ConflictStrategy]] = None,
        files: Optional[Iterable[Path]] = None,
    ) -> list[Path]:
        """Resolve conflict markers left in the working copy.

        ``index.json`` always keeps the local side; it is rebuilt from the
        entry files afterwards anyway.

        Returns:
            Paths relative to the working copy that were rewritten
        """
        candidates = list(files) if files is not None else self.git.conflicted_files()
        index_path = self._index_relative()
        entry_files = [p for p in candidates if Path(p) != index_path]

        resolved = self.resolver.resolve_repository(self.local_path, entry_files, strategy)
        if index_path in {Path(p) for p in candidates}:
            resolved += self.resolver.resolve_repository(
                self.local_path, [index_path], ConflictStrategy.LOCAL_WINS
            )
        return resolved

    def _pull(self) -> list[Path]:
        """Pull; if the merge stops on conflicts, resolve and commit them."""
        resolved: list[Path] = []
        try:
            self.git.pull()
        except GitCommandError:
            conflicted = self.git.conflicted_files()
            if not conflicted:
                raise
            resolved = self.resolve_conflicts(files=conflicted)
            self.git.stage(*(p.as_posix() for p in conflicted))
            self.git.commit(f"Resolve devlog conflicts ({self.resolver.strategy.value})")
        self._reindex()
        return resolved

    def _reindex(self) -> None:
        if not self.structure.index_path.exists():
            return
        try:
            self.store.rebuild_index()
        except MalformedDataError as e:
            self.log.warning(
                f"Index unreadable after pull, recreating: {e}",
                extra={"event": "git.index_recreated"},
            )
            write_json(self.structure.index_path, empty_index())
            self.store.rebuild_index()

    def sync(self) -> SyncResult:
        """Pull (resolving conflicts), then commit and push local changes."""
        self._ready()
        result = SyncResult(resolved_files=self._pull())
        result.committed = self.git.commit("Sync devlog entries")
        self.git.push()
        return result

    def get_remote_status(self) -> GitSyncStatus:
        """Advisory ahead/behind status; failures come back as ``error``."""
        return self.git.status()

    def validate(self) -> ValidationReport:
        return self.structure.validate()

    # ========== Provider contract ==========

    def exists(self, entry_id: EntryId) -> bool:
        self._ready()
        return self.store.exists(entry_id)

    def get(self, entry_id: EntryId) -> Optional[DevlogEntry]:
        self._ready()
        return self.store.get(entry_id)

    def next_id(self) -> int:
        self._ready()
        return self.store.next_id()

    def save(self, entry: DevlogEntry) -> DevlogEntry:
        self._ready()
        saved = self.store.save(entry)
        if self.config.auto_sync:
            self.git.commit_and_push(f"Update devlog entry {saved.id}: {saved.title}")
        return saved

    def delete(self, entry_id: EntryId) -> None:
        self._ready()
        self.store.delete(entry_id)
        if self.config.auto_sync:
            self.git.commit_and_push(f"Delete devlog entry {entry_id}")

    def list(self, filter: Optional[EntryFilter] = None) -> list[DevlogEntry]:
        self._ready()
        return self.store.list(filter)

    def search(self, query: str) -> list[DevlogEntry]:
        self._ready()
        return self.store.search(query)

    def get_stats(self) -> EntryStats:
        self._ready()
        return self.store.get_stats()
