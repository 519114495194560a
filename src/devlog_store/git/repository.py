"""On-disk layout of a git-backed devlog repository.

::

    <repo>/
        .gitignore          keeps databases and local caches out of git
        .devlog/
            index.json      {version, entries: {id: summary}, lastId, lastModified}
            entries/
                001-add-login.json
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from ..config import JsonStorageConfig
from ..errors import MalformedDataError
from ..locking import read_json, write_json
from ..storage.json_storage import INDEX_FILENAME, empty_index

ENTRIES_DIRNAME = "entries"
ENTRY_FILE_PATTERN = ENTRIES_DIRNAME + "/{padded_id}-{slug}.json"

GITIGNORE_HEADER = "# Devlog - exclude SQLite databases and local cache"


def gitignore_rules(devlog_dir: str) -> list[str]:
    return [
        "*.db",
        "*.db-*",
        f"{devlog_dir}/cache/",
        f"{devlog_dir}/temp/",
        f"{devlog_dir}/local/",
        f"{devlog_dir}/*.lock",
        f"{devlog_dir}/**/.*.tmp",
        f"!{devlog_dir}/{ENTRIES_DIRNAME}/",
        f"!{devlog_dir}/*.json",
    ]


@dataclass
class ValidationReport:
    """Result of checking index/file consistency."""
    issues: list[str] = field(default_factory=list)
    orphaned_files: list[str] = field(default_factory=list)  # file without index row
    missing_files: list[str] = field(default_factory=list)  # index row without file

    @property
    def valid(self) -> bool:
        return not self.issues


class RepositoryStructure:
    """Creates and checks the devlog layout inside a working copy.

    Args:
        repository_path: Working copy root
        devlog_dir: Devlog directory relative to the root
    """

    def __init__(
        self,
        repository_path: Path,
        devlog_dir: str = ".devlog",
        logger: Optional[logging.Logger] = None,
    ):
        self.repository_path = Path(repository_path)
        self.devlog_dir = devlog_dir.strip("/") or ".devlog"
        self.devlog_path = self.repository_path / self.devlog_dir
        self.entries_path = self.devlog_path / ENTRIES_DIRNAME
        self.index_path = self.devlog_path / INDEX_FILENAME
        self.gitignore_path = self.repository_path / ".gitignore"
        self.log = logger or logging.getLogger(__name__)

    def storage_config(self, min_padding: int = 3) -> JsonStorageConfig:
        """File storage settings that write into this layout."""
        return JsonStorageConfig(
            directory=self.devlog_path,
            file_pattern=ENTRY_FILE_PATTERN,
            min_padding=min_padding,
        )

    # ========== Setup ==========

    def initialize(self) -> None:
        """Create missing directories, index and gitignore rules; never overwrites."""
        self.entries_path.mkdir(parents=True, exist_ok=True)
        if not self.index_path.exists():
            write_json(self.index_path, empty_index())
        self._ensure_gitignore()

    def _ensure_gitignore(self) -> None:
        rules = gitignore_rules(self.devlog_dir)
        if self.gitignore_path.exists():
            content = self.gitignore_path.read_text(encoding="utf-8")
            present = {line.strip() for line in content.splitlines()}
            missing = [r for r in rules if r not in present]
            if not missing:
                return
            block = "\n".join([GITIGNORE_HEADER, *missing]) + "\n"
            separator = "" if not content or content.endswith("\n") else "\n"
            self.gitignore_path.write_text(f"{content}{separator}\n{block}", encoding="utf-8")
        else:
            self.gitignore_path.write_text(
                "\n".join([GITIGNORE_HEADER, *rules]) + "\n", encoding="utf-8"
            )
        self.log.debug("Updated .gitignore", extra={"event": "repository.gitignore_updated"})

    def is_initialized(self) -> bool:
        return self.entries_path.is_dir() and self.index_path.is_file()

    # ========== Index ==========

    def read_index(self) -> dict:
        """Raises MalformedDataError if index.json is not valid JSON."""
        index = read_json(self.index_path)
        return index if index is not None else empty_index()

    def next_id(self) -> int:
        """Next ID from the ``lastId`` high-water mark."""
        return int(self.read_index().get("lastId") or 0) + 1

    def list_entry_files(self) -> list[str]:
        """Entry filenames relative to the devlog directory."""
        if not self.entries_path.is_dir():
            return []
        return sorted(
            f"{ENTRIES_DIRNAME}/{p.name}"
            for p in self.entries_path.glob("*.json")
            if not p.name.startswith(".")
        )

    def validate(self) -> ValidationReport:
        """Check the layout and that index rows and entry files match one-to-one."""
        report = ValidationReport()
        if not self.entries_path.is_dir():
            report.issues.append(f"Missing {self.devlog_dir}/{ENTRIES_DIRNAME} directory")

        try:
            index = read_json(self.index_path)
        except MalformedDataError as e:
            report.issues.append(f"Corrupted {INDEX_FILENAME}: {e}")
            return report
        if index is None:
            report.issues.append(f"Missing {INDEX_FILENAME}")
            return report
        if not index.get("version") or not isinstance(index.get("entries"), dict) or "lastId" not in index:
            report.issues.append(f"Invalid {INDEX_FILENAME} structure")
            return report

        indexed = {row.get("filename") for row in index["entries"].values() if isinstance(row, dict)}
        on_disk = set(self.list_entry_files())
        report.orphaned_files = sorted(on_disk - indexed)
        report.missing_files = sorted(f for f in indexed - on_disk if f)
        report.issues.extend(f"Orphaned entry file: {f}" for f in report.orphaned_files)
        report.issues.extend(f"Index row without file: {f}" for f in report.missing_files)
        return report
