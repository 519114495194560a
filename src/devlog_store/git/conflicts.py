"""Resolution of git merge conflicts inside entry JSON files.

A conflicted file interleaves shared text with hunks::

    <<<<<<< HEAD
    ...local lines...
    ||||||| base          (diff3 style only, ignored)
    ...
    =======
    ...remote lines...
    >>>>>>> origin/main

Strategies:

- ``local-wins`` / ``remote-wins`` keep that side's text verbatim
- ``timestamp-wins`` parses both sides as entries and keeps the one with the
  later ``updatedAt``; unparsable sides fall back to local
- ``interactive`` asks a ``prompt`` callable, or behaves like
  ``timestamp-wins`` when none is configured
"""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Optional, Union

from ..errors import MalformedDataError
from ..models import DevlogEntry, later_timestamp, parse_timestamp, timestamp_key

MARKER_LOCAL = "<<<<<<<"
MARKER_BASE = "|||||||"
MARKER_SEPARATOR = "======="
MARKER_REMOTE = ">>>>>>>"

# prompt(local_text, remote_text, path) -> "local" | "remote"
Prompt = Callable[[str, str, Optional[Path]], str]


class ConflictStrategy(Enum):
    LOCAL_WINS = "local-wins"
    REMOTE_WINS = "remote-wins"
    TIMESTAMP_WINS = "timestamp-wins"
    INTERACTIVE = "interactive"


@dataclass
class ConflictHunk:
    """One conflicted region: the local and remote text, line endings kept."""
    local: str
    remote: str


Segment = Union[str, ConflictHunk]


def has_conflict_markers(text: str) -> bool:
    found = set()
    for line in text.splitlines():
        for marker in (MARKER_LOCAL, MARKER_SEPARATOR, MARKER_REMOTE):
            if line.startswith(marker):
                found.add(marker)
    return len(found) == 3


def split_conflicts(text: str) -> list[Segment]:
    """Split text into shared strings and ``ConflictHunk`` objects.

    Raises:
        MalformedDataError: If the markers are unbalanced
    """
    segments: list[Segment] = []
    shared: list[str] = []
    local: list[str] = []
    remote: list[str] = []
    section = None  # None, "local", "base" or "remote"

    for number, line in enumerate(text.splitlines(keepends=True), start=1):
        if line.startswith(MARKER_LOCAL):
            if section is not None:
                raise MalformedDataError(f"Nested conflict marker on line {number}")
            if shared:
                segments.append("".join(shared))
                shared = []
            local, remote = [], []
            section = "local"
        elif line.startswith(MARKER_BASE) and section == "local":
            section = "base"
        elif line.startswith(MARKER_SEPARATOR) and section in ("local", "base"):
            section = "remote"
        elif line.startswith(MARKER_REMOTE) and section == "remote":
            segments.append(ConflictHunk("".join(local), "".join(remote)))
            section = None
        elif section == "local":
            local.append(line)
        elif section == "remote":
            remote.append(line)
        elif section is None:
            shared.append(line)

    if section is not None:
        raise MalformedDataError("Unterminated conflict block")
    if shared:
        segments.append("".join(shared))
    return segments


def join_side(segments: Iterable[Segment], side: str) -> str:
    """Rebuild the whole document as one side saw it."""
    return "".join(
        getattr(s, side) if isinstance(s, ConflictHunk) else s for s in segments
    )


def _updated_at(text: str):
    data = json.loads(text)
    if not isinstance(data, dict) or not data.get("updatedAt"):
        raise ValueError("no updatedAt")
    return parse_timestamp(data["updatedAt"])


def newer_side(local_text: str, remote_text: str) -> Optional[str]:
    """``"local"`` or ``"remote"`` by ``updatedAt``; None if either is unparsable.

    Local wins only when strictly newer.
    """
    try:
        local_ts = _updated_at(local_text)
        remote_ts = _updated_at(remote_text)
    except (ValueError, TypeError, AttributeError):
        return None
    return "local" if local_ts > remote_ts else "remote"


class ConflictResolver:
    """Resolves conflict markers with a configurable strategy.

    Args:
        strategy: Default strategy name or enum
        prompt: Callable for the interactive strategy
    """

    def __init__(
        self,
        strategy: Union[str, ConflictStrategy] = ConflictStrategy.TIMESTAMP_WINS,
        prompt: Optional[Prompt] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.strategy = ConflictStrategy(strategy)
        self.prompt = prompt
        self.log = logger or logging.getLogger(__name__)

    def _by_timestamp(self, segments: list[Segment]) -> str:
        ours, theirs = join_side(segments, "local"), join_side(segments, "remote")
        side = newer_side(ours, theirs)
        if side is not None:
            return ours if side == "local" else theirs

        # Whole document did not parse; try each hunk on its own
        parts = []
        for segment in segments:
            if isinstance(segment, ConflictHunk):
                side = newer_side(segment.local, segment.remote)
                if side is None:
                    self.log.warning(
                        "Cannot compare conflict timestamps, keeping local",
                        extra={"event": "conflict.unparsable"},
                    )
                    side = "local"
                parts.append(getattr(segment, side))
            else:
                parts.append(segment)
        return "".join(parts)

    def resolve_text(
        self,
        text: str,
        path: Optional[Path] = None,
        strategy: Optional[Union[str, ConflictStrategy]] = None,
    ) -> str:
        """Return ``text`` with every conflict resolved.

        Raises:
            MalformedDataError: If the markers are unbalanced
        """
        strategy = ConflictStrategy(strategy) if strategy is not None else self.strategy
        segments = split_conflicts(text)
        if not any(isinstance(s, ConflictHunk) for s in segments):
            return text

        if strategy is ConflictStrategy.LOCAL_WINS:
            return join_side(segments, "local")
        if strategy is ConflictStrategy.REMOTE_WINS:
            return join_side(segments, "remote")
        if strategy is ConflictStrategy.INTERACTIVE:
            if self.prompt is None:
                self.log.info(
                    f"No prompt configured for {path or 'conflict'}, using timestamp-wins",
                    extra={"event": "conflict.interactive_fallback"},
                )
                return self._by_timestamp(segments)
            ours, theirs = join_side(segments, "local"), join_side(segments, "remote")
            choice = self.prompt(ours, theirs, path)
            if choice not in ("local", "remote"):
                raise ValueError(f"Conflict prompt must return 'local' or 'remote', got {choice!r}")
            return ours if choice == "local" else theirs
        return self._by_timestamp(segments)

    def resolve_file(
        self,
        path: Path,
        strategy: Optional[Union[str, ConflictStrategy]] = None,
    ) -> bool:
        """Resolve one file in place.

        Returns:
            True if the file contained conflicts and was rewritten
        """
        text = path.read_text(encoding="utf-8")
        if not has_conflict_markers(text):
            return False
        path.write_text(self.resolve_text(text, path, strategy), encoding="utf-8")
        self.log.info(
            f"Resolved conflict in {path.name}",
            extra={
                "event": "conflict.resolved",
                "path": str(path),
                "strategy": (ConflictStrategy(strategy) if strategy else self.strategy).value,
            },
        )
        return True

    def resolve_repository(
        self,
        root: Path,
        files: Optional[Iterable[Path]] = None,
        strategy: Optional[Union[str, ConflictStrategy]] = None,
    ) -> list[Path]:
        """Resolve conflicted files under ``root``.

        Args:
            root: Working copy root
            files: Paths relative to ``root``; every ``*.json`` under it if None

        Returns:
            Paths (relative to ``root``) that were rewritten
        """
        if files is None:
            candidates = [p.relative_to(root) for p in root.rglob("*.json") if ".git" not in p.parts]
        else:
            candidates = list(files)

        resolved = []
        for relative in candidates:
            full = root / relative
            if full.is_file() and self.resolve_file(full, strategy):
                resolved.append(Path(relative))
        return resolved


def merge_entries(local: DevlogEntry, remote: DevlogEntry) -> DevlogEntry:
    """Field-level merge of two versions of one entry.

    Notes are unioned (deduplicated by ID, ordered by timestamp), tags and
    files are unioned, ``updatedAt`` is the later of the two, and every other
    field comes from the more recently updated side (local on ties).
    """
    newer = later_timestamp(local.updated_at, remote.updated_at)
    remote_newer = newer != local.updated_at
    merged = copy.deepcopy(remote if remote_newer else local)

    seen = set()
    notes = []
    for note in [*local.notes, *remote.notes]:
        if note.id in seen:
            continue
        seen.add(note.id)
        notes.append(copy.deepcopy(note))
    merged.notes = sorted(notes, key=lambda n: timestamp_key(n.timestamp))

    merged.tags = list(dict.fromkeys([*local.tags, *remote.tags]))
    merged.files = list(dict.fromkeys([*local.files, *remote.files]))
    merged.updated_at = newer
    return merged
