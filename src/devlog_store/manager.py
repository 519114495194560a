"""Entry lifecycle operations on top of any storage provider."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Union

from .config import StorageConfig
from .errors import DuplicateEntryError, NotFoundError
from .models import (
    Decision,
    DevlogEntry,
    EntryFilter,
    EntryId,
    EntryPriority,
    EntryStats,
    EntryStatus,
    EntryType,
    ExternalReference,
    Note,
    NoteCategory,
    later_timestamp,
    new_item_id,
    normalize_title,
    now_iso,
    sort_by_updated,
    timestamp_key,
)
from .storage.base import StorageProvider
from .storage.factory import create_provider

ENTRY_FIELDS = {
    "title", "description", "status", "priority", "assignee",
    "tags", "files", "estimated_hours", "actual_hours",
}
CONTEXT_FIELDS = {"business_context", "technical_context", "acceptance_criteria"}
AI_FIELDS = {
    "current_summary", "key_insights", "open_questions",
    "related_patterns", "suggested_next_steps",
}
NOTE_FIELDS = {"progress", "note_category", "code_changes"}

RELEVANCE_ORDER = {"direct-text-match": 0, "same-type": 1, "keyword-in-notes": 2}
STATUS_ORDER = {
    EntryStatus.IN_PROGRESS: 0,
    EntryStatus.IN_REVIEW: 1,
    EntryStatus.TESTING: 2,
    EntryStatus.BLOCKED: 3,
    EntryStatus.TODO: 4,
    EntryStatus.NEW: 5,
    EntryStatus.DONE: 6,
    EntryStatus.CLOSED: 7,
    EntryStatus.ARCHIVED: 8,
}


@dataclass
class CreateEntryRequest:
    """Fields accepted when creating an entry."""
    title: str
    type: EntryType = EntryType.TASK
    description: str = ""
    priority: EntryPriority = EntryPriority.MEDIUM
    id: Optional[EntryId] = None
    assignee: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    estimated_hours: Optional[float] = None
    business_context: str = ""
    technical_context: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)
    initial_insights: list[str] = field(default_factory=list)
    related_patterns: list[str] = field(default_factory=list)


@dataclass
class DiscoverRequest:
    """What a caller is about to work on."""
    work_description: str
    work_type: EntryType = EntryType.TASK
    keywords: list[str] = field(default_factory=list)
    scope: Optional[str] = None


@dataclass
class DiscoveredEntry:
    entry: DevlogEntry
    relevance: str  # direct-text-match, same-type, keyword-in-notes
    matched_terms: list[str]

    def to_dict(self) -> dict:
        return {
            "entry": self.entry.to_dict(),
            "relevance": self.relevance,
            "matchedTerms": list(self.matched_terms),
        }


@dataclass
class DiscoveryResult:
    related_entries: list[DiscoveredEntry]
    active_count: int
    recommendation: str

    def to_dict(self) -> dict:
        return {
            "relatedEntries": [r.to_dict() for r in self.related_entries],
            "activeCount": self.active_count,
            "recommendation": self.recommendation,
        }


class DevlogManager:
    """Create, update, annotate and query devlog entries.

    Every mutation reloads the stored entry, applies the change, bumps
    ``updatedAt`` and saves the whole entry back.

    Args:
        provider: Storage provider; initialized lazily on first use
    """

    def __init__(self, provider: StorageProvider, logger: Optional[logging.Logger] = None):
        self.provider = provider
        self.log = logger or logging.getLogger(__name__)
        self._initialized = False

    @classmethod
    def from_config(
        cls,
        config: StorageConfig,
        drivers: Optional[Mapping[str, Any]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> "DevlogManager":
        return cls(create_provider(config, drivers=drivers, logger=logger), logger=logger)

    # ========== Lifecycle ==========

    def initialize(self) -> None:
        if not self._initialized:
            self.provider.initialize()
            self._initialized = True

    def dispose(self) -> None:
        self.provider.dispose()
        self._initialized = False

    def __enter__(self):
        self.initialize()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.dispose()
        return False

    def _load(self, entry_id: EntryId) -> DevlogEntry:
        self.initialize()
        entry = self.provider.get(entry_id)
        if entry is None:
            raise NotFoundError(entry_id)
        return entry

    def _touch(self, entry: DevlogEntry) -> None:
        entry.updated_at = later_timestamp(now_iso(), entry.updated_at)

    def _save(self, entry: DevlogEntry) -> DevlogEntry:
        self._touch(entry)
        return self.provider.save(entry)

    # ========== Creation ==========

    def find_duplicate(self, title: str, entry_type: EntryType) -> Optional[DevlogEntry]:
        """Existing entry with the same normalized title and type, if any."""
        self.initialize()
        wanted = normalize_title(title)
        for entry in self.provider.list(EntryFilter(type=[entry_type])):
            if normalize_title(entry.title) == wanted:
                return entry
        return None

    def find_or_create(self, request: CreateEntryRequest) -> tuple[DevlogEntry, bool]:
        """Return the matching entry or create a new one.

        An explicit ``request.id`` that already exists wins; otherwise a
        title+type duplicate is returned.

        Returns:
            ``(entry, created)``
        """
        self.initialize()
        if request.id is not None:
            existing = self.provider.get(request.id)
            if existing is not None:
                return existing, False
        duplicate = self.find_duplicate(request.title, request.type)
        if duplicate is not None:
            return duplicate, False

        now = now_iso()
        entry = DevlogEntry(
            id=request.id,
            title=request.title,
            type=request.type,
            description=request.description,
            priority=request.priority,
            status=EntryStatus.NEW,
            created_at=now,
            updated_at=now,
            assignee=request.assignee,
            tags=list(request.tags),
            estimated_hours=request.estimated_hours,
        )
        entry.context.business_context = request.business_context
        entry.context.technical_context = request.technical_context
        entry.context.acceptance_criteria = list(request.acceptance_criteria)
        entry.ai_context.key_insights = list(request.initial_insights)
        entry.ai_context.related_patterns = list(request.related_patterns)
        entry.ai_context.last_ai_update = now

        saved = self.provider.save(entry)
        self.log.info(
            f"Created devlog entry {saved.id}: {saved.title}",
            extra={"event": "manager.created", "entry_id": saved.id},
        )
        return saved, True

    def create(self, request: CreateEntryRequest) -> DevlogEntry:
        """Create an entry.

        Raises:
            DuplicateEntryError: If an entry with the same title and type exists
        """
        entry, created = self.find_or_create(request)
        if not created:
            raise DuplicateEntryError(entry)
        return entry

    # ========== Queries ==========

    def get(self, entry_id: EntryId) -> Optional[DevlogEntry]:
        self.initialize()
        return self.provider.get(entry_id)

    def list(self, filter: Optional[EntryFilter] = None) -> list[DevlogEntry]:
        self.initialize()
        return self.provider.list(filter)

    def search(self, query: str) -> list[DevlogEntry]:
        self.initialize()
        return self.provider.search(query)

    def get_stats(self) -> EntryStats:
        self.initialize()
        return self.provider.get_stats()

    def get_active_context(self, limit: int = 10) -> list[DevlogEntry]:
        """Unfinished entries, highest priority first, then most recently updated."""
        self.initialize()
        active = [e for e in self.provider.list() if not e.status.is_terminal]
        active = sort_by_updated(active)
        active.sort(key=lambda e: e.priority.weight, reverse=True)
        return active[:limit]

    # ========== Mutations ==========

    def update(self, entry_id: EntryId, **patch: Any) -> DevlogEntry:
        """Apply a partial update.

        Accepts entry fields (title, description, status, priority, assignee,
        tags, files, estimated_hours, actual_hours), context fields
        (business_context, technical_context, acceptance_criteria), AI context
        fields (current_summary, key_insights, open_questions,
        related_patterns, suggested_next_steps) and an optional ``progress``
        note with ``note_category`` and ``code_changes``.

        Raises:
            NotFoundError: If the entry does not exist
            TypeError: For an unknown field name
        """
        unknown = set(patch) - ENTRY_FIELDS - CONTEXT_FIELDS - AI_FIELDS - NOTE_FIELDS
        if unknown:
            raise TypeError(f"Unknown entry fields: {', '.join(sorted(unknown))}")

        entry = self._load(entry_id)
        for name in ENTRY_FIELDS & set(patch):
            value = patch[name]
            if name == "status":
                value = EntryStatus(value)
            elif name == "priority":
                value = EntryPriority(value)
            elif name in ("tags", "files"):
                value = list(value)
            setattr(entry, name, value)
        for name in CONTEXT_FIELDS & set(patch):
            value = patch[name]
            setattr(entry.context, name, list(value) if name == "acceptance_criteria" else value)

        ai_changes = {name: patch[name] for name in AI_FIELDS & set(patch)}
        if ai_changes:
            for name, value in ai_changes.items():
                setattr(entry.ai_context, name, value if name == "current_summary" else list(value))
            self._bump_ai_context(entry)

        if patch.get("progress"):
            entry.notes.append(Note.create(
                patch["progress"],
                NoteCategory(patch.get("note_category") or NoteCategory.PROGRESS),
                files=patch.get("files"),
                code_changes=patch.get("code_changes"),
            ))
        return self._save(entry)

    def add_note(
        self,
        entry_id: EntryId,
        content: str,
        category: Union[str, NoteCategory] = NoteCategory.PROGRESS,
        files: Optional[list[str]] = None,
        code_changes: Optional[str] = None,
    ) -> DevlogEntry:
        entry = self._load(entry_id)
        entry.notes.append(Note.create(content, NoteCategory(category), files, code_changes))
        return self._save(entry)

    def add_decision(
        self,
        entry_id: EntryId,
        decision: str,
        rationale: str,
        decision_maker: str,
        alternatives: Optional[list[str]] = None,
    ) -> DevlogEntry:
        entry = self._load(entry_id)
        entry.context.decisions.append(Decision(
            id=new_item_id("decision"),
            timestamp=now_iso(),
            decision=decision,
            rationale=rationale,
            decision_maker=decision_maker,
            alternatives=list(alternatives or []),
        ))
        return self._save(entry)

    def _bump_ai_context(self, entry: DevlogEntry) -> None:
        entry.ai_context.context_version += 1
        entry.ai_context.last_ai_update = now_iso()

    def update_ai_context(
        self,
        entry_id: EntryId,
        summary: Optional[str] = None,
        insights: Optional[list[str]] = None,
        questions: Optional[list[str]] = None,
        patterns: Optional[list[str]] = None,
        next_steps: Optional[list[str]] = None,
    ) -> DevlogEntry:
        """Update the AI context; insights and patterns are appended, the rest replaced."""
        entry = self._load(entry_id)
        ai = entry.ai_context
        if summary is not None:
            ai.current_summary = summary
        if insights:
            ai.key_insights.extend(insights)
        if questions is not None:
            ai.open_questions = list(questions)
        if patterns:
            ai.related_patterns.extend(patterns)
        if next_steps is not None:
            ai.suggested_next_steps = list(next_steps)
        self._bump_ai_context(entry)
        return self._save(entry)

    def complete(self, entry_id: EntryId, summary: Optional[str] = None) -> DevlogEntry:
        """Mark done, with an optional ``Completed: <summary>`` note."""
        return self._finish(entry_id, EntryStatus.DONE, "Completed", summary)

    def close(self, entry_id: EntryId, reason: Optional[str] = None) -> DevlogEntry:
        """Mark closed, with an optional ``Closed: <reason>`` note."""
        return self._finish(entry_id, EntryStatus.CLOSED, "Closed", reason)

    def _finish(
        self, entry_id: EntryId, status: EntryStatus, verb: str, text: Optional[str]
    ) -> DevlogEntry:
        entry = self._load(entry_id)
        entry.status = status
        if text:
            entry.notes.append(Note.create(f"{verb}: {text}", NoteCategory.PROGRESS))
        return self._save(entry)

    def link_external_reference(self, entry_id: EntryId, reference: ExternalReference) -> DevlogEntry:
        """Attach a reference; an existing one for the same system is replaced."""
        entry = self._load(entry_id)
        if reference.last_sync is None:
            reference.last_sync = now_iso()
        entry.set_external_reference(reference)
        return self._save(entry)

    def delete(self, entry_id: EntryId) -> None:
        """Raises NotFoundError if the entry does not exist."""
        self._load(entry_id)
        self.provider.delete(entry_id)

    # ========== Discovery ==========

    def discover_related(self, request: DiscoverRequest) -> DiscoveryResult:
        """Find existing work related to what the caller is about to start."""
        self.initialize()
        entries = self.provider.list()
        terms = [
            t for t in (request.work_description, request.work_type.value, request.scope, *request.keywords)
            if t
        ]
        found: dict[Any, DiscoveredEntry] = {}

        for entry in entries:
            text = " ".join([
                entry.title, entry.description,
                entry.context.business_context, entry.context.technical_context,
            ]).lower()
            matched = [t for t in terms if t.lower() in text]
            if matched:
                found[entry.id] = DiscoveredEntry(entry, "direct-text-match", matched)

        for entry in entries:
            if entry.id not in found and entry.type is request.work_type:
                found[entry.id] = DiscoveredEntry(entry, "same-type", [request.work_type.value])

        for entry in entries:
            if entry.id in found:
                continue
            text = " ".join(
                [n.content for n in entry.notes]
                + [f"{d.decision} {d.rationale}" for d in entry.context.decisions]
            ).lower()
            matched = [k for k in request.keywords if k and k.lower() in text]
            if matched:
                found[entry.id] = DiscoveredEntry(entry, "keyword-in-notes", matched)

        related = sorted(
            found.values(),
            key=lambda r: (
                RELEVANCE_ORDER[r.relevance],
                STATUS_ORDER[r.entry.status],
                -timestamp_key(r.entry.updated_at).timestamp(),
            ),
        )
        active = sum(1 for r in related if not r.entry.status.is_terminal)
        if active:
            recommendation = (
                f"Review {active} active related entries before creating new work; "
                "consider updating one of them instead."
            )
        elif related:
            recommendation = (
                "Related entries are finished. Safe to create a new entry, "
                "but review them for insights and patterns."
            )
        else:
            recommendation = "No related work found. Safe to create a new entry."
        return DiscoveryResult(related, active, recommendation)
