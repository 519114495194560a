"""Data models for devlog entries, filters, statistics and index records.

Entries serialize to the camelCase JSON layout shared by every backend
(``createdAt``, ``aiContext``, ``externalReferences`` ...). Deserialization
is lenient: any missing field falls back to its default so that older files
and rows keep loading.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterable, Optional, Union

# Integer for every built-in provider; strings only appear for legacy
# slug-keyed entries read back from old JSON trees.
EntryId = Union[int, str]


class EntryType(Enum):
    """Kind of work an entry tracks."""
    FEATURE = "feature"
    BUGFIX = "bugfix"
    TASK = "task"
    REFACTOR = "refactor"
    DOCS = "docs"


class EntryStatus(Enum):
    """Workflow status, declared in workflow order."""
    NEW = "new"
    TODO = "todo"
    IN_PROGRESS = "in-progress"
    BLOCKED = "blocked"
    IN_REVIEW = "in-review"
    TESTING = "testing"
    DONE = "done"
    CLOSED = "closed"
    ARCHIVED = "archived"

    @classmethod
    def _missing_(cls, value: object) -> Optional["EntryStatus"]:
        if value == "review":
            return cls.IN_REVIEW
        return None

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({EntryStatus.DONE, EntryStatus.CLOSED, EntryStatus.ARCHIVED})


class EntryPriority(Enum):
    """Entry priority."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def weight(self) -> int:
        return _PRIORITY_WEIGHT[self]


_PRIORITY_WEIGHT = {
    EntryPriority.LOW: 1,
    EntryPriority.MEDIUM: 2,
    EntryPriority.HIGH: 3,
    EntryPriority.CRITICAL: 4,
}


class NoteCategory(Enum):
    """Category of a progress note."""
    PROGRESS = "progress"
    ISSUE = "issue"
    SOLUTION = "solution"
    IDEA = "idea"
    REMINDER = "reminder"


class ExternalSystem(Enum):
    """External systems an entry can reference."""
    JIRA = "jira"
    ADO = "ado"
    GITHUB = "github"
    SLACK = "slack"
    CONFLUENCE = "confluence"
    OTHER = "other"


# ========== Timestamps & keys ==========

def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """Format datetime as ISO 8601 with timezone."""
    return dt.isoformat(timespec="milliseconds")


def now_iso() -> str:
    return format_timestamp(utc_now())


def parse_timestamp(s: str) -> datetime:
    """Parse ISO 8601 timestamp string.

    Accepts a trailing ``Z`` and date-only values; naive values are
    assumed to be UTC.
    """
    value = s.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def timestamp_key(ts: str) -> datetime:
    try:
        return parse_timestamp(ts)
    except (ValueError, AttributeError):
        return datetime.min.replace(tzinfo=timezone.utc)


def later_timestamp(a: str, b: str) -> str:
    """Return whichever of two ISO timestamps is later (``a`` on ties)."""
    if not b:
        return a
    if not a:
        return b
    return b if timestamp_key(b) > timestamp_key(a) else a


def generate_key(title: str) -> str:
    """Derive the human-facing slug for an entry title."""
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower())
    return slug.strip("-")[:50]


def normalize_title(title: str) -> str:
    """Normalize a title for duplicate detection."""
    return " ".join(title.split()).lower()


def new_item_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def coerce_enum(enum_cls, value, default):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        return default


# ========== Entry parts ==========

@dataclass
class Note:
    """An append-only progress note."""
    id: str
    timestamp: str
    content: str
    category: NoteCategory = NoteCategory.PROGRESS
    files: Optional[list[str]] = None
    code_changes: Optional[str] = None

    @classmethod
    def create(
        cls,
        content: str,
        category: NoteCategory = NoteCategory.PROGRESS,
        files: Optional[list[str]] = None,
        code_changes: Optional[str] = None,
    ) -> "Note":
        return cls(
            id=new_item_id("note"),
            timestamp=now_iso(),
            content=content,
            category=category,
            files=files,
            code_changes=code_changes,
        )

    def to_dict(self) -> dict:
        data: dict[str, Any] = {
            "id": self.id,
            "timestamp": self.timestamp,
            "category": self.category.value,
            "content": self.content,
        }
        if self.files is not None:
            data["files"] = list(self.files)
        if self.code_changes is not None:
            data["codeChanges"] = self.code_changes
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Note":
        return cls(
            id=str(data.get("id", "")),
            timestamp=data.get("timestamp", ""),
            content=data.get("content", ""),
            category=coerce_enum(NoteCategory, data.get("category"), NoteCategory.PROGRESS),
            files=data.get("files"),
            code_changes=data.get("codeChanges"),
        )


@dataclass
class Decision:
    """A recorded decision and its rationale."""
    id: str
    timestamp: str
    decision: str
    rationale: str
    decision_maker: str
    alternatives: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "decision": self.decision,
            "rationale": self.rationale,
            "alternatives": list(self.alternatives),
            "decisionMaker": self.decision_maker,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Decision":
        return cls(
            id=str(data.get("id", "")),
            timestamp=data.get("timestamp", ""),
            decision=data.get("decision", ""),
            rationale=data.get("rationale", ""),
            decision_maker=data.get("decisionMaker", ""),
            alternatives=list(data.get("alternatives") or []),
        )


@dataclass
class Dependency:
    id: str
    type: str  # blocks, blocked-by, related-to
    description: str
    external_id: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"id": self.id, "type": self.type, "description": self.description}
        if self.external_id is not None:
            data["externalId"] = self.external_id
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Dependency":
        return cls(
            id=str(data.get("id", "")),
            type=data.get("type", "related-to"),
            description=data.get("description", ""),
            external_id=data.get("externalId"),
        )


@dataclass
class Risk:
    id: str
    description: str
    impact: str = "medium"
    probability: str = "medium"
    mitigation: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "description": self.description,
            "impact": self.impact,
            "probability": self.probability,
            "mitigation": self.mitigation,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Risk":
        return cls(
            id=str(data.get("id", "")),
            description=data.get("description", ""),
            impact=data.get("impact", "medium"),
            probability=data.get("probability", "medium"),
            mitigation=data.get("mitigation", ""),
        )


@dataclass
class DevlogContext:
    """Business/technical narrative plus the decision log."""
    business_context: str = ""
    technical_context: str = ""
    dependencies: list[Dependency] = field(default_factory=list)
    decisions: list[Decision] = field(default_factory=list)
    acceptance_criteria: list[str] = field(default_factory=list)
    risks: list[Risk] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "businessContext": self.business_context,
            "technicalContext": self.technical_context,
            "dependencies": [d.to_dict() for d in self.dependencies],
            "decisions": [d.to_dict() for d in self.decisions],
            "acceptanceCriteria": list(self.acceptance_criteria),
            "risks": [r.to_dict() for r in self.risks],
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "DevlogContext":
        data = data or {}
        return cls(
            business_context=data.get("businessContext") or "",
            technical_context=data.get("technicalContext") or "",
            dependencies=[Dependency.from_dict(d) for d in data.get("dependencies") or []],
            decisions=[Decision.from_dict(d) for d in data.get("decisions") or []],
            acceptance_criteria=list(data.get("acceptanceCriteria") or []),
            risks=[Risk.from_dict(r) for r in data.get("risks") or []],
        )


@dataclass
class AIContext:
    """Cross-session memory for AI agents working on the entry."""
    current_summary: str = ""
    key_insights: list[str] = field(default_factory=list)
    open_questions: list[str] = field(default_factory=list)
    related_patterns: list[str] = field(default_factory=list)
    suggested_next_steps: list[str] = field(default_factory=list)
    last_ai_update: str = ""
    context_version: int = 1

    def to_dict(self) -> dict:
        return {
            "currentSummary": self.current_summary,
            "keyInsights": list(self.key_insights),
            "openQuestions": list(self.open_questions),
            "relatedPatterns": list(self.related_patterns),
            "suggestedNextSteps": list(self.suggested_next_steps),
            "lastAIUpdate": self.last_ai_update,
            "contextVersion": self.context_version,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "AIContext":
        data = data or {}
        return cls(
            current_summary=data.get("currentSummary") or "",
            key_insights=list(data.get("keyInsights") or []),
            open_questions=list(data.get("openQuestions") or []),
            related_patterns=list(data.get("relatedPatterns") or []),
            suggested_next_steps=list(data.get("suggestedNextSteps") or []),
            last_ai_update=data.get("lastAIUpdate") or "",
            context_version=int(data.get("contextVersion") or 1),
        )


@dataclass
class ExternalReference:
    """Link to the same work item in another system."""
    system: ExternalSystem
    id: str
    url: Optional[str] = None
    title: Optional[str] = None
    status: Optional[str] = None
    last_sync: Optional[str] = None

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"system": self.system.value, "id": self.id}
        for key, value in (
            ("url", self.url),
            ("title", self.title),
            ("status", self.status),
            ("lastSync", self.last_sync),
        ):
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ExternalReference":
        return cls(
            system=coerce_enum(ExternalSystem, data.get("system"), ExternalSystem.OTHER),
            id=str(data.get("id", "")),
            url=data.get("url"),
            title=data.get("title"),
            status=data.get("status"),
            last_sync=data.get("lastSync"),
        )


# ========== Entry ==========

@dataclass
class DevlogEntry:
    """A single devlog entry: the unit of persistence."""
    title: str
    type: EntryType = EntryType.TASK
    description: str = ""
    id: Optional[EntryId] = None
    key: str = ""
    status: EntryStatus = EntryStatus.NEW
    priority: EntryPriority = EntryPriority.MEDIUM
    created_at: str = ""
    updated_at: str = ""
    assignee: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    notes: list[Note] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    related_devlogs: list[str] = field(default_factory=list)
    estimated_hours: Optional[float] = None
    actual_hours: Optional[float] = None
    context: DevlogContext = field(default_factory=DevlogContext)
    ai_context: AIContext = field(default_factory=AIContext)
    external_references: list[ExternalReference] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.key:
            self.key = generate_key(self.title)

    def set_external_reference(self, reference: ExternalReference) -> None:
        """Attach a reference, replacing any existing one for the same system."""
        self.external_references = [
            r for r in self.external_references if r.system != reference.system
        ]
        self.external_references.append(reference)

    def searchable_text(self) -> str:
        parts = [
            self.title,
            self.description,
            self.context.business_context,
            self.context.technical_context,
            self.ai_context.current_summary,
            *self.ai_context.key_insights,
            *(note.content for note in self.notes),
            *self.tags,
        ]
        return " ".join(p for p in parts if p)

    def matches_text(self, query: str) -> bool:
        """Case-insensitive substring match over the entry's text fields."""
        return query.lower() in self.searchable_text().lower()

    def to_dict(self) -> dict:
        """Convert entry to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "key": self.key,
            "title": self.title,
            "type": self.type.value,
            "description": self.description,
            "status": self.status.value,
            "priority": self.priority.value,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "assignee": self.assignee,
            "tags": list(self.tags),
            "notes": [n.to_dict() for n in self.notes],
            "files": list(self.files),
            "relatedDevlogs": list(self.related_devlogs),
            "estimatedHours": self.estimated_hours,
            "actualHours": self.actual_hours,
            "context": self.context.to_dict(),
            "aiContext": self.ai_context.to_dict(),
            "externalReferences": [r.to_dict() for r in self.external_references],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DevlogEntry":
        """Build an entry from its JSON form, defaulting absent fields."""
        if not isinstance(data, dict):
            raise ValueError(f"Entry data must be an object, got {type(data).__name__}")
        return cls(
            id=data.get("id"),
            key=data.get("key") or "",
            title=data.get("title") or "",
            type=coerce_enum(EntryType, data.get("type"), EntryType.TASK),
            description=data.get("description") or "",
            status=coerce_enum(EntryStatus, data.get("status"), EntryStatus.NEW),
            priority=coerce_enum(EntryPriority, data.get("priority"), EntryPriority.MEDIUM),
            created_at=data.get("createdAt") or "",
            updated_at=data.get("updatedAt") or "",
            assignee=data.get("assignee"),
            tags=list(data.get("tags") or []),
            notes=[Note.from_dict(n) for n in data.get("notes") or []],
            files=list(data.get("files") or []),
            related_devlogs=list(data.get("relatedDevlogs") or []),
            estimated_hours=data.get("estimatedHours"),
            actual_hours=data.get("actualHours"),
            context=DevlogContext.from_dict(data.get("context")),
            ai_context=AIContext.from_dict(data.get("aiContext")),
            external_references=[
                ExternalReference.from_dict(r) for r in data.get("externalReferences") or []
            ],
        )


def sort_by_updated(entries: Iterable[DevlogEntry]) -> list[DevlogEntry]:
    """Sort entries newest ``updatedAt`` first."""
    return sorted(entries, key=lambda e: timestamp_key(e.updated_at), reverse=True)


# ========== Filters & stats ==========

def _date_bound(value: str, end: bool) -> datetime:
    dt = parse_timestamp(value)
    # A bare date as upper bound covers the whole day
    if end and len(value.strip()) == 10:
        dt = dt + timedelta(days=1)
    return dt


@dataclass
class EntryFilter:
    """Optional list/filter predicate.

    List fields match any-of; ``from_date``/``to_date`` bound ``createdAt``
    (a date-only ``to_date`` includes that whole day).
    """
    status: Optional[list[EntryStatus]] = None
    type: Optional[list[EntryType]] = None
    priority: Optional[list[EntryPriority]] = None
    assignee: Optional[str] = None
    from_date: Optional[str] = None
    to_date: Optional[str] = None
    tags: Optional[list[str]] = None

    def _created_in_range(self, created_at: str) -> bool:
        if not (self.from_date or self.to_date):
            return True
        try:
            created = parse_timestamp(created_at)
        except (ValueError, AttributeError):
            return False
        if self.from_date and created < _date_bound(self.from_date, end=False):
            return False
        if self.to_date:
            bound = _date_bound(self.to_date, end=True)
            if len(self.to_date.strip()) == 10:
                return created < bound
            return created <= bound
        return True

    def created_bounds(self) -> tuple[Optional[str], Optional[str]]:
        """Normalized ``(lower_inclusive, upper_exclusive)`` createdAt bounds.

        Both are formatted like stored timestamps so backends can compare
        them as strings. A full timestamp as ``to_date`` is made exclusive
        by adding one millisecond.
        """
        lower = upper = None
        if self.from_date:
            lower = format_timestamp(_date_bound(self.from_date, end=False).astimezone(timezone.utc))
        if self.to_date:
            bound = _date_bound(self.to_date, end=True)
            if len(self.to_date.strip()) != 10:
                bound = bound + timedelta(milliseconds=1)
            upper = format_timestamp(bound.astimezone(timezone.utc))
        return lower, upper

    def matches_summary(self, status: str, type_: str, priority: str, created_at: str) -> bool:
        """Check the fields available in an index row without loading the body."""
        if self.status and status not in {s.value for s in self.status}:
            return False
        if self.type and type_ not in {t.value for t in self.type}:
            return False
        if self.priority and priority not in {p.value for p in self.priority}:
            return False
        return self._created_in_range(created_at)

    def matches(self, entry: DevlogEntry) -> bool:
        if not self.matches_summary(
            entry.status.value, entry.type.value, entry.priority.value, entry.created_at
        ):
            return False
        if self.assignee and entry.assignee != self.assignee:
            return False
        if self.tags and not any(tag in entry.tags for tag in self.tags):
            return False
        return True


@dataclass
class EntryStats:
    """Aggregate counts over a backend's entries."""
    total_entries: int = 0
    by_status: dict[str, int] = field(default_factory=dict)
    by_type: dict[str, int] = field(default_factory=dict)
    by_priority: dict[str, int] = field(default_factory=dict)
    average_completion_time: Optional[float] = None  # days

    @classmethod
    def empty(cls) -> "EntryStats":
        return cls(
            by_status={s.value: 0 for s in EntryStatus},
            by_type={t.value: 0 for t in EntryType},
            by_priority={p.value: 0 for p in EntryPriority},
        )

    @classmethod
    def from_entries(cls, entries: Iterable[DevlogEntry]) -> "EntryStats":
        stats = cls.empty()
        durations = []
        for entry in entries:
            stats.total_entries += 1
            stats.by_status[entry.status.value] += 1
            stats.by_type[entry.type.value] += 1
            stats.by_priority[entry.priority.value] += 1
            if entry.status == EntryStatus.DONE:
                try:
                    delta = parse_timestamp(entry.updated_at) - parse_timestamp(entry.created_at)
                except (ValueError, AttributeError):
                    continue
                durations.append(delta.total_seconds() / 86400)
        if durations:
            stats.average_completion_time = sum(durations) / len(durations)
        return stats

    def to_dict(self) -> dict:
        data: dict[str, Any] = {
            "totalEntries": self.total_entries,
            "byStatus": dict(self.by_status),
            "byType": dict(self.by_type),
            "byPriority": dict(self.by_priority),
        }
        if self.average_completion_time is not None:
            data["averageCompletionTime"] = self.average_completion_time
        return data


# ========== Index & sync records ==========

@dataclass
class IndexRecord:
    """Summary row kept in ``index.json`` for file and git providers."""
    filename: str
    title: str
    status: str
    type: str
    priority: str
    created_at: str
    updated_at: str

    @classmethod
    def from_entry(cls, entry: DevlogEntry, filename: str) -> "IndexRecord":
        return cls(
            filename=filename,
            title=entry.title,
            status=entry.status.value,
            type=entry.type.value,
            priority=entry.priority.value,
            created_at=entry.created_at,
            updated_at=entry.updated_at,
        )

    def to_dict(self) -> dict:
        return {
            "filename": self.filename,
            "title": self.title,
            "status": self.status,
            "type": self.type,
            "priority": self.priority,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "IndexRecord":
        return cls(
            filename=data["filename"],
            title=data.get("title", ""),
            status=data.get("status", EntryStatus.NEW.value),
            type=data.get("type", EntryType.TASK.value),
            priority=data.get("priority", EntryPriority.MEDIUM.value),
            created_at=data.get("createdAt", ""),
            updated_at=data.get("updatedAt", ""),
        )


@dataclass
class GitSyncStatus:
    """Advisory comparison of the working copy against its remote branch."""
    status: str  # synced, ahead, behind, diverged, error
    local_commits: int = 0
    remote_commits: int = 0
    last_sync: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "localCommits": self.local_commits,
            "remoteCommits": self.remote_commits,
            "lastSync": self.last_sync,
            "error": self.error,
        }
