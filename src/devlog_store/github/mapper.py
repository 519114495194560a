"""Two-way mapping between devlog entries and GitHub issues.

Issue body layout::

    <!-- DEVLOG_METADATA_START -->
    ## Description
    ...

    ## Technical Context
    ...

    ## Business Context
    ...

    ## Acceptance Criteria
    - [ ] first criterion

    <!-- DEVLOG_DATA -->
    ```json
    {"version": "1.0.0", "devlogKey": ..., "notes": [...], ...}
    ```
    <!-- DEVLOG_METADATA_END -->

The Markdown sections are for people reading the issue on GitHub. The JSON
block carries every structured field and wins whenever both are present.
Type, priority and status travel as ``<prefix>-<kind>:<value>`` labels.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional

from ..models import (
    AIContext,
    DevlogContext,
    DevlogEntry,
    EntryPriority,
    EntryStatus,
    EntryType,
    ExternalReference,
    Note,
    coerce_enum,
    format_timestamp,
    generate_key,
    parse_timestamp,
)

METADATA_VERSION = "1.0.0"
METADATA_START = "<!-- DEVLOG_METADATA_START -->"
METADATA_END = "<!-- DEVLOG_METADATA_END -->"
DATA_MARKER = "<!-- DEVLOG_DATA -->"

_DATA_BLOCK = re.compile(re.escape(DATA_MARKER) + r"\s*```json\n(.*?)\n```", re.DOTALL)
_CRITERION = re.compile(r"^\s*- \[[ xX]\]\s?(.*)$")

SECTION_DESCRIPTION = "Description"
SECTION_TECHNICAL = "Technical Context"
SECTION_BUSINESS = "Business Context"
SECTION_CRITERIA = "Acceptance Criteria"


# ========== Body ==========

def format_body(entry: DevlogEntry) -> str:
    """Render the issue body for an entry."""
    parts = [METADATA_START + "\n"]
    if entry.description:
        parts.append(f"## {SECTION_DESCRIPTION}\n{entry.description}\n\n")
    if entry.context.technical_context:
        parts.append(f"## {SECTION_TECHNICAL}\n{entry.context.technical_context}\n\n")
    if entry.context.business_context:
        parts.append(f"## {SECTION_BUSINESS}\n{entry.context.business_context}\n\n")
    if entry.context.acceptance_criteria:
        criteria = "".join(f"- [ ] {c}\n" for c in entry.context.acceptance_criteria)
        parts.append(f"## {SECTION_CRITERIA}\n{criteria}\n")

    parts.append(f"{DATA_MARKER}\n```json\n")
    parts.append(json.dumps(build_metadata(entry), indent=2))
    parts.append(f"\n```\n{METADATA_END}\n")
    return "".join(parts)


def build_metadata(entry: DevlogEntry) -> dict:
    """Fields that labels, title and assignees cannot carry."""
    return {
        "version": METADATA_VERSION,
        "devlogKey": entry.key,
        "description": entry.description,
        "notes": [n.to_dict() for n in entry.notes],
        "context": entry.context.to_dict(),
        "aiContext": entry.ai_context.to_dict(),
        "tags": list(entry.tags),
        "files": list(entry.files),
        "relatedDevlogs": list(entry.related_devlogs),
        "estimatedHours": entry.estimated_hours,
        "actualHours": entry.actual_hours,
        "externalReferences": [r.to_dict() for r in entry.external_references],
    }


def parse_sections(body: str) -> dict[str, str]:
    """Markdown ``## Heading`` sections of the human part of a body."""
    human = body.split(DATA_MARKER, 1)[0].replace(METADATA_START, "")
    sections = {}
    for chunk in re.split(r"^## ", human, flags=re.MULTILINE)[1:]:
        heading, _, content = chunk.partition("\n")
        sections[heading.strip()] = content.strip()
    return sections


def parse_criteria(text: str) -> list[str]:
    criteria = []
    for line in text.splitlines():
        match = _CRITERION.match(line)
        if match:
            criteria.append(match.group(1).strip())
    return criteria


def parse_metadata(body: str) -> Optional[dict]:
    """The JSON block of a body, or None if there is none.

    Raises:
        ValueError: If the block exists but is not a JSON object
    """
    match = _DATA_BLOCK.search(body)
    if not match:
        return None
    data = json.loads(match.group(1))
    if not isinstance(data, dict):
        raise ValueError("devlog metadata block is not an object")
    return data


# ========== Mapper ==========

class GitHubMapper:
    """Converts entries to issue payloads and issues back to entries.

    Args:
        labels_prefix: Prefix of every devlog label, e.g. ``devlog``
    """

    def __init__(self, labels_prefix: str = "devlog", logger: Optional[logging.Logger] = None):
        self.prefix = labels_prefix
        self.log = logger or logging.getLogger(__name__)

    @property
    def deleted_label(self) -> str:
        return f"{self.prefix}-deleted"

    def label(self, kind: str, value: str) -> str:
        return f"{self.prefix}-{kind}:{value}"

    def labels_for(self, entry: DevlogEntry) -> list[str]:
        labels = [
            self.label("type", entry.type.value),
            self.label("priority", entry.priority.value),
        ]
        if entry.status is not EntryStatus.NEW:
            labels.append(self.label("status", entry.status.value))
        return labels

    def is_own_label(self, name: str) -> bool:
        return name.startswith(f"{self.prefix}-")

    def entry_to_issue(self, entry: DevlogEntry) -> dict[str, Any]:
        """Issue fields for create/update calls."""
        return {
            "title": entry.title,
            "body": format_body(entry),
            "labels": self.labels_for(entry),
            "assignees": [entry.assignee] if entry.assignee else [],
            "state": "closed" if entry.status.is_terminal else "open",
        }

    # ========== Decoding ==========

    def _label_values(self, issue: dict) -> dict[str, str]:
        values = {}
        for label in issue.get("labels") or []:
            name = label.get("name", "") if isinstance(label, dict) else str(label)
            if not self.is_own_label(name):
                continue
            kind, sep, value = name[len(self.prefix) + 1:].partition(":")
            if sep:
                values[kind] = value
        return values

    def label_names(self, issue: dict) -> list[str]:
        return [
            label.get("name", "") if isinstance(label, dict) else str(label)
            for label in issue.get("labels") or []
        ]

    def is_deleted(self, issue: dict) -> bool:
        return self.deleted_label in self.label_names(issue)

    def is_devlog_issue(self, issue: dict) -> bool:
        """Pull requests and issues without a devlog type label are not entries."""
        if "pull_request" in issue:
            return False
        return "type" in self._label_values(issue)

    def _status(self, issue: dict, label: Optional[str]) -> EntryStatus:
        status = coerce_enum(EntryStatus, label, None) if label else None
        if issue.get("state") == "closed":
            return status if status is not None and status.is_terminal else EntryStatus.DONE
        return status if status is not None and not status.is_terminal else EntryStatus.NEW

    def issue_to_entry(self, issue: dict) -> DevlogEntry:
        """Rebuild an entry; the JSON block overrides the Markdown sections."""
        body = issue.get("body") or ""
        labels = self._label_values(issue)
        sections = parse_sections(body)

        try:
            metadata = parse_metadata(body)
        except ValueError as e:
            self.log.warning(
                f"Unreadable devlog metadata in issue #{issue.get('number')}: {e}",
                extra={"event": "github.metadata_unreadable", "number": issue.get("number")},
            )
            metadata = None

        if metadata is None:
            description = sections.get(SECTION_DESCRIPTION, "" if sections else body.strip())
            context = DevlogContext(
                business_context=sections.get(SECTION_BUSINESS, ""),
                technical_context=sections.get(SECTION_TECHNICAL, ""),
                acceptance_criteria=parse_criteria(sections.get(SECTION_CRITERIA, "")),
            )
            metadata = {}
        else:
            description = metadata.get("description", sections.get(SECTION_DESCRIPTION, ""))
            context = DevlogContext.from_dict(metadata.get("context"))

        assignees = issue.get("assignees") or []
        return DevlogEntry(
            id=issue["number"],
            key=metadata.get("devlogKey") or generate_key(issue.get("title") or ""),
            title=issue.get("title") or "",
            type=coerce_enum(EntryType, labels.get("type"), EntryType.TASK),
            description=description,
            status=self._status(issue, labels.get("status")),
            priority=coerce_enum(EntryPriority, labels.get("priority"), EntryPriority.MEDIUM),
            created_at=_github_time(issue.get("created_at")),
            updated_at=_github_time(issue.get("updated_at")),
            assignee=assignees[0].get("login") if assignees else None,
            tags=list(metadata.get("tags") or []),
            notes=[Note.from_dict(n) for n in metadata.get("notes") or []],
            files=list(metadata.get("files") or []),
            related_devlogs=list(metadata.get("relatedDevlogs") or []),
            estimated_hours=metadata.get("estimatedHours"),
            actual_hours=metadata.get("actualHours"),
            context=context,
            ai_context=AIContext.from_dict(metadata.get("aiContext")),
            external_references=[
                ExternalReference.from_dict(r) for r in metadata.get("externalReferences") or []
            ],
        )


def _github_time(value: Optional[str]) -> str:
    if not value:
        return ""
    try:
        return format_timestamp(parse_timestamp(value))
    except ValueError:
        return value
