"""Provisioning of the prefixed devlog labels in a repository."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from ..errors import GitHubAPIError
from ..models import EntryPriority, EntryStatus, EntryType
from .client import GitHubClient

TYPE_COLORS = {
    EntryType.FEATURE: "0052CC",
    EntryType.BUGFIX: "E53E3E",
    EntryType.TASK: "744C9E",
    EntryType.REFACTOR: "FFC107",
    EntryType.DOCS: "36B37E",
}

PRIORITY_COLORS = {
    EntryPriority.LOW: "D3E2FF",
    EntryPriority.MEDIUM: "579DFF",
    EntryPriority.HIGH: "FF8B00",
    EntryPriority.CRITICAL: "DE350B",
}

STATUS_COLOR = "BFD4F2"
DELETED_COLOR = "6A737D"


@dataclass(frozen=True)
class LabelSpec:
    name: str
    color: str
    description: str = ""


def required_labels(prefix: str) -> list[LabelSpec]:
    """Every label the mapper can write, including the soft-delete marker."""
    labels = [
        LabelSpec(f"{prefix}-type:{t.value}", color, f"Devlog {t.value}")
        for t, color in TYPE_COLORS.items()
    ]
    labels += [
        LabelSpec(f"{prefix}-priority:{p.value}", color, f"{p.value.capitalize()} priority")
        for p, color in PRIORITY_COLORS.items()
    ]
    labels += [
        LabelSpec(f"{prefix}-status:{s.value}", STATUS_COLOR, f"Status: {s.value}")
        for s in EntryStatus
        if s is not EntryStatus.NEW
    ]
    labels.append(LabelSpec(f"{prefix}-deleted", DELETED_COLOR, "Deleted devlog entry"))
    return labels


class LabelManager:
    """Creates missing labels; an "already exists" (422) answer counts as success."""

    def __init__(self, client: GitHubClient, prefix: str, logger: Optional[logging.Logger] = None):
        self.client = client
        self.prefix = prefix
        self.log = logger or logging.getLogger(__name__)
        self._known: set[str] = set()

    def ensure_required_labels(self) -> list[str]:
        """Create every required label that is missing.

        Returns:
            Names of the labels created by this call
        """
        existing = {label["name"] for label in self.client.list_labels()}
        self._known |= existing
        created = []
        for spec in required_labels(self.prefix):
            if spec.name in self._known:
                continue
            if self._create(spec):
                created.append(spec.name)
        if created:
            self.log.info(
                f"Created {len(created)} devlog labels",
                extra={"event": "github.labels_created", "labels": created},
            )
        return created

    def _create(self, spec: LabelSpec) -> bool:
        try:
            self.client.create_label(spec.name, spec.color, spec.description)
        except GitHubAPIError as e:
            if e.status_code != 422:
                raise
            self._known.add(spec.name)
            return False
        self._known.add(spec.name)
        return True
