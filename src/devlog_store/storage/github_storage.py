"""GitHub Issues storage: one issue per entry.

Entry IDs are issue numbers, assigned by GitHub when the issue is created, so
``next_id()`` returns None. ``createdAt``/``updatedAt`` are GitHub's own issue
timestamps. ``delete`` is a soft delete (close + ``<prefix>-deleted`` label)
because issues cannot be erased through the API; soft-deleted issues are
invisible to ``exists``, ``get``, ``list`` and ``search``.

``list`` and ``search`` use the search API sorted by ``updated``, i.e. newest
``updatedAt`` first. GitHub's search index lags writes by a few seconds.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from ..config import GitHubStorageConfig
from ..errors import BackendUnavailable, GitHubAPIError, NotFoundError
from ..github.cache import TTLCache
from ..github.client import GitHubClient
from ..github.labels import LabelManager
from ..github.mapper import GitHubMapper
from ..github.ratelimit import RateLimiter
from ..models import DevlogEntry, EntryFilter, EntryId, sort_by_updated
from .base import StorageProvider, filter_entries


def issue_number(entry_id: Optional[EntryId]) -> Optional[int]:
    """Issue number for an entry ID; string IDs never name an issue."""
    if isinstance(entry_id, int) and not isinstance(entry_id, bool) and entry_id > 0:
        return entry_id
    return None


class GitHubStorageProvider(StorageProvider):
    """Entries stored as GitHub issues.

    Args:
        config: Owner, repo, token, label prefix, rate limit and cache settings
        transport: httpx transport, injectable for tests
        limiter: Rate limiter, injectable for tests
    """

    backend = "github"
    is_remote = True

    def __init__(
        self,
        config: GitHubStorageConfig,
        transport: Optional[httpx.BaseTransport] = None,
        limiter: Optional[RateLimiter] = None,
        logger: Optional[logging.Logger] = None,
    ):
        super().__init__(logger)
        if not config.owner or not config.repo:
            raise ValueError("GitHub storage needs both owner and repo")
        self.config = config
        self._transport = transport
        self._limiter = limiter
        self.client = self._build_client()
        self.mapper = GitHubMapper(config.labels_prefix, logger=self.log)
        self.cache: Optional[TTLCache] = (
            TTLCache(config.cache.max_size, config.cache.ttl) if config.cache.enabled else None
        )

    def _build_client(self) -> GitHubClient:
        return GitHubClient(self.config, self._limiter, self._transport, logger=self.log)

    # ========== Lifecycle ==========

    def initialize(self) -> None:
        """Check repository access and provision the devlog labels.

        Raises:
            BackendUnavailable: If the repository cannot be reached or seen
        """
        if self._initialized:
            return
        if self.client is None:
            self.client = self._build_client()
        try:
            self.client.get_repository()
        except GitHubAPIError as e:
            raise BackendUnavailable(
                self.backend,
                f"Cannot access {self.config.owner}/{self.config.repo}: {e}",
                cause=e,
            ) from e
        LabelManager(self.client, self.config.labels_prefix, logger=self.log).ensure_required_labels()
        self._initialized = True

    def _ready(self) -> None:
        if not self._initialized:
            self.initialize()

    def dispose(self) -> None:
        if self.cache is not None:
            self.cache.clear()
        if self.client is not None:
            self.client.close()
            self.client = None
        super().dispose()

    # ========== Issue access ==========

    def _fetch(self, number: int) -> Optional[dict]:
        if self.cache is not None:
            cached = self.cache.get(number)
            if cached is not None:
                return cached
        issue = self.client.get_issue(number)
        if issue is not None and self.cache is not None:
            self.cache.set(number, issue)
        return issue

    def _invalidate(self, number: int) -> None:
        if self.cache is not None:
            self.cache.delete(number)

    def _live_issue(self, entry_id: EntryId) -> Optional[dict]:
        """The issue behind ``entry_id`` unless it is missing, foreign or soft-deleted."""
        number = issue_number(entry_id)
        if number is None:
            return None
        issue = self._fetch(number)
        if issue is None or not self.mapper.is_devlog_issue(issue) or self.mapper.is_deleted(issue):
            return None
        return issue

    def _search_query(self, *terms: str) -> str:
        parts = [
            f"repo:{self.config.owner}/{self.config.repo}",
            "is:issue",
            f'-label:"{self.mapper.deleted_label}"',
            *terms,
        ]
        return " ".join(p for p in parts if p)

    def _decode(self, issues: list[dict]) -> list[DevlogEntry]:
        entries = []
        for issue in issues:
            if not self.mapper.is_devlog_issue(issue) or self.mapper.is_deleted(issue):
                continue
            try:
                entries.append(self.mapper.issue_to_entry(issue))
            except (KeyError, TypeError, ValueError) as e:
                self._log_skipped(f"issue #{issue.get('number')}", e)
        return entries

    # ========== Provider contract ==========

    def exists(self, entry_id: EntryId) -> bool:
        self._ready()
        return self._live_issue(entry_id) is not None

    def get(self, entry_id: EntryId) -> Optional[DevlogEntry]:
        self._ready()
        issue = self._live_issue(entry_id)
        return self.mapper.issue_to_entry(issue) if issue is not None else None

    def next_id(self) -> None:
        return None

    def save(self, entry: DevlogEntry) -> DevlogEntry:
        """Update the entry's issue, or open a new one.

        An entry whose issue is missing or soft-deleted gets a new issue and
        therefore a new ID.
        """
        self._ready()
        payload = self.mapper.entry_to_issue(entry)
        existing = self._live_issue(entry.id) if entry.id is not None else None

        if existing is not None:
            foreign = [n for n in self.mapper.label_names(existing) if not self.mapper.is_own_label(n)]
            payload["labels"] = foreign + payload["labels"]
            issue = self.client.update_issue(existing["number"], **payload)
        else:
            issue = self.client.create_issue(
                payload["title"], payload["body"], payload["labels"], payload["assignees"]
            )
            if payload["state"] == "closed":
                issue = self.client.update_issue(issue["number"], state="closed")
        self._invalidate(issue["number"])

        saved = self.mapper.issue_to_entry(issue)
        entry.id = saved.id
        entry.created_at = saved.created_at
        entry.updated_at = saved.updated_at
        self._log_saved(saved)
        return saved

    def delete(self, entry_id: EntryId) -> None:
        """Close the issue and label it deleted.

        Raises:
            NotFoundError: If there is no live devlog issue for ``entry_id``
        """
        self._ready()
        issue = self._live_issue(entry_id)
        if issue is None:
            raise NotFoundError(entry_id)
        labels = self.mapper.label_names(issue) + [self.mapper.deleted_label]
        self.client.update_issue(issue["number"], state="closed", labels=labels)
        self._invalidate(issue["number"])
        self._log_deleted(entry_id)

    def list(self, filter: Optional[EntryFilter] = None) -> list[DevlogEntry]:
        """Entries matching ``filter``; the filter is applied to decoded entries."""
        self._ready()
        terms = []
        if filter is not None and filter.assignee:
            terms.append(f"assignee:{filter.assignee}")
        issues = self.client.search_issues(self._search_query(*terms))
        return filter_entries(self._decode(issues), filter)

    def search(self, query: str) -> list[DevlogEntry]:
        """GitHub issue search over titles and bodies."""
        self._ready()
        issues = self.client.search_issues(self._search_query(query, "in:title,body"))
        return sort_by_updated(self._decode(issues))
