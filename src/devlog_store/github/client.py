"""Blocking GitHub REST client for issues and labels."""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from ..config import GitHubStorageConfig
from ..errors import BackendUnavailable, GitHubAPIError
from .ratelimit import RateLimiter

USER_AGENT = "devlog-store"
PER_PAGE = 100
SEARCH_RESULT_CAP = 1000  # GitHub never returns more search results than this


class GitHubClient:
    """Issue and label endpoints of one repository.

    Every request goes through the rate limiter. Transport failures raise
    ``BackendUnavailable``; unexpected statuses raise ``GitHubAPIError``.

    Args:
        config: Owner, repo, token, API URL and timeout
        limiter: Rate limiter; built from ``config.rate_limit`` if None
        transport: httpx transport, injectable for tests
    """

    def __init__(
        self,
        config: GitHubStorageConfig,
        limiter: Optional[RateLimiter] = None,
        transport: Optional[httpx.BaseTransport] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.log = logger or logging.getLogger(__name__)
        self.limiter = limiter or RateLimiter(
            requests_per_hour=config.rate_limit.requests_per_hour,
            retry_delay=config.rate_limit.retry_delay,
            max_retries=config.rate_limit.max_retries,
            logger=self.log,
        )
        headers = {
            "Accept": "application/vnd.github.v3+json",
            "User-Agent": USER_AGENT,
        }
        if config.token:
            headers["Authorization"] = f"token {config.token}"
        self._http = httpx.Client(
            base_url=config.api_url.rstrip("/"),
            headers=headers,
            timeout=config.timeout,
            transport=transport,
        )
        self.repo_path = f"/repos/{config.owner}/{config.repo}"

    def close(self) -> None:
        self._http.close()

    # ========== Transport ==========

    def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        def send() -> httpx.Response:
            try:
                return self._http.request(method, path, **kwargs)
            except httpx.TransportError as e:
                raise BackendUnavailable("github", f"{method} {path} failed: {e}", cause=e) from e

        return self.limiter.execute(send)

    def _request(self, method: str, path: str, ok_missing: bool = False, **kwargs: Any) -> Any:
        response = self._send(method, path, **kwargs)
        if ok_missing and response.status_code == 404:
            return None
        if response.status_code >= 400:
            try:
                message = response.json().get("message", response.text)
            except ValueError:
                message = response.text
            raise GitHubAPIError(response.status_code, message, method, path)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    # ========== Repository ==========

    def get_repository(self) -> dict:
        """Raises GitHubAPIError (404) if the repository is not visible to the token."""
        return self._request("GET", self.repo_path)

    # ========== Issues ==========

    def get_issue(self, number: int) -> Optional[dict]:
        """The issue, or None if it does not exist."""
        return self._request("GET", f"{self.repo_path}/issues/{number}", ok_missing=True)

    def create_issue(
        self,
        title: str,
        body: str = "",
        labels: Optional[list[str]] = None,
        assignees: Optional[list[str]] = None,
    ) -> dict:
        payload = {"title": title, "body": body, "labels": labels or [], "assignees": assignees or []}
        issue = self._request("POST", f"{self.repo_path}/issues", json=payload)
        self.log.debug(
            f"Created issue #{issue['number']}",
            extra={"event": "github.issue_created", "number": issue["number"]},
        )
        return issue

    def update_issue(self, number: int, **fields: Any) -> dict:
        """PATCH an issue; ``fields`` are GitHub's own names (title, body, state, labels...)."""
        return self._request("PATCH", f"{self.repo_path}/issues/{number}", json=fields)

    def search_issues(self, query: str, sort: str = "updated", order: str = "desc") -> list[dict]:
        """All results of an issue search, following pagination up to GitHub's cap."""
        items: list[dict] = []
        page = 1
        while len(items) < SEARCH_RESULT_CAP:
            result = self._request(
                "GET",
                "/search/issues",
                params={"q": query, "sort": sort, "order": order, "per_page": PER_PAGE, "page": page},
            )
            batch = (result or {}).get("items", [])
            items.extend(batch)
            if len(batch) < PER_PAGE:
                break
            page += 1
        return items

    # ========== Labels ==========

    def list_labels(self) -> list[dict]:
        labels: list[dict] = []
        page = 1
        while True:
            batch = self._request(
                "GET", f"{self.repo_path}/labels", params={"per_page": PER_PAGE, "page": page}
            ) or []
            labels.extend(batch)
            if len(batch) < PER_PAGE:
                return labels
            page += 1

    def create_label(self, name: str, color: str, description: str = "") -> dict:
        return self._request(
            "POST",
            f"{self.repo_path}/labels",
            json={"name": name, "color": color, "description": description},
        )
