"""Client-side throttling and quota retries for the GitHub API."""

from __future__ import annotations

import logging
import time
from collections import deque
from typing import Callable, Optional

import httpx

from ..errors import RateLimited

WINDOW_SECONDS = 3600.0


def is_rate_limited(response: httpx.Response) -> bool:
    """True for 429s and for 403s that report an exhausted quota."""
    if response.status_code == 429:
        return True
    if response.status_code != 403:
        return False
    if response.headers.get("x-ratelimit-remaining") == "0":
        return True
    return "rate limit" in response.text.lower()


class RateLimiter:
    """Sliding one-hour window of request slots plus bounded quota retries.

    Args:
        requests_per_hour: Requests allowed in any one-hour window
        retry_delay: Fixed seconds to wait before retrying a rate-limited request
        max_retries: Retries after the first rate-limited response
        sleep: Sleep function, injectable for tests
        clock: Monotonic clock, injectable for tests
    """

    def __init__(
        self,
        requests_per_hour: int = 5000,
        retry_delay: float = 1.0,
        max_retries: int = 3,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None,
    ):
        if requests_per_hour < 1:
            raise ValueError(f"requests_per_hour must be at least 1, got {requests_per_hour}")
        self.requests_per_hour = requests_per_hour
        self.retry_delay = retry_delay
        self.max_retries = max_retries
        self._sleep = sleep
        self._clock = clock
        self._sent: deque[float] = deque()
        self.log = logger or logging.getLogger(__name__)

    def _take_slot(self) -> None:
        now = self._clock()
        while self._sent and now - self._sent[0] >= WINDOW_SECONDS:
            self._sent.popleft()
        if len(self._sent) >= self.requests_per_hour:
            wait = self._sent[0] + WINDOW_SECONDS - now
            if wait > 0:
                self.log.info(
                    f"Local request budget spent, waiting {wait:.1f}s",
                    extra={"event": "github.throttled"},
                )
                self._sleep(wait)
            self._sent.popleft()
        self._sent.append(self._clock())

    def execute(self, send: Callable[[], httpx.Response]) -> httpx.Response:
        """Call ``send`` inside the budget, retrying quota rejections.

        Raises:
            RateLimited: If the response is still rate-limited after ``max_retries``
        """
        for attempt in range(self.max_retries + 1):
            self._take_slot()
            response = send()
            if not is_rate_limited(response):
                return response
            self.log.warning(
                f"GitHub rate limit hit (attempt {attempt + 1}/{self.max_retries + 1})",
                extra={"event": "github.rate_limited", "status": response.status_code},
            )
            if attempt < self.max_retries:
                self._sleep(self.retry_delay)
        raise RateLimited(
            f"GitHub rate limit still exceeded after {self.max_retries} retries"
        )
