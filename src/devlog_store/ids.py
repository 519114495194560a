"""Process-safe integer ID allocation backed by a counter file.

The lock is a marker file created with ``O_CREAT | O_EXCL``; whoever creates
it owns the counter until the marker is removed. This is only correct when
every writer shares the same filesystem and directory.
"""

from __future__ import annotations

import logging
import os
import re
import time
from pathlib import Path
from typing import Callable, Optional

from .errors import FormatError, LockTimeout
from .locking import atomic_write

COUNTER_FILENAME = ".devlog-counter"
LOCK_FILENAME = ".devlog-counter.lock"

_DISPLAY_ID = re.compile(r"^\s*#?(\d+)\s*$")


class IdAllocator:
    """Hands out strictly increasing integers shared across processes.

    Args:
        directory: Directory holding the counter and lock marker files
        max_retries: Lock acquisition attempts before giving up
        retry_delay: Base delay in seconds; attempt ``n`` waits ``n * retry_delay``
        sleep: Sleep function, injectable for tests
    """

    def __init__(
        self,
        directory: Path,
        max_retries: int = 10,
        retry_delay: float = 0.01,
        sleep: Callable[[float], None] = time.sleep,
        logger: Optional[logging.Logger] = None,
    ):
        self.directory = Path(directory)
        self.counter_path = self.directory / COUNTER_FILENAME
        self.lock_path = self.directory / LOCK_FILENAME
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._sleep = sleep
        self._log = logger or logging.getLogger(__name__)

    # ========== Lock ==========

    def _acquire(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        for attempt in range(1, self.max_retries + 1):
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                if attempt == self.max_retries:
                    break
                self._sleep(self.retry_delay * attempt)
                continue
            os.write(fd, str(os.getpid()).encode())
            os.close(fd)
            return
        raise LockTimeout(
            f"Could not acquire ID lock {self.lock_path} after {self.max_retries} attempts"
        )

    def _release(self) -> None:
        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            pass

    # ========== Counter ==========

    def _read(self) -> int:
        try:
            text = self.counter_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return 0
        try:
            return int(text)
        except ValueError:
            self._log.warning(
                f"Corrupt ID counter {self.counter_path}: {text!r}, restarting from 0",
                extra={"event": "ids.corrupt_counter"},
            )
            return 0

    def _write(self, value: int) -> None:
        with atomic_write(self.counter_path) as f:
            f.write(str(value))

    def next(self) -> int:
        """Allocate the next ID.

        Raises:
            LockTimeout: If the lock marker could not be created in time
        """
        self._acquire()
        try:
            value = self._read() + 1
            self._write(value)
            return value
        finally:
            self._release()

    def current_value(self) -> int:
        """Last allocated ID, 0 if none."""
        return self._read()

    def reset(self, value: int = 0) -> None:
        """Set the counter so the next allocation returns ``value + 1``."""
        if value < 0:
            raise ValueError(f"Counter value must be non-negative, got {value}")
        self._acquire()
        try:
            self._write(value)
        finally:
            self._release()

    def ensure_at_least(self, value: int) -> None:
        """Raise the counter to ``value`` if it is lower; never moves it back."""
        self._acquire()
        try:
            if self._read() < value:
                self._write(value)
        finally:
            self._release()


def format_for_display(entry_id: int) -> str:
    """Format an ID for humans, e.g. ``#12``."""
    return f"#{entry_id}"


def parse_display_id(text: str) -> int:
    """Parse ``#12`` or ``12`` back to an integer.

    Raises:
        FormatError: If the text is not a display ID
    """
    match = _DISPLAY_ID.match(text or "")
    if not match:
        raise FormatError(f"Invalid devlog ID: {text!r}")
    return int(match.group(1))
