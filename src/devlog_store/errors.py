"""Exception taxonomy shared by every storage provider."""

from __future__ import annotations

from typing import Any, Optional, Sequence


class DevlogError(Exception):
    """Base exception for devlog storage operations."""
    pass


class NotFoundError(DevlogError):
    """Raised when a mutating operation targets an entry that does not exist."""

    def __init__(self, entry_id: Any, message: Optional[str] = None):
        self.entry_id = entry_id
        super().__init__(message or f"Devlog entry '{entry_id}' not found")


class DuplicateEntryError(DevlogError):
    """Raised when a title+type pair already exists."""

    def __init__(self, existing: Any):
        self.existing = existing
        super().__init__(
            f"A {existing.type.value} with title \"{existing.title}\" already exists "
            f"(ID: {existing.id})"
        )


class LockTimeout(DevlogError):
    """Raised when the ID allocator cannot acquire its lock marker."""
    pass


class BackendUnavailable(DevlogError):
    """Raised when a backend or one of its dependencies cannot be reached."""

    def __init__(self, backend: str, message: str, cause: Optional[BaseException] = None):
        self.backend = backend
        self.cause = cause
        super().__init__(f"[{backend}] {message}")


class GitCommandError(BackendUnavailable):
    """A git invocation exited non-zero. Carries argv, exit code and stderr."""

    def __init__(self, args: Sequence[str], returncode: int, stderr: str, stdout: str = ""):
        self.argv = list(args)
        self.returncode = returncode
        self.stderr = stderr
        self.stdout = stdout
        detail = (stderr or stdout).strip()
        super().__init__("git", f"git {' '.join(self.argv)} failed ({returncode}): {detail}")


class RateLimited(DevlogError):
    """Raised when the GitHub quota is still exhausted after all retries."""
    pass


class MalformedDataError(DevlogError):
    """Raised for unparsable counter, index, entry or conflict content."""
    pass


class FormatError(MalformedDataError, ValueError):
    """Raised when a display ID such as '#12' cannot be parsed."""
    pass


class UnsupportedStorageError(DevlogError, ValueError):
    """Raised by the factory for an unknown storage discriminator."""
    pass


class GitHubAPIError(BackendUnavailable):
    """The GitHub API answered with an unexpected status code."""

    def __init__(self, status_code: int, message: str, method: str = "", path: str = ""):
        self.status_code = status_code
        self.method = method
        self.path = path
        super().__init__("github", f"{method} {path} returned {status_code}: {message}".strip())
