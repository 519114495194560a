"""Narrow interface to the git command line.

Everything git-related goes through a ``GitRunner`` so the provider, the
repository structure manager and the conflict resolver can be tested
against a fake runner.
"""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol, Sequence
from urllib.parse import quote, urlsplit, urlunsplit

from ..config import GitStorageConfig
from ..errors import BackendUnavailable, GitCommandError
from ..models import GitSyncStatus, now_iso


@dataclass
class GitResult:
    """Outcome of one git invocation."""
    args: list[str]
    returncode: int
    stdout: str
    stderr: str


class GitRunner(Protocol):
    def run(
        self,
        args: Sequence[str],
        cwd: Path,
        env: Optional[dict[str, str]] = None,
        check: bool = True,
    ) -> GitResult:
        ...


class SubprocessGitRunner:
    """Runs the ``git`` executable with ``subprocess.run``.

    Args:
        executable: Path or name of the git binary
        timeout: Optional per-command timeout in seconds
    """

    def __init__(self, executable: str = "git", timeout: Optional[float] = None):
        self.executable = executable
        self.timeout = timeout

    def run(
        self,
        args: Sequence[str],
        cwd: Path,
        env: Optional[dict[str, str]] = None,
        check: bool = True,
    ) -> GitResult:
        """Run ``git <args>`` in ``cwd``.

        Raises:
            GitCommandError: If ``check`` and git exits non-zero
            BackendUnavailable: If the git executable cannot be started
        """
        full_env = dict(os.environ)
        full_env["GIT_TERMINAL_PROMPT"] = "0"
        if env:
            full_env.update(env)
        try:
            proc = subprocess.run(
                [self.executable, *args],
                cwd=str(cwd),
                env=full_env,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise BackendUnavailable("git", f"git executable not found: {self.executable}", e) from e
        except subprocess.TimeoutExpired as e:
            raise BackendUnavailable("git", f"git {' '.join(args)} timed out", e) from e

        result = GitResult(list(args), proc.returncode, proc.stdout, proc.stderr)
        if check and proc.returncode != 0:
            raise GitCommandError(args, proc.returncode, proc.stderr, proc.stdout)
        return result


def remote_url(config: GitStorageConfig) -> str:
    """Resolve the clone URL, embedding token/basic credentials for HTTPS.

    ``owner/repo`` shorthand expands to a GitHub HTTPS URL.
    """
    url = config.repository
    if "://" not in url and not url.startswith("git@") and url.count("/") == 1:
        url = f"https://github.com/{url}.git"

    creds = config.credentials
    if creds is None or not url.startswith("https://"):
        return url

    if creds.type == "token" and creds.token:
        userinfo = f"{quote(creds.username or 'x-access-token', safe='')}:{quote(creds.token, safe='')}"
    elif creds.type == "basic" and creds.username and creds.password:
        userinfo = f"{quote(creds.username, safe='')}:{quote(creds.password, safe='')}"
    else:
        return url

    parts = urlsplit(url)
    host = parts.netloc.rsplit("@", 1)[-1]
    return urlunsplit((parts.scheme, f"{userinfo}@{host}", parts.path, parts.query, parts.fragment))


class GitOperations:
    """Clone/pull/commit/push/status for one working copy.

    Args:
        repository_path: Working copy directory
        config: Git storage settings (branch, remote, credentials)
        runner: Command runner, injectable for tests
    """

    def __init__(
        self,
        repository_path: Path,
        config: GitStorageConfig,
        runner: Optional[GitRunner] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.repository_path = Path(repository_path)
        self.config = config
        self.runner = runner or SubprocessGitRunner()
        self.log = logger or logging.getLogger(__name__)
        self.branch = config.branch or "main"

    def _env(self) -> dict[str, str]:
        env = {"GIT_TERMINAL_PROMPT": "0"}
        creds = self.config.credentials
        if creds is not None and creds.type == "ssh" and creds.key_path:
            env["GIT_SSH_COMMAND"] = (
                f"ssh -i {creds.key_path} -o IdentitiesOnly=yes -o StrictHostKeyChecking=accept-new"
            )
        return env

    def _secrets(self) -> list[str]:
        creds = self.config.credentials
        if creds is None:
            return []
        values = [creds.token, creds.password]
        return [v for v in values if v] + [quote(v, safe="") for v in values if v]

    def _redact(self, text: str) -> str:
        for secret in self._secrets():
            text = text.replace(secret, "***")
        return text

    def _git(self, *args: str, cwd: Optional[Path] = None, check: bool = True) -> GitResult:
        try:
            return self.runner.run(list(args), cwd or self.repository_path, self._env(), check)
        except GitCommandError as e:
            # Keep tokens embedded in remote URLs out of error messages
            raise GitCommandError(
                [self._redact(a) for a in e.argv],
                e.returncode,
                self._redact(e.stderr),
                self._redact(e.stdout),
            ) from None

    # ========== Working copy ==========

    def is_repository(self) -> bool:
        return (self.repository_path / ".git").exists()

    def is_merging(self) -> bool:
        """A merge stopped on conflicts and is not concluded yet."""
        return (self.repository_path / ".git" / "MERGE_HEAD").exists()

    def clone(self) -> None:
        parent = self.repository_path.parent
        parent.mkdir(parents=True, exist_ok=True)
        self._git(
            "clone", "--branch", self.branch, "--single-branch",
            remote_url(self.config), str(self.repository_path),
            cwd=parent,
        )
        creds = self.config.credentials
        if creds is not None and creds.username:
            self._git("config", "user.name", creds.username)
        self.log.info(
            f"Cloned {self._redact(remote_url(self.config))} into {self.repository_path}",
            extra={"event": "git.clone", "branch": self.branch},
        )

    def pull(self) -> None:
        """Pull the configured branch (merge, never rebase).

        Raises:
            GitCommandError: On failure, including a merge that stopped on
                conflicts (check ``conflicted_files``)
        """
        self._git("pull", "--no-rebase", "origin", self.branch)
        self.log.info("Pulled latest changes", extra={"event": "git.pull", "branch": self.branch})

    def has_changes(self) -> bool:
        return bool(self._git("status", "--porcelain").stdout.strip())

    def stage(self, *paths: str) -> None:
        self._git("add", "--", *(paths or (".",)))

    def commit(self, message: str) -> bool:
        """Stage everything and commit.

        A pending merge is always committed, even when the resolved tree
        matches HEAD, so the merge is concluded.

        Returns:
            False if there was nothing to commit
        """
        self.stage()
        if not self.is_merging() and not self.has_changes():
            self.log.debug("No changes to commit", extra={"event": "git.nothing_to_commit"})
            return False
        self._git("commit", "-m", message)
        return True

    def push(self) -> None:
        self._git("push", "origin", self.branch)
        self.log.info("Pushed changes", extra={"event": "git.push", "branch": self.branch})

    def commit_and_push(self, message: str) -> bool:
        """Commit all changes and push; a clean tree is a no-op.

        Returns:
            True if a commit was made and pushed
        """
        if not self.commit(message):
            return False
        self.push()
        return True

    def conflicted_files(self) -> list[Path]:
        """Files left unmerged by the last merge, relative to the working copy."""
        out = self._git("diff", "--name-only", "--diff-filter=U").stdout
        return [Path(line) for line in out.splitlines() if line.strip()]

    def status(self) -> GitSyncStatus:
        """Compare HEAD with the remote branch.

        Never raises: failures come back as an ``error`` status.
        """
        try:
            self._git("fetch", "origin")
            ahead = int(self._git("rev-list", "--count", f"origin/{self.branch}..HEAD").stdout.strip())
            behind = int(self._git("rev-list", "--count", f"HEAD..origin/{self.branch}").stdout.strip())
        except (BackendUnavailable, ValueError) as e:
            self.log.warning(
                f"Failed to get git status: {e}",
                extra={"event": "git.status_failed"},
            )
            return GitSyncStatus(status="error", error=f"Failed to get git status: {e}")

        if ahead and behind:
            status = "diverged"
        elif ahead:
            status = "ahead"
        elif behind:
            status = "behind"
        else:
            status = "synced"
        return GitSyncStatus(
            status=status,
            local_commits=ahead,
            remote_commits=behind,
            last_sync=now_iso(),
        )
