"""Shared pytest fixtures for devlog-store tests."""

import json
import os
import shutil
import subprocess
from pathlib import Path

import pytest

from devlog_store.config import GitStorageConfig, JsonStorageConfig
from devlog_store.errors import GitCommandError
from devlog_store.git.operations import GitResult
from devlog_store.models import DevlogEntry, EntryPriority, EntryType, Note, NoteCategory
from devlog_store.storage.json_storage import JsonStorageProvider
from devlog_store.storage.sqlite_storage import SQLiteStorageProvider


@pytest.fixture
def temp_project(tmp_path):
    """A temporary project directory."""
    return tmp_path


@pytest.fixture
def devlog_dir(temp_project):
    return temp_project / ".devlog"


@pytest.fixture
def json_provider(devlog_dir):
    """Initialized JSON provider in a temp directory."""
    provider = JsonStorageProvider(JsonStorageConfig(directory=devlog_dir))
    provider.initialize()
    yield provider
    provider.dispose()


@pytest.fixture
def sqlite_provider(devlog_dir):
    """Initialized SQLite provider backed by a temp database file."""
    provider = SQLiteStorageProvider(devlog_dir / "devlog.db")
    provider.initialize()
    yield provider
    provider.dispose()


def make_entry(title="Add login", type=EntryType.FEATURE, **kwargs):
    """Build an entry with sensible defaults."""
    return DevlogEntry(title=title, type=type, **kwargs)


def rich_entry(title="Rich entry"):
    """An entry with every nested structure populated."""
    entry = make_entry(
        title,
        description="Longer description\nwith two lines",
        priority=EntryPriority.HIGH,
        assignee="alice",
        tags=["auth", "backend"],
        files=["src/app.py"],
        related_devlogs=["other-entry"],
        estimated_hours=3.5,
    )
    entry.notes.append(Note("note-1", "2024-05-01T10:00:00.000+00:00", "First note"))
    entry.notes.append(Note(
        "note-2", "2024-05-02T10:00:00.000+00:00", "Second note",
        category=NoteCategory.SOLUTION, files=["src/app.py"], code_changes="+1 -0",
    ))
    entry.context.business_context = "Users need to sign in"
    entry.context.technical_context = "OAuth via provider"
    entry.context.acceptance_criteria = ["Login works", "Logout works"]
    entry.ai_context.current_summary = "Halfway there"
    entry.ai_context.key_insights = ["Tokens expire hourly"]
    return entry


@pytest.fixture
def entry_factory():
    return make_entry


# ========== Git ==========

class FakeGitRunner:
    """Records git invocations and answers from a scripted table.

    ``responses`` maps the first git argument (``"pull"``, ``"status"``...)
    to a ``GitResult`` or an exception instance to raise. Anything not
    scripted succeeds with empty output. ``clone`` creates the target
    directory with a ``.git`` marker so the working copy looks real.
    """

    def __init__(self):
        self.calls = []
        self.responses = {}

    def run(self, args, cwd, env=None, check=True):
        args = list(args)
        self.calls.append((args, Path(cwd), dict(env or {})))
        response = self.responses.get(args[0])
        if isinstance(response, list):
            response = response.pop(0) if response else None
        if isinstance(response, Exception):
            raise response
        if response is None:
            response = GitResult(args, 0, "", "")
            if args[0] == "clone":
                (Path(args[-1]) / ".git").mkdir(parents=True, exist_ok=True)
        if check and response.returncode != 0:
            raise GitCommandError(args, response.returncode, response.stderr, response.stdout)
        return response

    def commands(self):
        return [call[0] for call in self.calls]

    def verbs(self):
        return [call[0][0] for call in self.calls]


@pytest.fixture
def fake_git():
    return FakeGitRunner()


@pytest.fixture
def git_config(temp_project):
    return GitStorageConfig(
        repository="https://example.com/team/devlog.git",
        local_path=temp_project / "clone",
    )


def _git(cwd, *args):
    subprocess.run(["git", *args], cwd=str(cwd), check=True, capture_output=True, text=True)


@pytest.fixture
def git_identity(monkeypatch):
    """Author/committer identity for real git commands."""
    for name in ("GIT_AUTHOR", "GIT_COMMITTER"):
        monkeypatch.setenv(f"{name}_NAME", "Devlog Test")
        monkeypatch.setenv(f"{name}_EMAIL", "devlog@example.com")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", os.devnull)
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")


@pytest.fixture
def bare_remote(temp_project, git_identity):
    """A bare repository with one commit on ``main``."""
    if shutil.which("git") is None:
        pytest.skip("git executable not available")
    remote = temp_project / "remote.git"
    seed = temp_project / "seed"
    _git(temp_project, "init", "--bare", "--initial-branch=main", str(remote))
    _git(temp_project, "init", "--initial-branch=main", str(seed))
    (seed / "README.md").write_text("devlog\n", encoding="utf-8")
    _git(seed, "add", "README.md")
    _git(seed, "commit", "-m", "Initial commit")
    _git(seed, "remote", "add", "origin", str(remote))
    _git(seed, "push", "origin", "main")
    return remote


def write_entry_file(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2), encoding="utf-8")
