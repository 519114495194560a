"""Tests for the git-backed provider.

Most tests script git through ``FakeGitRunner``; ``TestWithRealGit`` runs
against a local bare repository when git is installed.
"""

import json
import subprocess

import pytest

from conftest import make_entry, write_entry_file
from devlog_store.config import GitStorageConfig
from devlog_store.errors import GitCommandError
from devlog_store.git.operations import GitResult
from devlog_store.git.repository import RepositoryStructure
from devlog_store.models import EntryStatus
from devlog_store.storage.git_storage import GitStorageProvider

DIRTY = GitResult(["status"], 0, " M .devlog/index.json\n", "")


@pytest.fixture
def provider(git_config, fake_git):
    fake_git.responses["status"] = DIRTY
    return GitStorageProvider(git_config, runner=fake_git)


def commit_messages(fake_git):
    return [args[2] for args in fake_git.commands() if args[0] == "commit"]


class TestInitialize:
    def test_first_use_clones_and_commits_layout(self, provider, fake_git, git_config):
        provider.initialize()
        verbs = fake_git.verbs()
        assert verbs[0] == "clone"
        assert commit_messages(fake_git) == ["Initialize devlog structure"]
        assert verbs[-1] == "push"
        assert (git_config.local_path / ".devlog" / "entries").is_dir()
        assert (git_config.local_path / ".gitignore").is_file()

    def test_existing_working_copy_is_pulled(self, provider, fake_git, git_config):
        (git_config.local_path / ".git").mkdir(parents=True)
        RepositoryStructure(git_config.local_path).initialize()

        provider.initialize()
        assert fake_git.verbs() == ["pull"]
        assert commit_messages(fake_git) == []

    def test_initialize_twice_is_a_no_op(self, provider, fake_git):
        provider.initialize()
        count = len(fake_git.calls)
        provider.initialize()
        assert len(fake_git.calls) == count

    def test_clone_failure_propagates(self, git_config, fake_git):
        fake_git.responses["clone"] = GitResult([], 128, "", "fatal: repository not found")
        with pytest.raises(GitCommandError) as exc_info:
            GitStorageProvider(git_config, runner=fake_git).initialize()
        assert "repository not found" in exc_info.value.stderr

    def test_no_commit_without_auto_sync(self, git_config, fake_git):
        git_config.auto_sync = False
        fake_git.responses["status"] = DIRTY
        provider = GitStorageProvider(git_config, runner=fake_git)
        provider.initialize()
        provider.save(make_entry())
        assert commit_messages(fake_git) == []


class TestEntries:
    """Tests for the provider contract on top of the working copy."""

    def test_save_writes_file_and_commits(self, provider, fake_git, git_config):
        saved = provider.save(make_entry("Add login"))
        assert saved.id == 1
        assert (git_config.local_path / ".devlog" / "entries" / "001-add-login.json").is_file()
        assert commit_messages(fake_git)[-1] == "Update devlog entry 1: Add login"
        assert fake_git.verbs()[-1] == "push"

    def test_ids_follow_repository_index(self, provider):
        assert provider.save(make_entry("a")).id == 1
        assert provider.save(make_entry("b")).id == 2
        assert provider.next_id() == 3

    def test_get_list_search_stats(self, provider):
        provider.save(make_entry("Add login", status=EntryStatus.DONE))
        provider.save(make_entry("Fix crash"))
        assert provider.get(1).title == "Add login"
        assert provider.exists(2)
        assert [e.title for e in provider.search("crash")] == ["Fix crash"]
        assert provider.get_stats().by_status["done"] == 1
        assert len(provider.list()) == 2

    def test_delete_commits(self, provider, fake_git, git_config):
        provider.save(make_entry())
        provider.delete(1)
        assert provider.get(1) is None
        assert commit_messages(fake_git)[-1] == "Delete devlog entry 1"
        assert list((git_config.local_path / ".devlog" / "entries").iterdir()) == []

    def test_validate(self, provider):
        provider.save(make_entry())
        assert provider.validate().valid


class TestPullConflicts:
    """A pull that stops on conflicts is resolved and committed."""

    def conflicted_entry(self, local_title, local_ts, remote_title, remote_ts):
        def body(title, ts):
            data = make_entry(title, id=1, created_at=local_ts, updated_at=ts).to_dict()
            return json.dumps(data, indent=2)

        return (
            f"<<<<<<< HEAD\n{body(local_title, local_ts)}\n=======\n"
            f"{body(remote_title, remote_ts)}\n>>>>>>> origin/main\n"
        )

    def test_conflicts_resolved_by_timestamp(self, provider, fake_git, git_config):
        root = git_config.local_path
        (root / ".git").mkdir(parents=True)
        RepositoryStructure(root).initialize()
        entry_file = root / ".devlog" / "entries" / "001-add-login.json"
        entry_file.write_text(
            self.conflicted_entry(
                "Add login", "2024-01-01T00:00:00.000+00:00",
                "Add login (remote)", "2024-02-01T00:00:00.000+00:00",
            ),
            encoding="utf-8",
        )
        fake_git.responses["pull"] = GitResult([], 1, "CONFLICT (content)", "")
        fake_git.responses["diff"] = GitResult([], 0, ".devlog/entries/001-add-login.json\n", "")

        provider.initialize()

        assert json.loads(entry_file.read_text(encoding="utf-8"))["title"] == "Add login (remote)"
        assert ["add", "--", ".devlog/entries/001-add-login.json"] in fake_git.commands()
        assert commit_messages(fake_git) == ["Resolve devlog conflicts (timestamp-wins)"]
        # Index was rebuilt from the resolved file
        assert provider.get(1).title == "Add login (remote)"
        assert provider.next_id() == 2

    def test_conflicted_index_keeps_local_side_then_rebuilds(self, provider, git_config):
        root = git_config.local_path
        (root / ".git").mkdir(parents=True)
        structure = RepositoryStructure(root)
        structure.initialize()
        write_entry_file(
            structure.entries_path / "004-remote.json",
            make_entry("remote", id=4, created_at="2024-01-01T00:00:00.000+00:00",
                       updated_at="2024-01-01T00:00:00.000+00:00").to_dict(),
        )
        structure.index_path.write_text(
            '<<<<<<< HEAD\n{"version": "1.0", "entries": {}, "lastId": 0}\n=======\n'
            '{"version": "1.0", "entries": {}, "lastId": 9}\n>>>>>>> origin/main\n',
            encoding="utf-8",
        )
        resolved = provider.resolve_conflicts(files=[structure.index_path.relative_to(root)])
        assert resolved == [structure.index_path.relative_to(root)]
        assert json.loads(structure.index_path.read_text(encoding="utf-8"))["lastId"] == 0

        provider.initialize()
        assert provider.get(4).title == "remote"
        assert provider.next_id() == 5

    def test_pull_failure_without_conflicts_propagates(self, provider, fake_git, git_config):
        (git_config.local_path / ".git").mkdir(parents=True)
        fake_git.responses["pull"] = GitResult([], 1, "", "fatal: could not read from remote")
        with pytest.raises(GitCommandError):
            provider.initialize()


class TestSync:
    def test_sync_pulls_commits_and_pushes(self, provider, fake_git):
        provider.initialize()
        fake_git.calls.clear()
        result = provider.sync()
        assert fake_git.verbs()[0] == "pull"
        assert commit_messages(fake_git) == ["Sync devlog entries"]
        assert fake_git.verbs()[-1] == "push"
        assert result.committed is True
        assert result.resolved_files == []

    def test_remote_status(self, provider, fake_git):
        fake_git.responses["rev-list"] = [
            GitResult([], 0, "1\n", ""),
            GitResult([], 0, "0\n", ""),
        ]
        assert provider.get_remote_status().status == "ahead"


def git_log(repo):
    proc = subprocess.run(
        ["git", "--git-dir", str(repo), "log", "--format=%s", "main"],
        capture_output=True, text=True, check=True,
    )
    return proc.stdout.splitlines()


class TestWithRealGit:
    """End-to-end against a local bare remote."""

    def test_save_is_pushed_and_visible_to_another_clone(self, bare_remote, temp_project):
        first = GitStorageProvider(
            GitStorageConfig(repository=str(bare_remote), local_path=temp_project / "one")
        )
        first.initialize()
        saved = first.save(make_entry("Add login"))
        assert saved.id == 1
        assert git_log(bare_remote)[:2] == [
            "Update devlog entry 1: Add login",
            "Initialize devlog structure",
        ]

        second = GitStorageProvider(
            GitStorageConfig(repository=str(bare_remote), local_path=temp_project / "two")
        )
        second.initialize()
        assert second.get(1).title == "Add login"
        assert second.save(make_entry("Fix crash")).id == 2

        first.sync()
        assert first.get(2).title == "Fix crash"
        assert first.get_remote_status().status == "synced"

    def test_sync_concludes_merge_that_keeps_local_tree(self, bare_remote, temp_project):
        first = GitStorageProvider(
            GitStorageConfig(repository=str(bare_remote), local_path=temp_project / "one")
        )
        first.initialize()
        first.save(make_entry("Add login", description="original"))

        second = GitStorageProvider(
            GitStorageConfig(repository=str(bare_remote), local_path=temp_project / "two")
        )
        second.initialize()
        theirs = second.get(1)
        theirs.description = "edited on two"
        second.save(theirs)

        # The local edit is newer, so resolution reproduces the local tree
        ours = first.get(1)
        ours.description = "edited on one"
        ours.updated_at = "2999-01-01T00:00:00.000+00:00"
        with pytest.raises(GitCommandError):
            first.save(ours)

        first.sync()
        assert not (temp_project / "one" / ".git" / "MERGE_HEAD").exists()
        assert first.get(1).description == "edited on one"
        assert "Resolve devlog conflicts (timestamp-wins)" in git_log(bare_remote)

        second.sync()
        assert second.get(1).description == "edited on one"
