"""
Tests for the ShadowRepository against a real git binary.
"""

import subprocess
from pathlib import Path

import pytest

from agent_rewind.errors import (
    CheckpointNotFoundError,
    ProtectedDirectoryError,
    ShadowRepositoryError,
)
from agent_rewind.tools.checkpoints.models import ChangeType
from agent_rewind.tools.checkpoints.shadow_repository import ShadowRepository
from tests.conftest import requires_git

pytestmark = requires_git


@pytest.fixture
def repo(workspace):
    work, storage = workspace
    return ShadowRepository(str(work), "task-1", str(storage))


def test_initialization_is_idempotent(repo, workspace):
    work, storage = workspace
    assert repo.ensure_initialized() is True
    assert repo.ensure_initialized() is False
    assert repo.git_dir.is_dir()
    # nothing is written into the working directory
    assert not (work / ".git").exists()
    assert str(repo.git_dir).startswith(str(storage.resolve()))


def test_commit_and_reset_restore_bytes(repo, workspace):
    work, _ = workspace
    (work / "a.txt").write_bytes(b"one\r\n")
    (work / "sub").mkdir()
    (work / "sub" / "b.bin").write_bytes(bytes(range(256)))
    first = repo.stage_and_commit("first")

    (work / "a.txt").write_bytes(b"two\n")
    (work / "sub" / "b.bin").unlink()
    (work / "new.txt").write_text("new")
    repo.stage_and_commit("second")

    assert repo.reset_hard(first) == first
    assert (work / "a.txt").read_bytes() == b"one\r\n"
    assert (work / "sub" / "b.bin").read_bytes() == bytes(range(256))
    assert not (work / "new.txt").exists()


def test_excluded_files_survive_restore(repo, workspace):
    work, _ = workspace
    (work / ".gitignore").write_text("secret.txt\n")
    (work / "a.txt").write_text("one")
    first = repo.stage_and_commit("first")

    (work / "secret.txt").write_text("token")
    (work / "node_modules").mkdir()
    (work / "node_modules" / "lib.js").write_text("module")
    (work / "untracked.txt").write_text("scratch")

    repo.reset_hard(first)

    assert (work / "secret.txt").read_text() == "token"
    assert (work / "node_modules" / "lib.js").read_text() == "module"
    assert not (work / "untracked.txt").exists()


def test_restore_cleans_by_the_staging_rules_only(repo, workspace, tmp_path, monkeypatch):
    work, _ = workspace
    global_ignore = tmp_path / "global_ignore"
    global_ignore.write_text("*.scratch\n")
    global_config = tmp_path / "gitconfig"
    global_config.write_text(f"[core]\n\texcludesFile = {global_ignore}\n")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(global_config))

    (work / ".gitignore").write_text("build.out\n")
    (work / ".rewindignore").write_text("!build.out\n")
    first = repo.stage_and_commit("first")

    (work / "build.out").write_text("re-included by the agent ignore file")
    (work / "notes.scratch").write_text("ignored only by the global excludes file")
    repo.reset_hard(first)

    assert not (work / "build.out").exists()
    assert not (work / "notes.scratch").exists()


def test_newly_excluded_file_leaves_the_snapshot(repo, workspace):
    work, _ = workspace
    (work / "data.txt").write_text("data")
    first = repo.stage_and_commit("first")
    assert "data.txt" in repo.run_git(["ls-tree", "-r", "--name-only", first]).text

    (work / ".rewindignore").write_text("data.txt\n")
    second = repo.stage_and_commit("second")
    assert "data.txt" not in repo.run_git(["ls-tree", "-r", "--name-only", second]).text


def test_unknown_hash_leaves_tree_untouched(repo, workspace):
    work, _ = workspace
    (work / "a.txt").write_text("one")
    repo.stage_and_commit("first")
    (work / "a.txt").write_text("dirty")

    with pytest.raises(CheckpointNotFoundError):
        repo.reset_hard("deadbeefdeadbeef")
    with pytest.raises(CheckpointNotFoundError):
        repo.reset_hard("--not-a-hash")

    assert (work / "a.txt").read_text() == "dirty"


def test_unchanged_tree_still_commits(repo):
    first = repo.stage_and_commit("same")
    second = repo.stage_and_commit("same")
    assert first != second


def test_nested_repository_is_skipped(repo, workspace):
    work, _ = workspace
    nested = work / "vendor-lib"
    subprocess.run(["git", "init", "-q", str(nested)], check=True)
    (nested / "code.py").write_text("x = 1")
    (work / "main.py").write_text("y = 2")

    commit = repo.stage_and_commit("first")
    files = repo.run_git(["ls-tree", "-r", "--name-only", commit]).text.split()

    assert "main.py" in files
    assert not any(f.startswith("vendor-lib") for f in files)


class TestDiff:
    def test_working_tree_against_head(self, repo, workspace):
        work, _ = workspace
        (work / "a.txt").write_text("one\n")
        repo.stage_and_commit("first")
        (work / "a.txt").write_text("two\n")

        patch = repo.diff()
        assert "-one" in patch
        assert "+two" in patch

    def test_between_checkpoints(self, repo, workspace):
        work, _ = workspace
        (work / "a.txt").write_text("one\n")
        first = repo.stage_and_commit("first")
        (work / "a.txt").write_text("two\n")
        second = repo.stage_and_commit("second")

        patch = repo.diff(first, second)
        assert "-one" in patch and "+two" in patch
        assert repo.diff(second, second) == ""

    def test_to_without_from_is_rejected(self, repo):
        with pytest.raises(ValueError):
            repo.diff(to_hash="abcd")

    def test_changed_files_against_working_tree(self, repo, workspace):
        work, _ = workspace
        (work / "a.txt").write_text("one\n")
        (work / "gone.txt").write_text("bye\n")
        first = repo.stage_and_commit("first")
        (work / "a.txt").write_text("two\n")
        (work / "gone.txt").unlink()
        (work / "added.txt").write_text("hi\n")

        changes = {c.relative_path: c for c in repo.changed_files(first)}

        assert changes["a.txt"].change_type is ChangeType.MODIFIED
        assert changes["a.txt"].before == "one\n"
        assert changes["a.txt"].after == "two\n"
        assert changes["gone.txt"].change_type is ChangeType.DELETED
        assert changes["added.txt"].change_type is ChangeType.ADDED
        assert changes["added.txt"].absolute_path == str(Path(repo.working_dir) / "added.txt")
        assert repo.diff_count() == 3


def test_protected_directory_is_refused(tmp_path):
    repo = ShadowRepository(str(Path.home()), "task-1", str(tmp_path))
    with pytest.raises(ProtectedDirectoryError):
        repo.ensure_initialized()


def test_storage_inside_working_dir_is_refused(tmp_path):
    repo = ShadowRepository(str(tmp_path), "task-1", str(tmp_path / "store"))
    with pytest.raises(ShadowRepositoryError):
        repo.ensure_initialized()


def test_git_error_categories():
    categorize = ShadowRepository._categorize_git_error
    assert categorize("fatal: Unable to create '/x/index.lock': File exists.") == "lock"
    assert categorize("fatal: bad revision 'nope'") == "invalid_reference"
    assert categorize("error: Permission denied") == "permission"
    assert categorize("something else") == "unknown"
    assert categorize("") is None


def test_delete_removes_object_store(repo):
    repo.ensure_initialized()
    repo.delete()
    assert not repo.git_dir.exists()
