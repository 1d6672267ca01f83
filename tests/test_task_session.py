"""
Tests for TaskSession coordination of context and checkpoints.
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from agent_rewind.config import (
    CheckpointConfig,
    ConfigModel,
    ContextConfig,
    ModelWindowConfig,
    PersistenceConfig,
)
from agent_rewind.errors import (
    RestoreVerificationError,
    ShadowRepositoryError,
    TaskAbortedError,
)
from agent_rewind.task_session import TaskSession
from agent_rewind.tools.context_management.models import TruncationRange
from tests.conftest import make_history, requires_git


def make_config(storage, enabled=True):
    return ConfigModel(
        context=ContextConfig(
            flush_debounce_seconds=0.05,
            prune_interval_seconds=60,
            known_models={"tiny": ModelWindowConfig(context_window_tokens=4260,
                                                    reserved_output_tokens=1000)},
        ),
        checkpoints=CheckpointConfig(enabled=enabled, watch_ignore_files=False),
        persistence=PersistenceConfig(storage_root=str(storage)),
    )


@pytest.fixture
def mock_tracker():
    tracker = MagicMock()
    tracker.commit.return_value = "abc123"
    tracker.restore.side_effect = lambda commit_hash: commit_hash
    return tracker


@pytest.fixture
def session(workspace, estimator, mock_tracker):
    work, storage = workspace
    session = TaskSession("task-1", str(work), config=make_config(storage),
                          estimator=estimator, tracker=mock_tracker)
    yield session
    session.close()


class TestContext:
    def test_prepare_request_by_model_name(self, session):
        history = make_history(40)
        effective = session.prepare_request(history, "tiny")

        assert len(effective) == 29
        assert session.context.deleted_range == TruncationRange(1, 11)

    def test_unknown_model(self, session):
        with pytest.raises(ValueError):
            session.prepare_request(make_history(2), "no-such-model")

    def test_state_is_flushed_on_close_and_reloaded(self, workspace, estimator, mock_tracker):
        work, storage = workspace
        config = make_config(storage)
        session = TaskSession("task-1", str(work), config=config,
                              estimator=estimator, tracker=mock_tracker)
        history = make_history(40)
        session.prepare_request(history, "tiny")
        session.close()

        assert (storage / "tasks" / "task-1" / "context_overlay.json").exists()

        resumed = TaskSession("task-1", str(work), config=config,
                              estimator=estimator, tracker=mock_tracker)
        try:
            assert resumed.load() == history
            assert resumed.context.deleted_range == TruncationRange(1, 11)
        finally:
            resumed.close()

    def test_untruncated_history_is_flushed_on_close(self, workspace, estimator, mock_tracker):
        work, storage = workspace
        config = make_config(storage)
        session = TaskSession("task-1", str(work), config=config,
                              estimator=estimator, tracker=mock_tracker)
        history = make_history(6)
        assert session.prepare_request(history, "tiny") == history
        session.close()

        resumed = TaskSession("task-1", str(work), config=config,
                              estimator=estimator, tracker=mock_tracker)
        try:
            assert resumed.load() == history
            assert resumed.context.deleted_range is None
        finally:
            resumed.close()

    def test_record_file_read_pass_through(self, session):
        session.context.attach_history(make_history(4, words=3))
        assert session.record_file_read(3, "a.py") == []


class TestToolHooks:
    def test_commit_scheduled_after_file_change(self, session, mock_tracker):
        session.before_tool_execution(mutates_files=True)
        future = session.after_tool_execution(changed_files=True)
        session.before_tool_execution(mutates_files=True)

        assert future.done()
        assert future.result() == "abc123"
        mock_tracker.commit.assert_called_once()

    def test_no_commit_without_changes(self, session, mock_tracker):
        assert session.after_tool_execution(changed_files=False) is None
        mock_tracker.commit.assert_not_called()

    def test_abort_blocks_tools_and_commits(self, session, mock_tracker):
        session.abort()

        with pytest.raises(TaskAbortedError):
            session.before_tool_execution()
        assert session.after_tool_execution(changed_files=True) is None
        with pytest.raises(TaskAbortedError):
            session.commit()
        mock_tracker.commit.assert_not_called()

    def test_commit_failure_is_soft(self, session, mock_tracker):
        mock_tracker.commit.side_effect = ShadowRepositoryError("git exploded")
        assert session.commit().result() is None

    def test_verification_failure_marks_session_degraded(self, session, mock_tracker):
        mock_tracker.restore.side_effect = RestoreVerificationError("aaa", "bbb")

        with pytest.raises(RestoreVerificationError):
            session.restore("aaa")
        assert session.degraded

    def test_async_commit_and_restore(self, session):
        async def run():
            commit_hash = await session.commit_async()
            return commit_hash, await session.restore_async(commit_hash)

        assert asyncio.run(run()) == ("abc123", "abc123")


def test_disabled_checkpoints(workspace, estimator):
    work, storage = workspace
    session = TaskSession("task-1", str(work), config=make_config(storage, enabled=False),
                          estimator=estimator)
    try:
        assert session.tracker is None
        assert session.after_tool_execution(changed_files=True) is None
        with pytest.raises(ShadowRepositoryError):
            session.commit()
    finally:
        session.close()


@requires_git
def test_end_to_end_checkpoint_and_restore(workspace, estimator):
    work, storage = workspace
    with TaskSession("task-1", str(work), config=make_config(storage),
                     estimator=estimator) as session:
        session.before_tool_execution()
        (work / "main.py").write_text("print('v1')\n")
        first = session.after_tool_execution(changed_files=True).result()

        session.before_tool_execution()
        (work / "main.py").write_text("print('v2')\n")
        session.after_tool_execution(changed_files=True)
        session.before_tool_execution()

        assert len(session.list_checkpoints()) == 2
        assert "+print('v2')" in session.diff(first)

        session.restore(first)
        assert (work / "main.py").read_text() == "print('v1')\n"
        assert [c.relative_path for c in session.changed_files(first)] == []
