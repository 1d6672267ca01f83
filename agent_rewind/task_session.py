"""
Task Session: one agent task's context manager and checkpoint tracker.

The session owns the per-task lock, a single git worker thread, the debounced
overlay flusher and the periodic pruning timer. Tool executions are bracketed
by ``before_tool_execution`` and ``after_tool_execution`` so a checkpoint
commit always finishes before the next file-mutating tool starts.
"""

import asyncio
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import List, Optional, Union

from agent_rewind.config import ConfigModel, get_config
from agent_rewind.errors import (
    RestoreVerificationError,
    ShadowRepositoryError,
    TaskAbortedError,
    log_exception,
)
from agent_rewind.persistence import JsonFilePersistence, PersistenceGateway
from agent_rewind.telemetry import TelemetrySink
from agent_rewind.tools.checkpoints.checkpoint_tracker import CheckpointTracker
from agent_rewind.tools.checkpoints.exclusions import ExclusionRuleSet
from agent_rewind.tools.checkpoints.models import Checkpoint, FileChange
from agent_rewind.tools.context_management.background_optimizer import (
    BackgroundOptimizer,
    DebouncedFlusher,
)
from agent_rewind.tools.context_management.context_manager import ContextManager
from agent_rewind.tools.context_management.models import Message, ModelContextProfile
from agent_rewind.tools.context_management.token_budget import TokenEstimator

logger = logging.getLogger(__name__)


class TaskSession:
    """Coordinates context and checkpoint state for a single task."""

    def __init__(self, task_id: str, working_dir: str,
                 config: Optional[ConfigModel] = None,
                 persistence: Optional[PersistenceGateway] = None,
                 estimator: Optional[TokenEstimator] = None,
                 telemetry: Optional[TelemetrySink] = None,
                 tracker: Optional[CheckpointTracker] = None):
        self.task_id = task_id
        self.working_dir = working_dir
        self.config = config or get_config()
        self.lock = threading.RLock()

        context_config = self.config.context
        checkpoint_config = self.config.checkpoints
        storage_root = self.config.persistence.storage_root

        self.persistence = persistence or JsonFilePersistence(storage_root)
        self.context = ContextManager(
            task_id,
            estimator=estimator or TokenEstimator(context_config.tokenizer_model),
            persistence=self.persistence,
            tail_keep=context_config.tail_keep,
            lock=self.lock,
        )
        self.flusher = DebouncedFlusher(self.context.flush, context_config.flush_debounce_seconds,
                                        self.lock, name=f"context-flush-{task_id}")
        self.context.store.on_change = self.flusher.mark_dirty
        self.optimizer = BackgroundOptimizer(self._prune, context_config.prune_interval_seconds,
                                             self.lock)

        self.exclusions: Optional[ExclusionRuleSet] = None
        self.tracker = tracker
        if self.tracker is None and checkpoint_config.enabled:
            self.exclusions = ExclusionRuleSet(working_dir, checkpoint_config.agent_ignore_file)
            self.tracker = CheckpointTracker.create(
                working_dir, task_id,
                storage_root=storage_root,
                config=checkpoint_config,
                exclusions=self.exclusions,
                telemetry=telemetry,
            )

        self._executor = ThreadPoolExecutor(max_workers=1,
                                            thread_name_prefix=f"checkpoint-{task_id}")
        self._pending_commit: Optional[Future] = None
        self._abort = threading.Event()
        self.degraded = False
        self._closed = False

    # ------------------------------------------------------------- lifecycle

    def start(self) -> "TaskSession":
        """Start background pruning and ignore-file watching."""
        self.optimizer.start()
        if self.exclusions is not None and self.config.checkpoints.watch_ignore_files:
            self.exclusions.start_watching()
        return self

    def __enter__(self) -> "TaskSession":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        """Flush pending state, stop the timers and wait for in-flight git work."""
        if self._closed:
            return
        self._closed = True
        self.flusher.close()
        self.optimizer.stop()
        self._executor.shutdown(wait=True)
        if self.exclusions is not None:
            self.exclusions.stop_watching()
        logger.info("Task %s: session closed", self.task_id)

    def delete(self) -> None:
        """Close the session and remove everything stored for the task."""
        self.close()
        if self.tracker is not None:
            self.tracker.delete()
        self.persistence.delete_task(self.task_id)

    def abort(self) -> None:
        """Stop new tool executions and commits; running git work is allowed to finish."""
        self._abort.set()
        logger.info("Task %s: abort requested", self.task_id)

    @property
    def aborted(self) -> bool:
        return self._abort.is_set()

    def _check_abort(self, operation: str) -> None:
        if self.aborted:
            raise TaskAbortedError(f"Task {self.task_id} was aborted",
                                   component="TaskSession", operation=operation,
                                   task_id=self.task_id)

    def _prune(self) -> None:
        self.context.prune_updates(self.config.context.update_retention_seconds)

    # --------------------------------------------------------------- context

    def load(self) -> List[Message]:
        """Resume a task from persisted state; returns the raw history."""
        history = self.context.load()
        if self.tracker is not None:
            self._executor.submit(self.tracker.initialize).result()
        return history

    def profile_for(self, model: Union[str, ModelContextProfile]) -> ModelContextProfile:
        if isinstance(model, ModelContextProfile):
            return model
        window = self.config.context.known_models.get(model)
        if window is None:
            raise ValueError(f"Unknown model: {model}")
        return ModelContextProfile.from_config(window,
                                               self.config.context.default_reserved_output_tokens)

    def prepare_request(self, raw_history: List[Message],
                        model: Union[str, ModelContextProfile]) -> List[Message]:
        return self.context.prepare_request(raw_history, self.profile_for(model))

    def record_file_read(self, message_index: int, file_path: str) -> List[int]:
        return self.context.record_file_read(message_index, file_path)

    def flush(self) -> bool:
        return self.flusher.flush_now()

    # ----------------------------------------------------------- tool hooks

    def before_tool_execution(self, mutates_files: bool = True) -> None:
        """Block until the previous checkpoint commit has landed.

        Raises:
            TaskAbortedError: the task was aborted
        """
        self._check_abort("before_tool_execution")
        if mutates_files:
            self.wait_for_pending_commit()

    def after_tool_execution(self, changed_files: bool) -> Optional[Future]:
        """Schedule a checkpoint if the tool changed files."""
        if not changed_files or self.tracker is None or self.aborted:
            return None
        return self.commit()

    def wait_for_pending_commit(self, timeout: Optional[float] = None) -> Optional[str]:
        pending = self._pending_commit
        if pending is None:
            return None
        return pending.result(timeout=timeout)

    # ----------------------------------------------------------- checkpoints

    def _require_tracker(self) -> CheckpointTracker:
        if self.tracker is None:
            raise ShadowRepositoryError("Checkpoints are disabled for this task",
                                        component="TaskSession", task_id=self.task_id)
        return self.tracker

    def commit(self) -> Future:
        """Schedule a checkpoint commit on the git worker.

        The future resolves to the commit hash, or None if the commit failed
        or the task was aborted before it started.
        """
        self._check_abort("commit")
        self._require_tracker()
        future = self._executor.submit(self._commit_job)
        self._pending_commit = future
        return future

    def _commit_job(self) -> Optional[str]:
        if self.aborted:
            logger.info("Task %s: skipping checkpoint, task aborted", self.task_id)
            return None
        try:
            return self.tracker.commit()
        except ShadowRepositoryError as e:
            log_exception(e, logger, component="TaskSession", operation="commit",
                          task_id=self.task_id, level=logging.WARNING)
            return None

    def restore_future(self, commit_hash: str) -> Future:
        tracker = self._require_tracker()
        return self._executor.submit(self._restore_job, tracker, commit_hash)

    def _restore_job(self, tracker: CheckpointTracker, commit_hash: str) -> str:
        try:
            return tracker.restore(commit_hash)
        except RestoreVerificationError as e:
            self.degraded = True
            log_exception(e, logger, component="TaskSession", operation="restore",
                          task_id=self.task_id)
            raise

    def restore(self, commit_hash: str) -> str:
        """Restore the working tree to a checkpoint and wait for it."""
        return self.restore_future(commit_hash).result()

    async def commit_async(self) -> Optional[str]:
        return await asyncio.wrap_future(self.commit())

    async def restore_async(self, commit_hash: str) -> str:
        return await asyncio.wrap_future(self.restore_future(commit_hash))

    def diff(self, from_hash: Optional[str] = None, to_hash: Optional[str] = None) -> str:
        tracker = self._require_tracker()
        return self._executor.submit(tracker.diff, from_hash, to_hash).result()

    def changed_files(self, from_hash: str, to_hash: Optional[str] = None) -> List[FileChange]:
        tracker = self._require_tracker()
        return self._executor.submit(tracker.changed_files, from_hash, to_hash).result()

    def list_checkpoints(self) -> List[Checkpoint]:
        tracker = self._require_tracker()
        return self._executor.submit(tracker.list_checkpoints).result()
