"""
Context Manager: the per-request entry point for keeping a task's conversation
inside the active model's token budget.

It combines the ContextStore (non-destructive edits) with the
TruncationPlanner (which span to hide next) and owns the task's persisted
truncation range.
"""

import json
import logging
import threading
import time
from typing import List, Optional, Sequence

from agent_rewind.errors import ContextExhaustedError, InvalidIndexError
from agent_rewind.persistence import PersistenceGateway
from agent_rewind.tools.context_management.context_store import ContextStore
from agent_rewind.tools.context_management.models import (
    Message,
    ModelContextProfile,
    ToolResultBlock,
    TruncationRange,
    UpdateType,
)
from agent_rewind.tools.context_management.token_budget import TokenEstimator
from agent_rewind.tools.context_management.truncation_planner import (
    EXHAUSTED,
    TruncationPlanner,
)

logger = logging.getLogger(__name__)

TRUNCATION_NOTICE = (
    "[NOTE] Some earlier conversation history has been removed to stay within "
    "the context window. The original task is kept above and the most recent "
    "messages are kept below."
)


class ContextManager:
    """Keeps the effective history of one task within budget."""

    def __init__(self, task_id: str,
                 store: Optional[ContextStore] = None,
                 planner: Optional[TruncationPlanner] = None,
                 estimator: Optional[TokenEstimator] = None,
                 persistence: Optional[PersistenceGateway] = None,
                 tail_keep: int = 10,
                 lock: Optional[threading.RLock] = None):
        self.task_id = task_id
        self._lock = lock or threading.RLock()
        self.store = store or ContextStore(tail_keep=tail_keep, lock=self._lock)
        self.planner = planner or TruncationPlanner(tail_keep=self.store.tail_keep)
        self.estimator = estimator or TokenEstimator()
        self.persistence = persistence
        self.deleted_range: Optional[TruncationRange] = None
        self._history: List[Message] = []

    # ---------------------------------------------------------------- history

    def attach_history(self, raw_history: List[Message]) -> None:
        """Point the manager at the task's (append-only) raw history.

        A new or grown history marks the task state dirty so it gets flushed.
        """
        with self._lock:
            changed = (raw_history is not self._history
                       or len(raw_history) != self.store.message_count)
            self._history = raw_history
            self.store.track_history(raw_history)
            if changed:
                self.store.notify_changed()

    @property
    def history(self) -> List[Message]:
        return self._history

    def effective_history(self, raw_history: Optional[Sequence[Message]] = None) -> List[Message]:
        history = self._history if raw_history is None else raw_history
        return self.store.get_effective_messages(history, self.deleted_range)

    # ---------------------------------------------------------------- request

    def prepare_request(self, raw_history: List[Message],
                        model_profile: ModelContextProfile) -> List[Message]:
        """
        Return the history to send for the next model call.

        If the rendered history fits the profile's safe budget it is returned
        as is. Otherwise the truncation range is widened until it fits.
        Switching models just means passing a different profile; ranges
        already elided stay elided.

        Raises:
            ContextExhaustedError: no further truncation is possible
        """
        with self._lock:
            self.attach_history(raw_history)
            budget = model_profile.safe_budget
            effective = self.effective_history()
            tokens = self.estimator.estimate_tokens_for_messages(effective)

            while tokens > budget:
                ratio = tokens / budget if budget > 0 else float("inf")
                planned = self.planner.plan(
                    len(raw_history), self.deleted_range, ratio,
                    roles=[m.role for m in raw_history],
                )
                if planned is EXHAUSTED:
                    raise ContextExhaustedError(
                        f"History of {len(raw_history)} messages needs {tokens} tokens, "
                        f"budget is {budget}, and nothing more can be elided",
                        component="ContextManager",
                        task_id=self.task_id,
                    )
                self._extend_range(planned)
                effective = self.effective_history()
                tokens = self.estimator.estimate_tokens_for_messages(effective)

            return effective

    def _extend_range(self, planned: TruncationRange) -> None:
        previous = self.deleted_range
        if previous is not None:
            planned = TruncationRange(min(previous.start, planned.start),
                                      max(previous.end, planned.end))
        self.deleted_range = planned
        logger.info("Task %s: context truncated to hide messages %d-%d",
                    self.task_id, planned.start, planned.end)
        if previous is None and self._history and self._history[0].blocks:
            self.store.record_update(0, 0, UpdateType.NOTE, TRUNCATION_NOTICE)
        self.store.notify_changed()

    # ------------------------------------------------------------ tool hooks

    def record_file_read(self, message_index: int, file_path: str) -> List[int]:
        """Hook for the tool layer, called after a file-read result is appended.

        Returns:
            Message indices whose earlier read of ``file_path`` was collapsed.
        """
        with self._lock:
            self.attach_history(self._history)
            if not 0 <= message_index < len(self._history):
                raise InvalidIndexError(
                    f"Message index {message_index} outside known bounds [0, {len(self._history)})",
                    component="ContextManager",
                )
            block_index = self._find_file_read_block(self._history[message_index], file_path)
            floor = self.deleted_range.end + 1 if self.deleted_range else 0
            return self.store.record_file_read(message_index, block_index, file_path, floor=floor)

    @staticmethod
    def _find_file_read_block(message: Message, file_path: str) -> int:
        fallback = None
        for block_index in range(len(message.blocks) - 1, -1, -1):
            block = message.blocks[block_index]
            if isinstance(block, ToolResultBlock):
                if block.file_path == file_path:
                    return block_index
                if fallback is None:
                    fallback = block_index
        if fallback is None:
            # plain text result: the read is the last block
            return len(message.blocks) - 1
        return fallback

    def prune_updates(self, retention_seconds: float) -> int:
        """Drop overlay updates older than the retention window."""
        return self.store.prune_older_than(time.time() - retention_seconds)

    # ----------------------------------------------------------- persistence

    def serialize(self) -> str:
        with self._lock:
            document = self.store.to_dict()
            document["deleted_range"] = self.deleted_range.to_list() if self.deleted_range else None
            return json.dumps(document, sort_keys=True)

    def restore_serialized(self, payload: str) -> None:
        document = json.loads(payload)
        with self._lock:
            self.store.load_dict(document)
            self.deleted_range = TruncationRange.from_list(document.get("deleted_range"))

    def flush(self) -> None:
        """Write the overlay document and raw history through the gateway."""
        if self.persistence is None:
            return
        with self._lock:
            payload = self.serialize()
            history = [m.to_dict() for m in self._history]
        self.persistence.save_overlay(self.task_id, payload)
        self.persistence.save_history(self.task_id, history)

    def load(self) -> List[Message]:
        """Reload persisted overlay and history; returns the raw history."""
        if self.persistence is None:
            return self._history
        history = [Message.from_dict(m) for m in self.persistence.load_history(self.task_id)]
        payload = self.persistence.load_overlay(self.task_id)
        with self._lock:
            if payload:
                self.restore_serialized(payload)
            # already on disk; nothing to flush
            self._history = history
            self.store.track_history(history)
        logger.info("Task %s: reloaded %d messages, deleted range %s",
                    self.task_id, len(history),
                    self.deleted_range.to_list() if self.deleted_range else None)
        return history
