"""
Sparse, non-destructive overlay of edits on top of raw conversation history.

The overlay is an append-only edit log addressed by (message index, block
index). Raw messages are never modified; the effective history is rendered on
demand from the raw messages, the overlay and the current truncation range.
"""

import bisect
import json
import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from agent_rewind.errors import InvalidIndexError
from agent_rewind.tools.context_management.models import (
    ContextUpdate,
    Message,
    TruncationRange,
    UpdateType,
)

logger = logging.getLogger(__name__)

DEFAULT_TAIL_KEEP = 10
SERIALIZATION_VERSION = 1

FILE_READ_PLACEHOLDER = (
    "[NOTE] This earlier read of {path} was removed to save context space. "
    "The latest contents are in message {later_index}."
)

BlockKey = Tuple[int, int]


class ContextStore:
    """Index-keyed edit log layered over a task's raw history."""

    def __init__(self, tail_keep: int = DEFAULT_TAIL_KEEP,
                 lock: Optional[threading.RLock] = None):
        self.tail_keep = tail_keep
        self._lock = lock or threading.RLock()
        self._overlay: Dict[int, Dict[int, List[ContextUpdate]]] = {}
        # file path -> [(message_index, block_index)] in read order
        self._file_reads: Dict[str, List[BlockKey]] = {}
        # block count per known message; defines the addressable bounds
        self._block_counts: List[int] = []
        self.on_change: Optional[Callable[[], None]] = None

    # ------------------------------------------------------------------ bounds

    def track_history(self, raw_history: Sequence[Message]) -> None:
        """Refresh the known message and block bounds from the raw history."""
        with self._lock:
            self._block_counts = [len(m.blocks) for m in raw_history]

    @property
    def message_count(self) -> int:
        return len(self._block_counts)

    def _check_bounds(self, message_index: int, block_index: int) -> None:
        if not 0 <= message_index < len(self._block_counts):
            raise InvalidIndexError(
                f"Message index {message_index} outside known bounds [0, {len(self._block_counts)})",
                component="ContextStore",
            )
        if not 0 <= block_index < self._block_counts[message_index]:
            raise InvalidIndexError(
                f"Block index {block_index} outside bounds of message {message_index} "
                f"({self._block_counts[message_index]} blocks)",
                component="ContextStore",
            )

    # ----------------------------------------------------------------- updates

    def record_update(self, message_index: int, block_index: int,
                      update_type: UpdateType, value: str,
                      timestamp: Optional[float] = None) -> ContextUpdate:
        """Append an update for a block, keeping each block's log ordered by timestamp."""
        with self._lock:
            self._check_bounds(message_index, block_index)
            update = ContextUpdate(
                timestamp=time.time() if timestamp is None else timestamp,
                update_type=UpdateType(update_type),
                value=value,
                message_index=message_index,
                block_index=block_index,
            )
            updates = self._overlay.setdefault(message_index, {}).setdefault(block_index, [])
            position = bisect.bisect_right([u.timestamp for u in updates], update.timestamp)
            updates.insert(position, update)
        self.notify_changed()
        return update

    def updates_for(self, message_index: int, block_index: int) -> List[ContextUpdate]:
        """Full audit log for one block, oldest first."""
        with self._lock:
            return list(self._overlay.get(message_index, {}).get(block_index, []))

    def latest_update(self, message_index: int, block_index: int) -> Optional[ContextUpdate]:
        with self._lock:
            updates = self._overlay.get(message_index, {}).get(block_index)
            return updates[-1] if updates else None

    def _latest_replacement(self, message_index: int, block_index: int) -> Optional[ContextUpdate]:
        for update in reversed(self._overlay.get(message_index, {}).get(block_index, [])):
            if update.update_type is UpdateType.REPLACE:
                return update
        return None

    # ------------------------------------------------------------ file reads

    def record_file_read(self, message_index: int, block_index: int, file_path: str,
                         floor: int = 0, timestamp: Optional[float] = None) -> List[int]:
        """Register a file read and collapse earlier verbatim reads of the same path.

        Only reads at or after ``floor`` (the first message past the current
        truncation range) are considered; anything below it is already hidden.

        Returns:
            Message indices whose block was replaced by a placeholder.
        """
        replaced: List[int] = []
        with self._lock:
            self._check_bounds(message_index, block_index)
            reads = self._file_reads.setdefault(file_path, [])
            for earlier_message, earlier_block in reversed(reads):
                if earlier_message < floor:
                    break
                if earlier_message >= message_index:
                    continue
                if self._latest_replacement(earlier_message, earlier_block) is not None:
                    # already collapsed; everything older was handled then
                    break
                self.record_update(
                    earlier_message, earlier_block, UpdateType.REPLACE,
                    FILE_READ_PLACEHOLDER.format(path=file_path, later_index=message_index),
                    timestamp=timestamp,
                )
                replaced.append(earlier_message)
            if (message_index, block_index) not in reads:
                reads.append((message_index, block_index))
                reads.sort()
        if replaced:
            logger.debug("Collapsed %d earlier read(s) of %s", len(replaced), file_path)
            self.notify_changed()
        return replaced

    # -------------------------------------------------------------- rendering

    def kept_indices(self, message_count: int,
                     truncation_range: Optional[TruncationRange]) -> List[int]:
        """Indices that survive the range: index 0, the tail, and everything outside it."""
        tail_start = max(0, message_count - self.tail_keep)
        return [
            i for i in range(message_count)
            if i == 0 or i >= tail_start or truncation_range is None or i not in truncation_range
        ]

    def render_message(self, index: int, message: Message) -> Message:
        blocks = self._overlay.get(index)
        if not blocks:
            return message
        rendered = []
        for block_index, block in enumerate(message.blocks):
            latest = blocks.get(block_index)
            if not latest:
                rendered.append(block)
                continue
            replacement = self._latest_replacement(index, block_index)
            body = replacement.value if replacement is not None else block.body
            if latest[-1].update_type is UpdateType.NOTE:
                body = f"{body}\n\n{latest[-1].value}"
            rendered.append(block.with_body(body))
        return Message(message.role, rendered)

    def get_effective_messages(self, raw_history: Sequence[Message],
                               truncation_range: Optional[TruncationRange]) -> List[Message]:
        """Render the history the model will see."""
        with self._lock:
            return [
                self.render_message(i, raw_history[i])
                for i in self.kept_indices(len(raw_history), truncation_range)
            ]

    # ---------------------------------------------------------------- pruning

    def prune_older_than(self, cutoff: float) -> int:
        """Drop updates older than ``cutoff``.

        The latest update and the latest REPLACE of each block are kept
        whatever their age, so a replaced block never renders its original.

        Returns:
            Number of updates discarded.
        """
        pruned = 0
        with self._lock:
            for message_index, blocks in self._overlay.items():
                for block_index, updates in blocks.items():
                    replacement = self._latest_replacement(message_index, block_index)
                    kept = [
                        u for u in updates
                        if u.timestamp >= cutoff or u is updates[-1] or u is replacement
                    ]
                    pruned += len(updates) - len(kept)
                    blocks[block_index] = kept
        if pruned:
            logger.debug("Pruned %d context updates older than %s", pruned, cutoff)
            self.notify_changed()
        return pruned

    # ---------------------------------------------------------- serialization

    def to_dict(self) -> dict:
        with self._lock:
            return {
                "version": SERIALIZATION_VERSION,
                "overlay": [
                    [message_index, [
                        [block_index, [u.to_dict() for u in blocks[block_index]]]
                        for block_index in sorted(blocks)
                    ]]
                    for message_index, blocks in sorted(self._overlay.items())
                ],
                "file_reads": {
                    path: [list(key) for key in keys]
                    for path, keys in sorted(self._file_reads.items())
                },
            }

    def serialize(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    def load_dict(self, data: dict) -> None:
        version = data.get("version", SERIALIZATION_VERSION)
        if version != SERIALIZATION_VERSION:
            raise ValueError(f"Unsupported overlay version: {version}")
        overlay: Dict[int, Dict[int, List[ContextUpdate]]] = {}
        for message_index, blocks in data.get("overlay", []):
            overlay[int(message_index)] = {
                int(block_index): [ContextUpdate.from_dict(u) for u in updates]
                for block_index, updates in blocks
            }
        file_reads = {
            path: [(int(m), int(b)) for m, b in keys]
            for path, keys in data.get("file_reads", {}).items()
        }
        with self._lock:
            self._overlay = overlay
            self._file_reads = file_reads

    @classmethod
    def deserialize(cls, payload: str, tail_keep: int = DEFAULT_TAIL_KEEP,
                    lock: Optional[threading.RLock] = None) -> "ContextStore":
        store = cls(tail_keep=tail_keep, lock=lock)
        store.load_dict(json.loads(payload))
        return store

    def notify_changed(self) -> None:
        if self.on_change is not None:
            self.on_change()
