"""Checkpoint records and diff results."""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional


class CheckpointState(str, Enum):
    """Lifecycle of a checkpoint.

    PENDING -> COMMITTED -> ACTIVE on creation; ACTIVE -> SUPERSEDED when a
    later commit lands; any committed checkpoint -> ROLLED_BACK_TO on restore.
    """

    PENDING = "pending"
    COMMITTED = "committed"
    ACTIVE = "active"
    SUPERSEDED = "superseded"
    ROLLED_BACK_TO = "rolled_back_to"


_TRANSITIONS = {
    CheckpointState.PENDING: {CheckpointState.COMMITTED},
    CheckpointState.COMMITTED: {CheckpointState.ACTIVE, CheckpointState.SUPERSEDED,
                                CheckpointState.ROLLED_BACK_TO},
    CheckpointState.ACTIVE: {CheckpointState.SUPERSEDED, CheckpointState.ROLLED_BACK_TO},
    CheckpointState.SUPERSEDED: {CheckpointState.ROLLED_BACK_TO},
    CheckpointState.ROLLED_BACK_TO: {CheckpointState.SUPERSEDED, CheckpointState.ROLLED_BACK_TO},
}


@dataclass(frozen=True)
class Checkpoint:
    commit_hash: str
    task_id: str
    timestamp: float
    parent_hash: Optional[str] = None
    state: CheckpointState = CheckpointState.COMMITTED

    def transition(self, new_state: CheckpointState) -> "Checkpoint":
        """Return a copy in ``new_state``; the commit itself never changes."""
        if new_state not in _TRANSITIONS[self.state]:
            raise ValueError(f"Illegal checkpoint transition {self.state.value} -> {new_state.value}")
        return replace(self, state=new_state)


class ChangeType(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


@dataclass(frozen=True)
class FileChange:
    """One file's contents on both sides of a checkpoint diff."""

    relative_path: str
    absolute_path: str
    change_type: ChangeType
    before: str
    after: str
