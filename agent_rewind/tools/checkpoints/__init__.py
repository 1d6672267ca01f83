"""Shadow-repository checkpoints for agent-rewind."""

from .checkpoint_tracker import CheckpointTracker, checkpoint_message
from .exclusions import ExclusionRuleSet, compute_for_directory
from .models import ChangeType, Checkpoint, CheckpointState, FileChange
from .shadow_repository import ShadowRepository

__all__ = [
    "CheckpointTracker",
    "checkpoint_message",
    "ExclusionRuleSet",
    "compute_for_directory",
    "ChangeType",
    "Checkpoint",
    "CheckpointState",
    "FileChange",
    "ShadowRepository",
]
