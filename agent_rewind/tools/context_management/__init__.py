"""Context window management utilities for agent-rewind."""

from .background_optimizer import BackgroundOptimizer, DebouncedFlusher
from .context_manager import ContextManager
from .context_store import ContextStore
from .models import (
    ContextUpdate,
    Message,
    ModelContextProfile,
    Role,
    TextBlock,
    ToolResultBlock,
    TruncationRange,
    UpdateType,
)
from .token_budget import TokenEstimator
from .truncation_planner import TruncationPlanner

__all__ = [
    "BackgroundOptimizer",
    "DebouncedFlusher",
    "ContextManager",
    "ContextStore",
    "ContextUpdate",
    "Message",
    "ModelContextProfile",
    "Role",
    "TextBlock",
    "ToolResultBlock",
    "TruncationRange",
    "UpdateType",
    "TokenEstimator",
    "TruncationPlanner",
]
