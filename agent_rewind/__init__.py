"""agent-rewind: context-window management and workspace checkpoints for coding agents."""

# Components are loaded on first access so importing the package does not pull
# in tiktoken or watchdog until they are actually needed.
from importlib import import_module
from typing import Any

__version__ = "0.1.0"

_MODULE_MAP = {
    "TaskSession": "agent_rewind.task_session",
    "ContextManager": "agent_rewind.tools.context_management.context_manager",
    "ContextStore": "agent_rewind.tools.context_management.context_store",
    "TruncationPlanner": "agent_rewind.tools.context_management.truncation_planner",
    "TokenEstimator": "agent_rewind.tools.context_management.token_budget",
    "Message": "agent_rewind.tools.context_management.models",
    "ModelContextProfile": "agent_rewind.tools.context_management.models",
    "CheckpointTracker": "agent_rewind.tools.checkpoints.checkpoint_tracker",
    "ShadowRepository": "agent_rewind.tools.checkpoints.shadow_repository",
    "ExclusionRuleSet": "agent_rewind.tools.checkpoints.exclusions",
    "JsonFilePersistence": "agent_rewind.persistence",
    "PersistenceGateway": "agent_rewind.persistence",
    "AgentError": "agent_rewind.errors",
    "ContextExhaustedError": "agent_rewind.errors",
    "CheckpointNotFoundError": "agent_rewind.errors",
    "RestoreVerificationError": "agent_rewind.errors",
    "get_config": "agent_rewind.config",
}

__all__ = list(_MODULE_MAP.keys())


def __getattr__(name: str) -> Any:
    """Dynamically import objects on first access."""
    module_path = _MODULE_MAP.get(name)
    if module_path is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    module = import_module(module_path)
    return getattr(module, name)
