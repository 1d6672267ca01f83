"""Config manager module for agent-rewind.

Handles configuration loading and default parameters for the context-window
manager and the checkpoint subsystem.
"""

import os
import json
import logging
import threading
from typing import Optional, Dict, Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

_config_instance = None
_config_lock = threading.Lock()

# Storage root for shadow repositories and persisted task state. Must live
# outside any working directory that gets checkpointed.
STORAGE_ROOT = os.getenv('AGENT_REWIND_STORAGE_ROOT',
                         os.path.join(os.path.expanduser("~"), ".agent_rewind"))

# Context window management
CONTEXT_TAIL_KEEP = int(os.getenv('CONTEXT_TAIL_KEEP', '10'))
CONTEXT_TOKENIZER_MODEL = os.getenv('CONTEXT_TOKENIZER_MODEL', 'gpt-4')
CONTEXT_FLUSH_DEBOUNCE = float(os.getenv('CONTEXT_FLUSH_DEBOUNCE', '1.0'))
CONTEXT_PRUNE_INTERVAL = float(os.getenv('CONTEXT_PRUNE_INTERVAL', '300'))
CONTEXT_UPDATE_RETENTION = float(os.getenv('CONTEXT_UPDATE_RETENTION', '3600'))
# Output allowance used when a model has no explicit reservation
DEFAULT_RESERVED_OUTPUT_TOKENS = int(os.getenv('DEFAULT_RESERVED_OUTPUT_TOKENS', '40000'))

# Checkpoint parameters
CHECKPOINT_GIT_TIMEOUT = float(os.getenv('CHECKPOINT_GIT_TIMEOUT', '120.0'))
CHECKPOINT_MAX_RETRIES = int(os.getenv('CHECKPOINT_MAX_RETRIES', '3'))
CHECKPOINT_RETRY_DELAY = float(os.getenv('CHECKPOINT_RETRY_DELAY', '0.2'))
CHECKPOINT_IGNORE_FILE = os.getenv('CHECKPOINT_IGNORE_FILE', '.rewindignore')
CHECKPOINT_WATCH_IGNORE_FILES = os.getenv('CHECKPOINT_WATCH_IGNORE_FILES', 'true').lower() == 'true'


class ModelWindowConfig(BaseModel):
    """Context window and output reservation for one model."""

    context_window_tokens: int = Field(gt=0)
    reserved_output_tokens: Optional[int] = Field(default=None, ge=0)


def _default_known_models() -> Dict[str, ModelWindowConfig]:
    return {
        "claude-sonnet-4": ModelWindowConfig(context_window_tokens=200_000),
        "claude-opus-4": ModelWindowConfig(context_window_tokens=200_000),
        "gpt-4o": ModelWindowConfig(context_window_tokens=128_000),
        "gpt-4.1": ModelWindowConfig(context_window_tokens=1_000_000),
        "deepseek-chat": ModelWindowConfig(context_window_tokens=64_000),
    }


class ContextConfig(BaseModel):
    """Settings for the context-window manager."""

    tail_keep: int = Field(default=CONTEXT_TAIL_KEEP, ge=0)
    tokenizer_model: str = CONTEXT_TOKENIZER_MODEL
    flush_debounce_seconds: float = Field(default=CONTEXT_FLUSH_DEBOUNCE, gt=0)
    prune_interval_seconds: float = Field(default=CONTEXT_PRUNE_INTERVAL, gt=0)
    update_retention_seconds: float = Field(default=CONTEXT_UPDATE_RETENTION, ge=0)
    default_reserved_output_tokens: int = Field(default=DEFAULT_RESERVED_OUTPUT_TOKENS, ge=0)
    known_models: Dict[str, ModelWindowConfig] = Field(default_factory=_default_known_models)


class CheckpointConfig(BaseModel):
    """Settings for the shadow repository and checkpoint tracker."""

    enabled: bool = True
    git_timeout: float = Field(default=CHECKPOINT_GIT_TIMEOUT, gt=0)
    max_retries: int = Field(default=CHECKPOINT_MAX_RETRIES, ge=0)
    retry_delay: float = Field(default=CHECKPOINT_RETRY_DELAY, ge=0)
    agent_ignore_file: str = CHECKPOINT_IGNORE_FILE
    watch_ignore_files: bool = CHECKPOINT_WATCH_IGNORE_FILES
    bot_name: str = "agent-rewind"
    bot_email: str = "checkpoints@agent-rewind.invalid"


class PersistenceConfig(BaseModel):
    """Where per-task state is written."""

    storage_root: str = STORAGE_ROOT


class ConfigModel(BaseModel):
    """Typed configuration validated by Pydantic."""

    model_config = ConfigDict(extra="allow")

    context: ContextConfig = Field(default_factory=ContextConfig)
    checkpoints: CheckpointConfig = Field(default_factory=CheckpointConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)


class Config:
    """Configuration manager for agent-rewind.

    Loads defaults from environment variables and merges an optional JSON
    configuration file on top of them.
    """

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or os.getenv('AGENT_REWIND_CONFIG')

        # Flag to track if config loading failed
        self.load_failed = False

        self.settings: ConfigModel = ConfigModel()
        self._settings_lock = threading.RLock()

    @property
    def config(self) -> Dict[str, Any]:
        """Dictionary representation of the current settings."""
        with self._settings_lock:
            return self.settings.model_dump()

    @config.setter
    def config(self, new_config: Dict[str, Any]) -> None:
        with self._settings_lock:
            try:
                self.settings = ConfigModel(**new_config)
            except ValidationError as exc:
                self.load_failed = True
                raise ValueError(f"Invalid configuration: {exc}") from exc

    def get_default_config(self) -> Dict[str, Any]:
        """Return default configuration as dictionary."""
        return ConfigModel().model_dump()

    def load(self, config_path: Optional[str] = None) -> None:
        """Load configuration from environment defaults and an optional JSON file."""
        json_path = config_path or self.config_path

        runtime_config: Dict[str, Any] = self.get_default_config()

        if json_path and os.path.exists(json_path):
            try:
                with open(json_path, 'r', encoding='utf-8') as f:
                    user_config = json.load(f)
                if isinstance(user_config, dict):
                    for key, value in user_config.items():
                        if isinstance(value, dict) and isinstance(runtime_config.get(key), dict):
                            runtime_config[key].update(value)
                        else:
                            runtime_config[key] = value
            except json.JSONDecodeError:
                logger.error("Invalid JSON in %s", json_path)
            except OSError as e:
                logger.error("Error loading %s: %s", json_path, e)

        try:
            self.config = runtime_config
        except ValueError as exc:
            logger.error(exc)
            raise

        logger.info("Configuration loaded")

    def reload(self) -> None:
        """Reload all configuration settings from scratch."""
        self.config = self.get_default_config()
        self.load()
        logger.info("Configuration reloaded")


def get_config() -> ConfigModel:
    """Get the loaded configuration with thread safety.

    If the configuration hasn't been loaded yet, it will be loaded
    with default parameters.

    Returns:
        The loaded configuration model.
    """
    global _config_instance

    if _config_instance is None:
        with _config_lock:
            if _config_instance is None:
                _config_instance = Config()
                try:
                    _config_instance.load()
                except ValueError as e:
                    logger.error("Error loading configuration: %s", e)
                    _config_instance.config = _config_instance.get_default_config()
                    _config_instance.load_failed = True

    return _config_instance.settings
