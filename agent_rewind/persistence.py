"""Persistence gateway for per-task context state.

Every write is a whole-file rewrite through a temporary file and an atomic
rename, so a failed write never corrupts what was previously persisted.
"""

import json
import logging
import os
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

from agent_rewind.errors import PersistenceWriteError

logger = logging.getLogger(__name__)

OVERLAY_FILE = "context_overlay.json"
HISTORY_FILE = "api_conversation_history.json"


class PersistenceGateway(ABC):
    """Stores the serialized overlay and raw history of each task."""

    @abstractmethod
    def save_overlay(self, task_id: str, payload: str) -> None:
        """Persist the serialized context overlay document."""

    @abstractmethod
    def load_overlay(self, task_id: str) -> Optional[str]:
        """Return the serialized overlay document, or None if never saved."""

    @abstractmethod
    def save_history(self, task_id: str, messages: List[Dict[str, Any]]) -> None:
        """Persist the raw message history."""

    @abstractmethod
    def load_history(self, task_id: str) -> List[Dict[str, Any]]:
        """Return the raw message history, empty if never saved."""

    @abstractmethod
    def delete_task(self, task_id: str) -> None:
        """Remove everything stored for a task."""


class JsonFilePersistence(PersistenceGateway):
    """Stores task state as JSON files under ``<root>/tasks/<task_id>/``."""

    def __init__(self, root: str):
        self.root = Path(root).expanduser().resolve()

    def task_dir(self, task_id: str) -> Path:
        return self.root / "tasks" / task_id

    def _atomic_write(self, path: Path, text: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            temp_path = path.with_suffix(path.suffix + ".tmp")
            with open(temp_path, "w", encoding="utf-8") as f:
                f.write(text)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, path)
        except OSError as e:
            raise PersistenceWriteError(f"Failed to write {path}: {e}",
                                        component="JsonFilePersistence") from e

    def _read(self, path: Path) -> Optional[str]:
        if not path.exists():
            return None
        with open(path, "r", encoding="utf-8") as f:
            return f.read()

    def save_overlay(self, task_id: str, payload: str) -> None:
        self._atomic_write(self.task_dir(task_id) / OVERLAY_FILE, payload)
        logger.debug("Saved context overlay for task %s", task_id)

    def load_overlay(self, task_id: str) -> Optional[str]:
        return self._read(self.task_dir(task_id) / OVERLAY_FILE)

    def save_history(self, task_id: str, messages: List[Dict[str, Any]]) -> None:
        self._atomic_write(self.task_dir(task_id) / HISTORY_FILE, json.dumps(messages))

    def load_history(self, task_id: str) -> List[Dict[str, Any]]:
        text = self._read(self.task_dir(task_id) / HISTORY_FILE)
        return json.loads(text) if text else []

    def delete_task(self, task_id: str) -> None:
        shutil.rmtree(self.task_dir(task_id), ignore_errors=True)
        logger.info("Deleted persisted state for task %s", task_id)
