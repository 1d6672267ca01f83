"""
Checkpoint Tracker: the task-level checkpoint API over a ShadowRepository.

Each commit is recorded under an ordered ref so the full list survives
rollbacks (a hard reset moves HEAD, not the refs). The rollback target is
recorded under its own ref so checkpoint states can be rebuilt on resume.
"""

import hashlib
import logging
import threading
import time
from typing import List, Optional

from agent_rewind.config import CheckpointConfig, get_config
from agent_rewind.errors import AgentError
from agent_rewind.telemetry import TelemetryEvent, TelemetrySink
from agent_rewind.tools.checkpoints.exclusions import ExclusionRuleSet
from agent_rewind.tools.checkpoints.models import Checkpoint, CheckpointState, FileChange
from agent_rewind.tools.checkpoints.shadow_repository import ShadowRepository

logger = logging.getLogger(__name__)

CHECKPOINT_REF_PREFIX = "refs/checkpoints"
ROLLED_BACK_REF = "refs/rewind/rolled-back-to"


def checkpoint_message(working_dir: str, task_id: str) -> str:
    """Deterministic commit message identifying the working directory and task."""
    digest = hashlib.sha256(f"{working_dir}:{task_id}".encode("utf-8")).hexdigest()[:12]
    return f"checkpoint-{digest}-{task_id}"


class CheckpointTracker:
    """Commit, list and restore checkpoints for one task."""

    def __init__(self, repository: ShadowRepository, telemetry: Optional[TelemetrySink] = None):
        self.repository = repository
        self.task_id = repository.task_id
        self.working_dir = str(repository.working_dir)
        self.telemetry = telemetry or TelemetrySink()
        self._lock = threading.RLock()
        self._checkpoints: Optional[List[Checkpoint]] = None

    @classmethod
    def create(cls, working_dir: str, task_id: str,
               storage_root: Optional[str] = None,
               config: Optional[CheckpointConfig] = None,
               exclusions: Optional[ExclusionRuleSet] = None,
               telemetry: Optional[TelemetrySink] = None) -> "CheckpointTracker":
        """Build a tracker and its shadow repository from configuration."""
        settings = get_config()
        config = config or settings.checkpoints
        storage_root = storage_root or settings.persistence.storage_root
        exclusions = exclusions or ExclusionRuleSet(working_dir, config.agent_ignore_file)
        repository = ShadowRepository(
            working_dir, task_id, storage_root,
            exclusions=exclusions,
            bot_name=config.bot_name,
            bot_email=config.bot_email,
            timeout=config.git_timeout,
            max_retries=config.max_retries,
            retry_delay=config.retry_delay,
        )
        return cls(repository, telemetry)

    @property
    def message(self) -> str:
        return checkpoint_message(self.working_dir, self.task_id)

    def initialize(self) -> None:
        """Create the shadow repository if needed and load existing checkpoints."""
        with self._lock:
            self.repository.ensure_initialized()
            self._checkpoints = self._load()

    def _ensure_loaded(self) -> List[Checkpoint]:
        if self._checkpoints is None:
            self.initialize()
        return self._checkpoints

    def _load(self) -> List[Checkpoint]:
        refs = self.repository.list_refs(CHECKPOINT_REF_PREFIX)
        rolled_back_to = self.repository.read_ref(ROLLED_BACK_REF)
        checkpoints = []
        for position, ref in enumerate(refs):
            checkpoint = Checkpoint(
                commit_hash=ref["commit"],
                task_id=self.task_id,
                timestamp=float(ref["timestamp"] or 0),
                parent_hash=ref["parent"] or None,
            )
            if rolled_back_to:
                target = checkpoint.commit_hash == rolled_back_to
                state = CheckpointState.ROLLED_BACK_TO if target else CheckpointState.SUPERSEDED
            elif position == len(refs) - 1:
                state = CheckpointState.ACTIVE
            else:
                state = CheckpointState.SUPERSEDED
            checkpoints.append(checkpoint.transition(state))
        logger.debug("Loaded %d checkpoints for task %s", len(checkpoints), self.task_id)
        return checkpoints

    def _record(self, event_type: str, started: float, error: Optional[AgentError] = None,
                **metadata) -> None:
        if error is not None:
            metadata["error"] = error.to_dict()
        self.telemetry.record(TelemetryEvent(
            event_type=event_type,
            task_id=self.task_id,
            duration=time.monotonic() - started,
            success=error is None,
            error_message=str(error) if error else None,
            metadata=metadata,
        ))

    # -------------------------------------------------------------- commands

    def commit(self) -> str:
        """Snapshot the working tree. A tree with no changes still yields a checkpoint.

        Returns:
            The new checkpoint's commit hash.
        """
        with self._lock:
            checkpoints = self._ensure_loaded()
            started = time.monotonic()
            try:
                parent = self.repository.head()
                commit_hash = self.repository.stage_and_commit(self.message)
                self.repository.update_ref(
                    f"{CHECKPOINT_REF_PREFIX}/{len(checkpoints) + 1:08d}", commit_hash)
                self.repository.delete_ref(ROLLED_BACK_REF)
            except AgentError as e:
                self._record("checkpoint_commit", started, e)
                raise

            for i, checkpoint in enumerate(checkpoints):
                if checkpoint.state in (CheckpointState.ACTIVE, CheckpointState.ROLLED_BACK_TO):
                    checkpoints[i] = checkpoint.transition(CheckpointState.SUPERSEDED)
            pending = Checkpoint(commit_hash, self.task_id, time.time(), parent,
                                 state=CheckpointState.PENDING)
            checkpoints.append(pending.transition(CheckpointState.COMMITTED)
                               .transition(CheckpointState.ACTIVE))

            self._record("checkpoint_commit", started, commit_hash=commit_hash)
            logger.info("Task %s: checkpoint %s committed", self.task_id, commit_hash[:12])
            return commit_hash

    def restore(self, commit_hash: str) -> str:
        """Reset the working tree to a checkpoint; repeating the call is harmless.

        Raises:
            CheckpointNotFoundError: the hash is unknown; nothing was changed
            RestoreVerificationError: the reset did not land on the checkpoint
        """
        with self._lock:
            checkpoints = self._ensure_loaded()
            started = time.monotonic()
            try:
                target = self.repository.reset_hard(commit_hash)
                self.repository.update_ref(ROLLED_BACK_REF, target)
            except AgentError as e:
                self._record("checkpoint_restore", started, e, commit_hash=commit_hash)
                raise

            for i, checkpoint in enumerate(checkpoints):
                if checkpoint.commit_hash == target:
                    checkpoints[i] = checkpoint.transition(CheckpointState.ROLLED_BACK_TO)
                elif checkpoint.state in (CheckpointState.ACTIVE, CheckpointState.ROLLED_BACK_TO):
                    checkpoints[i] = checkpoint.transition(CheckpointState.SUPERSEDED)

            self._record("checkpoint_restore", started, commit_hash=target)
            logger.info("Task %s: restored checkpoint %s", self.task_id, target[:12])
            return target

    def list_checkpoints(self) -> List[Checkpoint]:
        """All checkpoints of the task, oldest first."""
        with self._lock:
            return list(self._ensure_loaded())

    def get_checkpoint(self, commit_hash: str) -> Optional[Checkpoint]:
        for checkpoint in self.list_checkpoints():
            if checkpoint.commit_hash.startswith(commit_hash):
                return checkpoint
        return None

    # ------------------------------------------------------------ inspection

    def diff(self, from_hash: Optional[str] = None, to_hash: Optional[str] = None) -> str:
        with self._lock:
            return self.repository.diff(from_hash, to_hash)

    def changed_files(self, from_hash: str, to_hash: Optional[str] = None) -> List[FileChange]:
        with self._lock:
            return self.repository.changed_files(from_hash, to_hash)

    def diff_count(self) -> int:
        with self._lock:
            return self.repository.diff_count()

    def delete(self) -> None:
        """Remove every checkpoint of the task."""
        with self._lock:
            self.repository.delete()
            self._checkpoints = None
