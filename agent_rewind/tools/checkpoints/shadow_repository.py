"""A git object store dedicated to checkpointing one task's working directory.

The repository's git dir lives under the storage root, never inside the
working directory, and its work-tree pointer is forced to the real directory.
Any repository the user already has in that directory is never read from or
written to: every command runs with an explicit ``--git-dir`` and a scrubbed
environment.
"""

import hashlib
import logging
import os
import re
import shutil
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from agent_rewind.errors import (
    CheckpointNotFoundError,
    ProtectedDirectoryError,
    RestoreVerificationError,
    ShadowRepositoryError,
)
from agent_rewind.tools.checkpoints.exclusions import ExclusionRuleSet
from agent_rewind.tools.checkpoints.models import ChangeType, FileChange

logger = logging.getLogger(__name__)

INITIAL_COMMIT_MESSAGE = "initial commit"
_HASH_RE = re.compile(r"^[0-9a-fA-F]{4,64}$")

# Environment variables that would redirect git to a repository other than ours
_GIT_ENV_OVERRIDES = (
    "GIT_DIR",
    "GIT_WORK_TREE",
    "GIT_INDEX_FILE",
    "GIT_OBJECT_DIRECTORY",
    "GIT_ALTERNATE_OBJECT_DIRECTORIES",
    "GIT_COMMON_DIR",
    "GIT_NAMESPACE",
    "GIT_CEILING_DIRECTORIES",
)

ERROR_CATEGORIES = {
    'lock': ['index.lock', 'unable to create', 'another git process', 'cannot lock ref'],
    'permission': ['permission denied', 'operation not permitted', 'read-only file system'],
    'not_found': ['does not exist', 'not a git repository', 'no such file or directory'],
    'invalid_reference': ['invalid reference', 'bad revision', 'not a valid object name',
                          'unknown revision', 'ambiguous argument'],
}


def hash_working_dir(path: str) -> str:
    """Stable short hash identifying a working directory."""
    return hashlib.sha256(str(Path(path).resolve()).encode("utf-8")).hexdigest()[:16]


def protected_directories() -> List[Path]:
    """Directories that are never checkpointed as a whole."""
    home = Path.home().resolve()
    root = Path(home.anchor or "/")
    return [root, home, home / "Desktop", home / "Documents", home / "Downloads"]


@dataclass
class GitResult:
    returncode: int
    stdout: bytes
    stderr: bytes

    @property
    def text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")

    @property
    def error_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace")

    def split_z(self) -> List[str]:
        return [p for p in self.stdout.decode("utf-8", errors="surrogateescape").split("\0") if p]


class ShadowRepository:
    """Content-addressed snapshot log for one (working directory, task) pair."""

    def __init__(self, working_dir: str, task_id: str, storage_root: str,
                 exclusions: Optional[ExclusionRuleSet] = None,
                 bot_name: str = "agent-rewind",
                 bot_email: str = "checkpoints@agent-rewind.invalid",
                 timeout: float = 120.0,
                 max_retries: int = 3,
                 retry_delay: float = 0.2):
        self.working_dir = Path(working_dir).expanduser().resolve()
        self.task_id = task_id
        self.storage_root = Path(storage_root).expanduser().resolve()
        self.exclusions = exclusions or ExclusionRuleSet(str(self.working_dir))
        self.bot_name = bot_name
        self.bot_email = bot_email
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.cwd_hash = hash_working_dir(str(self.working_dir))
        self.repo_root = self.storage_root / "checkpoints" / self.cwd_hash / task_id
        self.git_dir = self.repo_root / ".git"
        self._init_lock = threading.Lock()
        self._ready = False

    # ------------------------------------------------------------ git runner

    def _environment(self) -> Dict[str, str]:
        env = {k: v for k, v in os.environ.items() if k not in _GIT_ENV_OVERRIDES}
        env["GIT_TERMINAL_PROMPT"] = "0"
        env["GIT_OPTIONAL_LOCKS"] = "0"
        return env

    def run_git(self, args: Sequence[str], input_data: Optional[bytes] = None,
                check: bool = True, literal_pathspecs: bool = False) -> GitResult:
        """Run a git command against the shadow repository.

        Lock contention is retried with exponential backoff; every other
        failure is raised as ShadowRepositoryError when ``check`` is set.
        """
        command = ["git", f"--git-dir={self.git_dir}", f"--work-tree={self.working_dir}"]
        if literal_pathspecs:
            command.append("--literal-pathspecs")
        command.extend(args)

        retries = 0
        delay = self.retry_delay
        while True:
            try:
                completed = subprocess.run(
                    command,
                    cwd=str(self.working_dir),
                    input=input_data,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    env=self._environment(),
                    timeout=self.timeout,
                )
            except (OSError, subprocess.SubprocessError) as e:
                raise ShadowRepositoryError(
                    f"Error executing git {args[0]}: {e}",
                    component="ShadowRepository", operation=args[0], task_id=self.task_id,
                ) from e

            result = GitResult(completed.returncode, completed.stdout, completed.stderr)
            if result.returncode == 0 or not check:
                return result

            output = result.error_text or result.text
            category = self._categorize_git_error(output)
            if category == 'lock' and retries < self.max_retries:
                logger.warning("Git lock contention on %s, retrying in %.2fs", args[0], delay)
                time.sleep(delay)
                retries += 1
                delay *= 2
                continue

            raise ShadowRepositoryError(
                f"git {args[0]} failed ({result.returncode}): {output.strip()}",
                returncode=result.returncode,
                output=output,
                git_category=category,
                component="ShadowRepository",
                operation=args[0],
                task_id=self.task_id,
            )

    @staticmethod
    def _categorize_git_error(error_output: str) -> Optional[str]:
        """Categorize git error output for retry decisions and reporting."""
        if not error_output:
            return None
        error_lower = error_output.lower()
        for category, patterns in ERROR_CATEGORIES.items():
            for pattern in patterns:
                if pattern in error_lower:
                    return category
        return 'unknown'

    # -------------------------------------------------------- initialization

    def _validate_locations(self) -> None:
        if not self.working_dir.is_dir():
            raise ShadowRepositoryError(f"Working directory does not exist: {self.working_dir}",
                                        component="ShadowRepository", task_id=self.task_id)
        if self.working_dir in protected_directories():
            raise ProtectedDirectoryError(
                f"Refusing to checkpoint protected directory {self.working_dir}",
                component="ShadowRepository", task_id=self.task_id,
            )
        try:
            self.git_dir.relative_to(self.working_dir)
        except ValueError:
            return
        raise ShadowRepositoryError(
            f"Checkpoint storage {self.git_dir} must live outside {self.working_dir}",
            component="ShadowRepository", task_id=self.task_id,
        )

    @property
    def is_initialized(self) -> bool:
        return (self.git_dir / "HEAD").is_file()

    def ensure_initialized(self) -> bool:
        """Create and configure the shadow repository if needed.

        Returns:
            True if the repository was created by this call.
        """
        with self._init_lock:
            self._validate_locations()
            if self._ready:
                return False
            if self.is_initialized:
                # the work tree pointer is forced once per process
                self.run_git(["config", "core.worktree", str(self.working_dir)])
                self._ready = True
                return False

            self.repo_root.mkdir(parents=True, exist_ok=True)
            self.run_git(["init", "--quiet"])
            hooks_dir = self.git_dir / "hooks-disabled"
            hooks_dir.mkdir(exist_ok=True)
            settings = {
                "core.worktree": str(self.working_dir),
                "core.bare": "false",
                "core.autocrlf": "false",
                "core.safecrlf": "false",
                "core.quotepath": "false",
                "core.hooksPath": str(hooks_dir),
                "commit.gpgsign": "false",
                "user.name": self.bot_name,
                "user.email": self.bot_email,
                "gc.auto": "0",
            }
            for key, value in settings.items():
                self.run_git(["config", key, value])
            self.run_git(["commit", "--allow-empty", "--no-verify", "--quiet",
                          "-m", INITIAL_COMMIT_MESSAGE])
            logger.info("Initialized shadow repository for %s at %s", self.working_dir, self.git_dir)
            self._ready = True
            return True

    # --------------------------------------------------------------- staging

    def _write_exclude_file(self) -> Path:
        exclude_path = self.git_dir / "info" / "exclude"
        exclude_path.parent.mkdir(parents=True, exist_ok=True)
        content = "\n".join(self.exclusions.current()) + "\n"
        temp_path = exclude_path.with_suffix(".tmp")
        temp_path.write_text(content, encoding="utf-8")
        os.replace(temp_path, exclude_path)
        return exclude_path

    @staticmethod
    def _pathspec_input(paths: Sequence[str]) -> bytes:
        return b"".join(os.fsencode(p) + b"\0" for p in paths)

    def stage(self) -> List[str]:
        """Make the shadow index match the working tree minus excluded paths.

        Nested repositories are skipped and left untouched.

        Returns:
            Relative paths of nested repositories that were skipped.
        """
        rules = self._write_exclude_file()
        exclude_args = [f"--exclude-from={rules}"]

        newly_excluded = self.run_git(["ls-files", "-z", "--cached", "--ignored", *exclude_args]).split_z()
        if newly_excluded:
            self.run_git(["rm", "--cached", "-r", "-q", "--ignore-unmatch",
                          "--pathspec-from-file=-", "--pathspec-file-nul"],
                         input_data=self._pathspec_input(newly_excluded), literal_pathspecs=True)

        self.run_git(["add", "--update"])

        untracked = self.run_git(["ls-files", "-z", "--others", *exclude_args]).split_z()
        nested = [p for p in untracked if p.endswith("/")]
        files = [p for p in untracked if not p.endswith("/")]
        for path in nested:
            logger.warning("Skipping nested git repository in checkpoint: %s", path)
        if files:
            self.run_git(["add", "--force", "--pathspec-from-file=-", "--pathspec-file-nul"],
                         input_data=self._pathspec_input(files), literal_pathspecs=True)
        return nested

    def stage_and_commit(self, message: str) -> str:
        """Snapshot the working tree; an unchanged tree still yields a new commit."""
        self.ensure_initialized()
        self.stage()
        self.run_git(["commit", "--allow-empty", "--no-verify", "--quiet", "-m", message])
        commit_hash = self.head()
        logger.debug("Committed checkpoint %s", commit_hash)
        return commit_hash

    # ----------------------------------------------------------------- refs

    def head(self) -> str:
        return self.run_git(["rev-parse", "HEAD"]).text.strip()

    def resolve(self, commit_hash: str) -> Optional[str]:
        """Full hash of an existing commit, or None."""
        if not commit_hash or not _HASH_RE.match(commit_hash):
            return None
        result = self.run_git(["rev-parse", "--verify", "--quiet", f"{commit_hash}^{{commit}}"],
                              check=False)
        if result.returncode != 0:
            return None
        return result.text.strip()

    def _require(self, commit_hash: str) -> str:
        resolved = self.resolve(commit_hash)
        if resolved is None:
            raise CheckpointNotFoundError(commit_hash, component="ShadowRepository",
                                          task_id=self.task_id)
        return resolved

    def update_ref(self, ref: str, commit_hash: str) -> None:
        self.run_git(["update-ref", ref, commit_hash])

    def delete_ref(self, ref: str) -> None:
        self.run_git(["update-ref", "-d", ref], check=False)

    def read_ref(self, ref: str) -> Optional[str]:
        result = self.run_git(["rev-parse", "--verify", "--quiet", ref], check=False)
        return result.text.strip() if result.returncode == 0 else None

    def list_refs(self, prefix: str) -> List[Dict[str, str]]:
        """Refs under ``prefix`` with their commit, parent and commit time, sorted by name."""
        if not self.is_initialized:
            return []
        fmt = "%(refname)%00%(objectname)%00%(parent)%00%(committerdate:unix)"
        result = self.run_git(["for-each-ref", "--sort=refname", f"--format={fmt}", prefix])
        refs = []
        for line in result.text.splitlines():
            if not line:
                continue
            name, obj, parents, committed = line.split("\0")
            refs.append({
                "ref": name,
                "commit": obj,
                "parent": parents.split()[0] if parents.strip() else "",
                "timestamp": committed,
            })
        return refs

    # --------------------------------------------------------------- restore

    def reset_hard(self, commit_hash: str) -> str:
        """Reset the working tree to a checkpoint and verify HEAD.

        Raises:
            CheckpointNotFoundError: the commit does not exist; nothing was touched
            RestoreVerificationError: HEAD does not match after the reset
        """
        self.ensure_initialized()
        target = self._require(commit_hash)
        self.run_git(["reset", "--hard", "--quiet", target])
        # untracked, non-excluded files did not exist at the checkpoint.
        # -x drops git's own ignore sources so clean sees exactly the staging rules.
        patterns = self.exclusions.current()
        self.run_git(["clean", "-f", "-d", "-x", "-q"]
                     + [f"--exclude={pattern}" for pattern in patterns])
        actual = self.head()
        if actual != target:
            raise RestoreVerificationError(target, actual, component="ShadowRepository",
                                           task_id=self.task_id)
        logger.info("Restored %s to checkpoint %s", self.working_dir, target)
        return target

    # ------------------------------------------------------------------ diff

    def diff(self, from_hash: Optional[str] = None, to_hash: Optional[str] = None) -> str:
        """Unified diff between checkpoints or against the working tree.

        No arguments diffs the working tree against HEAD; only ``from_hash``
        diffs that checkpoint against the working tree.
        """
        if to_hash is not None and from_hash is None:
            raise ValueError("to_hash requires from_hash")
        self.ensure_initialized()
        base = self._require(from_hash) if from_hash else "HEAD"
        if to_hash is not None:
            target = self._require(to_hash)
            return self.run_git(["diff", "--no-color", "--no-ext-diff", base, target]).text
        self.stage()
        return self.run_git(["diff", "--no-color", "--no-ext-diff", "--cached", base]).text

    def changed_files(self, from_hash: str, to_hash: Optional[str] = None) -> List[FileChange]:
        """Per-file before/after contents between a checkpoint and another one or the working tree."""
        self.ensure_initialized()
        base = self._require(from_hash)
        target = self._require(to_hash) if to_hash is not None else None
        if target is None:
            self.stage()
            args = ["diff", "--name-status", "-z", "--no-renames", "--cached", base]
        else:
            args = ["diff", "--name-status", "-z", "--no-renames", base, target]
        fields = self.run_git(args).split_z()

        changes = []
        for status, path in zip(fields[0::2], fields[1::2]):
            change_type = {"A": ChangeType.ADDED, "D": ChangeType.DELETED}.get(status[0], ChangeType.MODIFIED)
            before = "" if change_type is ChangeType.ADDED else self.show(base, path)
            if change_type is ChangeType.DELETED:
                after = ""
            elif target is not None:
                after = self.show(target, path)
            else:
                after = (self.working_dir / path).read_text(encoding="utf-8", errors="replace")
            changes.append(FileChange(
                relative_path=path,
                absolute_path=str(self.working_dir / path),
                change_type=change_type,
                before=before,
                after=after,
            ))
        return changes

    def diff_count(self) -> int:
        """Number of files changed in the working tree since HEAD."""
        self.ensure_initialized()
        self.stage()
        return len(self.run_git(["diff", "--name-only", "-z", "--cached", "HEAD"]).split_z())

    def show(self, commit_hash: str, path: str) -> str:
        return self.run_git(["show", f"{commit_hash}:{path}"]).text

    # --------------------------------------------------------------- cleanup

    def delete(self) -> None:
        """Remove the object store; called only when the task itself is deleted."""
        with self._init_lock:
            shutil.rmtree(self.repo_root, ignore_errors=True)
            self._ready = False
        logger.info("Deleted shadow repository %s", self.repo_root)
