"""
Exclusion rules for checkpoint snapshots.

The rule set is an ordered list of gitignore-style patterns: a fixed default
set first, then the project's ``.gitignore``, then the agent ignore file. Later
patterns win, so the agent ignore file can re-include paths with ``!pattern``.
"""

import logging
import os
import threading
from pathlib import Path
from typing import List, Optional, Tuple

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)

PROJECT_IGNORE_FILE = ".gitignore"
DEFAULT_AGENT_IGNORE_FILE = ".rewindignore"
GIT_ATTRIBUTES_FILE = ".gitattributes"

# Dependency directories, VCS metadata, build output and OS metadata
BUILD_AND_DEPENDENCY_PATTERNS = (
    ".git/",
    ".hg/",
    ".svn/",
    "node_modules/",
    "bower_components/",
    "jspm_packages/",
    "vendor/",
    "Pods/",
    ".venv/",
    "venv/",
    "env/",
    "__pycache__/",
    ".pytest_cache/",
    ".mypy_cache/",
    ".ruff_cache/",
    ".tox/",
    ".gradle/",
    ".idea/",
    ".vs/",
    ".next/",
    ".nuxt/",
    ".parcel-cache/",
    ".sass-cache/",
    ".turbo/",
    "build/",
    "dist/",
    "out/",
    "obj/",
    "bin/",
    "target/",
    "coverage/",
    "*.egg-info/",
    "*.pyc",
    "*.pyo",
    "*.class",
    "*.o",
    "*.so",
    "*.dylib",
    "*.dll",
    "*.exe",
)

OS_METADATA_PATTERNS = (
    ".DS_Store",
    "Thumbs.db",
    "desktop.ini",
    "*.swp",
    "*~",
)

# Content that is large, binary or sensitive and never worth snapshotting
MEDIA_AND_DATA_PATTERNS = (
    "*.jpg", "*.jpeg", "*.png", "*.gif", "*.bmp", "*.ico", "*.webp", "*.tiff",
    "*.mp3", "*.mp4", "*.wav", "*.mov", "*.avi", "*.mkv", "*.webm",
    "*.woff", "*.woff2", "*.ttf", "*.eot", "*.otf",
    "*.zip", "*.tar", "*.gz", "*.tgz", "*.bz2", "*.7z", "*.rar", "*.iso",
    "*.db", "*.sqlite", "*.sqlite3", "*.mdb",
    "*.parquet", "*.npy", "*.npz", "*.pkl", "*.h5", "*.pt", "*.onnx",
    "*.log", "*.tmp", "*.temp", "*.cache",
    ".env", ".env.*",
)

DEFAULT_PATTERNS: Tuple[str, ...] = (
    BUILD_AND_DEPENDENCY_PATTERNS + OS_METADATA_PATTERNS + MEDIA_AND_DATA_PATTERNS
)


def parse_ignore_file(path: Path) -> List[str]:
    """Read gitignore-style patterns, skipping blanks and comments."""
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            lines = f.read().splitlines()
    except FileNotFoundError:
        return []
    patterns = []
    for line in lines:
        stripped = line.rstrip()
        if not stripped.strip() or stripped.startswith("#"):
            continue
        patterns.append(stripped)
    return patterns


def parse_lfs_patterns(path: Path) -> List[str]:
    """Patterns tracked by Git LFS according to a .gitattributes file."""
    patterns = []
    for line in parse_ignore_file(path):
        parts = line.split()
        if len(parts) > 1 and "filter=lfs" in parts[1:]:
            patterns.append(parts[0])
    return patterns


def compute_for_directory(path: str, agent_ignore_file: str = DEFAULT_AGENT_IGNORE_FILE) -> List[str]:
    """
    Compute the ordered exclusion patterns for a working directory.

    Args:
        path: The working directory
        agent_ignore_file: Name of the agent-specific ignore file at its root

    Returns:
        Defaults, then LFS-tracked patterns, then project ignore patterns,
        then agent ignore patterns. Duplicates keep their first position.
    """
    root = Path(path)
    ordered = list(DEFAULT_PATTERNS)
    ordered.extend(parse_lfs_patterns(root / GIT_ATTRIBUTES_FILE))
    ordered.extend(parse_ignore_file(root / PROJECT_IGNORE_FILE))
    ordered.extend(parse_ignore_file(root / agent_ignore_file))

    seen = set()
    result = []
    for pattern in ordered:
        if pattern not in seen:
            seen.add(pattern)
            result.append(pattern)
    return result


class _IgnoreFileHandler(FileSystemEventHandler):
    """Marks the rule set stale when one of its source files changes."""

    def __init__(self, rule_set: "ExclusionRuleSet"):
        super().__init__()
        self.rule_set = rule_set

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        for raw in (event.src_path, getattr(event, "dest_path", "")):
            if raw and os.path.basename(os.fsdecode(raw)) in self.rule_set.source_files:
                logger.debug("Ignore file changed: %s", raw)
                self.rule_set.invalidate()
                return


class ExclusionRuleSet:
    """Cached exclusion patterns for one working directory."""

    def __init__(self, working_dir: str, agent_ignore_file: str = DEFAULT_AGENT_IGNORE_FILE):
        self.working_dir = Path(working_dir).resolve()
        self.agent_ignore_file = agent_ignore_file
        self.source_files = (PROJECT_IGNORE_FILE, agent_ignore_file, GIT_ATTRIBUTES_FILE)
        self._lock = threading.Lock()
        self._patterns: Optional[List[str]] = None
        self._fingerprint: Optional[Tuple[Optional[int], ...]] = None
        self._stale = True
        self._observer: Optional[Observer] = None
        self.recomputations = 0

    def _current_fingerprint(self) -> Tuple[Optional[int], ...]:
        stamps = []
        for name in self.source_files:
            try:
                stamps.append((self.working_dir / name).stat().st_mtime_ns)
            except FileNotFoundError:
                stamps.append(None)
        return tuple(stamps)

    def invalidate(self) -> None:
        with self._lock:
            self._stale = True

    def current(self) -> List[str]:
        """Return the patterns, recomputing first if a source file changed."""
        with self._lock:
            fingerprint = self._current_fingerprint()
            if self._stale or self._patterns is None or fingerprint != self._fingerprint:
                self._patterns = compute_for_directory(str(self.working_dir), self.agent_ignore_file)
                self._fingerprint = fingerprint
                self._stale = False
                self.recomputations += 1
                logger.debug("Computed %d exclusion patterns for %s",
                             len(self._patterns), self.working_dir)
            return list(self._patterns)

    def start_watching(self) -> None:
        """Watch the ignore files so edits are picked up before the next checkpoint."""
        if self._observer is not None:
            return
        observer = Observer()
        observer.schedule(_IgnoreFileHandler(self), str(self.working_dir), recursive=False)
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.debug("Watching ignore files in %s", self.working_dir)

    def stop_watching(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=5.0)
        self._observer = None
