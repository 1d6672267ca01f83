from pathlib import Path
import shutil
import sys
import pytest

# Add project root to sys.path for module resolution
project_root = Path(__file__).parent.parent.resolve()
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from agent_rewind.tools.context_management.models import Message, ToolResultBlock  # noqa: E402
from agent_rewind.tools.context_management.token_budget import TokenEstimator  # noqa: E402

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


def word_counter(text: str) -> int:
    """Deterministic token counter: one token per whitespace-separated word."""
    return len(text.split())


@pytest.fixture
def estimator():
    """Token estimator that counts words instead of loading a tiktoken encoding."""
    return TokenEstimator(counter=word_counter)


def make_history(count, words=100):
    """Alternating user/assistant history; message i is 'm<i>' followed by filler words."""
    history = []
    for i in range(count):
        text = " ".join([f"m{i}"] + ["word"] * (words - 1))
        history.append(Message.user(text) if i % 2 == 0 else Message.assistant(text))
    return history


def read_result(path, content, tool_use_id="t1"):
    return Message.user(ToolResultBlock(tool_use_id=tool_use_id, tool_name="read_file",
                                        content=content, file_path=path))


@pytest.fixture
def workspace(tmp_path):
    """A working directory and a separate storage root."""
    work = tmp_path / "work"
    work.mkdir()
    storage = tmp_path / "storage"
    storage.mkdir()
    return work, storage
