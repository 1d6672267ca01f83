"""
Tests for the JSON file persistence gateway.
"""

import pytest

from agent_rewind.errors import PersistenceWriteError
from agent_rewind.persistence import HISTORY_FILE, OVERLAY_FILE, JsonFilePersistence


def test_overlay_round_trip(tmp_path):
    persistence = JsonFilePersistence(str(tmp_path))
    persistence.save_overlay("t1", '{"version": 1}')

    assert persistence.load_overlay("t1") == '{"version": 1}'
    assert (tmp_path / "tasks" / "t1" / OVERLAY_FILE).exists()
    assert not list((tmp_path / "tasks" / "t1").glob("*.tmp"))


def test_history_round_trip(tmp_path):
    persistence = JsonFilePersistence(str(tmp_path))
    messages = [{"role": "user", "blocks": [{"type": "text", "text": "hi"}]}]
    persistence.save_history("t1", messages)

    assert persistence.load_history("t1") == messages
    assert (tmp_path / "tasks" / "t1" / HISTORY_FILE).exists()


def test_missing_task(tmp_path):
    persistence = JsonFilePersistence(str(tmp_path))
    assert persistence.load_overlay("nope") is None
    assert persistence.load_history("nope") == []


def test_overwrite_replaces_whole_file(tmp_path):
    persistence = JsonFilePersistence(str(tmp_path))
    persistence.save_overlay("t1", "x" * 100)
    persistence.save_overlay("t1", "short")
    assert persistence.load_overlay("t1") == "short"


def test_write_failure_raises_persistence_error(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")
    persistence = JsonFilePersistence(str(blocker))

    with pytest.raises(PersistenceWriteError):
        persistence.save_overlay("t1", "{}")


def test_delete_task(tmp_path):
    persistence = JsonFilePersistence(str(tmp_path))
    persistence.save_overlay("t1", "{}")
    persistence.delete_task("t1")
    assert persistence.load_overlay("t1") is None
