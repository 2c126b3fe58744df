"""Tests for the SQLite checkpoint store."""

import sqlite3
import time

from m365_edu_tools.checkpoint import store as store_module
from m365_edu_tools.checkpoint.store import CheckpointStore


def test_checkpoint_round_trip(tmp_path):
    store = CheckpointStore(str(tmp_path))
    assert store.get_checkpoint("export:users") is None

    store.save_checkpoint("export:users", "https://next/1", 999)
    store.save_checkpoint("export:users", "https://next/2", 1998)
    checkpoint = store.get_checkpoint("export:users")

    assert checkpoint.next_link == "https://next/2"
    assert checkpoint.rows_written == 1998

    store.clear_checkpoint("export:users")
    assert store.get_checkpoint("export:users") is None


def test_state_survives_reopen(tmp_path):
    CheckpointStore(str(tmp_path)).save_checkpoint("export:groups", "https://next", 5)
    assert CheckpointStore(str(tmp_path)).get_checkpoint("export:groups").rows_written == 5


def test_job_items(tmp_path):
    store = CheckpointStore(str(tmp_path))
    store.mark_done("delete-users:apply", "u1")
    store.mark_done("delete-users:apply", "u2")
    store.mark_done("delete-users:apply", "u1")
    store.mark_done("other:apply", "x")

    assert store.done_items("delete-users:apply") == {"u1", "u2"}

    store.clear_job("delete-users:apply")
    assert store.done_items("delete-users:apply") == set()
    assert store.done_items("other:apply") == {"x"}


def test_run_history_newest_first(tmp_path):
    store = CheckpointStore(str(tmp_path))
    store.start_run("first", "export users")
    time.sleep(0.01)
    store.start_run("second", "members add", {"what_if": True})
    store.complete_run("first")

    history = store.get_run_history()

    assert [r["run_id"] for r in history] == ["second", "first"]
    assert history[0]["status"] == "running"
    assert history[0]["metadata"] == {"what_if": True}
    assert history[1]["status"] == "completed"
    assert store.get_run_history(limit=1)[0]["run_id"] == "second"


def test_every_call_closes_its_connection(tmp_path, monkeypatch):
    opened = []
    real_connect = sqlite3.connect

    class TrackedConnection(sqlite3.Connection):
        closed = False

        def close(self):
            self.closed = True
            super().close()

    def connect(path):
        conn = real_connect(path, factory=TrackedConnection)
        opened.append(conn)
        return conn

    monkeypatch.setattr(store_module.sqlite3, "connect", connect)
    store = CheckpointStore(str(tmp_path))
    store.mark_done("job", "a")
    store.done_items("job")
    store.save_checkpoint("export:users", "https://next", 1)

    assert len(opened) == 4
    assert all(conn.closed for conn in opened)
    assert store.done_items("job") == {"a"}
