"""
SQLite-backed run state.
Keeps export checkpoints (the next link of the last written page), the
items each bulk job has finished, and a log of runs.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from contextlib import closing, contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

logger = logging.getLogger("m365_edu_tools.checkpoint")


@dataclass
class Checkpoint:
    key: str
    next_link: str
    rows_written: int
    updated_at: float


class CheckpointStore:
    """
    Persistent state backed by SQLite.
    Connection-per-call, so workers in one event loop can share it.
    """

    def __init__(self, state_dir: str):
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.db_path = self.state_dir / "checkpoints.db"
        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Open a connection, commit on success, and always close it."""
        with closing(sqlite3.connect(str(self.db_path))) as conn:
            with conn:
                yield conn

    def _init_db(self):
        """Initialize the state database schema."""
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS checkpoints (
                    key TEXT PRIMARY KEY,
                    next_link TEXT NOT NULL,
                    rows_written INTEGER DEFAULT 0,
                    updated_at REAL NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS job_items (
                    job_key TEXT NOT NULL,
                    item_id TEXT NOT NULL,
                    completed_at REAL NOT NULL,
                    PRIMARY KEY (job_key, item_id)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS run_log (
                    run_id TEXT PRIMARY KEY,
                    command TEXT NOT NULL,
                    started_at REAL NOT NULL,
                    completed_at REAL,
                    status TEXT DEFAULT 'running',
                    metadata TEXT
                )
            """)

    # ── Export checkpoints ───────────────────────────────────────────────

    def save_checkpoint(self, key: str, next_link: str, rows_written: int):
        """Record the link of the next page to fetch for an export."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO checkpoints (key, next_link, rows_written, updated_at)
                VALUES (?, ?, ?, ?)
                """,
                (key, next_link, rows_written, time.time()),
            )
        logger.debug(f"Checkpoint {key}: {rows_written} rows written")

    def get_checkpoint(self, key: str) -> Optional[Checkpoint]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT key, next_link, rows_written, updated_at FROM checkpoints WHERE key = ?",
                (key,),
            ).fetchone()
        if row is None:
            return None
        return Checkpoint(*row)

    def clear_checkpoint(self, key: str):
        with self._connect() as conn:
            conn.execute("DELETE FROM checkpoints WHERE key = ?", (key,))

    # ── Bulk job progress ────────────────────────────────────────────────

    def mark_done(self, job_key: str, item_id: str):
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO job_items (job_key, item_id, completed_at) VALUES (?, ?, ?)",
                (job_key, item_id, time.time()),
            )

    def done_items(self, job_key: str) -> set[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT item_id FROM job_items WHERE job_key = ?", (job_key,)
            ).fetchall()
        return {r[0] for r in rows}

    def clear_job(self, job_key: str):
        with self._connect() as conn:
            deleted = conn.execute(
                "DELETE FROM job_items WHERE job_key = ?", (job_key,)
            ).rowcount
        if deleted:
            logger.info(f"Cleared {deleted} recorded items for job {job_key}.")

    # ── Run log ──────────────────────────────────────────────────────────

    def start_run(self, run_id: str, command: str, metadata: Optional[dict] = None):
        """Record the start of a run."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO run_log (run_id, command, started_at, status, metadata)
                VALUES (?, ?, ?, 'running', ?)
                """,
                (run_id, command, time.time(), json.dumps(metadata or {})),
            )

    def complete_run(self, run_id: str, status: str = "completed"):
        with self._connect() as conn:
            conn.execute(
                "UPDATE run_log SET completed_at = ?, status = ? WHERE run_id = ?",
                (time.time(), status, run_id),
            )

    def get_run_history(self, limit: int = 10) -> list[dict]:
        """Retrieve recent runs, newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT run_id, command, started_at, completed_at, status, metadata
                FROM run_log ORDER BY started_at DESC LIMIT ?
                """,
                (limit,),
            ).fetchall()

        return [
            {
                "run_id": r[0],
                "command": r[1],
                "started_at": r[2],
                "completed_at": r[3],
                "status": r[4],
                "metadata": json.loads(r[5]) if r[5] else {},
            }
            for r in rows
        ]
