"""SQLite persistence for finished clips and session snapshots."""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
from datetime import UTC, datetime
from typing import TYPE_CHECKING

logger = logging.getLogger(__name__)

if TYPE_CHECKING:
    from reelforge.schemas import Checkpoint

_DEFAULT_DB_PATH = "output/reelforge.db"

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS sessions (
    session_id   TEXT PRIMARY KEY,
    prompt       TEXT NOT NULL,
    title        TEXT,
    phase        TEXT NOT NULL,
    failed_phase TEXT,
    checkpoint   TEXT NOT NULL,
    created_at   TEXT NOT NULL,
    updated_at   TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS clip_artifacts (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id   TEXT NOT NULL,
    shot_index   INTEGER NOT NULL,
    artifact_ref TEXT NOT NULL,
    recorded_at  TEXT NOT NULL,
    UNIQUE (session_id, shot_index)
);
"""


def _now() -> str:
    return datetime.now(UTC).isoformat()


def init_db(db_path: str = _DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create tables if they don't exist and enable WAL mode."""
    logger.info("Initialising database at %s", db_path)
    if db_path != ":memory:":
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.executescript(_SCHEMA)
    conn.commit()
    logger.debug("Database initialised (WAL mode, 2 tables)")
    return conn


# ─── Clip artifacts ──────────────────────────────────────────


def record_artifact(
    conn: sqlite3.Connection,
    session_id: str,
    shot_index: int,
    artifact_ref: str,
) -> None:
    """Insert or replace the clip for (session_id, shot_index).

    A re-run overwrites the previous row, so recording is idempotent.
    """
    conn.execute(
        "INSERT INTO clip_artifacts (session_id, shot_index, artifact_ref, recorded_at) "
        "VALUES (?, ?, ?, ?) "
        "ON CONFLICT (session_id, shot_index) DO UPDATE SET "
        "artifact_ref = excluded.artifact_ref, recorded_at = excluded.recorded_at",
        (session_id, shot_index, artifact_ref, _now()),
    )
    conn.commit()
    logger.debug(
        "Recorded clip artifact: session=%s, shot=%d, ref=%s",
        session_id,
        shot_index,
        artifact_ref[:80],
    )


def list_artifacts(conn: sqlite3.Connection, session_id: str) -> list[dict]:
    rows = conn.execute(
        "SELECT shot_index, artifact_ref, recorded_at FROM clip_artifacts "
        "WHERE session_id = ? ORDER BY shot_index",
        (session_id,),
    ).fetchall()
    return [dict(r) for r in rows]


# ─── Sessions ─────────────────────────────────────────────────


def upsert_session(conn: sqlite3.Connection, checkpoint: Checkpoint) -> None:
    """Store the latest checkpoint snapshot for a session."""
    now = _now()
    conn.execute(
        "INSERT INTO sessions (session_id, prompt, title, phase, failed_phase, "
        "checkpoint, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?) "
        "ON CONFLICT (session_id) DO UPDATE SET "
        "title = excluded.title, phase = excluded.phase, "
        "failed_phase = excluded.failed_phase, checkpoint = excluded.checkpoint, "
        "updated_at = excluded.updated_at",
        (
            checkpoint.session_id,
            checkpoint.prompt,
            checkpoint.concept.title if checkpoint.concept else None,
            checkpoint.phase.value,
            checkpoint.failed_phase.value if checkpoint.failed_phase else None,
            checkpoint.model_dump_json(),
            now,
            now,
        ),
    )
    conn.commit()
    logger.debug(
        "Upserted session %s (phase=%s)", checkpoint.session_id, checkpoint.phase.value
    )


def list_sessions(conn: sqlite3.Connection) -> list[dict]:
    """Summary list of all sessions, most recently updated first."""
    rows = conn.execute(
        "SELECT session_id, prompt, title, phase, failed_phase, created_at, updated_at "
        "FROM sessions ORDER BY updated_at DESC"
    ).fetchall()
    return [dict(r) for r in rows]


def get_session(conn: sqlite3.Connection, session_id: str) -> dict | None:
    """Session row with its raw checkpoint JSON and recorded clips."""
    row = conn.execute(
        "SELECT * FROM sessions WHERE session_id = ?", (session_id,)
    ).fetchone()
    if not row:
        return None
    session = dict(row)
    session["clips"] = list_artifacts(conn, session_id)
    return session


# ─── Recorder collaborator ───────────────────────────────────


class SqliteArtifactRecorder:
    """``ArtifactRecorder`` backed by the tables above.

    Render workers call it from several threads, so writes are serialised
    on one lock around the shared connection.
    """

    def __init__(self, db_path: str = _DEFAULT_DB_PATH) -> None:
        self.db_path = db_path
        self._conn = init_db(db_path)
        self._lock = threading.Lock()

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    def record_artifact(self, session_id: str, shot_index: int, artifact_ref: str) -> None:
        with self._lock:
            record_artifact(self._conn, session_id, shot_index, artifact_ref)

    def record_checkpoint(self, checkpoint: Checkpoint) -> None:
        with self._lock:
            upsert_session(self._conn, checkpoint)

    def close(self) -> None:
        with self._lock:
            self._conn.close()
