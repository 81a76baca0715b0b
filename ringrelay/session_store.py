"""SQLite persistence layer for ringrelay sessions, users and the action log."""

import json
import logging
import sqlite3
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ringrelay.trigger_detector import INTENT_TYPES

logger = logging.getLogger(__name__)

IDLE = "idle"
RECORDING = "recording"
PROCESSING = "processing"
MODES = (IDLE, RECORDING, PROCESSING)

_SESSION_COLUMNS = (
    "owner_id", "mode", "intent_type", "accumulated_text", "segment_count",
    "last_activity_at", "episode", "processing_started_at",
)


@dataclass
class Session:
    id: str
    owner_id: str
    mode: str = IDLE
    intent_type: Optional[str] = None
    accumulated_text: str = ""
    segment_count: int = 0
    last_activity_at: Optional[float] = None
    created_at: float = 0.0
    episode: int = 0
    processing_started_at: Optional[float] = None


def _validate(fields: dict):
    if "mode" in fields and fields["mode"] not in MODES:
        raise ValueError(f"Invalid session mode: {fields['mode']!r}")
    if fields.get("intent_type") is not None and fields["intent_type"] not in INTENT_TYPES:
        raise ValueError(f"Invalid intent type: {fields['intent_type']!r}")


class SessionStore:
    """Owns every Session and user record. All access goes through these methods.

    Each method is a single read-modify-write under one lock, so callers on the
    event loop see it as atomic.
    """

    def __init__(self, db_path: str = None):
        if db_path is None:
            db_path = str(Path(__file__).parent.parent / "data" / "ringrelay.db")
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db_path = db_path
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()

    def _create_tables(self):
        with self._lock:
            self._conn.executescript("""
                CREATE TABLE IF NOT EXISTS sessions (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    mode TEXT NOT NULL DEFAULT 'idle',
                    intent_type TEXT,
                    accumulated_text TEXT NOT NULL DEFAULT '',
                    segment_count INTEGER NOT NULL DEFAULT 0,
                    last_activity_at REAL,
                    created_at REAL NOT NULL,
                    episode INTEGER NOT NULL DEFAULT 0,
                    processing_started_at REAL
                );
                CREATE TABLE IF NOT EXISTS users (
                    uid TEXT PRIMARY KEY,
                    tokens TEXT,
                    available_chats TEXT,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                );
                CREATE TABLE IF NOT EXISTS actions (
                    id TEXT PRIMARY KEY,
                    timestamp REAL NOT NULL,
                    session_id TEXT,
                    owner_id TEXT,
                    intent TEXT,
                    raw_text TEXT,
                    status TEXT NOT NULL,
                    result TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_sessions_mode ON sessions(mode);
                CREATE INDEX IF NOT EXISTS idx_actions_timestamp ON actions(timestamp);
            """)
            self._conn.commit()

    # --- Sessions ---

    def _fetch(self, session_id: str) -> Optional[Session]:
        """Must be called within lock."""
        row = self._conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
        return Session(**dict(row)) if row else None

    def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._fetch(session_id)

    def get_or_create(self, session_id: str, owner_id: str) -> Session:
        with self._lock:
            session = self._fetch(session_id)
            if session:
                return session
            self._conn.execute(
                "INSERT INTO sessions (id, owner_id, created_at) VALUES (?, ?, ?)",
                (session_id, owner_id, time.time()))
            self._conn.commit()
            logger.info(f"[STORE] Created new session: {session_id}")
            return self._fetch(session_id)

    def update(self, session_id: str, **fields) -> Session:
        """Write arbitrary session columns.

        Raises:
            KeyError: Unknown session or column.
            ValueError: Mode or intent outside the allowed values.
        """
        unknown = set(fields) - set(_SESSION_COLUMNS)
        if unknown:
            raise KeyError(f"Unknown session fields: {sorted(unknown)}")
        _validate(fields)
        with self._lock:
            if not fields:
                session = self._fetch(session_id)
            else:
                assignments = ", ".join(f"{k} = ?" for k in fields)
                cur = self._conn.execute(
                    f"UPDATE sessions SET {assignments} WHERE id = ?",
                    (*fields.values(), session_id))
                self._conn.commit()
                session = self._fetch(session_id) if cur.rowcount else None
        if session is None:
            raise KeyError(f"Session {session_id} not found")
        return session

    def open_episode(self, session_id: str, intent_type: str, text: str) -> Optional[Session]:
        """Move an idle session into recording with its first segment.

        Returns:
            The updated session, or None if the session was not idle.
        """
        _validate({"intent_type": intent_type})
        with self._lock:
            cur = self._conn.execute("""
                UPDATE sessions
                SET mode = ?, intent_type = ?, accumulated_text = ?, segment_count = 1,
                    last_activity_at = ?, episode = episode + 1, processing_started_at = NULL
                WHERE id = ? AND mode = ?
            """, (RECORDING, intent_type, text, time.time(), session_id, IDLE))
            self._conn.commit()
            return self._fetch(session_id) if cur.rowcount else None

    def fold_segment(self, session_id: str, text: str) -> Optional[Session]:
        """Append batch text to a recording session.

        Returns:
            The updated session, or None if the session is no longer recording.
        """
        with self._lock:
            cur = self._conn.execute("""
                UPDATE sessions
                SET accumulated_text = accumulated_text || ' ' || ?,
                    segment_count = segment_count + 1,
                    last_activity_at = ?
                WHERE id = ? AND mode = ?
            """, (text, time.time(), session_id, RECORDING))
            self._conn.commit()
            return self._fetch(session_id) if cur.rowcount else None

    def begin_processing(self, session_id: str, episode: int) -> Optional[Session]:
        """Atomically flip recording -> processing for one episode.

        Only one caller per episode gets a session back; everyone else gets None.
        """
        with self._lock:
            cur = self._conn.execute("""
                UPDATE sessions SET mode = ?, processing_started_at = ?
                WHERE id = ? AND mode = ? AND episode = ?
            """, (PROCESSING, time.time(), session_id, RECORDING, episode))
            self._conn.commit()
            return self._fetch(session_id) if cur.rowcount else None

    def reset_session(self, session_id: str, episode: int = None) -> bool:
        """Return a session to idle, clearing text, count and intent together.

        Args:
            session_id: Session to reset.
            episode: When given, only reset if the session is still on this episode
                and that episode has not already been returned to idle.

        Returns:
            True if a row was reset. With an episode, False means someone else
            already resolved it.
        """
        q = """
            UPDATE sessions
            SET mode = ?, intent_type = NULL, accumulated_text = '', segment_count = 0,
                processing_started_at = NULL
            WHERE id = ?
        """
        params = [IDLE, session_id]
        if episode is not None:
            q += " AND episode = ? AND mode != ?"
            params.extend([episode, IDLE])
        with self._lock:
            cur = self._conn.execute(q, params)
            self._conn.commit()
            reset = cur.rowcount > 0
        if reset:
            logger.info(f"[STORE] Reset session {session_id}")
        return reset

    def idle_seconds(self, session_id: str, now: float = None) -> Optional[float]:
        session = self.get(session_id)
        if not session or session.last_activity_at is None:
            return None
        return (now if now is not None else time.time()) - session.last_activity_at

    def scan(self, mode: str = None) -> list[Session]:
        if mode is not None:
            _validate({"mode": mode})
        with self._lock:
            if mode:
                rows = self._conn.execute(
                    "SELECT * FROM sessions WHERE mode = ? ORDER BY id", (mode,)).fetchall()
            else:
                rows = self._conn.execute("SELECT * FROM sessions ORDER BY id").fetchall()
        return [Session(**dict(r)) for r in rows]

    def count_by_mode(self) -> dict:
        with self._lock:
            rows = self._conn.execute(
                "SELECT mode, COUNT(*) AS c FROM sessions GROUP BY mode").fetchall()
        counts = {m: 0 for m in MODES}
        counts.update({r["mode"]: r["c"] for r in rows})
        return counts

    def recover(self) -> int:
        """Reset sessions whose commit died with the previous process."""
        stuck = self.scan(PROCESSING)
        for session in stuck:
            self.reset_session(session.id, episode=session.episode)
        if stuck:
            logger.warning(f"[STORE] Recovered {len(stuck)} session(s) left in processing")
        return len(stuck)

    # --- Users ---

    def save_user(self, uid: str, tokens: dict, chats: list = None):
        now = time.time()
        with self._lock:
            self._conn.execute("""
                INSERT INTO users (uid, tokens, available_chats, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(uid) DO UPDATE SET
                    tokens = excluded.tokens,
                    available_chats = COALESCE(excluded.available_chats, users.available_chats),
                    updated_at = excluded.updated_at
            """, (uid, json.dumps(tokens),
                  json.dumps(chats) if chats is not None else None, now, now))
            self._conn.commit()
        logger.info(f"[STORE] Saved data for user {uid[:10]}...")

    def get_user(self, uid: str) -> Optional[dict]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM users WHERE uid = ?", (uid,)).fetchone()
        if not row:
            return None
        user = self._row_to_dict(row)
        user["tokens"] = user.get("tokens") or {}
        user["available_chats"] = user.get("available_chats") or []
        return user

    def is_authenticated(self, uid: str) -> bool:
        user = self.get_user(uid)
        return bool(user and user["tokens"].get("access_token"))

    def delete_user(self, uid: str) -> bool:
        with self._lock:
            cur = self._conn.execute("DELETE FROM users WHERE uid = ?", (uid,))
            self._conn.commit()
            return cur.rowcount > 0

    # --- Actions ---

    def save_action(self, session_id: str = None, owner_id: str = None, intent: str = None,
                    raw_text: str = None, status: str = "success", result: str = None) -> str:
        action_id = str(uuid.uuid4())
        with self._lock:
            self._conn.execute("""
                INSERT INTO actions (id, timestamp, session_id, owner_id, intent, raw_text, status, result)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (action_id, time.time(), session_id, owner_id, intent, raw_text, status, result))
            self._conn.commit()
        return action_id

    def get_actions(self, status: str = None, limit: int = 50) -> list[dict]:
        with self._lock:
            if status:
                rows = self._conn.execute(
                    "SELECT * FROM actions WHERE status = ? ORDER BY timestamp DESC LIMIT ?",
                    (status, limit)).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT * FROM actions ORDER BY timestamp DESC LIMIT ?", (limit,)).fetchall()
        return [self._row_to_dict(r) for r in rows]

    # --- Helpers ---

    @staticmethod
    def _row_to_dict(row: sqlite3.Row) -> dict:
        d = dict(row)
        for k in ("tokens", "available_chats"):
            if k in d and isinstance(d[k], str):
                try:
                    d[k] = json.loads(d[k])
                except (json.JSONDecodeError, TypeError):
                    pass
        return d

    def close(self):
        self._conn.close()
