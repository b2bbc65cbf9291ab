"""Reply-to routing: maps a sent chat message back to its correlation token."""

import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class ReplyTokenStore:
    """
    SQLite-backed (channel_id, reply_key) -> token map.

    reply_key is the platform message id (Telegram message_id), stored as
    text. Rows older than the TTL are treated as missing.
    """

    def __init__(
        self,
        db_path: str = "~/.local/share/claude-relay/reply_tokens.db",
        ttl_seconds: int = 86400,
        clock: Optional[Callable[[], float]] = None,
    ):
        if db_path == ":memory:":
            self.db_path = db_path
        else:
            self.db_path = Path(db_path).expanduser()
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.ttl_seconds = ttl_seconds
        self._clock = clock or time.time
        self._conn = None  # Single persistent connection
        self._lock = threading.Lock()  # Serialize all DB access
        self._init_db()

    def _get_conn(self):
        """Get or create the persistent connection."""
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA busy_timeout=5000")
        return self._conn

    def _init_db(self):
        with self._lock:
            conn = self._get_conn()
            conn.execute("""
                CREATE TABLE IF NOT EXISTS reply_tokens (
                    channel_id TEXT NOT NULL,
                    reply_key TEXT NOT NULL,
                    token TEXT NOT NULL,
                    created_at REAL NOT NULL,
                    PRIMARY KEY (channel_id, reply_key)
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_created_at ON reply_tokens(created_at)")
            conn.commit()

    def store(self, channel_id, reply_key, token: str) -> None:
        with self._lock:
            conn = self._get_conn()
            conn.execute(
                "INSERT OR REPLACE INTO reply_tokens (channel_id, reply_key, token, created_at) "
                "VALUES (?, ?, ?, ?)",
                (str(channel_id), str(reply_key), token, self._clock()),
            )
            conn.commit()

    def lookup(self, channel_id, reply_key) -> Optional[str]:
        """Token for a message, or None if unknown or expired."""
        with self._lock:
            conn = self._get_conn()
            row = conn.execute(
                "SELECT token, created_at FROM reply_tokens WHERE channel_id = ? AND reply_key = ?",
                (str(channel_id), str(reply_key)),
            ).fetchone()
            if row is None:
                return None

            token, created_at = row
            if self._clock() - created_at > self.ttl_seconds:
                conn.execute(
                    "DELETE FROM reply_tokens WHERE channel_id = ? AND reply_key = ?",
                    (str(channel_id), str(reply_key)),
                )
                conn.commit()
                return None
            return token

    def delete(self, channel_id, reply_key) -> None:
        with self._lock:
            conn = self._get_conn()
            conn.execute(
                "DELETE FROM reply_tokens WHERE channel_id = ? AND reply_key = ?",
                (str(channel_id), str(reply_key)),
            )
            conn.commit()

    def cleanup(self) -> int:
        """Delete expired rows. Returns the number removed."""
        cutoff = self._clock() - self.ttl_seconds
        with self._lock:
            conn = self._get_conn()
            cursor = conn.execute("DELETE FROM reply_tokens WHERE created_at < ?", (cutoff,))
            conn.commit()
            removed = cursor.rowcount
        if removed:
            logger.info(f"Removed {removed} expired reply tokens")
        return removed

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
