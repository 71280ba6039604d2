"""SQLite-backed keyed blob store for the app's persisted state."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# Logical keys
SCENES_KEY = "saved_scenes"
AI_CONFIG_KEY = "ai_model_config"
ENGLISH_LEVEL_KEY = "english_level"
LEARNING_TASKS_KEY = "learning_tasks"
LEARNING_SETTINGS_KEY = "learning_settings"
LEARNING_RECORDS_KEY = "learning_records"
FAVORITES_KEY = "favorited_words"
CHAT_ID_KEY = "current_chat_id"


class KeyValueStore:
    """Key -> text blobs in a single SQLite table.

    Each ``set`` replaces the whole value in one statement, so a reader
    never observes a half-written blob. The connection is shared between
    threads and guarded by a lock.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")

    def init_db(self) -> None:
        """Create the blobs table."""
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS blobs (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )
            self._conn.commit()

    def set(self, key: str, value: str) -> None:
        """Set a key-value pair (INSERT OR REPLACE)."""
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO blobs (key, value, updated_at) VALUES (?, ?, ?)",
                (key, value, now),
            )
            self._conn.commit()

    def get(self, key: str) -> str | None:
        """Get a value by key, or None if not found."""
        with self._lock:
            cur = self._conn.execute("SELECT value FROM blobs WHERE key = ?", (key,))
            row = cur.fetchone()
        return row[0] if row else None

    def delete(self, key: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM blobs WHERE key = ?", (key,))
            self._conn.commit()

    def set_json(self, key: str, value: Any) -> None:
        """Encode ``value`` fully before writing it under ``key``."""
        self.set(key, json.dumps(value, ensure_ascii=False))

    def get_json(self, key: str, default: Any = None) -> Any:
        """Decode the JSON value under ``key``.

        Missing keys return ``default``. Undecodable values are logged and
        also return ``default``.
        """
        raw = self.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Stored value for %r is not valid JSON; ignoring it", key)
            return default

    def keys(self) -> list[str]:
        with self._lock:
            cur = self._conn.execute("SELECT key FROM blobs ORDER BY key")
            return [row[0] for row in cur.fetchall()]

    def close(self) -> None:
        with self._lock:
            self._conn.close()
