"""Redelivery protection for webhook events.

Meta redelivers a notification when it does not get a timely 200. Message
ids already seen within ``ttl_seconds`` are reported as duplicates so the
same message is not answered twice. SQLite-backed; ``:memory:`` keeps the
state per-process, a file path survives restarts.
"""

from __future__ import annotations

import sqlite3
import time
from pathlib import Path


class MessageDeduplicator:
    """Tracks message ids seen recently."""

    def __init__(self, db_path: str = ":memory:", ttl_seconds: int = 86_400) -> None:
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._ttl_seconds = ttl_seconds
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.execute(
            """CREATE TABLE IF NOT EXISTS seen_messages (
                message_id TEXT PRIMARY KEY,
                seen_at REAL NOT NULL
            )"""
        )
        self._conn.commit()

    def check(self, message_id: str) -> bool:
        """Return True if ``message_id`` is new (not a redelivery)."""
        now = time.time()
        self._conn.execute(
            "DELETE FROM seen_messages WHERE seen_at < ?", (now - self._ttl_seconds,),
        )
        cursor = self._conn.execute(
            "INSERT OR IGNORE INTO seen_messages (message_id, seen_at) VALUES (?, ?)",
            (message_id, now),
        )
        self._conn.commit()
        return cursor.rowcount == 1
