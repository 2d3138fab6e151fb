"""Per-sender conversation history backed by SQLite."""

from __future__ import annotations

import sqlite3
import time
from pathlib import Path
from typing import Protocol

from src.webhook.models import HistoryTurn


class ConversationHistoryStore(Protocol):
    def load(self, sender_id: str) -> list[HistoryTurn]: ...

    def append(self, sender_id: str, user_text: str, response_text: str) -> None: ...


class SQLiteHistoryStore:
    """Stores (user_text, response_text) turns keyed by sender id."""

    def __init__(self, db_path: str, max_turns: int = 20) -> None:
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._max_turns = max_turns
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.execute(
            """CREATE TABLE IF NOT EXISTS conversation_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                sender_id TEXT NOT NULL,
                user_text TEXT NOT NULL,
                response_text TEXT NOT NULL,
                created_at REAL NOT NULL
            )"""
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_history_sender "
            "ON conversation_history(sender_id, id)"
        )
        self._conn.commit()

    def load(self, sender_id: str) -> list[HistoryTurn]:
        """Return the most recent turns for ``sender_id``, oldest first."""
        rows = self._conn.execute(
            """SELECT user_text, response_text FROM conversation_history
               WHERE sender_id = ? ORDER BY id DESC LIMIT ?""",
            (sender_id, self._max_turns),
        ).fetchall()
        return [HistoryTurn(user_text=u, response_text=r) for u, r in reversed(rows)]

    def append(self, sender_id: str, user_text: str, response_text: str) -> None:
        self._conn.execute(
            """INSERT INTO conversation_history
               (sender_id, user_text, response_text, created_at)
               VALUES (?, ?, ?, ?)""",
            (sender_id, user_text, response_text, time.time()),
        )
        self._conn.commit()

    def clear(self, sender_id: str) -> None:
        self._conn.execute(
            "DELETE FROM conversation_history WHERE sender_id = ?", (sender_id,),
        )
        self._conn.commit()
