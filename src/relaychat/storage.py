"""SQLite storage for chat transcripts."""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from pathlib import Path

from .config import DEFAULT_TITLE, TITLE_MAX_CHARS
from .errors import ConversationNotFound
from .models import Conversation, ConversationSummary, Message, new_conversation_id

logger = logging.getLogger(__name__)


def derive_title(messages: list[Message], max_chars: int = TITLE_MAX_CHARS) -> str:
    """Title from the first user message, flattened to a single line."""
    for m in messages:
        if m.role == "user" and m.content:
            return m.content[:max_chars].replace("\n", " ")
    return DEFAULT_TITLE


class ConversationStore:
    """SQLite-backed transcript store.

    Every create/update is a full-document replacement of the conversation
    and its messages (last writer wins).
    """

    def __init__(self, db_path: Path):
        db_path.parent.mkdir(parents=True, exist_ok=True)
        # History routes run in the server threadpool and share this connection.
        self.conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._lock = threading.RLock()
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self._migrate()

    def _migrate(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS conversations (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                model TEXT,
                system_prompt TEXT,
                create_time REAL NOT NULL,
                update_time REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS messages (
                conversation_id TEXT NOT NULL,
                message_index INTEGER NOT NULL,
                id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                created_at TEXT,
                model TEXT,
                gen_seconds REAL,
                partial INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (conversation_id, message_index),
                FOREIGN KEY (conversation_id) REFERENCES conversations(id)
                    ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_conversations_updated
                ON conversations(update_time);
        """)
        self.conn.commit()

    def conversation_exists(self, conversation_id: str) -> bool:
        with self._lock:
            row = self.conn.execute(
                "SELECT 1 FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
        return row is not None

    def create(self, conv: Conversation) -> str:
        """Store a new conversation (or replace one with the same id); returns its id."""
        conv_id = conv.id or new_conversation_id()
        with self._lock:
            self._write(conv_id, conv)
        logger.debug("Created conversation %s", conv_id)
        return conv_id

    def update(self, conversation_id: str, conv: Conversation):
        with self._lock:
            existing = self.get(conversation_id)
            if existing is None:
                raise ConversationNotFound(conversation_id)
            if existing == conv.model_copy(update={"id": conversation_id}):
                return
            self._write(conversation_id, conv)

    def _write(self, conversation_id: str, conv: Conversation):
        now = time.time()
        with self.conn:
            self.conn.execute(
                """INSERT INTO conversations (id, title, model, system_prompt,
                   create_time, update_time)
                   VALUES (?, ?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                       title = excluded.title,
                       model = excluded.model,
                       system_prompt = excluded.system_prompt,
                       update_time = excluded.update_time""",
                (conversation_id, derive_title(conv.messages), conv.model,
                 conv.system_prompt, now, now),
            )
            self.conn.execute(
                "DELETE FROM messages WHERE conversation_id = ?", (conversation_id,)
            )
            self.conn.executemany(
                """INSERT INTO messages (conversation_id, message_index, id, role,
                   content, created_at, model, gen_seconds, partial)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                [
                    (conversation_id, idx, m.id, m.role, m.content, m.created_at,
                     m.model, m.gen_seconds, int(m.partial))
                    for idx, m in enumerate(conv.messages)
                ],
            )

    def get(self, conversation_id: str) -> Conversation | None:
        """Get a conversation with all its messages."""
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
            if not row:
                return None

            rows = self.conn.execute(
                """SELECT id, role, content, created_at, model, gen_seconds, partial
                   FROM messages WHERE conversation_id = ? ORDER BY message_index""",
                (conversation_id,),
            ).fetchall()

        messages = [
            Message(
                id=r["id"],
                role=r["role"],
                content=r["content"],
                created_at=r["created_at"],
                model=r["model"],
                gen_seconds=r["gen_seconds"],
                partial=bool(r["partial"]),
            )
            for r in rows
        ]
        return Conversation(
            id=row["id"],
            model=row["model"],
            system_prompt=row["system_prompt"],
            messages=messages,
        )

    def delete(self, conversation_id: str):
        with self._lock, self.conn:
            cur = self.conn.execute(
                "DELETE FROM conversations WHERE id = ?", (conversation_id,)
            )
        if cur.rowcount == 0:
            raise ConversationNotFound(conversation_id)

    def list(self, limit: int | None = None) -> list[ConversationSummary]:
        """Conversations, most recently updated first."""
        with self._lock:
            rows = self.conn.execute(
                """SELECT id, title FROM conversations
                   ORDER BY update_time DESC, create_time DESC, id
                   LIMIT ?""",
                (limit if limit is not None else -1,),
            ).fetchall()
        return [ConversationSummary(id=r["id"], title=r["title"]) for r in rows]

    def get_stats(self) -> dict:
        """Get overall database statistics."""
        conv_count = self.conn.execute("SELECT COUNT(*) FROM conversations").fetchone()[0]
        msg_count = self.conn.execute("SELECT COUNT(*) FROM messages").fetchone()[0]

        models = self.conn.execute(
            """SELECT model, COUNT(*) as cnt FROM messages
               WHERE role = 'assistant' AND model IS NOT NULL
               GROUP BY model ORDER BY cnt DESC LIMIT 10"""
        ).fetchall()

        gen = self.conn.execute(
            """SELECT AVG(gen_seconds) FROM messages
               WHERE role = 'assistant' AND gen_seconds IS NOT NULL"""
        ).fetchone()[0]

        return {
            "total_conversations": conv_count,
            "total_messages": msg_count,
            "top_models": [{"model": r[0], "count": r[1]} for r in models],
            "avg_messages_per_conversation": round(msg_count / conv_count, 1) if conv_count else 0,
            "avg_gen_seconds": round(gen, 1) if gen is not None else None,
        }

    def close(self):
        self.conn.close()
