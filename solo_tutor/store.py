"""SQLite conversation store: conversations and their append-only message logs."""

import logging
import os
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

from .errors import PersistenceFailure
from .models import Conversation, Message, Role

logger = logging.getLogger(__name__)

_MESSAGE_FIELDS = ("id", "conversation_id", "role", "content", "image_ref",
                   "embedding", "embedding_dim", "created_at")
_MESSAGE_COLUMNS = ", ".join(_MESSAGE_FIELDS)
_JOINED_MESSAGE_COLUMNS = ", ".join("m." + f for f in _MESSAGE_FIELDS)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime) -> str:
    # Fixed width so stored timestamps also sort correctly as text
    return value.isoformat(timespec="microseconds")


def _parse_ts(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _encode_embedding(embedding) -> Tuple[Optional[bytes], Optional[int]]:
    if embedding is None:
        return None, None
    vec = np.asarray(embedding, dtype=np.float32)
    return vec.tobytes(), int(vec.shape[0])


def _decode_embedding(blob: Optional[bytes], dim: Optional[int]) -> Optional[np.ndarray]:
    if blob is None:
        return None
    # Copy so the array does not keep a view on the sqlite buffer
    return np.frombuffer(blob, dtype=np.float32).reshape(dim).copy()


def _row_to_message(row: sqlite3.Row) -> Message:
    return Message(
        id=row["id"],
        conversation_id=row["conversation_id"],
        role=Role(row["role"]),
        content=row["content"],
        image_ref=row["image_ref"],
        embedding=_decode_embedding(row["embedding"], row["embedding_dim"]),
        created_at=_parse_ts(row["created_at"]),
    )


def _row_to_conversation(row: sqlite3.Row) -> Conversation:
    return Conversation(
        id=row["id"],
        user_id=row["user_id"],
        title=row["title"],
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
    )


class ConversationStore:
    """Persistent conversations and messages.

    Appends run inside ``BEGIN IMMEDIATE`` so concurrent writers to the same
    conversation are serialized by SQLite and ``recent`` never observes a
    partially written message. Message order is the insertion order, and
    ``created_at`` is forced to be strictly increasing within a conversation.
    """

    def __init__(self, db_path: Optional[str] = None):
        if db_path is None:
            db_path = os.path.join("data", "solo_tutor.db")

        # Ensure directory for the DB exists if it is relative and has a parent
        if not os.path.isabs(db_path):
            db_dir = os.path.dirname(db_path)
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)

        self.db_path = db_path
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self, immediate: bool = False):
        """Yield a connection inside a transaction; sqlite errors become PersistenceFailure."""
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"Could not open {self.db_path}: {exc}") from exc
        try:
            conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            yield conn
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise PersistenceFailure(str(exc)) from exc
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def _init_db(self):
        """Initialize SQLite tables with performance tuning."""
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"Could not open {self.db_path}: {exc}") from exc
        try:
            # WAL lets readers proceed while an append holds the write lock
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")

            conn.execute("""CREATE TABLE IF NOT EXISTS conversations
                            (id TEXT PRIMARY KEY, user_id TEXT NOT NULL, title TEXT,
                             created_at TEXT NOT NULL, updated_at TEXT NOT NULL)""")

            conn.execute("""CREATE TABLE IF NOT EXISTS messages
                            (seq INTEGER PRIMARY KEY AUTOINCREMENT,
                             id TEXT NOT NULL UNIQUE,
                             conversation_id TEXT NOT NULL
                                 REFERENCES conversations(id) ON DELETE CASCADE,
                             role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
                             content TEXT NOT NULL,
                             image_ref TEXT,
                             embedding BLOB,
                             embedding_dim INTEGER,
                             created_at TEXT NOT NULL)""")

            conn.execute("""CREATE TABLE IF NOT EXISTS schema_meta
                            (key TEXT PRIMARY KEY, value TEXT NOT NULL)""")

            conn.execute("""CREATE INDEX IF NOT EXISTS idx_conversations_user_updated
                            ON conversations(user_id, updated_at DESC)""")
            conn.execute("""CREATE INDEX IF NOT EXISTS idx_messages_conversation_seq
                            ON messages(conversation_id, seq)""")
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"Could not initialize schema: {exc}") from exc
        finally:
            conn.close()

    # -- conversations -------------------------------------------------------

    def create_conversation(self, user_id: str, title: Optional[str] = None) -> Conversation:
        now = _iso(_now())
        conversation_id = str(uuid.uuid4())
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO conversations (id, user_id, title, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (conversation_id, user_id, title, now, now),
            )
        logger.info("Created conversation %s for user %s", conversation_id, user_id)
        return Conversation(
            id=conversation_id,
            user_id=user_id,
            title=title,
            created_at=_parse_ts(now),
            updated_at=_parse_ts(now),
        )

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
        return _row_to_conversation(row) if row else None

    def list_conversations(self, user_id: str) -> List[Conversation]:
        """All of a user's conversations, most recently updated first."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM conversations WHERE user_id = ? "
                "ORDER BY updated_at DESC, rowid DESC",
                (user_id,),
            ).fetchall()
        return [_row_to_conversation(r) for r in rows]

    def get_or_create_default(self, user_id: str) -> Conversation:
        """Return the user's most recently updated conversation, creating one if none exist."""
        conversations = self.list_conversations(user_id)
        if conversations:
            return conversations[0]
        return self.create_conversation(user_id)

    def update_title(self, conversation_id: str, title: Optional[str]) -> Optional[Conversation]:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE conversations SET title = ?, updated_at = ? WHERE id = ?",
                (title, _iso(_now()), conversation_id),
            )
            row = conn.execute(
                "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
        return _row_to_conversation(row) if row else None

    def delete_conversation(self, conversation_id: str) -> List[str]:
        """Delete a conversation and, by cascade, its messages.

        Returns the ids of the deleted messages so callers can drop them from
        a similarity index.
        """
        with self._transaction(immediate=True) as conn:
            ids = [r["id"] for r in conn.execute(
                "SELECT id FROM messages WHERE conversation_id = ?", (conversation_id,)
            ).fetchall()]
            conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
        logger.info("Deleted conversation %s (%d messages)", conversation_id, len(ids))
        return ids

    # -- messages ------------------------------------------------------------

    def append(
        self,
        conversation_id: str,
        role: Role,
        text: str,
        image_ref: Optional[str] = None,
        embedding: Optional[np.ndarray] = None,
    ) -> Message:
        """Append a message to a conversation and bump the conversation's updated_at."""
        role = Role(role)
        if not text.strip() and not (role is Role.USER and image_ref):
            raise ValueError("Only user messages with an image may have empty text")

        message_id = str(uuid.uuid4())
        blob, dim = _encode_embedding(embedding)

        with self._transaction(immediate=True) as conn:
            exists = conn.execute(
                "SELECT 1 FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
            if exists is None:
                raise PersistenceFailure(f"Conversation {conversation_id} does not exist")

            created_at = _now()
            last = conn.execute(
                "SELECT created_at FROM messages WHERE conversation_id = ? "
                "ORDER BY seq DESC LIMIT 1",
                (conversation_id,),
            ).fetchone()
            if last is not None:
                last_ts = _parse_ts(last["created_at"])
                if created_at <= last_ts:
                    created_at = last_ts + timedelta(microseconds=1)

            conn.execute(
                f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (message_id, conversation_id, role.value, text, image_ref,
                 blob, dim, _iso(created_at)),
            )
            conn.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ?",
                (_iso(created_at), conversation_id),
            )

        return Message(
            id=message_id,
            conversation_id=conversation_id,
            role=role,
            content=text,
            image_ref=image_ref,
            embedding=None if embedding is None else np.asarray(embedding, dtype=np.float32),
            created_at=created_at,
        )

    def recent(self, conversation_id: str, n: int) -> List[Message]:
        """The last ``n`` messages of a conversation, oldest first."""
        if n <= 0:
            return []
        with self._transaction() as conn:
            rows = conn.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE conversation_id = ? "
                "ORDER BY seq DESC LIMIT ?",
                (conversation_id, n),
            ).fetchall()
        return [_row_to_message(r) for r in reversed(rows)]

    def get_messages(self, conversation_id: str) -> List[Message]:
        """Full history of a conversation, oldest first."""
        with self._transaction() as conn:
            rows = conn.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE conversation_id = ? ORDER BY seq",
                (conversation_id,),
            ).fetchall()
        return [_row_to_message(r) for r in rows]

    def get_messages_by_ids(self, message_ids: Iterable[str]) -> Dict[str, Message]:
        ids = list(message_ids)
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        with self._transaction() as conn:
            rows = conn.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id IN ({placeholders})", ids
            ).fetchall()
        return {r["id"]: _row_to_message(r) for r in rows}

    def set_embedding(self, message_id: str, embedding: np.ndarray) -> bool:
        """Attach an embedding to a message that has none yet.

        Returns False if the message already has one (embeddings are never
        recomputed) or no longer exists.
        """
        blob, dim = _encode_embedding(embedding)
        with self._transaction(immediate=True) as conn:
            cur = conn.execute(
                "UPDATE messages SET embedding = ?, embedding_dim = ? "
                "WHERE id = ? AND embedding IS NULL",
                (blob, dim, message_id),
            )
            return cur.rowcount == 1

    def messages_missing_embeddings(
        self, user_id: Optional[str] = None, limit: Optional[int] = None
    ) -> List[Message]:
        """Messages with text but no embedding, oldest first."""
        query = (
            f"SELECT {_JOINED_MESSAGE_COLUMNS} "
            "FROM messages m JOIN conversations c ON c.id = m.conversation_id "
            "WHERE m.embedding IS NULL AND length(trim(m.content)) > 0"
        )
        params: list = []
        if user_id is not None:
            query += " AND c.user_id = ?"
            params.append(user_id)
        query += " ORDER BY m.seq"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._transaction() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_message(r) for r in rows]

    def embedded_messages(self) -> List[Tuple[Message, str]]:
        """Every message that has an embedding, paired with its owner's user id."""
        with self._transaction() as conn:
            rows = conn.execute(
                f"SELECT {_JOINED_MESSAGE_COLUMNS}, "
                "c.user_id AS owner_id "
                "FROM messages m JOIN conversations c ON c.id = m.conversation_id "
                "WHERE m.embedding IS NOT NULL ORDER BY m.seq"
            ).fetchall()
        return [(_row_to_message(r), r["owner_id"]) for r in rows]

    # -- embedding space -----------------------------------------------------

    def ensure_embedding_space(self, model: str, dim: int) -> int:
        """Record the active embedding model and dimension.

        If a different model or dimension was recorded before, every stored
        embedding is cleared so it can be re-embedded by a backfill. Returns
        the number of invalidated embeddings.
        """
        with self._transaction(immediate=True) as conn:
            meta = {r["key"]: r["value"] for r in conn.execute(
                "SELECT key, value FROM schema_meta"
            ).fetchall()}
            invalidated = 0
            recorded = (meta.get("embedding_model"), meta.get("embedding_dim"))
            if recorded != (model, str(dim)):
                if recorded != (None, None):
                    cur = conn.execute(
                        "UPDATE messages SET embedding = NULL, embedding_dim = NULL "
                        "WHERE embedding IS NOT NULL"
                    )
                    invalidated = cur.rowcount
                conn.execute(
                    "INSERT OR REPLACE INTO schema_meta (key, value) VALUES ('embedding_model', ?)",
                    (model,),
                )
                conn.execute(
                    "INSERT OR REPLACE INTO schema_meta (key, value) VALUES ('embedding_dim', ?)",
                    (str(dim),),
                )
        if invalidated:
            logger.warning(
                "Embedding space changed to %s/%d: cleared %d stored embeddings",
                model, dim, invalidated,
            )
        return invalidated

    def stats(self, user_id: str) -> Dict[str, int]:
        with self._transaction() as conn:
            row = conn.execute(
                """SELECT COUNT(DISTINCT c.id) AS conversations,
                          COUNT(m.id) AS messages,
                          COALESCE(SUM(m.role = 'user'), 0) AS user_messages,
                          COALESCE(SUM(m.role = 'assistant'), 0) AS assistant_messages,
                          COALESCE(SUM(m.embedding IS NOT NULL), 0) AS embedded
                   FROM conversations c LEFT JOIN messages m ON m.conversation_id = c.id
                   WHERE c.user_id = ?""",
                (user_id,),
            ).fetchone()
        return {key: int(row[key]) for key in row.keys()}
