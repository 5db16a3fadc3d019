"""PostgreSQL + pgvector persistence layer.

Three tables:
  - conversations  — id, title, created/updated timestamps
  - messages       — ordered, immutable chat turns
  - embeddings     — at most one vector per message (pgvector)

Deleting a conversation cascades to its messages and their embeddings.

The connection pool is owned by a ``Database`` handle that is opened once
at startup, passed to ``ConversationStore``, and closed at shutdown.
DATABASE_URL env var takes priority over individual POSTGRES_* vars.

Every store method raises ``PersistenceError`` on failure; deciding whether
that is fatal is left to the caller.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from typing import Iterator
from urllib.parse import urlparse

import numpy as np
import psycopg2
from psycopg2 import pool

from errors import PersistenceError

logger = logging.getLogger(__name__)

ROLES = ("user", "assistant")


def _parse_vector(val):
    """Convert a pgvector string like '[0.1,0.2,...]' to a Python list of floats.

    psycopg2 returns vector columns as strings when the pgvector adapter is not
    registered.  This helper normalises the value so callers always get a list.
    """
    if val is None:
        return None
    if isinstance(val, (list, tuple)):
        return [float(x) for x in val]
    if isinstance(val, str):
        body = val.strip("[]")
        return [float(x) for x in body.split(",")] if body else []
    # numpy array or similar
    return [float(x) for x in val]


def _format_vector(vec) -> str:
    """Render a vector as a pgvector text literal for ``%s::vector``."""
    if isinstance(vec, np.ndarray):
        vec = vec.tolist()
    return "[" + ",".join(repr(float(x)) for x in vec) + "]"


def _iso(ts):
    return ts.isoformat() if ts else None


def db_config_from_settings() -> dict:
    """psycopg2 connect kwargs.  DATABASE_URL wins over POSTGRES_* vars."""
    from settings import settings

    if settings.DATABASE_URL:
        p = urlparse(settings.DATABASE_URL)
        return {
            "host": p.hostname or "localhost",
            "port": p.port or 5432,
            "database": (p.path or "/chatapp").lstrip("/"),
            "user": p.username or "postgres",
            "password": p.password or "",
        }
    return {
        "host": settings.POSTGRES_HOST,
        "port": settings.POSTGRES_PORT,
        "database": settings.POSTGRES_DB,
        "user": settings.POSTGRES_USER,
        "password": settings.POSTGRES_PASSWORD,
    }


# ═══════════════════════════════════════════════════════════════════
#  CONNECTION HANDLE
# ═══════════════════════════════════════════════════════════════════

class Database:
    """Process-wide connection pool with an explicit lifecycle."""

    def __init__(self, config: dict, *, minconn: int = 1, maxconn: int = 10, dimension: int = 512):
        self.config = config
        self.minconn = minconn
        self.maxconn = maxconn
        self.dimension = dimension
        self._pool: pool.ThreadedConnectionPool | None = None

    @classmethod
    def from_settings(cls) -> "Database":
        from settings import settings

        return cls(
            db_config_from_settings(),
            minconn=settings.DB_POOL_MIN,
            maxconn=settings.DB_POOL_MAX,
            dimension=settings.EMBEDDING_DIMENSION,
        )

    def open(self) -> None:
        if self._pool is None or self._pool.closed:
            try:
                self._pool = pool.ThreadedConnectionPool(
                    minconn=self.minconn,
                    maxconn=self.maxconn,
                    **self.config,
                )
            except psycopg2.Error as e:
                raise PersistenceError(f"Cannot connect to database: {e}") from e
            logger.info(
                f"Database pool open ({self.config.get('host')}:{self.config.get('port')}/"
                f"{self.config.get('database')}, max={self.maxconn})"
            )

    def close(self) -> None:
        if self._pool is not None and not self._pool.closed:
            self._pool.closeall()
            logger.info("Database pool closed")
        self._pool = None

    @contextmanager
    def connection(self) -> Iterator:
        """Borrow a connection; commit on success, roll back on error.

        A closed pool is reopened on demand.  Connections that died
        (server restart, network drop) are discarded, not recycled.
        """
        self.open()
        try:
            conn = self._pool.getconn()
        except psycopg2.Error as e:
            raise PersistenceError(f"No database connection available: {e}") from e

        broken = False
        try:
            yield conn
            conn.commit()
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            broken = True
            raise PersistenceError(f"Database connection lost: {e}") from e
        except psycopg2.Error as e:
            conn.rollback()
            raise PersistenceError(str(e).strip() or type(e).__name__) from e
        except BaseException:
            conn.rollback()
            raise
        finally:
            if self._pool is not None and not self._pool.closed:
                self._pool.putconn(conn, close=broken or bool(conn.closed))

    def init_schema(self) -> None:
        """Create the pgvector extension, tables, and indexes (idempotent)."""
        dim = self.dimension
        with self.connection() as conn:
            cur = conn.cursor()
            cur.execute("CREATE EXTENSION IF NOT EXISTS vector;")

            # ── conversations ─────────────────────────────────────────
            cur.execute("""
                CREATE TABLE IF NOT EXISTS conversations (
                    id          TEXT PRIMARY KEY,
                    title       TEXT NOT NULL,
                    created_at  TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    updated_at  TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
                );
            """)

            # ── messages ──────────────────────────────────────────────
            # seq breaks created_at ties so ordering never depends on uuids.
            cur.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    id              TEXT PRIMARY KEY,
                    seq             BIGSERIAL,
                    conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
                    role            TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
                    content         TEXT NOT NULL,
                    created_at      TIMESTAMP NOT NULL DEFAULT clock_timestamp()
                );
            """)

            # ── embeddings ────────────────────────────────────────────
            cur.execute(f"""
                CREATE TABLE IF NOT EXISTS embeddings (
                    id          TEXT PRIMARY KEY,
                    message_id  TEXT NOT NULL UNIQUE REFERENCES messages(id) ON DELETE CASCADE,
                    embedding   vector({dim}) NOT NULL,
                    created_at  TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
                );
            """)

            # ── Indexes ───────────────────────────────────────────────
            idx = [
                "CREATE INDEX IF NOT EXISTS idx_msgs_conv  ON messages(conversation_id, created_at, seq);",
                "CREATE INDEX IF NOT EXISTS idx_convs_upd ON conversations(updated_at DESC);",
                "CREATE INDEX IF NOT EXISTS idx_emb_vec   ON embeddings USING hnsw (embedding vector_cosine_ops);",
            ]
            for ddl in idx:
                cur.execute(ddl)
            cur.close()
        logger.info(f"Database schema ready (embedding dim={dim})")


# ═══════════════════════════════════════════════════════════════════
#  CONVERSATION STORE
# ═══════════════════════════════════════════════════════════════════

def _conversation_row(r) -> dict:
    return {"id": r[0], "title": r[1], "created_at": _iso(r[2]), "updated_at": _iso(r[3])}


def _message_row(r) -> dict:
    return {
        "id": r[0], "conversation_id": r[1], "role": r[2],
        "content": r[3], "created_at": _iso(r[4]),
    }


class ConversationStore:
    """CRUD over conversations, messages, and message embeddings."""

    def __init__(self, db: Database):
        self.db = db

    # ── Conversations ─────────────────────────────────────────────

    def create_conversation(self, title: str) -> str:
        cid = str(uuid.uuid4())
        with self.db.connection() as conn:
            cur = conn.cursor()
            cur.execute(
                "INSERT INTO conversations (id, title) VALUES (%s, %s) RETURNING id;",
                (cid, title),
            )
            row = cur.fetchone()
            cur.close()
        if not row:
            raise PersistenceError("Failed to create conversation")
        logger.info(f"Created conversation {cid} ({title!r})")
        return row[0]

    def get_conversation(self, conversation_id: str) -> dict | None:
        with self.db.connection() as conn:
            cur = conn.cursor()
            cur.execute(
                "SELECT id, title, created_at, updated_at FROM conversations WHERE id = %s;",
                (conversation_id,),
            )
            row = cur.fetchone()
            cur.close()
        return _conversation_row(row) if row else None

    def list_conversations(self, limit: int = 20) -> list[dict]:
        with self.db.connection() as conn:
            cur = conn.cursor()
            cur.execute(
                "SELECT id, title, created_at, updated_at FROM conversations "
                "ORDER BY updated_at DESC LIMIT %s;",
                (limit,),
            )
            rows = cur.fetchall()
            cur.close()
        return [_conversation_row(r) for r in rows]

    def update_conversation_title(self, conversation_id: str, title: str) -> bool:
        with self.db.connection() as conn:
            cur = conn.cursor()
            cur.execute(
                "UPDATE conversations SET title = %s, updated_at = CURRENT_TIMESTAMP WHERE id = %s;",
                (title, conversation_id),
            )
            ok = cur.rowcount > 0
            cur.close()
        return ok

    def delete_conversation(self, conversation_id: str) -> bool:
        """Delete a conversation; messages and embeddings cascade."""
        with self.db.connection() as conn:
            cur = conn.cursor()
            cur.execute("DELETE FROM conversations WHERE id = %s;", (conversation_id,))
            ok = cur.rowcount > 0
            cur.close()
        return ok

    # ── Messages ──────────────────────────────────────────────────

    def store_message(self, conversation_id: str, role: str, content: str) -> str:
        """Insert one message and bump the conversation's updated_at."""
        if role not in ROLES:
            raise ValueError(f"Unknown role: {role!r}")
        mid = str(uuid.uuid4())
        with self.db.connection() as conn:
            cur = conn.cursor()
            cur.execute(
                "INSERT INTO messages (id, conversation_id, role, content) "
                "VALUES (%s, %s, %s, %s) RETURNING id;",
                (mid, conversation_id, role, content),
            )
            row = cur.fetchone()
            cur.execute(
                "UPDATE conversations SET updated_at = CURRENT_TIMESTAMP WHERE id = %s;",
                (conversation_id,),
            )
            cur.close()
        if not row:
            raise PersistenceError(f"Failed to store {role} message")
        return row[0]

    def get_conversation_messages(self, conversation_id: str) -> list[dict]:
        """All messages of a conversation in canonical (creation) order."""
        with self.db.connection() as conn:
            cur = conn.cursor()
            cur.execute(
                "SELECT id, conversation_id, role, content, created_at FROM messages "
                "WHERE conversation_id = %s ORDER BY created_at ASC, seq ASC;",
                (conversation_id,),
            )
            rows = cur.fetchall()
            cur.close()
        return [_message_row(r) for r in rows]

    # ── Embeddings ────────────────────────────────────────────────

    def store_embedding(self, message_id: str, vector) -> str | None:
        """Attach a vector to a message.  Returns None if it already had one."""
        eid = str(uuid.uuid4())
        with self.db.connection() as conn:
            cur = conn.cursor()
            cur.execute(
                "INSERT INTO embeddings (id, message_id, embedding) "
                "VALUES (%s, %s, %s::vector) "
                "ON CONFLICT (message_id) DO NOTHING RETURNING id;",
                (eid, message_id, _format_vector(vector)),
            )
            row = cur.fetchone()
            cur.close()
        return row[0] if row else None

    def get_message_embedding(self, message_id: str) -> list[float] | None:
        with self.db.connection() as conn:
            cur = conn.cursor()
            cur.execute(
                "SELECT embedding FROM embeddings WHERE message_id = %s;",
                (message_id,),
            )
            row = cur.fetchone()
            cur.close()
        return _parse_vector(row[0]) if row else None

    def search_embeddings(self, vector, limit: int) -> list[dict]:
        """Cosine-distance ordered scan over embeddings joined to messages.

        Messages without an embedding never appear.  Returns raw distances;
        turning them into scores is the retriever's job.
        """
        literal = _format_vector(vector)
        with self.db.connection() as conn:
            cur = conn.cursor()
            cur.execute("""
                SELECT m.id, m.conversation_id, m.content,
                       e.embedding <=> %s::vector AS distance
                FROM embeddings e
                JOIN messages m ON m.id = e.message_id
                ORDER BY distance ASC
                LIMIT %s;
            """, (literal, limit))
            rows = cur.fetchall()
            cur.close()
        return [
            {"message_id": r[0], "conversation_id": r[1], "content": r[2], "distance": float(r[3])}
            for r in rows
        ]
