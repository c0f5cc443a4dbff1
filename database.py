#!/usr/bin/env python3
"""
Confeed – database helpers (PostgreSQL version)

• psycopg2 ThreadedConnectionPool with a direct-connect fallback
• Idempotent schema: users, chat_messages
• PgChatStore: the persistence collaborator used by the realtime coordinator
  and the HTTP routes (users, anonymous nicknames, chat messages, history)
"""

import logging
import random
import uuid
from datetime import datetime, timezone

import psycopg2
from psycopg2.extras import RealDictCursor
from psycopg2.pool import ThreadedConnectionPool

from constants import get_db_connection_string, sanitize_postgres_dsn, redact_postgres_dsn

ANON_PREFIX = "anonimo#"
NICKNAME_PROBES = 100

# Login metadata accepted from clients: JSON key -> users column.
USER_META_FIELDS = {
    "ip": "ip",
    "platform": "platform",
    "language": "language",
    "timezone": "timezone",
    "userAgent": "user_agent",
    "screen": "screen",
    "country": "country",
    "state": "state",
    "city": "city",
    "avatarUrl": "avatar_url",
}


class PersistenceError(RuntimeError):
    """A database call failed; the caller decides how to surface it."""


# ----------------------------------------------------------------------
# Connection helpers
# ----------------------------------------------------------------------

# Optional global connection pool. Enabled by calling init_db_pool().
_POOL: ThreadedConnectionPool | None = None
_DSN: str | None = None


def init_db_pool(minconn: int = 1, maxconn: int = 10, dsn: str | None = None) -> None:
    """Initialise a global ThreadedConnectionPool.

    Safe to call multiple times (no-op after first init).
    """
    global _POOL, _DSN
    if _POOL is not None:
        return

    _DSN = str(sanitize_postgres_dsn(dsn or get_db_connection_string()))
    try:
        _POOL = ThreadedConnectionPool(minconn=int(minconn), maxconn=int(maxconn), dsn=_DSN)
        logging.info("Postgres connection pool ready (min=%s max=%s) for %s", minconn, maxconn, redact_postgres_dsn(_DSN))
    except psycopg2.Error as e:
        _POOL = None
        logging.warning("Could not initialise Postgres pool; falling back to direct connects: %s", e)


def close_db_pool() -> None:
    global _POOL
    if _POOL is not None:
        _POOL.closeall()
        _POOL = None


def _acquire_conn():
    """Acquire a connection either from the pool or by direct connect.

    Returns (conn, from_pool: bool)
    """
    if _POOL is not None:
        return _POOL.getconn(), True
    return psycopg2.connect(_DSN or get_db_connection_string()), False


def _release_conn(conn, from_pool: bool) -> None:
    if conn is None:
        return
    if _POOL is not None and from_pool:
        try:
            # Ensure a clean connection is returned to the pool.
            conn.rollback()
        except psycopg2.Error:
            pass
        _POOL.putconn(conn)
    else:
        conn.close()


# ----------------------------------------------------------------------
# Schema
# ----------------------------------------------------------------------
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id           TEXT PRIMARY KEY,
    nickname     TEXT NOT NULL UNIQUE,
    avatar_url   TEXT,
    is_ai        BOOLEAN NOT NULL DEFAULT FALSE,
    personality  TEXT,
    ip           TEXT,
    platform     TEXT,
    language     TEXT,
    timezone     TEXT,
    user_agent   TEXT,
    screen       TEXT,
    country      TEXT,
    state        TEXT,
    city         TEXT,
    created_at   TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at   TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS chat_messages (
    id           TEXT PRIMARY KEY,
    user_id      TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    text         TEXT NOT NULL,
    reply_to_id  TEXT REFERENCES chat_messages(id) ON DELETE SET NULL,
    created_at   TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    edited_at    TIMESTAMPTZ
);

CREATE INDEX IF NOT EXISTS idx_chat_messages_created_at ON chat_messages (created_at DESC);
"""


def init_schema() -> None:
    conn, from_pool = _acquire_conn()
    try:
        with conn.cursor() as cur:
            cur.execute(SCHEMA_SQL)
        conn.commit()
        logging.info("Database schema verified (users, chat_messages)")
    except psycopg2.Error as e:
        conn.rollback()
        raise PersistenceError(f"schema setup failed: {e}") from e
    finally:
        _release_conn(conn, from_pool)


# ----------------------------------------------------------------------
# Row shaping
# ----------------------------------------------------------------------
def _iso(value) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    return str(value)


def _user_dict(row) -> dict | None:
    if not row:
        return None
    out = {
        "id": row["id"],
        "nickname": row["nickname"],
        "avatarUrl": row.get("avatar_url"),
        "isAI": bool(row.get("is_ai")),
        "createdAt": _iso(row.get("created_at")),
    }
    for key, column in USER_META_FIELDS.items():
        if key not in out:
            out[key] = row.get(column)
    return out


def _message_dict(row) -> dict | None:
    if not row:
        return None
    msg = {
        "id": row["id"],
        "userId": row["user_id"],
        "nickname": row.get("nickname"),
        "avatarUrl": row.get("avatar_url"),
        "isAI": bool(row.get("is_ai")),
        "text": row["text"],
        "createdAt": _iso(row.get("created_at")),
        "replyToId": row.get("reply_to_id"),
    }
    if row.get("edited_at") is not None:
        msg["editedAt"] = _iso(row["edited_at"])
    if row.get("reply_id"):
        msg["replyTo"] = {
            "id": row["reply_id"],
            "userId": row.get("reply_user_id"),
            "nickname": row.get("reply_nickname"),
            "text": row.get("reply_text"),
        }
    return msg


_MESSAGE_SELECT = """
SELECT m.id, m.user_id, m.text, m.reply_to_id, m.created_at, m.edited_at,
       u.nickname, u.avatar_url, u.is_ai,
       r.id AS reply_id, r.user_id AS reply_user_id, r.text AS reply_text,
       ru.nickname AS reply_nickname
  FROM chat_messages m
  JOIN users u ON u.id = m.user_id
  LEFT JOIN chat_messages r ON r.id = m.reply_to_id
  LEFT JOIN users ru ON ru.id = r.user_id
"""


# ----------------------------------------------------------------------
# Store
# ----------------------------------------------------------------------
class PgChatStore:
    """Postgres-backed persistence for users and chat messages.

    Every public method takes a connection, runs in one transaction and
    releases it. psycopg2 errors are re-raised as PersistenceError.
    """

    def _run(self, fn, *, commit: bool = False):
        conn, from_pool = _acquire_conn()
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                result = fn(cur)
            if commit:
                conn.commit()
            return result
        except psycopg2.Error as e:
            try:
                conn.rollback()
            except psycopg2.Error:
                pass
            logging.error("Database call %s failed: %s", getattr(fn, "__name__", "?"), e)
            raise PersistenceError(str(e)) from e
        finally:
            _release_conn(conn, from_pool)

    # ── users ─────────────────────────────────────────────────────────
    def get_user(self, user_id: str) -> dict | None:
        def q(cur):
            cur.execute("SELECT * FROM users WHERE id = %s;", (str(user_id),))
            return _user_dict(cur.fetchone())

        return self._run(q)

    def nickname_exists(self, nickname: str) -> bool:
        def q(cur):
            cur.execute("SELECT 1 FROM users WHERE nickname = %s LIMIT 1;", (nickname,))
            return cur.fetchone() is not None

        return self._run(q)

    def _next_nickname(self, cur) -> str:
        cur.execute("SELECT COUNT(*) AS n FROM users;")
        count = int(cur.fetchone()["n"])
        start = count + 1 if count >= 1 else 1
        for i in range(NICKNAME_PROBES):
            candidate = f"{ANON_PREFIX}{start + i}"
            cur.execute("SELECT 1 FROM users WHERE nickname = %s LIMIT 1;", (candidate,))
            if cur.fetchone() is None:
                return candidate
        return f"{ANON_PREFIX}{random.randint(1000, 9999)}"

    def create_anonymous_user(self, meta: dict | None = None) -> dict:
        meta = meta or {}

        def q(cur):
            nickname = self._next_nickname(cur)
            columns = ["id", "nickname"]
            values = [str(uuid.uuid4()), nickname]
            for key, column in USER_META_FIELDS.items():
                if meta.get(key):
                    columns.append(column)
                    values.append(str(meta[key]))
            placeholders = ", ".join(["%s"] * len(columns))
            cur.execute(
                f"INSERT INTO users ({', '.join(columns)}) VALUES ({placeholders}) RETURNING *;",
                values,
            )
            return _user_dict(cur.fetchone())

        user = self._run(q, commit=True)
        logging.info("Created anonymous user %s", user["nickname"])
        return user

    def update_user_meta(self, user_id: str, meta: dict | None) -> dict | None:
        """Apply only the non-empty metadata fields that actually changed."""
        current = self.get_user(user_id)
        if current is None:
            return None
        changes = {
            column: str(meta[key])
            for key, column in USER_META_FIELDS.items()
            if meta and meta.get(key) and str(meta[key]) != (current.get(key) or "")
        }
        if not changes:
            return current

        def q(cur):
            assignments = ", ".join(f"{column} = %s" for column in changes)
            cur.execute(
                f"UPDATE users SET {assignments}, updated_at = NOW() WHERE id = %s RETURNING *;",
                [*changes.values(), str(user_id)],
            )
            return _user_dict(cur.fetchone())

        return self._run(q, commit=True)

    def create_ai_user(self, nickname: str, avatar_url: str, personality: str) -> dict:
        def q(cur):
            cur.execute(
                """
                INSERT INTO users (id, nickname, avatar_url, is_ai, personality)
                VALUES (%s, %s, %s, TRUE, %s)
                RETURNING *;
                """,
                (str(uuid.uuid4()), nickname, avatar_url, personality),
            )
            return _user_dict(cur.fetchone())

        return self._run(q, commit=True)

    # ── messages ──────────────────────────────────────────────────────
    def get_message(self, message_id: str) -> dict | None:
        def q(cur):
            cur.execute(_MESSAGE_SELECT + " WHERE m.id = %s;", (str(message_id),))
            return _message_dict(cur.fetchone())

        return self._run(q)

    def insert_message(self, user_id: str, text: str, reply_to_id: str | None = None) -> dict:
        message_id = str(uuid.uuid4())

        def q(cur):
            reply_id = None
            if reply_to_id:
                cur.execute("SELECT id FROM chat_messages WHERE id = %s;", (str(reply_to_id),))
                row = cur.fetchone()
                reply_id = row["id"] if row else None
            cur.execute(
                "INSERT INTO chat_messages (id, user_id, text, reply_to_id) VALUES (%s, %s, %s, %s);",
                (message_id, str(user_id), text, reply_id),
            )
            cur.execute(_MESSAGE_SELECT + " WHERE m.id = %s;", (message_id,))
            return _message_dict(cur.fetchone())

        return self._run(q, commit=True)

    def update_message_text(self, message_id: str, user_id: str, text: str) -> dict | None:
        """Edit a message. Returns None unless user_id authored it."""

        def q(cur):
            cur.execute(
                """
                UPDATE chat_messages
                   SET text = %s, edited_at = NOW()
                 WHERE id = %s AND user_id = %s
             RETURNING id;
                """,
                (text, str(message_id), str(user_id)),
            )
            if cur.fetchone() is None:
                return None
            cur.execute(_MESSAGE_SELECT + " WHERE m.id = %s;", (str(message_id),))
            return _message_dict(cur.fetchone())

        return self._run(q, commit=True)

    def get_history(self, limit: int, offset: int = 0) -> list[dict]:
        """Newest ``limit`` messages after skipping ``offset``, returned oldest first."""

        def q(cur):
            cur.execute(
                _MESSAGE_SELECT + " ORDER BY m.created_at DESC LIMIT %s OFFSET %s;",
                (int(limit), int(offset)),
            )
            return [_message_dict(r) for r in cur.fetchall()]

        rows = self._run(q)
        rows.reverse()
        return rows
