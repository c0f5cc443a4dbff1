"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import os
import random
import threading
import uuid
from datetime import datetime, timezone

import pytest

# Keep the Socket.IO server in threading mode under test even if eventlet is installed.
os.environ.setdefault("CONFEED_SOCKETIO_ASYNC", "threading")

from config import get_default_settings  # noqa: E402
from database import PersistenceError  # noqa: E402


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class FakeStore:
    """In-memory stand-in for database.PgChatStore."""

    def __init__(self):
        self.users: dict[str, dict] = {}
        self.messages: list[dict] = []
        self.fail_writes = False
        self.ai_created: list[dict] = []
        self._lock = threading.Lock()

    def add_user(self, nickname: str, avatar_url: str | None = None, is_ai: bool = False) -> dict:
        user = {
            "id": str(uuid.uuid4()),
            "nickname": nickname,
            "avatarUrl": avatar_url,
            "isAI": is_ai,
            "createdAt": _now(),
        }
        with self._lock:
            self.users[user["id"]] = user
        return dict(user)

    # ── users ─────────────────────────────────────────────────────────
    def get_user(self, user_id):
        with self._lock:
            user = self.users.get(str(user_id))
            return dict(user) if user else None

    def nickname_exists(self, nickname):
        with self._lock:
            return any(u["nickname"] == nickname for u in self.users.values())

    def create_anonymous_user(self, meta=None):
        with self._lock:
            n = len(self.users) + 1
        user = self.add_user(f"anonimo#{n}", avatar_url=(meta or {}).get("avatarUrl"))
        if meta:
            return self.update_user_meta(user["id"], meta)
        return user

    def update_user_meta(self, user_id, meta):
        with self._lock:
            user = self.users.get(str(user_id))
            if user is None:
                return None
            for key, value in (meta or {}).items():
                if value:
                    user[key] = value
            return dict(user)

    def create_ai_user(self, nickname, avatar_url, personality):
        if self.fail_writes:
            raise PersistenceError("database unavailable")
        user = self.add_user(nickname, avatar_url=avatar_url, is_ai=True)
        self.ai_created.append(user)
        return user

    # ── messages ──────────────────────────────────────────────────────
    def _shape(self, msg: dict) -> dict:
        author = self.users.get(msg["userId"], {})
        out = dict(msg)
        out["nickname"] = author.get("nickname")
        out["avatarUrl"] = author.get("avatarUrl")
        out["isAI"] = bool(author.get("isAI"))
        return out

    def insert_message(self, user_id, text, reply_to_id=None):
        if self.fail_writes:
            raise PersistenceError("database unavailable")
        with self._lock:
            known = {m["id"] for m in self.messages}
            msg = {
                "id": str(uuid.uuid4()),
                "userId": str(user_id),
                "text": text,
                "createdAt": _now(),
                "replyToId": reply_to_id if reply_to_id in known else None,
            }
            self.messages.append(msg)
            return self._shape(msg)

    def get_message(self, message_id):
        with self._lock:
            for m in self.messages:
                if m["id"] == message_id:
                    return self._shape(m)
        return None

    def update_message_text(self, message_id, user_id, text):
        if self.fail_writes:
            raise PersistenceError("database unavailable")
        with self._lock:
            for m in self.messages:
                if m["id"] == message_id:
                    if m["userId"] != str(user_id):
                        return None
                    m["text"] = text
                    m["editedAt"] = _now()
                    return self._shape(m)
        return None

    def get_history(self, limit, offset=0):
        with self._lock:
            newest_first = list(reversed(self.messages))[offset:offset + limit]
            return [self._shape(m) for m in reversed(newest_first)]


class FakeGenerator:
    """Scripted text generator. Each call pops the next reply (the last one repeats)."""

    def __init__(self, *replies, error=None):
        self.replies = list(replies) or ["hello there"]
        self.error = error
        self.prompts: list[str] = []

    def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        if len(self.replies) > 1:
            return self.replies.pop(0)
        return self.replies[0]


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FixedRandom(random.Random):
    """random() always returns ``value``; choice/randint still vary by seed."""

    def __init__(self, value: float = 0.0, seed: int = 7):
        super().__init__(seed)
        self.value = value

    def random(self) -> float:
        return self.value

    # Defining getrandbits keeps choice()/randint() on the seeded bit stream
    # instead of routing them through random().
    def getrandbits(self, k: int) -> int:
        return super().getrandbits(k)


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path) -> dict:
    s = get_default_settings()
    s.update(
        {
            "secret_key": "test-secret-key",
            "jwt_secret": "test-jwt-secret-with-enough-length-0123456789",
            "janitor_enabled": False,
            "ai_enabled": False,
            "log_file_path": str(tmp_path / "server.log"),
            "login_rate_limit": "1000 per minute",
        }
    )
    return s


@pytest.fixture
def app_and_socketio(settings, store):
    from server_init import create_app

    app, socketio = create_app(settings, store=store, generator=None)
    app.config["TESTING"] = True
    return app, socketio


@pytest.fixture
def app(app_and_socketio):
    return app_and_socketio[0]


@pytest.fixture
def socketio(app_and_socketio):
    return app_and_socketio[1]


@pytest.fixture
def realtime(app):
    return app.config["CONFEED_REALTIME"]


@pytest.fixture
def token_for(app):
    from security import issue_token

    def _token(user: dict) -> str:
        with app.app_context():
            return issue_token(user["id"])

    return _token


@pytest.fixture
def connect(app, socketio, store, token_for):
    """Create a user with ``nickname`` and open a socket for it."""
    clients = []

    def _connect(nickname: str, user: dict | None = None):
        user = user or store.add_user(nickname)
        client = socketio.test_client(app, auth={"token": token_for(user)})
        clients.append(client)
        return user, client

    yield _connect

    for c in clients:
        if c.is_connected():
            c.disconnect()


def received(client, name: str | None = None) -> list:
    """Drain the client's queue and return payloads (optionally of one event)."""
    events = client.get_received()
    if name is None:
        return events
    return [e["args"][0] for e in events if e["name"] == name]
