"""Shared fixtures for the Echo chat test suite."""

import os
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

# Ensure the project root is on sys.path so 'echo_chat' resolves without an install
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Minimal Argon2 cost for the test run
os.environ.setdefault("ECHO_ARGON2_TIME_COST", "1")
os.environ.setdefault("ECHO_ARGON2_MEMORY_COST", "1024")

from echo_chat.assistant import AssistantScheduler
from echo_chat.auth import RateLimiter, SessionGate, TokenCodec, _login_attempts
from echo_chat.connection_registry import Connection, ConnectionRegistry
from echo_chat.conversation_monitor import ConversationMonitor
from echo_chat.message_store import MessageStore
from echo_chat.user_store import Identity, UserStore

TEST_SECRET = "test-secret-for-the-echo-chat-suite-0123456789"


# ---------------------------------------------------------------------------
# Pattern 1: Bare Object Factory, skip __init__ for ChatSession
# ---------------------------------------------------------------------------

def make_bare_chat_session(*, hub=None, identity=None):
    """Create a ChatSession with __new__ (skip __init__).

    The connection wraps an AsyncMock socket so sent frames can be read back
    from ``session.conn.ws.send_json.call_args_list``. Pass a real ``hub`` to
    exercise routing; the default MagicMock is enough for handlers that only
    reply to the sender.
    """
    from echo_chat.ws_handler import ChatSession

    session = ChatSession.__new__(ChatSession)
    session.hub = hub if hub is not None else MagicMock()
    session.conn = Connection(AsyncMock())
    if identity is not None:
        session.conn.identity = identity
    return session


def make_identity(username: str, **kwargs) -> Identity:
    """An in-memory identity that never touched a store."""
    return Identity(id=f"id-{username}", username=username, password_hash="unused", **kwargs)


def sent_frames(conn: Connection, msg_type: str | None = None) -> list[dict]:
    """Every frame sent through a fake connection, optionally filtered by type."""
    frames = [c[0][0] for c in conn.ws.send_json.call_args_list]
    if msg_type is None:
        return frames
    return [f for f in frames if f.get("type") == msg_type]


# ---------------------------------------------------------------------------
# Building blocks
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _clean_login_attempts():
    """The login limiter is module state shared by every app instance."""
    _login_attempts.clear()
    yield
    _login_attempts.clear()


@pytest.fixture
def codec():
    return TokenCodec(TEST_SECRET)


@pytest.fixture
def user_store():
    return UserStore(None)


@pytest.fixture
def message_store():
    return MessageStore()


@pytest.fixture
def assistant():
    """Replies fire on the next loop iteration instead of 2-5 s later."""
    return AssistantScheduler(min_delay=0, max_delay=0)


@pytest.fixture
def hub(codec, user_store, message_store, assistant):
    from echo_chat.ws_handler import ChatHub

    return ChatHub(
        registry=ConnectionRegistry(),
        gate=SessionGate(codec, user_store),
        rate_limiter=RateLimiter(max_actions=20, window_seconds=60),
        monitor=ConversationMonitor(),
        assistant=assistant,
        message_store=message_store,
    )


def connect(hub, identity=None) -> Connection:
    """Register a fake connection on *hub*, promoted when *identity* is given."""
    conn = Connection(AsyncMock())
    hub.registry.register(conn)
    if identity is not None:
        hub.registry.promote(conn, identity)
    return conn


# ---------------------------------------------------------------------------
# App + clients
# ---------------------------------------------------------------------------

@pytest.fixture
def app():
    """A fresh app with in-memory stores and an immediate assistant."""
    from echo_chat.server import create_app

    return create_app(
        data_dir=None,
        jwt_secret=TEST_SECRET,
        assistant=AssistantScheduler(min_delay=0, max_delay=0),
    )


@pytest.fixture
async def client(app):
    """Async HTTP client for testing REST endpoints."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac
