"""Tests for echo_chat.connection_registry -- identity index, streams, idle sweep."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from starlette.websockets import WebSocketDisconnect

from echo_chat.connection_registry import (
    IDLE_CLOSE_CODE,
    SLOW_CONSUMER_CLOSE_CODE,
    Connection,
    ConnectionRegistry,
)
from tests.conftest import make_identity


def new_conn() -> Connection:
    return Connection(AsyncMock())


@pytest.fixture
def registry():
    return ConnectionRegistry(idle_timeout=300, sweep_interval=60)


# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------

class TestConnection:

    @pytest.mark.asyncio
    async def test_send_returns_false_after_disconnect(self):
        conn = new_conn()
        conn.ws.send_json.side_effect = WebSocketDisconnect()
        assert await conn.send({"type": "x"}) is False
        assert conn.alive is False
        # No further attempts on a dead socket
        assert await conn.send({"type": "y"}) is False
        assert conn.ws.send_json.await_count == 1

    @pytest.mark.asyncio
    async def test_close_only_once(self):
        conn = new_conn()
        await conn.close(code=4408, reason="Idle timeout")
        await conn.close()
        conn.ws.close.assert_awaited_once_with(code=4408, reason="Idle timeout")

    @pytest.mark.asyncio
    async def test_started_connection_writes_in_order(self):
        conn = new_conn()
        conn.start()
        for i in range(3):
            assert await conn.send({"type": "x", "n": i}) is True
        await conn.flush()
        assert [c[0][0]["n"] for c in conn.ws.send_json.call_args_list] == [0, 1, 2]
        conn.stop()

    @pytest.mark.asyncio
    async def test_send_does_not_wait_for_a_stalled_socket(self):
        conn = new_conn()
        never = asyncio.Event()

        async def _stall(data):
            await never.wait()

        conn.ws.send_json.side_effect = _stall
        conn.start(max_pending=2)

        # The writer holds the first frame; the queue takes two more
        for i in range(3):
            assert await asyncio.wait_for(conn.send({"n": i}), timeout=1) is True
            await asyncio.sleep(0)

        assert await conn.send({"n": 3}) is False
        assert conn.alive is False
        await asyncio.sleep(0)
        conn.ws.close.assert_awaited_once()
        assert conn.ws.close.await_args.kwargs["code"] == SLOW_CONSUMER_CLOSE_CODE
        # Discarded frames do not leave flush() hanging
        await asyncio.wait_for(conn.flush(), timeout=1)

    @pytest.mark.asyncio
    async def test_writer_stops_after_disconnect(self):
        conn = new_conn()
        conn.ws.send_json.side_effect = WebSocketDisconnect()
        conn.start()
        await conn.send({"type": "x"})
        await conn.send({"type": "y"})
        await asyncio.wait_for(conn.flush(), timeout=1)
        assert conn.alive is False
        assert conn.ws.send_json.await_count == 1
        assert await conn.send({"type": "z"}) is False

    def test_unauthenticated_by_default(self):
        conn = new_conn()
        assert conn.authenticated is False
        assert conn.username is None


# ---------------------------------------------------------------------------
# Registration and identity
# ---------------------------------------------------------------------------

class TestRegistration:

    def test_promote_requires_registration(self, registry):
        with pytest.raises(KeyError):
            registry.promote(new_conn(), make_identity("amy"))

    def test_all_lists_authenticated_only(self, registry):
        anon, authed = new_conn(), new_conn()
        registry.register(anon)
        registry.register(authed)
        registry.promote(authed, make_identity("amy"))
        assert registry.all() == [authed]
        assert len(registry) == 2

    def test_by_identity_and_usernames(self, registry):
        a, b = new_conn(), new_conn()
        amy, bo = make_identity("amy"), make_identity("bo")
        for conn, ident in ((a, amy), (b, bo)):
            registry.register(conn)
            registry.promote(conn, ident)
        assert registry.by_identity(amy.id) is a
        assert registry.by_usernames(["bo", "zed"]) == [b]

    def test_second_tab_takes_over_identity_index(self, registry):
        amy = make_identity("amy")
        first, second = new_conn(), new_conn()
        for conn in (first, second):
            registry.register(conn)
            registry.promote(conn, amy)
        assert registry.by_identity(amy.id) is second
        registry.remove(second)
        assert registry.by_identity(amy.id) is first

    def test_remove_is_idempotent(self, registry):
        conn = new_conn()
        registry.register(conn)
        registry.promote(conn, make_identity("amy"))
        registry.join_stream("peace", conn)
        assert registry.remove(conn) is True
        assert registry.remove(conn) is False
        assert conn not in registry
        assert registry.subscribers("peace") == []
        assert registry.stream_names() == []
        assert registry.by_identity("id-amy") is None


# ---------------------------------------------------------------------------
# Streams
# ---------------------------------------------------------------------------

class TestStreams:

    def test_join_and_leave(self, registry):
        conn = new_conn()
        registry.register(conn)
        registry.promote(conn, make_identity("amy"))
        assert registry.join_stream("peace", conn) is True
        assert registry.join_stream("peace", conn) is False
        assert registry.subscribers("peace") == [conn]
        assert registry.is_subscribed("peace", conn)
        assert registry.streams_of(conn) == ["peace"]
        assert registry.leave_stream("peace", conn) is True
        assert registry.leave_stream("peace", conn) is False
        assert registry.stream_names() == []

    def test_join_requires_registration(self, registry):
        with pytest.raises(KeyError):
            registry.join_stream("peace", new_conn())

    def test_subscribers_skip_unauthenticated(self, registry):
        conn = new_conn()
        registry.register(conn)
        registry.join_stream("peace", conn)
        assert registry.subscribers("peace") == []

    def test_streams_are_independent(self, registry):
        a, b = new_conn(), new_conn()
        for conn, name in ((a, "amy"), (b, "bo")):
            registry.register(conn)
            registry.promote(conn, make_identity(name))
        registry.join_stream("peace", a)
        registry.join_stream("calm", b)
        assert registry.subscribers("peace") == [a]
        assert registry.subscribers("calm") == [b]


# ---------------------------------------------------------------------------
# Idle sweep
# ---------------------------------------------------------------------------

class TestSweep:

    @pytest.mark.asyncio
    async def test_sweep_closes_idle_connections(self, registry):
        idle, fresh = new_conn(), new_conn()
        for conn in (idle, fresh):
            registry.register(conn)
        registry.join_stream("peace", idle)
        idle.last_activity -= 301

        swept = await registry.sweep()

        assert swept == [idle]
        assert idle not in registry
        assert fresh in registry
        assert registry.stream_names() == []
        idle.ws.close.assert_awaited_once_with(code=IDLE_CLOSE_CODE, reason="Idle timeout")

    @pytest.mark.asyncio
    async def test_touch_keeps_connection_alive(self, registry):
        conn = new_conn()
        registry.register(conn)
        conn.last_activity -= 301
        conn.touch()
        assert await registry.sweep() == []

    @pytest.mark.asyncio
    async def test_close_failure_does_not_stop_sweep(self, registry):
        a, b = new_conn(), new_conn()
        a.ws.close.side_effect = Exception("boom")
        for conn in (a, b):
            registry.register(conn)
            conn.last_activity -= 301
        swept = await registry.sweep()
        assert set(c.id for c in swept) == {a.id, b.id}
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_background_loop(self):
        registry = ConnectionRegistry(idle_timeout=0, sweep_interval=0.01)
        conn = new_conn()
        registry.register(conn)
        conn.last_activity -= 1
        registry.start()
        try:
            await asyncio.sleep(0.05)
        finally:
            await registry.stop()
        assert len(registry) == 0
