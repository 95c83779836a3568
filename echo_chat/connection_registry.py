"""Live WebSocket connections, who they belong to, and which streams they follow."""

import asyncio
import logging
import time
from uuid import uuid4

from fastapi import WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)

IDLE_TIMEOUT_SECONDS = 5 * 60
SWEEP_INTERVAL = 60
IDLE_CLOSE_CODE = 4408
# Frames a client may fall behind by before it is dropped
MAX_PENDING_FRAMES = 256
SLOW_CONSUMER_CLOSE_CODE = 1013


class Connection:
    """One open socket. Unauthenticated until the registry promotes it.

    Once ``start()`` has been called, ``send()`` only queues the frame and a
    writer task drains the queue to the socket, so a client that stops
    reading never holds up the sender. A client that falls
    ``max_pending`` frames behind is closed. Before ``start()``, ``send()``
    writes to the socket directly.
    """

    def __init__(self, websocket: WebSocket):
        self.id = uuid4().hex
        self.ws = websocket
        self.identity = None
        self.last_activity: float = time.monotonic()
        self._alive = True
        self._outbox: asyncio.Queue | None = None
        self._writer: asyncio.Task | None = None
        self._closer: asyncio.Task | None = None

    @property
    def authenticated(self) -> bool:
        return self.identity is not None

    @property
    def username(self) -> str | None:
        return self.identity.username if self.identity is not None else None

    @property
    def alive(self) -> bool:
        return self._alive

    def touch(self) -> None:
        self.last_activity = time.monotonic()

    # ------------------------------------------------------------------
    # Outbound queue
    # ------------------------------------------------------------------

    def start(self, max_pending: int = MAX_PENDING_FRAMES) -> None:
        if self._writer is None:
            self._outbox = asyncio.Queue(maxsize=max_pending)
            self._writer = asyncio.create_task(self._write_loop())

    def stop(self) -> None:
        """Cancel the writer and discard anything still queued."""
        if self._writer is not None and not self._writer.done():
            self._writer.cancel()
        self._discard_pending()

    def _discard_pending(self) -> None:
        if self._outbox is None:
            return
        while True:
            try:
                self._outbox.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._outbox.task_done()

    async def _write_loop(self):
        while True:
            data = await self._outbox.get()
            try:
                await self.ws.send_json(data)
            except (WebSocketDisconnect, RuntimeError):
                self._alive = False
            except Exception:
                logger.exception("Write to %r failed", self)
                self._alive = False
            finally:
                self._outbox.task_done()
            if not self._alive:
                self._discard_pending()
                return

    async def flush(self) -> None:
        """Wait until every queued frame has been written or discarded."""
        if self._outbox is not None:
            await self._outbox.join()

    async def send(self, data: dict) -> bool:
        """Send JSON to the client, return False if it has gone away."""
        if not self._alive:
            return False
        if self._outbox is None:
            try:
                await self.ws.send_json(data)
                return True
            except (WebSocketDisconnect, RuntimeError):
                self._alive = False
                return False
        try:
            self._outbox.put_nowait(data)
        except asyncio.QueueFull:
            logger.warning("%r fell %d frames behind, closing it", self, self._outbox.maxsize)
            self._alive = False
            self.stop()
            self._closer = asyncio.create_task(
                self._close_socket(SLOW_CONSUMER_CLOSE_CODE, "Too many pending messages")
            )
            return False
        return True

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if not self._alive:
            return
        self._alive = False
        self.stop()
        await self._close_socket(code, reason)

    async def _close_socket(self, code: int, reason: str) -> None:
        try:
            await self.ws.close(code=code, reason=reason)
        except (WebSocketDisconnect, RuntimeError):
            pass

    def __repr__(self) -> str:
        return f"<Connection {self.id[:8]} user={self.username!r}>"


class ConnectionRegistry:
    """Maps connections to identities and stream names to subscribers.

    Only the WebSocket handler and the idle sweep mutate the registry. All
    methods are synchronous, so each call runs to completion on the event
    loop without interleaving.
    """

    def __init__(
        self,
        *,
        idle_timeout: float = IDLE_TIMEOUT_SECONDS,
        sweep_interval: float = SWEEP_INTERVAL,
    ):
        self.idle_timeout = idle_timeout
        self.sweep_interval = sweep_interval
        self._connections: dict[str, Connection] = {}
        self._by_identity: dict[str, Connection] = {}
        # stream name -> {connection id: connection}, insertion ordered
        self._streams: dict[str, dict[str, Connection]] = {}
        self._sweep_task: asyncio.Task | None = None

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, conn: Connection) -> bool:
        return conn.id in self._connections

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def register(self, conn: Connection) -> None:
        self._connections[conn.id] = conn

    def promote(self, conn: Connection, identity) -> None:
        """Attach an authenticated identity to a registered connection."""
        if conn.id not in self._connections:
            raise KeyError(f"connection {conn.id} is not registered")
        previous = conn.identity
        if previous is not None and previous.id != identity.id:
            self._drop_identity_index(conn)
        conn.identity = identity
        conn.touch()
        self._by_identity[identity.id] = conn

    def remove(self, conn: Connection) -> bool:
        """Forget *conn* everywhere. Safe to call more than once."""
        removed = self._connections.pop(conn.id, None) is not None

        for name in list(self._streams):
            members = self._streams[name]
            if members.pop(conn.id, None) is not None:
                removed = True
            if not members:
                del self._streams[name]

        if conn.identity is not None:
            self._drop_identity_index(conn)
        return removed

    def _drop_identity_index(self, conn: Connection) -> None:
        identity_id = conn.identity.id
        if self._by_identity.get(identity_id) is not conn:
            return
        del self._by_identity[identity_id]
        # Another tab of the same user keeps the identity reachable
        for other in self._connections.values():
            if other is not conn and other.identity is not None and other.identity.id == identity_id:
                self._by_identity[identity_id] = other
                break

    def by_identity(self, identity_id: str) -> Connection | None:
        return self._by_identity.get(identity_id)

    def all(self) -> list[Connection]:
        """Authenticated connections, in registration order."""
        return [c for c in self._connections.values() if c.authenticated]

    def by_usernames(self, usernames) -> list[Connection]:
        wanted = set(usernames)
        return [c for c in self.all() if c.username in wanted]

    # ------------------------------------------------------------------
    # Streams
    # ------------------------------------------------------------------

    def join_stream(self, name: str, conn: Connection) -> bool:
        """Subscribe *conn* to *name*. Returns False if it was already subscribed."""
        if conn.id not in self._connections:
            raise KeyError(f"connection {conn.id} is not registered")
        members = self._streams.setdefault(name, {})
        if conn.id in members:
            return False
        members[conn.id] = conn
        return True

    def leave_stream(self, name: str, conn: Connection) -> bool:
        members = self._streams.get(name)
        if not members or members.pop(conn.id, None) is None:
            return False
        if not members:
            del self._streams[name]
        return True

    def subscribers(self, name: str) -> list[Connection]:
        return [c for c in self._streams.get(name, {}).values() if c.authenticated]

    def is_subscribed(self, name: str, conn: Connection) -> bool:
        return conn.id in self._streams.get(name, {})

    def streams_of(self, conn: Connection) -> list[str]:
        return [name for name, members in self._streams.items() if conn.id in members]

    def stream_names(self) -> list[str]:
        return list(self._streams)

    # ------------------------------------------------------------------
    # Idle sweep
    # ------------------------------------------------------------------

    async def sweep(self) -> list[Connection]:
        """Close and deregister every connection idle past the timeout."""
        now = time.monotonic()
        idle = [c for c in self._connections.values() if now - c.last_activity > self.idle_timeout]
        for conn in idle:
            self.remove(conn)
            logger.info("Closing idle connection %r", conn)
            try:
                await conn.close(code=IDLE_CLOSE_CODE, reason="Idle timeout")
            except Exception:
                logger.exception("Failed to close idle connection %r", conn)
        return idle

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Connection sweep iteration failed")

    def start(self):
        if self._sweep_task is None:
            self._sweep_task = asyncio.ensure_future(self._sweep_loop())

    async def stop(self):
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
