"""WebSocket chat handler: routes chat frames to the right audience.

``ChatHub`` holds everything shared between connections (registry, session
gate, rate limiter, stores, FINN). ``ChatSession`` holds the state of one
connection and handles each inbound frame type in a ``handle_<type>``
method. The entry point is ``websocket_chat()``, mounted at ``/ws`` by
server.py.
"""

import asyncio
import contextlib
import json
import logging
import time
from dataclasses import dataclass

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from .assistant import AssistantScheduler
from .auth import AuthError, RateLimiter, SessionGate
from .connection_registry import Connection, ConnectionRegistry
from .content_filter import filter_message
from .conversation_monitor import ConversationMonitor, pair_key
from .finn import (
    FINN_AVATAR,
    FINN_USERNAME,
    analyze_message_for_support,
    generate_supportive_response,
    grotto_suggestion,
)
from .frames import (
    INBOUND_TYPES,
    MAX_GROTTO_PARTICIPANTS,
    AuthErrorFrame,
    AuthSuccess,
    ErrorFrame,
    GrottoChatMessage,
    HeartbeatAck,
    StreamChatMessage,
    StreamJoined,
    StreamLeft,
    WorldChatMessage,
    parse_inbound,
)
from .message_store import ChatMessage, MessageStore
from .ws_constants import (
    CHAT_GROTTO,
    CHAT_STREAM,
    CHAT_WORLD,
    ERR_AUTH_REQUIRED,
    ERR_GROTTO_SIZE,
    ERR_INTERNAL,
    ERR_INVALID_FORMAT,
    ERR_MISSING_TYPE,
    ERR_NOT_IN_STREAM,
    ERR_RATE_LIMITED,
    ERR_SEND_FAILED,
    ERR_UNKNOWN_TYPE,
    MSG_AUTH,
    MSG_GROTTO_CHAT,
    MSG_HEARTBEAT,
    MSG_JOIN_STREAM,
    MSG_LEAVE_STREAM,
    MSG_STREAM_CHAT,
    MSG_WORLD_CHAT,
)

logger = logging.getLogger(__name__)

GROTTO_SUGGESTION_COOLDOWN = 10 * 60
MAX_STREAMS_PER_CONNECTION = 20
_MAX_TRACKED_CHANNELS = 1000


@dataclass(frozen=True)
class Channel:
    """Where a message goes: the world, one stream, or one grotto."""

    kind: str
    stream_name: str | None = None
    participants: tuple[str, ...] = ()

    @classmethod
    def world(cls) -> "Channel":
        return cls(CHAT_WORLD)

    @classmethod
    def stream(cls, name: str) -> "Channel":
        return cls(CHAT_STREAM, stream_name=name)

    @classmethod
    def grotto(cls, participants) -> "Channel":
        return cls(CHAT_GROTTO, participants=tuple(sorted(set(participants))))

    @property
    def key(self) -> str:
        if self.kind == CHAT_STREAM:
            return f"stream:{self.stream_name}"
        if self.kind == CHAT_GROTTO:
            return "grotto:" + ",".join(self.participants)
        return CHAT_WORLD

    def message_fields(self) -> dict:
        return {
            "chat_type": self.kind,
            "stream_name": self.stream_name,
            "grotto_participants": list(self.participants) or None,
        }

    def frame_for(self, msg: ChatMessage) -> dict:
        data = msg.to_public()
        if self.kind == CHAT_STREAM:
            return StreamChatMessage(stream_name=self.stream_name, data=data).to_wire()
        if self.kind == CHAT_GROTTO:
            return GrottoChatMessage(participants=list(self.participants), data=data).to_wire()
        return WorldChatMessage(data=data).to_wire()


class ChatHub:
    """Shared chat state for one server instance.

    Constructed once per app (or per test) and handed to every session.
    ``start``/``stop`` control the background sweeps.
    """

    def __init__(
        self,
        *,
        registry: ConnectionRegistry,
        gate: SessionGate,
        rate_limiter: RateLimiter,
        monitor: ConversationMonitor,
        assistant: AssistantScheduler,
        message_store: MessageStore,
        suggestion_cooldown: float = GROTTO_SUGGESTION_COOLDOWN,
    ):
        self.registry = registry
        self.gate = gate
        self.rate_limiter = rate_limiter
        self.monitor = monitor
        self.assistant = assistant
        self.message_store = message_store
        self.suggestion_cooldown = suggestion_cooldown
        # channel key -> [lock, holders]; keeps each channel in dispatch order
        self._channel_locks: dict[str, list] = {}
        self._last_author: dict[str, str] = {}
        self._last_suggested: dict[tuple[str, str], float] = {}

    def start(self):
        self.registry.start()
        self.monitor.start()

    async def stop(self):
        await self.assistant.stop()
        await self.monitor.stop()
        await self.registry.stop()

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def audience(self, channel: Channel) -> list[Connection]:
        if channel.kind == CHAT_STREAM:
            return self.registry.subscribers(channel.stream_name)
        if channel.kind == CHAT_GROTTO:
            return self.registry.by_usernames(channel.participants)
        return self.registry.all()

    async def _fan_out(self, channel: Channel, msg: ChatMessage) -> int:
        frame = channel.frame_for(msg)
        delivered = 0
        for conn in self.audience(channel):
            try:
                if await conn.send(frame):
                    delivered += 1
            except Exception:
                logger.exception("Broadcast to %r failed", conn)
        return delivered

    @contextlib.asynccontextmanager
    async def _channel_lock(self, key: str):
        entry = self._channel_locks.get(key)
        if entry is None:
            entry = self._channel_locks[key] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._channel_locks[key]

    async def publish(self, channel: Channel, fields: dict, *, origin: Connection | None = None) -> ChatMessage | None:
        """Persist a message and broadcast it to *channel*'s audience.

        Publishes to one channel are serialized, so its audience sees them in
        dispatch order; different channels never wait on each other. A
        storage failure is reported to *origin* and the unsaved message is
        still broadcast.
        """
        fields = {**fields, **channel.message_fields()}
        async with self._channel_lock(channel.key):
            try:
                msg = await self.message_store.create_message(**fields)
            except Exception:
                logger.exception("Failed to persist %s message from %s", channel.kind, fields.get("username"))
                if origin is not None:
                    await origin.send(ErrorFrame(message=ERR_SEND_FAILED).to_wire())
                try:
                    msg = ChatMessage.build(**fields)
                except ValueError:
                    return None
            delivered = await self._fan_out(channel, msg)
        logger.debug("Delivered %s message %s to %d connection(s)", channel.key, msg.id, delivered)
        return msg

    async def post_as_finn(self, channel: Channel, text: str) -> ChatMessage | None:
        msg = await self.publish(channel, {
            "message": text,
            "filtered_message": text,
            "username": FINN_USERNAME,
            "user_avatar": FINN_AVATAR,
            "was_filtered": False,
            "filter_reasons": [],
        })
        if msg is not None:
            logger.info("FINN sent %s message: %s...", channel.kind, text[:50])
        return msg

    # ------------------------------------------------------------------
    # FINN reactions
    # ------------------------------------------------------------------

    def react(self, channel: Channel, author: str, raw_text: str) -> list[str]:
        """Schedule FINN's replies to a message that was just broadcast.

        Returns the correlation ids of the scheduled replies.
        """
        scheduled = []
        triggers = analyze_message_for_support(raw_text)
        if triggers:
            async def _support():
                response = generate_supportive_response(triggers)
                if response:
                    await self.post_as_finn(channel, response)
            scheduled.append(self.assistant.schedule(_support))

        users = self._track_pair(channel, author)
        if users:
            text = grotto_suggestion(list(users))

            async def _suggest():
                await self.post_as_finn(channel, text)
            scheduled.append(self.assistant.schedule(_suggest))
        return scheduled

    def _track_pair(self, channel: Channel, author: str) -> tuple[str, ...] | None:
        """Pair *author* with the previous speaker on the channel.

        Returns the pair when FINN should suggest a grotto now, honouring a
        per-pair cooldown so a long exchange gets one suggestion, not one per
        message.
        """
        if channel.kind == CHAT_GROTTO or author == FINN_USERNAME:
            return None
        key = channel.key
        previous = self._last_author.get(key)
        self._last_author[key] = author
        if len(self._last_author) > _MAX_TRACKED_CHANNELS:
            self._prune_channels()
        if previous is None or previous == author:
            return None

        suggestion = self.monitor.track(author, previous, channel.stream_name or CHAT_WORLD)
        if not suggestion.should_suggest:
            return None

        pair = pair_key(author, previous)
        now = time.monotonic()
        last = self._last_suggested.get(pair)
        if last is not None and now - last < self.suggestion_cooldown:
            return None
        self._last_suggested[pair] = now
        if len(self._last_suggested) > _MAX_TRACKED_CHANNELS:
            cutoff = now - self.suggestion_cooldown
            self._last_suggested = {k: t for k, t in self._last_suggested.items() if t > cutoff}
        return suggestion.users

    def _prune_channels(self):
        live = {f"stream:{name}" for name in self.registry.stream_names()}
        live.add(CHAT_WORLD)
        self._last_author = {k: v for k, v in self._last_author.items() if k in live}


class ChatSession:
    """Holds all mutable state for a single WebSocket connection.

    Each inbound frame type is handled by a ``handle_<type>`` method, keeping
    the main loop thin and each handler focused on one concern.
    """

    def __init__(self, websocket: WebSocket, *, hub: ChatHub):
        self.hub = hub
        self.conn = Connection(websocket)

    @property
    def identity(self):
        return self.conn.identity

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def send_error(self, message: str) -> None:
        await self.conn.send(ErrorFrame(message=message).to_wire())

    async def _require_login(self) -> bool:
        if not self.conn.authenticated:
            await self.send_error(ERR_AUTH_REQUIRED)
            return False
        return True

    async def _charge_rate_limit(self) -> bool:
        """Spend one chat action; call only once every other check passed."""
        if not self.hub.rate_limiter.allow(self.identity.id):
            logger.info("Rate limited %s", self.identity.username)
            await self.send_error(ERR_RATE_LIMITED)
            return False
        return True

    async def _post(self, channel: Channel, text: str) -> ChatMessage | None:
        result = filter_message(text)
        msg = await self.hub.publish(channel, {
            "message": text,
            "filtered_message": result.filtered_text,
            "username": self.identity.username,
            "user_avatar": self.identity.bloom,
            "was_filtered": result.was_filtered,
            "filter_reasons": result.reasons,
        }, origin=self.conn)
        if msg is not None:
            self.hub.react(channel, self.identity.username, text)
        return msg

    # ------------------------------------------------------------------
    # Frame handlers
    # ------------------------------------------------------------------

    async def handle_auth(self, frame) -> None:
        try:
            identity = await self.hub.gate.authenticate(frame.token)
        except AuthError as e:
            logger.warning("WebSocket authentication failed: %s", e)
            await self.conn.send(AuthErrorFrame(message=f"WebSocket authentication failed: {e}").to_wire())
            return
        self.hub.registry.promote(self.conn, identity)
        await self.conn.send(AuthSuccess(user=identity.to_public_profile()).to_wire())
        logger.info("User %s authenticated", identity.username)

    async def handle_world_chat(self, frame) -> None:
        if not await self._require_login() or not await self._charge_rate_limit():
            return
        await self._post(Channel.world(), frame.message)
        logger.debug("World chat message from %s", self.identity.username)

    async def handle_stream_chat(self, frame) -> None:
        if not await self._require_login():
            return
        name = frame.stream_name
        member = name in self.identity.joined_streams or self.hub.registry.is_subscribed(name, self.conn)
        if not member:
            await self.send_error(ERR_NOT_IN_STREAM)
            return
        if not await self._charge_rate_limit():
            return
        await self._post(Channel.stream(name), frame.message)
        logger.debug("Stream message from %s in %s", self.identity.username, name)

    async def handle_grotto_chat(self, frame) -> None:
        if not await self._require_login():
            return
        participants = set(frame.participants) | {self.identity.username}
        if not 2 <= len(participants) <= MAX_GROTTO_PARTICIPANTS:
            await self.send_error(ERR_GROTTO_SIZE)
            return
        if not await self._charge_rate_limit():
            return
        await self._post(Channel.grotto(participants), frame.message)

    async def handle_join_stream(self, frame) -> None:
        if not self.conn.authenticated:
            await self.send_error(ERR_AUTH_REQUIRED)
            return
        name = frame.stream_name
        registry = self.hub.registry
        if not registry.is_subscribed(name, self.conn) and len(registry.streams_of(self.conn)) >= MAX_STREAMS_PER_CONNECTION:
            await self.send_error("Too many streams joined")
            return
        registry.join_stream(name, self.conn)
        await self.conn.send(StreamJoined(stream_name=name).to_wire())
        logger.info("User %s joined stream %s", self.identity.username, name)

    async def handle_leave_stream(self, frame) -> None:
        self.hub.registry.leave_stream(frame.stream_name, self.conn)
        await self.conn.send(StreamLeft(stream_name=frame.stream_name).to_wire())
        logger.info("User %s left stream %s", self.conn.username, frame.stream_name)

    async def handle_heartbeat(self, frame) -> None:
        self.conn.touch()
        await self.conn.send(HeartbeatAck().to_wire())

    # ------------------------------------------------------------------
    # Main loop & cleanup
    # ------------------------------------------------------------------

    # Dispatch table: frame type -> handler method name
    _HANDLERS = {
        MSG_AUTH: "handle_auth",
        MSG_WORLD_CHAT: "handle_world_chat",
        MSG_STREAM_CHAT: "handle_stream_chat",
        MSG_GROTTO_CHAT: "handle_grotto_chat",
        MSG_JOIN_STREAM: "handle_join_stream",
        MSG_LEAVE_STREAM: "handle_leave_stream",
        MSG_HEARTBEAT: "handle_heartbeat",
    }

    async def dispatch(self, data: str) -> None:
        """Decode, validate and route one inbound frame."""
        try:
            msg = json.loads(data)
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning("Malformed JSON from client: %s", e)
            await self.send_error(ERR_INVALID_FORMAT)
            return
        if not isinstance(msg, dict):
            await self.send_error(ERR_INVALID_FORMAT)
            return

        msg_type = msg.get("type")
        if not msg_type or not isinstance(msg_type, str):
            await self.send_error(ERR_MISSING_TYPE)
            return
        if msg_type not in INBOUND_TYPES:
            await self.send_error(f"{ERR_UNKNOWN_TYPE}: {msg_type[:50]}")
            return

        self.conn.touch()

        try:
            frame = parse_inbound(msg)
        except ValidationError as e:
            logger.warning("Invalid %s frame: %d error(s)", msg_type, e.error_count())
            await self.send_error(f"Invalid {msg_type} payload")
            return

        try:
            await getattr(self, self._HANDLERS[msg_type])(frame)
        except Exception:
            logger.exception("Unexpected error handling frame type=%s", msg_type)
            await self.send_error(ERR_INTERNAL)

    async def run(self) -> None:
        """Main message loop: one frame at a time until the socket closes."""
        try:
            while True:
                try:
                    data = await self.conn.ws.receive_text()
                except KeyError:
                    # Binary frame: there is no "text" key in the ASGI message
                    await self.send_error(ERR_INVALID_FORMAT)
                    continue
                await self.dispatch(data)
        except (WebSocketDisconnect, RuntimeError):
            pass

    def cleanup(self) -> None:
        self.conn.stop()
        if self.hub.registry.remove(self.conn):
            logger.info("User %s disconnected", self.conn.username or "<anonymous>")


# ------------------------------------------------------------------
# FastAPI endpoint, mounted at /ws by server.py
# ------------------------------------------------------------------

async def websocket_chat(websocket: WebSocket, *, hub: ChatHub) -> None:
    """WebSocket endpoint handler for /ws.

    Connections start unauthenticated and stay open until an ``auth`` frame
    succeeds; until then they are registered but receive no broadcasts.
    """
    await websocket.accept()
    session = ChatSession(websocket, hub=hub)
    hub.registry.register(session.conn)
    session.conn.start()
    try:
        await session.run()
    finally:
        session.cleanup()
