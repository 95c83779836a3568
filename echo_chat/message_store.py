"""Chat history: persisted chat messages with a 30-day retention window.

Messages are kept in insertion (= timestamp) order. Expired messages are
purged opportunistically on write and skipped on read, so nothing older than
the retention window is ever returned.

Backed by a single JSON file written atomically after every change, the same
way as the user store. Pass ``filepath=None`` for a purely in-memory store.
"""

import asyncio
import json
import logging
import os
import tempfile
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from uuid import uuid4

from .frames import MAX_MESSAGE_LENGTH, PublicChatMessage, Reaction
from .ws_constants import CHAT_GROTTO, CHAT_STREAM, CHAT_WORLD

logger = logging.getLogger(__name__)

RETENTION_SECONDS = 30 * 24 * 60 * 60
PURGE_INTERVAL = 60 * 60
DEFAULT_HISTORY_LIMIT = 50
MAX_HISTORY_LIMIT = 200
DELETED_PLACEHOLDER = "[Message deleted]"
DEFAULT_AVATAR = "🌸"

CHAT_TYPES = (CHAT_WORLD, CHAT_STREAM, CHAT_GROTTO)
SYSTEM_MESSAGE_TYPES = ("user_joined", "user_left", "stream_created", "announcement")


class StorageError(Exception):
    """A chat message could not be stored."""


@dataclass
class ChatMessage:
    id: str
    message: str
    filtered_message: str
    username: str
    chat_type: str
    user_avatar: str = DEFAULT_AVATAR
    stream_name: str | None = None
    grotto_participants: list[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    was_filtered: bool = False
    filter_reasons: list[str] = field(default_factory=list)
    reactions: list[dict] = field(default_factory=list)
    is_deleted: bool = False
    deleted_at: datetime | None = None
    deleted_by: str | None = None
    is_system_message: bool = False
    system_message_type: str | None = None

    @classmethod
    def build(
        cls,
        *,
        message: str,
        username: str,
        chat_type: str,
        filtered_message: str | None = None,
        user_avatar: str | None = None,
        stream_name: str | None = None,
        grotto_participants: list[str] | None = None,
        was_filtered: bool = False,
        filter_reasons: list[str] | None = None,
        is_system_message: bool = False,
        system_message_type: str | None = None,
    ) -> "ChatMessage":
        """Validate the fields and return an unsaved message."""
        message = (message or "").strip()
        if not message:
            raise ValueError("Message content is required")
        if len(message) > MAX_MESSAGE_LENGTH:
            raise ValueError(f"Message cannot exceed {MAX_MESSAGE_LENGTH} characters")
        if not username:
            raise ValueError("Username is required")
        if chat_type not in CHAT_TYPES:
            raise ValueError(f"Invalid chat type: {chat_type!r}")
        if chat_type == CHAT_STREAM and not stream_name:
            raise ValueError("Stream messages need a stream name")
        if chat_type == CHAT_GROTTO and not grotto_participants:
            raise ValueError("Grotto messages need participants")
        if is_system_message and system_message_type not in SYSTEM_MESSAGE_TYPES:
            raise ValueError(f"Invalid system message type: {system_message_type!r}")

        return cls(
            id=uuid4().hex,
            message=message,
            filtered_message=filtered_message or message,
            username=username,
            chat_type=chat_type,
            user_avatar=user_avatar or DEFAULT_AVATAR,
            stream_name=stream_name if chat_type == CHAT_STREAM else None,
            grotto_participants=sorted(set(grotto_participants or [])) if chat_type == CHAT_GROTTO else [],
            was_filtered=was_filtered,
            filter_reasons=list(filter_reasons or []),
            is_system_message=is_system_message,
            system_message_type=system_message_type if is_system_message else None,
        )

    def to_public(self) -> PublicChatMessage:
        return PublicChatMessage(
            id=self.id,
            message=DELETED_PLACEHOLDER if self.is_deleted else self.filtered_message,
            username=self.username,
            user_avatar=self.user_avatar,
            chat_type=self.chat_type,
            stream_name=self.stream_name,
            timestamp=self.timestamp,
            reactions=[Reaction(emoji=r["emoji"], users=list(r["users"])) for r in self.reactions],
            is_system_message=self.is_system_message,
            system_message_type=self.system_message_type,
            is_deleted=self.is_deleted,
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        data["deleted_at"] = self.deleted_at.isoformat() if self.deleted_at else None
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ChatMessage":
        data = dict(data)
        data["timestamp"] = datetime.fromisoformat(data["timestamp"])
        if data.get("deleted_at"):
            data["deleted_at"] = datetime.fromisoformat(data["deleted_at"])
        return cls(**data)


class MessageStore:
    def __init__(self, filepath: str | Path | None = None, *, retention_seconds: float = RETENTION_SECONDS):
        self.filepath = Path(filepath).resolve() if filepath else None
        self.retention = timedelta(seconds=retention_seconds)
        self._messages: dict[str, ChatMessage] = {}
        self._lock = asyncio.Lock()
        self._last_purge = time.monotonic()
        self._load_sync()

    def __len__(self) -> int:
        return len(self._messages)

    def _load_sync(self):
        if self.filepath is None or not self.filepath.exists():
            return
        try:
            with open(self.filepath, encoding="utf-8") as f:
                raw = json.load(f)
            messages = [ChatMessage.from_dict(m) for m in raw.get("messages", [])]
        except (json.JSONDecodeError, OSError, KeyError, TypeError, ValueError):
            logger.warning("Corrupt message store %s, starting fresh", self.filepath)
            return
        messages.sort(key=lambda m: m.timestamp)
        self._messages = {m.id: m for m in messages}
        self._purge_locked()

    def _save_sync(self):
        """Synchronous save; must be called via asyncio.to_thread()."""
        if self.filepath is None:
            return
        self.filepath.parent.mkdir(parents=True, exist_ok=True)
        payload = {"messages": [m.to_dict() for m in self._messages.values()]}
        tmp_fd, tmp_path = tempfile.mkstemp(dir=str(self.filepath.parent), suffix=".tmp")
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, ensure_ascii=False)
            os.replace(tmp_path, self.filepath)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    async def _save(self):
        await asyncio.to_thread(self._save_sync)

    def _expired(self, msg: ChatMessage, now: datetime) -> bool:
        return now - msg.timestamp > self.retention

    def _purge_locked(self) -> int:
        now = datetime.now(timezone.utc)
        expired = [mid for mid, m in self._messages.items() if self._expired(m, now)]
        for mid in expired:
            del self._messages[mid]
        self._last_purge = time.monotonic()
        if expired:
            logger.info("Purged %d expired chat message(s)", len(expired))
        return len(expired)

    async def purge_expired(self) -> int:
        async with self._lock:
            purged = self._purge_locked()
            if purged:
                await self._save()
            return purged

    async def create_message(self, **fields) -> ChatMessage:
        try:
            msg = ChatMessage.build(**fields)
        except (TypeError, ValueError) as e:
            raise StorageError(str(e)) from e
        async with self._lock:
            if time.monotonic() - self._last_purge > PURGE_INTERVAL:
                self._purge_locked()
            self._messages[msg.id] = msg
            try:
                await self._save()
            except OSError as e:
                del self._messages[msg.id]
                raise StorageError(f"Could not write {self.filepath}: {e}") from e
        return msg

    async def get(self, message_id: str) -> ChatMessage | None:
        async with self._lock:
            msg = self._messages.get(message_id)
            if msg is None or self._expired(msg, datetime.now(timezone.utc)):
                return None
            return msg

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def _history(self, predicate, limit: int, before: datetime | None) -> list[ChatMessage]:
        limit = max(1, min(int(limit), MAX_HISTORY_LIMIT))
        now = datetime.now(timezone.utc)
        out: list[ChatMessage] = []
        async with self._lock:
            for msg in reversed(list(self._messages.values())):
                if msg.is_deleted or self._expired(msg, now):
                    continue
                if before is not None and msg.timestamp >= before:
                    continue
                if not predicate(msg):
                    continue
                out.append(msg)
                if len(out) >= limit:
                    break
        return out

    async def world_history(self, limit: int = DEFAULT_HISTORY_LIMIT, before: datetime | None = None):
        return await self._history(lambda m: m.chat_type == CHAT_WORLD, limit, before)

    async def stream_history(self, stream_name: str, limit: int = DEFAULT_HISTORY_LIMIT, before: datetime | None = None):
        return await self._history(
            lambda m: m.chat_type == CHAT_STREAM and m.stream_name == stream_name, limit, before
        )

    async def grotto_history(self, participants: list[str], limit: int = DEFAULT_HISTORY_LIMIT, before: datetime | None = None):
        wanted = set(participants)
        return await self._history(
            lambda m: m.chat_type == CHAT_GROTTO and wanted <= set(m.grotto_participants), limit, before
        )

    async def recent_activity(self, hours: float = 24) -> list[dict]:
        """Per chat type message counts and unique authors over the last *hours*."""
        since = datetime.now(timezone.utc) - timedelta(hours=hours)
        counts: dict[str, int] = {}
        authors: dict[str, set[str]] = {}
        async with self._lock:
            for msg in self._messages.values():
                if msg.timestamp < since or msg.is_deleted or msg.is_system_message:
                    continue
                counts[msg.chat_type] = counts.get(msg.chat_type, 0) + 1
                authors.setdefault(msg.chat_type, set()).add(msg.username)
        return [
            {"chatType": chat_type, "messageCount": counts[chat_type], "uniqueUserCount": len(authors[chat_type])}
            for chat_type in counts
        ]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def add_reaction(self, message_id: str, emoji: str, username: str) -> ChatMessage | None:
        async with self._lock:
            msg = self._messages.get(message_id)
            if msg is None:
                return None
            reaction = next((r for r in msg.reactions if r["emoji"] == emoji), None)
            if reaction is None:
                reaction = {"emoji": emoji, "users": []}
                msg.reactions.append(reaction)
            if username not in reaction["users"]:
                reaction["users"].append(username)
            await self._save()
            return msg

    async def remove_reaction(self, message_id: str, emoji: str, username: str) -> ChatMessage | None:
        async with self._lock:
            msg = self._messages.get(message_id)
            if msg is None:
                return None
            for reaction in msg.reactions:
                if reaction["emoji"] == emoji:
                    reaction["users"] = [u for u in reaction["users"] if u != username]
            msg.reactions = [r for r in msg.reactions if r["users"]]
            await self._save()
            return msg

    async def soft_delete(self, message_id: str, deleted_by: str) -> ChatMessage | None:
        async with self._lock:
            msg = self._messages.get(message_id)
            if msg is None:
                return None
            msg.is_deleted = True
            msg.deleted_at = datetime.now(timezone.utc)
            msg.deleted_by = deleted_by
            await self._save()
            return msg
