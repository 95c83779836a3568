"""Tracks back-and-forth between pairs of users to suggest a private grotto."""

import asyncio
import logging
import time
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 10 * 60
MIN_MESSAGES = 5
MIN_MESSAGES_PER_USER = 2
IDLE_TTL_SECONDS = 60 * 60
CLEANUP_INTERVAL = 30 * 60


def pair_key(user_a: str, user_b: str) -> tuple[str, str]:
    """Order-independent identity of a username pair."""
    return tuple(sorted((user_a, user_b)))


@dataclass
class InteractionRecord:
    users: tuple[str, str]
    stream_name: str
    # (sender, monotonic timestamp), oldest first
    events: list[tuple[str, float]] = field(default_factory=list)
    last_activity: float = field(default_factory=time.monotonic)


@dataclass(frozen=True)
class Suggestion:
    should_suggest: bool
    users: tuple[str, ...] = ()
    message_count: int = 0


NO_SUGGESTION = Suggestion(should_suggest=False)


class ConversationMonitor:
    """Per-pair exchange history with a periodic idle sweep.

    ``track`` only reports whether a pair currently qualifies; it never
    remembers that it already said so. Debouncing is the caller's job.
    """

    def __init__(
        self,
        *,
        window_seconds: float = WINDOW_SECONDS,
        min_messages: int = MIN_MESSAGES,
        min_per_user: int = MIN_MESSAGES_PER_USER,
        idle_ttl: float = IDLE_TTL_SECONDS,
        cleanup_interval: float = CLEANUP_INTERVAL,
    ):
        self.window_seconds = window_seconds
        self.min_messages = min_messages
        self.min_per_user = min_per_user
        self.idle_ttl = idle_ttl
        self.cleanup_interval = cleanup_interval
        self._records: dict[tuple[str, str], InteractionRecord] = {}
        self._cleanup_task: asyncio.Task | None = None

    def __len__(self) -> int:
        return len(self._records)

    def get(self, user_a: str, user_b: str) -> InteractionRecord | None:
        return self._records.get(pair_key(user_a, user_b))

    def track(self, sender: str, other: str, stream_name: str = "world") -> Suggestion:
        """Record a message from *sender* in an exchange with *other*."""
        if sender == other:
            return NO_SUGGESTION

        key = pair_key(sender, other)
        now = time.monotonic()
        record = self._records.get(key)
        if record is None:
            record = InteractionRecord(users=key, stream_name=stream_name, last_activity=now)
            self._records[key] = record

        record.events.append((sender, now))
        record.last_activity = now
        record.stream_name = stream_name

        cutoff = now - self.window_seconds
        record.events = [(who, ts) for who, ts in record.events if ts > cutoff]
        return self._evaluate(record, sender, other)

    def _evaluate(self, record: InteractionRecord, sender: str, other: str) -> Suggestion:
        count = len(record.events)
        if count < self.min_messages:
            return NO_SUGGESTION
        from_sender = sum(1 for who, _ in record.events if who == sender)
        from_other = sum(1 for who, _ in record.events if who == other)
        if from_sender >= self.min_per_user and from_other >= self.min_per_user:
            return Suggestion(should_suggest=True, users=(sender, other), message_count=count)
        return NO_SUGGESTION

    def cleanup(self) -> int:
        """Drop pairs idle for longer than the TTL. Returns how many were dropped."""
        now = time.monotonic()
        stale = [k for k, r in self._records.items() if now - r.last_activity > self.idle_ttl]
        for k in stale:
            del self._records[k]
        if stale:
            logger.debug("Dropped %d idle conversation pair(s)", len(stale))
        return len(stale)

    async def _cleanup_loop(self):
        while True:
            await asyncio.sleep(self.cleanup_interval)
            try:
                self.cleanup()
            except Exception:
                logger.exception("Conversation monitor cleanup failed")

    def start(self):
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.ensure_future(self._cleanup_loop())

    async def stop(self):
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        self._records.clear()
