"""Delayed FINN replies, scheduled as tasks keyed by a correlation id.

A reply is never cancelled when the user who triggered it disconnects: FINN
speaks to the channel, not to one person. ``cancel`` exists so that policy
can change without touching the router, and ``stop`` cancels everything on
shutdown.
"""

import asyncio
import functools
import logging
import os
import random
from typing import Awaitable, Callable
from uuid import uuid4

logger = logging.getLogger(__name__)

ASSISTANT_MIN_DELAY = float(os.environ.get("ECHO_ASSISTANT_MIN_DELAY", "2.0"))
ASSISTANT_MAX_DELAY = float(os.environ.get("ECHO_ASSISTANT_MAX_DELAY", "5.0"))


def _reply_task_done_callback(scheduler: "AssistantScheduler", correlation_id: str, task: asyncio.Task):
    """Forget finished tasks; log failures instead of silently swallowing them."""
    scheduler._tasks.pop(correlation_id, None)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Assistant reply %s failed: %s", correlation_id, exc, exc_info=exc)


class AssistantScheduler:
    def __init__(
        self,
        *,
        min_delay: float = ASSISTANT_MIN_DELAY,
        max_delay: float = ASSISTANT_MAX_DELAY,
        rng: random.Random | None = None,
    ):
        if min_delay < 0 or max_delay < min_delay:
            raise ValueError("delay range must satisfy 0 <= min_delay <= max_delay")
        self.min_delay = min_delay
        self.max_delay = max_delay
        self._rng = rng or random.Random()
        self._tasks: dict[str, asyncio.Task] = {}

    def pending(self) -> list[str]:
        return list(self._tasks)

    def schedule(self, send: Callable[[], Awaitable[None]]) -> str:
        """Run ``send()`` after a random delay. Returns the correlation id."""
        correlation_id = uuid4().hex
        delay = self._rng.uniform(self.min_delay, self.max_delay)
        task = asyncio.ensure_future(self._run(correlation_id, delay, send))
        self._tasks[correlation_id] = task
        task.add_done_callback(functools.partial(_reply_task_done_callback, self, correlation_id))
        logger.debug("Scheduled assistant reply %s in %.1fs", correlation_id, delay)
        return correlation_id

    async def _run(self, correlation_id: str, delay: float, send: Callable[[], Awaitable[None]]):
        await asyncio.sleep(delay)
        try:
            await send()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Assistant reply %s could not be delivered", correlation_id)

    def cancel(self, correlation_id: str) -> bool:
        task = self._tasks.get(correlation_id)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def drain(self) -> None:
        """Wait until every scheduled reply has run (or failed)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
