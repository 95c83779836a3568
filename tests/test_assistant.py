"""Tests for echo_chat.assistant -- delayed, cancellable FINN replies."""

import asyncio
import random
from unittest.mock import AsyncMock, patch

import pytest

from echo_chat.assistant import AssistantScheduler


class TestSchedule:

    def test_rejects_bad_delay_range(self):
        with pytest.raises(ValueError):
            AssistantScheduler(min_delay=5, max_delay=2)
        with pytest.raises(ValueError):
            AssistantScheduler(min_delay=-1, max_delay=2)

    @pytest.mark.asyncio
    async def test_reply_runs_and_is_forgotten(self):
        scheduler = AssistantScheduler(min_delay=0, max_delay=0)
        send = AsyncMock()
        correlation_id = scheduler.schedule(send)
        assert scheduler.pending() == [correlation_id]
        await scheduler.drain()
        send.assert_awaited_once()
        assert scheduler.pending() == []

    @pytest.mark.asyncio
    async def test_each_reply_gets_its_own_id(self):
        scheduler = AssistantScheduler(min_delay=0, max_delay=0)
        ids = {scheduler.schedule(AsyncMock()) for _ in range(3)}
        assert len(ids) == 3
        await scheduler.drain()

    @pytest.mark.asyncio
    async def test_delay_drawn_from_range(self):
        scheduler = AssistantScheduler(min_delay=2.0, max_delay=5.0, rng=random.Random(1))
        with patch("echo_chat.assistant.asyncio.sleep", new=AsyncMock()) as mock_sleep:
            scheduler.schedule(AsyncMock())
            await scheduler.drain()
        delay = mock_sleep.await_args[0][0]
        assert 2.0 <= delay <= 5.0

    @pytest.mark.asyncio
    async def test_failing_reply_is_logged_not_raised(self):
        scheduler = AssistantScheduler(min_delay=0, max_delay=0)
        send = AsyncMock(side_effect=RuntimeError("socket gone"))
        with patch("echo_chat.assistant.logger") as mock_logger:
            scheduler.schedule(send)
            await scheduler.drain()
        mock_logger.exception.assert_called_once()
        assert scheduler.pending() == []


class TestCancel:

    @pytest.mark.asyncio
    async def test_cancel_pending_reply(self):
        scheduler = AssistantScheduler(min_delay=10, max_delay=10)
        send = AsyncMock()
        correlation_id = scheduler.schedule(send)
        assert scheduler.cancel(correlation_id) is True
        await asyncio.sleep(0)
        await scheduler.drain()
        send.assert_not_awaited()
        assert scheduler.pending() == []

    @pytest.mark.asyncio
    async def test_cancel_unknown_id(self):
        scheduler = AssistantScheduler(min_delay=0, max_delay=0)
        assert scheduler.cancel("nope") is False

    @pytest.mark.asyncio
    async def test_stop_cancels_everything(self):
        scheduler = AssistantScheduler(min_delay=10, max_delay=10)
        sends = [AsyncMock() for _ in range(3)]
        for send in sends:
            scheduler.schedule(send)
        await scheduler.stop()
        assert scheduler.pending() == []
        for send in sends:
            send.assert_not_awaited()
