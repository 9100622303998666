"""
Tests for NotificationDispatcher

Tests cover:
- Queue-and-drain delivery with and without a background worker
- Full queue drops instead of blocking the producer
- Sender failures are contained
"""

import asyncio
import pytest
from unittest.mock import AsyncMock

from billing_engine.modules.notifications.domain.dispatcher import Notification, NotificationDispatcher


def _notice(kind="payment_failed"):
    return Notification(kind=kind, contact="owner@salon.test", context={"tenant_id": "t-1"})


class TestDispatcher:
    @pytest.mark.asyncio
    async def test_drain_without_worker(self, sender):
        dispatcher = NotificationDispatcher(sender, maxsize=10)
        dispatcher.enqueue(_notice("renewal_reminder"))
        dispatcher.enqueue(_notice("payment_retry"))

        assert sender.sent == []
        await dispatcher.drain()

        assert sender.kinds() == ["renewal_reminder", "payment_retry"]
        assert dispatcher.queue.empty()

    @pytest.mark.asyncio
    async def test_background_worker(self, sender):
        dispatcher = NotificationDispatcher(sender, maxsize=10)
        dispatcher.start()
        try:
            assert dispatcher.running
            dispatcher.enqueue(_notice())
            await asyncio.wait_for(dispatcher.drain(), timeout=1)
            assert sender.kinds() == ["payment_failed"]
        finally:
            await dispatcher.stop()
        assert not dispatcher.running

    @pytest.mark.asyncio
    async def test_full_queue_drops(self, sender):
        dispatcher = NotificationDispatcher(sender, maxsize=1)
        assert dispatcher.enqueue(_notice()) is True
        assert dispatcher.enqueue(_notice()) is False

        await dispatcher.drain()
        assert len(sender.sent) == 1

    @pytest.mark.asyncio
    async def test_sender_exception_is_contained(self):
        sender = AsyncMock()
        sender.send.side_effect = [RuntimeError("smtp down"), True]
        dispatcher = NotificationDispatcher(sender, maxsize=10)
        dispatcher.enqueue(_notice("payment_failed"))
        dispatcher.enqueue(_notice("subscription_suspended"))

        await dispatcher.drain()

        assert sender.send.await_count == 2

    @pytest.mark.asyncio
    async def test_stop_drains_pending(self, sender):
        dispatcher = NotificationDispatcher(sender, maxsize=10)
        dispatcher.start()
        dispatcher.enqueue(_notice("subscription_reactivated"))

        await dispatcher.stop()

        assert sender.kinds() == ["subscription_reactivated"]
