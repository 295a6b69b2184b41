import logging
import time
import unittest
from unittest.mock import AsyncMock, patch

from fakeredis import FakeAsyncRedis
from redis.exceptions import ConnectionError, WatchError

from common.db.outbox import OUTBOX_PENDING, Outbox
from common.db.transaction import Transaction
from common.kafka.events import OrderStatus, OrderStatusChanged, encode_event
from common.kafka.topics_config import ORDER_STATUS_CHANGED_TOPIC


class TestTransaction(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.db = FakeAsyncRedis()
        self.producer = AsyncMock()
        self.event = OrderStatusChanged(order_id=1, status=OrderStatus.CONFIRMED)

    async def asyncTearDown(self):
        await self.db.aclose()

    async def test_publishes_only_after_commit(self):
        async with Transaction(self.db, self.producer) as tx:
            tx.set("order:1", b"confirmed")
            tx.publish_after_commit(ORDER_STATUS_CHANGED_TOPIC, self.event)
            self.producer.send_event.assert_not_called()

        self.assertTrue(tx.committed)
        self.assertEqual(await self.db.get("order:1"), b"confirmed")
        self.producer.send_event.assert_awaited_once_with(ORDER_STATUS_CHANGED_TOPIC, "1", self.event)

    async def test_exception_in_block_discards_writes_and_publish(self):
        with self.assertRaises(RuntimeError):
            async with Transaction(self.db, self.producer) as tx:
                tx.set("order:1", b"confirmed")
                tx.publish_after_commit(ORDER_STATUS_CHANGED_TOPIC, self.event)
                raise RuntimeError("boom")

        self.assertIsNone(await self.db.get("order:1"))
        self.producer.send_event.assert_not_called()

    async def test_failed_commit_never_publishes(self):
        with patch("redis.asyncio.client.Pipeline.execute", new=AsyncMock(side_effect=ConnectionError("store unavailable"))):
            with self.assertRaises(ConnectionError):
                async with Transaction(self.db, self.producer) as tx:
                    tx.set("order:1", b"confirmed")
                    tx.publish_after_commit(ORDER_STATUS_CHANGED_TOPIC, self.event)

        self.assertFalse(tx.committed)
        self.producer.send_event.assert_not_called()

    async def test_concurrent_change_to_watched_key_aborts(self):
        await self.db.set("order:1", b"pending")

        with self.assertRaises(WatchError):
            async with Transaction(self.db, self.producer) as tx:
                await tx.watch("order:1")
                self.assertEqual(await tx.get("order:1"), b"pending")
                await self.db.set("order:1", b"changed elsewhere")
                tx.set("order:1", b"confirmed")
                tx.publish_after_commit(ORDER_STATUS_CHANGED_TOPIC, self.event)

        self.assertEqual(await self.db.get("order:1"), b"changed elsewhere")
        self.producer.send_event.assert_not_called()

    async def test_discard_leaves_store_untouched(self):
        async with Transaction(self.db, self.producer) as tx:
            await tx.watch("order:1")
            tx.after_commit(self.producer.send_event, "topic", "1", self.event)
            tx.discard()

        self.assertFalse(tx.committed)
        self.producer.send_event.assert_not_called()

    async def test_reads_after_first_write_are_refused(self):
        with self.assertRaises(RuntimeError):
            async with Transaction(self.db) as tx:
                await tx.watch("order:1")
                tx.set("order:1", b"x")
                await tx.get("order:1")

    async def test_failing_publish_after_commit_is_logged_not_raised(self):
        self.producer.send_event.side_effect = Exception("broker down")

        with self.assertLogs("common.db.transaction", level="ERROR") as logs:
            async with Transaction(self.db, self.producer) as tx:
                tx.set("order:1", b"confirmed")
                tx.publish_after_commit(ORDER_STATUS_CHANGED_TOPIC, self.event)

        self.assertEqual(await self.db.get("order:1"), b"confirmed")
        self.assertIn("broker down", logs.output[0])


class TestOutbox(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.db = FakeAsyncRedis()
        self.producer = AsyncMock()
        self.outbox = Outbox(logging.getLogger("test-outbox"), self.db, self.producer, grace_period=10.0)
        self.event = OrderStatusChanged(order_id=9, status=OrderStatus.REJECTED, message="no stock")

    async def asyncTearDown(self):
        await self.db.aclose()

    async def commit_with_event(self):
        async with Transaction(self.db, self.producer, self.outbox) as tx:
            tx.set("order:9", b"rejected")
            tx.publish_after_commit(ORDER_STATUS_CHANGED_TOPIC, self.event)

    async def test_entry_is_removed_once_published(self):
        await self.commit_with_event()

        self.producer.send_event.assert_awaited_once_with(ORDER_STATUS_CHANGED_TOPIC, "9", encode_event(self.event))
        self.assertEqual(await self.db.smembers(OUTBOX_PENDING), set())

    async def test_unpublished_entry_is_resent_by_dispatcher(self):
        self.producer.send_event.side_effect = [Exception("broker down"), None]

        await self.commit_with_event()
        pending = await self.outbox.pending()
        self.assertEqual(len(pending), 1)
        self.assertEqual(pending[0].topic, ORDER_STATUS_CHANGED_TOPIC)

        published = await self.outbox.dispatch_pending(now=time.time() + 60)

        self.assertEqual(published, 1)
        self.assertEqual(self.producer.send_event.await_count, 2)
        self.assertEqual(await self.outbox.pending(), [])

    async def test_dispatcher_waits_for_grace_period(self):
        self.producer.send_event.side_effect = Exception("broker down")
        await self.commit_with_event()
        self.producer.send_event.side_effect = None

        published = await self.outbox.dispatch_pending(now=time.time())

        self.assertEqual(published, 0)
        self.assertEqual(len(await self.outbox.pending()), 1)

    async def test_nothing_is_staged_when_the_transaction_fails(self):
        with self.assertRaises(RuntimeError):
            async with Transaction(self.db, self.producer, self.outbox) as tx:
                tx.publish_after_commit(ORDER_STATUS_CHANGED_TOPIC, self.event)
                raise RuntimeError("boom")

        self.assertEqual(await self.outbox.pending(), [])
        self.producer.send_event.assert_not_called()


if __name__ == '__main__':
    unittest.main()
