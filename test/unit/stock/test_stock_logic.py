import logging
import unittest
from unittest.mock import AsyncMock, patch

from fakeredis import FakeAsyncRedis
from redis.exceptions import ConnectionError

from common.kafka.events import OrderCreated, OrderItem, OrderStatus
from common.kafka.topics_config import ORDER_STATUS_CHANGED_TOPIC
from stock.stock_logic import RESERVED_MESSAGE, ProductNotFoundError, StockLogic


def order_created(order_id, *lines, email=None):
    return OrderCreated(
        order_id=order_id,
        total_price=0,
        items=[OrderItem(product_id=product_id, quantity=quantity) for product_id, quantity in lines],
        customer_email=email,
    )


class StockTestCase(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.db = FakeAsyncRedis()
        self.producer = AsyncMock()
        self.logic = StockLogic(logging.getLogger("test-stock"), self.db, self.producer, retries=1, retry_delay=0)

    async def asyncTearDown(self):
        await self.db.aclose()

    async def stock_of(self, product_id):
        return (await self.logic.get_product(product_id)).num_in_stock

    def published(self):
        return [c.args for c in self.producer.send_event.await_args_list]


class TestReserveStock(StockTestCase):

    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.widget = await self.logic.create_product("Widget", 5, 10)
        self.gadget = await self.logic.create_product("Gadget", 20, 50)

    async def test_all_lines_available_confirms_and_reserves(self):
        """Every line in stock: quantities are decremented and CONFIRMED is published."""
        event = order_created(1, (self.widget.id, 2), (self.gadget.id, 1))

        outcome = await self.logic.reserve_stock(event)

        self.assertEqual(outcome.status, OrderStatus.CONFIRMED)
        self.assertEqual(outcome.message, RESERVED_MESSAGE)
        self.assertEqual(await self.stock_of(self.widget.id), 8)
        self.assertEqual(await self.stock_of(self.gadget.id), 49)
        self.assertEqual(self.published(), [(ORDER_STATUS_CHANGED_TOPIC, "1", outcome)])

    async def test_one_short_line_rejects_whole_order(self):
        """All-or-nothing: no line is reserved when any line lacks stock."""
        event = order_created(2, (self.widget.id, 5), (self.gadget.id, 100))

        outcome = await self.logic.reserve_stock(event)

        self.assertEqual(outcome.status, OrderStatus.REJECTED)
        self.assertEqual(outcome.message, "insufficient stock for product Gadget (Available: 50, Requested: 100)")
        self.assertEqual(await self.stock_of(self.widget.id), 10)
        self.assertEqual(await self.stock_of(self.gadget.id), 50)
        self.assertEqual(len(self.published()), 1)

    async def test_unknown_product_rejects(self):
        event = order_created(3, (self.widget.id, 1), (44, 1))

        outcome = await self.logic.reserve_stock(event)

        self.assertEqual(outcome.status, OrderStatus.REJECTED)
        self.assertIn("product 44 NOT found", outcome.message)
        self.assertEqual(await self.stock_of(self.widget.id), 10)

    async def test_rejection_lists_every_failed_line_in_order(self):
        event = order_created(4, (44, 1), (self.widget.id, 99))

        outcome = await self.logic.reserve_stock(event)

        self.assertEqual(
            outcome.message,
            "product 44 NOT found !; insufficient stock for product Widget (Available: 10, Requested: 99)",
        )

    async def test_repeated_lines_draw_from_the_same_stock(self):
        event = order_created(5, (self.widget.id, 6), (self.widget.id, 6))

        outcome = await self.logic.reserve_stock(event)

        self.assertEqual(outcome.status, OrderStatus.REJECTED)
        self.assertIn("(Available: 4, Requested: 6)", outcome.message)
        self.assertEqual(await self.stock_of(self.widget.id), 10)

    async def test_repeated_lines_within_stock_are_summed(self):
        event = order_created(6, (self.widget.id, 4), (self.widget.id, 6))

        outcome = await self.logic.reserve_stock(event)

        self.assertEqual(outcome.status, OrderStatus.CONFIRMED)
        self.assertEqual(await self.stock_of(self.widget.id), 0)

    async def test_redelivered_event_does_not_reserve_twice(self):
        """A redelivery re-publishes the stored outcome without touching stock."""
        event = order_created(7, (self.widget.id, 2))

        first = await self.logic.reserve_stock(event)
        second = await self.logic.reserve_stock(event)

        self.assertEqual(await self.stock_of(self.widget.id), 8)
        self.assertEqual(first, second)
        self.assertEqual([args[2].status for args in self.published()], [OrderStatus.CONFIRMED] * 2)

    async def test_outcome_carries_contact_and_previous_status(self):
        event = order_created(8, (self.widget.id, 1), email="jane@example.com")

        outcome = await self.logic.reserve_stock(event)

        self.assertEqual(outcome.customer_email, "jane@example.com")
        self.assertEqual(outcome.prev_status, OrderStatus.PENDING)

    async def test_store_failure_publishes_rejection_only(self):
        """A failed commit never announces CONFIRMED; a fallback REJECTED goes out instead."""
        event = order_created(9, (self.widget.id, 2))

        with patch("redis.asyncio.client.Pipeline.execute", new=AsyncMock(side_effect=ConnectionError("store unavailable"))):
            outcome = await self.logic.reserve_stock(event)

        self.assertEqual(outcome.status, OrderStatus.REJECTED)
        self.assertTrue(outcome.message.startswith("error processing order : "))
        self.assertIn("store unavailable", outcome.message)
        self.assertEqual([args[2].status for args in self.published()], [OrderStatus.REJECTED])
        self.assertEqual(await self.stock_of(self.widget.id), 10)

    async def test_fallback_publish_failure_propagates(self):
        self.producer.send_event.side_effect = Exception("broker down")
        event = order_created(10, (self.widget.id, 1))

        with patch("redis.asyncio.client.Pipeline.execute", new=AsyncMock(side_effect=ConnectionError("store unavailable"))):
            with self.assertRaises(Exception):
                await self.logic.reserve_stock(event)


class TestProductManagement(StockTestCase):

    async def test_create_and_get_product(self):
        product = await self.logic.create_product("Widget", 5, 10)

        stored = await self.logic.get_product(product.id)

        self.assertEqual(stored.name, "Widget")
        self.assertEqual(stored.num_in_stock, 10)
        self.assertTrue(stored.mkt)

    async def test_get_missing_product(self):
        with self.assertRaises(ProductNotFoundError):
            await self.logic.get_product(404)

    async def test_list_filters_by_name_ignoring_case(self):
        await self.logic.create_product("Blue Widget", 5, 1)
        await self.logic.create_product("Gadget", 7, 1)
        await self.logic.create_product("red widget", 3, 1)

        names = [p.name for p in await self.logic.list_products("WIDGET")]

        self.assertEqual(names, ["Blue Widget", "red widget"])
        self.assertEqual(len(await self.logic.list_products()), 3)

    async def test_update_product_by_mkt(self):
        product = await self.logic.create_product("Widget", 5, 10)

        updated = await self.logic.update_product(product.mkt, price=6, quantity=3)

        self.assertEqual(updated.name, "Widget")
        self.assertEqual(updated.price, 6)
        self.assertEqual((await self.logic.get_product(product.id)).num_in_stock, 3)

    async def test_update_unknown_mkt(self):
        with self.assertRaises(ProductNotFoundError):
            await self.logic.update_product("no-such-mkt", quantity=1)

    async def test_delete_product(self):
        product = await self.logic.create_product("Widget", 5, 10)

        await self.logic.delete_product(product.mkt)

        self.assertEqual(await self.logic.list_products(), [])
        with self.assertRaises(ProductNotFoundError):
            await self.logic.get_product(product.id)


if __name__ == '__main__':
    unittest.main()
