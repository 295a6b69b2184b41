import unittest
from unittest.mock import AsyncMock, MagicMock, patch

from common.kafka.events import OrderCreated, OrderItem
from common.kafka.topics_config import ORDER_CREATED_TOPIC, STOCK_GROUP
from stock.routing.kafka import Kafka, SERVICE_NAME


class TestKafka(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        """Set up mock Kafka producer and consumer before each test."""
        self.mock_producer = AsyncMock()
        self.mock_consumer = AsyncMock()

        patcher_producer = patch("stock.routing.kafka.KafkaProducer", self.mock_producer)
        patcher_consumer = patch("stock.routing.kafka.KafkaConsumer", self.mock_consumer)
        self.addCleanup(patcher_producer.stop)
        self.addCleanup(patcher_consumer.stop)
        patcher_producer.start()
        patcher_consumer.start()

        self.logic = AsyncMock()
        self.kafka = Kafka(MagicMock(), self.logic)

    async def test_order_created_is_reserved(self):
        event = OrderCreated(order_id=1, total_price=10, items=[OrderItem(product_id=1, quantity=2)])

        await self.kafka.handle_order_created(event)

        self.logic.reserve_stock.assert_awaited_once_with(event)

    async def test_init_subscribes_to_order_created(self):
        await self.kafka.init()

        self.mock_producer.get_instance.assert_awaited_once()
        args, kwargs = self.mock_consumer.get_instance.await_args
        self.assertEqual(list(args[0]), [ORDER_CREATED_TOPIC])
        self.assertEqual(args[2], STOCK_GROUP)
        self.assertEqual(kwargs["service_name"], SERVICE_NAME)

    async def test_close_stops_consumer_then_producer(self):
        await self.kafka.close()

        self.mock_consumer.close.assert_awaited_once()
        self.mock_producer.close.assert_awaited_once()


if __name__ == '__main__':
    unittest.main()
