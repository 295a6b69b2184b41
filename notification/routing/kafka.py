from common import config
from common.kafka.events import OrderStatusChanged
from common.kafka.kafkaConsumer import KafkaConsumerSingleton as KafkaConsumer
from common.kafka.kafkaProducer import KafkaProducerSingleton as KafkaProducer
from common.kafka.topics_config import NOTIFICATION_GROUP, ORDER_STATUS_CHANGED_TOPIC

SERVICE_NAME = "notifications-service"


class Kafka:
    def __init__(self, logger, logic) -> None:
        self.logger = logger
        self.logic = logic

    async def handle_order_status_changed(self, event: OrderStatusChanged):
        self.logger.info(f"received order status change event : orderId={event.order_id} , newStatus={event.status.value}")
        await self.logic.handle_status_change(event)

    async def init(self):
        self.logger.info("Initializing Kafka")
        # the producer only carries dead letters for this service
        await KafkaProducer.get_instance(config.KAFKA_BOOTSTRAP_SERVERS)
        await KafkaConsumer.get_instance(
            {ORDER_STATUS_CHANGED_TOPIC: self.handle_order_status_changed},
            config.KAFKA_BOOTSTRAP_SERVERS,
            NOTIFICATION_GROUP,
            service_name=SERVICE_NAME,
            producer=KafkaProducer,
        )

    async def close(self):
        self.logger.info("Closing Kafka")
        await KafkaConsumer.close()
        await KafkaProducer.close()
