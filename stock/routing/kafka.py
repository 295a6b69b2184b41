from common import config
from common.kafka.events import OrderCreated
from common.kafka.kafkaConsumer import KafkaConsumerSingleton as KafkaConsumer
from common.kafka.kafkaProducer import KafkaProducerSingleton as KafkaProducer
from common.kafka.topics_config import ORDER_CREATED_TOPIC, STOCK_GROUP

SERVICE_NAME = "products-service"


class Kafka:
    def __init__(self, logger, logic) -> None:
        self.logger = logger
        self.logic = logic

    async def handle_order_created(self, event: OrderCreated):
        await self.logic.reserve_stock(event)

    async def init(self):
        self.logger.info("Initializing Kafka")
        await KafkaProducer.get_instance(config.KAFKA_BOOTSTRAP_SERVERS)
        await KafkaConsumer.get_instance(
            {ORDER_CREATED_TOPIC: self.handle_order_created},
            config.KAFKA_BOOTSTRAP_SERVERS,
            STOCK_GROUP,
            service_name=SERVICE_NAME,
            producer=KafkaProducer,
        )

    async def close(self):
        self.logger.info("Closing Kafka")
        await KafkaConsumer.close()
        await KafkaProducer.close()
