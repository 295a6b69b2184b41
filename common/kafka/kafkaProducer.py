from aiokafka import AIOKafkaProducer
import logging

from common.kafka.events import encode_event


class KafkaProducerSingleton:
    _instance = None
    _bootstrap_servers = None

    @classmethod
    async def get_instance(cls, bootstrap_servers=None):
        if cls._instance is None:
            cls._bootstrap_servers = bootstrap_servers or cls._bootstrap_servers
            cls._instance = AIOKafkaProducer(
                bootstrap_servers=cls._bootstrap_servers,
                acks="all",
                enable_idempotence=True,
            )
            await cls._instance.start()
            logging.info("Kafka Producer started")
        return cls._instance

    @classmethod
    async def send_event(cls, topic, event_key, event_value):
        """Publish one event. ``event_value`` is a contract struct or raw bytes."""
        producer = await cls.get_instance(cls._bootstrap_servers)
        message = event_value if isinstance(event_value, bytes) else encode_event(event_value)
        key = event_key.encode('utf-8') if event_key is not None else None
        await producer.send_and_wait(topic, key=key, value=message)
        logging.info(f"Published event to {topic} [key: {event_key}]")

    @classmethod
    async def close(cls):
        if cls._instance:
            await cls._instance.stop()
            logging.info("Kafka Producer stopped")
            cls._instance = None
