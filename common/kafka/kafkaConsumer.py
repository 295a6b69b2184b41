from aiokafka import AIOKafkaConsumer, ConsumerRebalanceListener
import asyncio
import logging

import msgspec
from opentelemetry import metrics, trace

from common.kafka.events import DeadLetter, decode_event
from common.kafka.kafkaProducer import KafkaProducerSingleton
from common.kafka.topics_config import DEAD_LETTER_TOPIC

tracer = trace.get_tracer(__name__)
meter = metrics.get_meter(__name__)
DEAD_LETTER_COUNTER = meter.create_counter(
    "kafka.dead_letters",
    description="Events routed to the dead-letter topic",
)


class KafkaConsumerSingleton:
    _instance = None
    _task = None
    _rebalance_lock = asyncio.Lock()
    _subscriptions = {}
    _service_name = None
    _producer = KafkaProducerSingleton


    class SafeRebalanceListener(ConsumerRebalanceListener):
        def __init__(self, consumer):
            self.consumer = consumer

        async def on_partitions_revoked(self, revoked):
            logging.info(f"[REBALANCE] Revoking partitions: {revoked}")
            async with KafkaConsumerSingleton._rebalance_lock:
                pass

        async def on_partitions_assigned(self, assigned):
            logging.info(f"[REBALANCE] Assigned new partitions: {assigned}")

    @classmethod
    def configure(cls, subscriptions, service_name, producer=None):
        """Bind topic handlers. ``subscriptions`` maps topic -> async handler(event)."""
        cls._subscriptions = dict(subscriptions)
        cls._service_name = service_name
        if producer is not None:
            cls._producer = producer

    @classmethod
    async def get_instance(cls, subscriptions, bootstrap_servers, group_id, service_name=None, producer=None):
        if cls._instance is None:
            cls.configure(subscriptions, service_name or group_id, producer)
            topics = list(cls._subscriptions)
            cls._instance = AIOKafkaConsumer(
                bootstrap_servers=bootstrap_servers,
                group_id=group_id,
                enable_auto_commit=False,
                auto_offset_reset="earliest",
            )
            listener = cls.SafeRebalanceListener(cls._instance)
            cls._instance.subscribe(topics, listener=listener)
            await cls._instance.start()
            logging.info(f"Kafka Consumer Started on topics: {topics} [group: {group_id}]")
            cls._task = asyncio.create_task(cls._consume_events())
        return cls._instance

    @classmethod
    async def _consume_events(cls):
        while True:
            try:
                async for message in cls._instance:
                    async with cls._rebalance_lock:
                        await cls.process_message(message)
                        await cls._instance.commit()
            except Exception as e:
                logging.error(f"Error during event consuming: {e}")
                await asyncio.sleep(1)
                continue

    @classmethod
    async def process_message(cls, message) -> bool:
        """Decode and dispatch one record. Returns True if the handler succeeded.

        Never raises for a bad record: malformed payloads and handler faults
        are logged and forwarded to the dead-letter topic so that the next
        record can be processed.
        """
        handler = cls._subscriptions.get(message.topic)
        if handler is None:
            logging.warning(f"No handler registered for topic {message.topic}, event discarded")
            return False

        try:
            event = decode_event(message.topic, message.value)
        except (msgspec.DecodeError, KeyError) as e:
            logging.error(f"Invalid event received on {message.topic}: {e}")
            logging.error(f"Event details: {message.value!r}")
            await cls.dead_letter(message, f"invalid event: {e}")
            return False

        with tracer.start_as_current_span(
            f"consume {message.topic}",
            attributes={"messaging.kafka.partition": message.partition, "messaging.kafka.offset": message.offset},
        ):
            try:
                await handler(event)
            except Exception as e:
                logging.error(f"Error processing event from {message.topic} [key: {_key(message)}]: {e}", exc_info=True)
                await cls.dead_letter(message, f"handler failed: {e}")
                return False
        return True

    @classmethod
    async def dead_letter(cls, message, reason):
        letter = DeadLetter(
            topic=message.topic,
            key=_key(message),
            payload=(message.value or b"").decode("utf-8", errors="replace"),
            reason=reason,
            service=cls._service_name or "unknown",
        )
        DEAD_LETTER_COUNTER.add(1, {"topic": message.topic})
        try:
            await cls._producer.send_event(DEAD_LETTER_TOPIC, letter.key, letter)
        except Exception as e:
            logging.error(f"Failed to dead-letter event from {message.topic}: {e}")

    @classmethod
    async def close(cls):
        if cls._instance:
            await cls._instance.stop()
            logging.info("Kafka Consumer stopped")
            cls._instance = None
            if cls._task:
                cls._task.cancel()
                try:
                    await cls._task
                except asyncio.CancelledError:
                    logging.info("Consumer task cancelled")


def _key(message):
    return message.key.decode("utf-8") if message.key else None
