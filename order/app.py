import logging

from common import config
from common.db.outbox import Outbox, OutboxDispatcher
from common.db.redis_db import create_redis
from common.kafka.kafkaProducer import KafkaProducerSingleton
from common.otlp_grcp_config import configure_telemetry
from order.app_instance import app
from order.routing import http
from order.routing.kafka import Kafka, SERVICE_NAME
from order.order_logic import OrderLogic

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.StreamHandler()
    ]
)

configure_telemetry(SERVICE_NAME, config.OTEL_EXPORTER_OTLP_ENDPOINT)

logger = logging.getLogger(SERVICE_NAME)
db = create_redis()
outbox = Outbox(logger, db, KafkaProducerSingleton, config.OUTBOX_GRACE_PERIOD) if config.OUTBOX_ENABLED else None
dispatcher = OutboxDispatcher(outbox, config.OUTBOX_POLL_INTERVAL) if outbox else None

logic = OrderLogic(logger, db, KafkaProducerSingleton, outbox=outbox)
http.init(logic)
kafka = Kafka(logger, logic)


@app.before_serving
async def startup():
    app.logger.info("Starting Orders Service")
    await kafka.init()
    if dispatcher:
        dispatcher.start()


@app.after_serving
async def shutdown():
    app.logger.info("Stopping Orders Service")
    if dispatcher:
        await dispatcher.stop()
    await kafka.close()
    await db.aclose()


if __name__ == '__main__':
    app.run(host="0.0.0.0", port=8000, debug=True)
    app.logger.setLevel(logging.INFO)
else:
    hypercorn_logger = logging.getLogger('hypercorn.error')
    app.logger.handlers = hypercorn_logger.handlers
    app.logger.setLevel(hypercorn_logger.level)
