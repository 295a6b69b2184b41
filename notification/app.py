import logging

from common import config
from common.db.redis_db import create_redis
from common.otlp_grcp_config import configure_telemetry
from notification.app_instance import app
from notification.mail import create_transport
from notification.notification_logic import NotificationLogic
from notification.routing import http
from notification.routing.kafka import Kafka, SERVICE_NAME

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

logic = NotificationLogic(logger, db, create_transport(logger))
http.init(logic)
kafka = Kafka(logger, logic)


@app.before_serving
async def startup():
    app.logger.info("Starting Notifications Service")
    await kafka.init()


@app.after_serving
async def shutdown():
    app.logger.info("Stopping Notifications Service")
    await kafka.close()
    await db.aclose()


if __name__ == '__main__':
    app.run(host="0.0.0.0", port=8000, debug=True)
    app.logger.setLevel(logging.INFO)
else:
    hypercorn_logger = logging.getLogger('hypercorn.error')
    app.logger.handlers = hypercorn_logger.handlers
    app.logger.setLevel(hypercorn_logger.level)
