import os


def _flag(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


KAFKA_BOOTSTRAP_SERVERS = os.environ.get("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092")

REDIS_HOST = os.environ.get("REDIS_HOST", "localhost")
REDIS_PORT = int(os.environ.get("REDIS_PORT", "6379"))
REDIS_PASSWORD = os.environ.get("REDIS_PASSWORD") or None
REDIS_DB = int(os.environ.get("REDIS_DB", "0"))
REDIS_SENTINEL_HOSTS = os.environ.get("REDIS_SENTINEL_HOSTS")
REDIS_SERVICE_NAME = os.environ.get("REDIS_SERVICE_NAME", "mymaster")

DB_RETRIES = int(os.environ.get("DB_RETRIES", "5"))
DB_RETRY_DELAY = float(os.environ.get("DB_RETRY_DELAY", "0.5"))
IDEMPOTENCY_TTL = int(os.environ.get("IDEMPOTENCY_TTL", "86400"))

OUTBOX_ENABLED = _flag("OUTBOX_ENABLED")
OUTBOX_POLL_INTERVAL = float(os.environ.get("OUTBOX_POLL_INTERVAL", "5.0"))
OUTBOX_GRACE_PERIOD = float(os.environ.get("OUTBOX_GRACE_PERIOD", "10.0"))

MAIL_TRANSPORT = os.environ.get("MAIL_TRANSPORT", "log")
SMTP_HOST = os.environ.get("SMTP_HOST", "localhost")
SMTP_PORT = int(os.environ.get("SMTP_PORT", "25"))
SMTP_USERNAME = os.environ.get("SMTP_USERNAME")
SMTP_PASSWORD = os.environ.get("SMTP_PASSWORD")
SMTP_STARTTLS = _flag("SMTP_STARTTLS")
MAIL_FROM = os.environ.get("MAIL_FROM", "no-reply@asyncorders.local")

OTEL_EXPORTER_OTLP_ENDPOINT = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")
