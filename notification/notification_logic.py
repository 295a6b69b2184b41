from datetime import datetime
from enum import Enum
from typing import Optional

from msgspec import msgpack, Struct
from opentelemetry import metrics

from common import config
from common.db.redis_db import next_id
from common.db.transaction import Transaction
from common.db.util import retry_db_call, retry_on_conflict
from common.kafka.events import OrderStatus, OrderStatusChanged, is_terminal, utcnow
from notification.templates import render_body, render_subject

NOTIFICATION_SEQUENCE = "notification:id_seq"
NOTIFICATION_IDS = "notification:ids"

meter = metrics.get_meter(__name__)
NOTIFICATION_COUNTER = meter.create_counter(
    "notifications.sent",
    description="Order notifications by outcome",
)


def notification_key(notification_id: int) -> str:
    return f"notification:{notification_id}"


def order_index_key(order_id: int) -> str:
    return f"notification:order:{order_id}"


def claim_key(order_id: int, status: OrderStatus) -> str:
    return f"notification:claim:{order_id}:{status.value}"


class MsgType(str, Enum):
    EMAIL = "EMAIL"
    SMS = "SMS"
    PUSH = "PUSH"


class Contact(Struct):
    email: Optional[str] = None
    phone: Optional[str] = None


class MessageValue(Struct):
    subject: str
    content: str


class NotificationValue(Struct):
    id: int
    order_id: int
    msg_type: MsgType
    contact: Contact
    message: MessageValue
    order_status: OrderStatus
    created_at: datetime
    is_sent: bool = False
    sent_at: Optional[datetime] = None


class NotificationLogic:

    def __init__(self, logger, db, transport, retries=None, retry_delay=None, claim_ttl=None):
        self.logger = logger
        self.db = db
        self.transport = transport
        self.retries = config.DB_RETRIES if retries is None else retries
        self.retry_delay = config.DB_RETRY_DELAY if retry_delay is None else retry_delay
        self.claim_ttl = config.IDEMPOTENCY_TTL if claim_ttl is None else claim_ttl

    async def _call(self, func, *args, **kwargs):
        return await retry_db_call(func, *args, retries=self.retries, delay=self.retry_delay, **kwargs)

    async def handle_status_change(self, event: OrderStatusChanged) -> Optional[NotificationValue]:
        """Email the customer about a final order status, at most once per order and status.

        The record is stored unsent before delivery and marked sent only after
        the transport accepted the message. A delivery failure is logged and
        leaves the record unsent; nothing is retried here.
        """
        self.logger.info(f"processing notification for order {event.order_id} , status={event.status.value}")

        if not is_terminal(event.status):
            self.logger.info(f"skipping notification - status {event.status.value} is not final")
            NOTIFICATION_COUNTER.add(1, {"outcome": "skipped"})
            return None

        if not event.customer_email or not event.customer_email.strip():
            self.logger.warning(f"cannot send notification for order {event.order_id} - no email provided")
            NOTIFICATION_COUNTER.add(1, {"outcome": "skipped"})
            return None

        notification = await self._call(retry_on_conflict, self._claim_and_save, event)
        if notification is None:
            self.logger.info(f"notification for order {event.order_id} ({event.status.value}) already handled, skipping")
            NOTIFICATION_COUNTER.add(1, {"outcome": "duplicate"})
            return None
        self.logger.info(f"notification saved (id = {notification.id})")

        try:
            await self.transport.send(notification.contact.email, notification.message.subject, notification.message.content)
        except Exception as e:
            self.logger.error(f"failed to send notification for order {event.order_id}: {e}", exc_info=True)
            NOTIFICATION_COUNTER.add(1, {"outcome": "failed"})
            return notification

        notification.is_sent = True
        notification.sent_at = utcnow()
        await self._call(self._save, notification)
        self.logger.info(f"notification sent successfully for order {event.order_id}")
        NOTIFICATION_COUNTER.add(1, {"outcome": "sent"})
        return notification

    async def _claim_and_save(self, event: OrderStatusChanged) -> Optional[NotificationValue]:
        claim = claim_key(event.order_id, event.status)
        async with Transaction(self.db, logger=self.logger) as tx:
            await tx.watch(claim)
            if await tx.get(claim) is not None:
                tx.discard()
                return None
            # id is taken only once the claim is free
            notification = NotificationValue(
                id=await next_id(self.db, NOTIFICATION_SEQUENCE),
                order_id=event.order_id,
                msg_type=MsgType.EMAIL,
                contact=Contact(email=event.customer_email.strip(), phone=event.customer_phone),
                message=MessageValue(subject=render_subject(event), content=render_body(event)),
                order_status=event.status,
                created_at=utcnow(),
            )
            tx.set(claim, notification.id, ex=self.claim_ttl)
            self._stage(tx, notification)
        return notification

    async def _save(self, notification: NotificationValue):
        async with Transaction(self.db, logger=self.logger) as tx:
            self._stage(tx, notification)

    @staticmethod
    def _stage(tx, notification: NotificationValue):
        tx.set(notification_key(notification.id), msgpack.encode(notification))
        tx.sadd(NOTIFICATION_IDS, notification.id)
        tx.sadd(order_index_key(notification.order_id), notification.id)

    async def list_notifications(self, order_id: Optional[int] = None) -> list[NotificationValue]:
        index = order_index_key(order_id) if order_id is not None else NOTIFICATION_IDS
        ids = await self._call(self.db.smembers, index)
        keys = [notification_key(int(i)) for i in ids]
        raw_values = await self._call(self.db.mget, keys) if keys else []
        notifications = [msgpack.decode(raw, type=NotificationValue) for raw in raw_values if raw is not None]
        return sorted(notifications, key=lambda n: n.id)
