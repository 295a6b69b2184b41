"""Canonical event contracts shared by every service.

One schema per topic. Payloads travel as camelCase JSON and carry only
primitive fields, never another service's entities.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Optional

import msgspec
from msgspec import Meta, Struct

from common.kafka.topics_config import (
    DEAD_LETTER_TOPIC,
    ORDER_CREATED_TOPIC,
    ORDER_STATUS_CHANGED_TOPIC,
)

OrderId = Annotated[int, Meta(ge=1)]
ProductId = Annotated[int, Meta(ge=1)]
Quantity = Annotated[int, Meta(ge=1, le=100)]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    REJECTED = "REJECTED"


TERMINAL_STATUSES = frozenset({OrderStatus.CONFIRMED, OrderStatus.REJECTED})


def is_terminal(status: OrderStatus) -> bool:
    return status in TERMINAL_STATUSES


class OrderItem(Struct, rename="camel", frozen=True):
    product_id: ProductId
    quantity: Quantity


class OrderCreated(Struct, rename="camel", frozen=True, kw_only=True):
    order_id: OrderId
    total_price: int
    items: list[OrderItem]
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None


class OrderStatusChanged(Struct, rename="camel", frozen=True, kw_only=True):
    order_id: OrderId
    status: OrderStatus
    message: Optional[str] = None
    prev_status: Optional[OrderStatus] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    timestamp: datetime = msgspec.field(default_factory=utcnow)


class DeadLetter(Struct, rename="camel", frozen=True, kw_only=True):
    topic: str
    key: Optional[str]
    payload: str
    reason: str
    service: str
    failed_at: datetime = msgspec.field(default_factory=utcnow)


TOPIC_SCHEMAS: dict[str, type] = {
    ORDER_CREATED_TOPIC: OrderCreated,
    ORDER_STATUS_CHANGED_TOPIC: OrderStatusChanged,
    DEAD_LETTER_TOPIC: DeadLetter,
}

_encoder = msgspec.json.Encoder()
_decoders = {topic: msgspec.json.Decoder(schema) for topic, schema in TOPIC_SCHEMAS.items()}


def encode_event(event: Struct) -> bytes:
    return _encoder.encode(event)


def decode_event(topic: str, payload: bytes):
    """Decode a raw message value against the contract bound to ``topic``.

    Raises ``KeyError`` for a topic without a contract, and
    ``msgspec.DecodeError`` / ``msgspec.ValidationError`` for malformed input,
    a record without a value included.
    """
    decoder = _decoders[topic]
    if payload is None:
        raise msgspec.DecodeError("record has no value")
    return decoder.decode(payload)


def event_key(event: Struct) -> str:
    """Partition key: every event of one order lands on the same partition."""
    return str(event.order_id)
