from datetime import datetime
from typing import Iterable, Optional

from msgspec import msgpack, Struct

from common import config
from common.db.redis_db import next_id
from common.db.transaction import Transaction
from common.db.util import retry_db_call, retry_on_conflict
from common.kafka.events import (
    OrderCreated,
    OrderItem,
    OrderStatus,
    OrderStatusChanged,
    is_terminal,
    utcnow,
)
from common.kafka.topics_config import ORDER_CREATED_TOPIC

ORDER_SEQUENCE = "order:id_seq"
ORDER_IDS = "order:ids"
PRODUCT_SEQUENCE = "product:id_seq"
PRODUCT_IDS = "product:ids"


def order_key(order_id: int) -> str:
    return f"order:{order_id}"


def product_key(product_id: int) -> str:
    return f"product:{product_id}"


class OrderLineValue(Struct):
    product_id: int
    quantity: int
    product_name: str
    price: int


class OrderValue(Struct):
    id: int
    status: OrderStatus
    total_price: int
    created_at: datetime
    items: list[OrderLineValue]
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    status_message: Optional[str] = None
    updated_at: Optional[datetime] = None


class CatalogProductValue(Struct):
    id: int
    name: str
    price: int


class ProductNotFoundError(Exception):
    pass


class OrderNotFoundError(Exception):
    pass


class OrderLogic:

    def __init__(self, logger, db, producer, outbox=None, retries=None, retry_delay=None):
        self.logger = logger
        self.db = db
        self.producer = producer
        self.outbox = outbox
        self.retries = config.DB_RETRIES if retries is None else retries
        self.retry_delay = config.DB_RETRY_DELAY if retry_delay is None else retry_delay

    async def _call(self, func, *args, **kwargs):
        return await retry_db_call(func, *args, retries=self.retries, delay=self.retry_delay, **kwargs)

    # ------------------------------------------
    # Catalog (prices used when an order is placed)
    # ------------------------------------------

    async def create_product(self, name: str, price: int) -> CatalogProductValue:
        product = CatalogProductValue(id=await self._call(next_id, self.db, PRODUCT_SEQUENCE), name=name, price=price)
        async with Transaction(self.db, logger=self.logger) as tx:
            tx.set(product_key(product.id), msgpack.encode(product))
            tx.sadd(PRODUCT_IDS, product.id)
        return product

    async def get_product(self, product_id: int) -> CatalogProductValue:
        raw = await self._call(self.db.get, product_key(product_id))
        if raw is None:
            raise ProductNotFoundError(f"product with id {product_id} NOT found")
        return msgpack.decode(raw, type=CatalogProductValue)

    async def list_products(self) -> list[CatalogProductValue]:
        return sorted(await self._load_all(PRODUCT_IDS, product_key, CatalogProductValue), key=lambda p: p.id)

    # ------------------------------------------
    # Orders
    # ------------------------------------------

    async def create_order(self, items: Iterable[OrderItem], customer_email: Optional[str] = None,
                           customer_phone: Optional[str] = None) -> OrderValue:
        """Persist a PENDING order and announce it once the write committed."""
        lines = []
        for item in items:
            product = await self.get_product(item.product_id)
            lines.append(OrderLineValue(
                product_id=product.id,
                quantity=item.quantity,
                product_name=product.name,
                price=product.price,
            ))

        order = OrderValue(
            id=await self._call(next_id, self.db, ORDER_SEQUENCE),
            status=OrderStatus.PENDING,
            total_price=sum(line.quantity * line.price for line in lines),
            created_at=utcnow(),
            items=lines,
            customer_email=customer_email,
            customer_phone=customer_phone,
        )
        event = OrderCreated(
            order_id=order.id,
            total_price=order.total_price,
            items=[OrderItem(product_id=line.product_id, quantity=line.quantity) for line in lines],
            customer_email=customer_email,
            customer_phone=customer_phone,
        )

        async def _persist():
            async with Transaction(self.db, self.producer, self.outbox, self.logger) as tx:
                tx.set(order_key(order.id), msgpack.encode(order))
                tx.sadd(ORDER_IDS, order.id)
                tx.publish_after_commit(ORDER_CREATED_TOPIC, event)

        await self._call(_persist)
        self.logger.info(f"Order {order.id} created with status {order.status.value} (total: {order.total_price})")
        return order

    async def get_order(self, order_id: int) -> OrderValue:
        raw = await self._call(self.db.get, order_key(order_id))
        if raw is None:
            raise OrderNotFoundError(f"order {order_id} NOT found !")
        return msgpack.decode(raw, type=OrderValue)

    async def list_orders(self) -> list[OrderValue]:
        return sorted(await self._load_all(ORDER_IDS, order_key, OrderValue), key=lambda o: o.id)

    async def apply_status_change(self, event: OrderStatusChanged) -> Optional[OrderValue]:
        """Move a PENDING order to the status decided by the stock service.

        Re-applying an event, or any event for an order already in a terminal
        state, leaves the order untouched. An unknown order id is logged and
        dropped without writing.
        """
        self.logger.info(f"received order status changed event for order {event.order_id}")
        return await self._call(retry_on_conflict, self._apply_status, event)

    async def _apply_status(self, event: OrderStatusChanged) -> Optional[OrderValue]:
        key = order_key(event.order_id)
        async with Transaction(self.db, logger=self.logger) as tx:
            await tx.watch(key)
            raw = await tx.get(key)
            if raw is None:
                self.logger.error(f"order {event.order_id} NOT found !, status {event.status.value} dropped")
                tx.discard()
                return None

            order = msgpack.decode(raw, type=OrderValue)
            if order.status == event.status:
                self.logger.info(f"order {order.id} already {order.status.value}, nothing to apply")
                tx.discard()
                return order
            if is_terminal(order.status):
                self.logger.warning(f"order {order.id} is final ({order.status.value}), ignoring {event.status.value}")
                tx.discard()
                return order
            if not is_terminal(event.status):
                self.logger.info(f"order {order.id} ignoring non-final status {event.status.value}")
                tx.discard()
                return order

            order.status = event.status
            order.status_message = event.message
            order.updated_at = utcnow()
            tx.set(key, msgpack.encode(order))

        self.logger.info(f"updated order {order.id} status to {order.status.value}")
        return order

    async def _load_all(self, index: str, key_func, value_type) -> list:
        ids = await self._call(self.db.smembers, index)
        keys = [key_func(int(i)) for i in ids]
        raw_values = await self._call(self.db.mget, keys) if keys else []
        return [msgpack.decode(raw, type=value_type) for raw in raw_values if raw is not None]
