import uuid
from datetime import datetime
from typing import Optional

from msgspec import msgpack, Struct
from opentelemetry import metrics

from common import config
from common.db.redis_db import next_id
from common.db.transaction import Transaction
from common.db.util import retry_db_call, retry_on_conflict
from common.kafka.events import (
    OrderCreated,
    OrderItem,
    OrderStatus,
    OrderStatusChanged,
    event_key,
    utcnow,
)
from common.kafka.topics_config import ORDER_STATUS_CHANGED_TOPIC

PRODUCT_SEQUENCE = "product:id_seq"
PRODUCT_IDS = "product:ids"

RESERVED_MESSAGE = "order validated and stock reserved"

meter = metrics.get_meter(__name__)
RESERVATION_COUNTER = meter.create_counter(
    "stock.reservations",
    description="Stock reservation outcomes per order",
)


def product_key(product_id: int) -> str:
    return f"product:{product_id}"


def mkt_key(mkt: str) -> str:
    return f"product:mkt:{mkt}"


def reservation_key(order_id: int) -> str:
    return f"reservation:{order_id}"


class ProductValue(Struct):
    id: int
    name: str
    price: int
    num_in_stock: int
    mkt: str
    created_at: datetime


class LineCheck(Struct, frozen=True):
    is_valid: bool
    message: Optional[str] = None


class ProductNotFoundError(Exception):
    pass


class StockLogic:
    """Product inventory and the all-or-nothing stock reservation for orders."""

    def __init__(self, logger, db, producer, outbox=None, retries=None, retry_delay=None, idempotency_ttl=None):
        self.logger = logger
        self.db = db
        self.producer = producer
        self.outbox = outbox
        self.retries = config.DB_RETRIES if retries is None else retries
        self.retry_delay = config.DB_RETRY_DELAY if retry_delay is None else retry_delay
        self.idempotency_ttl = config.IDEMPOTENCY_TTL if idempotency_ttl is None else idempotency_ttl

    # ------------------------------------------
    # Product management
    # ------------------------------------------

    async def create_product(self, name: str, price: int, quantity: int = 0) -> ProductValue:
        product_id = await retry_db_call(next_id, self.db, PRODUCT_SEQUENCE, retries=self.retries, delay=self.retry_delay)
        product = ProductValue(
            id=product_id,
            name=name,
            price=price,
            num_in_stock=quantity,
            mkt=str(uuid.uuid4()),
            created_at=utcnow(),
        )
        async with Transaction(self.db, logger=self.logger) as tx:
            tx.set(product_key(product_id), msgpack.encode(product))
            tx.set(mkt_key(product.mkt), product_id)
            tx.sadd(PRODUCT_IDS, product_id)
        self.logger.info(f"Product {product.name} created (id: {product_id}, mkt: {product.mkt})")
        return product

    async def get_product(self, product_id: int) -> ProductValue:
        raw = await retry_db_call(self.db.get, product_key(product_id), retries=self.retries, delay=self.retry_delay)
        if raw is None:
            raise ProductNotFoundError(f"product {product_id} NOT found !")
        return msgpack.decode(raw, type=ProductValue)

    async def list_products(self, name: Optional[str] = None) -> list[ProductValue]:
        product_ids = await retry_db_call(self.db.smembers, PRODUCT_IDS, retries=self.retries, delay=self.retry_delay)
        keys = [product_key(int(product_id)) for product_id in product_ids]
        raw_values = await self.db.mget(keys) if keys else []
        products = [msgpack.decode(raw, type=ProductValue) for raw in raw_values if raw is not None]
        if name:
            products = [p for p in products if name.lower() in p.name.lower()]
        return sorted(products, key=lambda p: p.id)

    async def _product_id_by_mkt(self, mkt: str) -> int:
        product_id = await retry_db_call(self.db.get, mkt_key(mkt), retries=self.retries, delay=self.retry_delay)
        if product_id is None:
            raise ProductNotFoundError(f"product with mkt {mkt} NOT found !")
        return int(product_id)

    async def update_product(self, mkt: str, name: Optional[str] = None, price: Optional[int] = None,
                             quantity: Optional[int] = None) -> ProductValue:
        product_id = await self._product_id_by_mkt(mkt)

        async def _update():
            async with Transaction(self.db, logger=self.logger) as tx:
                await tx.watch(product_key(product_id))
                raw = await tx.get(product_key(product_id))
                if raw is None:
                    raise ProductNotFoundError(f"product with mkt {mkt} NOT found !")
                product = msgpack.decode(raw, type=ProductValue)
                if name is not None:
                    product.name = name
                if price is not None:
                    product.price = price
                if quantity is not None:
                    product.num_in_stock = quantity
                tx.set(product_key(product_id), msgpack.encode(product))
            return product

        product = await retry_on_conflict(_update)
        self.logger.info(f"Product {product.id} updated (mkt: {mkt})")
        return product

    async def delete_product(self, mkt: str):
        product_id = await self._product_id_by_mkt(mkt)
        async with Transaction(self.db, logger=self.logger) as tx:
            tx.delete(product_key(product_id), mkt_key(mkt))
            tx.srem(PRODUCT_IDS, product_id)
        self.logger.info(f"Product {product_id} deleted (mkt: {mkt})")

    # ------------------------------------------
    # Reservation
    # ------------------------------------------

    async def reserve_stock(self, event: OrderCreated) -> OrderStatusChanged:
        """Reserve every line of an order or none of them.

        The outcome is published only after the stock transaction committed.
        If the unit of work cannot complete at all, a REJECTED event carrying
        the fault is published directly so the order never stays PENDING.
        """
        self.logger.info(f"received order-created event for order {event.order_id}")
        try:
            outcome = await retry_db_call(
                retry_on_conflict, self._reserve, event, retries=self.retries, delay=self.retry_delay
            )
        except Exception as e:
            self.logger.error(f"error processing order-created event for order {event.order_id}: {e}", exc_info=True)
            outcome = self._outcome(event, OrderStatus.REJECTED, f"error processing order : {e}")
            await self.producer.send_event(ORDER_STATUS_CHANGED_TOPIC, event_key(outcome), outcome)

        RESERVATION_COUNTER.add(1, {"status": outcome.status.value})
        if outcome.status == OrderStatus.CONFIRMED:
            self.logger.info(f"order {event.order_id} CONFIRMED - stock reserved successfully")
        else:
            self.logger.error(f"order {event.order_id} REJECTED - {outcome.message}")
        return outcome

    async def _reserve(self, event: OrderCreated) -> OrderStatusChanged:
        idempotency_key = reservation_key(event.order_id)
        async with Transaction(self.db, self.producer, self.outbox, self.logger) as tx:
            await tx.watch(idempotency_key, *{product_key(item.product_id) for item in event.items})

            already_processed = await tx.get(idempotency_key)
            if already_processed is not None:
                outcome = msgpack.decode(already_processed, type=OrderStatusChanged)
                self.logger.info(f"order {event.order_id} already processed ({outcome.status.value}), re-publishing outcome")
                tx.publish_after_commit(ORDER_STATUS_CHANGED_TOPIC, outcome)
                return outcome

            products: dict[int, Optional[ProductValue]] = {}
            checks = []
            for item in event.items:
                if item.product_id not in products:
                    raw = await tx.get(product_key(item.product_id))
                    products[item.product_id] = msgpack.decode(raw, type=ProductValue) if raw is not None else None
                product = products[item.product_id]
                check = self._check_line(item, product)
                if check.is_valid:
                    # later lines for the same product see what is left
                    product.num_in_stock -= item.quantity
                checks.append(check)

            if all(check.is_valid for check in checks):
                for product in products.values():
                    tx.set(product_key(product.id), msgpack.encode(product))
                for item in event.items:
                    self.logger.info(f"reserved {item.quantity} units of product {products[item.product_id].name} (id : {item.product_id})")
                outcome = self._outcome(event, OrderStatus.CONFIRMED, RESERVED_MESSAGE)
            else:
                reasons = "; ".join(check.message for check in checks if not check.is_valid)
                outcome = self._outcome(event, OrderStatus.REJECTED, reasons)

            tx.set(idempotency_key, msgpack.encode(outcome), ex=self.idempotency_ttl)
            tx.publish_after_commit(ORDER_STATUS_CHANGED_TOPIC, outcome)
        return outcome

    def _check_line(self, item: OrderItem, product: Optional[ProductValue]) -> LineCheck:
        if product is None:
            self.logger.error(f"product {item.product_id} NOT found !")
            return LineCheck(is_valid=False, message=f"product {item.product_id} NOT found !")
        if product.num_in_stock < item.quantity:
            message = (f"insufficient stock for product {product.name} "
                       f"(Available: {product.num_in_stock}, Requested: {item.quantity})")
            self.logger.error(message)
            return LineCheck(is_valid=False, message=message)
        return LineCheck(is_valid=True)

    @staticmethod
    def _outcome(event: OrderCreated, status: OrderStatus, message: str) -> OrderStatusChanged:
        return OrderStatusChanged(
            order_id=event.order_id,
            status=status,
            message=message,
            prev_status=OrderStatus.PENDING,
            customer_email=event.customer_email,
            customer_phone=event.customer_phone,
        )
