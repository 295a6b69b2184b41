"""Email subject and body per terminal order status."""
from common.kafka.events import OrderStatus, OrderStatusChanged

SIGNATURE = "Best regards,\nAsyncOrders Team"

CONFIRMED_BODY = """Dear Customer,

Great news! Your order #{order_id} has been confirmed and is being processed.

Order Details:
- Order ID: {order_id}
- Status: CONFIRMED
- Date: {timestamp}

Thank you for your purchase!

{signature}"""

REJECTED_BODY = """Dear Customer,

Unfortunately, your order #{order_id} could not be processed.

Order Details:
- Order ID: {order_id}
- Status: REJECTED
- Previous Status: {prev_status}
- Date: {timestamp}

Possible reasons:
- Product out of stock
- Inventory reservation failed

If you have any questions, please contact our support team.

{signature}"""

SUBJECTS = {
    OrderStatus.CONFIRMED: "Order Confirmed :)",
    OrderStatus.REJECTED: "Order Rejected :(",
}


def render_subject(event: OrderStatusChanged) -> str:
    try:
        return SUBJECTS[event.status]
    except KeyError:
        raise ValueError(f"unexpected status : {event.status.value}.") from None


def render_body(event: OrderStatusChanged) -> str:
    timestamp = event.timestamp.isoformat(timespec="seconds")
    if event.status == OrderStatus.CONFIRMED:
        return CONFIRMED_BODY.format(order_id=event.order_id, timestamp=timestamp, signature=SIGNATURE)
    if event.status == OrderStatus.REJECTED:
        prev_status = event.prev_status.value if event.prev_status else OrderStatus.PENDING.value
        return REJECTED_BODY.format(
            order_id=event.order_id,
            prev_status=prev_status,
            timestamp=timestamp,
            signature=SIGNATURE,
        )
    raise ValueError(f"unexpected status : {event.status.value}.")
