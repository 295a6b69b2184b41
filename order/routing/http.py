from datetime import datetime
from typing import Annotated, Optional

import msgspec
from msgspec import Meta, Struct
from quart import abort, jsonify, request
from redis.exceptions import RedisError

from common.kafka.events import OrderItem
from order.app_instance import app
from order.order_logic import CatalogProductValue, OrderNotFoundError, OrderValue, ProductNotFoundError

DB_ERROR_STR = "DB error"

Email = Annotated[str, Meta(pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")]

logic = None


def init(order_logic=None):
    global logic
    if order_logic is not None:
        logic = order_logic


class OrderItemRequest(Struct, rename="camel", forbid_unknown_fields=True):
    product_id: Annotated[int, Meta(gt=0)]
    quantity: Annotated[int, Meta(ge=1, le=100)] = 1


class CreateOrderRequest(Struct, rename="camel", forbid_unknown_fields=True):
    items: Annotated[list[OrderItemRequest], Meta(min_length=1)]
    customer_email: Optional[Email] = None
    customer_phone: Optional[str] = None


class CreateProductRequest(Struct, forbid_unknown_fields=True):
    name: Annotated[str, Meta(min_length=1)]
    price: Annotated[int, Meta(gt=0)]


class OrderItemResponse(Struct, rename="camel"):
    product_id: int
    product_name: str
    price: int
    quantity: int


class OrderResponse(Struct, rename="camel"):
    id: int
    status: str
    total_price: int
    created_at: datetime
    items: list[OrderItemResponse]
    customer_email: Optional[str] = None
    status_message: Optional[str] = None


def order_response(order: OrderValue) -> dict:
    return msgspec.to_builtins(OrderResponse(
        id=order.id,
        status=order.status.value,
        total_price=order.total_price,
        created_at=order.created_at,
        items=[
            OrderItemResponse(
                product_id=line.product_id,
                product_name=line.product_name,
                price=line.price,
                quantity=line.quantity,
            )
            for line in order.items
        ],
        customer_email=order.customer_email,
        status_message=order.status_message,
    ))


def product_response(product: CatalogProductValue) -> dict:
    return {"id": product.id, "name": product.name, "price": product.price}


async def parse_body(request_type):
    try:
        return msgspec.json.decode(await request.get_data(), type=request_type)
    except msgspec.DecodeError as e:
        abort(400, str(e))


@app.post('/api/v1/orders')
async def add_order():
    body: CreateOrderRequest = await parse_body(CreateOrderRequest)
    items = [OrderItem(product_id=item.product_id, quantity=item.quantity) for item in body.items]
    try:
        order = await logic.create_order(items, body.customer_email, body.customer_phone)
    except ProductNotFoundError as e:
        return abort(404, str(e))
    except RedisError:
        return abort(400, DB_ERROR_STR)
    return jsonify(order_response(order)), 201


@app.get('/api/v1/orders')
async def retrieve_all_orders():
    try:
        orders = await logic.list_orders()
    except RedisError:
        return abort(400, DB_ERROR_STR)
    return jsonify([order_response(order) for order in orders])


@app.get('/api/v1/orders/<int:order_id>')
async def find_order(order_id: int):
    try:
        order = await logic.get_order(order_id)
    except OrderNotFoundError as e:
        return abort(404, str(e))
    except RedisError:
        return abort(400, DB_ERROR_STR)
    return jsonify(order_response(order))


@app.post('/api/v1/products')
async def add_product():
    body: CreateProductRequest = await parse_body(CreateProductRequest)
    if not body.name.strip():
        return abort(400, "product name is required")
    try:
        product = await logic.create_product(body.name, body.price)
    except RedisError:
        return abort(400, DB_ERROR_STR)
    return jsonify(product_response(product)), 201


@app.get('/api/v1/products')
async def retrieve_all_products():
    try:
        products = await logic.list_products()
    except RedisError:
        return abort(400, DB_ERROR_STR)
    return jsonify([product_response(p) for p in products])
