from datetime import datetime
from typing import Annotated, Optional

import msgspec
from msgspec import Meta, Struct
from quart import abort, jsonify, request, Response
from redis.exceptions import RedisError

from stock.app_instance import app
from stock.stock_logic import ProductNotFoundError, ProductValue

DB_ERROR_STR = 'DB error'

logic = None


def init(stock_logic=None):
    global logic
    if stock_logic is not None:
        logic = stock_logic


class CreateProductRequest(Struct, forbid_unknown_fields=True):
    name: Annotated[str, Meta(min_length=1)]
    price: Annotated[int, Meta(gt=0)]
    quantity: Annotated[int, Meta(ge=0)] = 0


class UpdateProductRequest(Struct, forbid_unknown_fields=True):
    name: Optional[Annotated[str, Meta(min_length=1)]] = None
    price: Optional[Annotated[int, Meta(gt=0)]] = None
    quantity: Optional[Annotated[int, Meta(ge=0)]] = None


class ProductResponse(Struct, rename="camel"):
    id: int
    created_at: datetime
    name: str
    price: int
    num_in_stock: int
    mkt: str


def to_response(product: ProductValue) -> dict:
    return msgspec.to_builtins(ProductResponse(
        id=product.id,
        created_at=product.created_at,
        name=product.name,
        price=product.price,
        num_in_stock=product.num_in_stock,
        mkt=product.mkt,
    ))


async def parse_body(request_type):
    try:
        body = msgspec.json.decode(await request.get_data(), type=request_type)
    except msgspec.DecodeError as e:
        abort(400, str(e))
    if getattr(body, "name", None) is not None and not body.name.strip():
        abort(400, "name of Product cannot be blank")
    return body


@app.post('/v1/products')
async def add_product():
    body: CreateProductRequest = await parse_body(CreateProductRequest)
    try:
        product = await logic.create_product(body.name, body.price, body.quantity)
    except RedisError:
        return abort(400, DB_ERROR_STR)
    return jsonify(to_response(product)), 201


@app.get('/v1/products')
async def retrieve_all_products():
    product_name = request.args.get('product_name')
    try:
        products = await logic.list_products(product_name)
    except RedisError:
        return abort(400, DB_ERROR_STR)
    return jsonify([to_response(p) for p in products])


@app.get('/v1/products/<int:product_id>')
async def find_product(product_id: int):
    try:
        product = await logic.get_product(product_id)
    except ProductNotFoundError as e:
        return abort(404, str(e))
    except RedisError:
        return abort(400, DB_ERROR_STR)
    return jsonify(to_response(product))


@app.put('/v1/products/<mkt>')
async def update_product(mkt: str):
    body: UpdateProductRequest = await parse_body(UpdateProductRequest)
    try:
        product = await logic.update_product(mkt, body.name, body.price, body.quantity)
    except ProductNotFoundError as e:
        return abort(404, str(e))
    except RedisError:
        return abort(400, DB_ERROR_STR)
    return jsonify(to_response(product))


@app.delete('/v1/products/<mkt>')
async def delete_product(mkt: str):
    try:
        await logic.delete_product(mkt)
    except ProductNotFoundError as e:
        return abort(404, str(e))
    except RedisError:
        return abort(400, DB_ERROR_STR)
    return Response(status=204)
