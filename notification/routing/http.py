import msgspec
from quart import abort, jsonify, request
from redis.exceptions import RedisError

from notification.app_instance import app

DB_ERROR_STR = "DB error"

logic = None


def init(notification_logic=None):
    global logic
    if notification_logic is not None:
        logic = notification_logic


@app.get('/v1/notifications')
async def retrieve_notifications():
    order_id = request.args.get('order_id')
    if order_id is not None and not order_id.isdigit():
        return abort(400, "order_id must be a positive integer")
    try:
        notifications = await logic.list_notifications(int(order_id) if order_id is not None else None)
    except RedisError:
        return abort(400, DB_ERROR_STR)
    return jsonify([msgspec.to_builtins(n) for n in notifications])
