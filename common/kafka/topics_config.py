import os

ORDER_CREATED_TOPIC         = os.environ.get("ORDER_CREATED_TOPIC", "order-created")                 # order-service -> stock-service
ORDER_STATUS_CHANGED_TOPIC  = os.environ.get("ORDER_STATUS_CHANGED_TOPIC", "order-status-changed")   # stock-service -> order-service, notification-service
DEAD_LETTER_TOPIC           = os.environ.get("DEAD_LETTER_TOPIC", "order-events-dlt")                # events that could not be decoded or handled

ORDER_GROUP         = "order-service-group"
STOCK_GROUP         = "products-service-group"
NOTIFICATION_GROUP  = "notifications-service-group"
