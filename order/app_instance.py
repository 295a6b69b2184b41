from quart import Quart

app = Quart("orders-service")
