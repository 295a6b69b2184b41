from quart import Quart

app = Quart("products-service")
