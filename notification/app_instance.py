from quart import Quart

app = Quart("notifications-service")
