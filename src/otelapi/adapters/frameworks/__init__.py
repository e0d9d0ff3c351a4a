"""ASGI middleware and FastAPI routers."""
