"""ASGI WebSocket endpoints, an event-driven connection pool, Swagger UI middleware and container services."""

__version__ = "0.1.0"