"""ASGI middleware and error handlers for the vmfleet HTTP surface."""
