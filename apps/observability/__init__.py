"""Observability: structured logging for the connection lifecycle services."""
from .logging import bind_context, get_logger

__all__ = [
    "bind_context",
    "get_logger",
]
