"""
Event handlers for event_consumer.

Base Classes:
    - HandlerRegistry: Registry for routing events to handlers

Handler Types:
    - VideoFileHandler: Handles OBJECT_FINALIZE events

Usage:
    >>> from event_consumer.handlers import get_handler_registry
    >>>
    >>> # Handlers are auto-registered via @register_handler decorator
    >>> registry = get_handler_registry()
    >>> outcome = await registry.dispatch(event)
"""

from event_consumer.handlers.registry import (
    Handler,
    HandlerRegistry,
    get_handler_registry,
    register_handler,
    reset_registry,
)

# Import specific handlers to trigger registration
from event_consumer.handlers.storage import VideoFileHandler

__all__ = [
    "Handler",
    "HandlerRegistry",
    "get_handler_registry",
    "register_handler",
    "reset_registry",
    "VideoFileHandler",
]
