"""
Handler registry for routing events to handlers.

Handlers are callables taking a StorageEvent and returning a
ProcessingOutcome (or an awaitable of one). Registration happens once at
startup; lookup is a dict access.

Two ways to register:

    registry = HandlerRegistry()
    registry.register("OBJECT_FINALIZE", handle_finalize)

    @register_handler
    class ArchiveHandler:
        event_types = ["OBJECT_ARCHIVE"]

        async def handle(self, event):
            ...
"""

import inspect
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Union

from event_consumer.common.exceptions import NoHandlerError
from event_consumer.common.logging import get_logger, log_with_context
from event_consumer.schemas.events import StorageEvent
from event_consumer.schemas.results import ProcessingOutcome

logger = get_logger(__name__)

HandlerResult = Union[
    Optional[ProcessingOutcome], Awaitable[Optional[ProcessingOutcome]]
]
Handler = Callable[[StorageEvent], HandlerResult]


class HandlerRegistry:
    """Maps event types to handlers."""

    def __init__(self):
        self._handlers: Dict[str, Handler] = {}

    def register(self, event_type: str, handler: Handler) -> None:
        """
        Register a handler for an event type.

        Raises:
            ValueError: If the event type already has a handler
        """
        if not event_type:
            raise ValueError("event_type must be non-empty")
        if event_type in self._handlers:
            raise ValueError(f"Handler already registered for '{event_type}'")
        self._handlers[event_type] = handler
        log_with_context(
            logger,
            logging.DEBUG,
            "Registered handler",
            handler=getattr(handler, "__qualname__", repr(handler)),
        )

    def get_handler(self, event_type: str) -> Handler:
        """
        Look up the handler for an event type.

        Raises:
            NoHandlerError: If nothing is registered for the event type
        """
        try:
            return self._handlers[event_type]
        except KeyError:
            raise NoHandlerError(event_type) from None

    def has_handler(self, event_type: str) -> bool:
        return event_type in self._handlers

    @property
    def event_types(self) -> List[str]:
        return sorted(self._handlers)

    async def dispatch(self, event: StorageEvent) -> ProcessingOutcome:
        """
        Invoke the handler registered for the event's type.

        An unregistered type yields a fatal outcome. A handler returning
        None counts as success. Exceptions raised by the handler propagate
        to the caller.

        Raises:
            TypeError: If the handler returns something other than a
                ProcessingOutcome or None
        """
        try:
            handler = self.get_handler(event.event_type)
        except NoHandlerError as e:
            return ProcessingOutcome.fatal(e.message)

        result = handler(event)
        if inspect.isawaitable(result):
            result = await result

        if result is None:
            return ProcessingOutcome.success()
        if not isinstance(result, ProcessingOutcome):
            raise TypeError(
                f"Handler for '{event.event_type}' returned {type(result).__name__}, "
                "expected ProcessingOutcome"
            )
        return result


_registry: Optional[HandlerRegistry] = None
_handler_classes: List[type] = []


def _register_class(registry: HandlerRegistry, cls: type) -> None:
    instance = cls()
    for event_type in cls.event_types:
        registry.register(event_type, instance.handle)


def get_handler_registry() -> HandlerRegistry:
    """
    Get or create the global handler registry.

    A new registry is populated with every class decorated by
    @register_handler so far.
    """
    global _registry
    if _registry is None:
        _registry = HandlerRegistry()
        for cls in _handler_classes:
            _register_class(_registry, cls)
    return _registry


def reset_registry() -> None:
    """Drop the global registry; the next get_handler_registry() rebuilds it."""
    global _registry
    _registry = None


def register_handler(cls):
    """
    Class decorator registering a handler class with the global registry.

    The class declares ``event_types`` and an (async) ``handle(event)``
    method; one instance is created and its ``handle`` is registered for
    each declared type.
    """
    if not getattr(cls, "event_types", None):
        raise ValueError(f"{cls.__name__} must declare event_types")

    _handler_classes.append(cls)
    if _registry is not None:
        _register_class(_registry, cls)
    return cls
