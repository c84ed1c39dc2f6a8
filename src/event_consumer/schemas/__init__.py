"""
Schemas for event_consumer.

Contains the decoded event model, its payload codec and the processing
outcome returned by handlers.
"""

from event_consumer.schemas.events import (
    DEFAULT_EVENT_TYPE,
    StorageEvent,
    decode_event,
    encode_event,
)
from event_consumer.schemas.results import OutcomeStatus, ProcessingOutcome

__all__ = [
    "DEFAULT_EVENT_TYPE",
    "StorageEvent",
    "decode_event",
    "encode_event",
    "OutcomeStatus",
    "ProcessingOutcome",
]
