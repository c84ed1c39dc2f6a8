"""
Storage object event handler.

Handles: OBJECT_FINALIZE
"""

import logging

from event_consumer.common.logging import get_logger, log_with_context
from event_consumer.handlers.registry import register_handler
from event_consumer.schemas.events import DEFAULT_EVENT_TYPE, StorageEvent
from event_consumer.schemas.results import ProcessingOutcome

logger = get_logger(__name__)

# Object name that makes processing fail, for exercising the retry path
SIMULATED_FAILURE_NAME = "error"


@register_handler
class VideoFileHandler:
    """
    Handler for newly written video files.

    Processing is a placeholder: the object is logged and accepted. Safe to
    run more than once for the same object.
    """

    event_types = [DEFAULT_EVENT_TYPE]

    async def handle(self, event: StorageEvent) -> ProcessingOutcome:
        log_with_context(
            logger,
            logging.INFO,
            "Received storage event",
            bucket=event.bucket,
            object_name=event.name,
            size=event.size,
        )
        log_with_context(
            logger,
            logging.INFO,
            f"Processing video file: {event.uri}",
            bucket=event.bucket,
            object_name=event.name,
        )

        if event.name == SIMULATED_FAILURE_NAME:
            return ProcessingOutcome.retryable("simulated processing error")

        return ProcessingOutcome.success()
