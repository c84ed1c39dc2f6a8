"""Worker pool for concurrent consumer loops."""

from event_consumer.workers.pool import ConsumerPool

__all__ = ["ConsumerPool"]
