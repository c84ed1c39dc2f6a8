"""Tests for VideoFileHandler."""

import logging

import pytest

from event_consumer.handlers.storage import VideoFileHandler
from event_consumer.schemas.events import StorageEvent


@pytest.mark.asyncio
class TestVideoFileHandler:
    async def test_regular_file_succeeds(self, caplog):
        event = StorageEvent(bucket="b1", name="clip.mp4", size=120)

        with caplog.at_level(logging.INFO):
            outcome = await VideoFileHandler().handle(event)

        assert outcome.is_success
        assert "Processing video file: gs://b1/clip.mp4" in caplog.text

    async def test_error_name_is_retryable(self):
        event = StorageEvent(bucket="b1", name="error", size=5)

        outcome = await VideoFileHandler().handle(event)

        assert outcome.should_redeliver
        assert outcome.reason == "simulated processing error"
