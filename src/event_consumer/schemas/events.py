"""
Event message schemas for the storage event consumer.

Contains the Pydantic model for storage object notifications and the
codec between raw message payloads and events.
"""

import json
from typing import Mapping, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_serializer,
    field_validator,
)

from event_consumer.common.exceptions import DecodeError

DEFAULT_EVENT_TYPE = "OBJECT_FINALIZE"

# Message attribute carrying the event kind when the payload omits it
EVENT_TYPE_ATTRIBUTE = "eventType"


class StorageEvent(BaseModel):
    """Schema for a stored-file notification.

    Represents an object written to a storage bucket, as published by the
    storage service's notification channel.

    Attributes:
        bucket: Bucket holding the object
        name: Object name within the bucket
        size: Object size in bytes (string on the wire, int here)
        event_type: Notification kind used to route the event to a handler

    Example:
        >>> event = StorageEvent(bucket="b1", name="clip.mp4", size="120")
        >>> event.size
        120
        >>> event.uri
        'gs://b1/clip.mp4'
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    bucket: str = Field(..., description="Bucket holding the object", min_length=1)
    name: str = Field(..., description="Object name within the bucket", min_length=1)
    size: int = Field(..., description="Object size in bytes", ge=0)
    event_type: str = Field(
        default=DEFAULT_EVENT_TYPE,
        alias="eventType",
        description="Notification kind used for handler routing",
        min_length=1,
    )

    @field_validator("bucket", "name", "event_type")
    @classmethod
    def validate_non_empty_strings(cls, v: str, info) -> str:
        """Ensure string fields are not empty or whitespace-only."""
        if not v or not v.strip():
            raise ValueError(f"{info.field_name} cannot be empty or whitespace")
        return v

    @field_validator("size", mode="before")
    @classmethod
    def validate_size(cls, v):
        """Accept integral sizes as int or numeric string; reject bools and floats."""
        if isinstance(v, bool) or isinstance(v, float):
            raise ValueError("size must be an integer")
        if isinstance(v, str):
            v = v.strip()
            if not v.isdigit():
                raise ValueError("size must be a non-negative integer string")
            return int(v)
        return v

    @field_serializer("size")
    def serialize_size(self, size: int) -> str:
        """Serialize size as a decimal string, matching the wire format."""
        return str(size)

    @property
    def uri(self) -> str:
        """Storage URI of the object."""
        return f"gs://{self.bucket}/{self.name}"


def decode_event(
    payload: bytes,
    attributes: Optional[Mapping[str, str]] = None,
) -> StorageEvent:
    """
    Decode a raw message payload into a StorageEvent.

    The payload must be a UTF-8 JSON object. When it does not carry an
    event type, the ``eventType`` message attribute is used, then the
    default ``OBJECT_FINALIZE``.

    Args:
        payload: Raw message bytes
        attributes: Optional message attributes from the broker

    Returns:
        Decoded event

    Raises:
        DecodeError: If the payload is not valid UTF-8 JSON or fails validation
    """
    try:
        text = payload.decode("utf-8")
        data = json.loads(text)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DecodeError("Payload is not valid UTF-8 JSON", cause=e) from e

    if not isinstance(data, dict):
        raise DecodeError(
            "Payload must be a JSON object",
            context={"payload_type": type(data).__name__},
        )

    if "eventType" not in data and "event_type" not in data and attributes:
        attr_type = attributes.get(EVENT_TYPE_ATTRIBUTE)
        if attr_type:
            data = {**data, "eventType": attr_type}

    try:
        return StorageEvent.model_validate(data)
    except ValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
        raise DecodeError(
            f"Payload failed validation: {', '.join(fields)}",
            cause=e,
            context={"fields": fields},
        ) from e


def encode_event(event: StorageEvent) -> bytes:
    """Encode a StorageEvent as the UTF-8 JSON payload decode_event accepts."""
    return event.model_dump_json(by_alias=True).encode("utf-8")
