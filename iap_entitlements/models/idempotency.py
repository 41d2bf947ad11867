"""Processed-event record used to guarantee at-most-once effects."""

from pydantic import BaseModel, Field


class IdempotencyRecord(BaseModel):
    """Marks an inbound event as fully applied.

    The ``id`` is the event's natural key: a receipt token, a provider
    notification ID, or a composite key when the provider supplies none.
    """

    id: str = Field(..., description="Event idempotency key")
    created_at_millis: int = Field(..., description="When the event was recorded (Unix millis)")
