"""Source event models for the intake endpoint."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class PushEvent(BaseModel):
    """A "new revision pushed" notification from the source host."""

    model_config = ConfigDict(frozen=True)

    revision_id: str
    source_ref: str
    author: str = ""
    message: str = ""
    received_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class IntakeStatus(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"


class IntakeReceipt(BaseModel):
    """Returned to the event source for every submitted push."""

    model_config = ConfigDict(frozen=True)

    revision_id: str
    status: IntakeStatus
    detail: str = ""
    superseded: str | None = None  # revision the event displaced, if any
