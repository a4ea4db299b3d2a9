"""Deploy target models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class TargetStatus(str, Enum):
    """Observed health of a deploy target."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"
    DRAINING = "draining"


class Target(BaseModel):
    """A deploy destination: one Docker host reachable over SSH.

    ``credential_ref`` is an opaque handle resolved by the transport;
    the controller never reads secret material itself.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    address: str  # "host" or "user@host"
    credential_ref: str = ""
    capacity_tag: str = "default"
    weight: int | None = None  # lower weight rolls out first
    health_url: str | None = None
    position: int = 0  # registry order
    current_artifact: str | None = None
    status: TargetStatus = TargetStatus.UNKNOWN
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
