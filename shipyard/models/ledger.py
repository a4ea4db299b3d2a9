"""Rollout ledger entry model (append-only, hash-chained).

One entry per plan or step state transition, plus intake decisions.
The monitor is a projection of these entries and the state store.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


class LedgerEntry(BaseModel):
    """A single entry in the append-only rollout ledger."""

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    plan_id: str  # "intake" for entries not bound to a plan
    subject: str  # "plan", a step_id, or a revision_id for intake entries
    transition: str  # "from->to", e.g. "applying->verifying"
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    target_name: str = ""
    artifact_id: str = ""
    reason: str = ""
    previous_entry_hash: str = ""
    entry_hash: str = ""  # computed on append, seals this entry
