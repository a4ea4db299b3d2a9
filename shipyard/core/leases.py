"""Per-target exclusive leases and cross-process plan ownership.

Only one rollout step may touch a given target at a time, even across
concurrent plans.  A contended lease is rejected with ``ConflictError``;
it is never queued.

Plan ownership covers controllers in separate processes sharing one
state database: each running plan records its owner and a heartbeat, so
restart recovery only touches plans whose owner has gone away.
"""

from __future__ import annotations

import os
import socket
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from shipyard.core.errors import ConflictError
from shipyard.core.state_store import StateStore

_OWNERS = "plan_owners"


class TargetLeases:
    """In-process lease table: target name -> holding plan id."""

    def __init__(self) -> None:
        self._holders: dict[str, str] = {}
        self._lock = threading.Lock()

    def acquire(self, target_name: str, plan_id: str) -> None:
        with self._lock:
            holder = self._holders.get(target_name)
            if holder is not None and holder != plan_id:
                raise ConflictError(
                    f"Target {target_name} is held by plan {holder}; "
                    f"plan {plan_id} rejected"
                )
            self._holders[target_name] = plan_id

    def release(self, target_name: str, plan_id: str) -> None:
        with self._lock:
            if self._holders.get(target_name) == plan_id:
                del self._holders[target_name]

    def holder(self, target_name: str) -> str | None:
        with self._lock:
            return self._holders.get(target_name)

    @contextmanager
    def hold(self, target_name: str, plan_id: str) -> Iterator[None]:
        """Context manager form: acquire on entry, release on exit."""
        self.acquire(target_name, plan_id)
        try:
            yield
        finally:
            self.release(target_name, plan_id)


class PlanOwnership:
    """Cross-process record of which controller is driving each plan.

    A controller claims a plan when it starts running it and refreshes a
    heartbeat while it runs.  An owner whose heartbeat is older than
    *stale_after* seconds is presumed dead, and only then may another
    controller treat the plan as interrupted.

    Parameters
    ----------
    store:
        Shared state store; every controller process on the same database
        sees the same records.
    owner_id:
        Identity of this controller process.
    stale_after:
        Heartbeat age (seconds) after which an owner is presumed dead.
    """

    def __init__(self, store: StateStore, owner_id: str, *, stale_after: float = 60.0) -> None:
        self._store = store
        self.owner_id = owner_id
        self.stale_after = stale_after

    def claim(self, plan_id: str) -> None:
        """Take ownership of *plan_id*; ConflictError if another live owner has it."""
        other = self.live_owner(plan_id)
        if other is not None and other != self.owner_id:
            raise ConflictError(f"Plan {plan_id} is being driven by controller {other}")
        self.beat(plan_id)

    def beat(self, plan_id: str) -> None:
        self._store.put(_OWNERS, plan_id, {
            "owner": self.owner_id,
            "heartbeat_at": datetime.now(timezone.utc).isoformat(),
        })

    def release(self, plan_id: str) -> None:
        record = self._store.get(_OWNERS, plan_id)
        if record is not None and record["owner"] == self.owner_id:
            self._store.delete(_OWNERS, plan_id)

    def forget(self, plan_id: str) -> None:
        """Drop the record whoever holds it (after recovering a dead owner's plan)."""
        self._store.delete(_OWNERS, plan_id)

    def live_owner(self, plan_id: str) -> str | None:
        """The owner driving *plan_id*, or None if unowned or its owner is stale."""
        record = self._store.get(_OWNERS, plan_id)
        if record is None:
            return None
        if record["owner"] == self.owner_id:
            return self.owner_id
        age = datetime.now(timezone.utc) - datetime.fromisoformat(record["heartbeat_at"])
        if age.total_seconds() > self.stale_after:
            return None
        return record["owner"]


def new_owner_id() -> str:
    """``host:pid:nonce`` identity for one controller process."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
