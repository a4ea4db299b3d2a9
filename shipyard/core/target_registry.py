"""Target Registry — persistent connection descriptors for deploy targets.

Registry order is insertion order.  Only the rollout scheduler moves a
target's ``current_artifact``, and only after a committed step.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from shipyard.core.errors import UnknownTargetError
from shipyard.core.state_store import StateStore
from shipyard.models.targets import Target, TargetStatus

logger = logging.getLogger(__name__)

_NAMESPACE = "targets"


class TargetRegistry:
    """Typed access to the ``targets`` namespace of the state store."""

    def __init__(self, store: StateStore) -> None:
        self._store = store

    def register(self, target: Target) -> Target:
        """Add or update a target's connection descriptor.

        Re-registering an existing name keeps its position, current
        artifact and status; only connection fields are replaced.
        """
        existing = self.find(target.name)
        if existing is not None:
            target = target.model_copy(
                update={
                    "position": existing.position,
                    "current_artifact": existing.current_artifact,
                    "status": existing.status,
                    "updated_at": datetime.now(timezone.utc),
                }
            )
        else:
            positions = [t.position for t in self.list()]
            target = target.model_copy(
                update={"position": max(positions, default=-1) + 1}
            )
        self._save(target)
        logger.info("Registered target %s (%s)", target.name, target.address)
        return target

    def remove(self, name: str) -> None:
        if not self._store.delete(_NAMESPACE, name):
            raise UnknownTargetError(f"Unknown target: {name}")
        logger.info("Removed target %s", name)

    def find(self, name: str) -> Target | None:
        body = self._store.get(_NAMESPACE, name)
        return Target.model_validate(body) if body else None

    def get(self, name: str) -> Target:
        target = self.find(name)
        if target is None:
            raise UnknownTargetError(f"Unknown target: {name}")
        return target

    def list(self, capacity_tag: str | None = None) -> list[Target]:
        """All targets in registry order, optionally filtered by tag."""
        targets = [Target.model_validate(b) for b in self._store.list(_NAMESPACE)]
        if capacity_tag is not None:
            targets = [t for t in targets if t.capacity_tag == capacity_tag]
        return targets

    def referenced_artifacts(self) -> set[str]:
        return {t.current_artifact for t in self.list() if t.current_artifact}

    # ------------------------------------------------------------------
    # Mutations (scheduler / operator only)
    # ------------------------------------------------------------------

    def set_status(self, name: str, status: TargetStatus) -> Target:
        target = self.get(name).model_copy(
            update={"status": status, "updated_at": datetime.now(timezone.utc)}
        )
        self._save(target)
        return target

    def commit_artifact(self, name: str, artifact_id: str) -> Target:
        """Record a committed step: the target now runs *artifact_id*."""
        target = self.get(name).model_copy(
            update={
                "current_artifact": artifact_id,
                "status": TargetStatus.HEALTHY,
                "updated_at": datetime.now(timezone.utc),
            }
        )
        self._save(target)
        logger.info("Target %s now running %s", name, artifact_id)
        return target

    def _save(self, target: Target) -> None:
        self._store.put(_NAMESPACE, target.name, target.model_dump(mode="json"))
