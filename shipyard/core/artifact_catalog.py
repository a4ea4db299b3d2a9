"""Artifact catalog — metadata records for built, immutable artifacts.

Storing an artifact whose id already exists is a no-op.  There is no
update; records leave the catalog only through pruning.
"""

from __future__ import annotations

import logging
from datetime import datetime

from shipyard.core.state_store import StateStore
from shipyard.models.revisions import Artifact

logger = logging.getLogger(__name__)

_NAMESPACE = "artifacts"


class ArtifactCatalog:
    """Content-addressed artifact metadata in the ``artifacts`` namespace."""

    def __init__(self, store: StateStore) -> None:
        self._store = store

    def add(self, artifact: Artifact) -> Artifact:
        """Store an artifact record; returns the existing record if present."""
        existing = self.find(artifact.artifact_id)
        if existing is not None:
            return existing
        self._store.put(_NAMESPACE, artifact.artifact_id, artifact.model_dump(mode="json"))
        return artifact

    def find(self, artifact_id: str) -> Artifact | None:
        body = self._store.get(_NAMESPACE, artifact_id)
        return Artifact.model_validate(body) if body else None

    def get(self, artifact_id: str) -> Artifact:
        artifact = self.find(artifact_id)
        if artifact is None:
            raise KeyError(f"Artifact not found: {artifact_id}")
        return artifact

    def list(self) -> list[Artifact]:
        return [Artifact.model_validate(b) for b in self._store.list(_NAMESPACE)]

    def prune(
        self,
        *,
        keep: set[str],
        older_than: datetime | None = None,
    ) -> list[Artifact]:
        """Remove artifact records not in *keep*.

        With *older_than*, only artifacts created before that instant are
        removed (retention window); without it every unkept artifact goes
        (explicit prune).  Returns the removed records.
        """
        removed: list[Artifact] = []
        for artifact in self.list():
            if artifact.artifact_id in keep:
                continue
            if older_than is not None and artifact.created_at >= older_than:
                continue
            self._store.delete(_NAMESPACE, artifact.artifact_id)
            removed.append(artifact)
        if removed:
            logger.info("Pruned %d artifact(s)", len(removed))
        return removed
