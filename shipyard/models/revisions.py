"""Revision, build configuration and content-addressed artifact models.

Artifacts are immutable: new content or new configuration yields a new
artifact_id.  There is no update operation.
"""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


class Revision(BaseModel):
    """A source revision announced by a push event."""

    model_config = ConfigDict(frozen=True)

    revision_id: str
    source_ref: str  # path to the checked-out source tree
    author: str = ""
    message: str = ""
    pushed_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class BuildConfig(BaseModel):
    """Everything besides the source tree that determines a build and run."""

    model_config = ConfigDict(frozen=True)

    image_name: str = "site"
    dockerfile: str = "Dockerfile"
    build_args: dict[str, str] = {}
    container_name: str = "site"
    host_port: int = 80
    container_port: int = 80


class Artifact(BaseModel):
    """A built, deployable image derived from exactly one revision.

    The artifact_id is ``sha256:<hex>`` of (source tree digest,
    build-config hash), so identical inputs always map to the same artifact.
    """

    model_config = ConfigDict(frozen=True)

    artifact_id: str  # "sha256:<hex>"
    revision_id: str
    source_digest: str
    config_hash: str
    image_ref: str
    build_config: BuildConfig = BuildConfig()
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def short_id(self) -> str:
        """First 12 hex characters of the artifact digest."""
        return self.artifact_id.removeprefix("sha256:")[:12]
