"""Release Artifact Builder — revision to content-addressed image.

Builds are pure functions of (source tree content, build configuration).
The artifact id is computed before anything is built and the catalog is
consulted first, so identical inputs return the existing artifact without
invoking the build backend.  Concurrent requests for the same key share a
single in-flight build.

A failed build raises ``BuildError`` and is not retried.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Protocol, runtime_checkable

from shipyard.core.artifact_catalog import ArtifactCatalog
from shipyard.core.errors import BuildError, OperationError, TargetConnectionError
from shipyard.core.hasher import artifact_key, content_address, tree_digest
from shipyard.models.revisions import Artifact, BuildConfig, Revision
from shipyard.remote.runtime import DockerCli
from shipyard.remote.transport import LocalTransport, Transport

logger = logging.getLogger(__name__)


@runtime_checkable
class BuildBackend(Protocol):
    async def build(self, source: Path, tag: str, config: BuildConfig) -> str:
        """Build *source* and return the resulting image reference.

        Raises ``BuildError`` on compile or packaging failure.
        """
        ...


class DockerBuildBackend:
    """Runs ``docker build`` on a build host (the controller by default).

    With a *registry* prefix the image is tagged under it and pushed, so
    targets can pull it; without one, targets must share the build host's
    image store (single-host installs).
    """

    def __init__(
        self,
        transport: Transport | None = None,
        *,
        build_host: str = "localhost",
        credential_ref: str = "",
        registry: str = "",
    ) -> None:
        self._transport = transport or LocalTransport()
        self._build_host = build_host
        self._credential_ref = credential_ref
        self._registry = registry.rstrip("/")

    async def build(self, source: Path, tag: str, config: BuildConfig) -> str:
        image_ref = f"{self._registry}/{tag}" if self._registry else tag
        try:
            channel = await self._transport.connect(self._build_host, self._credential_ref)
            try:
                docker = DockerCli(channel)
                await docker.build(
                    str(source),
                    image_ref,
                    dockerfile=config.dockerfile,
                    build_args=config.build_args,
                )
                if self._registry:
                    await docker.push(image_ref)
            finally:
                await channel.close()
        except (OperationError, TargetConnectionError) as exc:
            raise BuildError(f"Build of {tag} failed: {exc}") from exc
        return image_ref


class ArtifactBuilder:
    """Content-addressed, deduplicating front end to a build backend.

    Parameters
    ----------
    catalog:
        Where artifact metadata is recorded and looked up.
    backend:
        Performs the actual build on a cache miss.
    """

    def __init__(self, catalog: ArtifactCatalog, backend: BuildBackend) -> None:
        self._catalog = catalog
        self._backend = backend
        self._inflight: dict[str, asyncio.Task[Artifact]] = {}

    @staticmethod
    def config_hash(config: BuildConfig) -> str:
        return content_address(config.model_dump(mode="json"))

    async def build(self, revision: Revision, config: BuildConfig) -> Artifact:
        """Return the artifact for *revision* under *config*, building on miss."""
        source = Path(revision.source_ref)
        try:
            source_digest = await asyncio.to_thread(tree_digest, source)
        except FileNotFoundError as exc:
            raise BuildError(str(exc)) from exc

        config_hash = self.config_hash(config)
        key = artifact_key(source_digest, config_hash)

        cached = self._catalog.find(key)
        if cached is not None:
            logger.info(
                "Artifact cache hit for revision %s: %s", revision.revision_id, cached.image_ref
            )
            return cached

        inflight = self._inflight.get(key)
        if inflight is not None:
            logger.info("Joining in-flight build %s for revision %s", key, revision.revision_id)
            return await asyncio.shield(inflight)

        task = asyncio.ensure_future(
            self._build(revision, config, source, source_digest, config_hash, key)
        )
        self._inflight[key] = task
        try:
            return await asyncio.shield(task)
        finally:
            if task.done():
                self._inflight.pop(key, None)
            else:
                task.add_done_callback(lambda _t: self._inflight.pop(key, None))

    async def _build(
        self,
        revision: Revision,
        config: BuildConfig,
        source: Path,
        source_digest: str,
        config_hash: str,
        key: str,
    ) -> Artifact:
        digest = key.removeprefix("sha256:")
        tag = f"{config.image_name}:{digest[:12]}"
        logger.info("Building revision %s as %s", revision.revision_id, tag)
        image_ref = await self._backend.build(source, tag, config)

        artifact = Artifact(
            artifact_id=key,
            revision_id=revision.revision_id,
            source_digest=source_digest,
            config_hash=config_hash,
            image_ref=image_ref,
            build_config=config,
        )
        return self._catalog.add(artifact)
