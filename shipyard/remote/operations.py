"""Idempotent remote operations.

Each operation pairs a ``check`` (is the host already in the desired
state?) with an ``apply`` that moves it there.  The executor only applies
when the check fails, so re-running an operation list against a host that
is already converged has no side effects.

The deploy list, in order:

1. ensure the artifact's image is present on the host
2. ensure any container under the service name that is not already
   running this image is removed
3. ensure the service container is running this image with its port binding
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from shipyard.models.revisions import Artifact
from shipyard.models.targets import Target
from shipyard.remote.runtime import ContainerRuntime


class Operation(ABC):
    """One idempotent step against a container runtime."""

    name: str = "operation"

    @abstractmethod
    async def check(self, runtime: ContainerRuntime) -> bool:
        """Return True if the host is already in this operation's target state."""

    @abstractmethod
    async def apply(self, runtime: ContainerRuntime) -> None:
        """Converge the host.  Raises ``OperationError`` on failure."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


class EnsureImagePresent(Operation):
    def __init__(self, image_ref: str) -> None:
        self.image_ref = image_ref
        self.name = f"image-present:{image_ref}"

    async def check(self, runtime: ContainerRuntime) -> bool:
        return await runtime.image_exists(self.image_ref)

    async def apply(self, runtime: ContainerRuntime) -> None:
        await runtime.pull(self.image_ref)


class EnsureStaleContainerRemoved(Operation):
    """Remove the named container unless it already runs the wanted image."""

    def __init__(self, container_name: str, image_ref: str) -> None:
        self.container_name = container_name
        self.image_ref = image_ref
        self.name = f"stale-removed:{container_name}"

    async def check(self, runtime: ContainerRuntime) -> bool:
        info = await runtime.inspect(self.container_name)
        return info is None or (info.running and info.image == self.image_ref)

    async def apply(self, runtime: ContainerRuntime) -> None:
        await runtime.remove(self.container_name)


class EnsureContainerRunning(Operation):
    def __init__(self, container_name: str, image_ref: str, ports: dict[int, int]) -> None:
        self.container_name = container_name
        self.image_ref = image_ref
        self.ports = dict(ports)
        self.name = f"running:{container_name}"

    async def check(self, runtime: ContainerRuntime) -> bool:
        info = await runtime.inspect(self.container_name)
        return info is not None and info.running and info.image == self.image_ref

    async def apply(self, runtime: ContainerRuntime) -> None:
        # A stopped leftover under the same name would make `run` fail.
        info = await runtime.inspect(self.container_name)
        if info is not None:
            await runtime.remove(self.container_name)
        await runtime.run(self.image_ref, self.container_name, self.ports)


class EnsureContainerStopped(Operation):
    def __init__(self, container_name: str) -> None:
        self.container_name = container_name
        self.name = f"stopped:{container_name}"

    async def check(self, runtime: ContainerRuntime) -> bool:
        info = await runtime.inspect(self.container_name)
        return info is None or not info.running

    async def apply(self, runtime: ContainerRuntime) -> None:
        await runtime.stop(self.container_name)


def deploy_operations(artifact: Artifact, target: Target | None = None) -> list[Operation]:
    """The ordered operation list that puts *artifact* live on a host."""
    cfg = artifact.build_config
    return [
        EnsureImagePresent(artifact.image_ref),
        EnsureStaleContainerRemoved(cfg.container_name, artifact.image_ref),
        EnsureContainerRunning(
            cfg.container_name,
            artifact.image_ref,
            {cfg.host_port: cfg.container_port},
        ),
    ]


def drain_operations(container_name: str) -> list[Operation]:
    return [EnsureContainerStopped(container_name)]
