"""Container runtime collaborator — the Docker CLI over a channel.

Semantics the operations rely on: ``stop`` and ``remove`` of a container
that does not exist are no-ops, and ``inspect`` of a missing container
returns None instead of failing.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict

from shipyard.core.errors import OperationError
from shipyard.remote.transport import Channel, CommandResult

_INSPECT_FORMAT = "{{.Id}}|{{.Config.Image}}|{{.State.Running}}"


class ContainerInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    container_id: str
    name: str
    image: str
    running: bool


@runtime_checkable
class ContainerRuntime(Protocol):
    async def image_exists(self, image_ref: str) -> bool: ...

    async def pull(self, image_ref: str) -> None: ...

    async def push(self, image_ref: str) -> None: ...

    async def build(
        self,
        context: str,
        tag: str,
        *,
        dockerfile: str = "Dockerfile",
        build_args: Mapping[str, str] | None = None,
    ) -> str: ...

    async def inspect(self, name: str) -> ContainerInfo | None: ...

    async def run(self, image_ref: str, name: str, ports: Mapping[int, int]) -> str: ...

    async def stop(self, handle: str) -> None: ...

    async def remove(self, handle: str) -> None: ...


def _is_missing(result: CommandResult) -> bool:
    return "no such" in result.stderr.lower()


class DockerCli:
    """``ContainerRuntime`` implemented with docker CLI commands.

    Parameters
    ----------
    channel:
        Channel to the host whose Docker daemon is managed.
    docker:
        Name or path of the docker binary on that host.
    """

    def __init__(self, channel: Channel, docker: str = "docker") -> None:
        self._channel = channel
        self._docker = docker

    async def _run(self, *args: str) -> CommandResult:
        return await self._channel.run([self._docker, *args])

    @staticmethod
    def _check(result: CommandResult, what: str) -> CommandResult:
        if not result.ok:
            raise OperationError(
                f"{what} failed (exit {result.exit_code}): {result.stderr.strip()}",
                exit_code=result.exit_code,
                stderr=result.stderr,
            )
        return result

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    async def image_exists(self, image_ref: str) -> bool:
        result = await self._run("image", "inspect", "--format", "{{.Id}}", image_ref)
        return result.ok

    async def pull(self, image_ref: str) -> None:
        self._check(await self._run("pull", image_ref), f"docker pull {image_ref}")

    async def push(self, image_ref: str) -> None:
        self._check(await self._run("push", image_ref), f"docker push {image_ref}")

    async def build(
        self,
        context: str,
        tag: str,
        *,
        dockerfile: str = "Dockerfile",
        build_args: Mapping[str, str] | None = None,
    ) -> str:
        args = ["build", "-t", tag, "-f", f"{context.rstrip('/')}/{dockerfile}"]
        for key in sorted(build_args or {}):
            args += ["--build-arg", f"{key}={build_args[key]}"]  # type: ignore[index]
        args.append(context)
        self._check(await self._run(*args), f"docker build {tag}")
        return tag

    # ------------------------------------------------------------------
    # Containers
    # ------------------------------------------------------------------

    async def inspect(self, name: str) -> ContainerInfo | None:
        result = await self._run("container", "inspect", "--format", _INSPECT_FORMAT, name)
        if not result.ok:
            if _is_missing(result):
                return None
            self._check(result, f"docker inspect {name}")
        container_id, image, running = result.stdout.strip().split("|", 2)
        return ContainerInfo(
            container_id=container_id,
            name=name,
            image=image,
            running=running.strip().lower() == "true",
        )

    async def run(self, image_ref: str, name: str, ports: Mapping[int, int]) -> str:
        args = ["run", "-d", "--name", name, "--restart", "unless-stopped"]
        for host_port in sorted(ports):
            args += ["-p", f"{host_port}:{ports[host_port]}"]
        args.append(image_ref)
        result = self._check(await self._run(*args), f"docker run {name}")
        return result.stdout.strip()

    async def stop(self, handle: str) -> None:
        result = await self._run("stop", handle)
        if not result.ok and not _is_missing(result):
            self._check(result, f"docker stop {handle}")

    async def remove(self, handle: str) -> None:
        result = await self._run("rm", "-f", handle)
        if not result.ok and not _is_missing(result):
            self._check(result, f"docker rm {handle}")
