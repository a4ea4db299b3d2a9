"""Shared test fixtures for Shipyard.

Remote hosts are simulated by ``FakeDockerHost``, which interprets the
docker argv that ``DockerCli`` sends over a channel, so executor and
scheduler tests exercise the real runtime and operation code paths.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

import pytest

from shipyard.config import ShipyardSettings
from shipyard.core.artifact_catalog import ArtifactCatalog
from shipyard.core.controller import DeployController
from shipyard.core.errors import BuildError, TargetConnectionError
from shipyard.core.hasher import artifact_key, content_address
from shipyard.core.plan_machine import PlanMachine
from shipyard.core.rollout_ledger import RolloutLedger
from shipyard.core.state_store import StateStore
from shipyard.core.target_registry import TargetRegistry
from shipyard.models.events import PushEvent
from shipyard.models.revisions import Artifact, BuildConfig
from shipyard.models.targets import Target
from shipyard.remote.transport import CommandResult


# ---------------------------------------------------------------------------
# Fake remote hosts
# ---------------------------------------------------------------------------


class FakeDockerHost:
    """In-memory Docker daemon for one target address."""

    def __init__(self, address: str) -> None:
        self.address = address
        self.images: set[str] = set()
        self.containers: dict[str, dict[str, Any]] = {}
        self.commands: list[list[str]] = []
        self.side_effects: list[tuple[str, str]] = []

        # Failure injection
        self.unreachable = False
        self.connect_failures = 0
        self.pull_failures = 0
        self.build_fails = False
        self.run_gate: asyncio.Event | None = None
        self.blocked: asyncio.Event | None = None

    def running_image(self, name: str = "site") -> str | None:
        container = self.containers.get(name)
        if container is None or not container["running"]:
            return None
        return container["image"]

    async def handle(self, argv: Sequence[str]) -> CommandResult:
        args = list(argv[1:])
        self.commands.append(list(argv))
        verb = args[0]

        if verb == "image":  # image inspect --format F ref
            ref = args[-1]
            if ref in self.images:
                return self._ok(argv, ref)
            return self._fail(argv, f"Error: No such image: {ref}")

        if verb == "pull":
            ref = args[1]
            if self.pull_failures > 0:
                self.pull_failures -= 1
                return self._fail(argv, "net/http: TLS handshake timeout")
            self.images.add(ref)
            self.side_effects.append(("pull", ref))
            return self._ok(argv)

        if verb == "build":
            tag = args[args.index("-t") + 1]
            if self.build_fails:
                return self._fail(argv, "failed to solve: Dockerfile parse error")
            self.images.add(tag)
            self.side_effects.append(("build", tag))
            return self._ok(argv)

        if verb == "push":
            self.side_effects.append(("push", args[1]))
            return self._ok(argv)

        if verb == "container":  # container inspect --format F name
            name = args[-1]
            container = self.containers.get(name)
            if container is None:
                return self._fail(argv, f"Error: No such container: {name}")
            running = "true" if container["running"] else "false"
            return self._ok(argv, f"{container['id']}|{container['image']}|{running}\n")

        if verb == "run":
            if self.run_gate is not None:
                if self.blocked is not None:
                    self.blocked.set()
                await self.run_gate.wait()
            name = args[args.index("--name") + 1]
            image = args[-1]
            if image not in self.images:
                return self._fail(argv, f"Unable to find image '{image}' locally", code=125)
            if name in self.containers:
                return self._fail(argv, f"Conflict. The container name \"/{name}\" is already in use", code=125)
            container_id = uuid.uuid4().hex
            self.containers[name] = {"id": container_id, "image": image, "running": True}
            self.side_effects.append(("run", image))
            return self._ok(argv, container_id + "\n")

        if verb == "stop":
            name = args[1]
            if name not in self.containers:
                return self._fail(argv, f"Error: No such container: {name}")
            self.containers[name]["running"] = False
            self.side_effects.append(("stop", name))
            return self._ok(argv, name)

        if verb == "rm":  # rm -f name
            name = args[-1]
            if name not in self.containers:
                return self._fail(argv, f"Error: No such container: {name}")
            del self.containers[name]
            self.side_effects.append(("rm", name))
            return self._ok(argv, name)

        return self._fail(argv, f"unknown command: {verb}")

    @staticmethod
    def _ok(argv: Sequence[str], stdout: str = "") -> CommandResult:
        return CommandResult(argv=list(argv), exit_code=0, stdout=stdout)

    @staticmethod
    def _fail(argv: Sequence[str], stderr: str, code: int = 1) -> CommandResult:
        return CommandResult(argv=list(argv), exit_code=code, stderr=stderr)


class FakeChannel:
    def __init__(self, host: FakeDockerHost, transport: FakeTransport) -> None:
        self.host = host
        self._transport = transport
        self.closed = False

    async def run(self, argv: Sequence[str], *, timeout: float | None = None) -> CommandResult:
        await asyncio.sleep(0)
        if self.host.unreachable:
            raise TargetConnectionError(f"ssh to {self.host.address} failed: Connection reset")
        return await self.host.handle(argv)

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._transport.open_channels -= 1


class FakeTransport:
    """Hands out channels to ``FakeDockerHost`` instances by address."""

    def __init__(self) -> None:
        self.hosts: dict[str, FakeDockerHost] = {}
        self.connects: list[str] = []
        self.open_channels = 0
        self.max_open_channels = 0

    def host(self, address: str) -> FakeDockerHost:
        if address not in self.hosts:
            self.hosts[address] = FakeDockerHost(address)
        return self.hosts[address]

    async def connect(self, address: str, credential_ref: str) -> FakeChannel:
        host = self.host(address)
        self.connects.append(address)
        if host.connect_failures > 0:
            host.connect_failures -= 1
            raise TargetConnectionError(f"ssh to {address} failed: Connection timed out")
        if host.unreachable:
            raise TargetConnectionError(f"ssh to {address} failed: No route to host")
        self.open_channels += 1
        self.max_open_channels = max(self.max_open_channels, self.open_channels)
        return FakeChannel(host, self)


class FakeProbe:
    """Readiness probe backed by the fake hosts.

    A target is ready unless it has leading misses left or its service
    container runs an image listed in ``bad_images``.
    """

    def __init__(self, transport: FakeTransport) -> None:
        self._transport = transport
        self.leading_misses: dict[str, int] = {}
        self.bad_images: set[str] = set()
        self.calls: dict[str, int] = {}

    async def probe(self, target: Target) -> bool:
        self.calls[target.name] = self.calls.get(target.name, 0) + 1
        remaining = self.leading_misses.get(target.name, 0)
        if remaining > 0:
            self.leading_misses[target.name] = remaining - 1
            return False
        image = self._transport.host(target.address).running_image()
        return image is not None and image not in self.bad_images


class FakeBuildBackend:
    def __init__(self) -> None:
        self.calls: list[str] = []
        self.fail = False
        self.gate: asyncio.Event | None = None

    async def build(self, source: Path, tag: str, config: BuildConfig) -> str:
        self.calls.append(tag)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise BuildError(f"Build of {tag} failed: Dockerfile parse error")
        return tag


class FakeClock:
    """Monotonic clock advanced only by its own ``sleep``."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


# ---------------------------------------------------------------------------
# Persistence fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test databases and source trees."""
    return tmp_path


@pytest.fixture
def store(tmp_dir: Path) -> StateStore:
    return StateStore(tmp_dir / "state.db")


@pytest.fixture
def ledger(tmp_dir: Path) -> RolloutLedger:
    """Provide a fresh RolloutLedger backed by a temp SQLite database."""
    return RolloutLedger(tmp_dir / "ledger.db")


@pytest.fixture
def registry(store: StateStore) -> TargetRegistry:
    return TargetRegistry(store)


@pytest.fixture
def catalog(store: StateStore) -> ArtifactCatalog:
    return ArtifactCatalog(store)


@pytest.fixture
def machine(store: StateStore, ledger: RolloutLedger) -> PlanMachine:
    return PlanMachine(store, ledger)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def fake_probe(fake_transport: FakeTransport) -> FakeProbe:
    return FakeProbe(fake_transport)


@pytest.fixture
def build_backend() -> FakeBuildBackend:
    return FakeBuildBackend()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_source(tmp_dir: Path) -> Callable[..., Path]:
    """Factory fixture: write a small site source tree and return its path."""

    def _factory(name: str = "site", body: str = "<h1>hello</h1>") -> Path:
        root = tmp_dir / "sources" / name
        root.mkdir(parents=True, exist_ok=True)
        (root / "Dockerfile").write_text("FROM nginx:alpine\nCOPY index.html /usr/share/nginx/html/\n")
        (root / "index.html").write_text(body)
        return root

    return _factory


@pytest.fixture
def make_artifact(catalog: ArtifactCatalog) -> Callable[..., Artifact]:
    """Factory fixture: add a catalog record for a synthetic artifact."""

    def _factory(revision_id: str = "rev-1", **overrides: Any) -> Artifact:
        source_digest = content_address({"revision": revision_id})
        config_hash = content_address(BuildConfig().model_dump(mode="json"))
        key = artifact_key(source_digest, config_hash)
        fields: dict[str, Any] = {
            "artifact_id": key,
            "revision_id": revision_id,
            "source_digest": source_digest,
            "config_hash": config_hash,
            "image_ref": f"site:{key.removeprefix('sha256:')[:12]}",
        }
        fields.update(overrides)
        return catalog.add(Artifact(**fields))

    return _factory


@pytest.fixture
def make_settings(tmp_dir: Path) -> Callable[..., ShipyardSettings]:
    def _factory(**overrides: Any) -> ShipyardSettings:
        fields: dict[str, Any] = {
            "state_path": tmp_dir / "state.db",
            "ledger_path": tmp_dir / "ledger.db",
            "credentials_dir": tmp_dir / "credentials",
            "health_interval_seconds": 15.0,
            "health_deadline_seconds": 60.0,
            "probe_timeout_seconds": 5.0,
            "max_attempts": 3,
            "backoff_base_seconds": 1.0,
            "backoff_max_seconds": 30.0,
            "watchdog_seconds": 30.0,
        }
        fields.update(overrides)
        return ShipyardSettings(**fields)

    return _factory


@pytest.fixture
def make_controller(
    make_settings: Callable[..., ShipyardSettings],
    fake_transport: FakeTransport,
    build_backend: FakeBuildBackend,
    fake_probe: FakeProbe,
    clock: FakeClock,
) -> Callable[..., DeployController]:
    """Factory fixture: a controller wired to the fakes, settings overridable."""

    def _factory(**overrides: Any) -> DeployController:
        return DeployController(
            make_settings(**overrides),
            transport=fake_transport,
            build_backend=build_backend,
            probe=fake_probe,
            sleep=clock.sleep,
            clock=clock,
        )

    return _factory


def add_targets(controller: DeployController, *names: str, **fields: Any) -> list[Target]:
    """Register targets named *names* at ``<name>.internal``."""
    return [
        controller.registry.register(Target(name=name, address=f"{name}.internal", **fields))
        for name in names
    ]


def push(revision_id: str, source: Path) -> PushEvent:
    return PushEvent(revision_id=revision_id, source_ref=str(source))


async def wait_for_event(event: asyncio.Event, timeout: float = 5.0) -> None:
    await asyncio.wait_for(event.wait(), timeout=timeout)
