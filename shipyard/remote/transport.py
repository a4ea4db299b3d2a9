"""Transport bridge — authenticated command channels to deploy targets.

Bridge boundary
---------------
The controller never speaks SSH itself.  It asks a ``Transport`` for a
``Channel`` to a target address using the target's opaque credential
handle, and runs argv lists over that channel.  Two backends ship:

1. **SshTransport**: the OpenSSH client, driven as an ``asyncio``
   subprocess in ``BatchMode``.  The credential handle names a private key
   file under the credentials directory.  ssh reserves exit status 255 for
   its own failures, which surface as ``TargetConnectionError``.
2. **LocalTransport**: runs commands on the controller host.  Used for
   single-host installs and for local builds.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict

from shipyard.core.errors import OperationError, TargetConnectionError

logger = logging.getLogger(__name__)

# Exit status the OpenSSH client uses for connection and auth failures.
SSH_CONNECTION_FAILURE = 255


class CommandResult(BaseModel):
    """Outcome of one command executed over a channel."""

    model_config = ConfigDict(frozen=True)

    argv: list[str]
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class Channel(Protocol):
    """A connected, authenticated command channel to one target."""

    async def run(
        self, argv: Sequence[str], *, timeout: float | None = None
    ) -> CommandResult:
        """Run *argv* on the target and return its result.

        Raises ``TargetConnectionError`` if the channel itself fails.
        A non-zero exit is reported in the result, not raised.
        """
        ...

    async def close(self) -> None:
        ...


@runtime_checkable
class Transport(Protocol):
    """Factory for channels: (address, credential handle) -> Channel."""

    async def connect(self, address: str, credential_ref: str) -> Channel:
        """Return a connected channel or raise ``TargetConnectionError``."""
        ...


# ---------------------------------------------------------------------------
# Subprocess helper
# ---------------------------------------------------------------------------


async def run_subprocess(
    argv: Sequence[str], *, timeout: float | None = None
) -> CommandResult:
    """Run a local process, capturing output.  Timeout kills the process."""
    proc = await asyncio.create_subprocess_exec(
        *argv,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise OperationError(
            f"Command timed out after {timeout}s: {shlex.join(argv)}"
        ) from None
    return CommandResult(
        argv=list(argv),
        exit_code=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )


# ---------------------------------------------------------------------------
# Local backend
# ---------------------------------------------------------------------------


class LocalChannel:
    """Runs commands directly on the controller host."""

    def __init__(self, default_timeout: float | None = None) -> None:
        self._default_timeout = default_timeout

    async def run(
        self, argv: Sequence[str], *, timeout: float | None = None
    ) -> CommandResult:
        try:
            return await run_subprocess(argv, timeout=timeout or self._default_timeout)
        except FileNotFoundError as exc:
            raise OperationError(f"Executable not found: {argv[0]}") from exc

    async def close(self) -> None:
        return None


class LocalTransport:
    """Transport whose channels run on the controller host.

    The address and credential are ignored.
    """

    def __init__(self, default_timeout: float | None = None) -> None:
        self._default_timeout = default_timeout

    async def connect(self, address: str, credential_ref: str) -> Channel:
        return LocalChannel(self._default_timeout)


# ---------------------------------------------------------------------------
# SSH backend
# ---------------------------------------------------------------------------


class CredentialResolver:
    """Maps opaque credential handles to key files in one directory.

    Handles are plain file names; anything that would escape the
    directory is rejected.
    """

    def __init__(self, credentials_dir: Path) -> None:
        self._dir = Path(credentials_dir)

    def resolve(self, credential_ref: str) -> Path | None:
        """Return the key path for a handle, or None for agent/default auth."""
        if not credential_ref:
            return None
        if Path(credential_ref).name != credential_ref or credential_ref in {".", ".."}:
            raise TargetConnectionError(f"Invalid credential handle: {credential_ref!r}")
        path = self._dir / credential_ref
        if not path.is_file():
            raise TargetConnectionError(f"Credential not found for handle {credential_ref!r}")
        return path


class SshChannel:
    """A channel that wraps every command in an ``ssh`` invocation."""

    def __init__(
        self,
        address: str,
        ssh_argv: list[str],
        *,
        default_timeout: float | None = None,
    ) -> None:
        self._address = address
        self._ssh_argv = ssh_argv
        self._default_timeout = default_timeout

    async def run(
        self, argv: Sequence[str], *, timeout: float | None = None
    ) -> CommandResult:
        full = [*self._ssh_argv, self._address, "--", shlex.join(argv)]
        try:
            result = await run_subprocess(full, timeout=timeout or self._default_timeout)
        except FileNotFoundError as exc:
            raise TargetConnectionError(f"ssh client not found: {self._ssh_argv[0]}") from exc
        if result.exit_code == SSH_CONNECTION_FAILURE:
            raise TargetConnectionError(
                f"ssh to {self._address} failed: {result.stderr.strip() or 'exit 255'}"
            )
        return result.model_copy(update={"argv": list(argv)})

    async def close(self) -> None:
        return None


class SshTransport:
    """OpenSSH-backed transport.

    Parameters
    ----------
    credentials_dir:
        Directory holding private key files named by credential handle.
    user:
        Login user applied when an address has no ``user@`` part.
    connect_timeout:
        Seconds passed to ssh's ``ConnectTimeout`` option.
    command_timeout:
        Default per-command timeout in seconds.
    ssh_binary:
        Path or name of the ssh client.
    """

    def __init__(
        self,
        credentials_dir: Path,
        *,
        user: str = "",
        connect_timeout: int = 10,
        command_timeout: float | None = 300.0,
        ssh_binary: str = "ssh",
    ) -> None:
        self._credentials = CredentialResolver(credentials_dir)
        self._user = user
        self._connect_timeout = connect_timeout
        self._command_timeout = command_timeout
        self._ssh_binary = ssh_binary

    def ssh_argv(self, credential_ref: str) -> list[str]:
        argv = [
            self._ssh_binary,
            "-o", "BatchMode=yes",
            "-o", f"ConnectTimeout={self._connect_timeout}",
            "-o", "StrictHostKeyChecking=accept-new",
        ]
        key = self._credentials.resolve(credential_ref)
        if key is not None:
            argv += ["-i", str(key), "-o", "IdentitiesOnly=yes"]
        return argv

    def qualify(self, address: str) -> str:
        if self._user and "@" not in address:
            return f"{self._user}@{address}"
        return address

    async def connect(self, address: str, credential_ref: str) -> Channel:
        channel = SshChannel(
            self.qualify(address),
            self.ssh_argv(credential_ref),
            default_timeout=self._command_timeout,
        )
        # Probe: raises TargetConnectionError on unreachable host or auth rejection.
        await channel.run(["true"], timeout=float(self._connect_timeout) + 5.0)
        logger.debug("Connected to %s", address)
        return channel
