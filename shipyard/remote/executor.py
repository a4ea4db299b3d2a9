"""Remote Executor — runs an ordered list of idempotent operations on a target.

Every operation is safe to retry, so execution is at-least-once: a failed
apply is retried with exponential backoff up to ``max_attempts`` before
the failure escalates to the rollout step.  Connection failures drop the
channel and reconnect on the next attempt.  The outcome distinguishes the
two failure classes so the scheduler can mark an unreachable host
``unknown`` while treating a failing command as an application failure.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence

from pydantic import BaseModel, ConfigDict, Field

from shipyard.core.errors import OperationError, TargetConnectionError
from shipyard.models.rollout import FailureKind
from shipyard.models.targets import Target
from shipyard.remote.operations import Operation
from shipyard.remote.runtime import ContainerRuntime, DockerCli
from shipyard.remote.transport import Channel, Transport

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]
RuntimeFactory = Callable[[Channel], ContainerRuntime]


class RetryPolicy(BaseModel):
    """Bounded exponential backoff: ``base * 2**(attempt-1)``, capped."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)

    def delay(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


class ExecutionOutcome(BaseModel):
    """What happened when an operation list ran against one target."""

    model_config = ConfigDict(frozen=True)

    target_name: str
    success: bool
    failure_kind: FailureKind | None = None
    attempts: int = 0  # retries beyond the first try of each operation
    applied: list[str] = []
    skipped: list[str] = []
    error: str = ""


class RemoteExecutor:
    """Executes operation lists against targets over a transport.

    Parameters
    ----------
    transport:
        Supplies authenticated channels to targets.
    runtime_factory:
        Builds a container runtime on top of a channel.
    retry:
        Retry budget shared by connection and operation failures,
        counted per operation.
    sleep:
        Awaitable used for backoff waits (injectable for tests).
    """

    def __init__(
        self,
        transport: Transport,
        *,
        runtime_factory: RuntimeFactory = DockerCli,
        retry: RetryPolicy | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._transport = transport
        self._runtime_factory = runtime_factory
        self.retry = retry or RetryPolicy()
        self._sleep = sleep

    async def execute(
        self, target: Target, operations: Sequence[Operation]
    ) -> ExecutionOutcome:
        """Run *operations* in order against *target*.

        Operations whose check already holds are skipped.  Returns a
        failed outcome (never raises) when an operation exhausts its
        retry budget.
        """
        applied: list[str] = []
        skipped: list[str] = []
        retries = 0
        session: tuple[Channel, ContainerRuntime] | None = None

        try:
            for op in operations:
                attempt = 0
                while True:
                    attempt += 1
                    failure: FailureKind | None = None
                    error = ""
                    try:
                        if session is None:
                            session = await self._open(target)
                        _, runtime = session
                        if await op.check(runtime):
                            skipped.append(op.name)
                        else:
                            await op.apply(runtime)
                            applied.append(op.name)
                    except TargetConnectionError as exc:
                        failure, error = FailureKind.CONNECTION, str(exc)
                        session = await self._discard(session)
                    except OperationError as exc:
                        failure, error = FailureKind.OPERATION, str(exc)

                    if failure is None:
                        break
                    if attempt >= self.retry.max_attempts:
                        logger.error(
                            "%s on %s failed after %d attempt(s): %s",
                            op.name, target.name, attempt, error,
                        )
                        return ExecutionOutcome(
                            target_name=target.name,
                            success=False,
                            failure_kind=failure,
                            attempts=retries,
                            applied=applied,
                            skipped=skipped,
                            error=f"{op.name}: {error}",
                        )
                    delay = self.retry.delay(attempt)
                    logger.warning(
                        "%s on %s failed (%s, attempt %d/%d), retrying in %.1fs: %s",
                        op.name, target.name, failure.value, attempt,
                        self.retry.max_attempts, delay, error,
                    )
                    retries += 1
                    await self._sleep(delay)
        finally:
            await self._discard(session)

        logger.info(
            "Executed %d operation(s) on %s: %d applied, %d already converged",
            len(operations), target.name, len(applied), len(skipped),
        )
        return ExecutionOutcome(
            target_name=target.name,
            success=True,
            attempts=retries,
            applied=applied,
            skipped=skipped,
        )

    async def _open(self, target: Target) -> tuple[Channel, ContainerRuntime]:
        channel = await self._transport.connect(target.address, target.credential_ref)
        return channel, self._runtime_factory(channel)

    @staticmethod
    async def _discard(session: tuple[Channel, ContainerRuntime] | None) -> None:
        if session is not None:
            channel, _ = session
            try:
                await channel.close()
            except TargetConnectionError:
                logger.debug("Channel close failed; already disconnected")
        return None
