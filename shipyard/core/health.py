"""Health Verifier — readiness polling after an artifact is applied.

Polls at a fixed interval until the first successful probe or until the
next poll would fall past the deadline.  Individual misses, including
probes that exceed ``probe_timeout``, are tolerated inside the window.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Protocol, runtime_checkable

import httpx
from pydantic import BaseModel, ConfigDict

from shipyard.core.errors import HealthTimeoutError
from shipyard.models.targets import Target

logger = logging.getLogger(__name__)


@runtime_checkable
class ReadinessProbe(Protocol):
    async def probe(self, target: Target) -> bool:
        """Return True if the target is serving."""
        ...


class HttpProbe:
    """GET the target's ``health_url``; any 2xx response means ready.

    Targets without a ``health_url`` are considered ready.
    """

    def __init__(self, timeout: float = 5.0, client: httpx.AsyncClient | None = None) -> None:
        self._timeout = timeout
        self._client = client

    async def probe(self, target: Target) -> bool:
        if not target.health_url:
            return True
        try:
            if self._client is not None:
                response = await self._client.get(target.health_url, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=httpx.Timeout(self._timeout)) as client:
                    response = await client.get(target.health_url)
        except httpx.HTTPError as exc:
            logger.debug("Probe of %s failed: %s", target.health_url, exc)
            return False
        return response.is_success


class HealthVerdict(BaseModel):
    model_config = ConfigDict(frozen=True)

    target_name: str
    healthy: bool
    attempts: int
    elapsed_seconds: float


class HealthVerifier:
    """Polls a readiness probe until success or deadline.

    Parameters
    ----------
    probe:
        The readiness signal.
    interval:
        Seconds between polls.
    deadline:
        Seconds after the first poll beyond which no further poll starts.
    probe_timeout:
        Upper bound on a single probe; a timeout counts as a miss.
    sleep, clock:
        Injectable for tests.
    """

    def __init__(
        self,
        probe: ReadinessProbe,
        *,
        interval: float = 15.0,
        deadline: float = 60.0,
        probe_timeout: float = 5.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._probe = probe
        self.interval = interval
        self.deadline = deadline
        self._probe_timeout = probe_timeout
        self._sleep = sleep
        self._clock = clock

    async def verify(self, target: Target) -> HealthVerdict:
        start = self._clock()
        attempts = 0
        while True:
            attempts += 1
            ready = await self._probe_once(target)
            elapsed = self._clock() - start
            if ready:
                logger.info("%s ready after %d probe(s)", target.name, attempts)
                return HealthVerdict(
                    target_name=target.name, healthy=True,
                    attempts=attempts, elapsed_seconds=elapsed,
                )
            if elapsed + self.interval > self.deadline:
                logger.warning(
                    "%s not ready after %d probe(s) in %.0fs", target.name, attempts, elapsed
                )
                return HealthVerdict(
                    target_name=target.name, healthy=False,
                    attempts=attempts, elapsed_seconds=elapsed,
                )
            await self._sleep(self.interval)

    async def require_healthy(self, target: Target) -> HealthVerdict:
        """Like ``verify`` but raises ``HealthTimeoutError`` when unhealthy."""
        verdict = await self.verify(target)
        if not verdict.healthy:
            raise HealthTimeoutError(
                f"{target.name}: no successful readiness probe within "
                f"{self.deadline:.0f}s ({verdict.attempts} attempts)"
            )
        return verdict

    async def _probe_once(self, target: Target) -> bool:
        try:
            return await asyncio.wait_for(
                self._probe.probe(target), timeout=self._probe_timeout
            )
        except asyncio.TimeoutError:
            logger.debug("Probe of %s timed out after %.1fs", target.name, self._probe_timeout)
            return False
