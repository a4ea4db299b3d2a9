"""Deployment controller — the central coordinator.

The DeployController wires together the StateStore, RolloutLedger,
TargetRegistry, ArtifactCatalog, PlanMachine, ArtifactBuilder,
RemoteExecutor, HealthVerifier, RolloutScheduler and EventIntake from one
settings object.  Collaborators (transport, build backend, readiness
probe) can be injected; by default it uses SSH, the local Docker CLI and
HTTP probes.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone

from shipyard.config import ShipyardSettings
from shipyard.core.artifact_builder import ArtifactBuilder, BuildBackend, DockerBuildBackend
from shipyard.core.artifact_catalog import ArtifactCatalog
from shipyard.core.health import HealthVerifier, HttpProbe, ReadinessProbe
from shipyard.core.intake import EventIntake
from shipyard.core.leases import PlanOwnership, TargetLeases, new_owner_id
from shipyard.core.plan_machine import PlanMachine
from shipyard.core.rollout_ledger import RolloutLedger
from shipyard.core.scheduler import OperationsFactory, RolloutScheduler
from shipyard.core.state_store import StateStore
from shipyard.core.target_registry import TargetRegistry
from shipyard.models.events import IntakeReceipt, PushEvent
from shipyard.models.revisions import Artifact, BuildConfig
from shipyard.models.rollout import (
    FailureKind,
    PlanState,
    RolloutMode,
    RolloutPlan,
    RolloutPolicy,
    StepState,
    SupersedeMode,
)
from shipyard.models.targets import TargetStatus
from shipyard.remote.executor import ExecutionOutcome, RemoteExecutor, RetryPolicy
from shipyard.remote.operations import deploy_operations, drain_operations
from shipyard.remote.transport import LocalTransport, SshTransport, Transport

logger = logging.getLogger(__name__)

RESTART_REASON = "controller restarted while plan was active"


class DeployController:
    """Wires every subsystem from one settings object.

    Parameters
    ----------
    settings:
        Controller settings. Uses environment-driven defaults if omitted.
    transport:
        Channel factory for targets. Defaults to ``SshTransport``.
    build_backend:
        Builds images. Defaults to ``DockerBuildBackend`` on the configured
        build host, pushing to the configured registry when one is set.
    probe:
        Readiness signal. Defaults to ``HttpProbe``.
    sleep, clock:
        Awaitable used for retry backoff and health polling waits, and the
        monotonic clock the health deadline is measured with.
    operations_factory:
        Operation list per (artifact, target).
    """

    def __init__(
        self,
        settings: ShipyardSettings | None = None,
        *,
        transport: Transport | None = None,
        build_backend: BuildBackend | None = None,
        probe: ReadinessProbe | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        operations_factory: OperationsFactory = deploy_operations,
    ) -> None:
        self.settings = settings or ShipyardSettings()
        s = self.settings

        # Persistence
        self.store = StateStore(s.state_path)
        self.ledger = RolloutLedger(s.ledger_path)
        self.registry = TargetRegistry(self.store)
        self.catalog = ArtifactCatalog(self.store)
        self.machine = PlanMachine(self.store, self.ledger)
        self.leases = TargetLeases()
        self.owners = PlanOwnership(self.store, new_owner_id(), stale_after=s.owner_stale_seconds)

        # Collaborators
        self.transport = transport or SshTransport(
            s.credentials_dir,
            user=s.ssh_user,
            connect_timeout=s.ssh_connect_timeout,
            command_timeout=s.command_timeout,
        )
        self.builder = ArtifactBuilder(self.catalog, build_backend or self._default_build_backend())
        self.executor = RemoteExecutor(
            self.transport,
            retry=RetryPolicy(
                max_attempts=s.max_attempts,
                base_delay=s.backoff_base_seconds,
                max_delay=s.backoff_max_seconds,
            ),
            sleep=sleep,
        )
        self.verifier = HealthVerifier(
            probe or HttpProbe(timeout=s.probe_timeout_seconds),
            interval=s.health_interval_seconds,
            deadline=s.health_deadline_seconds,
            probe_timeout=s.probe_timeout_seconds,
            sleep=sleep,
            clock=clock,
        )

        # Control
        self.scheduler = RolloutScheduler(
            self.registry,
            self.catalog,
            self.machine,
            self.executor,
            self.verifier,
            leases=self.leases,
            owners=self.owners,
            heartbeat_seconds=s.heartbeat_seconds,
            operations_factory=operations_factory,
        )
        self.intake = EventIntake(
            self.builder,
            self.scheduler,
            self.ledger,
            build_config=self.build_config(),
            policy=self.default_policy(),
            supersede=SupersedeMode(s.supersede),
        )

    # ------------------------------------------------------------------
    # Settings-derived defaults
    # ------------------------------------------------------------------

    def build_config(self) -> BuildConfig:
        s = self.settings
        return BuildConfig(
            image_name=s.image_name,
            dockerfile=s.dockerfile,
            container_name=s.container_name,
            host_port=s.host_port,
            container_port=s.container_port,
        )

    def _default_build_backend(self) -> DockerBuildBackend:
        s = self.settings
        local = s.build_host in ("", "localhost")
        if not s.registry and not isinstance(self.transport, LocalTransport):
            logger.warning(
                "No registry configured: targets can only run images already in their "
                "local store (set SHIPYARD_REGISTRY for remote hosts)"
            )
        return DockerBuildBackend(
            LocalTransport(default_timeout=s.command_timeout) if local else self.transport,
            build_host=s.build_host or "localhost",
            credential_ref=s.build_credential_ref,
            registry=s.registry,
        )

    def default_policy(self) -> RolloutPolicy:
        s = self.settings
        return RolloutPolicy(
            mode=RolloutMode(s.rollout_mode),
            max_parallel=s.max_parallel,
            auto_rollback=s.auto_rollback,
            watchdog_seconds=s.watchdog_seconds,
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def submit(self, event: PushEvent) -> IntakeReceipt:
        """Intake endpoint: accept a (revision, source tree) push."""
        return await self.intake.submit(event)

    async def deploy(self, event: PushEvent) -> RolloutPlan | None:
        """Submit *event* and wait for intake to settle.

        Returns the revision's latest plan, or None if no plan was created
        (duplicate, build failure, superseded before rollout).
        """
        await self.intake.submit(event)
        await self.intake.wait_idle()
        plan_ids = self.intake.plans_for(event.revision_id)
        return self.machine.get(plan_ids[-1]) if plan_ids else None

    async def cancel(self, plan_id: str, reason: str = "cancelled by operator") -> RolloutPlan:
        """Request cancellation of a plan.

        A plan that has not started and that no live controller owns is
        aborted immediately.  A running plan stops before its next step,
        whichever controller process is driving it; in-flight steps finish.
        """
        if self.scheduler.cancel(plan_id, reason=reason):
            plan = self.machine.get(plan_id)
            if plan.state == PlanState.PENDING and self.owners.live_owner(plan_id) is None:
                return await self.scheduler.run(plan_id)
        return self.machine.get(plan_id)

    def recover(self) -> list[RolloutPlan]:
        """Mark plans left non-terminal by a controller that is gone.

        Plans whose owner is still heartbeating (another ``shipyard``
        process, or this one) are left alone.  For the rest, in-flight steps
        fail with reason ``restart``, pending steps are skipped, and every
        target that was mid-step becomes ``unknown``.
        """
        recovered: list[RolloutPlan] = []
        for plan in self.machine.active():
            owner = self.owners.live_owner(plan.plan_id)
            if owner is not None:
                logger.info("Plan %s is driven by live controller %s; not recovering",
                            plan.plan_id, owner)
                continue
            for step in plan.steps:
                if step.state == StepState.PENDING:
                    self.machine.transition_step(
                        plan.plan_id, step.step_id, StepState.SKIPPED, reason=RESTART_REASON
                    )
                elif step.state in (StepState.APPLYING, StepState.VERIFYING):
                    self.machine.transition_step(
                        plan.plan_id, step.step_id, StepState.FAILED,
                        failure_kind=FailureKind.RESTART, reason=RESTART_REASON,
                    )
                    if self.registry.find(step.target_name) is not None:
                        self.registry.set_status(step.target_name, TargetStatus.UNKNOWN)
            recovered.append(self.machine.transition_plan(
                plan.plan_id, PlanState.ABORTED_ON_RESTART, reason=RESTART_REASON
            ))
            self.owners.forget(plan.plan_id)
            self.machine.clear_cancel(plan.plan_id)
        if recovered:
            logger.warning("Marked %d interrupted plan(s) aborted_on_restart", len(recovered))
        return recovered

    def prune_artifacts(self, *, everything_unreferenced: bool = False) -> list[Artifact]:
        """Garbage-collect artifact records no target is running.

        By default only artifacts older than the retention window go;
        ``everything_unreferenced`` drops every unreferenced artifact.
        """
        older_than = None
        if not everything_unreferenced:
            older_than = datetime.now(timezone.utc) - timedelta(
                days=self.settings.artifact_retention_days
            )
        return self.catalog.prune(keep=self.registry.referenced_artifacts(),
                                  older_than=older_than)

    async def drain(self, target_name: str) -> ExecutionOutcome:
        """Take a target out of rotation and stop its service container.

        The lease is held for the duration so no plan deploys mid-drain.
        """
        target = self.registry.set_status(target_name, TargetStatus.DRAINING)
        with self.leases.hold(target_name, f"drain:{target_name}"):
            return await self.executor.execute(
                target, drain_operations(self.settings.container_name)
            )
