"""Rollout Scheduler — drives one artifact across a plan's targets.

One coordinating task per plan fans out to per-target steps, bounded by
the policy's ``max_parallel``.  Each step holds the target's lease for its
whole apply → verify (→ rollback) sequence, so no two steps touch a host
at once even across plans.

Plan outcome rules
------------------
- serial: the first failed deploy step stops the plan; later steps are
  skipped.
- parallel: failures are recorded and independent targets continue.
- no failures → ``succeeded``; parallel with some commits →
  ``partially_failed``; every failed target restored by a committed
  rollback → ``rolled_back``; otherwise ``failed``.
- cancellation lets in-flight steps finish, skips the rest → ``aborted``.
- no transition for ``watchdog_seconds`` → in-flight steps fail, plan
  ``failed`` with reason ``Timeout``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from shipyard.core.artifact_catalog import ArtifactCatalog
from shipyard.core.errors import ConflictError, HealthTimeoutError, UnknownTargetError
from shipyard.core.health import HealthVerifier
from shipyard.core.leases import PlanOwnership, TargetLeases
from shipyard.core.plan_machine import PlanMachine
from shipyard.core.target_registry import TargetRegistry
from shipyard.models.revisions import Artifact
from shipyard.models.rollout import (
    FailureKind,
    PlanState,
    RolloutMode,
    RolloutPlan,
    RolloutPolicy,
    RolloutStep,
    StepKind,
    StepState,
)
from shipyard.models.targets import Target, TargetStatus
from shipyard.remote.executor import RemoteExecutor
from shipyard.remote.operations import Operation, deploy_operations

logger = logging.getLogger(__name__)

OperationsFactory = Callable[[Artifact, Target], list[Operation]]

TIMEOUT_REASON = "Timeout"


def order_targets(targets: list[Target]) -> list[Target]:
    """Weighted targets first (lower weight first), then registry order."""
    return sorted(
        targets,
        key=lambda t: (t.weight is None, t.weight if t.weight is not None else 0, t.position),
    )


class RolloutScheduler:
    """Creates and runs rollout plans.

    Parameters
    ----------
    registry:
        Target registry; the only place target state is mutated.
    catalog:
        Artifact catalog, used to resolve rollback artifacts.
    machine:
        Plan state machine (persistence + ledger).
    executor:
        Applies operation lists to targets.
    verifier:
        Confirms readiness after apply.
    leases:
        Per-target exclusive lease table, shared across plans.
    owners:
        Cross-process plan ownership; a running plan is claimed and its
        heartbeat refreshed every *heartbeat_seconds*.
    operations_factory:
        Produces the operation list for (artifact, target).
    """

    def __init__(
        self,
        registry: TargetRegistry,
        catalog: ArtifactCatalog,
        machine: PlanMachine,
        executor: RemoteExecutor,
        verifier: HealthVerifier,
        *,
        leases: TargetLeases | None = None,
        owners: PlanOwnership | None = None,
        heartbeat_seconds: float = 10.0,
        operations_factory: OperationsFactory = deploy_operations,
    ) -> None:
        self._registry = registry
        self._catalog = catalog
        self._machine = machine
        self._executor = executor
        self._verifier = verifier
        self._leases = leases or TargetLeases()
        self._owners = owners
        self._heartbeat_seconds = heartbeat_seconds
        self._operations_factory = operations_factory

        self._timed_out: set[str] = set()
        self._last_progress: dict[str, float] = {}

    # ------------------------------------------------------------------
    # Plan creation
    # ------------------------------------------------------------------

    def plan(
        self,
        revision_id: str,
        artifact: Artifact,
        *,
        target_names: list[str] | None = None,
        capacity_tag: str | None = None,
        policy: RolloutPolicy | None = None,
    ) -> RolloutPlan:
        """Create a PENDING plan deploying *artifact*.

        Without explicit names every registered target (optionally
        filtered by capacity tag) that is not draining is included.
        """
        if target_names is None:
            targets = [
                t for t in self._registry.list(capacity_tag)
                if t.status != TargetStatus.DRAINING
            ]
        else:
            targets = [self._registry.get(name) for name in target_names]
        if not targets:
            raise ValueError("A rollout plan needs at least one target")

        ordered = order_targets(targets)
        plan = self._machine.create(RolloutPlan(
            revision_id=revision_id,
            artifact_id=artifact.artifact_id,
            target_names=[t.name for t in ordered],
            policy=policy or RolloutPolicy(),
        ))
        logger.info(
            "Created %s for revision %s: %s (%s)",
            plan.plan_id, revision_id, ", ".join(plan.target_names), plan.policy.mode.value,
        )
        return plan

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def cancel(self, plan_id: str, reason: str = "cancelled") -> bool:
        """Request cancellation.  Returns False if the plan already finished.

        The request is persisted, so it reaches the controller driving the
        plan even when that is another process.  In-flight steps finish; no
        new step starts afterwards.
        """
        plan = self._machine.get(plan_id)
        if plan.is_terminal:
            return False
        self._machine.request_cancel(plan_id, reason)
        logger.info("Cancellation requested for %s: %s", plan_id, reason)
        return True

    def is_cancelled(self, plan_id: str) -> bool:
        return self._machine.cancel_reason(plan_id) is not None

    async def run(self, plan_id: str) -> RolloutPlan:
        """Drive a plan to a terminal state and return it.

        A plan another live controller is driving is returned untouched.
        """
        plan = self._machine.get(plan_id)
        if plan.is_terminal:
            return plan
        if self._owners is not None:
            try:
                self._owners.claim(plan_id)
            except ConflictError as exc:
                logger.warning("%s", exc)
                return plan

        heartbeat = asyncio.ensure_future(self._heartbeat(plan_id))
        try:
            if plan.state == PlanState.PENDING:
                if self.is_cancelled(plan_id):
                    return self._finalize(plan_id)
                self._machine.transition_plan(plan_id, PlanState.IN_PROGRESS)
            self._touch(plan_id)

            coordinator = asyncio.ensure_future(self._coordinate(plan_id))
            await self._watch(plan_id, coordinator)
            if not coordinator.cancelled() and coordinator.exception() is not None:
                exc = coordinator.exception()
                if self._machine.get(plan_id).is_terminal:
                    logger.warning("Plan %s was closed by another controller: %s", plan_id, exc)
                    return self._machine.get(plan_id)
                logger.error("Plan %s coordinator crashed", plan_id, exc_info=exc)
                return self._finalize(plan_id, crash=f"internal error: {exc}")
            return self._finalize(plan_id)
        finally:
            heartbeat.cancel()
            await asyncio.wait({heartbeat})
            if self._owners is not None:
                self._owners.release(plan_id)
            self._machine.clear_cancel(plan_id)
            self._timed_out.discard(plan_id)
            self._last_progress.pop(plan_id, None)

    async def _heartbeat(self, plan_id: str) -> None:
        if self._owners is None:
            return
        while True:
            await asyncio.sleep(self._heartbeat_seconds)
            self._owners.beat(plan_id)

    async def _watch(self, plan_id: str, coordinator: asyncio.Future[None]) -> None:
        """Wait for the coordinator, stopping it if progress stalls."""
        loop = asyncio.get_running_loop()
        watchdog = self._machine.get(plan_id).policy.watchdog_seconds
        while not coordinator.done():
            idle = loop.time() - self._last_progress[plan_id]
            remaining = watchdog - idle
            if remaining <= 0:
                logger.error("Plan %s made no progress for %.0fs; stopping", plan_id, watchdog)
                self._timed_out.add(plan_id)
                coordinator.cancel()
                await asyncio.wait({coordinator})
                return
            await asyncio.wait({coordinator}, timeout=remaining)

    async def _coordinate(self, plan_id: str) -> None:
        plan = self._machine.get(plan_id)
        pending = [s.step_id for s in plan.deploy_steps if s.state == StepState.PENDING]

        if plan.policy.mode == RolloutMode.SERIAL:
            for step_id in pending:
                if self.is_cancelled(plan_id):
                    return
                final = await self._run_step(plan_id, step_id)
                if final.state == StepState.FAILED:
                    return
            return

        slots = asyncio.Semaphore(plan.policy.max_parallel)

        async def worker(step_id: str) -> None:
            async with slots:
                if self.is_cancelled(plan_id):
                    return
                await self._run_step(plan_id, step_id)

        results = await asyncio.gather(
            *(worker(step_id) for step_id in pending), return_exceptions=True
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _run_step(self, plan_id: str, step_id: str) -> RolloutStep:
        """Run one deploy step (and its rollback, if any) under the target lease.

        Returns the deploy step's final state.
        """
        step = self._machine.get(plan_id).get_step(step_id)
        try:
            target = self._registry.get(step.target_name)
            artifact = self._catalog.get(step.artifact_id)
        except (UnknownTargetError, KeyError) as exc:
            return self._step(plan_id, step_id, StepState.FAILED,
                              failure_kind=FailureKind.INTERNAL, reason=str(exc))

        try:
            self._leases.acquire(target.name, plan_id)
        except ConflictError as exc:
            logger.warning("%s", exc)
            return self._step(plan_id, step_id, StepState.FAILED,
                              failure_kind=FailureKind.CONFLICT, reason=str(exc))

        try:
            final = await self._apply_and_verify(plan_id, step, target, artifact)
            if final.state == StepState.FAILED:
                await self._maybe_rollback(plan_id, final, target)
            return final
        finally:
            self._leases.release(target.name, plan_id)

    async def _apply_and_verify(
        self, plan_id: str, step: RolloutStep, target: Target, artifact: Artifact
    ) -> RolloutStep:
        step_id = step.step_id
        self._step(plan_id, step_id, StepState.APPLYING)

        try:
            outcome = await self._executor.execute(
                target, self._operations_factory(artifact, target)
            )
        except Exception as exc:
            logger.exception("Executor error on %s", target.name)
            return self._step(plan_id, step_id, StepState.FAILED,
                              failure_kind=FailureKind.INTERNAL, reason=str(exc))

        if not outcome.success:
            if outcome.failure_kind == FailureKind.CONNECTION:
                self._registry.set_status(target.name, TargetStatus.UNKNOWN)
            return self._step(plan_id, step_id, StepState.FAILED,
                              failure_kind=outcome.failure_kind, reason=outcome.error,
                              attempts=outcome.attempts)

        self._step(plan_id, step_id, StepState.VERIFYING, attempts=outcome.attempts)

        try:
            verdict = await self._verifier.require_healthy(target)
        except HealthTimeoutError as exc:
            self._registry.set_status(target.name, TargetStatus.UNHEALTHY)
            return self._step(plan_id, step_id, StepState.FAILED,
                              failure_kind=FailureKind.HEALTH_TIMEOUT, reason=str(exc))
        except Exception as exc:
            logger.exception("Health verification error on %s", target.name)
            return self._step(plan_id, step_id, StepState.FAILED,
                              failure_kind=FailureKind.INTERNAL, reason=str(exc))

        self._registry.commit_artifact(target.name, artifact.artifact_id)
        return self._step(plan_id, step_id, StepState.COMMITTED,
                          reason=f"healthy after {verdict.attempts} probe(s)")

    async def _maybe_rollback(
        self, plan_id: str, failed: RolloutStep, target: Target
    ) -> RolloutStep | None:
        """Reapply the target's last known-good artifact as a tracked step."""
        plan = self._machine.get(plan_id)
        if not plan.policy.auto_rollback or failed.kind != StepKind.DEPLOY:
            return None
        if failed.failure_kind in (FailureKind.CONNECTION, FailureKind.CONFLICT):
            return None
        prior_id = target.current_artifact
        if prior_id is None or prior_id == failed.artifact_id:
            return None
        prior = self._catalog.find(prior_id)
        if prior is None:
            logger.warning(
                "Cannot roll back %s: prior artifact %s no longer in catalog",
                target.name, prior_id,
            )
            return None

        logger.warning("Rolling back %s to %s", target.name, prior.image_ref)
        rollback = self._machine.add_step(plan_id, RolloutStep(
            plan_id=plan_id,
            target_name=target.name,
            artifact_id=prior.artifact_id,
            kind=StepKind.ROLLBACK,
        ))
        return await self._apply_and_verify(plan_id, rollback, target, prior)

    def _step(
        self,
        plan_id: str,
        step_id: str,
        state: StepState,
        *,
        reason: str = "",
        failure_kind: FailureKind | None = None,
        attempts: int | None = None,
    ) -> RolloutStep:
        self._touch(plan_id)
        return self._machine.transition_step(
            plan_id, step_id, state,
            reason=reason, failure_kind=failure_kind, attempts=attempts,
        )

    def _touch(self, plan_id: str) -> None:
        self._last_progress[plan_id] = asyncio.get_running_loop().time()

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    def _finalize(self, plan_id: str, *, crash: str | None = None) -> RolloutPlan:
        """Close out leftover steps and move the plan to its terminal state."""
        timed_out = plan_id in self._timed_out
        cancel_reason = self._machine.cancel_reason(plan_id)
        plan = self._machine.get(plan_id)
        if plan.is_terminal:
            logger.warning("Plan %s was closed by another controller (%s)", plan_id, plan.state.value)
            return plan

        if timed_out:
            skip_reason = TIMEOUT_REASON
        elif crash is not None:
            skip_reason = crash
        elif cancel_reason is not None:
            skip_reason = f"cancelled: {cancel_reason}"
        else:
            skip_reason = "earlier step failed"

        for step in plan.steps:
            if step.state == StepState.PENDING:
                self._machine.transition_step(plan_id, step.step_id, StepState.SKIPPED,
                                              reason=skip_reason)
            elif step.state in (StepState.APPLYING, StepState.VERIFYING):
                self._machine.transition_step(
                    plan_id, step.step_id, StepState.FAILED,
                    failure_kind=FailureKind.TIMEOUT if timed_out else FailureKind.INTERNAL,
                    reason=skip_reason,
                )
                self._registry.set_status(step.target_name, TargetStatus.UNKNOWN)

        plan = self._machine.get(plan_id)
        if plan.state == PlanState.PENDING:
            # Cancelled before it started.
            return self._machine.transition_plan(
                plan_id, PlanState.ABORTED, reason=cancel_reason or "cancelled"
            )

        state, reason = self._resolve_outcome(plan, timed_out, crash, cancel_reason)
        return self._machine.transition_plan(plan_id, state, reason=reason)

    @staticmethod
    def _resolve_outcome(
        plan: RolloutPlan,
        timed_out: bool,
        crash: str | None,
        cancel_reason: str | None,
    ) -> tuple[PlanState, str]:
        if timed_out:
            return PlanState.FAILED, TIMEOUT_REASON
        if crash is not None:
            return PlanState.FAILED, crash

        deploys = plan.deploy_steps
        committed = [s for s in deploys if s.state == StepState.COMMITTED]
        failed = [s for s in deploys if s.state == StepState.FAILED]
        skipped = [s for s in deploys if s.state == StepState.SKIPPED]

        if cancel_reason is not None and skipped:
            return PlanState.ABORTED, cancel_reason
        if not failed:
            return PlanState.SUCCEEDED, f"{len(committed)} target(s) committed"

        restored = {
            s.target_name for s in plan.rollback_steps if s.state == StepState.COMMITTED
        }
        first = failed[0]
        detail = f"{first.target_name}: {first.reason}"

        if plan.policy.mode == RolloutMode.PARALLEL and committed:
            return (
                PlanState.PARTIALLY_FAILED,
                f"{len(failed)} of {len(deploys)} target(s) failed; {detail}",
            )
        if all(s.target_name in restored for s in failed):
            return PlanState.ROLLED_BACK, f"rolled back after failure on {detail}"
        return PlanState.FAILED, detail
