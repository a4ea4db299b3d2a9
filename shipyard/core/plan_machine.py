"""Deterministic rollout state machine.

Enforces:
- Valid plan and step transitions only (transition tables)
- Every transition persisted to the state store
- Every transition recorded in the rollout ledger

Plans are frozen models and the state store is the only copy: every
transition re-reads the stored plan, so a plan another controller has
already closed cannot be reopened from a stale in-memory version.

Cancellation requests are stored beside the plans so that a controller
in another process can ask the one driving a plan to stop.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from shipyard.core.errors import InvalidTransitionError
from shipyard.core.rollout_ledger import RolloutLedger
from shipyard.core.state_store import StateStore
from shipyard.models.ledger import LedgerEntry
from shipyard.models.rollout import (
    TERMINAL_PLAN_STATES,
    VALID_PLAN_TRANSITIONS,
    VALID_STEP_TRANSITIONS,
    FailureKind,
    PlanState,
    RolloutPlan,
    RolloutStep,
    StepState,
)

logger = logging.getLogger(__name__)

_NAMESPACE = "plans"
_CANCEL_REQUESTS = "cancel_requests"


class PlanMachine:
    """Validated, journaled plan and step transitions.

    Parameters
    ----------
    store:
        State store holding the current view of every plan.
    ledger:
        The rollout ledger to record transitions into.
    """

    def __init__(self, store: StateStore, ledger: RolloutLedger) -> None:
        self._store = store
        self._ledger = ledger

    # ------------------------------------------------------------------
    # Plan repository
    # ------------------------------------------------------------------

    def create(self, plan: RolloutPlan) -> RolloutPlan:
        """Persist a new PENDING plan with one PENDING deploy step per target."""
        steps = [
            RolloutStep(
                plan_id=plan.plan_id,
                target_name=name,
                artifact_id=plan.artifact_id,
            )
            for name in plan.target_names
        ]
        plan = plan.model_copy(update={"steps": steps})
        self._save(plan)
        self._record(plan.plan_id, "plan", f"->{plan.state.value}",
                     artifact_id=plan.artifact_id,
                     reason=f"revision {plan.revision_id}")
        return plan

    def get(self, plan_id: str) -> RolloutPlan:
        body = self._store.get(_NAMESPACE, plan_id)
        if body is None:
            raise KeyError(f"Plan not found: {plan_id}")
        return RolloutPlan.model_validate(body)

    def list(self) -> list[RolloutPlan]:
        return [RolloutPlan.model_validate(b) for b in self._store.list(_NAMESPACE)]

    def active(self) -> list[RolloutPlan]:
        return [p for p in self.list() if p.state not in TERMINAL_PLAN_STATES]

    def _save(self, plan: RolloutPlan) -> None:
        self._store.put(_NAMESPACE, plan.plan_id, plan.model_dump(mode="json"))

    # ------------------------------------------------------------------
    # Cancellation requests
    # ------------------------------------------------------------------

    def request_cancel(self, plan_id: str, reason: str) -> str:
        """Record a cancellation request; the first reason recorded wins."""
        existing = self.cancel_reason(plan_id)
        if existing is not None:
            return existing
        self._store.put(_CANCEL_REQUESTS, plan_id, {
            "reason": reason,
            "requested_at": datetime.now(timezone.utc).isoformat(),
        })
        return reason

    def cancel_reason(self, plan_id: str) -> str | None:
        body = self._store.get(_CANCEL_REQUESTS, plan_id)
        return body["reason"] if body else None

    def clear_cancel(self, plan_id: str) -> None:
        self._store.delete(_CANCEL_REQUESTS, plan_id)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def transition_plan(
        self, plan_id: str, target_state: PlanState, *, reason: str = ""
    ) -> RolloutPlan:
        """Move a plan to *target_state*, recording it in the ledger."""
        plan = self.get(plan_id)
        allowed = VALID_PLAN_TRANSITIONS.get(plan.state, set())
        if target_state not in allowed:
            raise InvalidTransitionError(
                f"Cannot transition plan {plan_id} from {plan.state.value} to "
                f"{target_state.value}. Allowed: {sorted(s.value for s in allowed)}"
            )

        updated = plan.model_copy(
            update={
                "state": target_state,
                "reason": reason or plan.reason,
                "updated_at": datetime.now(timezone.utc),
            }
        )
        self._save(updated)
        self._record(plan_id, "plan", f"{plan.state.value}->{target_state.value}",
                     artifact_id=plan.artifact_id, reason=reason)
        logger.info("Plan %s: %s -> %s %s", plan_id, plan.state.value,
                    target_state.value, f"({reason})" if reason else "")
        return updated

    def transition_step(
        self,
        plan_id: str,
        step_id: str,
        target_state: StepState,
        *,
        reason: str = "",
        failure_kind: FailureKind | None = None,
        attempts: int | None = None,
    ) -> RolloutStep:
        """Move a step to *target_state*, recording it in the ledger."""
        plan = self._open_plan(plan_id)
        step = plan.get_step(step_id)
        allowed = VALID_STEP_TRANSITIONS.get(step.state, set())
        if target_state not in allowed:
            raise InvalidTransitionError(
                f"Cannot transition step {step_id} ({step.target_name}) from "
                f"{step.state.value} to {target_state.value}. "
                f"Allowed: {sorted(s.value for s in allowed)}"
            )

        now = datetime.now(timezone.utc)
        update: dict[str, Any] = {"state": target_state}
        if reason:
            update["reason"] = reason
        if failure_kind is not None:
            update["failure_kind"] = failure_kind
        if attempts is not None:
            update["attempts"] = attempts
        if target_state == StepState.APPLYING:
            update["started_at"] = now
        if target_state in (StepState.COMMITTED, StepState.FAILED, StepState.SKIPPED):
            update["finished_at"] = now

        updated_step = step.model_copy(update=update)
        self._replace_step(plan, updated_step)
        self._record(plan_id, step_id, f"{step.state.value}->{target_state.value}",
                     target_name=step.target_name, artifact_id=step.artifact_id,
                     reason=reason)
        logger.debug("Step %s (%s %s): %s -> %s", step_id, step.kind.value,
                     step.target_name, step.state.value, target_state.value)
        return updated_step

    def add_step(self, plan_id: str, step: RolloutStep) -> RolloutStep:
        """Append a step (e.g. a compensating rollback) to a running plan."""
        plan = self._open_plan(plan_id)
        self._save(plan.model_copy(update={
            "steps": [*plan.steps, step],
            "updated_at": datetime.now(timezone.utc),
        }))
        self._record(plan_id, step.step_id, f"->{step.state.value}",
                     target_name=step.target_name, artifact_id=step.artifact_id,
                     reason=f"{step.kind.value} step added")
        return step

    def _open_plan(self, plan_id: str) -> RolloutPlan:
        # Steps of a closed plan are frozen, whichever process closed it.
        plan = self.get(plan_id)
        if plan.is_terminal:
            raise InvalidTransitionError(
                f"Plan {plan_id} is already {plan.state.value}; its steps cannot change"
            )
        return plan

    def _replace_step(self, plan: RolloutPlan, step: RolloutStep) -> None:
        steps = [step if s.step_id == step.step_id else s for s in plan.steps]
        self._save(plan.model_copy(update={
            "steps": steps,
            "updated_at": datetime.now(timezone.utc),
        }))

    def _record(
        self,
        plan_id: str,
        subject: str,
        transition: str,
        *,
        target_name: str = "",
        artifact_id: str = "",
        reason: str = "",
    ) -> LedgerEntry:
        return self._ledger.append(LedgerEntry(
            plan_id=plan_id,
            subject=subject,
            transition=transition,
            target_name=target_name,
            artifact_id=artifact_id,
            reason=reason,
        ))
