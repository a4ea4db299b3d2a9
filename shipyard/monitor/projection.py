"""PlanProjection — read-only view over the state store and rollout ledger.

The monitor does not compute truth, it displays it.  Every call re-reads
persisted state; nothing is cached between snapshots.
"""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

from shipyard.core.errors import LedgerIntegrityError
from shipyard.core.plan_machine import PlanMachine
from shipyard.core.rollout_ledger import RolloutLedger
from shipyard.core.state_store import StateStore
from shipyard.core.target_registry import TargetRegistry
from shipyard.models.rollout import PlanState, RolloutPlan, RolloutStep, StepState
from shipyard.models.targets import Target


class PlanSnapshot(BaseModel):
    """A frozen, point-in-time view of one rollout plan."""

    model_config = ConfigDict(frozen=True)

    plan: RolloutPlan
    targets: dict[str, Target] = {}
    ledger_entries: int = 0
    chain_valid: bool = True
    chain_error: str = ""
    taken_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def plan_id(self) -> str:
        return self.plan.plan_id

    @property
    def state(self) -> PlanState:
        return self.plan.state

    @property
    def steps(self) -> list[RolloutStep]:
        return self.plan.steps

    @property
    def committed_count(self) -> int:
        return sum(1 for s in self.plan.deploy_steps if s.state == StepState.COMMITTED)

    @property
    def total_targets(self) -> int:
        return len(self.plan.deploy_steps)

    @property
    def applying_count(self) -> int:
        return sum(1 for s in self.plan.steps if s.state == StepState.APPLYING)


class PlanProjection:
    """Pure read-only projection.

    Parameters
    ----------
    store:
        State store holding plans and targets.
    ledger:
        Rollout ledger, for entry counts and chain verification.
    """

    def __init__(self, store: StateStore, ledger: RolloutLedger) -> None:
        self._store = store
        self._ledger = ledger

    def snapshot(self, plan_id: str, *, verify_chain: bool = True) -> PlanSnapshot:
        plan = PlanMachine(self._store, self._ledger).get(plan_id)
        registry = TargetRegistry(self._store)
        targets = {
            name: target
            for name in plan.target_names
            if (target := registry.find(name)) is not None
        }

        chain_valid, chain_error = True, ""
        if verify_chain:
            try:
                self._ledger.verify_chain(plan_id)
            except LedgerIntegrityError as exc:
                chain_valid, chain_error = False, str(exc)

        return PlanSnapshot(
            plan=plan,
            targets=targets,
            ledger_entries=self._ledger.count(plan_id),
            chain_valid=chain_valid,
            chain_error=chain_error,
        )

    def plans(self) -> list[RolloutPlan]:
        """All persisted plans, newest first."""
        plans = PlanMachine(self._store, self._ledger).list()
        return sorted(plans, key=lambda p: p.created_at, reverse=True)
