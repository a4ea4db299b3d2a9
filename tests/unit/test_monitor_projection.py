"""Unit tests for PlanProjection — read-only snapshots of persisted plans."""

from __future__ import annotations

import sqlite3
from collections.abc import Callable
from pathlib import Path

import pytest

from shipyard.core.plan_machine import PlanMachine
from shipyard.core.rollout_ledger import RolloutLedger
from shipyard.core.state_store import StateStore
from shipyard.core.target_registry import TargetRegistry
from shipyard.models.revisions import Artifact
from shipyard.models.rollout import PlanState, RolloutPlan, StepState
from shipyard.models.targets import Target
from shipyard.monitor.projection import PlanProjection


@pytest.fixture
def projection(store: StateStore, ledger: RolloutLedger) -> PlanProjection:
    return PlanProjection(store, ledger)


@pytest.fixture
def half_done_plan(
    machine: PlanMachine, registry: TargetRegistry, make_artifact: Callable[..., Artifact],
) -> RolloutPlan:
    artifact = make_artifact("r1")
    registry.register(Target(name="t1", address="t1.internal"))
    registry.register(Target(name="t2", address="t2.internal"))
    plan = machine.create(RolloutPlan(
        revision_id="r1", artifact_id=artifact.artifact_id, target_names=["t1", "t2"],
    ))
    first = plan.steps[0].step_id
    machine.transition_plan(plan.plan_id, PlanState.IN_PROGRESS)
    machine.transition_step(plan.plan_id, first, StepState.APPLYING)
    machine.transition_step(plan.plan_id, first, StepState.VERIFYING)
    machine.transition_step(plan.plan_id, first, StepState.COMMITTED)
    machine.transition_step(plan.plan_id, plan.steps[1].step_id, StepState.APPLYING)
    return machine.get(plan.plan_id)


class TestSnapshot:
    def test_counts(self, projection: PlanProjection, half_done_plan: RolloutPlan):
        snap = projection.snapshot(half_done_plan.plan_id)
        assert snap.state == PlanState.IN_PROGRESS
        assert snap.committed_count == 1
        assert snap.applying_count == 1
        assert snap.total_targets == 2
        assert set(snap.targets) == {"t1", "t2"}

    def test_ledger_entries_and_chain(self, projection: PlanProjection, half_done_plan: RolloutPlan):
        snap = projection.snapshot(half_done_plan.plan_id)
        # ->pending, plan start, three t1 transitions, one t2 transition
        assert snap.ledger_entries == 6
        assert snap.chain_valid is True

    def test_rereads_persisted_state(
        self, projection: PlanProjection, machine: PlanMachine, half_done_plan: RolloutPlan,
    ):
        before = projection.snapshot(half_done_plan.plan_id)
        machine.transition_step(
            half_done_plan.plan_id, half_done_plan.steps[1].step_id, StepState.FAILED
        )
        after = projection.snapshot(half_done_plan.plan_id)
        assert before.applying_count == 1
        assert after.applying_count == 0

    def test_broken_chain_reported(
        self, projection: PlanProjection, half_done_plan: RolloutPlan, tmp_dir: Path,
    ):
        conn = sqlite3.connect(str(tmp_dir / "ledger.db"))
        conn.execute("UPDATE rollout_ledger SET reason = 'forged' WHERE transition = '->pending'")
        conn.commit()
        conn.close()
        snap = projection.snapshot(half_done_plan.plan_id)
        assert snap.chain_valid is False
        assert "contents modified" in snap.chain_error

    def test_unknown_plan(self, projection: PlanProjection):
        with pytest.raises(KeyError):
            projection.snapshot("plan-missing")


class TestPlans:
    def test_newest_first(self, projection: PlanProjection, machine: PlanMachine):
        older = machine.create(RolloutPlan(revision_id="r1", artifact_id="sha256:a", target_names=["t"]))
        newer = machine.create(RolloutPlan(revision_id="r2", artifact_id="sha256:b", target_names=["t"]))
        assert [p.plan_id for p in projection.plans()] == [newer.plan_id, older.plan_id]
