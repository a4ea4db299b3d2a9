"""Tests for the PlanMachine — validated, journaled plan and step transitions."""

from __future__ import annotations

import pytest

from shipyard.core.errors import InvalidTransitionError
from shipyard.core.plan_machine import PlanMachine
from shipyard.core.rollout_ledger import RolloutLedger
from shipyard.core.state_store import StateStore
from shipyard.models.rollout import (
    FailureKind,
    PlanState,
    RolloutPlan,
    RolloutStep,
    StepKind,
    StepState,
)


def _create(machine: PlanMachine, *targets: str) -> RolloutPlan:
    return machine.create(RolloutPlan(
        revision_id="rev-1",
        artifact_id="sha256:aaa",
        target_names=list(targets or ("web-1", "web-2")),
    ))


class TestCreate:
    def test_one_pending_deploy_step_per_target(self, machine: PlanMachine):
        plan = _create(machine, "web-1", "web-2", "web-3")
        assert plan.state == PlanState.PENDING
        assert [s.target_name for s in plan.steps] == ["web-1", "web-2", "web-3"]
        assert all(s.state == StepState.PENDING for s in plan.steps)
        assert all(s.kind == StepKind.DEPLOY for s in plan.steps)

    def test_creation_is_journaled(self, machine: PlanMachine, ledger: RolloutLedger):
        plan = _create(machine)
        entries = ledger.get_plan_entries(plan.plan_id)
        assert [e.transition for e in entries] == ["->pending"]

    def test_persisted(self, machine: PlanMachine, store: StateStore, ledger: RolloutLedger):
        plan = _create(machine)
        assert PlanMachine(store, ledger).get(plan.plan_id) == plan

    def test_get_unknown_raises(self, machine: PlanMachine):
        with pytest.raises(KeyError):
            machine.get("plan-missing")


class TestPlanTransitions:
    def test_valid_path(self, machine: PlanMachine):
        plan = _create(machine)
        machine.transition_plan(plan.plan_id, PlanState.IN_PROGRESS)
        done = machine.transition_plan(plan.plan_id, PlanState.SUCCEEDED, reason="ok")
        assert done.state == PlanState.SUCCEEDED
        assert done.reason == "ok"
        assert done.is_terminal

    def test_terminal_has_no_exit(self, machine: PlanMachine):
        plan = _create(machine)
        machine.transition_plan(plan.plan_id, PlanState.ABORTED)
        with pytest.raises(InvalidTransitionError):
            machine.transition_plan(plan.plan_id, PlanState.IN_PROGRESS)

    def test_pending_cannot_succeed(self, machine: PlanMachine):
        plan = _create(machine)
        with pytest.raises(InvalidTransitionError):
            machine.transition_plan(plan.plan_id, PlanState.SUCCEEDED)

    def test_active_excludes_terminal(self, machine: PlanMachine):
        running = _create(machine)
        finished = _create(machine)
        machine.transition_plan(running.plan_id, PlanState.IN_PROGRESS)
        machine.transition_plan(finished.plan_id, PlanState.ABORTED)
        assert [p.plan_id for p in machine.active()] == [running.plan_id]


class TestStepTransitions:
    def test_deploy_lifecycle(self, machine: PlanMachine, ledger: RolloutLedger):
        plan = _create(machine, "web-1")
        step_id = plan.steps[0].step_id
        machine.transition_plan(plan.plan_id, PlanState.IN_PROGRESS)
        applying = machine.transition_step(plan.plan_id, step_id, StepState.APPLYING)
        assert applying.started_at is not None
        machine.transition_step(plan.plan_id, step_id, StepState.VERIFYING, attempts=2)
        committed = machine.transition_step(plan.plan_id, step_id, StepState.COMMITTED)
        assert committed.attempts == 2
        assert committed.finished_at is not None

        history = ledger.get_subject_history(plan.plan_id, step_id)
        assert [e.transition for e in history] == [
            "pending->applying", "applying->verifying", "verifying->committed",
        ]
        assert all(e.target_name == "web-1" for e in history)

    def test_cannot_skip_verification(self, machine: PlanMachine):
        plan = _create(machine, "web-1")
        step_id = plan.steps[0].step_id
        machine.transition_step(plan.plan_id, step_id, StepState.APPLYING)
        with pytest.raises(InvalidTransitionError):
            machine.transition_step(plan.plan_id, step_id, StepState.COMMITTED)

    def test_failure_records_kind(self, machine: PlanMachine):
        plan = _create(machine, "web-1")
        step_id = plan.steps[0].step_id
        machine.transition_step(plan.plan_id, step_id, StepState.APPLYING)
        failed = machine.transition_step(
            plan.plan_id, step_id, StepState.FAILED,
            failure_kind=FailureKind.OPERATION, reason="docker pull failed",
        )
        assert failed.failure_kind == FailureKind.OPERATION
        assert machine.get(plan.plan_id).get_step(step_id).reason == "docker pull failed"

    def test_add_rollback_step(self, machine: PlanMachine):
        plan = _create(machine, "web-1")
        rollback = machine.add_step(plan.plan_id, RolloutStep(
            plan_id=plan.plan_id, target_name="web-1",
            artifact_id="sha256:prev", kind=StepKind.ROLLBACK,
        ))
        updated = machine.get(plan.plan_id)
        assert updated.rollback_steps == [rollback]
        assert len(updated.deploy_steps) == 1

    def test_chain_stays_valid(self, machine: PlanMachine, ledger: RolloutLedger):
        plan = _create(machine, "web-1")
        machine.transition_plan(plan.plan_id, PlanState.IN_PROGRESS)
        machine.transition_step(plan.plan_id, plan.steps[0].step_id, StepState.SKIPPED)
        machine.transition_plan(plan.plan_id, PlanState.ABORTED)
        assert ledger.verify_chain(plan.plan_id) is True

    def test_steps_of_closed_plan_are_frozen(self, machine: PlanMachine):
        plan = _create(machine, "web-1")
        step_id = plan.steps[0].step_id
        machine.transition_plan(plan.plan_id, PlanState.IN_PROGRESS)
        machine.transition_step(plan.plan_id, step_id, StepState.APPLYING)
        machine.transition_plan(plan.plan_id, PlanState.ABORTED_ON_RESTART)

        with pytest.raises(InvalidTransitionError, match="aborted_on_restart"):
            machine.transition_step(plan.plan_id, step_id, StepState.VERIFYING)
        with pytest.raises(InvalidTransitionError):
            machine.add_step(plan.plan_id, RolloutStep(
                plan_id=plan.plan_id, target_name="web-1",
                artifact_id="sha256:prev", kind=StepKind.ROLLBACK,
            ))
        assert machine.get(plan.plan_id).get_step(step_id).state == StepState.APPLYING


class TestSharedStore:
    def test_two_machines_see_each_others_transitions(
        self, store: StateStore, ledger: RolloutLedger,
    ):
        first, second = PlanMachine(store, ledger), PlanMachine(store, ledger)
        plan = _create(first, "web-1")
        first.transition_plan(plan.plan_id, PlanState.IN_PROGRESS)
        assert first.get(plan.plan_id).state == PlanState.IN_PROGRESS

        second.transition_plan(plan.plan_id, PlanState.ABORTED_ON_RESTART)

        assert first.get(plan.plan_id).state == PlanState.ABORTED_ON_RESTART
        with pytest.raises(InvalidTransitionError):
            first.transition_plan(plan.plan_id, PlanState.SUCCEEDED)


class TestCancelRequests:
    def test_request_is_persisted(self, store: StateStore, ledger: RolloutLedger):
        requester, driver = PlanMachine(store, ledger), PlanMachine(store, ledger)
        plan = _create(requester, "web-1")
        assert driver.cancel_reason(plan.plan_id) is None

        assert requester.request_cancel(plan.plan_id, "bad build") == "bad build"
        assert driver.cancel_reason(plan.plan_id) == "bad build"

    def test_first_reason_wins(self, machine: PlanMachine):
        plan = _create(machine, "web-1")
        machine.request_cancel(plan.plan_id, "first")
        assert machine.request_cancel(plan.plan_id, "second") == "first"
        assert machine.cancel_reason(plan.plan_id) == "first"

    def test_clear(self, machine: PlanMachine):
        plan = _create(machine, "web-1")
        machine.request_cancel(plan.plan_id, "oops")
        machine.clear_cancel(plan.plan_id)
        assert machine.cancel_reason(plan.plan_id) is None
