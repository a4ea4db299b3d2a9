"""Rollout plan and step models — deterministic transitions.

Plan and step states are enforced structurally by the PlanMachine using
the transition tables below.  Terminal states have no outgoing transitions.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class RolloutMode(str, Enum):
    SERIAL = "serial"
    PARALLEL = "parallel"


class SupersedeMode(str, Enum):
    """What happens to an in-progress plan when a newer revision arrives."""

    CANCEL = "cancel"
    FINISH = "finish"


class PlanState(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PARTIALLY_FAILED = "partially_failed"
    ROLLED_BACK = "rolled_back"
    ABORTED = "aborted"
    ABORTED_ON_RESTART = "aborted_on_restart"


class StepState(str, Enum):
    PENDING = "pending"
    APPLYING = "applying"
    VERIFYING = "verifying"
    COMMITTED = "committed"
    FAILED = "failed"
    SKIPPED = "skipped"


class StepKind(str, Enum):
    DEPLOY = "deploy"
    ROLLBACK = "rollback"


class FailureKind(str, Enum):
    """Classification recorded on a failed step."""

    CONNECTION = "connection"
    OPERATION = "operation"
    HEALTH_TIMEOUT = "health_timeout"
    CONFLICT = "conflict"
    TIMEOUT = "timeout"
    RESTART = "restart"
    INTERNAL = "internal"


TERMINAL_PLAN_STATES: frozenset[PlanState] = frozenset({
    PlanState.SUCCEEDED,
    PlanState.FAILED,
    PlanState.PARTIALLY_FAILED,
    PlanState.ROLLED_BACK,
    PlanState.ABORTED,
    PlanState.ABORTED_ON_RESTART,
})

TERMINAL_STEP_STATES: frozenset[StepState] = frozenset({
    StepState.COMMITTED,
    StepState.FAILED,
    StepState.SKIPPED,
})

VALID_PLAN_TRANSITIONS: dict[PlanState, set[PlanState]] = {
    PlanState.PENDING: {
        PlanState.IN_PROGRESS,
        PlanState.ABORTED,
        PlanState.ABORTED_ON_RESTART,
    },
    PlanState.IN_PROGRESS: {
        PlanState.SUCCEEDED,
        PlanState.FAILED,
        PlanState.PARTIALLY_FAILED,
        PlanState.ROLLED_BACK,
        PlanState.ABORTED,
        PlanState.ABORTED_ON_RESTART,
    },
    **{state: set() for state in TERMINAL_PLAN_STATES},
}

# PENDING -> FAILED covers a step rejected before it touched the target
# (lease conflict, watchdog).
VALID_STEP_TRANSITIONS: dict[StepState, set[StepState]] = {
    StepState.PENDING: {StepState.APPLYING, StepState.SKIPPED, StepState.FAILED},
    StepState.APPLYING: {StepState.VERIFYING, StepState.FAILED},
    StepState.VERIFYING: {StepState.COMMITTED, StepState.FAILED},
    StepState.COMMITTED: set(),
    StepState.FAILED: set(),
    StepState.SKIPPED: set(),
}


class RolloutPolicy(BaseModel):
    """How a plan walks its targets.

    In serial mode ``max_parallel`` is forced to 1.
    """

    model_config = ConfigDict(frozen=True)

    mode: RolloutMode = RolloutMode.SERIAL
    max_parallel: int = Field(default=1, ge=1)
    auto_rollback: bool = True
    watchdog_seconds: float = Field(default=900.0, gt=0)

    @model_validator(mode="before")
    @classmethod
    def _serial_is_one_at_a_time(cls, data: Any) -> Any:
        if isinstance(data, dict):
            mode = RolloutMode(data.get("mode", RolloutMode.SERIAL))
            if mode == RolloutMode.SERIAL:
                data = {**data, "max_parallel": 1}
        return data


class RolloutStep(BaseModel):
    """One (target, artifact) application attempt within a plan."""

    model_config = ConfigDict(frozen=True)

    step_id: str = Field(default_factory=lambda: f"step-{uuid.uuid4().hex[:12]}")
    plan_id: str
    target_name: str
    artifact_id: str
    kind: StepKind = StepKind.DEPLOY
    state: StepState = StepState.PENDING
    attempts: int = 0
    failure_kind: FailureKind | None = None
    reason: str = ""
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STEP_STATES


class RolloutPlan(BaseModel):
    """The unit of work deploying one artifact across a set of targets."""

    model_config = ConfigDict(frozen=True)

    plan_id: str = Field(
        default_factory=lambda: (
            f"plan-{datetime.now(timezone.utc).strftime('%Y%m%d-%H%M%S')}"
            f"-{uuid.uuid4().hex[:4]}"
        )
    )
    revision_id: str
    artifact_id: str
    target_names: list[str]
    policy: RolloutPolicy = RolloutPolicy()
    state: PlanState = PlanState.PENDING
    reason: str = ""
    steps: list[RolloutStep] = []
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @model_validator(mode="after")
    def _targets_are_unique(self) -> RolloutPlan:
        seen: set[str] = set()
        for name in self.target_names:
            if name in seen:
                raise ValueError(f"Target {name!r} listed twice in plan")
            seen.add(name)
        return self

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_PLAN_STATES

    @property
    def deploy_steps(self) -> list[RolloutStep]:
        return [s for s in self.steps if s.kind == StepKind.DEPLOY]

    @property
    def rollback_steps(self) -> list[RolloutStep]:
        return [s for s in self.steps if s.kind == StepKind.ROLLBACK]

    def get_step(self, step_id: str) -> RolloutStep:
        for step in self.steps:
            if step.step_id == step_id:
                return step
        raise KeyError(f"Step not found in {self.plan_id}: {step_id}")
