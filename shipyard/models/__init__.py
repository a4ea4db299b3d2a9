"""Shipyard data models — all Pydantic v2, all frozen (immutable)."""

from shipyard.models.events import IntakeReceipt, IntakeStatus, PushEvent
from shipyard.models.ledger import LedgerEntry
from shipyard.models.revisions import Artifact, BuildConfig, Revision
from shipyard.models.rollout import (
    TERMINAL_PLAN_STATES,
    TERMINAL_STEP_STATES,
    VALID_PLAN_TRANSITIONS,
    VALID_STEP_TRANSITIONS,
    FailureKind,
    PlanState,
    RolloutMode,
    RolloutPlan,
    RolloutPolicy,
    RolloutStep,
    StepKind,
    StepState,
    SupersedeMode,
)
from shipyard.models.targets import Target, TargetStatus

__all__ = [
    # revisions
    "Revision",
    "BuildConfig",
    "Artifact",
    # targets
    "Target",
    "TargetStatus",
    # rollout
    "RolloutMode",
    "SupersedeMode",
    "RolloutPolicy",
    "PlanState",
    "StepState",
    "StepKind",
    "FailureKind",
    "RolloutPlan",
    "RolloutStep",
    "VALID_PLAN_TRANSITIONS",
    "VALID_STEP_TRANSITIONS",
    "TERMINAL_PLAN_STATES",
    "TERMINAL_STEP_STATES",
    # events
    "PushEvent",
    "IntakeStatus",
    "IntakeReceipt",
    # ledger
    "LedgerEntry",
]
