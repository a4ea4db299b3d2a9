"""Shipyard rollout monitor — read-only projection over persisted state.

The monitor NEVER maintains its own state.  Every call re-reads the state
store and the rollout ledger.

Modules
-------
projection
    ``PlanProjection`` produces ``PlanSnapshot`` Pydantic models, a frozen,
    point-in-time view of a rollout plan and its targets.
renderer
    ``PlanRenderer`` turns snapshots into Rich renderables for terminal
    display, including continuous ``Rich.Live`` mode.
"""
