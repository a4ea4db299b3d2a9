"""Shipyard: push-triggered build and rollout controller for Docker hosts.

A push notification names a revision and its source tree.  Shipyard
builds a content-addressed artifact, plans a rollout across the
registered targets, applies it over SSH with idempotent operations,
health-gates every target, and rolls back to the last known-good
artifact when verification fails.  Every transition is journaled in a
hash-chained ledger.
"""

__version__ = "0.1.0"
__description__ = "Push-triggered build and rollout controller for Docker hosts"

from shipyard.core.controller import DeployController
from shipyard.monitor.projection import PlanProjection
from shipyard.cli.app import app as cli

__all__ = ["DeployController", "PlanProjection", "cli", "__version__"]
