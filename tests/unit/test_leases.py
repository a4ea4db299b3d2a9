"""Tests for per-target leases and cross-process plan ownership."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from shipyard.core.errors import ConflictError
from shipyard.core.leases import PlanOwnership, TargetLeases, new_owner_id
from shipyard.core.state_store import StateStore


class TestTargetLeases:
    def test_acquire_and_release(self):
        leases = TargetLeases()
        leases.acquire("web-1", "plan-a")
        assert leases.holder("web-1") == "plan-a"
        leases.release("web-1", "plan-a")
        assert leases.holder("web-1") is None

    def test_reacquire_by_holder_is_allowed(self):
        leases = TargetLeases()
        leases.acquire("web-1", "plan-a")
        leases.acquire("web-1", "plan-a")
        assert leases.holder("web-1") == "plan-a"

    def test_contention_is_rejected(self):
        leases = TargetLeases()
        leases.acquire("web-1", "plan-a")
        with pytest.raises(ConflictError, match="plan-a"):
            leases.acquire("web-1", "plan-b")

    def test_release_by_non_holder_is_ignored(self):
        leases = TargetLeases()
        leases.acquire("web-1", "plan-a")
        leases.release("web-1", "plan-b")
        assert leases.holder("web-1") == "plan-a"

    def test_hold_releases_on_error(self):
        leases = TargetLeases()
        with pytest.raises(RuntimeError):
            with leases.hold("web-1", "plan-a"):
                raise RuntimeError("boom")
        assert leases.holder("web-1") is None


class TestPlanOwnership:
    def test_claim_and_release(self, store: StateStore):
        owners = PlanOwnership(store, "host-a:1:aa")
        owners.claim("plan-1")
        assert owners.live_owner("plan-1") == "host-a:1:aa"
        owners.release("plan-1")
        assert owners.live_owner("plan-1") is None

    def test_live_owner_blocks_second_claim(self, store: StateStore):
        first = PlanOwnership(store, "host-a:1:aa")
        second = PlanOwnership(store, "host-b:2:bb")
        first.claim("plan-1")

        assert second.live_owner("plan-1") == "host-a:1:aa"
        with pytest.raises(ConflictError, match="host-a:1:aa"):
            second.claim("plan-1")

    def test_stale_owner_can_be_replaced(self, store: StateStore):
        second = PlanOwnership(store, "host-b:2:bb", stale_after=60.0)
        store.put("plan_owners", "plan-1", {
            "owner": "host-a:1:aa",
            "heartbeat_at": (datetime.now(timezone.utc) - timedelta(minutes=5)).isoformat(),
        })

        assert second.live_owner("plan-1") is None
        second.claim("plan-1")
        assert second.live_owner("plan-1") == "host-b:2:bb"

    def test_release_by_non_owner_is_ignored(self, store: StateStore):
        first = PlanOwnership(store, "host-a:1:aa")
        second = PlanOwnership(store, "host-b:2:bb")
        first.claim("plan-1")
        second.release("plan-1")
        assert second.live_owner("plan-1") == "host-a:1:aa"

        second.forget("plan-1")
        assert first.live_owner("plan-1") is None

    def test_owner_ids_are_unique_per_controller(self):
        assert new_owner_id() != new_owner_id()
