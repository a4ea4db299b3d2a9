"""Tests for ShipyardSettings — defaults and SHIPYARD_* overrides."""

from __future__ import annotations

from pathlib import Path

import pytest

from shipyard.config import ShipyardSettings


class TestDefaults:
    def test_storage_paths(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("SHIPYARD_STATE_PATH", raising=False)
        s = ShipyardSettings(_env_file=None)
        assert s.state_path == Path(".shipyard/state.db")
        assert s.ledger_path == Path(".shipyard/ledger.db")

    def test_rollout_defaults(self):
        s = ShipyardSettings(_env_file=None)
        assert s.rollout_mode == "serial"
        assert s.max_parallel == 1
        assert s.auto_rollback is True
        assert s.supersede == "cancel"

    def test_health_defaults(self):
        s = ShipyardSettings(_env_file=None)
        assert s.health_interval_seconds == 15.0
        assert s.health_deadline_seconds == 60.0

    def test_build_defaults_to_local_store(self):
        s = ShipyardSettings(_env_file=None)
        assert s.build_host == "localhost"
        assert s.registry == ""

    def test_ownership_defaults(self):
        s = ShipyardSettings(_env_file=None)
        assert s.heartbeat_seconds < s.owner_stale_seconds


class TestEnvOverrides:
    def test_env_prefix(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("SHIPYARD_ROLLOUT_MODE", "parallel")
        monkeypatch.setenv("SHIPYARD_MAX_PARALLEL", "4")
        s = ShipyardSettings(_env_file=None)
        assert s.rollout_mode == "parallel"
        assert s.max_parallel == 4

    def test_path_override(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
        monkeypatch.setenv("SHIPYARD_LEDGER_PATH", str(tmp_path / "l.db"))
        assert ShipyardSettings(_env_file=None).ledger_path == tmp_path / "l.db"

    def test_registry_and_build_host(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("SHIPYARD_REGISTRY", "registry.internal:5000")
        monkeypatch.setenv("SHIPYARD_BUILD_HOST", "builder")
        monkeypatch.setenv("SHIPYARD_BUILD_CREDENTIAL_REF", "builder-key")
        s = ShipyardSettings(_env_file=None)
        assert (s.registry, s.build_host, s.build_credential_ref) == (
            "registry.internal:5000", "builder", "builder-key"
        )

    def test_init_kwargs_win(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("SHIPYARD_SUPERSEDE", "cancel")
        assert ShipyardSettings(_env_file=None, supersede="finish").supersede == "finish"
