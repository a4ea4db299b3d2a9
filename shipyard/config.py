"""Controller configuration — env-driven.

Centralized settings using pydantic-settings. Reads from a .env file and
SHIPYARD_* environment variables.
"""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class ShipyardSettings(BaseSettings):
    """Controller configuration with environment variable overrides.

    All settings can be overridden via SHIPYARD_* environment variables
    or a .env file in the working directory.

    Examples
    --------
    Override via environment::

        export SHIPYARD_LOG_LEVEL=DEBUG
        export SHIPYARD_STATE_PATH=/var/lib/shipyard/state.db
        export SHIPYARD_ROLLOUT_MODE=parallel
        export SHIPYARD_MAX_PARALLEL=4

    Or via .env file::

        SHIPYARD_REGISTRY=registry.internal:5000
        SHIPYARD_SUPERSEDE=finish
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="SHIPYARD_",
        env_file_encoding="utf-8",
    )

    log_level: str = "INFO"

    # Storage paths
    state_path: Path = Path(".shipyard/state.db")
    ledger_path: Path = Path(".shipyard/ledger.db")
    credentials_dir: Path = Path(".shipyard/credentials")

    # Build.  With a registry the image is pushed there and targets pull it;
    # without one, targets must share the build host's image store.
    build_host: str = "localhost"
    build_credential_ref: str = ""
    registry: str = ""
    image_name: str = "site"
    dockerfile: str = "Dockerfile"
    container_name: str = "site"
    host_port: int = 80
    container_port: int = 80

    # Rollout policy defaults
    rollout_mode: str = "serial"  # serial | parallel
    max_parallel: int = 1
    auto_rollback: bool = True
    supersede: str = "cancel"  # cancel | finish
    watchdog_seconds: float = 900.0

    # Plan ownership across controller processes
    heartbeat_seconds: float = 10.0
    owner_stale_seconds: float = 60.0

    # Remote executor retry
    ssh_user: str = ""
    ssh_connect_timeout: int = 10
    command_timeout: float = 300.0
    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0

    # Health verification
    health_interval_seconds: float = 15.0
    health_deadline_seconds: float = 60.0
    probe_timeout_seconds: float = 5.0

    # Artifact retention
    artifact_retention_days: int = 30


# Module-level singleton; import as `from shipyard.config import settings`
settings = ShipyardSettings()
