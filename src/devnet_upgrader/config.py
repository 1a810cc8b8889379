"""Daemon configuration."""

from pathlib import Path
from typing import Optional

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict


class PhaseTimings(BaseModel):
    """Deadlines and poll interval handed to the orchestrator (seconds)."""

    poll_interval: float = 2.0
    propose_timeout: float = 120.0
    vote_ready_timeout: float = 60.0
    vote_timeout: float = 120.0
    tally_timeout: float = 600.0
    height_timeout: float = 1800.0
    export_timeout: float = 300.0
    switch_timeout: float = 300.0
    confirm_timeout: float = 180.0
    health_timeout: float = 300.0
    health_failure_threshold: int = 3


class Settings(BaseSettings):
    """Settings loaded from DEVNET_UPGRADER_* environment variables."""

    model_config = SettingsConfigDict(env_prefix="DEVNET_UPGRADER_")

    # Home holds devnets/ and the upgrade state tree
    home_dir: Path = Path.home() / ".devnet-builder"
    state_dir: Optional[Path] = None  # <home_dir>/state if unset

    # Daemon
    host: str = "127.0.0.1"
    port: int = 12316
    log_file: str = "./logs/devnet-upgrader.log"
    log_level: str = "INFO"
    resume_on_startup: bool = True

    # Optional progress callback
    callback_url: Optional[str] = None

    # Collaborators
    docker_cli: str = "docker"
    chain_binary: str = "stabled"
    rpc_timeout: float = 10.0

    # Polling and phase deadlines (seconds)
    poll_interval: float = 2.0
    propose_timeout: float = 120.0
    vote_ready_timeout: float = 60.0
    vote_timeout: float = 120.0
    tally_timeout: float = 600.0
    height_timeout: float = 1800.0
    export_timeout: float = 300.0
    switch_timeout: float = 300.0
    confirm_timeout: float = 180.0
    health_timeout: float = 300.0
    health_failure_threshold: int = 3

    @property
    def resolved_state_dir(self) -> Path:
        return self.state_dir or self.home_dir / "state"

    def timings(self) -> PhaseTimings:
        return PhaseTimings(
            **{name: getattr(self, name) for name in PhaseTimings.model_fields}
        )
