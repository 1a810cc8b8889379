"""Pydantic models for HTTP API requests and responses."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from devnet_upgrader.models.spec import BinaryRef, DEFAULT_VOTING_PERIOD, HeightStrategy
from devnet_upgrader.models.status import PhaseEnum


class StartUpgradeRequest(BaseModel):
    """POST /api/v1.0/upgrades/{namespace}/{name} payload.

    Example:
        {
            "upgrade_name": "v2.0.0",
            "title": "Upgrade to v2.0.0",
            "target": {"image": "ghcr.io/org/chain:v2.0.0", "version": "v2.0.0"},
            "height": {"blocks_from_now": 40},
            "export_genesis_before": true,
            "genesis_export_dir": "/tmp/exports"
        }
    """

    upgrade_name: str = Field(..., min_length=1, examples=["v2.0.0"])
    title: str = Field(..., min_length=1, examples=["Upgrade to v2.0.0"])
    description: str = Field(default="")
    target: BinaryRef
    voting_period: float = Field(
        default=DEFAULT_VOTING_PERIOD, description="Voting period in seconds (>= 30)"
    )
    height: HeightStrategy = Field(default_factory=HeightStrategy)
    height_buffer: Optional[int] = None
    export_genesis_before: bool = False
    export_genesis_after: bool = False
    genesis_export_dir: Optional[str] = None
    deposit: Optional[str] = None


class CancelRequest(BaseModel):
    reason: str = Field(default="cancelled by operator")


class UpgradeSummary(BaseModel):
    """Condensed record view used in list/status responses."""

    namespace: str
    devnet: str
    record: str
    upgrade_name: str
    phase: PhaseEnum
    proposal_id: Optional[int] = None
    target_height: int = 0
    attempts: int = 0
    last_error: Optional[str] = None
    error_category: Optional[str] = None
    running: bool = Field(False, description="An orchestration pass is currently driving the record")
    started_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None


class PhaseReport(BaseModel):
    """Payload POSTed to the progress callback on every phase event."""

    namespace: str
    devnet: str
    record: str
    phase: PhaseEnum
    proposal_id: Optional[int] = None
    target_height: int = 0
    attempts: int = 0
    message: str = ""
    error: Optional[str] = None
