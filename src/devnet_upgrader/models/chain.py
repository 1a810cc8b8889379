"""Chain and node observation models returned by the collaborator ports."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from devnet_upgrader.models.status import ProposalStatus


class ProposalInfo(BaseModel):
    """Governance proposal as observed on-chain."""

    id: int = Field(..., gt=0)
    status: ProposalStatus
    plan_name: Optional[str] = Field(None, description="Upgrade plan name of a MsgSoftwareUpgrade")
    plan_height: Optional[int] = None
    submit_time: Optional[datetime] = None
    voting_end_time: Optional[datetime] = None


class GovParams(BaseModel):
    voting_period: float = Field(..., gt=0, description="Voting period in seconds")
    min_deposit: Optional[str] = Field(None, description="Minimum deposit, e.g. '10000000astake'")


class NodeInfo(BaseModel):
    """Node entry as read from the devnet repository."""

    name: str
    index: int = Field(default=0, ge=0)
    role: str = Field(default="validator")
    container: Optional[str] = None
    rpc_url: str
    binary: Optional[str] = Field(None, description="Current image tag or binary path")
    home: str = Field(default="/root/.chain")
    run_args: list[str] = Field(default_factory=list, description="Extra `docker run` args when the container is recreated")
    command: list[str] = Field(default_factory=list, description="Container command, e.g. ['start', '--home', ...]")

    @property
    def is_validator(self) -> bool:
        return self.role == "validator"


class NodeHealth(BaseModel):
    node: str
    healthy: bool
    height: int = 0
    catching_up: bool = False
    app_version: Optional[str] = None
    error: Optional[str] = None


class ValidatorKey(BaseModel):
    """Signing identity of one validator, resolved by the key loader."""

    name: str
    address: str
    node: str = Field(..., description="Node whose keyring holds the key")
    keyring_backend: str = "test"


class SubmittedProposal(BaseModel):
    proposal_id: int = Field(..., gt=0)
    tx_hash: str
    target_height: int = Field(..., gt=0)
