"""Persisted upgrade record model."""

import uuid
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from devnet_upgrader.models.spec import DevnetRef, UpgradeSpec
from devnet_upgrader.models.status import Outcome, PhaseEnum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PhaseTransition(BaseModel):
    """Audit entry for one accepted phase transition."""

    from_phase: Optional[PhaseEnum] = None
    to_phase: PhaseEnum
    outcome: Optional[Outcome] = None
    reason: str = ""
    at: datetime = Field(default_factory=utcnow)


class ValidatorVote(BaseModel):
    """Vote cast (or observed on-chain) for one validator."""

    address: str = Field(..., min_length=1)
    tx_hash: Optional[str] = Field(None, description="None when the vote was found on-chain")
    voted_at: datetime = Field(default_factory=utcnow)


class NodeSwitch(BaseModel):
    """Binary switch outcome for one node."""

    node: str = Field(..., min_length=1)
    old_version: Optional[str] = None
    new_version: str
    skipped: bool = Field(False, description="Node already reported the target version")
    switched_at: datetime = Field(default_factory=utcnow)


class UpgradeRecord(BaseModel):
    """Durable workflow state for one upgrade attempt on one devnet.

    Persisted after every phase boundary. Terminal records are never
    mutated again; a retry archives them and starts a fresh record.
    """

    name: str = Field(..., min_length=1, description="Record (attempt) identifier")
    namespace: str
    devnet: str
    spec: UpgradeSpec
    phase: PhaseEnum = PhaseEnum.PENDING
    proposal_id: Optional[int] = Field(None, gt=0)
    target_height: int = Field(default=0, ge=0)
    attempts: int = Field(default=0, ge=0)
    last_error: Optional[str] = None
    error_category: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    exported_genesis_paths: dict[str, str] = Field(default_factory=dict)
    validator_votes: list[ValidatorVote] = Field(default_factory=list)
    node_switches: list[NodeSwitch] = Field(default_factory=list)
    history: list[PhaseTransition] = Field(default_factory=list)
    previous_attempt: Optional[str] = None

    @field_validator("exported_genesis_paths")
    @classmethod
    def known_snapshot_labels(cls, v: dict[str, str]) -> dict[str, str]:
        unknown = set(v) - {"before", "after"}
        if unknown:
            raise ValueError(f"Unknown genesis snapshot labels: {sorted(unknown)}")
        return v

    @classmethod
    def create(cls, spec: UpgradeSpec, previous_attempt: Optional[str] = None) -> "UpgradeRecord":
        """Create a pending record for a new upgrade attempt."""
        now = utcnow()
        return cls(
            name=f"{spec.upgrade_name}-{uuid.uuid4().hex[:8]}",
            namespace=spec.devnet.namespace,
            devnet=spec.devnet.name,
            spec=spec,
            phase=PhaseEnum.PENDING,
            target_height=spec.height.height or 0,
            started_at=now,
            updated_at=now,
            history=[PhaseTransition(to_phase=PhaseEnum.PENDING, reason="upgrade created", at=now)],
            previous_attempt=previous_attempt,
        )

    @property
    def ref(self) -> DevnetRef:
        return DevnetRef(namespace=self.namespace, name=self.devnet)

    @property
    def is_terminal(self) -> bool:
        return self.phase.is_terminal

    def assign_proposal(self, proposal_id: int) -> None:
        """Set the proposal id; it may be set once and never changed."""
        if self.proposal_id is not None and self.proposal_id != proposal_id:
            raise ValueError(
                f"Record {self.name} already bound to proposal {self.proposal_id}, "
                f"refusing {proposal_id}"
            )
        self.proposal_id = proposal_id

    def voted_addresses(self) -> set[str]:
        return {vote.address for vote in self.validator_votes}

    def record_vote(self, address: str, tx_hash: Optional[str]) -> None:
        if address not in self.voted_addresses():
            self.validator_votes.append(ValidatorVote(address=address, tx_hash=tx_hash))

    def record_switch(self, switch: NodeSwitch) -> None:
        self.node_switches = [s for s in self.node_switches if s.node != switch.node]
        self.node_switches.append(switch)

    def record_error(self, error: BaseException) -> None:
        self.last_error = str(error) or type(error).__name__
        category = getattr(error, "category", None)
        self.error_category = category.value if category is not None else None

    def clear_error(self) -> None:
        self.last_error = None
        self.error_category = None
