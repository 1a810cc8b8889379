"""Upgrade specification models supplied when an upgrade is created."""

from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

MIN_VOTING_PERIOD = 30.0
DEFAULT_VOTING_PERIOD = 60.0
MIN_HEIGHT_BUFFER = 5

_NAME_PATTERN = r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?$"


class DevnetRef(BaseModel):
    """Devnet identity (namespace + name)."""

    model_config = ConfigDict(frozen=True)

    namespace: str = Field(default="default", pattern=_NAME_PATTERN)
    name: str = Field(..., pattern=_NAME_PATTERN)

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    def __str__(self) -> str:
        return self.key


class BinaryRef(BaseModel):
    """Target binary: a container image tag or a local binary path.

    `version` is the version string the node reports once it runs the
    binary; it is how an already-switched node is recognised.
    """

    model_config = ConfigDict(frozen=True)

    image: Optional[str] = Field(None, description="Container image reference")
    path: Optional[str] = Field(None, description="Absolute local binary path")
    version: str = Field(..., min_length=1, description="Reported version string")

    @model_validator(mode="after")
    def exactly_one_target(self) -> "BinaryRef":
        """Require exactly one of image or path."""
        if bool(self.image) == bool(self.path):
            raise ValueError("Exactly one of 'image' or 'path' must be set")
        if self.path and not Path(self.path).is_absolute():
            raise ValueError(f"Binary path must be absolute: {self.path}")
        return self

    @property
    def reference(self) -> str:
        return self.image or self.path or ""


class HeightStrategy(BaseModel):
    """How the upgrade height is chosen.

    `height` pins an explicit height, `blocks_from_now` is relative to the
    height at proposal time. Leaving both unset computes the height from the
    voting period, the observed block time and a safety buffer.
    """

    model_config = ConfigDict(frozen=True)

    height: Optional[int] = Field(None, gt=0)
    blocks_from_now: Optional[int] = Field(None, gt=0)

    @model_validator(mode="after")
    def at_most_one(self) -> "HeightStrategy":
        if self.height is not None and self.blocks_from_now is not None:
            raise ValueError("Specify either 'height' or 'blocks_from_now', not both")
        return self

    @property
    def is_auto(self) -> bool:
        return self.height is None and self.blocks_from_now is None


class UpgradeSpec(BaseModel):
    """Immutable description of one governance-gated binary upgrade."""

    model_config = ConfigDict(frozen=True)

    devnet: DevnetRef
    upgrade_name: str = Field(
        ..., min_length=1, description="On-chain upgrade plan name (e.g. 'v2.0.0')"
    )
    title: str = Field(..., min_length=1)
    description: str = Field(default="")
    target: BinaryRef
    voting_period: float = Field(
        default=DEFAULT_VOTING_PERIOD,
        description="Voting period in seconds used for height calculation",
    )
    height: HeightStrategy = Field(default_factory=HeightStrategy)
    height_buffer: Optional[int] = Field(
        None, description="Blocks added after the voting period (auto when unset)"
    )
    export_genesis_before: bool = False
    export_genesis_after: bool = False
    genesis_export_dir: Optional[str] = None
    deposit: Optional[str] = Field(
        None, description="Proposal deposit, e.g. '100000000000000000000astake'"
    )

    @field_validator("upgrade_name")
    @classmethod
    def no_whitespace(cls, v: str) -> str:
        """Plan names end up in node upgrade-info files and must be one token."""
        if any(c.isspace() for c in v):
            raise ValueError("Upgrade name must not contain whitespace")
        return v

    @field_validator("voting_period")
    @classmethod
    def minimum_voting_period(cls, v: float) -> float:
        if v < MIN_VOTING_PERIOD:
            raise ValueError(f"Voting period must be at least {MIN_VOTING_PERIOD:.0f}s")
        return v

    @field_validator("height_buffer")
    @classmethod
    def minimum_height_buffer(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < MIN_HEIGHT_BUFFER:
            raise ValueError(f"Height buffer must be at least {MIN_HEIGHT_BUFFER} blocks")
        return v

    @model_validator(mode="after")
    def export_dir_required(self) -> "UpgradeSpec":
        if (self.export_genesis_before or self.export_genesis_after) and not self.genesis_export_dir:
            raise ValueError("genesis_export_dir is required when genesis export is enabled")
        return self

    @property
    def exports_enabled(self) -> bool:
        return self.export_genesis_before or self.export_genesis_after
