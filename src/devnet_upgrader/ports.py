"""Collaborator capabilities consumed by the upgrade engine.

The engine only talks to the outside world through these protocols. The
concrete implementations live in `devnet_upgrader.adapters`; tests use
in-memory fakes.
"""

from datetime import datetime
from pathlib import Path
from typing import Optional, Protocol

from devnet_upgrader.models.chain import (
    GovParams,
    NodeHealth,
    NodeInfo,
    ProposalInfo,
    ValidatorKey,
)
from devnet_upgrader.models.spec import DevnetRef


class ChainClient(Protocol):
    """Chain RPC port. Unreachable endpoints raise `ChainUnavailable`."""

    async def get_block_height(self, devnet: DevnetRef) -> int: ...

    async def get_block_time(self, devnet: DevnetRef, sample: int = 5) -> float: ...

    async def get_gov_params(self, devnet: DevnetRef) -> GovParams: ...

    async def get_proposal(self, devnet: DevnetRef, proposal_id: int) -> Optional[ProposalInfo]: ...

    async def find_upgrade_proposal(
        self, devnet: DevnetRef, plan_name: str, since: Optional[datetime] = None
    ) -> Optional[ProposalInfo]: ...

    async def get_voters(self, devnet: DevnetRef, proposal_id: int) -> set[str]: ...

    async def submit_proposal(
        self,
        devnet: DevnetRef,
        key: ValidatorKey,
        plan_name: str,
        title: str,
        description: str,
        height: int,
        deposit: Optional[str],
    ) -> tuple[int, str]:
        """Submit a MsgSoftwareUpgrade proposal; returns (proposal_id, tx_hash)."""
        ...

    async def submit_vote(
        self, devnet: DevnetRef, key: ValidatorKey, proposal_id: int, option: str = "yes"
    ) -> str: ...


class ValidatorKeyLoader(Protocol):
    async def load_validator_keys(self, devnet: DevnetRef) -> list[ValidatorKey]: ...


class NodeRepository(Protocol):
    async def list_nodes(self, devnet: DevnetRef) -> list[NodeInfo]: ...

    async def set_node_binary(self, devnet: DevnetRef, node: str, binary: str) -> None:
        """Persist the binary reference the node runs from on next start."""
        ...


class ProcessExecutor(Protocol):
    """Process layer port. Unreachable nodes raise `NodeUnavailable`."""

    async def stop(self, devnet: DevnetRef, node: NodeInfo) -> None: ...

    async def start(self, devnet: DevnetRef, node: NodeInfo) -> None: ...

    async def restart(self, devnet: DevnetRef, node: NodeInfo) -> None: ...

    async def is_running(self, devnet: DevnetRef, node: NodeInfo) -> bool: ...

    async def query_version(self, devnet: DevnetRef, node: NodeInfo) -> Optional[str]:
        """Version string the running node reports, None when it is not running."""
        ...


class HealthChecker(Protocol):
    async def check(self, devnet: DevnetRef, node: NodeInfo) -> NodeHealth: ...


class ExportService(Protocol):
    async def export_genesis(self, devnet: DevnetRef, label: str, directory: Path) -> Path: ...
