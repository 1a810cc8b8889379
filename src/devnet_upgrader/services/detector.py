"""Observe the live devnet and map it onto the upgrade phase enum.

The detector never trusts the persisted phase. It looks at the chain
(proposal, votes, block height) and the process layer (version each node
reports) and derives a window [floor, ceiling] of phases consistent with
what it saw. The persisted phase is then compared against that window:

- below the floor: actions already happened but their checkpoints were
  lost (AHEAD); the record can be fast-forwarded to the floor.
- above the ceiling: the chain is behind what was recorded (BEHIND),
  e.g. the devnet was reset or rolled back.
"""

import logging
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from devnet_upgrader.errors import ChainUnavailable, NodeUnavailable
from devnet_upgrader.models.chain import NodeInfo, ProposalInfo
from devnet_upgrader.models.record import UpgradeRecord
from devnet_upgrader.models.spec import DevnetRef
from devnet_upgrader.models.status import PhaseEnum, ProposalStatus
from devnet_upgrader.ports import ChainClient, NodeRepository, ProcessExecutor, ValidatorKeyLoader

_PRE_TALLY = (PhaseEnum.PENDING, PhaseEnum.PROPOSED, PhaseEnum.VOTING)


class Discrepancy(str, Enum):
    NONE = "none"
    AHEAD = "ahead"
    BEHIND = "behind"


class Detection(BaseModel):
    """Result of one detection pass."""

    persisted: PhaseEnum
    floor: PhaseEnum
    ceiling: PhaseEnum
    discrepancy: Discrepancy = Discrepancy.NONE
    proposal: Optional[ProposalInfo] = None
    chain_height: Optional[int] = None
    chain_reachable: bool = True
    voted: list[str] = Field(default_factory=list)
    node_versions: dict[str, Optional[str]] = Field(default_factory=dict)
    note: str = ""

    @property
    def observed(self) -> PhaseEnum:
        """Phase the record should be at after reconciliation."""
        if self.discrepancy == Discrepancy.AHEAD:
            return self.floor
        if self.discrepancy == Discrepancy.BEHIND:
            return self.ceiling
        return self.persisted


class StateDetector:
    """Reconcile a persisted record against the live chain and nodes."""

    def __init__(
        self,
        chain: ChainClient,
        nodes: NodeRepository,
        processes: ProcessExecutor,
        keys: ValidatorKeyLoader,
    ):
        self.logger = logging.getLogger("devnet_upgrader.detector")
        self.chain = chain
        self.nodes = nodes
        self.processes = processes
        self.keys = keys

    async def detect(self, record: UpgradeRecord) -> Detection:
        """Derive the observed phase window and compare with record.phase.

        Raises:
            ChainUnavailable: If the chain cannot be queried and the record
                is not far enough along to decide from node versions alone
        """
        devnet = record.ref
        persisted = record.phase

        try:
            proposal = await self._find_proposal(record)
        except ChainUnavailable:
            if persisted.rank < PhaseEnum.AWAITING_HEIGHT.rank:
                raise
            self.logger.warning(
                f"{devnet}: chain unreachable at {persisted.value}, detecting from node versions only"
            )
            return await self._detect_from_nodes(record, chain_reachable=False)

        if proposal is None:
            note = "no proposal on chain" if record.proposal_id is None else (
                f"proposal {record.proposal_id} not found on chain"
            )
            return self._compare(record, PhaseEnum.PENDING, PhaseEnum.PENDING, note=note)

        status = proposal.status
        if status == ProposalStatus.DEPOSIT_PERIOD:
            return self._compare(
                record, PhaseEnum.PROPOSED, PhaseEnum.PROPOSED, proposal=proposal, note="deposit period"
            )

        if status == ProposalStatus.VOTING_PERIOD:
            voted = await self.already_voted(devnet, proposal.id)
            validators = {key.address for key in await self.keys.load_validator_keys(devnet)}
            floor = PhaseEnum.VOTING if validators and validators <= voted else PhaseEnum.PROPOSED
            return self._compare(
                record,
                floor,
                PhaseEnum.VOTING,
                proposal=proposal,
                voted=sorted(voted),
                note=f"voting period, {len(voted & validators)}/{len(validators)} validators voted",
            )

        if status in (ProposalStatus.REJECTED, ProposalStatus.FAILED):
            detection = Detection(
                persisted=persisted,
                floor=PhaseEnum.VOTE_REJECTED,
                ceiling=PhaseEnum.VOTE_REJECTED,
                proposal=proposal,
                note=f"proposal {proposal.id} {status.value}",
            )
            if persisted in _PRE_TALLY:
                detection.discrepancy = Discrepancy.AHEAD
            elif persisted != PhaseEnum.VOTE_REJECTED:
                detection.discrepancy = Discrepancy.BEHIND
            return self._log(record, detection)

        if status == ProposalStatus.PASSED:
            return await self._detect_passed(record, proposal)

        # Unspecified status: nothing to conclude, keep the persisted phase
        return self._compare(record, persisted, persisted, proposal=proposal, note=f"status {status.value}")

    async def already_voted(self, devnet: DevnetRef, proposal_id: int) -> set[str]:
        """Addresses with a vote recorded on-chain for the proposal."""
        return set(await self.chain.get_voters(devnet, proposal_id))

    async def node_versions(self, devnet: DevnetRef) -> dict[str, Optional[str]]:
        """Version each node reports; None for nodes that are down."""
        versions: dict[str, Optional[str]] = {}
        for node in await self.nodes.list_nodes(devnet):
            versions[node.name] = await self._query_version(devnet, node)
        return versions

    async def _find_proposal(self, record: UpgradeRecord) -> Optional[ProposalInfo]:
        devnet = record.ref
        if record.proposal_id is not None:
            return await self.chain.get_proposal(devnet, record.proposal_id)
        # Checkpoint of the submission may have been lost; adopt a proposal
        # for this plan submitted after the record was created.
        proposal = await self.chain.find_upgrade_proposal(
            devnet, record.spec.upgrade_name, since=record.started_at
        )
        if proposal is not None:
            self.logger.info(
                f"{devnet}: found proposal {proposal.id} for plan {record.spec.upgrade_name} "
                f"not recorded in state"
            )
        return proposal

    async def _detect_passed(self, record: UpgradeRecord, proposal: ProposalInfo) -> Detection:
        devnet = record.ref
        target = record.target_height or proposal.plan_height or 0
        try:
            height = await self.chain.get_block_height(devnet)
        except ChainUnavailable:
            if record.phase.rank < PhaseEnum.AWAITING_HEIGHT.rank:
                raise
            return await self._detect_from_nodes(record, chain_reachable=False, proposal=proposal)

        versions = await self.node_versions(devnet)
        new, old, _ = self._count_versions(record, versions)
        if new:
            return await self._detect_from_nodes(
                record, chain_reachable=True, proposal=proposal, height=height, versions=versions
            )

        # Chain halts with height target-1 committed
        reached = target > 0 and height >= target - 1
        floor = PhaseEnum.AWAITING_HEIGHT if reached else PhaseEnum.VOTE_PASSED
        ceiling = PhaseEnum.SWITCHING_BINARY if reached else PhaseEnum.AWAITING_HEIGHT
        return self._compare(
            record,
            floor,
            ceiling,
            proposal=proposal,
            height=height,
            versions=versions,
            note=f"passed, height {height}/{target}, {old} node(s) on old version",
        )

    async def _detect_from_nodes(
        self,
        record: UpgradeRecord,
        chain_reachable: bool,
        proposal: Optional[ProposalInfo] = None,
        height: Optional[int] = None,
        versions: Optional[dict[str, Optional[str]]] = None,
    ) -> Detection:
        devnet = record.ref
        if versions is None:
            versions = await self.node_versions(devnet)
        new, old, down = self._count_versions(record, versions)
        total = len(versions)

        if total and new == total:
            floor, ceiling = PhaseEnum.RESTARTING_NODES, PhaseEnum.VERIFYING_HEALTH
        elif new:
            floor = PhaseEnum.SWITCHING_BINARY
            ceiling = PhaseEnum.SWITCHING_BINARY if old else PhaseEnum.RESTARTING_NODES
        elif not chain_reachable and total and down == total and record.phase == PhaseEnum.AWAITING_HEIGHT:
            # Old binary stops itself at the upgrade height; nothing left to wait for
            floor = PhaseEnum.EXPORTING_STATE if record.spec.export_genesis_before else PhaseEnum.SWITCHING_BINARY
            ceiling = PhaseEnum.SWITCHING_BINARY
        else:
            floor, ceiling = PhaseEnum.AWAITING_HEIGHT, PhaseEnum.SWITCHING_BINARY

        note = f"{new}/{total} node(s) on {record.spec.target.version}, {down} down"
        if floor != PhaseEnum.AWAITING_HEIGHT and not new:
            note = f"chain halted at upgrade height, {note}"
        if not chain_reachable:
            # Without the chain we cannot prove drift; never report BEHIND
            persisted = record.phase
            if persisted.rank > ceiling.rank:
                ceiling = persisted
            note = f"chain unreachable, {note}"

        return self._compare(
            record,
            floor,
            ceiling,
            proposal=proposal,
            height=height,
            versions=versions,
            reachable=chain_reachable,
            note=note,
        )

    def _count_versions(
        self, record: UpgradeRecord, versions: dict[str, Optional[str]]
    ) -> tuple[int, int, int]:
        target = record.spec.target.version
        new = sum(1 for v in versions.values() if v == target)
        down = sum(1 for v in versions.values() if v is None)
        return new, len(versions) - new - down, down

    async def _query_version(self, devnet: DevnetRef, node: NodeInfo) -> Optional[str]:
        try:
            return await self.processes.query_version(devnet, node)
        except NodeUnavailable as e:
            self.logger.debug(f"{devnet}: version query failed for {node.name}: {e}")
            return None

    def _compare(
        self,
        record: UpgradeRecord,
        floor: PhaseEnum,
        ceiling: PhaseEnum,
        proposal: Optional[ProposalInfo] = None,
        height: Optional[int] = None,
        versions: Optional[dict[str, Optional[str]]] = None,
        voted: Optional[list[str]] = None,
        reachable: bool = True,
        note: str = "",
    ) -> Detection:
        persisted = record.phase
        if persisted.rank < floor.rank:
            discrepancy = Discrepancy.AHEAD
        elif persisted.rank > ceiling.rank or persisted == PhaseEnum.VOTE_REJECTED:
            discrepancy = Discrepancy.BEHIND
        else:
            discrepancy = Discrepancy.NONE
        detection = Detection(
            persisted=persisted,
            floor=floor,
            ceiling=ceiling,
            discrepancy=discrepancy,
            proposal=proposal,
            chain_height=height,
            chain_reachable=reachable,
            voted=voted or [],
            node_versions=versions or {},
            note=note,
        )
        return self._log(record, detection)

    def _log(self, record: UpgradeRecord, detection: Detection) -> Detection:
        self.logger.info(
            f"{record.ref}: persisted={detection.persisted.value}, "
            f"observed=[{detection.floor.value}, {detection.ceiling.value}], "
            f"discrepancy={detection.discrepancy.value} ({detection.note})"
        )
        return detection
