"""Governance proposal submission for software upgrades."""

import logging
from typing import Optional

from devnet_upgrader.errors import ChainUnavailable, InvalidSpec
from devnet_upgrader.models.chain import SubmittedProposal
from devnet_upgrader.models.spec import UpgradeSpec
from devnet_upgrader.ports import ChainClient, ValidatorKeyLoader

DEFAULT_BLOCK_TIME = 2.0
TARGET_BUFFER_SECONDS = 80.0
MIN_AUTO_BUFFER = 10
MAX_AUTO_BUFFER = 200
YOUNG_CHAIN_BUFFER = 40
YOUNG_CHAIN_HEIGHT = 5


def auto_height_buffer(current_height: int, block_time: float) -> int:
    """Blocks covering ~80s past the end of voting, clamped to [10, 200]."""
    if current_height < YOUNG_CHAIN_HEIGHT:
        return YOUNG_CHAIN_BUFFER
    buffer = int(TARGET_BUFFER_SECONDS / block_time)
    return max(MIN_AUTO_BUFFER, min(MAX_AUTO_BUFFER, buffer))


class GovernanceProposer:
    """Submits one MsgSoftwareUpgrade proposal signed by the first validator."""

    def __init__(self, chain: ChainClient, keys: ValidatorKeyLoader):
        self.logger = logging.getLogger("devnet_upgrader.proposer")
        self.chain = chain
        self.keys = keys

    async def propose(self, spec: UpgradeSpec) -> SubmittedProposal:
        """Resolve the upgrade height and submit the proposal.

        Args:
            spec: Upgrade specification

        Returns:
            SubmittedProposal with the on-chain id, tx hash and target height

        Raises:
            ChainUnavailable: RPC endpoint unreachable
            InvalidSpec: Height in the past or no validator key to sign with
            ProposalRejectedAtSubmission: Chain refused the transaction
        """
        devnet = spec.devnet
        height = await self.resolve_height(spec)

        keys = await self.keys.load_validator_keys(devnet)
        if not keys:
            raise InvalidSpec(f"Devnet {devnet} has no validator key to sign the proposal")
        proposer = keys[0]

        self.logger.info(
            f"{devnet}: submitting upgrade proposal '{spec.upgrade_name}' at height {height} "
            f"signed by {proposer.name}"
        )
        proposal_id, tx_hash = await self.chain.submit_proposal(
            devnet,
            proposer,
            plan_name=spec.upgrade_name,
            title=spec.title,
            description=spec.description or spec.title,
            height=height,
            deposit=spec.deposit,
        )
        self.logger.info(f"{devnet}: proposal submitted: id={proposal_id}, tx={tx_hash}")
        return SubmittedProposal(proposal_id=proposal_id, tx_hash=tx_hash, target_height=height)

    async def resolve_height(self, spec: UpgradeSpec) -> int:
        devnet = spec.devnet
        current = await self.chain.get_block_height(devnet)
        strategy = spec.height

        if strategy.height is not None:
            if strategy.height <= current:
                raise InvalidSpec(
                    f"Upgrade height {strategy.height} is not above current height {current}"
                )
            return strategy.height

        if strategy.blocks_from_now is not None:
            return current + strategy.blocks_from_now

        voting_period = await self._voting_period(spec)
        block_time = await self._block_time(spec)
        voting_blocks = int(voting_period / block_time)
        buffer = spec.height_buffer or auto_height_buffer(current, block_time)
        height = current + voting_blocks + buffer
        self.logger.debug(
            f"Upgrade height calculation: current={current} + voting={voting_blocks} "
            f"+ buffer={buffer} = {height} (block time {block_time:.2f}s)"
        )
        return height

    async def _voting_period(self, spec: UpgradeSpec) -> float:
        chain_period: Optional[float] = None
        try:
            chain_period = (await self.chain.get_gov_params(spec.devnet)).voting_period
        except ChainUnavailable as e:
            self.logger.debug(f"Could not fetch governance params, using {spec.voting_period}s: {e}")
        # The proposal must not reach its height before voting can end
        return max(spec.voting_period, chain_period or 0.0)

    async def _block_time(self, spec: UpgradeSpec) -> float:
        try:
            return await self.chain.get_block_time(spec.devnet, sample=5)
        except ChainUnavailable as e:
            self.logger.debug(f"Could not estimate block time, using {DEFAULT_BLOCK_TIME}s: {e}")
            return DEFAULT_BLOCK_TIME
