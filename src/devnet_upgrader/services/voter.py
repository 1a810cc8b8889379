"""Validator vote casting for an upgrade proposal."""

import asyncio
import logging
from typing import Optional

from devnet_upgrader.errors import ChainUnavailable, PhaseTimeout, VotingClosed
from devnet_upgrader.models.chain import ValidatorKey
from devnet_upgrader.models.spec import DevnetRef
from devnet_upgrader.models.status import ProposalStatus
from devnet_upgrader.ports import ChainClient
from devnet_upgrader.services.detector import StateDetector


class VoteCoordinator:
    """Casts a "yes" vote from every validator that has not voted yet.

    Re-invocation after a crash is safe: validators whose vote is already
    on-chain are looked up through the detector and skipped.
    """

    def __init__(
        self,
        chain: ChainClient,
        detector: StateDetector,
        poll_interval: float = 2.0,
        ready_timeout: float = 60.0,
    ):
        self.logger = logging.getLogger("devnet_upgrader.voter")
        self.chain = chain
        self.detector = detector
        self.poll_interval = poll_interval
        self.ready_timeout = ready_timeout

    async def vote(
        self, devnet: DevnetRef, proposal_id: int, validators: list[ValidatorKey]
    ) -> dict[str, Optional[str]]:
        """Vote yes from each validator.

        Returns:
            Mapping of validator address to vote tx hash; None for validators
            whose vote was already on-chain

        Raises:
            ChainUnavailable: RPC endpoint unreachable
            VotingClosed: Proposal already left its voting period
        """
        await self._wait_for_voting_period(devnet, proposal_id)

        already = await self.detector.already_voted(devnet, proposal_id)
        results: dict[str, Optional[str]] = {}
        for key in validators:
            if key.address in already:
                self.logger.info(f"{devnet}: {key.name} already voted on proposal {proposal_id}, skipping")
                results[key.address] = None
                continue
            tx_hash = await self.chain.submit_vote(devnet, key, proposal_id, option="yes")
            self.logger.info(f"{devnet}: {key.name} voted yes on proposal {proposal_id} (tx {tx_hash})")
            results[key.address] = tx_hash
        return results

    async def _wait_for_voting_period(self, devnet: DevnetRef, proposal_id: int) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.ready_timeout
        while True:
            proposal = await self.chain.get_proposal(devnet, proposal_id)
            if proposal is None:
                raise ChainUnavailable(f"Proposal {proposal_id} not visible on chain yet")
            if proposal.status == ProposalStatus.VOTING_PERIOD:
                return
            if proposal.status != ProposalStatus.DEPOSIT_PERIOD:
                raise VotingClosed(
                    f"Proposal {proposal_id} is no longer open for votes ({proposal.status.value})"
                )
            if loop.time() >= deadline:
                raise PhaseTimeout(
                    "proposed", self.ready_timeout, f"proposal {proposal_id} still in deposit period"
                )
            self.logger.debug(f"{devnet}: proposal {proposal_id} in deposit period, waiting")
            await asyncio.sleep(self.poll_interval)
