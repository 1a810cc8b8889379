"""Single-pass upgrade workflow driver.

`record.phase` is the last checkpointed milestone. Each loop iteration runs
the action that belongs to the current phase under its own deadline, then
asks the transitioner for the next phase and checkpoints the record:

    pending           submit proposal
    proposed          cast validator votes
    voting            poll tally until passed/rejected
    vote_passed       resolve/validate target height
    awaiting_height   poll block height (hard timeout is terminal)
    exporting_state   export "before" genesis
    switching_binary  stop / re-point / start every node
    restarting_nodes  confirm every node reports the target version
    verifying_health  health poll, then "after" genesis export
"""

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional

from devnet_upgrader.config import PhaseTimings
from devnet_upgrader.errors import (
    ChainUnavailable,
    ExportFailed,
    HeightTimeout,
    InconsistentStateError,
    PhaseTimeout,
    UpgradeError,
)
from devnet_upgrader.models.record import UpgradeRecord, utcnow
from devnet_upgrader.models.status import Outcome, PhaseEnum, ProposalStatus
from devnet_upgrader.ports import ChainClient, ExportService, ValidatorKeyLoader
from devnet_upgrader.services.health import HealthVerifier
from devnet_upgrader.services.locks import UpgradeLockManager
from devnet_upgrader.services.proposer import GovernanceProposer
from devnet_upgrader.services.reporter import ReportService
from devnet_upgrader.services.state_store import StateStore
from devnet_upgrader.services.switcher import BinarySwitchExecutor
from devnet_upgrader.services.transitioner import StateTransitioner
from devnet_upgrader.services.voter import VoteCoordinator

ActionResult = tuple[Outcome, str]


class UpgradeOrchestrator:
    """Drives one record from its current phase to a terminal phase."""

    def __init__(
        self,
        store: StateStore,
        transitioner: StateTransitioner,
        locks: UpgradeLockManager,
        chain: ChainClient,
        keys: ValidatorKeyLoader,
        proposer: GovernanceProposer,
        voter: VoteCoordinator,
        switcher: BinarySwitchExecutor,
        health: HealthVerifier,
        exporter: ExportService,
        reporter: Optional[ReportService] = None,
        timings: Optional[PhaseTimings] = None,
    ):
        self.logger = logging.getLogger("devnet_upgrader.orchestrator")
        self.store = store
        self.transitioner = transitioner
        self.locks = locks
        self.chain = chain
        self.keys = keys
        self.proposer = proposer
        self.voter = voter
        self.switcher = switcher
        self.health = health
        self.exporter = exporter
        self.reporter = reporter or ReportService()
        self.timings = timings or PhaseTimings()

        self._actions: dict[PhaseEnum, Callable[[UpgradeRecord], Awaitable[ActionResult]]] = {
            PhaseEnum.PENDING: self._propose,
            PhaseEnum.PROPOSED: self._vote,
            PhaseEnum.VOTING: self._await_tally,
            PhaseEnum.VOTE_PASSED: self._resolve_height,
            PhaseEnum.AWAITING_HEIGHT: self._await_height,
            PhaseEnum.EXPORTING_STATE: self._export_before,
            PhaseEnum.SWITCHING_BINARY: self._switch,
            PhaseEnum.RESTARTING_NODES: self._confirm,
            PhaseEnum.VERIFYING_HEALTH: self._verify_health,
        }

    def deadline_for(self, phase: PhaseEnum) -> float:
        t = self.timings
        return {
            PhaseEnum.PENDING: t.propose_timeout,
            PhaseEnum.PROPOSED: t.vote_ready_timeout + t.vote_timeout,
            PhaseEnum.VOTING: t.tally_timeout,
            PhaseEnum.VOTE_PASSED: t.propose_timeout,
            PhaseEnum.AWAITING_HEIGHT: t.height_timeout,
            PhaseEnum.EXPORTING_STATE: t.export_timeout,
            PhaseEnum.SWITCHING_BINARY: t.switch_timeout,
            PhaseEnum.RESTARTING_NODES: t.confirm_timeout,
            PhaseEnum.VERIFYING_HEALTH: t.health_timeout + t.export_timeout,
        }[phase]

    async def execute(self, record: UpgradeRecord) -> UpgradeRecord:
        """Hold the devnet lock and run the record to a terminal phase.

        Raises:
            UpgradeInProgress: Another pass holds the devnet
            UpgradeError: The phase that failed; the record is checkpointed
                at its last completed phase (or failed, for terminal errors)
        """
        async with self.locks.hold(record.ref):
            return await self.run(record)

    async def run(self, record: UpgradeRecord) -> UpgradeRecord:
        """Run without taking the lock; the caller must already hold it."""
        self.logger.info(
            f"{record.ref}: running upgrade {record.spec.upgrade_name} from phase {record.phase.value} "
            f"(attempt {record.attempts})"
        )
        while not record.is_terminal:
            await self.step(record)
        self.logger.info(f"{record.ref}: upgrade {record.spec.upgrade_name} finished: {record.phase.value}")
        return record

    async def step(self, record: UpgradeRecord) -> PhaseEnum:
        """Run the current phase's action and checkpoint the transition."""
        phase = record.phase
        action = self._actions[phase]
        deadline = self.deadline_for(phase)
        self.logger.debug(f"{record.ref}: phase {phase.value} starting (deadline {deadline:.0f}s)")

        try:
            outcome, reason = await asyncio.wait_for(action(record), timeout=deadline)
        except asyncio.TimeoutError:
            if phase == PhaseEnum.AWAITING_HEIGHT:
                error: UpgradeError = HeightTimeout(
                    phase.value, deadline, f"chain did not reach height {record.target_height}"
                )
            else:
                error = PhaseTimeout(phase.value, deadline)
            await self._record_failure(record, error)
            raise error from None
        except Exception as e:
            await self._record_failure(record, e)
            raise

        following = self.transitioner.advance(record, outcome, reason)
        await self.store.save(record)
        self.logger.info(f"{record.ref}: {phase.value} -> {following.value}: {reason}")
        await self.reporter.report_phase(record, reason)
        return following

    async def _record_failure(self, record: UpgradeRecord, error: Exception) -> None:
        record.record_error(error)
        if isinstance(error, UpgradeError) and error.terminal:
            self.transitioner.advance(record, Outcome.FAILED, str(error))
            self.logger.error(f"{record.ref}: upgrade failed in {record.history[-1].from_phase.value}: {error}")
        else:
            record.updated_at = utcnow()
            self.logger.warning(
                f"{record.ref}: phase {record.phase.value} interrupted, resumable: {error}"
            )
        await self.store.save(record)
        await self.reporter.report_phase(record, str(error))

    # --- phase actions --------------------------------------------------

    async def _propose(self, record: UpgradeRecord) -> ActionResult:
        if record.proposal_id is not None:
            return Outcome.SUCCESS, f"proposal {record.proposal_id} already submitted"
        submitted = await self.proposer.propose(record.spec)
        record.assign_proposal(submitted.proposal_id)
        record.target_height = submitted.target_height
        return Outcome.SUCCESS, (
            f"proposal {submitted.proposal_id} submitted for height {submitted.target_height} "
            f"(tx {submitted.tx_hash})"
        )

    async def _vote(self, record: UpgradeRecord) -> ActionResult:
        validators = await self.keys.load_validator_keys(record.ref)
        votes = await self.voter.vote(record.ref, self._proposal_id(record), validators)
        for address, tx_hash in votes.items():
            record.record_vote(address, tx_hash)
        cast = sum(1 for tx_hash in votes.values() if tx_hash)
        return Outcome.SUCCESS, f"{cast} vote(s) cast, {len(votes) - cast} already on-chain"

    async def _await_tally(self, record: UpgradeRecord) -> ActionResult:
        proposal_id = self._proposal_id(record)
        while True:
            proposal = await self.chain.get_proposal(record.ref, proposal_id)
            if proposal is None:
                raise InconsistentStateError(f"Proposal {proposal_id} disappeared from chain")
            if proposal.status == ProposalStatus.PASSED:
                return Outcome.SUCCESS, f"proposal {proposal_id} passed"
            if proposal.status in (ProposalStatus.REJECTED, ProposalStatus.FAILED):
                return Outcome.REJECTED, f"proposal {proposal_id} {proposal.status.value}"
            self.logger.debug(f"{record.ref}: proposal {proposal_id} {proposal.status.value}, waiting for tally")
            await asyncio.sleep(self.timings.poll_interval)

    async def _resolve_height(self, record: UpgradeRecord) -> ActionResult:
        proposal_id = self._proposal_id(record)
        proposal = await self.chain.get_proposal(record.ref, proposal_id)
        if proposal is None:
            raise InconsistentStateError(f"Proposal {proposal_id} disappeared from chain")
        plan_height = proposal.plan_height
        if record.target_height == 0:
            if not plan_height:
                raise InconsistentStateError(f"Proposal {proposal_id} carries no upgrade height")
            record.target_height = plan_height
        elif plan_height and plan_height != record.target_height:
            raise InconsistentStateError(
                f"Proposal {proposal_id} upgrades at {plan_height}, record expects {record.target_height}"
            )
        return Outcome.SUCCESS, f"upgrade height {record.target_height}"

    async def _await_height(self, record: UpgradeRecord) -> ActionResult:
        target = record.target_height
        last_height: Optional[int] = None
        while True:
            try:
                height = await self.chain.get_block_height(record.ref)
            except ChainUnavailable:
                # Nodes exit when they halt at the upgrade height
                if last_height is not None and last_height >= target - 1:
                    height = last_height
                    break
                raise
            # Height target-1 is the last block the old binary commits
            if height >= target or (height >= target - 1 and height == last_height):
                break
            self.logger.debug(f"{record.ref}: height {height}/{target}")
            last_height = height
            await asyncio.sleep(self.timings.poll_interval)

        if record.spec.export_genesis_before:
            return Outcome.SUCCESS, f"upgrade height reached ({height}/{target})"
        return Outcome.SKIP, f"upgrade height reached ({height}/{target}), pre-upgrade export disabled"

    async def _export_before(self, record: UpgradeRecord) -> ActionResult:
        path = await self._export(record, "before")
        return Outcome.SUCCESS, f"pre-upgrade genesis exported to {path}"

    async def _switch(self, record: UpgradeRecord) -> ActionResult:
        switches = await self.switcher.switch(record.ref, record.spec.target, on_switch=record.record_switch)
        skipped = sum(1 for s in switches if s.skipped)
        return Outcome.SUCCESS, (
            f"{len(switches) - skipped} node(s) switched to {record.spec.target.version}, "
            f"{skipped} already on it"
        )

    async def _confirm(self, record: UpgradeRecord) -> ActionResult:
        confirmed = await self.switcher.confirm(record.ref, record.spec.target)
        return Outcome.SUCCESS, f"{len(confirmed)} node(s) report {record.spec.target.version}"

    async def _verify_health(self, record: UpgradeRecord) -> ActionResult:
        height = await self.health.verify(record.ref, record.target_height)
        reason = f"devnet healthy at height {height}"
        if record.spec.export_genesis_after and "after" not in record.exported_genesis_paths:
            try:
                path = await self._export(record, "after")
                reason = f"{reason}, post-upgrade genesis exported to {path}"
            except ExportFailed as e:
                if "before" not in record.exported_genesis_paths:
                    raise
                self.logger.warning(f"{record.ref}: post-upgrade export failed, keeping pre-upgrade snapshot: {e}")
                reason = f"{reason}, post-upgrade export failed: {e}"
        return Outcome.SUCCESS, reason

    # --- helpers ----------------------------------------------------------

    async def _export(self, record: UpgradeRecord, label: str) -> Path:
        directory = Path(record.spec.genesis_export_dir or ".")
        path = await self.exporter.export_genesis(record.ref, label, directory)
        record.exported_genesis_paths[label] = str(path)
        self.logger.info(f"{record.ref}: {label} genesis exported to {path}")
        return path

    def _proposal_id(self, record: UpgradeRecord) -> int:
        if record.proposal_id is None:
            raise InconsistentStateError(
                f"Record {record.name} is at {record.phase.value} without a proposal id"
            )
        return record.proposal_id
