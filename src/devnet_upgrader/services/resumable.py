"""Checkpointed entry points around the upgrade orchestrator.

Every entry point takes the per-devnet lock first, so at most one of
start/resume/retry/cancel runs against a devnet at a time.
"""

import logging
from typing import Optional

from devnet_upgrader.errors import (
    ActiveUpgradeExists,
    ChainUnavailable,
    InconsistentStateError,
    UpgradeNotFound,
)
from devnet_upgrader.models.record import UpgradeRecord, utcnow
from devnet_upgrader.models.spec import DevnetRef, UpgradeSpec
from devnet_upgrader.models.status import Outcome
from devnet_upgrader.services.detector import Discrepancy, StateDetector
from devnet_upgrader.services.locks import UpgradeLockManager
from devnet_upgrader.services.orchestrator import UpgradeOrchestrator
from devnet_upgrader.services.state_store import StateStore
from devnet_upgrader.services.transitioner import StateTransitioner


class ResumableOrchestrator:
    """Reconcile persisted state with the live devnet, then continue the upgrade."""

    def __init__(
        self,
        store: StateStore,
        locks: UpgradeLockManager,
        detector: StateDetector,
        transitioner: StateTransitioner,
        orchestrator: UpgradeOrchestrator,
    ):
        self.logger = logging.getLogger("devnet_upgrader.resumable")
        self.store = store
        self.locks = locks
        self.detector = detector
        self.transitioner = transitioner
        self.orchestrator = orchestrator

    async def start(self, spec: UpgradeSpec) -> UpgradeRecord:
        """Create a pending record for the spec and run the first pass.

        Raises:
            ActiveUpgradeExists: The devnet already has a non-terminal record
        """
        async with self.locks.hold(spec.devnet):
            existing = await self.store.load(spec.devnet)
            if existing is not None and not existing.is_terminal:
                raise ActiveUpgradeExists(spec.devnet.key, existing.phase.value)
            record = await self._begin(spec, existing)
            return await self.orchestrator.run(record)

    async def resume(self, devnet: DevnetRef) -> UpgradeRecord:
        """Reconcile and continue the devnet's upgrade.

        Terminal records are returned untouched, so this is safe to call
        unconditionally.

        Raises:
            UpgradeNotFound: No record exists for the devnet
            UpgradeInProgress: Another pass holds the devnet
            InconsistentStateError: Chain is behind the recorded phase
        """
        async with self.locks.hold(devnet):
            record = await self.store.load(devnet)
            if record is None:
                raise UpgradeNotFound(devnet.key)
            if record.is_terminal:
                self.logger.info(f"{devnet}: upgrade {record.name} already {record.phase.value}, nothing to resume")
                return record

            record.attempts += 1
            await self._reconcile(record)
            if record.is_terminal:
                return record
            return await self.orchestrator.run(record)

    async def retry(self, devnet: DevnetRef) -> UpgradeRecord:
        """Archive a terminal record and start a fresh attempt with the same spec.

        The new attempt submits a new proposal; the archived record keeps
        its history.
        """
        async with self.locks.hold(devnet):
            existing = await self.store.load(devnet)
            if existing is None:
                raise UpgradeNotFound(devnet.key)
            if not existing.is_terminal:
                raise ActiveUpgradeExists(devnet.key, existing.phase.value)
            record = await self._begin(existing.spec, existing)
            return await self.orchestrator.run(record)

    async def cancel(self, devnet: DevnetRef, reason: str = "cancelled by operator") -> UpgradeRecord:
        """Move an idle, non-terminal record to cancelled.

        A running pass must be stopped (task cancellation) before this is
        called; otherwise the lock is held and UpgradeInProgress is raised.
        """
        async with self.locks.hold(devnet):
            record = await self.store.load(devnet)
            if record is None:
                raise UpgradeNotFound(devnet.key)
            if record.is_terminal:
                self.logger.info(f"{devnet}: upgrade {record.name} already {record.phase.value}, not cancelling")
                return record
            self.transitioner.advance(record, Outcome.CANCELLED, reason)
            await self.store.save(record)
            self.logger.warning(f"{devnet}: upgrade {record.name} cancelled: {reason}")
            await self.orchestrator.reporter.report_phase(record, reason)
            return record

    async def status(self, devnet: DevnetRef) -> UpgradeRecord:
        record = await self.store.load(devnet)
        if record is None:
            raise UpgradeNotFound(devnet.key)
        return record

    async def _begin(self, spec: UpgradeSpec, existing: Optional[UpgradeRecord]) -> UpgradeRecord:
        if existing is not None:
            await self.store.archive(existing)
        record = UpgradeRecord.create(spec, previous_attempt=existing.name if existing else None)
        record.attempts = 1
        await self.store.save(record)
        self.logger.info(
            f"{spec.devnet}: created upgrade record {record.name} for {spec.upgrade_name}"
            + (f" (replaces {existing.name})" if existing else "")
        )
        return record

    async def _reconcile(self, record: UpgradeRecord) -> None:
        """Align the record with what the detector observes and checkpoint it."""
        try:
            detection = await self.detector.detect(record)
        except ChainUnavailable as e:
            record.record_error(e)
            record.updated_at = utcnow()
            await self.store.save(record)
            raise

        proposal = detection.proposal
        if proposal is not None and record.proposal_id is None:
            record.assign_proposal(proposal.id)
        if proposal is not None and record.target_height == 0 and proposal.plan_height:
            record.target_height = proposal.plan_height

        if detection.discrepancy == Discrepancy.BEHIND:
            error = InconsistentStateError(
                f"Devnet {record.ref} is at {detection.ceiling.value} or earlier on-chain but the "
                f"record says {record.phase.value} ({detection.note})"
            )
            record.record_error(error)
            self.transitioner.advance(record, Outcome.FAILED, str(error))
            await self.store.save(record)
            await self.orchestrator.reporter.report_phase(record, str(error))
            raise error

        if detection.discrepancy == Discrepancy.AHEAD:
            self.logger.info(
                f"{record.ref}: fast-forwarding {record.phase.value} -> {detection.floor.value} "
                f"({detection.note})"
            )
            for outcome, _ in self.transitioner.path(record.phase, detection.floor):
                self.transitioner.advance(record, outcome, f"reconciled: {detection.note}")

        record.updated_at = utcnow()
        await self.store.save(record)
        if detection.discrepancy == Discrepancy.AHEAD:
            await self.orchestrator.reporter.report_phase(record, f"reconciled: {detection.note}")
