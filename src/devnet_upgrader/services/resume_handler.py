"""Drive every interrupted upgrade to completion or terminal failure."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine, Optional, Union

from devnet_upgrader.errors import CorruptStateError, ResumeAggregateError, UpgradeInProgress
from devnet_upgrader.models.record import UpgradeRecord
from devnet_upgrader.models.spec import DevnetRef
from devnet_upgrader.models.status import PhaseEnum
from devnet_upgrader.services.resumable import ResumableOrchestrator
from devnet_upgrader.services.state_store import StateStore


@dataclass
class ResumeSummary:
    completed: list[str] = field(default_factory=list)
    terminal: dict[str, PhaseEnum] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, BaseException] = field(default_factory=dict)
    corrupt: dict[str, CorruptStateError] = field(default_factory=dict)

    @property
    def errors(self) -> dict[str, BaseException]:
        return {**self.corrupt, **self.failed}

    @property
    def ok(self) -> bool:
        return not self.errors

    def raise_for_errors(self) -> None:
        if self.errors:
            raise ResumeAggregateError(self.errors)


class ResumeHandler:
    """Resume all active upgrades concurrently.

    One stuck devnet never blocks the others: every failure is collected
    into the summary instead of aborting the run.

    When a launcher is set, each resume runs as its own registered task so
    it can be stopped individually.
    """

    def __init__(self, store: StateStore, resumable: ResumableOrchestrator):
        self.logger = logging.getLogger("devnet_upgrader.resume_handler")
        self.store = store
        self.resumable = resumable
        self.launcher: Optional[Callable[[DevnetRef, Coroutine[Any, Any, Any]], asyncio.Future]] = None

    async def resume_all(self) -> ResumeSummary:
        summary = ResumeSummary()
        records, corrupt = await self.store.scan()
        summary.corrupt.update(corrupt)
        active = [record for record in records if not record.is_terminal]

        if not active and not corrupt:
            self.logger.info("No interrupted upgrades found")
            return summary
        self.logger.info(
            f"Resuming {len(active)} interrupted upgrade(s)"
            + (f", {len(corrupt)} corrupt record(s) need attention" if corrupt else "")
        )

        results = await asyncio.gather(
            *(self._launch(record) for record in active),
            return_exceptions=True,
        )
        for record, result in zip(active, results):
            self._collect(summary, record, result)

        self.logger.info(
            f"Resume finished: {len(summary.completed)} completed, {len(summary.terminal)} terminal, "
            f"{len(summary.skipped)} skipped, {len(summary.errors)} error(s)"
        )
        return summary

    def _launch(self, record: UpgradeRecord):
        coro = self.resumable.resume(record.ref)
        if self.launcher is None:
            return coro
        return self.launcher(record.ref, coro)

    def _collect(
        self, summary: ResumeSummary, record: UpgradeRecord, result: Union[UpgradeRecord, BaseException]
    ) -> None:
        key = record.ref.key
        if isinstance(result, UpgradeInProgress):
            self.logger.info(f"{key}: already being driven by another pass, skipped")
            summary.skipped.append(key)
        elif isinstance(result, BaseException):
            self.logger.error(f"{key}: resume failed: {result!r}")
            summary.failed[key] = result
        elif result.phase == PhaseEnum.COMPLETED:
            summary.completed.append(key)
        else:
            summary.terminal[key] = result.phase
