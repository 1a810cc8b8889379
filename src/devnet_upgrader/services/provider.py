"""Eager construction of every service the daemon needs.

Built once at startup and handed to the API through `app.state`. Tests
pass in-memory collaborators instead of the Docker/RPC adapters.
"""

import asyncio
import logging
from typing import Any, Coroutine, Optional

from devnet_upgrader.adapters.devnet_repo import JsonDevnetRepository
from devnet_upgrader.adapters.export import DockerGenesisExporter
from devnet_upgrader.adapters.health import RPCHealthChecker
from devnet_upgrader.adapters.process import DockerProcessExecutor
from devnet_upgrader.adapters.rpc import CosmosChainClient
from devnet_upgrader.config import Settings
from devnet_upgrader.models.spec import DevnetRef
from devnet_upgrader.ports import (
    ChainClient,
    ExportService,
    HealthChecker,
    NodeRepository,
    ProcessExecutor,
    ValidatorKeyLoader,
)
from devnet_upgrader.services.detector import StateDetector
from devnet_upgrader.services.health import HealthVerifier
from devnet_upgrader.services.locks import UpgradeLockManager
from devnet_upgrader.services.orchestrator import UpgradeOrchestrator
from devnet_upgrader.services.proposer import GovernanceProposer
from devnet_upgrader.services.reporter import ReportService
from devnet_upgrader.services.resumable import ResumableOrchestrator
from devnet_upgrader.services.resume_handler import ResumeHandler, ResumeSummary
from devnet_upgrader.services.state_store import StateStore
from devnet_upgrader.services.switcher import BinarySwitchExecutor
from devnet_upgrader.services.transitioner import StateTransitioner
from devnet_upgrader.services.voter import VoteCoordinator


class Services:
    """Service container plus the registry of running upgrade tasks."""

    def __init__(
        self,
        settings: Settings,
        store: StateStore,
        locks: UpgradeLockManager,
        detector: StateDetector,
        orchestrator: UpgradeOrchestrator,
        resumable: ResumableOrchestrator,
        resume_handler: ResumeHandler,
    ):
        self.logger = logging.getLogger("devnet_upgrader.provider")
        self.settings = settings
        self.store = store
        self.locks = locks
        self.detector = detector
        self.orchestrator = orchestrator
        self.resumable = resumable
        self.resume_handler = resume_handler
        self.tasks: dict[str, asyncio.Task] = {}
        self.startup_task: Optional[asyncio.Task] = None

    def is_running(self, devnet: DevnetRef) -> bool:
        task = self.tasks.get(devnet.key)
        return task is not None and not task.done()

    def launch(self, devnet: DevnetRef, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        """Run an upgrade coroutine in the background, tracked by devnet."""
        task = asyncio.create_task(coro, name=f"upgrade:{devnet.key}")
        self.tasks[devnet.key] = task
        task.add_done_callback(lambda t: self._finished(devnet.key, t))
        return task

    async def stop(self, devnet: DevnetRef) -> bool:
        """Cancel the devnet's running pass; the record keeps its last checkpoint."""
        task = self.tasks.get(devnet.key)
        if task is None or task.done():
            return False
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        self.logger.info(f"{devnet}: running upgrade pass stopped")
        return True

    def start_resume_all(self) -> asyncio.Task:
        self.startup_task = asyncio.create_task(self.resume_handler.resume_all(), name="resume-all")
        return self.startup_task

    async def shutdown(self) -> None:
        pending = [t for t in self.tasks.values() if not t.done()]
        if self.startup_task is not None and not self.startup_task.done():
            pending.append(self.startup_task)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            self.logger.info(f"Stopped {len(pending)} running upgrade task(s)")

    def _finished(self, key: str, task: asyncio.Task) -> None:
        if self.tasks.get(key) is task:
            del self.tasks[key]
        if task.cancelled():
            self.logger.info(f"{key}: upgrade task cancelled")
            return
        error = task.exception()
        if error is not None:
            # Already checkpointed on the record; surfaced via the status endpoint
            self.logger.warning(f"{key}: upgrade task ended with {type(error).__name__}: {error}")


def build_services(
    settings: Settings,
    chain: Optional[ChainClient] = None,
    nodes: Optional[NodeRepository] = None,
    keys: Optional[ValidatorKeyLoader] = None,
    processes: Optional[ProcessExecutor] = None,
    health_checker: Optional[HealthChecker] = None,
    exporter: Optional[ExportService] = None,
) -> Services:
    """Wire every component from settings; collaborators may be overridden."""
    state_dir = settings.resolved_state_dir
    timings = settings.timings()

    devnets = JsonDevnetRepository(settings.home_dir)
    docker = DockerProcessExecutor(settings.docker_cli, settings.chain_binary)
    nodes = nodes or devnets
    keys = keys or devnets
    processes = processes or docker
    chain = chain or CosmosChainClient(devnets, docker, timeout=settings.rpc_timeout)
    health_checker = health_checker or RPCHealthChecker(timeout=settings.rpc_timeout)
    exporter = exporter or DockerGenesisExporter(devnets, docker)

    store = StateStore(state_dir)
    locks = UpgradeLockManager(state_dir)
    transitioner = StateTransitioner()
    reporter = ReportService(settings.callback_url)
    detector = StateDetector(chain, nodes, processes, keys)

    orchestrator = UpgradeOrchestrator(
        store=store,
        transitioner=transitioner,
        locks=locks,
        chain=chain,
        keys=keys,
        proposer=GovernanceProposer(chain, keys),
        voter=VoteCoordinator(
            chain, detector, poll_interval=timings.poll_interval, ready_timeout=timings.vote_ready_timeout
        ),
        switcher=BinarySwitchExecutor(nodes, processes, poll_interval=timings.poll_interval),
        health=HealthVerifier(
            nodes,
            health_checker,
            failure_threshold=timings.health_failure_threshold,
            poll_interval=timings.poll_interval,
        ),
        exporter=exporter,
        reporter=reporter,
        timings=timings,
    )
    resumable = ResumableOrchestrator(store, locks, detector, transitioner, orchestrator)

    services = Services(
        settings=settings,
        store=store,
        locks=locks,
        detector=detector,
        orchestrator=orchestrator,
        resumable=resumable,
        resume_handler=ResumeHandler(store, resumable),
    )
    services.resume_handler.launcher = services.launch
    return services


__all__ = ["Services", "build_services", "ResumeSummary"]
