"""Global pytest fixtures and configuration."""

import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from devnet_upgrader.config import Settings  # noqa: E402
from devnet_upgrader.errors import ChainUnavailable, ExportFailed, NodeUnavailable  # noqa: E402
from devnet_upgrader.models.chain import (  # noqa: E402
    GovParams,
    NodeHealth,
    NodeInfo,
    ProposalInfo,
    ValidatorKey,
)
from devnet_upgrader.models.record import UpgradeRecord  # noqa: E402
from devnet_upgrader.models.spec import BinaryRef, DevnetRef, UpgradeSpec  # noqa: E402
from devnet_upgrader.models.status import ProposalStatus  # noqa: E402
from devnet_upgrader.services.provider import build_services  # noqa: E402

OLD_IMAGE = "ghcr.io/example/chain:v1.0.0"
NEW_IMAGE = "ghcr.io/example/chain:v2.0.0"
OLD_VERSION = "v1.0.0"
NEW_VERSION = "v2.0.0"


class FakeDevnet:
    """In-memory devnet implementing every collaborator port.

    The chain advances `blocks_per_poll` blocks each time its height is
    read and halts one block short of a passed upgrade's height until
    every node runs a binary other than the original one.
    """

    def __init__(self, node_count: int = 4, height: int = 100):
        self.height = height
        self.block_time = 1.0
        self.voting_period = 30.0
        self.blocks_per_poll = 5
        self.frozen = False
        self.chain_down = False
        self.initial_status = ProposalStatus.VOTING_PERIOD
        self.tally_result = ProposalStatus.PASSED

        self.proposals: dict[int, ProposalInfo] = {}
        self.votes: dict[int, set[str]] = {}
        self.submissions: list[dict] = []
        self.vote_txs: list[tuple[int, str]] = []

        self.versions = {OLD_IMAGE: OLD_VERSION, NEW_IMAGE: NEW_VERSION}
        self.nodes = [
            NodeInfo(
                name=f"node{i}",
                index=i,
                container=f"devnet-node{i}",
                rpc_url=f"http://127.0.0.1:{26657 + i * 100}",
                binary=OLD_IMAGE,
            )
            for i in range(node_count)
        ]
        self.binaries = {node.name: OLD_IMAGE for node in self.nodes}
        self.running = {node.name: True for node in self.nodes}
        self.keys = [
            ValidatorKey(name=f"validator{i}", address=f"cosmos1val{i}", node=f"node{i}")
            for i in range(node_count)
        ]

        self.fail_start: set[str] = set()
        self.unhealthy: set[str] = set()
        self.fail_export: set[str] = set()
        self.exports: list[Path] = []
        self.calls: list[tuple[str, str]] = []

    # --- chain ------------------------------------------------------------

    def _halt_height(self) -> Optional[int]:
        if all(self.binaries[n] != OLD_IMAGE for n in self.binaries):
            return None
        passed = [
            p.plan_height for p in self.proposals.values()
            if p.status == ProposalStatus.PASSED and p.plan_height
        ]
        return min(passed) - 1 if passed else None

    def tick(self) -> None:
        if self.frozen:
            return
        halt = self._halt_height()
        following = self.height + self.blocks_per_poll
        self.height = min(following, halt) if halt is not None and self.height <= halt else following

    def _check_chain(self) -> None:
        if self.chain_down:
            raise ChainUnavailable("connection refused")

    async def get_block_height(self, devnet: DevnetRef) -> int:
        self._check_chain()
        self.tick()
        return self.height

    async def get_block_time(self, devnet: DevnetRef, sample: int = 5) -> float:
        self._check_chain()
        return self.block_time

    async def get_gov_params(self, devnet: DevnetRef) -> GovParams:
        self._check_chain()
        return GovParams(voting_period=self.voting_period)

    async def get_proposal(self, devnet: DevnetRef, proposal_id: int) -> Optional[ProposalInfo]:
        self._check_chain()
        proposal = self.proposals.get(proposal_id)
        if proposal is None:
            return None
        if proposal.status == ProposalStatus.VOTING_PERIOD and len(self.votes[proposal_id]) >= len(self.keys):
            proposal = proposal.model_copy(update={"status": self.tally_result})
            self.proposals[proposal_id] = proposal
        return proposal

    async def find_upgrade_proposal(
        self, devnet: DevnetRef, plan_name: str, since: Optional[datetime] = None
    ) -> Optional[ProposalInfo]:
        self._check_chain()
        for proposal_id in sorted(self.proposals, reverse=True):
            proposal = self.proposals[proposal_id]
            if proposal.plan_name != plan_name:
                continue
            if since is not None and proposal.submit_time and proposal.submit_time < since:
                continue
            return await self.get_proposal(devnet, proposal_id)
        return None

    async def get_voters(self, devnet: DevnetRef, proposal_id: int) -> set[str]:
        self._check_chain()
        return set(self.votes.get(proposal_id, set()))

    async def submit_proposal(self, devnet, key, plan_name, title, description, height, deposit):
        self._check_chain()
        proposal_id = len(self.proposals) + 1
        self.proposals[proposal_id] = ProposalInfo(
            id=proposal_id,
            status=self.initial_status,
            plan_name=plan_name,
            plan_height=height,
            submit_time=datetime.now(timezone.utc),
        )
        self.votes[proposal_id] = set()
        self.submissions.append({"plan_name": plan_name, "height": height, "proposer": key.address})
        return proposal_id, f"TXPROP{proposal_id}"

    async def submit_vote(self, devnet, key, proposal_id, option="yes"):
        self._check_chain()
        self.votes[proposal_id].add(key.address)
        self.vote_txs.append((proposal_id, key.address))
        return f"TXVOTE{proposal_id}{key.address[-1]}"

    # --- keys / nodes -----------------------------------------------------

    async def load_validator_keys(self, devnet: DevnetRef) -> list[ValidatorKey]:
        return list(self.keys)

    async def list_nodes(self, devnet: DevnetRef) -> list[NodeInfo]:
        return [node.model_copy(update={"binary": self.binaries[node.name]}) for node in self.nodes]

    async def set_node_binary(self, devnet: DevnetRef, node: str, binary: str) -> None:
        self.binaries[node] = binary

    # --- processes ----------------------------------------------------------

    async def stop(self, devnet: DevnetRef, node: NodeInfo) -> None:
        self.calls.append(("stop", node.name))
        self.running[node.name] = False

    async def start(self, devnet: DevnetRef, node: NodeInfo) -> None:
        self.calls.append(("start", node.name))
        if node.name in self.fail_start:
            raise NodeUnavailable(f"{node.name}: container failed to start")
        self.binaries[node.name] = node.binary
        self.running[node.name] = True

    async def restart(self, devnet: DevnetRef, node: NodeInfo) -> None:
        self.calls.append(("restart", node.name))
        self.running[node.name] = True

    async def is_running(self, devnet: DevnetRef, node: NodeInfo) -> bool:
        return self.running[node.name]

    async def query_version(self, devnet: DevnetRef, node: NodeInfo) -> Optional[str]:
        if not self.running[node.name]:
            return None
        return self.versions[self.binaries[node.name]]

    # --- health / export ----------------------------------------------------

    async def check(self, devnet: DevnetRef, node: NodeInfo) -> NodeHealth:
        if node.name == self.nodes[0].name:
            self.tick()
        if not self.running[node.name]:
            return NodeHealth(node=node.name, healthy=False, error="rpc not responding")
        if node.name in self.unhealthy:
            return NodeHealth(node=node.name, healthy=False, height=self.height)
        return NodeHealth(node=node.name, healthy=True, height=self.height)

    async def export_genesis(self, devnet: DevnetRef, label: str, directory: Path) -> Path:
        if label in self.fail_export:
            raise ExportFailed(f"export of {label} genesis failed")
        path = Path(directory) / f"{devnet.namespace}-{devnet.name}-{label}.json"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps({"app_state": {}, "initial_height": str(self.height)}))
        self.exports.append(path)
        return path


class FakeFleet:
    """Routes every port call to a separate FakeDevnet per devnet key."""

    def __init__(self):
        self.devnets: dict[str, FakeDevnet] = {}

    def __getitem__(self, key: str) -> FakeDevnet:
        return self.devnets.setdefault(key, FakeDevnet())

    def __getattr__(self, name):
        async def call(devnet, *args, **kwargs):
            return await getattr(self[devnet.key], name)(devnet, *args, **kwargs)

        return call


def make_spec(devnet: str = "dev1", **overrides) -> UpgradeSpec:
    """UpgradeSpec for the fake devnet; overrides are passed through."""
    fields = {
        "devnet": DevnetRef(namespace="default", name=devnet),
        "upgrade_name": "v2",
        "title": "Upgrade to v2.0.0",
        "target": BinaryRef(image=NEW_IMAGE, version=NEW_VERSION),
        "voting_period": 30.0,
    }
    fields.update(overrides)
    return UpgradeSpec(**fields)


def make_record(spec: Optional[UpgradeSpec] = None, **fields) -> UpgradeRecord:
    record = UpgradeRecord.create(spec or make_spec())
    for name, value in fields.items():
        setattr(record, name, value)
    return record


@pytest.fixture
def fake_devnet():
    return FakeDevnet()


@pytest.fixture
def settings(tmp_path):
    """Settings with short polls and deadlines rooted in tmp_path."""
    return Settings(
        home_dir=tmp_path / "home",
        log_file=str(tmp_path / "logs" / "devnet-upgrader.log"),
        resume_on_startup=False,
        poll_interval=0.01,
        propose_timeout=5.0,
        vote_ready_timeout=1.0,
        vote_timeout=5.0,
        tally_timeout=5.0,
        height_timeout=5.0,
        export_timeout=5.0,
        switch_timeout=5.0,
        confirm_timeout=5.0,
        health_timeout=5.0,
    )


@pytest.fixture
def services(settings, fake_devnet):
    """Real services wired over the in-memory devnet."""
    return build_services(
        settings,
        chain=fake_devnet,
        nodes=fake_devnet,
        keys=fake_devnet,
        processes=fake_devnet,
        health_checker=fake_devnet,
        exporter=fake_devnet,
    )


@pytest.fixture
def fleet():
    return FakeFleet()


@pytest.fixture
def fleet_services(settings, fleet):
    """Real services where each devnet gets its own in-memory devnet."""
    return build_services(
        settings,
        chain=fleet,
        nodes=fleet,
        keys=fleet,
        processes=fleet,
        health_checker=fleet,
        exporter=fleet,
    )


@pytest.fixture
def spec():
    return make_spec()


@pytest.fixture
def devnet_ref():
    return DevnetRef(namespace="default", name="dev1")
