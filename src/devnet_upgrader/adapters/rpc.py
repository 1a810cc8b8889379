"""Cosmos SDK chain client over CometBFT RPC and the REST gateway.

Queries go over HTTP with httpx. Transactions are signed and broadcast by
the chain CLI inside a validator container (test keyring), since the keys
live there.
"""

import asyncio
import json
import logging
import re
from datetime import datetime
from typing import Any, Optional

import httpx

from devnet_upgrader.adapters.devnet_repo import DevnetManifest, JsonDevnetRepository
from devnet_upgrader.adapters.process import DockerProcessExecutor
from devnet_upgrader.errors import (
    ChainUnavailable,
    NodeUnavailable,
    ProposalRejectedAtSubmission,
    VotingClosed,
)
from devnet_upgrader.models.chain import GovParams, NodeInfo, ProposalInfo, ValidatorKey
from devnet_upgrader.models.spec import DevnetRef
from devnet_upgrader.models.status import ProposalStatus

DEFAULT_BLOCK_TIME = 2.0
MIN_BLOCK_TIME = 0.1
MAX_BLOCK_TIME = 30.0
MSG_SOFTWARE_UPGRADE = "/cosmos.upgrade.v1beta1.MsgSoftwareUpgrade"
PROPOSAL_FILE = "/tmp/upgrade-proposal.json"

_DURATION = re.compile(r"^(\d+(?:\.\d+)?)s$")
_FRACTION = re.compile(r"\.(\d+)")


def parse_duration(value: str) -> float:
    """Parse a protobuf JSON duration such as '60s' or '172800.5s'."""
    match = _DURATION.match(value.strip())
    if not match:
        raise ValueError(f"Unrecognised duration: {value!r}")
    return float(match.group(1))


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp with up to nanosecond precision."""
    if not value:
        return None
    value = value.replace("Z", "+00:00")
    # datetime only keeps microseconds
    value = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value, count=1)
    return datetime.fromisoformat(value)


class CosmosChainClient:
    """ChainClient implementation for a Docker-hosted Cosmos SDK devnet."""

    def __init__(
        self,
        devnets: JsonDevnetRepository,
        executor: DockerProcessExecutor,
        timeout: float = 10.0,
        tx_poll_interval: float = 1.0,
        tx_poll_attempts: int = 15,
    ):
        self.logger = logging.getLogger("devnet_upgrader.rpc")
        self.devnets = devnets
        self.executor = executor
        self.timeout = timeout
        self.tx_poll_interval = tx_poll_interval
        self.tx_poll_attempts = tx_poll_attempts

    # --- queries ----------------------------------------------------------

    async def get_block_height(self, devnet: DevnetRef) -> int:
        status = await self._rpc(devnet, "/status")
        return int(status["result"]["sync_info"]["latest_block_height"])

    async def get_block_time(self, devnet: DevnetRef, sample: int = 5) -> float:
        """Average block time over the last `sample` blocks, 2s when implausible."""
        sample = max(sample, 2)
        current = await self.get_block_height(devnet)
        start = max(current - sample, 1)
        if current <= start:
            return DEFAULT_BLOCK_TIME
        start_time = await self._block_timestamp(devnet, start)
        end_time = await self._block_timestamp(devnet, current)
        if start_time is None or end_time is None:
            return DEFAULT_BLOCK_TIME
        average = (end_time - start_time).total_seconds() / (current - start)
        if average < MIN_BLOCK_TIME or average > MAX_BLOCK_TIME:
            return DEFAULT_BLOCK_TIME
        return average

    async def get_gov_params(self, devnet: DevnetRef) -> GovParams:
        body = await self._rest(devnet, "/cosmos/gov/v1/params/voting")
        params = body.get("params") or body.get("voting_params") or {}
        min_deposit = None
        deposits = params.get("min_deposit") or []
        if deposits:
            min_deposit = f"{deposits[0]['amount']}{deposits[0]['denom']}"
        return GovParams(voting_period=parse_duration(params["voting_period"]), min_deposit=min_deposit)

    async def get_proposal(self, devnet: DevnetRef, proposal_id: int) -> Optional[ProposalInfo]:
        body = await self._rest(devnet, f"/cosmos/gov/v1/proposals/{proposal_id}", allow_missing=True)
        if body is None:
            return None
        return self._parse_proposal(body["proposal"])

    async def find_upgrade_proposal(
        self, devnet: DevnetRef, plan_name: str, since: Optional[datetime] = None
    ) -> Optional[ProposalInfo]:
        body = await self._rest(
            devnet,
            "/cosmos/gov/v1/proposals",
            params={"pagination.reverse": "true", "pagination.limit": "20"},
        )
        for raw in body.get("proposals", []):
            proposal = self._parse_proposal(raw)
            if proposal.plan_name != plan_name:
                continue
            if since is not None and proposal.submit_time is not None and proposal.submit_time < since:
                continue
            return proposal
        return None

    async def get_voters(self, devnet: DevnetRef, proposal_id: int) -> set[str]:
        body = await self._rest(
            devnet, f"/cosmos/gov/v1/proposals/{proposal_id}/votes", allow_missing=True
        )
        if body is None:
            return set()
        return {vote["voter"] for vote in body.get("votes", [])}

    # --- transactions -----------------------------------------------------

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
        manifest = await self.devnets.load_manifest(devnet)
        node = self._signing_node(manifest, key)
        authority = await self._gov_authority(devnet)
        params = await self.get_gov_params(devnet)

        proposal = {
            "messages": [
                {
                    "@type": MSG_SOFTWARE_UPGRADE,
                    "authority": authority,
                    "plan": {"name": plan_name, "height": str(height), "info": ""},
                }
            ],
            "metadata": "",
            "deposit": deposit or params.min_deposit or "",
            "title": title,
            "summary": description,
        }
        await self._exec(devnet, node, ["sh", "-c", f"cat > {PROPOSAL_FILE}"], stdin=json.dumps(proposal))
        response = await self._broadcast(
            devnet, manifest, node, key, ["tx", "gov", "submit-proposal", PROPOSAL_FILE]
        )
        if response.get("code", 0) != 0:
            raise ProposalRejectedAtSubmission(f"Proposal rejected: {response.get('raw_log', '')}")

        tx_hash = response["txhash"]
        tx = await self._wait_for_tx(devnet, tx_hash)
        if tx.get("code", 0) != 0:
            raise ProposalRejectedAtSubmission(f"Proposal tx {tx_hash} failed: {tx.get('raw_log', '')}")
        proposal_id = self._event_attribute(tx, "submit_proposal", "proposal_id")
        if proposal_id is None:
            found = await self.find_upgrade_proposal(devnet, plan_name)
            if found is None:
                raise ChainUnavailable(f"Proposal tx {tx_hash} included but no proposal found for {plan_name}")
            return found.id, tx_hash
        return int(proposal_id), tx_hash

    async def submit_vote(
        self, devnet: DevnetRef, key: ValidatorKey, proposal_id: int, option: str = "yes"
    ) -> str:
        manifest = await self.devnets.load_manifest(devnet)
        node = self._signing_node(manifest, key)
        response = await self._broadcast(
            devnet, manifest, node, key, ["tx", "gov", "vote", str(proposal_id), option]
        )
        raw_log = response.get("raw_log", "")
        if response.get("code", 0) != 0:
            if "inactive proposal" in raw_log:
                raise VotingClosed(f"Proposal {proposal_id} is not in its voting period")
            raise ChainUnavailable(f"Vote from {key.name} rejected: {raw_log}")
        return response["txhash"]

    # --- helpers ----------------------------------------------------------

    async def _rpc(self, devnet: DevnetRef, path: str, params: Optional[dict[str, Any]] = None) -> dict:
        """GET a CometBFT RPC endpoint, trying every node until one answers."""
        nodes = await self.devnets.list_nodes(devnet)
        last_error: Optional[Exception] = None
        for node in nodes:
            try:
                return await self._get(f"{node.rpc_url.rstrip('/')}{path}", params)
            except (ChainUnavailable, httpx.HTTPStatusError) as e:
                last_error = e
        raise ChainUnavailable(f"No RPC endpoint of {devnet} answered {path}: {last_error}")

    async def _rest(
        self,
        devnet: DevnetRef,
        path: str,
        params: Optional[dict[str, Any]] = None,
        allow_missing: bool = False,
    ) -> Optional[dict]:
        manifest = await self.devnets.load_manifest(devnet)
        url = f"{manifest.rest_url.rstrip('/')}{path}"
        try:
            return await self._get(url, params)
        except httpx.HTTPStatusError as e:
            # gRPC gateway answers NotFound with 404, or 400 on older SDKs
            if allow_missing and e.response.status_code in (400, 404):
                return None
            raise ChainUnavailable(f"GET {url} returned {e.response.status_code}") from e

    async def _get(self, url: str, params: Optional[dict[str, Any]] = None) -> dict:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(url, params=params)
                if response.status_code >= 500:
                    raise ChainUnavailable(f"GET {url} returned {response.status_code}")
                response.raise_for_status()
                return response.json()
        except httpx.TransportError as e:
            raise ChainUnavailable(f"GET {url} failed: {e}") from e

    async def _block_timestamp(self, devnet: DevnetRef, height: int) -> Optional[datetime]:
        try:
            block = await self._rpc(devnet, "/block", params={"height": str(height)})
            return parse_timestamp(block["result"]["block"]["header"]["time"])
        except (ChainUnavailable, KeyError, ValueError) as e:
            self.logger.debug(f"{devnet}: could not read time of block {height}: {e}")
            return None

    async def _gov_authority(self, devnet: DevnetRef) -> str:
        body = await self._rest(devnet, "/cosmos/auth/v1beta1/module_accounts/gov")
        account = body["account"]
        return account.get("base_account", {}).get("address") or account["address"]

    async def _wait_for_tx(self, devnet: DevnetRef, tx_hash: str) -> dict:
        for _ in range(self.tx_poll_attempts):
            body = await self._rest(devnet, f"/cosmos/tx/v1beta1/txs/{tx_hash}", allow_missing=True)
            if body is not None:
                return body["tx_response"]
            await asyncio.sleep(self.tx_poll_interval)
        raise ChainUnavailable(f"Transaction {tx_hash} not included after {self.tx_poll_attempts} polls")

    async def _broadcast(
        self,
        devnet: DevnetRef,
        manifest: DevnetManifest,
        node: NodeInfo,
        key: ValidatorKey,
        args: list[str],
    ) -> dict:
        command = [
            manifest.binary_name,
            *args,
            "--from", key.name,
            "--keyring-backend", key.keyring_backend,
            "--home", node.home,
            "--chain-id", manifest.chain_id,
            "--gas", "auto",
            "--gas-adjustment", "1.5",
            "--yes",
            "--output", "json",
        ]
        if manifest.gas_prices:
            command += ["--gas-prices", manifest.gas_prices]
        output = await self._exec(devnet, node, command)
        try:
            return json.loads(output)
        except json.JSONDecodeError as e:
            raise ChainUnavailable(f"Unexpected CLI output from {node.name}: {output[:200]}") from e

    async def _exec(
        self, devnet: DevnetRef, node: NodeInfo, args: list[str], stdin: Optional[str] = None
    ) -> str:
        try:
            return await self.executor.exec(devnet, node, args, stdin=stdin)
        except NodeUnavailable as e:
            raise ChainUnavailable(str(e)) from e

    def _signing_node(self, manifest: DevnetManifest, key: ValidatorKey) -> NodeInfo:
        for node in manifest.nodes:
            if node.name == key.node:
                return node
        raise ChainUnavailable(f"Node {key.node} holding key {key.name} not in devnet manifest")

    @staticmethod
    def _event_attribute(tx: dict, event_type: str, attribute: str) -> Optional[str]:
        for event in tx.get("events", []):
            if event.get("type") != event_type:
                continue
            for attr in event.get("attributes", []):
                if attr.get("key") == attribute:
                    return attr.get("value")
        return None

    @staticmethod
    def _parse_proposal(raw: dict) -> ProposalInfo:
        plan_name = None
        plan_height = None
        for message in raw.get("messages", []):
            if message.get("@type") == MSG_SOFTWARE_UPGRADE:
                plan = message.get("plan", {})
                plan_name = plan.get("name")
                plan_height = int(plan["height"]) if plan.get("height") else None
                break
        try:
            status = ProposalStatus(raw.get("status", ProposalStatus.UNSPECIFIED.value))
        except ValueError:
            status = ProposalStatus.UNSPECIFIED
        return ProposalInfo(
            id=int(raw["id"]),
            status=status,
            plan_name=plan_name,
            plan_height=plan_height,
            submit_time=parse_timestamp(raw.get("submit_time")),
            voting_end_time=parse_timestamp(raw.get("voting_end_time")),
        )
