"""Per-node health over the CometBFT RPC."""

import logging

import httpx

from devnet_upgrader.models.chain import NodeHealth, NodeInfo
from devnet_upgrader.models.spec import DevnetRef


class RPCHealthChecker:
    """A node is healthy when its RPC answers and it is not catching up."""

    def __init__(self, timeout: float = 5.0):
        self.logger = logging.getLogger("devnet_upgrader.health_checker")
        self.timeout = timeout

    async def check(self, devnet: DevnetRef, node: NodeInfo) -> NodeHealth:
        base = node.rpc_url.rstrip("/")
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(f"{base}/status")
                response.raise_for_status()
                sync_info = response.json()["result"]["sync_info"]

                app_version = None
                abci = await client.get(f"{base}/abci_info")
                if abci.status_code == 200:
                    app_version = abci.json().get("result", {}).get("response", {}).get("version")
        except (httpx.HTTPError, KeyError, ValueError) as e:
            self.logger.debug(f"{devnet}: health check of {node.name} failed: {e}")
            return NodeHealth(node=node.name, healthy=False, error=str(e) or type(e).__name__)

        catching_up = bool(sync_info.get("catching_up", False))
        return NodeHealth(
            node=node.name,
            healthy=not catching_up,
            height=int(sync_info.get("latest_block_height", 0)),
            catching_up=catching_up,
            app_version=app_version,
        )
