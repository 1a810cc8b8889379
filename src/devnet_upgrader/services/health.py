"""Post-upgrade health verification."""

import asyncio
import logging

from devnet_upgrader.errors import NodeUnavailable, NodeUnhealthy
from devnet_upgrader.models.chain import NodeHealth, NodeInfo
from devnet_upgrader.models.spec import DevnetRef
from devnet_upgrader.ports import HealthChecker, NodeRepository


class HealthVerifier:
    """Polls node health until the devnet is producing blocks past the upgrade.

    A node fails the check only after `failure_threshold` consecutive
    unhealthy reports; a healthy report resets its counter. Failures are
    counted only once the node has answered, so a container still booting
    after the switch is waited on until the phase deadline instead.
    """

    def __init__(
        self,
        nodes: NodeRepository,
        checker: HealthChecker,
        failure_threshold: int = 3,
        poll_interval: float = 2.0,
    ):
        self.logger = logging.getLogger("devnet_upgrader.health")
        self.nodes = nodes
        self.checker = checker
        self.failure_threshold = failure_threshold
        self.poll_interval = poll_interval

    async def verify(self, devnet: DevnetRef, target_height: int) -> int:
        """Wait until every node is healthy at or above target_height.

        Returns:
            Highest height reported by the nodes

        Raises:
            NodeUnhealthy: A node reached the consecutive-failure threshold
        """
        nodes = await self.nodes.list_nodes(devnet)
        failures = {node.name: 0 for node in nodes}
        # Nodes whose RPC responded at least once since the restart
        answered: set[str] = set()

        while True:
            reports = [await self._check(devnet, node) for node in nodes]
            for report in reports:
                if report.healthy or report.error is None:
                    answered.add(report.node)
                if report.healthy:
                    failures[report.node] = 0
                    continue
                if report.node not in answered:
                    self.logger.info(f"{devnet}: waiting for {report.node} to come up: {report.error}")
                    continue
                failures[report.node] += 1
                self.logger.warning(
                    f"{devnet}: {report.node} unhealthy "
                    f"({failures[report.node]}/{self.failure_threshold}): {report.error or 'catching up'}"
                )
                if failures[report.node] >= self.failure_threshold:
                    raise NodeUnhealthy(
                        f"Node {report.node} unhealthy {failures[report.node]} times in a row: "
                        f"{report.error or 'not serving blocks'}"
                    )

            height = max((r.height for r in reports), default=0)
            if reports and all(r.healthy for r in reports) and height >= target_height:
                self.logger.info(f"{devnet}: all {len(reports)} node(s) healthy at height {height}")
                return height
            await asyncio.sleep(self.poll_interval)

    async def _check(self, devnet: DevnetRef, node: NodeInfo) -> NodeHealth:
        try:
            return await self.checker.check(devnet, node)
        except NodeUnavailable as e:
            return NodeHealth(node=node.name, healthy=False, error=str(e))
