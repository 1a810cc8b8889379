"""Binary switch across every node of a devnet."""

import asyncio
import logging
from typing import Callable, Optional

from devnet_upgrader.errors import NodeUnavailable, PartialSwitchError
from devnet_upgrader.models.chain import NodeInfo
from devnet_upgrader.models.record import NodeSwitch
from devnet_upgrader.models.spec import BinaryRef, DevnetRef
from devnet_upgrader.ports import NodeRepository, ProcessExecutor


class BinarySwitchExecutor:
    """Stop, re-point and start each node on the target binary.

    A node that already reports the target version is left alone, so a
    repeated switch after a crash only touches the nodes that were not
    switched yet.
    """

    def __init__(
        self,
        nodes: NodeRepository,
        processes: ProcessExecutor,
        poll_interval: float = 2.0,
    ):
        self.logger = logging.getLogger("devnet_upgrader.switcher")
        self.nodes = nodes
        self.processes = processes
        self.poll_interval = poll_interval

    async def switch(
        self,
        devnet: DevnetRef,
        target: BinaryRef,
        on_switch: Optional[Callable[[NodeSwitch], None]] = None,
    ) -> list[NodeSwitch]:
        """Switch every node to the target binary.

        Args:
            devnet: Devnet to switch
            target: Binary every node should run
            on_switch: Called for each node as soon as it is handled

        Returns:
            One NodeSwitch per node

        Raises:
            PartialSwitchError: One or more nodes failed; the others stay switched
        """
        nodes = await self.nodes.list_nodes(devnet)
        self.logger.info(f"{devnet}: switching {len(nodes)} node(s) to {target.reference} ({target.version})")

        results = await asyncio.gather(
            *(self._switch_node(devnet, node, target) for node in nodes),
            return_exceptions=True,
        )

        switched: list[NodeSwitch] = []
        failures: dict[str, str] = {}
        for node, result in zip(nodes, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, Exception):
                self.logger.error(f"{devnet}: switch failed on {node.name}: {result}")
                failures[node.name] = str(result) or type(result).__name__
                continue
            switched.append(result)
            if on_switch is not None:
                on_switch(result)

        if failures:
            raise PartialSwitchError(failures, [s.node for s in switched])
        return switched

    async def confirm(self, devnet: DevnetRef, target: BinaryRef) -> dict[str, str]:
        """Poll until every node reports the target version.

        Nodes found not running are restarted once. Runs until done; the
        caller bounds it with a deadline.
        """
        nodes = await self.nodes.list_nodes(devnet)
        restarted: set[str] = set()
        while True:
            confirmed: dict[str, str] = {}
            for node in nodes:
                version = await self._version(devnet, node)
                if version == target.version:
                    confirmed[node.name] = version
                    continue
                if node.name in restarted:
                    continue
                if not await self.processes.is_running(devnet, node):
                    self.logger.warning(f"{devnet}: {node.name} not running after switch, restarting")
                    await self.processes.restart(devnet, node)
                    restarted.add(node.name)
                elif version is not None:
                    self.logger.warning(
                        f"{devnet}: {node.name} still reports {version}, restarting"
                    )
                    await self.processes.restart(devnet, node)
                    restarted.add(node.name)

            if len(confirmed) == len(nodes):
                self.logger.info(f"{devnet}: all {len(nodes)} node(s) report {target.version}")
                return confirmed
            self.logger.debug(f"{devnet}: {len(confirmed)}/{len(nodes)} node(s) on {target.version}")
            await asyncio.sleep(self.poll_interval)

    async def _switch_node(self, devnet: DevnetRef, node: NodeInfo, target: BinaryRef) -> NodeSwitch:
        current = await self._version(devnet, node)
        if current == target.version:
            self.logger.info(f"{devnet}: {node.name} already on {target.version}, skipping")
            return NodeSwitch(node=node.name, old_version=current, new_version=target.version, skipped=True)

        if await self.processes.is_running(devnet, node):
            await self.processes.stop(devnet, node)
        await self.nodes.set_node_binary(devnet, node.name, target.reference)
        await self.processes.start(devnet, node.model_copy(update={"binary": target.reference}))
        self.logger.info(f"{devnet}: {node.name} switched {current or 'unknown'} -> {target.version}")
        return NodeSwitch(node=node.name, old_version=current, new_version=target.version)

    async def _version(self, devnet: DevnetRef, node: NodeInfo) -> Optional[str]:
        try:
            return await self.processes.query_version(devnet, node)
        except NodeUnavailable:
            return None
