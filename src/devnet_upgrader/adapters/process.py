"""Node process control through the docker CLI."""

import asyncio
import logging
from pathlib import Path
from typing import Optional

from devnet_upgrader.errors import NodeUnavailable
from devnet_upgrader.models.chain import NodeInfo
from devnet_upgrader.models.spec import DevnetRef


class DockerProcessExecutor:
    """Manages node container lifecycle.

    A node's binary reference is either an image tag (the container is
    recreated from it on start) or an absolute host path (copied into the
    stopped container as the chain binary).
    """

    def __init__(self, docker_cli: str = "docker", binary_name: str = "stabled"):
        """Initialize process executor.

        Args:
            docker_cli: docker executable name or path
            binary_name: Chain binary inside the node containers
        """
        self.logger = logging.getLogger("devnet_upgrader.process")
        self.docker_cli = docker_cli
        self.binary_name = binary_name

    async def stop(self, devnet: DevnetRef, node: NodeInfo) -> None:
        self.logger.info(f"{devnet}: stopping {node.name}")
        await self._docker("stop", self._container(node))

    async def start(self, devnet: DevnetRef, node: NodeInfo) -> None:
        """Start a node, applying its binary reference first."""
        container = self._container(node)
        if node.binary and Path(node.binary).is_absolute():
            await self._docker("cp", node.binary, f"{container}:/usr/bin/{self.binary_name}")
        elif node.binary:
            current_image = await self.image_of(node)
            if current_image != node.binary:
                self.logger.info(f"{devnet}: recreating {node.name} from {node.binary}")
                await self._docker("rm", "-f", container)
                await self._docker(
                    "run", "-d", "--name", container, *node.run_args, node.binary, *node.command
                )
                return
        self.logger.info(f"{devnet}: starting {node.name}")
        await self._docker("start", container)

    async def restart(self, devnet: DevnetRef, node: NodeInfo) -> None:
        self.logger.info(f"{devnet}: restarting {node.name}")
        await self._docker("restart", self._container(node))

    async def is_running(self, devnet: DevnetRef, node: NodeInfo) -> bool:
        try:
            state = await self._docker("inspect", "-f", "{{.State.Running}}", self._container(node))
        except NodeUnavailable:
            return False
        return state == "true"

    async def query_version(self, devnet: DevnetRef, node: NodeInfo) -> Optional[str]:
        if not await self.is_running(devnet, node):
            return None
        version = await self._docker("exec", self._container(node), self.binary_name, "version")
        return version or None

    async def exec(
        self, devnet: DevnetRef, node: NodeInfo, args: list[str], stdin: Optional[str] = None
    ) -> str:
        """Run a command inside the node container and return its stdout."""
        interactive = ["-i"] if stdin is not None else []
        return await self._docker("exec", *interactive, self._container(node), *args, stdin=stdin)

    async def image_of(self, node: NodeInfo) -> str:
        return await self._docker("inspect", "-f", "{{.Config.Image}}", self._container(node))

    async def run_oneshot(self, args: list[str]) -> tuple[str, str]:
        """`docker run --rm` a one-shot container; returns (stdout, stderr)."""
        return await self._run(self.docker_cli, "run", "--rm", *args)

    def _container(self, node: NodeInfo) -> str:
        return node.container or node.name

    async def _docker(self, *args: str, stdin: Optional[str] = None) -> str:
        stdout, _ = await self._run(self.docker_cli, *args, stdin=stdin)
        return stdout.strip()

    async def _run(self, *command: str, stdin: Optional[str] = None) -> tuple[str, str]:
        self.logger.debug(f"Running: {' '.join(command)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE if stdin is not None else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise NodeUnavailable(f"Failed to run {command[0]}: {e}") from e

        stdout, stderr = await process.communicate(stdin.encode() if stdin is not None else None)
        if process.returncode != 0:
            raise NodeUnavailable(
                f"{' '.join(command[:3])} failed: exit code {process.returncode}, "
                f"stderr: {stderr.decode(errors='replace').strip()}"
            )
        return stdout.decode(errors="replace"), stderr.decode(errors="replace")
