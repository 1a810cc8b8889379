"""Genesis snapshots exported from a node's data directory."""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path

import aiofiles
import aiofiles.os

from devnet_upgrader.adapters.devnet_repo import JsonDevnetRepository
from devnet_upgrader.adapters.process import DockerProcessExecutor
from devnet_upgrader.errors import ExportFailed, NodeUnavailable
from devnet_upgrader.models.spec import DevnetRef


class DockerGenesisExporter:
    """Runs `<binary> export` in a one-shot container sharing the first
    validator's volumes, so it works while the node itself is stopped.
    """

    def __init__(self, devnets: JsonDevnetRepository, executor: DockerProcessExecutor):
        self.logger = logging.getLogger("devnet_upgrader.export")
        self.devnets = devnets
        self.executor = executor

    async def export_genesis(self, devnet: DevnetRef, label: str, directory: Path) -> Path:
        """Export the devnet state and write it to <directory>.

        Returns:
            Path of the written genesis file

        Raises:
            ExportFailed: If the export command fails or produces no JSON
        """
        manifest = await self.devnets.load_manifest(devnet)
        validators = [n for n in manifest.nodes if n.is_validator] or manifest.nodes
        if not validators:
            raise ExportFailed(f"Devnet {devnet} has no node to export from")
        node = sorted(validators, key=lambda n: n.index)[0]
        container = node.container or node.name

        try:
            image = await self.executor.image_of(node)
            stdout, stderr = await self.executor.run_oneshot(
                ["--volumes-from", container, "--entrypoint", manifest.binary_name, image,
                 "export", "--home", node.home]
            )
        except NodeUnavailable as e:
            raise ExportFailed(f"Genesis export from {node.name} failed: {e}") from e

        # Older SDK versions print the export on stderr
        document = stdout.strip() or stderr.strip()
        try:
            json.loads(document)
        except json.JSONDecodeError as e:
            raise ExportFailed(f"Genesis export from {node.name} is not valid JSON: {e}") from e

        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        target = Path(directory) / f"{devnet.namespace}-{devnet.name}-{label}-{stamp}.json"
        await aiofiles.os.makedirs(target.parent, exist_ok=True)
        async with aiofiles.open(target, "w", encoding="utf-8") as f:
            await f.write(document)
        self.logger.info(f"{devnet}: {label} genesis written to {target} ({len(document)} bytes)")
        return target
