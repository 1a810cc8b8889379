"""Devnet manifests stored as JSON under the home directory.

    <home>/devnets/<namespace>/<name>/devnet.json

The manifest is written by the devnet provisioning tooling; the upgrader
only reads it and rewrites the per-node binary reference on switch.
"""

import asyncio
import json
import logging
import os
import uuid
from pathlib import Path
from typing import Optional

import aiofiles
import aiofiles.os
from pydantic import BaseModel, Field, ValidationError

from devnet_upgrader.errors import InvalidSpec
from devnet_upgrader.models.chain import NodeInfo, ValidatorKey
from devnet_upgrader.models.spec import DevnetRef


class DevnetManifest(BaseModel):
    chain_id: str
    binary_name: str = Field(default="stabled", description="Chain CLI inside the node containers")
    rest_url: str = Field(default="http://localhost:1317")
    gas_prices: Optional[str] = None
    nodes: list[NodeInfo] = Field(default_factory=list)
    validators: list[ValidatorKey] = Field(default_factory=list)


class JsonDevnetRepository:
    """Node repository and validator key loader backed by devnet.json."""

    def __init__(self, home_dir: Path):
        self.logger = logging.getLogger("devnet_upgrader.devnet_repo")
        self.devnets_dir = Path(home_dir) / "devnets"
        # One writer per devnet; nodes are switched concurrently
        self._write_locks: dict[str, asyncio.Lock] = {}

    def manifest_path(self, devnet: DevnetRef) -> Path:
        return self.devnets_dir / devnet.namespace / devnet.name / "devnet.json"

    async def load_manifest(self, devnet: DevnetRef) -> DevnetManifest:
        """Read and validate a devnet manifest.

        Raises:
            InvalidSpec: If the devnet does not exist or its manifest is invalid
        """
        path = self.manifest_path(devnet)
        if not await aiofiles.os.path.exists(path):
            raise InvalidSpec(f"Devnet {devnet} not found ({path})")
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            raw = await f.read()
        try:
            return DevnetManifest.model_validate_json(raw)
        except ValidationError as e:
            raise InvalidSpec(f"Devnet manifest {path} is invalid: {e}") from e

    async def list_nodes(self, devnet: DevnetRef) -> list[NodeInfo]:
        manifest = await self.load_manifest(devnet)
        return sorted(manifest.nodes, key=lambda n: n.index)

    async def load_validator_keys(self, devnet: DevnetRef) -> list[ValidatorKey]:
        manifest = await self.load_manifest(devnet)
        return list(manifest.validators)

    async def set_node_binary(self, devnet: DevnetRef, node: str, binary: str) -> None:
        lock = self._write_locks.setdefault(devnet.key, asyncio.Lock())
        async with lock:
            manifest = await self.load_manifest(devnet)
            for entry in manifest.nodes:
                if entry.name == node:
                    entry.binary = binary
                    break
            else:
                raise InvalidSpec(f"Node {node} not found in devnet {devnet}")
            await self._write(self.manifest_path(devnet), manifest)
        self.logger.info(f"{devnet}: {node} binary set to {binary}")

    async def _write(self, path: Path, manifest: DevnetManifest) -> None:
        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}.tmp")
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            await f.write(json.dumps(manifest.model_dump(mode="json"), indent=2))
            await f.flush()
            await asyncio.to_thread(os.fsync, f.fileno())
        await aiofiles.os.replace(tmp_path, path)
