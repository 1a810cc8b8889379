"""File-backed persistence for upgrade records.

Layout under the state directory:

    upgrades/<namespace>/<devnet>.json               active or last record
    history/<namespace>/<devnet>/<record-name>.json  archived attempts

Each file is an envelope {"schema_version", "checksum", "record"} where the
checksum is the SHA-256 of the canonical JSON of "record". Writes go to a
temp file in the same directory, are fsynced and renamed into place, so a
reader never observes a half-written record.
"""

import asyncio
import hashlib
import json
import logging
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import aiofiles
import aiofiles.os
from pydantic import ValidationError

from devnet_upgrader.errors import CorruptStateError
from devnet_upgrader.models.record import UpgradeRecord
from devnet_upgrader.models.spec import DevnetRef

SCHEMA_VERSION = 1


def record_checksum(payload: dict[str, Any]) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class StateStore:
    """Owns the on-disk representation of every upgrade record.

    Records for different devnets live in different files, so concurrent
    save/load for different keys never touch the same path. Same-key
    exclusivity is the lock manager's job.
    """

    def __init__(self, state_dir: Path):
        self.logger = logging.getLogger("devnet_upgrader.state_store")
        self.state_dir = Path(state_dir)
        self.upgrades_dir = self.state_dir / "upgrades"
        self.history_dir = self.state_dir / "history"

    def path_for(self, devnet: DevnetRef) -> Path:
        return self.upgrades_dir / devnet.namespace / f"{devnet.name}.json"

    def history_path_for(self, devnet: DevnetRef, record_name: str) -> Path:
        return self.history_dir / devnet.namespace / devnet.name / f"{record_name}.json"

    async def save(self, record: UpgradeRecord) -> None:
        """Atomically write the record (temp file, fsync, rename)."""
        await self._write(self.path_for(record.ref), record)
        self.logger.debug(
            f"Saved upgrade record {record.name} for {record.ref}: phase={record.phase.value}"
        )

    async def load(self, devnet: DevnetRef) -> Optional[UpgradeRecord]:
        """Load the record for a devnet.

        Returns:
            The record, or None when no record exists

        Raises:
            CorruptStateError: If the file exists but cannot be trusted
        """
        path = self.path_for(devnet)
        if not await aiofiles.os.path.exists(path):
            return None
        record = await self._read(path)
        if record.ref != devnet:
            raise CorruptStateError(
                str(path), f"record belongs to {record.ref}, expected {devnet}"
            )
        return record

    async def delete(self, devnet: DevnetRef) -> bool:
        path = self.path_for(devnet)
        if not await aiofiles.os.path.exists(path):
            return False
        await aiofiles.os.remove(path)
        self.logger.info(f"Deleted upgrade record for {devnet}")
        return True

    async def scan(self) -> tuple[list[UpgradeRecord], dict[str, CorruptStateError]]:
        """Read every record file.

        Returns:
            (records, errors) where errors maps "namespace/devnet" to the
            corruption found in that file
        """
        records: list[UpgradeRecord] = []
        errors: dict[str, CorruptStateError] = {}
        for path in sorted(self.upgrades_dir.glob("*/*.json")):
            key = f"{path.parent.name}/{path.stem}"
            try:
                records.append(await self._read(path))
            except CorruptStateError as e:
                self.logger.error(f"Skipping corrupt upgrade record {path}: {e.reason}")
                errors[key] = e
        return records, errors

    async def list_active(self) -> list[UpgradeRecord]:
        """Every readable record not in a terminal phase."""
        records, _ = await self.scan()
        return [record for record in records if not record.is_terminal]

    async def archive(self, record: UpgradeRecord) -> Path:
        """Move a record into the per-devnet history and clear the active slot."""
        target = self.history_path_for(record.ref, record.name)
        await self._write(target, record)
        active = self.path_for(record.ref)
        if await aiofiles.os.path.exists(active):
            await aiofiles.os.remove(active)
        self.logger.info(f"Archived upgrade record {record.name} to {target}")
        return target

    async def history(self, devnet: DevnetRef) -> list[UpgradeRecord]:
        """Archived attempts for a devnet, oldest first."""
        directory = self.history_dir / devnet.namespace / devnet.name
        records = [await self._read(path) for path in directory.glob("*.json")]
        return sorted(records, key=lambda r: r.started_at)

    async def quarantine(self, devnet: DevnetRef) -> Optional[Path]:
        """Rename a record file aside so a fresh upgrade can be started.

        Only run on explicit operator request; corrupt files are otherwise
        left where they are for inspection.
        """
        path = self.path_for(devnet)
        if not await aiofiles.os.path.exists(path):
            return None
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        target = path.with_name(f"{path.name}.corrupt-{stamp}")
        await aiofiles.os.replace(path, target)
        self.logger.warning(f"Quarantined upgrade record for {devnet} to {target}")
        return target

    async def _write(self, path: Path, record: UpgradeRecord) -> None:
        payload = record.model_dump(mode="json")
        envelope = {
            "schema_version": SCHEMA_VERSION,
            "checksum": record_checksum(payload),
            "record": payload,
        }
        await aiofiles.os.makedirs(path.parent, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}.tmp")
        try:
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(json.dumps(envelope, indent=2))
                await f.flush()
                await asyncio.to_thread(os.fsync, f.fileno())
            await aiofiles.os.replace(tmp_path, path)
        except Exception as e:
            self.logger.error(f"Failed to write upgrade record {path}: {e}", exc_info=True)
            if await aiofiles.os.path.exists(tmp_path):
                await aiofiles.os.remove(tmp_path)
            raise

    async def _read(self, path: Path) -> UpgradeRecord:
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                raw = await f.read()
        except OSError as e:
            raise CorruptStateError(str(path), f"unreadable: {e}") from e

        try:
            envelope = json.loads(raw)
        except json.JSONDecodeError as e:
            raise CorruptStateError(str(path), f"invalid JSON: {e}") from e

        if not isinstance(envelope, dict) or not {"schema_version", "checksum", "record"} <= envelope.keys():
            raise CorruptStateError(str(path), "missing envelope fields")
        if envelope["schema_version"] != SCHEMA_VERSION:
            raise CorruptStateError(
                str(path), f"unsupported schema version {envelope['schema_version']!r}"
            )
        payload = envelope["record"]
        if not isinstance(payload, dict):
            raise CorruptStateError(str(path), "record is not an object")
        computed = record_checksum(payload)
        if envelope["checksum"] != computed:
            raise CorruptStateError(
                str(path),
                f"checksum mismatch: stored={envelope['checksum']}, computed={computed}",
            )

        try:
            return UpgradeRecord.model_validate(payload)
        except ValidationError as e:
            raise CorruptStateError(str(path), f"schema violation: {e.error_count()} error(s)") from e
