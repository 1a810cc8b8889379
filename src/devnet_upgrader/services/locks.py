"""Per-devnet exclusive upgrade locks.

One orchestration pass per devnet at a time. The lock is two layers:

1. An in-process set of held keys, so coroutines on the same event loop
   fail fast without touching the filesystem.
2. A non-blocking `flock` on <state_dir>/locks/<namespace>__<devnet>.lock,
   so a second daemon or CLI process is refused as well. The kernel drops
   the lock when the holder dies, so a crash never leaves a stale lock.

A contended lock is never waited on: the second caller gets
`UpgradeInProgress` immediately.
"""

import asyncio
import fcntl
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

from devnet_upgrader.errors import UpgradeInProgress
from devnet_upgrader.models.spec import DevnetRef


class UpgradeLockManager:
    def __init__(self, state_dir: Path):
        self.logger = logging.getLogger("devnet_upgrader.locks")
        self.lock_dir = Path(state_dir) / "locks"
        self._held: set[str] = set()

    def lock_path(self, devnet: DevnetRef) -> Path:
        return self.lock_dir / f"{devnet.namespace}__{devnet.name}.lock"

    def is_held(self, devnet: DevnetRef) -> bool:
        """True when this process holds the lock for the devnet."""
        return devnet.key in self._held

    @asynccontextmanager
    async def hold(self, devnet: DevnetRef) -> AsyncIterator[None]:
        """Hold the devnet's upgrade lock for the duration of the block.

        Raises:
            UpgradeInProgress: If another pass (in this or another process)
                holds the lock
        """
        key = devnet.key
        if key in self._held:
            raise UpgradeInProgress(key)
        # Claimed before the first await so a concurrent coroutine sees it
        self._held.add(key)
        try:
            acquiring = asyncio.ensure_future(asyncio.to_thread(self._acquire, devnet))
            try:
                fd = await asyncio.shield(acquiring)
            except asyncio.CancelledError:
                # The thread still finishes; drop whatever it acquired
                acquiring.add_done_callback(self._release_abandoned)
                raise
            self.logger.debug(f"Acquired upgrade lock for {key}")
            try:
                yield
            finally:
                await asyncio.to_thread(self._release, fd)
                self.logger.debug(f"Released upgrade lock for {key}")
        finally:
            self._held.discard(key)

    def _acquire(self, devnet: DevnetRef) -> int:
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.lock_path(devnet), os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            raise UpgradeInProgress(devnet.key) from None
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        return fd

    @staticmethod
    def _release(fd: int) -> None:
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def _release_abandoned(self, acquiring: "asyncio.Future[int]") -> None:
        if acquiring.cancelled() or acquiring.exception() is not None:
            return
        self._release(acquiring.result())
