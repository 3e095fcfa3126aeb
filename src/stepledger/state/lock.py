from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import time
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, TypeVar

from stepledger.config import LockingConfig
from stepledger.errors import LockAcquisitionError

log = logging.getLogger(__name__)

T = TypeVar("T")

OWNER_FILE = "owner.json"


class LockManager:
    """Directory-based mutual exclusion for a single state file.

    ``mkdir`` is atomic on every filesystem we care about, so a successful
    create is the test-and-set. The lock directory sits next to the guarded
    file as ``<name>.lock`` and records who took it and when.
    """

    def __init__(
        self,
        target: Path,
        settings: LockingConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.target = Path(target)
        self.lock_dir = self.target.with_name(f"{self.target.name}.lock")
        self.settings = settings or LockingConfig()
        self._clock = clock
        self._held = False
        self._token: str | None = None

    @property
    def held(self) -> bool:
        return self._held

    def _owner_path(self, lock_dir: Path | None = None) -> Path:
        return (lock_dir or self.lock_dir) / OWNER_FILE

    def _read_owner(self, lock_dir: Path | None = None) -> dict[str, Any] | None:
        try:
            owner = json.loads(self._owner_path(lock_dir).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None
        return owner if isinstance(owner, dict) else None

    def try_acquire(self) -> bool:
        self.lock_dir.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.lock_dir.mkdir()
        except FileExistsError:
            return False
        token = uuid.uuid4().hex
        owner = {"pid": os.getpid(), "token": token, "acquired_at": self._clock()}
        self._owner_path().write_text(json.dumps(owner), encoding="utf-8")
        self._token = token
        self._held = True
        return True

    def acquired_at(self, lock_dir: Path | None = None) -> float | None:
        owner = self._read_owner(lock_dir)
        if owner is not None:
            value = owner.get("acquired_at")
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                return float(value)
        # The owner record may be missing if the holder crashed between
        # mkdir and the write; fall back to the directory timestamp.
        try:
            return (lock_dir or self.lock_dir).stat().st_mtime
        except FileNotFoundError:
            return None

    def is_stale(self, lock_dir: Path | None = None) -> bool:
        acquired = self.acquired_at(lock_dir)
        if acquired is None:
            return False
        return self._clock() - acquired >= self.settings.stale_seconds

    def _reclaim(self) -> bool:
        """Move a stale lock aside and delete it.

        The rename is atomic, so only one contender can take a given lock
        directory. Staleness is checked again on the moved copy; a lock that
        was re-acquired in the meantime is put back untouched.
        """
        grave = self.lock_dir.with_name(f"{self.lock_dir.name}.stale-{uuid.uuid4().hex}")
        try:
            os.rename(self.lock_dir, grave)
        except OSError:
            return False
        if not self.is_stale(grave):
            try:
                os.rename(grave, self.lock_dir)
            except OSError as exc:
                log.warning("Could not restore live lock %s: %s", self.lock_dir, exc)
            return False
        shutil.rmtree(grave, ignore_errors=True)
        return True

    async def acquire(self) -> None:
        max_retries = max(1, int(self.settings.max_retries))
        reclaims = 0
        delay = max(0.0, float(self.settings.backoff_seconds))
        for attempt in range(max_retries):
            if self.try_acquire():
                if attempt:
                    log.debug("Acquired %s after %d retries", self.lock_dir, attempt)
                return
            if self.is_stale() and reclaims < self.settings.max_reclaim_attempts:
                reclaims += 1
                log.warning(
                    "Reclaiming stale lock %s (attempt %d/%d)",
                    self.lock_dir,
                    reclaims,
                    self.settings.max_reclaim_attempts,
                )
                self._reclaim()
                continue
            await asyncio.sleep(delay)
            delay = min(delay * 2 if delay else 0.01, float(self.settings.max_backoff_seconds))
        raise LockAcquisitionError(
            f"Could not acquire lock {self.lock_dir} after {max_retries} attempts."
        )

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        owner = self._read_owner()
        if owner is None or owner.get("token") != self._token:
            log.warning("Lock %s was reclaimed by another holder; leaving it", self.lock_dir)
            return
        try:
            self._owner_path().unlink()
        except FileNotFoundError:
            pass
        try:
            self.lock_dir.rmdir()
        except FileNotFoundError:
            pass
        except OSError:
            shutil.rmtree(self.lock_dir, ignore_errors=True)

    @asynccontextmanager
    async def hold(self) -> AsyncIterator[LockManager]:
        await self.acquire()
        try:
            yield self
        finally:
            self.release()


async def with_lock(
    target: Path,
    fn: Callable[[], T],
    settings: LockingConfig | None = None,
    **kwargs: Any,
) -> T:
    """Run ``fn`` while holding the lock that guards ``target``."""
    async with LockManager(target, settings, **kwargs).hold():
        return fn()
