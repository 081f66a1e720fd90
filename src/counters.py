"""Lock-protected subagent and background-task counters."""

import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

from .models import StateField
from .state_store import StateStore

logger = logging.getLogger(__name__)

LOCK_MAX_ATTEMPTS = 100
LOCK_SPIN_INTERVAL = 0.01  # seconds
STALE_LOCK_SECONDS = 10


class DirectoryLock:
    """
    Portable mutex based on atomic ``mkdir``.

    Works across independently-invoked processes sharing the state directory
    as well as across tasks in one event loop (the spin yields with sleep).
    """

    def __init__(
        self,
        path: Path,
        max_attempts: int = LOCK_MAX_ATTEMPTS,
        spin_interval: float = LOCK_SPIN_INTERVAL,
        stale_after: float = STALE_LOCK_SECONDS,
    ):
        self.path = Path(path)
        self.max_attempts = max_attempts
        self.spin_interval = spin_interval
        self.stale_after = stale_after

    def _try_mkdir(self) -> bool:
        try:
            os.mkdir(self.path)
            return True
        except FileExistsError:
            return False

    def _break_if_stale(self):
        try:
            age = time.time() - self.path.stat().st_mtime
        except FileNotFoundError:
            return
        if age > self.stale_after:
            logger.warning(f"Breaking stale lock {self.path} (age {age:.0f}s)")
            try:
                os.rmdir(self.path)
            except OSError:
                pass

    async def acquire(self) -> bool:
        """Spin until acquired or the attempt budget runs out."""
        for _ in range(self.max_attempts):
            if self._try_mkdir():
                return True
            self._break_if_stale()
            await asyncio.sleep(self.spin_interval)
        return self._try_mkdir()

    def release(self):
        try:
            os.rmdir(self.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to release lock {self.path}: {e}")


class Counters:
    """Subagent and background-task counts with high-water marks."""

    def __init__(
        self,
        store: StateStore,
        lock_dir: str,
        max_attempts: int = LOCK_MAX_ATTEMPTS,
        spin_interval: float = LOCK_SPIN_INTERVAL,
        stale_after: float = STALE_LOCK_SECONDS,
    ):
        self.store = store
        self.lock_dir = Path(lock_dir).expanduser()
        self.max_attempts = max_attempts
        self.spin_interval = spin_interval
        self.stale_after = stale_after
        try:
            self.lock_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"Cannot create lock directory {self.lock_dir}: {e}")

    def _lock_for(self, project: str, field: StateField) -> DirectoryLock:
        return DirectoryLock(
            self.lock_dir / f"{field.value}-{project}.lock",
            max_attempts=self.max_attempts,
            spin_interval=self.spin_interval,
            stale_after=self.stale_after,
        )

    @asynccontextmanager
    async def _locked(self, project: str, field: StateField) -> AsyncIterator[bool]:
        lock = self._lock_for(project, field)
        acquired = await lock.acquire()
        if not acquired:
            logger.warning(
                f"Could not acquire {field.value} lock for {project} after "
                f"{self.max_attempts} attempts, skipping update"
            )
        try:
            yield acquired
        finally:
            if acquired:
                lock.release()

    def _raise_peak(self, project: str, peak_field: StateField, value: int):
        if value > self.store.read_int(project, peak_field):
            self.store.write(project, peak_field, value)

    def subagents(self, project: str) -> int:
        return max(0, self.store.read_int(project, StateField.SUBAGENT_COUNT))

    def background_tasks(self, project: str) -> int:
        return max(0, self.store.read_int(project, StateField.BG_TASK_COUNT))

    async def subagent_started(self, project: str) -> Optional[int]:
        """Increment the running-subagent count. Returns the new count, or None if skipped."""
        async with self._locked(project, StateField.SUBAGENT_COUNT) as acquired:
            if not acquired:
                return None
            count = self.subagents(project) + 1
            self.store.write(project, StateField.SUBAGENT_COUNT, count)
            self._raise_peak(project, StateField.PEAK_SUBAGENTS, count)
            return count

    async def subagent_stopped(self, project: str) -> Optional[int]:
        """Decrement the running-subagent count, clamped at zero."""
        async with self._locked(project, StateField.SUBAGENT_COUNT) as acquired:
            if not acquired:
                return None
            count = max(0, self.subagents(project) - 1)
            self.store.write(project, StateField.SUBAGENT_COUNT, count)
            return count

    async def background_task_launched(self, project: str) -> Optional[int]:
        """
        Count a background task launch.

        There is no completion signal upstream, so this count only grows
        until the session is cleared.
        """
        async with self._locked(project, StateField.BG_TASK_COUNT) as acquired:
            if not acquired:
                return None
            count = self.background_tasks(project) + 1
            self.store.write(project, StateField.BG_TASK_COUNT, count)
            self._raise_peak(project, StateField.PEAK_BG_TASKS, count)
            return count
