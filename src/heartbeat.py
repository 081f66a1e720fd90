"""Background refresher that keeps each project's status message current."""

import asyncio
import logging
import uuid
from typing import Awaitable, Callable, Dict, Optional, Tuple

from .delivery import DeliveryClient
from .models import DeliveryMode, LifecycleState, StateField
from .renderer import StatusRenderer
from .state_store import StateStore

logger = logging.getLogger(__name__)


class HeartbeatManager:
    """
    One refresh task per project.

    Each task owns a random token persisted in the heartbeat-id field. A task
    whose token no longer matches the stored one has been superseded and
    exits on its next wake-up, as does any task whose session went offline.
    """

    def __init__(
        self,
        store: StateStore,
        delivery: DeliveryClient,
        renderer: StatusRenderer,
        interval: int,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.delivery = delivery
        self.renderer = renderer
        self.interval = interval
        self.sleep = sleep
        self.tasks: Dict[str, Tuple[str, asyncio.Task]] = {}  # project -> (token, task)

    @property
    def enabled(self) -> bool:
        return self.interval > 0

    def start(self, project: str) -> Optional[str]:
        """
        Start (or restart) the heartbeat for a project.

        Returns:
            The new task's token, or None when heartbeats are disabled
        """
        if not self.enabled:
            logger.debug(f"Heartbeat disabled, not starting for {project}")
            return None

        existing = self.tasks.get(project)
        if existing:
            old_token, old_task = existing
            if not old_task.done() and old_token == self.store.read(project, StateField.HEARTBEAT_ID):
                old_task.cancel()

        token = uuid.uuid4().hex
        self.store.write(project, StateField.HEARTBEAT_ID, token)
        task = asyncio.create_task(self._run(project, token))
        self.tasks[project] = (token, task)
        logger.info(f"Heartbeat started for {project} (every {self.interval}s)")
        return token

    def stop(self, project: str):
        """Cancel the project's heartbeat and release its token."""
        entry = self.tasks.pop(project, None)
        if not entry:
            return
        token, task = entry
        task.cancel()
        if self.store.read(project, StateField.HEARTBEAT_ID) == token:
            self.store.delete(project, StateField.HEARTBEAT_ID)
        logger.info(f"Heartbeat stopped for {project}")

    async def stop_all(self):
        """Cancel every heartbeat task (server shutdown)."""
        tasks = [task for _, task in self.tasks.values()]
        for task in tasks:
            task.cancel()
        self.tasks.clear()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def active_projects(self) -> list[str]:
        return sorted(project for project, (_, task) in self.tasks.items() if not task.done())

    async def _run(self, project: str, token: str):
        try:
            while True:
                await self.sleep(self.interval)
                if not await self.beat(project, token):
                    logger.info(f"Heartbeat for {project} exiting")
                    break
        except asyncio.CancelledError:
            logger.debug(f"Heartbeat cancelled for {project}")
        except Exception as e:
            logger.error(f"Heartbeat error for {project}: {e}")
        finally:
            entry = self.tasks.get(project)
            if entry and entry[0] == token:
                self.tasks.pop(project, None)

    async def beat(self, project: str, token: Optional[str] = None) -> bool:
        """
        Run one refresh cycle.

        Returns:
            False when the heartbeat should exit (superseded or session over),
            True otherwise, including skipped cycles
        """
        if token is not None and self.store.read(project, StateField.HEARTBEAT_ID) != token:
            return False

        state = self.store.read_state(project)
        if state is None or state is LifecycleState.OFFLINE:
            return False

        if not self.store.read(project, StateField.MESSAGE_ID):
            return True

        session = self.store.load(project)
        payload = self.renderer.render(session, state)

        # The engine may have moved on while we rendered; its frame wins
        if self.store.read_state(project) is not state:
            return True

        await self.delivery.send(project, state, DeliveryMode.QUIET, payload)
        return True
