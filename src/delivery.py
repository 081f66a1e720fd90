"""Delivers rendered status frames: create, edit or resurface one message per project."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .models import DEFAULT_DELIVERY_MODES, DeliveryMode, HookEvent, LifecycleState, StateField
from .renderer import StatusRenderer
from .state_store import StateStore
from .transports import Transport, TransportResult

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
DEFAULT_RETRY_AFTER = 1.0  # seconds, when a 429 carries no usable hint


class DeliveryClient:
    """
    Keeps one status message per project in sync with the lifecycle state.

    State is persisted only after the backend confirms the operation, so a
    lost frame is corrected by the next event instead of leaving the store
    ahead of the channel.
    """

    def __init__(
        self,
        store: StateStore,
        renderer: StatusRenderer,
        transport: Optional[Transport],
        max_attempts: int = MAX_ATTEMPTS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.renderer = renderer
        self.transport = transport
        self.max_attempts = max_attempts
        self.sleep = sleep

    @property
    def configured(self) -> bool:
        return self.transport is not None

    async def deliver(
        self,
        project: str,
        state: LifecycleState,
        mode: Optional[DeliveryMode] = None,
        detail: Optional[str] = None,
        event: Optional[HookEvent] = None,
        subagents: Optional[int] = None,
    ) -> bool:
        """Render the project's current snapshot in `state` and send it."""
        if not self.transport:
            logger.debug(f"No transport configured, skipping {state.value} for {project}")
            return False

        session = self.store.load(project)
        payload = self.renderer.render(session, state, detail=detail, event=event, subagents=subagents)
        mode = mode or DEFAULT_DELIVERY_MODES.get(state, DeliveryMode.QUIET)
        return await self.send(project, state, mode, payload)

    async def send(self, project: str, state: LifecycleState, mode: DeliveryMode, payload: dict) -> bool:
        """
        Put a prepared payload in the channel.

        QUIET edits the stored message (creating one if there is none),
        RESURFACE deletes the stored message and posts a new one so the
        channel notifies again.
        """
        message_id = self.store.read(project, StateField.MESSAGE_ID)

        if mode is DeliveryMode.RESURFACE:
            if message_id:
                await self.delete(project, message_id)
            return await self.create(project, state, payload)

        if not message_id:
            return await self.create(project, state, payload)
        return await self.edit(project, state, message_id, payload)

    async def create(self, project: str, state: LifecycleState, payload: dict) -> bool:
        result = await self._with_retry("create", project, lambda: self.transport.create(payload))
        if not result.ok:
            return False
        self.store.write(project, StateField.MESSAGE_ID, result.message_id)
        self.store.write(project, StateField.STATE, state)
        logger.debug(f"Created {state.value} message {result.message_id} for {project}")
        return True

    async def edit(self, project: str, state: LifecycleState, message_id: str, payload: dict) -> bool:
        result = await self._with_retry(
            "edit", project, lambda: self.transport.edit(message_id, payload), terminal=(404,)
        )
        if result.status == 404:
            logger.info(f"Status message {message_id} for {project} is gone, posting a new one")
            return await self.create(project, state, payload)
        if not result.ok:
            return False
        self.store.write(project, StateField.STATE, state)
        return True

    async def delete(self, project: str, message_id: str) -> bool:
        """Delete a message; an already-missing message counts as deleted."""
        result = await self._with_retry(
            "delete", project, lambda: self.transport.delete(message_id), terminal=(404,)
        )
        if result.ok or result.status == 404:
            if self.store.read(project, StateField.MESSAGE_ID) == message_id:
                self.store.delete(project, StateField.MESSAGE_ID)
            return True
        return False

    async def _with_retry(
        self,
        operation: str,
        project: str,
        call: Callable[[], Awaitable[TransportResult]],
        terminal: tuple = (),
    ) -> TransportResult:
        result = TransportResult(status=0)
        for attempt in range(1, self.max_attempts + 1):
            result = await call()
            if result.ok or result.status in terminal:
                return result

            if attempt < self.max_attempts:
                if result.status == 429:
                    delay = result.retry_after if result.retry_after is not None else DEFAULT_RETRY_AFTER
                else:
                    delay = attempt * attempt
                logger.debug(
                    f"{operation} for {project} returned {result.status}, retrying in {delay}s "
                    f"(attempt {attempt}/{self.max_attempts})"
                )
                await self.sleep(delay)

        logger.warning(
            f"Failed to {operation} status message for {project} after {self.max_attempts} attempts "
            f"(status {result.status}{': ' + result.error if result.error else ''})"
        )
        return result
