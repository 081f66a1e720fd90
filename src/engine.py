"""Lifecycle state machine driven by Claude Code hook events."""

import asyncio
import json
import logging
import time
from typing import Any, Callable, Optional

from .config import NotifyConfig
from .counters import Counters
from .delivery import DeliveryClient
from .heartbeat import HeartbeatManager
from .models import DeliveryMode, HookEvent, HookEventKind, LifecycleState, StateField
from .project import is_ephemeral_path, resolve_project_name
from .state_store import StateStore

logger = logging.getLogger(__name__)

IDLE_STATES = (LifecycleState.IDLE, LifecycleState.IDLE_BUSY)


class TransitionEngine:
    """
    Maps hook events onto lifecycle transitions and delivers the result.

    Transitions (delivery mode in brackets):
        Online/any active  --idle, 0 subagents-->   Idle          [resurface]
        Online/any active  --idle, >0 subagents-->  IdleBusy      [resurface]
        Idle/IdleBusy      --subagent start/stop--> IdleBusy      [quiet, throttled]
        IdleBusy           --last subagent stops--> Idle          [resurface]
        any active         --permission prompt-->   Permission    [resurface]
        absent             --idle/permission-->     Idle/Permission [resurface, session picked up]
        Permission         --tool use-->            Approved      [quiet]
        Approved           --tool use-->            Online        [quiet]
        Idle/IdleBusy      --tool use, 0 subagents-> Online       [quiet]
        any active         --session end-->         Offline       [quiet]
        anything           --session start-->       Online        [new message]
    """

    def __init__(
        self,
        config: NotifyConfig,
        store: StateStore,
        delivery: DeliveryClient,
        counters: Counters,
        heartbeat: Optional[HeartbeatManager] = None,
        clock: Callable[[], float] = time.time,
        resolve_project: Callable[[str], str] = resolve_project_name,
    ):
        self.config = config
        self.store = store
        self.delivery = delivery
        self.counters = counters
        self.heartbeat = heartbeat
        self.clock = clock
        self.resolve_project = resolve_project
        self._handlers = {
            HookEventKind.SESSION_START: self._on_session_start,
            HookEventKind.SESSION_END: self._on_session_end,
            HookEventKind.POST_TOOL_USE: self._on_post_tool_use,
            HookEventKind.NOTIFICATION: self._on_notification,
            HookEventKind.SUBAGENT_START: self._on_subagent_start,
            HookEventKind.SUBAGENT_STOP: self._on_subagent_stop,
        }

    async def handle(self, payload: Any) -> Optional[LifecycleState]:
        """
        Process one hook payload.

        Never raises: malformed input and unknown events are no-ops and any
        unexpected failure is logged.

        Returns:
            The state delivered by this event, or None if nothing was delivered
        """
        event_name = payload.get("hook_event_name") if isinstance(payload, dict) else None
        try:
            return await self._handle(HookEvent.from_payload(payload))
        except Exception as e:
            logger.error(f"Error handling {event_name or 'unknown'} hook: {e}", exc_info=True)
            return None

    async def _handle(self, event: HookEvent) -> Optional[LifecycleState]:
        if event.kind is None:
            if event.raw_kind:
                logger.debug(f"Ignoring unsupported hook event '{event.raw_kind}'")
            return None

        if self.config.is_disabled():
            logger.debug(f"Notifications disabled, ignoring {event.kind.value}")
            return None

        if not self.config.skip_tmp_filter and is_ephemeral_path(event.cwd):
            logger.debug(f"Ignoring {event.kind.value} from ephemeral directory {event.cwd}")
            return None

        # git lookup shells out; keep it off the event loop
        project = await asyncio.to_thread(self.resolve_project, event.cwd)
        return await self._handlers[event.kind](project, event)

    def _throttled(self, project: str, field: StateField, cooldown: int) -> bool:
        """True if the last delivery stamped in `field` was less than `cooldown` seconds ago."""
        last = self.store.read_int(project, field, 0)
        return int(self.clock()) - last < cooldown

    def _stamp(self, project: str, field: StateField):
        self.store.write(project, field, int(self.clock()))

    # Session lifecycle

    async def _on_session_start(self, project: str, event: HookEvent) -> Optional[LifecycleState]:
        if not self.delivery.configured:
            return None

        # A previous session leaves its offline message behind; remove it first
        old_message_id = self.store.read(project, StateField.MESSAGE_ID)
        if old_message_id:
            await self.delivery.delete(project, old_message_id)

        if self.heartbeat:
            self.heartbeat.stop(project)
        self.store.clear(project)

        self.store.write(project, StateField.SESSION_START, int(self.clock()))
        self.store.write(project, StateField.TOOL_COUNT, 0)
        self.store.write(project, StateField.PEAK_SUBAGENTS, 0)
        self.store.write(project, StateField.PEAK_BG_TASKS, 0)
        self.store.write(project, StateField.SESSION_CONTEXT, json.dumps(event.context()))

        if not await self.delivery.deliver(project, LifecycleState.ONLINE, mode=DeliveryMode.QUIET, event=event):
            return None

        if self.heartbeat:
            self.heartbeat.start(project)
        logger.info(f"Session started for {project}")
        return LifecycleState.ONLINE

    async def _on_session_end(self, project: str, event: HookEvent) -> Optional[LifecycleState]:
        if not self.delivery.configured:
            return None

        if self.heartbeat:
            self.heartbeat.stop(project)

        delivered = False
        state = self.store.read_state(project)
        if state and state.is_active:
            delivered = await self.delivery.deliver(
                project, LifecycleState.OFFLINE, mode=DeliveryMode.QUIET, event=event
            )

        # The handle survives so the next session start can delete the offline message
        self.store.clear(project, preserve_handle=True)
        logger.info(f"Session ended for {project}")
        return LifecycleState.OFFLINE if delivered else None

    # Tool use (approval inference and activity)

    async def _on_post_tool_use(self, project: str, event: HookEvent) -> Optional[LifecycleState]:
        if not self.delivery.configured:
            return None

        tool_count = self.store.read_int(project, StateField.TOOL_COUNT) + 1
        self.store.write(project, StateField.TOOL_COUNT, tool_count)
        if event.tool_name:
            self.store.write(project, StateField.LAST_TOOL, event.tool_name)

        if event.runs_in_background:
            await self.counters.background_task_launched(project)

        state = self.store.read_state(project)

        if state is LifecycleState.PERMISSION_PENDING:
            # No explicit grant signal exists; the next tool use is taken as approval
            return await self._deliver(project, LifecycleState.APPROVED, DeliveryMode.QUIET, event=event)

        if state is LifecycleState.APPROVED:
            return await self._deliver(project, LifecycleState.ONLINE, DeliveryMode.QUIET, event=event)

        if state in IDLE_STATES:
            # Subagent tool use also fires PostToolUse; only the main loop resumes Online
            if self.counters.subagents(project) > 0:
                return None
            return await self._deliver(project, LifecycleState.ONLINE, DeliveryMode.QUIET, event=event)

        if state is LifecycleState.ONLINE and self.config.show_activity:
            if self._throttled(project, StateField.LAST_ACTIVITY, self.config.activity_throttle):
                return None
            delivered = await self._deliver(project, LifecycleState.ONLINE, DeliveryMode.QUIET, event=event)
            if delivered:
                self._stamp(project, StateField.LAST_ACTIVITY)
            return delivered

        return None

    # Notifications

    async def _on_notification(self, project: str, event: HookEvent) -> Optional[LifecycleState]:
        if not self.delivery.configured:
            return None

        if event.notification_type == "idle_prompt":
            return await self._on_idle(project, event)
        if event.notification_type == "permission_prompt":
            return await self._on_permission(project, event)

        logger.debug(f"Ignoring notification type '{event.notification_type}' for {project}")
        return None

    async def _on_idle(self, project: str, event: HookEvent) -> Optional[LifecycleState]:
        state = self.store.read_state(project)
        if state is LifecycleState.OFFLINE:
            logger.debug(f"Ignoring idle prompt for offline session {project}")
            return None

        subagents = self.counters.subagents(project)
        if subagents > 0:
            announced = self.store.read(project, StateField.LAST_IDLE_COUNT)
            if state is LifecycleState.IDLE_BUSY and announced == str(subagents):
                return None
            return await self._announce_idle_busy(project, subagents, state, DeliveryMode.RESURFACE, event=event)

        self.store.delete(project, StateField.LAST_IDLE_COUNT)
        if state is LifecycleState.IDLE:
            return None
        return await self._resurface(project, state, LifecycleState.IDLE, event=event)

    async def _on_permission(self, project: str, event: HookEvent) -> Optional[LifecycleState]:
        state = self.store.read_state(project)
        if state is LifecycleState.OFFLINE:
            logger.debug(f"Ignoring permission prompt for offline session {project}")
            return None
        return await self._resurface(project, state, LifecycleState.PERMISSION_PENDING, detail=event.message, event=event)

    async def _resurface(
        self,
        project: str,
        previous: Optional[LifecycleState],
        state: LifecycleState,
        detail: Optional[str] = None,
        event: Optional[HookEvent] = None,
        subagents: Optional[int] = None,
    ) -> Optional[LifecycleState]:
        """
        Repost `state` as a new message.

        With no recorded state (the session start frame never got through)
        the session is picked up from here: the start time is filled in and
        the heartbeat started once the message exists.
        """
        if previous is None and self.store.read(project, StateField.SESSION_START) is None:
            self.store.write(project, StateField.SESSION_START, int(self.clock()))

        delivered = await self._deliver(
            project, state, DeliveryMode.RESURFACE, detail=detail, event=event, subagents=subagents
        )
        if delivered and previous is None:
            logger.info(f"Recovered untracked session for {project}")
            if self.heartbeat:
                self.heartbeat.start(project)
        return delivered

    async def _announce_idle_busy(
        self,
        project: str,
        subagents: int,
        previous: Optional[LifecycleState],
        mode: DeliveryMode,
        event: Optional[HookEvent] = None,
    ) -> Optional[LifecycleState]:
        """Announce a new subagent count, at most once per `idle_busy_min_interval`."""
        if self._throttled(project, StateField.LAST_IDLE_BUSY, self.config.idle_busy_min_interval):
            return None
        if mode is DeliveryMode.RESURFACE:
            delivered = await self._resurface(
                project, previous, LifecycleState.IDLE_BUSY, event=event, subagents=subagents
            )
        else:
            delivered = await self._deliver(project, LifecycleState.IDLE_BUSY, mode, subagents=subagents)
        if delivered:
            self._stamp(project, StateField.LAST_IDLE_BUSY)
            self.store.write(project, StateField.LAST_IDLE_COUNT, subagents)
        return delivered

    # Subagents

    async def _on_subagent_start(self, project: str, event: HookEvent) -> Optional[LifecycleState]:
        count = await self.counters.subagent_started(project)
        if count is None:
            return None
        return await self._on_subagent_count(project, count)

    async def _on_subagent_stop(self, project: str, event: HookEvent) -> Optional[LifecycleState]:
        count = await self.counters.subagent_stopped(project)
        if count is None:
            return None
        return await self._on_subagent_count(project, count)

    async def _on_subagent_count(self, project: str, count: int) -> Optional[LifecycleState]:
        """Refresh the idle message after the running-subagent count changed."""
        if not self.delivery.configured:
            return None

        state = self.store.read_state(project)
        if state not in IDLE_STATES:
            return None

        if count == 0:
            self.store.delete(project, StateField.LAST_IDLE_COUNT)
            if state is LifecycleState.IDLE_BUSY:
                return await self._deliver(project, LifecycleState.IDLE, DeliveryMode.RESURFACE)
            return None

        if self.store.read(project, StateField.LAST_IDLE_COUNT) == str(count):
            return None
        return await self._announce_idle_busy(project, count, state, DeliveryMode.QUIET)

    async def _deliver(
        self,
        project: str,
        state: LifecycleState,
        mode: DeliveryMode,
        detail: Optional[str] = None,
        event: Optional[HookEvent] = None,
        subagents: Optional[int] = None,
    ) -> Optional[LifecycleState]:
        ok = await self.delivery.deliver(project, state, mode=mode, detail=detail, event=event, subagents=subagents)
        if not ok:
            return None
        if state not in IDLE_STATES:
            # The announced count only means something while idle
            self.store.delete(project, StateField.LAST_IDLE_COUNT)
        logger.info(f"{project}: {state.value} ({mode.value})")
        return state
