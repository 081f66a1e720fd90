"""Builds the status embed payload for each lifecycle state."""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Union

from .config import ColorTable, NotifyConfig
from .models import HookEvent, LifecycleState, ProjectSession

logger = logging.getLogger(__name__)

DETAIL_LIMIT = 1000
ELLIPSIS = "..."
STALE_MARKER = "(stale?)"


def truncate(text: str, limit: int = DETAIL_LIMIT) -> str:
    """Cut text to at most `limit` chars, ending with an ellipsis when cut."""
    if len(text) <= limit:
        return text
    return text[: limit - len(ELLIPSIS)] + ELLIPSIS


def format_duration(seconds: int) -> str:
    """Human-readable duration: 45s, 5m 30s, 1h 15m."""
    seconds = max(0, int(seconds))
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m {seconds % 60}s"
    return f"{seconds // 3600}h {(seconds % 3600) // 60}m"


def _field(name: str, value: Any, inline: bool = True) -> dict:
    return {"name": name, "value": str(value), "inline": inline}


def tool_detail(tool_input: Any) -> str:
    """The interesting part of a tool input: command, else file path."""
    if tool_input is None:
        return ""
    if isinstance(tool_input, dict):
        value = tool_input.get("command") or tool_input.get("file_path") or ELLIPSIS
        return str(value)
    if isinstance(tool_input, str):
        return "" if tool_input == "null" else tool_input
    return str(tool_input)


class StatusRenderer:
    """Renders a ProjectSession in a given state as a webhook payload."""

    def __init__(
        self,
        config: NotifyConfig,
        colors: Optional[ColorTable] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.colors = colors or ColorTable()
        self.clock = clock
        self._builders = {
            LifecycleState.ONLINE: self._online,
            LifecycleState.IDLE: self._idle,
            LifecycleState.IDLE_BUSY: self._idle_busy,
            LifecycleState.PERMISSION_PENDING: self._permission,
            LifecycleState.APPROVED: self._approved,
            LifecycleState.OFFLINE: self._offline,
        }

    @property
    def handled_states(self) -> set:
        return set(self._builders)

    def render(
        self,
        session: ProjectSession,
        state: Union[LifecycleState, str, None],
        detail: Optional[str] = None,
        event: Optional[HookEvent] = None,
        subagents: Optional[int] = None,
    ) -> dict:
        """
        Build the payload.

        Args:
            session: Persisted snapshot (counters, timestamps, context)
            state: Target state; anything unrecognized renders as Online
            detail: Free text for the permission state
            event: Current hook event, for the optional session/tool fields
            subagents: Subagent count override for idle-busy renders

        Returns:
            Discord webhook body with a single embed
        """
        if not isinstance(state, LifecycleState):
            parsed = LifecycleState.parse(state) if isinstance(state, str) else None
            if parsed is None:
                logger.warning(f"Unknown state '{state}', defaulting to online")
            state = parsed or LifecycleState.ONLINE

        builder = self._builders.get(state)
        if builder is None:
            logger.warning(f"No renderer for state '{state.value}', defaulting to online")
            builder = self._online

        now = self.clock()
        title, color, fields = builder(session, detail, subagents)
        fields = fields + self._extra_fields(session, event)

        if self._is_stale(session, now):
            title = f"{title} {STALE_MARKER}"

        return {
            "username": self.config.bot_name,
            "embeds": [{
                "title": title,
                "color": color,
                "fields": fields,
                "footer": {"text": self._footer(session, now)},
                "timestamp": datetime.fromtimestamp(now, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            }],
        }

    def _is_stale(self, session: ProjectSession, now: float) -> bool:
        if not session.last_transition or self.config.stale_threshold <= 0:
            return False
        return now - session.last_transition > self.config.stale_threshold

    def _footer(self, session: ProjectSession, now: float) -> str:
        if session.session_start:
            elapsed = int(now - session.session_start)
            if elapsed >= 0:
                return f"{self.config.bot_name} · {format_duration(elapsed)}"
        return self.config.bot_name

    def _extra_fields(self, session: ProjectSession, event: Optional[HookEvent]) -> list[dict]:
        context = session.context or {}
        session_id = (event.session_id if event else "") or context.get("session_id") or ""
        permission_mode = (event.permission_mode if event else "") or context.get("permission_mode") or ""
        cwd = (event.cwd if event else "") or context.get("cwd") or ""

        fields = []
        if self.config.show_session_info:
            if session_id:
                fields.append(_field("Session", session_id[:8]))
            if permission_mode:
                fields.append(_field("Permission Mode", permission_mode))

        if self.config.show_full_path and cwd:
            fields.append(_field("Path", cwd, inline=False))

        # Tool context only exists on the event being handled
        if self.config.show_tool_info and event and event.tool_name:
            fields.append(_field("Tool", event.tool_name))
            detail = tool_detail(event.tool_input)
            if detail:
                fields.append(_field("Command", truncate(detail), inline=False))
        return fields

    def _counts(self, session: ProjectSession, subagents: Optional[int] = None) -> list[dict]:
        fields = []
        count = session.subagent_count if subagents is None else subagents
        if count > 0:
            fields.append(_field("Subagents", count))
        if session.background_tasks > 0:
            fields.append(_field("Background Tasks", session.background_tasks))
        return fields

    # Per-state builders: (title, color, fields)

    def _online(self, session, detail, subagents):
        title = f"🟢 {session.project} — Session Online"
        if self.config.show_activity and session.tool_count > 0:
            fields = [_field("Tools Used", session.tool_count)]
            if session.last_tool:
                fields.append(_field("Last Tool", session.last_tool))
            fields += self._counts(session, subagents)
        else:
            fields = [_field("Status", "Session started", inline=False)]
            if session.background_tasks > 0:
                fields.append(_field("Background Tasks", session.background_tasks))
        return title, self.config.colors["online"], fields

    def _idle(self, session, detail, subagents):
        status = "Waiting for input"
        if session.background_tasks > 0:
            status = f"{status} ({session.background_tasks} background tasks launched)"
        title = f"🦀 {session.project} — Ready for input"
        return title, self.colors.get(session.project), [_field("Status", status, inline=False)]

    def _idle_busy(self, session, detail, subagents):
        count = session.subagent_count if subagents is None else subagents
        fields = [
            _field("Status", "Main loop idle, waiting for subagents", inline=False),
            _field("Subagents", f"**{count}** running"),
        ]
        if session.background_tasks > 0:
            fields.append(_field("Background Tasks", session.background_tasks))
        return f"🔄 {session.project} — Idle", self.colors.get(session.project), fields

    def _permission(self, session, detail, subagents):
        fields = []
        if detail:
            fields.append(_field("Detail", truncate(detail), inline=False))
        return f"🔐 {session.project} — Needs Approval", self.config.colors["permission"], fields

    def _approved(self, session, detail, subagents):
        fields = [_field("Status", "Permission granted, tool executed successfully", inline=False)]
        fields += self._counts(session, subagents)
        return f"✅ {session.project} — Permission Approved", self.config.colors["approval"], fields

    def _offline(self, session, detail, subagents):
        fields = []
        if session.tool_count > 0:
            fields.append(_field("Tools Used", session.tool_count))
        if session.peak_subagents > 0:
            fields.append(_field("Peak Subagents", session.peak_subagents))
        if session.peak_background_tasks > 0:
            fields.append(_field("Peak Background Tasks", session.peak_background_tasks))
        return f"🔴 {session.project} — Session Offline", self.config.colors["offline"], fields
