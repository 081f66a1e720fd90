"""Data models for the Claude session status notifier."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class LifecycleState(Enum):
    """Session lifecycle state, persisted by value."""
    ONLINE = "online"                  # Session started / agent working
    IDLE = "idle"                      # Waiting for user input
    IDLE_BUSY = "idle_busy"            # Main loop idle, subagents still running
    PERMISSION_PENDING = "permission"  # Waiting for a permission decision
    APPROVED = "approved"              # Tool ran after a permission prompt
    OFFLINE = "offline"                # Session ended

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["LifecycleState"]:
        """Map a stored string to a state, or None if absent/unknown."""
        if not value:
            return None
        try:
            return cls(value.strip())
        except ValueError:
            return None

    @property
    def is_active(self) -> bool:
        return self is not LifecycleState.OFFLINE


class DeliveryMode(Enum):
    """How a status frame reaches the channel."""
    QUIET = "quiet"          # Edit the existing message in place
    RESURFACE = "resurface"  # Delete + create so the channel re-notifies


# States meant to draw attention are resurfaced; the rest are edited quietly.
DEFAULT_DELIVERY_MODES = {
    LifecycleState.ONLINE: DeliveryMode.QUIET,
    LifecycleState.IDLE: DeliveryMode.RESURFACE,
    LifecycleState.IDLE_BUSY: DeliveryMode.RESURFACE,
    LifecycleState.PERMISSION_PENDING: DeliveryMode.RESURFACE,
    LifecycleState.APPROVED: DeliveryMode.QUIET,
    LifecycleState.OFFLINE: DeliveryMode.QUIET,
}


class StateField(Enum):
    """Independently-writable per-project records."""
    STATE = "status-state"
    MESSAGE_ID = "status-msg"
    LAST_TRANSITION = "last-state-change"
    SESSION_START = "session-start"
    TOOL_COUNT = "tool-count"
    LAST_TOOL = "last-tool"
    SUBAGENT_COUNT = "subagent-count"
    PEAK_SUBAGENTS = "peak-subagents"
    BG_TASK_COUNT = "bg-task-count"
    PEAK_BG_TASKS = "peak-bg-tasks"
    LAST_IDLE_COUNT = "last-idle-count"  # Last announced subagent count
    LAST_IDLE_BUSY = "last-idle-busy"    # Throttle timestamp for idle-busy announcements
    LAST_ACTIVITY = "last-activity"      # Throttle timestamp for activity refreshes
    HEARTBEAT_ID = "heartbeat-id"
    SESSION_CONTEXT = "session-context"  # JSON: session_id, permission_mode, cwd


class HookEventKind(Enum):
    """Claude Code hook events the engine reacts to."""
    SESSION_START = "SessionStart"
    SESSION_END = "SessionEnd"
    NOTIFICATION = "Notification"
    POST_TOOL_USE = "PostToolUse"
    SUBAGENT_START = "SubagentStart"
    SUBAGENT_STOP = "SubagentStop"


@dataclass
class HookEvent:
    """Inbound hook payload, normalized."""
    kind: Optional[HookEventKind]
    raw_kind: str = ""
    cwd: str = ""
    notification_type: str = ""
    message: str = ""
    tool_name: str = ""
    tool_input: Any = None
    session_id: str = ""
    permission_mode: str = ""

    @classmethod
    def from_payload(cls, payload: Any) -> "HookEvent":
        """Build an event from decoded hook JSON. Anything malformed becomes empty."""
        if not isinstance(payload, dict):
            payload = {}

        def _str(key: str) -> str:
            value = payload.get(key)
            return value if isinstance(value, str) else ""

        raw_kind = _str("hook_event_name")
        try:
            kind = HookEventKind(raw_kind) if raw_kind else None
        except ValueError:
            kind = None

        return cls(
            kind=kind,
            raw_kind=raw_kind,
            cwd=_str("cwd"),
            notification_type=_str("notification_type"),
            message=_str("message"),
            tool_name=_str("tool_name"),
            tool_input=payload.get("tool_input"),
            session_id=_str("session_id"),
            permission_mode=_str("permission_mode"),
        )

    @property
    def runs_in_background(self) -> bool:
        """True when the tool call was launched as a background task."""
        return isinstance(self.tool_input, dict) and self.tool_input.get("run_in_background") is True

    def context(self) -> dict:
        """Session context recorded at session start for later renders."""
        return {
            "session_id": self.session_id,
            "permission_mode": self.permission_mode,
            "cwd": self.cwd,
        }


@dataclass
class ProjectSession:
    """Snapshot of every persisted field for one project."""
    project: str
    state: Optional[LifecycleState] = None
    message_id: Optional[str] = None
    session_start: Optional[int] = None
    last_transition: Optional[int] = None
    tool_count: int = 0
    last_tool: Optional[str] = None
    subagent_count: int = 0
    peak_subagents: int = 0
    background_tasks: int = 0
    peak_background_tasks: int = 0
    last_announced_count: Optional[int] = None
    heartbeat_id: Optional[str] = None
    context: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Convert snapshot to dictionary for JSON serialization."""
        return {
            "project": self.project,
            "state": self.state.value if self.state else None,
            "message_id": self.message_id,
            "session_start": self.session_start,
            "last_transition": self.last_transition,
            "tool_count": self.tool_count,
            "last_tool": self.last_tool,
            "subagent_count": self.subagent_count,
            "peak_subagents": self.peak_subagents,
            "background_tasks": self.background_tasks,
            "peak_background_tasks": self.peak_background_tasks,
            "last_announced_count": self.last_announced_count,
            "heartbeat_id": self.heartbeat_id,
            "context": self.context,
        }
