"""CLI command implementations."""

import asyncio
import io
import json
import logging
import os
import select
import sys
import time
from typing import IO, Optional

from ..config import NotifyConfig
from ..main import build_components
from ..project import resolve_project_name, sanitize_project_name
from ..renderer import format_duration
from ..state_store import FileStateStore
from .client import NotifyClient

logger = logging.getLogger(__name__)


def read_hook_input(stream: Optional[IO[str]] = None, timeout: float = 5.0) -> dict:
    """
    Read the hook payload from stdin.

    The whole read, up to EOF, is bounded by `timeout` so a hook invoked
    without input (or with a writer that never closes the pipe) never hangs
    the session. Anything that is not a JSON object becomes ``{}``.
    """
    stream = stream if stream is not None else sys.stdin
    try:
        if stream.isatty():
            return {}
    except (AttributeError, ValueError):
        pass

    try:
        fd = stream.fileno()
    except (AttributeError, OSError, io.UnsupportedOperation):
        # In-memory streams (tests, piped wrappers) cannot be selected on
        raw = stream.read()
    else:
        raw = _read_fd(fd, timeout)
        if raw is None:
            logger.warning(f"Hook input not complete after {timeout}s, ignoring")
            return {}

    raw = (raw or "").strip()
    if not raw:
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Received invalid JSON on stdin")
        return {}
    return payload if isinstance(payload, dict) else {}


def _read_fd(fd: int, timeout: float) -> Optional[str]:
    """Read `fd` to EOF before the deadline; None if the deadline passes first."""
    deadline = time.monotonic() + timeout
    chunks = []
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return None
        ready, _, _ = select.select([fd], [], [], remaining)
        if not ready:
            return None
        chunk = os.read(fd, 65536)
        if not chunk:
            return b"".join(chunks).decode("utf-8", errors="replace")
        chunks.append(chunk)


def run_inline(config: NotifyConfig, payload: dict):
    """Handle one event in this process (server not running; no heartbeat)."""
    components = build_components(config, with_heartbeat=False)

    async def _run():
        try:
            return await components["engine"].handle(payload)
        finally:
            if components["transport"]:
                await components["transport"].close()

    return asyncio.run(_run())


def cmd_hook(
    config: NotifyConfig,
    client: NotifyClient,
    event_name: Optional[str] = None,
    stream: Optional[IO[str]] = None,
) -> int:
    """
    Handle a Claude Code hook invocation.

    Forwards the payload to the server when it is running, otherwise handles
    it inline.

    Exit codes:
        0: Always (a failing hook must not disturb the session)
    """
    try:
        payload = read_hook_input(stream, timeout=config.hook_read_timeout)
        if event_name and not payload.get("hook_event_name"):
            payload["hook_event_name"] = event_name
        if not payload.get("hook_event_name"):
            return 0

        if config.is_disabled():
            return 0

        # A slow server answer still means the event was received, so only a
        # failed liveness check falls back to inline handling
        if client.health():
            _, success, unavailable = client.send_hook(payload, timeout=config.request_timeout)
            if not success:
                logger.debug(f"Server did not confirm {payload['hook_event_name']} (unavailable={unavailable})")
            return 0

        run_inline(config, payload)
    except Exception as e:
        logger.error(f"claude-notify hook failed: {e}")
    return 0


def format_status(snapshot: dict, heartbeat_running: Optional[bool] = None, now: Optional[float] = None) -> str:
    """Human-readable project status."""
    now = now if now is not None else time.time()
    lines = [f"Project: {snapshot['project']}"]
    lines.append(f"State: {snapshot.get('state') or 'none'}")
    if snapshot.get("message_id"):
        lines.append(f"Message: {snapshot['message_id']}")
    if snapshot.get("session_start"):
        lines.append(f"Session age: {format_duration(int(now - snapshot['session_start']))}")
    if snapshot.get("last_transition"):
        lines.append(f"Last change: {format_duration(int(now - snapshot['last_transition']))} ago")

    tools = f"Tools used: {snapshot.get('tool_count', 0)}"
    if snapshot.get("last_tool"):
        tools += f" (last: {snapshot['last_tool']})"
    lines.append(tools)
    lines.append(f"Subagents: {snapshot.get('subagent_count', 0)} (peak {snapshot.get('peak_subagents', 0)})")
    lines.append(
        f"Background tasks: {snapshot.get('background_tasks', 0)} "
        f"(peak {snapshot.get('peak_background_tasks', 0)})"
    )
    if heartbeat_running is not None:
        lines.append(f"Heartbeat: {'running' if heartbeat_running else 'stopped'}")
    return "\n".join(lines)


def cmd_status(config: NotifyConfig, client: NotifyClient, project: Optional[str] = None) -> int:
    """
    Show the persisted status of a project (default: current directory).

    Exit codes:
        0: Status shown
        1: No status recorded for the project
    """
    project = sanitize_project_name(project) if project else resolve_project_name(os.getcwd())

    snapshot, success, unavailable = client.get_project(project)
    heartbeat_running = None
    if success:
        heartbeats = client.list_heartbeats()
        if heartbeats is not None:
            heartbeat_running = project in heartbeats.get("projects", [])
    elif unavailable:
        # Server not running, read the state directory directly
        session = FileStateStore(config.state_dir).load(project)
        snapshot = session.to_dict() if session.state or session.message_id else None

    if not snapshot:
        print(f"No status recorded for {project}")
        return 1

    print(format_status(snapshot, heartbeat_running))
    return 0


def cmd_enable(config: NotifyConfig) -> int:
    """Remove the .disabled marker."""
    config.disabled_marker.unlink(missing_ok=True)
    if not config.enabled:
        print("Marker removed, but notifications are still disabled by configuration (enabled=false)")
        return 0
    print("Notifications enabled")
    return 0


def cmd_disable(config: NotifyConfig) -> int:
    """Create the .disabled marker."""
    try:
        config.config_path.mkdir(parents=True, exist_ok=True)
        config.disabled_marker.touch()
    except OSError as e:
        print(f"Error: could not create {config.disabled_marker}: {e}", file=sys.stderr)
        return 1
    print(f"Notifications disabled (remove {config.disabled_marker} or run 'claude-notify enable' to re-enable)")
    return 0
