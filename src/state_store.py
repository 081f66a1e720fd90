"""Per-project keyed record store backing every cross-invocation field."""

import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Callable, Optional, Union

from .models import LifecycleState, ProjectSession, StateField

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = "/tmp/claude-notify"


class StateStore:
    """
    Keyed store: one record per (project, field).

    Subclasses implement the raw record operations; this base class layers the
    state-transition timestamping, integer helpers and snapshot loading on top.
    Failures never raise: reads return None, writes return False.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock

    # Raw record operations (subclass responsibility)

    def _read_raw(self, project: str, field: StateField) -> Optional[str]:
        raise NotImplementedError

    def _write_raw(self, project: str, field: StateField, value: str) -> bool:
        raise NotImplementedError

    def _delete_raw(self, project: str, field: StateField) -> bool:
        raise NotImplementedError

    # Public interface

    def read(self, project: str, field: StateField) -> Optional[str]:
        """Read a field; None when absent or unreadable."""
        try:
            return self._read_raw(project, field)
        except Exception as e:
            logger.warning(f"Failed to read {field.value} for {project}: {e}")
            return None

    def read_int(self, project: str, field: StateField, default: int = 0) -> int:
        """Read a numeric field, falling back to default on absence or garbage."""
        value = self.read(project, field)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError:
            return default

    def read_state(self, project: str) -> Optional[LifecycleState]:
        return LifecycleState.parse(self.read(project, StateField.STATE))

    def write(self, project: str, field: StateField, value: Union[str, int, LifecycleState]) -> bool:
        """
        Write a field.

        Writing the state field stamps last-state-change only when the stored
        value actually changes; same-state rewrites keep the old timestamp.
        """
        if isinstance(value, LifecycleState):
            value = value.value
        value = str(value)

        if field is StateField.STATE:
            previous = self.read(project, field)
            if previous != value:
                self._safe_write(project, StateField.LAST_TRANSITION, str(int(self.clock())))

        return self._safe_write(project, field, value)

    def _safe_write(self, project: str, field: StateField, value: str) -> bool:
        try:
            return self._write_raw(project, field, value)
        except Exception as e:
            logger.warning(f"Failed to write {field.value} for {project}: {e}")
            return False

    def delete(self, project: str, field: StateField) -> bool:
        try:
            return self._delete_raw(project, field)
        except Exception as e:
            logger.warning(f"Failed to delete {field.value} for {project}: {e}")
            return False

    def clear(self, project: str, preserve_handle: bool = False):
        """
        Remove every field of a project.

        Args:
            project: Sanitized project name
            preserve_handle: Keep the message id so the next session start can
                delete the stale offline message before posting a fresh one.
        """
        for field in StateField:
            if preserve_handle and field is StateField.MESSAGE_ID:
                continue
            self.delete(project, field)

    def load(self, project: str) -> ProjectSession:
        """Read every field into a ProjectSession snapshot."""
        last_announced = self.read(project, StateField.LAST_IDLE_COUNT)
        session_start = self.read_int(project, StateField.SESSION_START, 0)
        last_transition = self.read_int(project, StateField.LAST_TRANSITION, 0)

        context = {}
        raw_context = self.read(project, StateField.SESSION_CONTEXT)
        if raw_context:
            try:
                decoded = json.loads(raw_context)
                if isinstance(decoded, dict):
                    context = decoded
            except json.JSONDecodeError:
                logger.warning(f"Ignoring malformed session context for {project}")

        return ProjectSession(
            project=project,
            state=self.read_state(project),
            message_id=self.read(project, StateField.MESSAGE_ID) or None,
            session_start=session_start or None,
            last_transition=last_transition or None,
            tool_count=self.read_int(project, StateField.TOOL_COUNT),
            last_tool=self.read(project, StateField.LAST_TOOL) or None,
            subagent_count=self.read_int(project, StateField.SUBAGENT_COUNT),
            peak_subagents=self.read_int(project, StateField.PEAK_SUBAGENTS),
            background_tasks=self.read_int(project, StateField.BG_TASK_COUNT),
            peak_background_tasks=self.read_int(project, StateField.PEAK_BG_TASKS),
            last_announced_count=int(last_announced) if last_announced and last_announced.isdigit() else None,
            heartbeat_id=self.read(project, StateField.HEARTBEAT_ID) or None,
            context=context,
        )


class FileStateStore(StateStore):
    """
    File-per-field store under a state directory.

    Records live at ``<state_dir>/<field>-<project>`` so independent hook
    invocations only contend on the fields they touch.
    """

    def __init__(self, state_dir: str = DEFAULT_STATE_DIR, clock: Callable[[], float] = time.time):
        super().__init__(clock=clock)
        self.state_dir = Path(state_dir).expanduser()
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"Cannot create state directory {self.state_dir}: {e}")

    def path_for(self, project: str, field: StateField) -> Path:
        return self.state_dir / f"{field.value}-{project}"

    def _read_raw(self, project: str, field: StateField) -> Optional[str]:
        try:
            return self.path_for(project, field).read_text().strip()
        except FileNotFoundError:
            return None

    def _write_raw(self, project: str, field: StateField, value: str) -> bool:
        path = self.path_for(project, field)
        temp_path = None
        try:
            # Temp file in the same directory so the rename stays atomic
            fd, temp_path = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=self.state_dir)
            with os.fdopen(fd, "w") as f:
                f.write(f"{value}\n")
            os.replace(temp_path, path)
            return True
        except OSError as e:
            logger.warning(f"Atomic write failed for {path}, writing directly: {e}")
            if temp_path:
                try:
                    os.unlink(temp_path)
                except OSError:
                    pass

        try:
            path.write_text(f"{value}\n")
            return True
        except OSError as e:
            logger.warning(f"Failed to write {path}: {e}")
            return False

    def _delete_raw(self, project: str, field: StateField) -> bool:
        self.path_for(project, field).unlink(missing_ok=True)
        return True


class MemoryStateStore(StateStore):
    """In-memory store with the same semantics, for tests and inline runs."""

    def __init__(self, clock: Callable[[], float] = time.time):
        super().__init__(clock=clock)
        self.records: dict[tuple[str, StateField], str] = {}

    def _read_raw(self, project: str, field: StateField) -> Optional[str]:
        return self.records.get((project, field))

    def _write_raw(self, project: str, field: StateField, value: str) -> bool:
        self.records[(project, field)] = value
        return True

    def _delete_raw(self, project: str, field: StateField) -> bool:
        self.records.pop((project, field), None)
        return True
