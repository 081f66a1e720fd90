"""Unit tests for the keyed state store."""

import json

import pytest

from src.models import LifecycleState, StateField
from src.state_store import FileStateStore, MemoryStateStore
from tests.fakes import FakeClock


@pytest.fixture
def file_store(tmp_path, clock):
    return FileStateStore(str(tmp_path / "state"), clock=clock)


@pytest.fixture(params=["memory", "file"])
def any_store(request, tmp_path, clock):
    if request.param == "memory":
        return MemoryStateStore(clock=clock)
    return FileStateStore(str(tmp_path / "state"), clock=clock)


class TestStateStoreSemantics:
    """Behaviour shared by every store implementation."""

    def test_read_absent_is_none(self, any_store):
        assert any_store.read("app", StateField.STATE) is None
        assert any_store.read_state("app") is None

    def test_write_then_read(self, any_store):
        assert any_store.write("app", StateField.LAST_TOOL, "Bash") is True
        assert any_store.read("app", StateField.LAST_TOOL) == "Bash"

    def test_write_accepts_ints_and_states(self, any_store):
        any_store.write("app", StateField.TOOL_COUNT, 7)
        any_store.write("app", StateField.STATE, LifecycleState.IDLE_BUSY)
        assert any_store.read_int("app", StateField.TOOL_COUNT) == 7
        assert any_store.read_state("app") is LifecycleState.IDLE_BUSY

    def test_read_int_garbage_falls_back(self, any_store):
        any_store.write("app", StateField.TOOL_COUNT, "seven")
        assert any_store.read_int("app", StateField.TOOL_COUNT, default=0) == 0
        assert any_store.read_int("app", StateField.SUBAGENT_COUNT, default=5) == 5

    def test_unknown_state_value_reads_as_absent(self, any_store):
        any_store.write("app", StateField.STATE, "sleeping")
        assert any_store.read_state("app") is None

    def test_projects_are_isolated(self, any_store):
        any_store.write("app", StateField.TOOL_COUNT, 1)
        any_store.write("other", StateField.TOOL_COUNT, 2)
        assert any_store.read_int("app", StateField.TOOL_COUNT) == 1
        assert any_store.read_int("other", StateField.TOOL_COUNT) == 2

    def test_delete(self, any_store):
        any_store.write("app", StateField.LAST_TOOL, "Read")
        any_store.delete("app", StateField.LAST_TOOL)
        assert any_store.read("app", StateField.LAST_TOOL) is None
        # Deleting again is harmless
        assert any_store.delete("app", StateField.LAST_TOOL) is True


class TestStateTransitionTimestamp:
    """Writing the state field stamps last-state-change only on change."""

    def test_first_write_stamps(self, store, clock):
        store.write("app", StateField.STATE, LifecycleState.ONLINE)
        assert store.read_int("app", StateField.LAST_TRANSITION) == int(clock.now)

    def test_same_state_keeps_timestamp(self, store, clock):
        store.write("app", StateField.STATE, LifecycleState.ONLINE)
        stamped = store.read_int("app", StateField.LAST_TRANSITION)
        clock.advance(600)
        store.write("app", StateField.STATE, LifecycleState.ONLINE)
        assert store.read_int("app", StateField.LAST_TRANSITION) == stamped

    def test_changed_state_restamps(self, store, clock):
        store.write("app", StateField.STATE, LifecycleState.ONLINE)
        clock.advance(600)
        store.write("app", StateField.STATE, LifecycleState.IDLE)
        assert store.read_int("app", StateField.LAST_TRANSITION) == int(clock.now)

    def test_other_fields_do_not_stamp(self, store):
        store.write("app", StateField.TOOL_COUNT, 3)
        assert store.read("app", StateField.LAST_TRANSITION) is None


class TestClear:
    """Tests for clear()."""

    def _populate(self, store):
        for field in StateField:
            store.write("app", field, "1")

    def test_clear_removes_everything(self, store):
        self._populate(store)
        store.clear("app")
        assert all(store.read("app", field) is None for field in StateField)

    def test_clear_preserving_handle(self, store):
        self._populate(store)
        store.write("app", StateField.MESSAGE_ID, "999")
        store.clear("app", preserve_handle=True)
        assert store.read("app", StateField.MESSAGE_ID) == "999"
        assert store.read("app", StateField.STATE) is None
        assert store.read("app", StateField.TOOL_COUNT) is None

    def test_clear_leaves_other_projects(self, store):
        store.write("other", StateField.TOOL_COUNT, 4)
        store.clear("app")
        assert store.read_int("other", StateField.TOOL_COUNT) == 4


class TestLoad:
    """Tests for load() snapshots."""

    def test_load_empty_project(self, store):
        session = store.load("app")
        assert session.project == "app"
        assert session.state is None
        assert session.message_id is None
        assert session.tool_count == 0
        assert session.last_announced_count is None
        assert session.context == {}

    def test_load_populated_project(self, store, clock):
        store.write("app", StateField.STATE, LifecycleState.IDLE)
        store.write("app", StateField.MESSAGE_ID, "42")
        store.write("app", StateField.SESSION_START, 100)
        store.write("app", StateField.TOOL_COUNT, 9)
        store.write("app", StateField.PEAK_SUBAGENTS, 4)
        store.write("app", StateField.BG_TASK_COUNT, 2)
        store.write("app", StateField.LAST_IDLE_COUNT, 3)
        store.write("app", StateField.SESSION_CONTEXT, json.dumps({"session_id": "abc"}))

        session = store.load("app")
        assert session.state is LifecycleState.IDLE
        assert session.message_id == "42"
        assert session.session_start == 100
        assert session.last_transition == int(clock.now)
        assert session.tool_count == 9
        assert session.peak_subagents == 4
        assert session.background_tasks == 2
        assert session.last_announced_count == 3
        assert session.context == {"session_id": "abc"}

    def test_load_malformed_context(self, store):
        store.write("app", StateField.SESSION_CONTEXT, "{not json")
        assert store.load("app").context == {}


class TestFileStateStore:
    """File layout and failure handling."""

    def test_record_path(self, file_store, tmp_path):
        file_store.write("app", StateField.STATE, LifecycleState.ONLINE)
        path = tmp_path / "state" / "status-state-app"
        assert path.exists()
        assert path.read_text().strip() == "online"

    def test_write_leaves_no_temp_files(self, file_store, tmp_path):
        for i in range(5):
            file_store.write("app", StateField.TOOL_COUNT, i)
        names = sorted(p.name for p in (tmp_path / "state").iterdir())
        assert names == ["tool-count-app"]

    def test_reader_sees_whole_values(self, file_store):
        # Each write replaces the file in one rename, never a partial value
        file_store.write("app", StateField.MESSAGE_ID, "1234567890")
        file_store.write("app", StateField.MESSAGE_ID, "42")
        assert file_store.read("app", StateField.MESSAGE_ID) == "42"

    def test_unwritable_directory_fails_softly(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        store = FileStateStore(str(blocker), clock=FakeClock())

        assert store.write("app", StateField.TOOL_COUNT, 1) is False
        assert store.read("app", StateField.TOOL_COUNT) is None
        assert store.read_int("app", StateField.TOOL_COUNT, default=3) == 3

    def test_atomic_failure_falls_back_to_direct_write(self, file_store, tmp_path, monkeypatch):
        def broken_mkstemp(*args, **kwargs):
            raise OSError("no temp files today")

        monkeypatch.setattr("src.state_store.tempfile.mkstemp", broken_mkstemp)
        assert file_store.write("app", StateField.LAST_TOOL, "Edit") is True
        assert file_store.read("app", StateField.LAST_TOOL) == "Edit"
