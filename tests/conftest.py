"""Shared pytest fixtures for Claude Notify tests."""

from unittest.mock import AsyncMock

import pytest

from src.config import ColorTable, NotifyConfig
from src.counters import Counters
from src.delivery import DeliveryClient
from src.engine import TransitionEngine
from src.renderer import StatusRenderer
from src.state_store import MemoryStateStore
from tests.fakes import CWD, PROJECT, WEBHOOK_URL, FakeClock, FakeTransport


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config(tmp_path) -> NotifyConfig:
    """Config pointing at throwaway directories."""
    return NotifyConfig(
        webhook_url=WEBHOOK_URL,
        config_dir=str(tmp_path / "config"),
        state_dir=str(tmp_path / "state"),
    )


@pytest.fixture
def store(clock) -> MemoryStateStore:
    return MemoryStateStore(clock=clock)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def renderer(config, clock) -> StatusRenderer:
    return StatusRenderer(config, ColorTable(), clock=clock)


@pytest.fixture
def sleep() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def delivery(store, renderer, transport, sleep) -> DeliveryClient:
    return DeliveryClient(store, renderer, transport, sleep=sleep)


@pytest.fixture
def counters(store, tmp_path) -> Counters:
    return Counters(store, str(tmp_path / "locks"), spin_interval=0)


@pytest.fixture
def engine(config, store, delivery, counters, clock) -> TransitionEngine:
    return TransitionEngine(
        config,
        store,
        delivery,
        counters,
        clock=clock,
        resolve_project=lambda cwd: PROJECT,
    )


@pytest.fixture
def hook():
    """Build a hook payload: hook("Notification", notification_type="idle_prompt")."""
    def _hook(event_name: str, **fields) -> dict:
        payload = {"hook_event_name": event_name, "cwd": CWD, "session_id": "abcdef1234567890"}
        payload.update(fields)
        return payload
    return _hook
