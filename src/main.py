"""Main entry point - wires the status engine and serves the hook endpoint."""

import argparse
import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import uvicorn

from .config import NotifyConfig, ColorTable, load_config
from .counters import Counters
from .delivery import DeliveryClient
from .engine import TransitionEngine
from .heartbeat import HeartbeatManager
from .renderer import StatusRenderer
from .server import create_app
from .state_store import FileStateStore, StateStore
from .transports import Transport, create_transport

logger = logging.getLogger(__name__)


def build_components(
    config: NotifyConfig,
    store: Optional[StateStore] = None,
    transport: Optional[Transport] = None,
    with_heartbeat: bool = True,
) -> dict:
    """
    Construct the engine and everything it depends on.

    Shared by the server and by the CLI's inline fallback (which runs
    without a heartbeat since its process exits right after the event).
    """
    store = store or FileStateStore(config.state_dir)
    colors = ColorTable(config.config_path / "colors.conf")
    renderer = StatusRenderer(config, colors)
    if transport is None:
        transport = create_transport(config)
    delivery = DeliveryClient(store, renderer, transport)
    counters = Counters(store, config.state_dir)

    heartbeat = None
    if with_heartbeat:
        heartbeat = HeartbeatManager(store, delivery, renderer, config.heartbeat_interval)

    engine = TransitionEngine(config, store, delivery, counters, heartbeat=heartbeat)
    return {
        "store": store,
        "renderer": renderer,
        "transport": transport,
        "delivery": delivery,
        "counters": counters,
        "heartbeat": heartbeat,
        "engine": engine,
    }


class NotifyApp:
    """Main application orchestrator."""

    def __init__(self, config: NotifyConfig, store: Optional[StateStore] = None, transport: Optional[Transport] = None):
        self.config = config
        self.host = config.host
        self.port = config.port

        components = build_components(config, store=store, transport=transport)
        self.store = components["store"]
        self.renderer = components["renderer"]
        self.transport = components["transport"]
        self.delivery = components["delivery"]
        self.counters = components["counters"]
        self.heartbeat = components["heartbeat"]
        self.engine = components["engine"]

        if not self.transport:
            logger.warning("No webhook or Telegram chat configured, hooks will be tracked but not delivered")

        self.app = create_app(
            engine=self.engine,
            heartbeat=self.heartbeat,
            store=self.store,
            lifespan=self._lifespan,
        )

    @asynccontextmanager
    async def _lifespan(self, app):
        yield
        await self.stop()

    async def start(self):
        """Serve until uvicorn receives SIGINT/SIGTERM."""
        logger.info("Starting Claude Notify...")

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="info",
        )
        server = uvicorn.Server(config)

        logger.info(f"Starting server on http://{self.host}:{self.port}")
        await server.serve()

    async def stop(self):
        """Cancel heartbeats and release the transport."""
        logger.info("Stopping Claude Notify...")

        if self.heartbeat:
            await self.heartbeat.stop_all()

        if self.transport:
            await self.transport.close()

        logger.info("Shutdown complete")


async def main(config_path: Optional[str] = None):
    """Main entry point."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    config = load_config(config_path)
    if config.is_disabled():
        logger.info(f"Notifications disabled ({config.disabled_marker} or enabled=false); hooks will be ignored")

    app = NotifyApp(config)
    await app.start()


def run():
    """Entry point for console script."""
    parser = argparse.ArgumentParser(prog="claude-notify-server", description="Claude Notify hook server")
    parser.add_argument("--config", help="Path to config.yaml")
    args = parser.parse_args()
    asyncio.run(main(str(Path(args.config).expanduser()) if args.config else None))


if __name__ == "__main__":
    run()
