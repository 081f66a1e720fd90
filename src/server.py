"""FastAPI server receiving Claude Code hooks."""

import json
import logging
import time
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware

from .project import sanitize_project_name

logger = logging.getLogger(__name__)


class RequestTimingMiddleware(BaseHTTPMiddleware):
    """Log slow requests for debugging."""

    def __init__(self, app, slow_threshold: float = 1.0, timing_threshold: float = 0.1):
        super().__init__(app)
        self.slow_threshold = slow_threshold
        self.timing_threshold = timing_threshold

    async def dispatch(self, request: Request, call_next):
        start = time.monotonic()
        response = await call_next(request)
        elapsed = time.monotonic() - start

        if elapsed > self.slow_threshold:
            logger.warning(
                f"SLOW REQUEST: {request.method} {request.url.path} "
                f"took {elapsed:.2f}s"
            )
        elif elapsed > self.timing_threshold:
            logger.info(
                f"Request: {request.method} {request.url.path} "
                f"took {elapsed*1000:.0f}ms"
            )

        return response


class HookResponse(BaseModel):
    """Result of processing one hook event."""
    status: str
    hook_event: str
    state: Optional[str] = None


class HeartbeatsResponse(BaseModel):
    """Projects with a live heartbeat task."""
    enabled: bool
    interval: int
    projects: list[str]


def _decode_payload(body: bytes) -> dict:
    """Hook bodies that are not a JSON object are treated as empty."""
    if not body:
        return {}
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning("Received invalid JSON hook body")
        return {}
    return payload if isinstance(payload, dict) else {}


def create_app(
    engine=None,
    heartbeat=None,
    store=None,
    lifespan=None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        engine: TransitionEngine instance
        heartbeat: HeartbeatManager instance (None when running without heartbeats)
        store: StateStore instance for the read-only project endpoint
        lifespan: Optional ASGI lifespan context manager

    Returns:
        Configured FastAPI app
    """
    app = FastAPI(
        title="Claude Notify",
        description="Mirror Claude Code session lifecycle into a single chat status message",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(RequestTimingMiddleware)

    app.state.engine = engine
    app.state.heartbeat = heartbeat
    app.state.store = store

    @app.get("/")
    async def root():
        """Health check endpoint."""
        return {"status": "ok", "service": "claude-notify"}

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    @app.post("/hooks/claude", response_model=HookResponse)
    async def claude_hook(request: Request):
        """
        Webhook endpoint for Claude Code hooks.

        Always answers 200: a hook failure must never surface in the
        developer's session.
        """
        payload = _decode_payload(await request.body())
        hook_event = payload.get("hook_event_name") or "unknown"
        logger.info(f"Hook received: {hook_event}")

        state = None
        if app.state.engine:
            state = await app.state.engine.handle(payload)
        else:
            logger.warning("No engine configured, dropping hook")

        return HookResponse(
            status="received",
            hook_event=str(hook_event),
            state=state.value if state else None,
        )

    @app.get("/projects/{project}")
    async def get_project(project: str):
        """Persisted status snapshot for one project."""
        if not app.state.store:
            raise HTTPException(status_code=503, detail="State store not configured")

        name = sanitize_project_name(project)
        snapshot = app.state.store.load(name)
        if snapshot.state is None and snapshot.message_id is None:
            raise HTTPException(status_code=404, detail=f"No status recorded for {name}")
        return snapshot.to_dict()

    @app.get("/heartbeats", response_model=HeartbeatsResponse)
    async def list_heartbeats():
        """Projects currently kept fresh by a heartbeat."""
        hb = app.state.heartbeat
        if not hb:
            return HeartbeatsResponse(enabled=False, interval=0, projects=[])
        return HeartbeatsResponse(enabled=hb.enabled, interval=hb.interval, projects=hb.active_projects())

    return app
