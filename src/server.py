"""FastAPI server for Claude Code hooks and session API endpoints."""

import logging
import time
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, ConfigDict
from starlette.middleware.base import BaseHTTPMiddleware

from .errors import SessionNotFound, TokenInvalid

logger = logging.getLogger(__name__)


class RequestTimingMiddleware(BaseHTTPMiddleware):
    """Log slow requests for debugging."""

    def __init__(self, app, config: Optional[dict] = None):
        super().__init__(app)
        self.config = config or {}

        # Load timing thresholds from config
        server_timeouts = self.config.get("timeouts", {}).get("server", {})
        self.slow_threshold = server_timeouts.get("slow_request_threshold_seconds", 1.0)
        self.timing_threshold = server_timeouts.get("request_timing_threshold_seconds", 0.1)

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


class SessionStartRequest(BaseModel):
    """Payload from the SessionStart hook."""
    session_id: Optional[str] = None
    ppid: Optional[int] = None
    pid: Optional[int] = None
    start_time: Optional[int] = None
    cwd: Optional[str] = None
    label: Optional[str] = None
    notify: Optional[bool] = None  # absent keeps the stored value
    nvim_socket: Optional[str] = None
    tmux_session: Optional[str] = None
    tmux_pane: Optional[str] = None  # session:window.pane
    tmux_pane_id: Optional[str] = None  # $TMUX_PANE, e.g. %5
    instance_name: Optional[str] = None
    pty_path: Optional[str] = None
    transports: Optional[list[dict]] = None

    model_config = ConfigDict(extra="allow")  # Allow additional fields from Claude


class StopEventRequest(BaseModel):
    """Payload from the Stop/SubagentStop/Notification hooks."""
    session_id: Optional[str] = None
    event: str = "Stop"
    summary: Optional[str] = None
    message: Optional[str] = None  # Older hook scripts send "message"
    label: Optional[str] = None

    model_config = ConfigDict(extra="allow")


class EnableNotifyRequest(BaseModel):
    session_id: Optional[str] = None
    label: Optional[str] = None
    nvim_socket: Optional[str] = None


class ValidateTokenRequest(BaseModel):
    token: Optional[str] = None
    chat_id: Optional[str] = None


def create_app(
    registry=None,
    router=None,
    backend=None,
    config: Optional[dict] = None,
    lifespan=None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        registry: SessionRegistry instance
        router: CommandRouter instance (notifications on Stop events)
        backend: Agent backend (output capture)
        config: Configuration dictionary
        lifespan: Optional ASGI lifespan context manager

    Returns:
        Configured FastAPI app
    """
    app = FastAPI(
        title="Claude Remote Relay",
        description="Relay Claude Code session events to Telegram and commands back",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Store config first so middleware can access it
    app.state.config = config or {}

    app.add_middleware(RequestTimingMiddleware, config=config)

    app.state.registry = registry
    app.state.router = router
    app.state.backend = backend

    def require_registry():
        if not app.state.registry:
            raise HTTPException(status_code=503, detail="Session registry not configured")
        return app.state.registry

    @app.get("/")
    async def root():
        """Health check endpoint."""
        return {"status": "ok", "service": "claude-remote-relay"}

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    @app.post("/events/session-start")
    async def session_start(request: SessionStartRequest):
        """Register (or refresh) a session when Claude Code starts."""
        registry = require_registry()
        if not request.session_id:
            raise HTTPException(status_code=400, detail="session_id is required")

        data = request.model_dump(exclude_none=True)
        session = registry.upsert_session(data)
        logger.info(f"Session started: {session.session_id}")
        return {"ok": True, "session_id": session.session_id}

    @app.post("/events/stop")
    async def stop_event(request: StopEventRequest):
        """Notify the operator that a session stopped, if it opted in."""
        registry = require_registry()
        if not request.session_id:
            raise HTTPException(status_code=400, detail="session_id is required")

        try:
            session = registry.get_session(request.session_id)
        except SessionNotFound:
            raise HTTPException(status_code=404, detail="Session not found")

        registry.touch_session(session.session_id)

        if not session.notify:
            logger.debug(f"{request.event} event for {session.session_id} - notifications disabled")
            return {"ok": True, "notified": False, "reason": "notify=false"}

        if not app.state.router:
            return {"ok": True, "notified": False, "reason": "no router"}

        try:
            result = await app.state.router.handle_stop_event(
                session,
                event=request.event,
                summary=request.summary or request.message or "Task completed",
                label=request.label,
            )
        except Exception as e:
            logger.error(f"Notification failed for {session.session_id}: {e}")
            return {"ok": True, "notified": False, "error": str(e)}

        return {"ok": True, "notified": True, **result}

    @app.post("/sessions/enable-notify")
    async def enable_notify(request: EnableNotifyRequest):
        """Opt a session into chat notifications."""
        registry = require_registry()
        if not request.session_id:
            raise HTTPException(status_code=400, detail="session_id is required")

        try:
            session = registry.enable_notify(
                request.session_id,
                label=request.label,
                nvim_socket=request.nvim_socket,
            )
        except SessionNotFound:
            raise HTTPException(status_code=404, detail="Session not found")

        return {"ok": True, "session": session.to_dict()}

    @app.get("/sessions")
    async def list_sessions(active: bool = False, notify: bool = False):
        """List sessions, most recently seen first."""
        registry = require_registry()
        sessions = registry.list_sessions(active_only=active, notify_only=notify)
        return {"ok": True, "sessions": [s.to_dict() for s in sessions]}

    @app.get("/sessions/{session_id}")
    async def get_session(session_id: str):
        """Get session details."""
        registry = require_registry()
        try:
            session = registry.get_session(session_id)
        except SessionNotFound:
            raise HTTPException(status_code=404, detail="Session not found")
        return {"ok": True, "session": session.to_dict()}

    @app.delete("/sessions/{session_id}")
    async def delete_session(session_id: str):
        """Delete a session and its tokens."""
        registry = require_registry()
        deleted = registry.delete_session(session_id)
        return {"ok": True, "deleted": deleted}

    @app.post("/sessions/{session_id}/heartbeat")
    async def heartbeat(session_id: str):
        """Refresh last_seen for a session (keepalive)."""
        registry = require_registry()
        if not registry.touch_session(session_id):
            raise HTTPException(status_code=404, detail="Session not found")
        return {"ok": True}

    @app.get("/sessions/{session_id}/output")
    async def get_output(session_id: str, lines: int = 50):
        """Recent terminal output of a session, from the first transport that can capture it."""
        registry = require_registry()
        try:
            session = registry.get_session(session_id)
        except SessionNotFound:
            raise HTTPException(status_code=404, detail="Session not found")

        if not app.state.backend:
            raise HTTPException(status_code=503, detail="Backend not configured")

        output = await app.state.backend.capture_output(session, lines)
        return {"ok": output is not None, "session_id": session_id, "output": output}

    @app.post("/tokens/validate")
    async def validate_token(request: ValidateTokenRequest):
        """Check whether a correlation token is still usable."""
        registry = require_registry()
        if not request.token:
            raise HTTPException(status_code=400, detail="token is required")

        # lookup only: validating must not consume a single-use token
        try:
            token = registry.lookup_token(request.token, chat_id=request.chat_id)
        except TokenInvalid as e:
            return {"valid": False, "error": e.reason}
        if registry.find_session(token.session_id) is None:
            return {"valid": False, "error": "Session for token no longer exists"}
        return {"valid": True, "session_id": token.session_id}

    @app.post("/cleanup")
    async def cleanup():
        """Remove expired sessions and tokens."""
        registry = require_registry()
        sessions = registry.cleanup_expired_sessions()
        tokens = registry.cleanup_expired_tokens()
        return {"ok": True, "cleaned": {"sessions": sessions, "tokens": tokens}}

    return app
