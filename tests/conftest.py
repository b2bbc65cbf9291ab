"""Shared pytest fixtures for Claude Remote Relay tests."""

from datetime import datetime, timedelta
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from src.backend import ClaudeCodeBackend
from src.channel import ChannelCapabilities, ChatChannel
from src.models import OutboundNotification, TransportResult
from src.reply_token_store import ReplyTokenStore
from src.router import CommandRouter
from src.server import create_app
from src.session_registry import SessionRegistry


class FakeClock:
    """Settable clock for TTL tests."""

    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2024, 1, 15, 10, 0, 0)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float):
        self.current = self.current + timedelta(seconds=seconds)


class RecordingChannel(ChatChannel):
    """In-memory ChatChannel that records everything sent through it."""

    name = "recording"

    def __init__(self, default_channel_id: str = "chat-1"):
        super().__init__(default_channel_id=default_channel_id)
        self.notifications: list[OutboundNotification] = []
        self.confirmations: list[tuple] = []
        self.errors: list[tuple] = []
        self.fail_notifications = False
        self.supports_buttons = True
        self._next_message_id = 100

    @property
    def capabilities(self):
        return ChannelCapabilities(supports_buttons=self.supports_buttons)

    async def send_notification(self, notification):
        if self.fail_notifications:
            raise RuntimeError("chat unavailable")
        self.notifications.append(notification)
        self._next_message_id += 1
        return str(self._next_message_id)

    async def send_command_confirmation(self, channel_id, details):
        self.confirmations.append((channel_id, details))

    async def send_error(self, channel_id, message):
        self.errors.append((channel_id, message))

    async def start(self):
        pass

    async def stop(self):
        pass


class ScriptedTransport:
    """Transport stand-in returning a fixed TransportResult."""

    supports_capture = False

    def __init__(self, kind: str, result: TransportResult, calls: list):
        self.kind = kind
        self.result = result
        self.calls = calls

    async def inject(self, text: str) -> TransportResult:
        self.calls.append((self.kind, text))
        return self.result


def scripted_factory(results: dict, calls: list):
    """Transport factory driven by a {kind: TransportResult} map."""
    def factory(descriptor, session=None, config=None):
        return ScriptedTransport(descriptor.kind, results[descriptor.kind], calls)
    return factory


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry(clock) -> SessionRegistry:
    """In-memory registry (no state file) on a fake clock."""
    return SessionRegistry(token_ttl_seconds=3600, session_ttl_seconds=86400, clock=clock)


@pytest.fixture
def tmux_session(registry):
    return registry.upsert_session({
        "session_id": "sess-tmux-1",
        "label": "api",
        "cwd": "/home/dev/projects/api",
        "tmux_pane_id": "%5",
        "tmux_session": "claude",
        "notify": True,
    })


@pytest.fixture
def nvim_tmux_session(registry):
    return registry.upsert_session({
        "session_id": "sess-nvim-1",
        "label": "editor",
        "cwd": "/home/dev/projects/web",
        "nvim_socket": "/tmp/nvim.sock",
        "tmux_pane_id": "%9",
        "notify": True,
    })


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def reply_tokens(tmp_path):
    store = ReplyTokenStore(db_path=str(tmp_path / "reply_tokens.db"), ttl_seconds=3600)
    yield store
    store.close()


@pytest.fixture
def transport_calls() -> list:
    return []


@pytest.fixture
def mock_backend():
    backend = MagicMock(spec=ClaudeCodeBackend)
    backend.name = "claude-code"
    backend.inject_command = AsyncMock()
    backend.capture_output = AsyncMock(return_value=None)
    return backend


@pytest.fixture
def router(channel, mock_backend, registry, reply_tokens) -> CommandRouter:
    return CommandRouter(channel=channel, backend=mock_backend, registry=registry, reply_tokens=reply_tokens)


@pytest.fixture
def test_client(registry, router, mock_backend) -> TestClient:
    app = create_app(registry=registry, router=router, backend=mock_backend, config={})
    return TestClient(app)


@pytest.fixture
def make_factory():
    """Build a scripted transport factory: make_factory({kind: TransportResult}, calls)."""
    return scripted_factory
