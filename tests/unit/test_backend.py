"""Unit tests for ClaudeCodeBackend transport fallback."""

import asyncio
import gc
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.backend import NO_TRANSPORT_AVAILABLE, ClaudeCodeBackend
from src.errors import UnknownTransportKind
from src.models import Session, TransportDescriptor, TransportResult


def make_session(*kinds: str) -> Session:
    options = {
        "tmux": {"pane_id": "%5"},
        "nvim": {"socket_path": "/tmp/nvim.sock"},
        "pty": {"pty_path": "/dev/pts/3"},
    }
    return Session(
        session_id="sess-1",
        label="api",
        transports=[TransportDescriptor(kind=k, options=dict(options.get(k, {}))) for k in kinds],
    )


@pytest.mark.asyncio
async def test_first_transport_success_skips_rest(make_factory, transport_calls):
    backend = ClaudeCodeBackend(transport_factory=make_factory({
        "nvim": TransportResult.success(),
        "tmux": TransportResult.success(),
    }, transport_calls))

    result = await backend.inject_command(make_session("nvim", "tmux"), "continue")

    assert result.ok is True
    assert result.transport == "nvim"
    assert transport_calls == [("nvim", "continue")]


@pytest.mark.asyncio
async def test_falls_back_in_order(make_factory, transport_calls):
    """nvim fails, tmux succeeds: exactly one attempt each, nvim first."""
    backend = ClaudeCodeBackend(transport_factory=make_factory({
        "nvim": TransportResult.failure("socket gone", "TransportUnreachable"),
        "tmux": TransportResult.success(),
    }, transport_calls))

    result = await backend.inject_command(make_session("nvim", "tmux"), "y")

    assert result.ok is True
    assert result.transport == "tmux"
    assert transport_calls == [("nvim", "y"), ("tmux", "y")]
    assert [(a.kind, a.ok) for a in result.attempts] == [("nvim", False), ("tmux", True)]


@pytest.mark.asyncio
async def test_all_fail_aggregates_errors(make_factory, transport_calls):
    backend = ClaudeCodeBackend(transport_factory=make_factory({
        "nvim": TransportResult.failure("socket gone"),
        "tmux": TransportResult.failure("pane gone"),
    }, transport_calls))

    result = await backend.inject_command(make_session("nvim", "tmux"), "y")

    assert result.ok is False
    assert result.transport is None
    assert result.error == "nvim: socket gone; tmux: pane gone"


@pytest.mark.asyncio
async def test_empty_transport_list():
    factory = MagicMock()
    backend = ClaudeCodeBackend(transport_factory=factory)

    result = await backend.inject_command(make_session(), "continue")

    assert result.ok is False
    assert result.error == NO_TRANSPORT_AVAILABLE
    factory.assert_not_called()


@pytest.mark.asyncio
async def test_unknown_kind_is_folded_into_result(make_factory, transport_calls):
    """An unbuildable descriptor counts as a failed attempt; later ones still run."""
    ok_factory = make_factory({"tmux": TransportResult.success()}, transport_calls)

    def factory(descriptor, session=None, config=None):
        if descriptor.kind == "carrier-pigeon":
            raise UnknownTransportKind(descriptor.kind, ["nvim", "pty", "tmux"])
        return ok_factory(descriptor, session, config)

    backend = ClaudeCodeBackend(transport_factory=factory)

    result = await backend.inject_command(make_session("carrier-pigeon", "tmux"), "y")

    assert result.ok is True
    assert result.transport == "tmux"
    assert "carrier-pigeon" in result.attempts[0].error


@pytest.mark.asyncio
async def test_never_raises_on_adapter_exception():
    transport = MagicMock()
    transport.inject = AsyncMock(side_effect=RuntimeError("adapter bug"))
    backend = ClaudeCodeBackend(transport_factory=lambda d, s=None, c=None: transport)

    result = await backend.inject_command(make_session("tmux"), "y")

    assert result.ok is False
    assert "adapter bug" in result.error


@pytest.mark.asyncio
async def test_serialize_per_session_orders_commands():
    order = []

    async def slow_inject(text):
        order.append(f"start {text}")
        await asyncio.sleep(0.01)
        order.append(f"end {text}")
        return TransportResult.success()

    transport = MagicMock()
    transport.inject = slow_inject
    backend = ClaudeCodeBackend(
        config={"injection": {"serialize_per_session": True}},
        transport_factory=lambda d, s=None, c=None: transport,
    )
    session = make_session("tmux")

    await asyncio.gather(
        backend.inject_command(session, "a"),
        backend.inject_command(session, "b"),
    )

    assert order == ["start a", "end a", "start b", "end b"]


@pytest.mark.asyncio
async def test_same_session_commands_interleave_by_default():
    order = []

    async def slow_inject(text):
        order.append(f"start {text}")
        await asyncio.sleep(0.01)
        order.append(f"end {text}")
        return TransportResult.success()

    transport = MagicMock()
    transport.inject = slow_inject
    backend = ClaudeCodeBackend(transport_factory=lambda d, s=None, c=None: transport)
    session = make_session("tmux")

    results = await asyncio.gather(
        backend.inject_command(session, "a"),
        backend.inject_command(session, "b"),
    )

    assert backend.serialize_per_session is False
    assert all(r.ok for r in results)
    assert order[:2] == ["start a", "start b"]
    assert sorted(order[2:]) == ["end a", "end b"]


@pytest.mark.asyncio
async def test_session_locks_released_after_use():
    transport = MagicMock()
    transport.inject = AsyncMock(return_value=TransportResult.success())
    backend = ClaudeCodeBackend(
        serialize_per_session=True,
        transport_factory=lambda d, s=None, c=None: transport,
    )

    for i in range(5):
        session = make_session("tmux")
        session.session_id = f"sess-{i}"
        await backend.inject_command(session, "y")

    gc.collect()
    assert len(backend._session_locks) == 0


@pytest.mark.asyncio
async def test_attempts_carry_failure_reason(make_factory, transport_calls):
    backend = ClaudeCodeBackend(transport_factory=make_factory({
        "nvim": TransportResult.failure("socket gone", "TransportUnreachable"),
        "tmux": TransportResult.failure("timed out", "TransportTimeout"),
    }, transport_calls))

    result = await backend.inject_command(make_session("nvim", "tmux"), "y")

    assert [(a.kind, a.reason) for a in result.attempts] == [
        ("nvim", "TransportUnreachable"),
        ("tmux", "TransportTimeout"),
    ]


@pytest.mark.asyncio
async def test_capture_output_uses_first_capable_transport():
    pty = MagicMock(supports_capture=False)
    tmux = MagicMock(supports_capture=True)
    tmux.capture = AsyncMock(return_value="pane text")
    transports = {"pty": pty, "tmux": tmux}
    backend = ClaudeCodeBackend(transport_factory=lambda d, s=None, c=None: transports[d.kind])

    output = await backend.capture_output(make_session("pty", "tmux"), lines=10)

    assert output == "pane text"
    tmux.capture.assert_awaited_once_with(10)


@pytest.mark.asyncio
async def test_capture_output_none_when_unavailable():
    tmux = MagicMock(supports_capture=True)
    tmux.capture = AsyncMock(side_effect=RuntimeError("tmux gone"))
    backend = ClaudeCodeBackend(transport_factory=lambda d, s=None, c=None: tmux)

    assert await backend.capture_output(make_session("tmux")) is None
