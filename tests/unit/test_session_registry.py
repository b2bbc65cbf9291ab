"""Unit tests for SessionRegistry: sessions, tokens, cleanup and persistence."""

import json
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.errors import SessionNotFound, TokenInvalid
from src.models import SessionState
from src.session_registry import SessionRegistry, build_transports


class TestBuildTransports:

    def test_nvim_inside_tmux_keeps_tmux_fallback(self):
        transports = build_transports({"nvim_socket": "/tmp/nvim.sock", "tmux_pane_id": "%3"})
        assert [t.kind for t in transports] == ["nvim", "tmux"]
        assert transports[0].get("socket_path") == "/tmp/nvim.sock"
        assert transports[1].get("pane_id") == "%3"

    def test_tmux_only(self):
        transports = build_transports({"tmux_session": "claude"})
        assert [t.to_dict() for t in transports] == [{"kind": "tmux", "session_name": "claude"}]

    def test_pty_only(self):
        transports = build_transports({"pty_path": "/dev/pts/4"})
        assert [t.to_dict() for t in transports] == [{"kind": "pty", "pty_path": "/dev/pts/4"}]

    def test_explicit_list_wins(self):
        transports = build_transports({
            "transports": [{"kind": "pty", "pty_path": "/dev/pts/1"}],
            "tmux_session": "ignored",
        })
        assert [t.kind for t in transports] == ["pty"]

    def test_no_fields_keeps_existing(self):
        existing = build_transports({"tmux_session": "claude"})
        assert build_transports({}, existing) == existing


class TestSessions:

    def test_upsert_requires_session_id(self, registry):
        with pytest.raises(ValueError):
            registry.upsert_session({"cwd": "/tmp"})

    def test_upsert_merges_missing_fields(self, registry):
        registry.upsert_session({"session_id": "s1", "label": "api", "cwd": "/a", "tmux_session": "claude"})
        session = registry.upsert_session({"session_id": "s1", "ppid": 99})

        assert session.label == "api"
        assert session.cwd == "/a"
        assert session.ppid == 99
        assert [t.kind for t in session.transports] == ["tmux"]

    def test_get_unknown_raises(self, registry):
        with pytest.raises(SessionNotFound):
            registry.get_session("nope")
        assert registry.find_session("nope") is None

    def test_list_sorted_by_last_seen(self, registry, clock):
        registry.upsert_session({"session_id": "old"})
        clock.advance(10)
        registry.upsert_session({"session_id": "new", "notify": True})

        assert [s.session_id for s in registry.list_sessions()] == ["new", "old"]
        assert [s.session_id for s in registry.list_sessions(notify_only=True)] == ["new"]

    def test_active_only_excludes_stopped_and_expired(self, registry, clock):
        registry.upsert_session({"session_id": "stopped"})
        registry.stop_session("stopped")
        registry.upsert_session({"session_id": "live"})

        assert [s.session_id for s in registry.list_sessions(active_only=True)] == ["live"]

        clock.advance(86400 + 1)
        assert registry.list_sessions(active_only=True) == []

    def test_get_session_by_ppid(self, registry):
        registry.upsert_session({"session_id": "s1", "ppid": 1234})
        assert registry.get_session_by_ppid(1234).session_id == "s1"
        assert registry.get_session_by_ppid(4321) is None

    def test_touch_refreshes_expiry(self, registry, clock):
        session = registry.upsert_session({"session_id": "s1"})
        first_expiry = session.expires_at
        clock.advance(60)

        assert registry.touch_session("s1") is True
        assert registry.get_session("s1").expires_at > first_expiry
        assert registry.touch_session("missing") is False

    def test_enable_notify_puts_nvim_first(self, registry):
        registry.upsert_session({"session_id": "s1", "tmux_pane_id": "%2"})
        session = registry.enable_notify("s1", label="web", nvim_socket="/tmp/nvim.sock")

        assert session.notify is True
        assert session.label == "web"
        assert [t.kind for t in session.transports] == ["nvim", "tmux"]

    def test_enable_notify_unknown_raises(self, registry):
        with pytest.raises(SessionNotFound):
            registry.enable_notify("missing")

    def test_delete_drops_tokens(self, registry, tmux_session):
        token = registry.mint_token(tmux_session.session_id)
        assert registry.delete_session(tmux_session.session_id) is True
        assert token.value not in registry.tokens

    def test_cleanup_expired_sessions(self, registry, clock):
        registry.upsert_session({"session_id": "s1"})
        clock.advance(86400 + 1)
        registry.upsert_session({"session_id": "s2"})

        assert registry.cleanup_expired_sessions() == 1
        assert list(registry.sessions) == ["s2"]


class TestTokens:

    def test_mint_then_resolve(self, registry, tmux_session):
        token = registry.mint_token(tmux_session.session_id, context={"summary": "done"})

        assert len(token.value) >= 16
        assert registry.resolve_token(token.value).session_id == tmux_session.session_id

    def test_tokens_are_unique(self, registry, tmux_session):
        values = {registry.mint_token(tmux_session.session_id).value for _ in range(50)}
        assert len(values) == 50

    def test_mint_for_unknown_session_raises(self, registry):
        with pytest.raises(SessionNotFound):
            registry.mint_token("missing")

    def test_zero_ttl_fails_immediately(self, registry, tmux_session):
        token = registry.mint_token(tmux_session.session_id, ttl_seconds=0)
        with pytest.raises(TokenInvalid) as exc_info:
            registry.resolve_token(token.value)
        assert exc_info.value.reason == "Token expired"

    def test_expires_after_ttl(self, registry, tmux_session, clock):
        token = registry.mint_token(tmux_session.session_id)
        clock.advance(3599)
        assert registry.resolve_token(token.value).session_id == tmux_session.session_id

        clock.advance(1)
        with pytest.raises(TokenInvalid):
            registry.resolve_token(token.value)

    def test_unknown_token(self, registry):
        with pytest.raises(TokenInvalid) as exc_info:
            registry.resolve_token("doesnotexist123")
        assert exc_info.value.reason == "Token not found"

    def test_chat_binding(self, registry, tmux_session):
        token = registry.mint_token(tmux_session.session_id, chat_id=42)

        assert registry.resolve_token(token.value, chat_id="42").session_id == tmux_session.session_id
        with pytest.raises(TokenInvalid) as exc_info:
            registry.resolve_token(token.value, chat_id="99")
        assert exc_info.value.reason == "Chat ID mismatch"

    def test_token_for_deleted_session_is_invalid(self, registry, tmux_session):
        token = registry.mint_token(tmux_session.session_id)
        registry.sessions.pop(tmux_session.session_id)

        with pytest.raises(TokenInvalid) as exc_info:
            registry.resolve_token(token.value)
        assert exc_info.value.reason == "Session for token no longer exists"

    def test_reusable_by_default(self, registry, tmux_session):
        token = registry.mint_token(tmux_session.session_id)
        registry.resolve_token(token.value)
        assert registry.resolve_token(token.value).session_id == tmux_session.session_id

    def test_single_use(self, clock):
        registry = SessionRegistry(single_use_tokens=True, clock=clock)
        registry.upsert_session({"session_id": "s1"})
        token = registry.mint_token("s1")

        registry.resolve_token(token.value)
        with pytest.raises(TokenInvalid):
            registry.resolve_token(token.value)

    def test_cleanup_expired_tokens(self, registry, tmux_session, clock):
        registry.mint_token(tmux_session.session_id, ttl_seconds=10)
        keep = registry.mint_token(tmux_session.session_id, ttl_seconds=100)
        clock.advance(50)

        assert registry.cleanup_expired_tokens() == 1
        assert list(registry.tokens) == [keep.value]

    def test_revoke(self, registry, tmux_session):
        token = registry.mint_token(tmux_session.session_id)
        assert registry.revoke_token(token.value) is True
        assert registry.revoke_token(token.value) is False


class TestPersistence:

    def test_state_survives_restart(self, tmp_path, clock):
        state_file = tmp_path / "registry.json"
        registry = SessionRegistry(state_file=str(state_file), clock=clock)
        registry.upsert_session({"session_id": "s1", "label": "api", "nvim_socket": "/tmp/n.sock"})
        token = registry.mint_token("s1", chat_id="42")

        restored = SessionRegistry(state_file=str(state_file), clock=clock)

        assert restored.get_session("s1").label == "api"
        assert [t.kind for t in restored.get_session("s1").transports] == ["nvim"]
        assert restored.resolve_token(token.value, chat_id="42").session_id == "s1"
        assert not state_file.with_suffix(".tmp").exists()

    def test_corrupt_state_file_starts_empty(self, tmp_path):
        state_file = tmp_path / "registry.json"
        state_file.write_text("{not json")

        registry = SessionRegistry(state_file=str(state_file))

        assert registry.sessions == {}

    def test_bad_entry_loads_nothing(self, tmp_path, clock):
        state_file = tmp_path / "registry.json"
        registry = SessionRegistry(state_file=str(state_file), clock=clock)
        registry.upsert_session({"session_id": "s1", "label": "api"})
        registry.mint_token("s1", chat_id="42")
        data = json.loads(state_file.read_text())
        data["sessions"].append({"session_id": "s2"})
        state_file.write_text(json.dumps(data))

        restored = SessionRegistry(state_file=str(state_file), clock=clock)

        assert restored.sessions == {}
        assert restored.tokens == {}

    def test_from_config(self, tmp_path):
        registry = SessionRegistry.from_config({
            "paths": {"state_file": str(tmp_path / "r.json")},
            "registry": {"token_ttl_seconds": 60, "single_use_tokens": True},
        })
        assert registry.token_ttl.total_seconds() == 60
        assert registry.single_use_tokens is True


class TestDeadSessionCleanup:

    @pytest.mark.asyncio
    async def test_removes_only_dead_notify_sessions(self, registry):
        registry.upsert_session({"session_id": "dead", "ppid": 111, "notify": True})
        registry.upsert_session({"session_id": "alive", "ppid": 222, "notify": True})
        registry.upsert_session({"session_id": "quiet", "ppid": 333})
        token = registry.mint_token("dead")

        async def fake_alive(pid, start_time):
            return pid != 111

        with patch.object(registry, "_is_process_alive", side_effect=fake_alive):
            removed = await registry.cleanup_dead_sessions()

        assert removed == 1
        assert set(registry.sessions) == {"alive", "quiet"}
        assert token.value not in registry.tokens

    @pytest.mark.asyncio
    async def test_process_alive_matches_start_time(self, registry):
        proc = MagicMock()
        proc.returncode = 0
        proc.communicate = AsyncMock(return_value=(b"Mon Jan 15 10:00:00 2024\n", b""))
        expected = int(datetime(2024, 1, 15, 10, 0, 0).timestamp())

        with patch("src.session_registry.asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            assert await registry._is_process_alive(111, expected) is True
            # PID reused by a later process
            assert await registry._is_process_alive(111, expected - 3600) is False

    @pytest.mark.asyncio
    async def test_process_gone(self, registry):
        proc = MagicMock()
        proc.returncode = 1
        proc.communicate = AsyncMock(return_value=(b"", b""))

        with patch("src.session_registry.asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            assert await registry._is_process_alive(111, None) is False

    @pytest.mark.asyncio
    async def test_ps_unavailable_keeps_session(self, registry):
        with patch(
            "src.session_registry.asyncio.create_subprocess_exec",
            AsyncMock(side_effect=FileNotFoundError("ps")),
        ):
            assert await registry._is_process_alive(111, None) is True
