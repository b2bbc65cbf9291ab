"""Session registry: known sessions, their transports, and correlation tokens."""

import asyncio
import json
import logging
import secrets
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional

from .errors import SessionNotFound, TokenInvalid
from .models import CorrelationToken, Session, SessionState, TransportDescriptor

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL_SECONDS = 24 * 60 * 60
DEFAULT_TOKEN_TTL_SECONDS = 24 * 60 * 60

# Formats produced by `ps -o lstart=` on Linux and macOS
LSTART_FORMATS = ("%a %b %d %H:%M:%S %Y", "%a %d %b %H:%M:%S %Y")
START_TIME_TOLERANCE_SECONDS = 2


def build_transports(data: dict, existing: Optional[list[TransportDescriptor]] = None) -> list[TransportDescriptor]:
    """
    Build an ordered transport list from hook fields.

    Priority is nvim > tmux > pty. When nvim runs inside tmux, tmux is
    kept as the fallback. Pane ids (e.g. %47) are preferred over
    session:window.pane names, which go stale when windows are renumbered.
    """
    if data.get("transports"):
        return [
            t if isinstance(t, TransportDescriptor) else TransportDescriptor.from_dict(t)
            for t in data["transports"]
        ]

    tmux_pane_id = data.get("tmux_pane_id")
    tmux_session = data.get("tmux_pane") or data.get("tmux_session")
    tmux = None
    if tmux_pane_id or tmux_session:
        tmux = TransportDescriptor.from_dict({
            "kind": "tmux",
            "pane_id": tmux_pane_id,
            "session_name": tmux_session,
        })

    if data.get("nvim_socket"):
        nvim = TransportDescriptor.from_dict({
            "kind": "nvim",
            "socket_path": data["nvim_socket"],
            "instance_name": data.get("instance_name"),
        })
        return [nvim, tmux] if tmux else [nvim]

    if tmux:
        return [tmux]

    if data.get("pty_path"):
        return [TransportDescriptor.from_dict({"kind": "pty", "pty_path": data["pty_path"]})]

    return list(existing or [])


class SessionRegistry:
    """
    Owns Session and CorrelationToken storage.

    Sessions are keyed by Claude's session_id; tokens by their value.
    Both maps are guarded by one lock so concurrent tasks (and the
    server's worker threads) can read and insert without corruption.
    """

    def __init__(
        self,
        state_file: Optional[str] = None,
        token_ttl_seconds: float = DEFAULT_TOKEN_TTL_SECONDS,
        session_ttl_seconds: float = DEFAULT_SESSION_TTL_SECONDS,
        single_use_tokens: bool = False,
        clock: Optional[Callable[[], datetime]] = None,
        config: Optional[dict] = None,
    ):
        self.state_file = Path(state_file).expanduser() if state_file else None
        self.token_ttl = timedelta(seconds=token_ttl_seconds)
        self.session_ttl = timedelta(seconds=session_ttl_seconds)
        self.single_use_tokens = single_use_tokens
        self._clock = clock or datetime.now
        self.config = config or {}

        timeouts = self.config.get("timeouts", {})
        self.ps_timeout_seconds = timeouts.get("registry", {}).get("ps_timeout_seconds", 2)

        self.sessions: dict[str, Session] = {}
        self.tokens: dict[str, CorrelationToken] = {}
        self._lock = threading.RLock()

        if self.state_file:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            self._load_state()

    @classmethod
    def from_config(cls, config: dict) -> "SessionRegistry":
        registry_config = config.get("registry", {})
        return cls(
            state_file=config.get("paths", {}).get("state_file"),
            token_ttl_seconds=registry_config.get("token_ttl_seconds", DEFAULT_TOKEN_TTL_SECONDS),
            session_ttl_seconds=registry_config.get("session_ttl_seconds", DEFAULT_SESSION_TTL_SECONDS),
            single_use_tokens=registry_config.get("single_use_tokens", False),
            config=config,
        )

    def now(self) -> datetime:
        return self._clock()

    # =========================================================================
    # Sessions
    # =========================================================================

    def upsert_session(self, data: dict) -> Session:
        """
        Create or update a session from hook fields.

        Fields absent from `data` keep their existing values.

        Raises:
            ValueError: if session_id is missing
        """
        session_id = data.get("session_id")
        if not session_id:
            raise ValueError("session_id is required")

        with self._lock:
            now = self.now()
            existing = self.sessions.get(session_id)

            def pick(key, default=None):
                if data.get(key) is not None:
                    return data[key]
                if existing is not None:
                    return getattr(existing, key)
                return default

            state = data.get("state")
            session = Session(
                session_id=session_id,
                label=pick("label"),
                transports=build_transports(data, existing.transports if existing else None),
                cwd=pick("cwd"),
                ppid=pick("ppid"),
                pid=pick("pid"),
                start_time=pick("start_time"),
                notify=pick("notify", False),
                state=SessionState(state) if state else (existing.state if existing else SessionState.RUNNING),
                created_at=existing.created_at if existing else now,
                updated_at=now,
                last_seen=now,
                expires_at=now + self.session_ttl,
            )
            self.sessions[session_id] = session
            self._save_state()

        logger.info(
            f"Session upserted: {session_id} "
            f"(transports={[t.kind for t in session.transports]})"
        )
        return session

    def get_session(self, session_id: str) -> Session:
        """
        Look up a session by id.

        Raises:
            SessionNotFound: if the id is unknown
        """
        with self._lock:
            session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def find_session(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self.sessions.get(session_id)

    def get_session_by_ppid(self, ppid: int) -> Optional[Session]:
        """Find the running session whose parent process is `ppid`."""
        ppid = int(ppid)
        with self._lock:
            for session in self.sessions.values():
                if session.ppid == ppid and session.state == SessionState.RUNNING:
                    return session
        return None

    def list_sessions(self, active_only: bool = False, notify_only: bool = False) -> list[Session]:
        """List sessions, most recently seen first."""
        now = self.now()
        with self._lock:
            result = list(self.sessions.values())

        if active_only:
            result = [
                s for s in result
                if s.state == SessionState.RUNNING and (s.expires_at is None or s.expires_at > now)
            ]
        if notify_only:
            result = [s for s in result if s.notify]

        result.sort(key=lambda s: s.last_seen, reverse=True)
        return result

    def touch_session(self, session_id: str) -> bool:
        """Heartbeat: refresh last_seen and the session TTL."""
        with self._lock:
            session = self.sessions.get(session_id)
            if not session:
                return False
            now = self.now()
            session.last_seen = now
            session.expires_at = now + self.session_ttl
            self._save_state()
            return True

    def enable_notify(
        self,
        session_id: str,
        label: Optional[str] = None,
        nvim_socket: Optional[str] = None,
    ) -> Session:
        """
        Opt a session into chat notifications.

        Raises:
            SessionNotFound: if the id is unknown
        """
        with self._lock:
            session = self.get_session(session_id)
            now = self.now()
            session.notify = True
            session.label = label or session.label
            session.updated_at = now
            session.last_seen = now

            if nvim_socket:
                # nvim becomes primary; any other transports stay as fallbacks
                others = [t for t in session.transports if t.kind != "nvim"]
                previous = next((t for t in session.transports if t.kind == "nvim"), None)
                nvim = TransportDescriptor.from_dict({
                    "kind": "nvim",
                    "socket_path": nvim_socket,
                    "instance_name": previous.get("instance_name") if previous else None,
                })
                session.transports = [nvim] + others

            self._save_state()

        logger.info(f"Notifications enabled for session: {session_id} ({label})")
        return session

    def stop_session(self, session_id: str) -> bool:
        with self._lock:
            session = self.sessions.get(session_id)
            if not session:
                return False
            session.state = SessionState.STOPPED
            session.updated_at = self.now()
            self._save_state()
            return True

    def delete_session(self, session_id: str) -> bool:
        """Remove a session and every token issued for it."""
        with self._lock:
            removed = self.sessions.pop(session_id, None) is not None
            self._drop_tokens_for(session_id)
            self._save_state()
        if removed:
            logger.info(f"Session deleted: {session_id}")
        return removed

    def cleanup_expired_sessions(self) -> int:
        now = self.now()
        with self._lock:
            expired = [
                sid for sid, s in self.sessions.items()
                if s.expires_at is not None and s.expires_at < now
            ]
            for sid in expired:
                del self.sessions[sid]
                self._drop_tokens_for(sid)
            if expired:
                self._save_state()

        if expired:
            logger.info(f"Cleaned up {len(expired)} expired sessions")
        return len(expired)

    async def cleanup_dead_sessions(self) -> int:
        """
        Remove notify-enabled sessions whose parent process has exited.

        Liveness is checked outside the lock since `ps` can be slow.

        Returns:
            Number of sessions removed
        """
        with self._lock:
            candidates = [
                (s.session_id, s.ppid, s.start_time, s.label)
                for s in self.sessions.values()
                if s.notify and s.ppid
            ]

        dead = []
        for session_id, ppid, start_time, label in candidates:
            if not await self._is_process_alive(ppid, start_time):
                logger.info(f"Session {session_id} ({label}) is dead (PID {ppid} gone or restarted)")
                dead.append(session_id)

        if not dead:
            return 0

        count = 0
        with self._lock:
            for session_id in dead:
                if self.sessions.pop(session_id, None) is not None:
                    count += 1
                self._drop_tokens_for(session_id)
            self._save_state()

        logger.info(f"Cleaned up {count} dead sessions")
        return count

    async def _is_process_alive(self, pid: int, expected_start_time: Optional[int]) -> bool:
        try:
            proc = await asyncio.create_subprocess_exec(
                "ps", "-o", "lstart=", "-p", str(pid),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self.ps_timeout_seconds)
        except (OSError, asyncio.TimeoutError) as e:
            # Can't tell; keep the session rather than drop a live one
            logger.warning(f"Could not check process {pid}: {e}")
            return True

        lstart = stdout.decode().strip()
        if proc.returncode != 0 or not lstart:
            return False
        if not expected_start_time:
            return True

        for fmt in LSTART_FORMATS:
            try:
                actual = datetime.strptime(" ".join(lstart.split()), fmt).timestamp()
            except ValueError:
                continue
            return abs(actual - expected_start_time) <= START_TIME_TOLERANCE_SECONDS

        # Unparseable start time: a duplicate notification beats a missed one
        return True

    # =========================================================================
    # Tokens
    # =========================================================================

    def mint_token(
        self,
        session_id: str,
        event: str = "Stop",
        context: Optional[dict] = None,
        chat_id: Optional[str] = None,
        ttl_seconds: Optional[float] = None,
    ) -> CorrelationToken:
        """
        Issue a correlation token for a session.

        Raises:
            SessionNotFound: if the session does not exist
        """
        ttl = timedelta(seconds=ttl_seconds) if ttl_seconds is not None else self.token_ttl
        with self._lock:
            self.get_session(session_id)
            now = self.now()
            token = CorrelationToken(
                value=secrets.token_urlsafe(16),
                session_id=session_id,
                issued_at=now,
                expires_at=now + ttl,
                event=event,
                context=dict(context or {}),
                chat_id=str(chat_id) if chat_id is not None else None,
            )
            self.tokens[token.value] = token
            self._save_state()

        logger.debug(f"Minted token for session {session_id} (event={event})")
        return token

    def lookup_token(self, value: str, chat_id: Optional[str] = None) -> CorrelationToken:
        """
        Validate a token without resolving its session.

        Raises:
            TokenInvalid: if unknown, expired, or bound to another chat
        """
        with self._lock:
            token = self.tokens.get(value)
        if token is None:
            raise TokenInvalid("Token not found")
        if token.is_expired(self.now()):
            raise TokenInvalid("Token expired")
        if chat_id is not None and token.chat_id is not None and token.chat_id != str(chat_id):
            raise TokenInvalid("Chat ID mismatch")
        return token

    def resolve_token(self, value: str, chat_id: Optional[str] = None) -> Session:
        """
        Resolve a token to the session it was issued for.

        Tokens stay valid until their TTL so the operator can retry after a
        transient failure, unless single-use tokens are configured.

        Raises:
            TokenInvalid: if the token is unknown, expired, foreign or its
                session no longer exists
        """
        with self._lock:
            token = self.lookup_token(value, chat_id)
            session = self.sessions.get(token.session_id)
            if session is None:
                raise TokenInvalid("Session for token no longer exists")
            if self.single_use_tokens:
                del self.tokens[value]
                self._save_state()
            return session

    def revoke_token(self, value: str) -> bool:
        with self._lock:
            removed = self.tokens.pop(value, None) is not None
            if removed:
                self._save_state()
            return removed

    def cleanup_expired_tokens(self) -> int:
        now = self.now()
        with self._lock:
            expired = [v for v, t in self.tokens.items() if t.is_expired(now)]
            for value in expired:
                del self.tokens[value]
            if expired:
                self._save_state()
        return len(expired)

    def _drop_tokens_for(self, session_id: str) -> None:
        """Remove every token bound to a session (caller holds the lock)."""
        for value in [v for v, t in self.tokens.items() if t.session_id == session_id]:
            del self.tokens[value]

    # =========================================================================
    # Persistence
    # =========================================================================

    def _load_state(self) -> bool:
        """
        Load sessions and tokens from the state file.

        Returns:
            True if loaded (or no file exists), False on error.
        """
        if not self.state_file or not self.state_file.exists():
            return True
        try:
            with open(self.state_file) as f:
                data = json.load(f)
            # Decode everything before touching the registry: a bad entry loads nothing
            sessions = {}
            for item in data.get("sessions", []):
                session = Session.from_dict(item)
                sessions[session.session_id] = session
            tokens = {}
            for item in data.get("tokens", []):
                token = CorrelationToken.from_dict(item)
                tokens[token.value] = token
            with self._lock:
                self.sessions = sessions
                self.tokens = tokens
            logger.info(
                f"Restored {len(self.sessions)} sessions and {len(self.tokens)} tokens "
                f"from {self.state_file}"
            )
            return True
        except Exception as e:
            logger.error(f"Failed to load registry state from {self.state_file}: {e}")
            return False

    def _save_state(self) -> bool:
        """
        Persist sessions and tokens with temp file + rename.

        Returns:
            True if saved (or persistence disabled), False on error.
        """
        if not self.state_file:
            return True

        temp_file = self.state_file.with_suffix(".tmp")
        try:
            with self._lock:
                data = {
                    "sessions": [s.to_dict() for s in self.sessions.values()],
                    "tokens": [t.to_dict() for t in self.tokens.values()],
                }
                with open(temp_file, "w") as f:
                    json.dump(data, f, indent=2)
                temp_file.replace(self.state_file)
            return True
        except Exception as e:
            logger.error(f"Failed to save registry state to {self.state_file}: {e}")
            temp_file.unlink(missing_ok=True)
            return False
