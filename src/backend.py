"""Agent backends: deliver operator commands into running sessions."""

import asyncio
import logging
import weakref
from typing import Callable, Optional, Protocol

from .models import InjectionResult, Session, TransportAttempt, TransportDescriptor
from .transports import Transport, create_transport

logger = logging.getLogger(__name__)

NO_TRANSPORT_AVAILABLE = "NoTransportAvailable"

TransportBuilder = Callable[[TransportDescriptor, Optional[Session], Optional[dict]], Transport]


class AgentBackend(Protocol):
    """Anything that can inject a command into a session."""

    name: str

    async def inject_command(self, session: Session, command: str) -> InjectionResult:
        ...


class ClaudeCodeBackend:
    """
    Injects commands into Claude Code sessions through their transports.

    Transports are tried in the session's stored order; the first success
    wins. Failures, including adapters that can't be constructed, are
    folded into one InjectionResult. Nothing is raised to the caller.
    """

    name = "claude-code"

    def __init__(
        self,
        config: Optional[dict] = None,
        transport_factory: Optional[TransportBuilder] = None,
        serialize_per_session: Optional[bool] = None,
    ):
        self.config = config or {}
        self._create_transport = transport_factory or create_transport

        if serialize_per_session is None:
            serialize_per_session = self.config.get("injection", {}).get("serialize_per_session", False)
        self.serialize_per_session = serialize_per_session
        # Per-session locks, only used when serialize_per_session is on.
        # Weak values: a lock lives only while some command holds or waits on it.
        self._session_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _get_session_lock(self, session_id: str) -> asyncio.Lock:
        lock = self._session_locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._session_locks[session_id] = lock
        return lock

    async def inject_command(self, session: Session, command: str) -> InjectionResult:
        """
        Deliver `command` into `session`, falling back across its transports.

        Returns:
            InjectionResult; ok with the transport kind that succeeded, or
            not ok with every attempted transport's failure reason.
        """
        try:
            if self.serialize_per_session:
                async with self._get_session_lock(session.session_id):
                    return await self._inject(session, command)
            return await self._inject(session, command)
        except Exception as e:
            logger.error(f"Unexpected injection error for {session.session_id}: {e}")
            return InjectionResult(ok=False, error=f"{type(e).__name__}: {e}")

    async def _inject(self, session: Session, command: str) -> InjectionResult:
        if not session.transports:
            logger.warning(f"No transports for session {session.session_id}")
            return InjectionResult(ok=False, error=NO_TRANSPORT_AVAILABLE)

        attempts: list[TransportAttempt] = []
        for descriptor in session.transports:
            try:
                transport = self._create_transport(descriptor, session, self.config)
                result = await transport.inject(command)
            except Exception as e:
                # Unknown kind or bad descriptor: fold in and keep going
                logger.warning(f"{descriptor.kind} transport unavailable: {e}")
                attempts.append(TransportAttempt(
                    kind=descriptor.kind, ok=False, error=str(e), reason=type(e).__name__,
                ))
                continue

            attempts.append(TransportAttempt(
                kind=descriptor.kind, ok=result.ok, error=result.error, reason=result.reason,
            ))
            if result.ok:
                logger.info(
                    f"Injected into {session.session_id} via {descriptor.kind}: {command[:50]}"
                )
                return InjectionResult(ok=True, transport=descriptor.kind, attempts=attempts)

            if len(attempts) < len(session.transports):
                logger.warning(
                    f"{descriptor.kind} injection failed ({result.reason}): {result.error}, trying next transport"
                )

        error = "; ".join(f"{a.kind}: {a.error or 'failed'}" for a in attempts)
        logger.error(f"All transports failed for {session.session_id}: {error}")
        return InjectionResult(ok=False, error=error, attempts=attempts)

    async def capture_output(self, session: Session, lines: int = 50) -> Optional[str]:
        """Recent output from the first transport that can capture it."""
        for descriptor in session.transports:
            try:
                transport = self._create_transport(descriptor, session, self.config)
            except Exception as e:
                logger.debug(f"Skipping {descriptor.kind} for capture: {e}")
                continue
            if not transport.supports_capture:
                continue
            try:
                output = await transport.capture(lines)
            except Exception as e:
                logger.warning(f"{descriptor.kind} capture failed: {e}")
                continue
            if output is not None:
                return output
        return None
