"""Transport adapters: deliver a literal command string into a live session.

Each adapter is built fresh per invocation from a TransportDescriptor and
reports its outcome as a TransportResult instead of raising. An adapter
that can't reach its target fails before sending anything to it.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, ClassVar, Optional

from .errors import (
    InvalidTransportDescriptor,
    RelayError,
    TransportTimeout,
    TransportUnreachable,
    UnknownTransportKind,
)
from .models import Session, TransportDescriptor, TransportResult
from .nvim_rpc import NvimRpcClient
from .tmux_controller import TmuxController

logger = logging.getLogger(__name__)

DEFAULT_INJECT_TIMEOUT_SECONDS = 10


class Transport(ABC):
    """Base class for transport adapters."""

    kind: ClassVar[str]
    supports_capture: ClassVar[bool] = False

    def __init__(
        self,
        descriptor: TransportDescriptor,
        session: Optional[Session] = None,
        config: Optional[dict] = None,
    ):
        self.descriptor = descriptor
        self.session = session
        self.config = config or {}

        timeouts = self.config.get("timeouts", {}).get(self.kind, {})
        self.inject_timeout_seconds = timeouts.get(
            "inject_timeout_seconds", DEFAULT_INJECT_TIMEOUT_SECONDS
        )

    @abstractmethod
    async def _deliver(self, text: str) -> None:
        """Deliver text or raise; a RelayError subclass names the failure."""

    async def inject(self, text: str) -> TransportResult:
        """Deliver `text`, bounded by this transport's inject timeout."""
        try:
            await asyncio.wait_for(self._deliver(text), timeout=self.inject_timeout_seconds)
        except asyncio.TimeoutError:
            error = TransportTimeout(
                f"{self.kind} injection timed out after {self.inject_timeout_seconds}s"
            )
            logger.warning(str(error))
            return TransportResult.failure(str(error), type(error).__name__)
        except RelayError as e:
            logger.warning(f"{self.kind} injection failed: {e}")
            return TransportResult.failure(str(e), type(e).__name__)
        except Exception as e:
            logger.error(f"{self.kind} injection error: {e}")
            return TransportResult.failure(str(e) or type(e).__name__, type(e).__name__)
        return TransportResult.success()

    async def capture(self, lines: int = 50) -> Optional[str]:
        """Recent output from the target, or None if unsupported/unavailable."""
        return None


class TmuxTransport(Transport):
    """Types into a tmux pane with send-keys."""

    kind = "tmux"
    supports_capture = True

    def __init__(self, descriptor, session=None, config=None):
        super().__init__(descriptor, session, config)
        # Pane ids are stable for the tmux server lifetime; names can go stale
        self.target = descriptor.get("pane_id") or descriptor.get("session_name")
        if not self.target:
            raise InvalidTransportDescriptor("tmux transport needs pane_id or session_name")
        self.controller = TmuxController(config=self.config)

        if "inject_timeout_seconds" not in self.config.get("timeouts", {}).get("tmux", {}):
            # Unset: allow the whole keystroke sequence to run to its own timeouts
            self.inject_timeout_seconds = self.controller.send_command_budget_seconds

    async def _deliver(self, text: str) -> None:
        await self.controller.send_command(self.target, text)

    async def capture(self, lines: int = 50) -> Optional[str]:
        return await self.controller.capture_pane(self.target, lines)


class NvimTransport(Transport):
    """Sends through the ccremote neovim plugin over RPC."""

    kind = "nvim"
    supports_capture = True

    def __init__(self, descriptor, session=None, config=None):
        super().__init__(descriptor, session, config)
        socket_path = descriptor.get("socket_path")
        if not socket_path:
            raise InvalidTransportDescriptor("nvim transport needs socket_path")
        self.instance_name = (
            descriptor.get("instance_name")
            or (session.label if session else None)
            or "default"
        )
        self.client = NvimRpcClient(socket_path, config=self.config)

    async def _deliver(self, text: str) -> None:
        reply = await self.client.send(self.instance_name, text)
        if not reply.get("ok"):
            raise TransportUnreachable(reply.get("error") or f"nvim instance '{self.instance_name}' rejected input")
        logger.info(f"Sent input to nvim instance {self.instance_name}: {text[:50]}")

    async def capture(self, lines: int = 50) -> Optional[str]:
        try:
            reply = await self.client.tail(self.instance_name, lines)
        except Exception as e:
            logger.warning(f"nvim capture failed: {e}")
            return None
        return reply.get("output") if reply.get("ok") else None


class PtyTransport(Transport):
    """Writes the command line straight to the session's PTY device."""

    kind = "pty"

    def __init__(self, descriptor, session=None, config=None):
        super().__init__(descriptor, session, config)
        self.pty_path = descriptor.get("pty_path")
        if not self.pty_path:
            raise InvalidTransportDescriptor("pty transport needs pty_path")

    def _write(self, text: str) -> None:
        with open(self.pty_path, "w") as f:
            f.write(text + "\n")

    async def _deliver(self, text: str) -> None:
        if not Path(self.pty_path).exists():
            raise TransportUnreachable(f"PTY path does not exist: {self.pty_path}")
        await asyncio.to_thread(self._write, text)
        logger.info(f"Sent input via PTY {self.pty_path}: {text[:50]}")


TransportFactory = Callable[[TransportDescriptor, Optional[Session], Optional[dict]], Transport]

TRANSPORT_FACTORIES: dict[str, TransportFactory] = {
    TmuxTransport.kind: TmuxTransport,
    NvimTransport.kind: NvimTransport,
    PtyTransport.kind: PtyTransport,
}


def create_transport(
    descriptor: TransportDescriptor,
    session: Optional[Session] = None,
    config: Optional[dict] = None,
) -> Transport:
    """
    Build the adapter for a descriptor.

    Raises:
        UnknownTransportKind: if no factory is registered for descriptor.kind
        InvalidTransportDescriptor: if addressing fields are missing
    """
    factory = TRANSPORT_FACTORIES.get(descriptor.kind)
    if factory is None:
        raise UnknownTransportKind(descriptor.kind, registered_kinds())
    return factory(descriptor, session, config)


def register_transport(kind: str, factory: TransportFactory) -> None:
    """Register an additional transport kind."""
    if kind in TRANSPORT_FACTORIES:
        raise ValueError(f"Transport kind '{kind}' already registered")
    TRANSPORT_FACTORIES[kind] = factory


def registered_kinds() -> list[str]:
    return sorted(TRANSPORT_FACTORIES)
