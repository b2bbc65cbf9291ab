"""Data models for Claude Remote Relay."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, List


class SessionState(Enum):
    """Session lifecycle state."""
    RUNNING = "running"
    STOPPED = "stopped"


class CommandState(Enum):
    """Lifecycle of a single inbound command."""
    RECEIVED = "received"
    RESOLVING = "resolving"
    INJECTING = "injecting"
    CONFIRMED = "confirmed"
    REPORTED_ERROR = "reported_error"


@dataclass
class TransportDescriptor:
    """How to reach one endpoint of a session (pane, socket, pty)."""
    kind: str
    options: dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        value = self.options.get(key)
        return default if value is None else value

    def to_dict(self) -> dict:
        return {"kind": self.kind, **self.options}

    @classmethod
    def from_dict(cls, data: dict) -> "TransportDescriptor":
        options = {k: v for k, v in data.items() if k != "kind" and v is not None}
        return cls(kind=str(data.get("kind", "")), options=options)


@dataclass
class Session:
    """A live Claude Code session known to the registry."""
    session_id: str
    label: Optional[str] = None
    transports: List[TransportDescriptor] = field(default_factory=list)  # Ordered by preference
    cwd: Optional[str] = None
    ppid: Optional[int] = None
    pid: Optional[int] = None
    start_time: Optional[int] = None  # Epoch seconds of the parent process
    notify: bool = False
    state: SessionState = SessionState.RUNNING
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    last_seen: datetime = field(default_factory=datetime.now)
    expires_at: Optional[datetime] = None

    @property
    def display_label(self) -> str:
        """Label for chat messages: explicit label or short id."""
        return self.label or self.session_id[:8]

    def to_dict(self) -> dict:
        """Convert session to dictionary for JSON serialization."""
        return {
            "session_id": self.session_id,
            "label": self.label,
            "transports": [t.to_dict() for t in self.transports],
            "cwd": self.cwd,
            "ppid": self.ppid,
            "pid": self.pid,
            "start_time": self.start_time,
            "notify": self.notify,
            "state": self.state.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "last_seen": self.last_seen.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Session":
        """Create session from dictionary."""
        return cls(
            session_id=data["session_id"],
            label=data.get("label"),
            transports=[TransportDescriptor.from_dict(t) for t in data.get("transports", [])],
            cwd=data.get("cwd"),
            ppid=data.get("ppid"),
            pid=data.get("pid"),
            start_time=data.get("start_time"),
            notify=data.get("notify", False),
            state=SessionState(data.get("state", "running")),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            last_seen=datetime.fromisoformat(data["last_seen"]),
            expires_at=datetime.fromisoformat(data["expires_at"]) if data.get("expires_at") else None,
        )


@dataclass
class CorrelationToken:
    """Short-lived token binding an outbound notification to a session."""
    value: str
    session_id: str
    issued_at: datetime
    expires_at: datetime
    event: str = "Stop"
    context: dict = field(default_factory=dict)  # Opaque to the registry
    chat_id: Optional[str] = None  # Chat the token was issued to, if bound

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> dict:
        return {
            "value": self.value,
            "session_id": self.session_id,
            "issued_at": self.issued_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "event": self.event,
            "context": self.context,
            "chat_id": self.chat_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CorrelationToken":
        return cls(
            value=data["value"],
            session_id=data["session_id"],
            issued_at=datetime.fromisoformat(data["issued_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            event=data.get("event", "Stop"),
            context=data.get("context", {}),
            chat_id=data.get("chat_id"),
        )


@dataclass
class TransportResult:
    """Outcome of a single transport adapter invocation."""
    ok: bool
    error: Optional[str] = None
    reason: Optional[str] = None  # Error class name, e.g. "TransportTimeout"

    @classmethod
    def success(cls) -> "TransportResult":
        return cls(ok=True)

    @classmethod
    def failure(cls, error: str, reason: Optional[str] = None) -> "TransportResult":
        return cls(ok=False, error=error, reason=reason)


@dataclass
class TransportAttempt:
    """One step of the fallback chain, kept for observability."""
    kind: str
    ok: bool
    error: Optional[str] = None
    reason: Optional[str] = None  # Error class name from TransportResult.reason


@dataclass
class InjectionResult:
    """Outcome of Backend.inject_command across all attempted transports."""
    ok: bool
    transport: Optional[str] = None  # Kind that succeeded
    error: Optional[str] = None  # Aggregated failure reasons
    attempts: List[TransportAttempt] = field(default_factory=list)


@dataclass
class QuickReply:
    """Inline button offered with a notification."""
    text: str
    action: str


DEFAULT_QUICK_REPLIES = [
    QuickReply("▶️ Continue", "continue"),
    QuickReply("✅ Yes", "y"),
    QuickReply("❌ No", "n"),
    QuickReply("🛑 Exit", "exit"),
]


@dataclass
class OutboundNotification:
    """Session event to show to the operator."""
    event: str  # "Stop", "SubagentStop", "Notification"
    session_id: str
    label: str
    summary: str
    token: str
    cwd: Optional[str] = None
    buttons: List[QuickReply] = field(default_factory=list)


@dataclass
class InboundCommand:
    """Operator reply already correlated to a session by the channel."""
    channel_id: str
    session_id: str
    command: str
    user_id: Optional[str] = None
    reply_to_message_id: Optional[str] = None


@dataclass
class CommandConfirmation:
    """Details shown to the operator after a successful injection."""
    command: str
    transport: str
    session_label: str


@dataclass
class CommandOutcome:
    """Terminal state of an inbound command."""
    state: CommandState
    result: Optional[InjectionResult] = None
    message: Optional[str] = None  # Error text sent to the operator, if any
