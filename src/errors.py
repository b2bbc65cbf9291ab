"""Error taxonomy for the relay.

Everything below the command router is converted to data
(TransportResult / InjectionResult); these exceptions are raised at the
registry and factory seams and caught where the failure is reported.
"""


class RelayError(Exception):
    """Base class for relay errors."""


class SessionNotFound(RelayError):
    """Unknown session id."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class TokenInvalid(RelayError):
    """Unknown, expired, superseded or foreign correlation token."""

    def __init__(self, reason: str = "Token not found"):
        super().__init__(reason)
        self.reason = reason


class UnknownTransportKind(RelayError):
    """Transport descriptor names a kind with no registered factory."""

    def __init__(self, kind: str, available: list[str]):
        super().__init__(
            f"Unknown transport kind: '{kind}'. Available: {', '.join(available)}"
        )
        self.kind = kind


class InvalidTransportDescriptor(RelayError):
    """Descriptor is missing the addressing data its kind needs."""


class TransportUnreachable(RelayError):
    """Target pane/socket/pty not found at delivery time."""


class TransportTimeout(RelayError):
    """Transport exceeded its time bound."""


class NotificationFailed(RelayError):
    """The chat channel could not deliver an outbound notification."""


class ConfigError(RelayError):
    """Fatal startup misconfiguration."""
