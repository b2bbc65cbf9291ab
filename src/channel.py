"""Chat channel capability used by the command router."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from .models import CommandConfirmation, InboundCommand, OutboundNotification

logger = logging.getLogger(__name__)

CommandHandler = Callable[[InboundCommand], Awaitable[object]]


@dataclass
class ChannelCapabilities:
    supports_buttons: bool = False
    max_message_length: int = 4096


class ChatChannel(ABC):
    """
    A messaging platform the operator talks through.

    Implementations deliver notifications and surface operator replies,
    already correlated to a session, through the handler registered with
    on_command().
    """

    name: str = "chat"

    def __init__(self, default_channel_id: Optional[str] = None):
        self.default_channel_id = default_channel_id
        self._on_command: Optional[CommandHandler] = None

    @property
    def capabilities(self) -> ChannelCapabilities:
        return ChannelCapabilities()

    @abstractmethod
    async def send_notification(self, notification: OutboundNotification) -> Optional[str]:
        """
        Deliver a notification to the operator.

        Returns:
            Platform message id, or None if the platform has none

        Raises:
            NotificationFailed: if the message could not be delivered
        """

    @abstractmethod
    async def start(self) -> None:
        """Start listening for inbound messages."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop listening."""

    async def send_command_confirmation(self, channel_id: str, details: CommandConfirmation) -> None:
        logger.debug(f"[{self.name}] command confirmed for {channel_id}: {details.command[:50]}")

    async def send_error(self, channel_id: str, message: str) -> None:
        logger.debug(f"[{self.name}] error for {channel_id}: {message}")

    def on_command(self, handler: CommandHandler) -> None:
        """Register the inbound command handler (called once by the router)."""
        self._on_command = handler

    async def dispatch_command(self, command: InboundCommand) -> None:
        if not self._on_command:
            logger.warning(f"[{self.name}] no command handler registered, dropping command")
            return
        await self._on_command(command)

    def chunk_text(self, text: str) -> list[str]:
        """
        Split text into chunks within the platform's message limit.

        Prefers breaking at newlines, then spaces, then a hard cut.
        """
        limit = self.capabilities.max_message_length
        if len(text) <= limit:
            return [text]

        chunks = []
        remaining = text
        while remaining:
            if len(remaining) <= limit:
                chunks.append(remaining)
                break

            break_at = remaining.rfind("\n", 0, limit)
            if break_at < limit * 0.3:
                break_at = remaining.rfind(" ", 0, limit)
            if break_at < limit * 0.3:
                break_at = limit

            chunks.append(remaining[:break_at])
            remaining = remaining[break_at:]
            if remaining.startswith("\n"):
                remaining = remaining[1:]

        return chunks

    def truncate_text(self, text: str) -> str:
        """Cut text to the platform's message limit, marking the cut with '...'."""
        limit = self.capabilities.max_message_length
        if len(text) <= limit:
            return text
        return text[:limit - 3] + "..."
