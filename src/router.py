"""Command router: session events out to the operator, operator commands back in."""

import logging
from typing import Optional

from .backend import AgentBackend
from .channel import ChatChannel
from .errors import SessionNotFound
from .models import (
    DEFAULT_QUICK_REPLIES,
    CommandConfirmation,
    CommandOutcome,
    CommandState,
    InboundCommand,
    OutboundNotification,
    Session,
)
from .reply_token_store import ReplyTokenStore
from .session_registry import SessionRegistry

logger = logging.getLogger(__name__)

SESSION_NOT_FOUND_MESSAGE = "Session not found. Wait for a new notification."


class CommandRouter:
    """
    Bridges a ChatChannel and an AgentBackend.

    Outbound: a Stop/Notification event mints a token and notifies the
    operator. Inbound: a correlated operator reply is injected into its
    session and answered with exactly one confirmation or error.
    """

    def __init__(
        self,
        channel: ChatChannel,
        backend: AgentBackend,
        registry: SessionRegistry,
        reply_tokens: Optional[ReplyTokenStore] = None,
    ):
        self.channel = channel
        self.backend = backend
        self.registry = registry
        self.reply_tokens = reply_tokens

        self.channel.on_command(self.handle_inbound_command)

    async def handle_stop_event(
        self,
        session: Session,
        event: str = "Stop",
        summary: str = "",
        label: Optional[str] = None,
    ) -> dict:
        """
        Notify the operator that a session needs attention.

        Returns:
            {"token": ..., "message_id": ...}

        Raises:
            SessionNotFound: if the session is not registered
            Exception: whatever the channel raised when sending failed
        """
        chat_id = self.channel.default_channel_id
        token = self.registry.mint_token(
            session.session_id,
            event=event,
            context={"event": event, "summary": summary},
            chat_id=chat_id,
        )

        notification = OutboundNotification(
            event=event,
            session_id=session.session_id,
            label=label or session.display_label,
            summary=summary,
            token=token.value,
            cwd=session.cwd,
            buttons=list(DEFAULT_QUICK_REPLIES) if self.channel.capabilities.supports_buttons else [],
        )

        try:
            message_id = await self.channel.send_notification(notification)
        except Exception as e:
            logger.error(f"Failed to notify for session {session.session_id} ({event}): {e}")
            raise

        # Reply-to routing: a swipe-reply on this message carries the token
        if self.reply_tokens is not None and message_id is not None and chat_id is not None:
            self.reply_tokens.store(str(chat_id), str(message_id), token.value)

        logger.info(f"Notification sent for session {session.session_id} ({event})")
        return {"token": token.value, "message_id": message_id}

    async def handle_inbound_command(self, command: InboundCommand) -> CommandOutcome:
        """
        Inject an operator command and report the result to the channel.

        Never raises: every failure ends as a single send_error call.
        """
        state = CommandState.RECEIVED
        logger.info(f"Command received for {command.session_id}: {command.command[:50]}")

        try:
            state = CommandState.RESOLVING
            try:
                session = self.registry.get_session(command.session_id)
            except SessionNotFound:
                await self._report_error(command.channel_id, SESSION_NOT_FOUND_MESSAGE)
                return CommandOutcome(state=CommandState.REPORTED_ERROR, message=SESSION_NOT_FOUND_MESSAGE)

            state = CommandState.INJECTING
            result = await self.backend.inject_command(session, command.command)

            if not result.ok:
                message = f"Injection failed: {result.error}"
                await self._report_error(command.channel_id, message)
                return CommandOutcome(state=CommandState.REPORTED_ERROR, result=result, message=message)

            await self.channel.send_command_confirmation(
                command.channel_id,
                CommandConfirmation(
                    command=command.command,
                    transport=result.transport or "unknown",
                    session_label=session.display_label,
                ),
            )
            logger.info(f"Command injected: {command.command[:50]} -> {session.session_id} via {result.transport}")
            return CommandOutcome(state=CommandState.CONFIRMED, result=result)

        except Exception as e:
            logger.error(f"Command routing error in state {state.value}: {e}")
            message = f"Error: {e}"
            await self._report_error(command.channel_id, message)
            return CommandOutcome(state=CommandState.REPORTED_ERROR, message=message)

    async def _report_error(self, channel_id: str, message: str) -> None:
        try:
            await self.channel.send_error(channel_id, message)
        except Exception as e:
            logger.error(f"Failed to report error to {channel_id}: {e}")
