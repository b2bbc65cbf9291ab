"""Telegram channel: notifies the operator and turns replies into commands."""

import logging
import re
from typing import Optional

from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from .channel import ChannelCapabilities, ChatChannel
from .errors import ConfigError, NotificationFailed, TokenInvalid
from .models import CommandConfirmation, InboundCommand, OutboundNotification, QuickReply
from .reply_token_store import ReplyTokenStore
from .session_registry import SessionRegistry

logger = logging.getLogger(__name__)

TELEGRAM_MAX_MESSAGE_LENGTH = 4096
BUTTONS_PER_ROW = 3
CONFIRMATION_COMMAND_MAX_CHARS = 1000

EVENT_EMOJI = {
    "Stop": "🤖",
    "SubagentStop": "🔧",
    "Notification": "❓",
}

# Regex to match ANSI escape codes
ANSI_ESCAPE_RE = re.compile(
    r'\x1b\[[0-9;?]*[a-zA-Z]|'  # CSI sequences (including private modes like ?2026h)
    r'\x1b\][^\x07]*\x07|'       # OSC sequences (title, etc.)
    r'\x1b[PX^_].*?\x1b\\|'      # DCS, SOS, PM, APC sequences
    r'\x1b[\(\)][AB012]|'        # Character set selection
    r'\x1b[=>78DMEHc]|'          # Single-char commands
    r'[\x00-\x08\x0b\x0c\x0e-\x1f]'  # Other control characters
)

CMD_RE = re.compile(r"^/cmd\s+([A-Za-z0-9_-]{8,30})\s+(.+)$", re.IGNORECASE | re.DOTALL)
DIRECT_RE = re.compile(r"^([A-Za-z0-9_-]{8,30})\s+(.+)$", re.DOTALL)

HELP_TEXT = (
    "Claude Remote Relay\n\n"
    "When a Claude session stops you get a notification here.\n\n"
    "To send a command:\n"
    "- Swipe-reply to the notification with your command\n"
    "- /cmd TOKEN command\n"
    "- TOKEN command\n"
    "- Or press one of the quick-reply buttons\n\n"
    "/sessions - List sessions with notifications enabled\n"
    "/help - Show this message"
)


def strip_ansi(text: str) -> str:
    """Remove ANSI escape codes and control characters from text."""
    text = ANSI_ESCAPE_RE.sub('', text)
    # Clean up multiple blank lines
    text = re.sub(r'\n{3,}', '\n\n', text)
    return text


def escape_markdown(text: Optional[str]) -> str:
    """Escape characters that Telegram's legacy Markdown treats as markup."""
    if not text:
        return ""
    return re.sub(r"([_*`\[\]])", r"\\\1", text)


def short_cwd(cwd: Optional[str]) -> str:
    if not cwd:
        return "unknown"
    parts = [p for p in cwd.split("/") if p]
    return "/".join(parts[-2:]) or "/"


def format_notification(
    notification: OutboundNotification,
    markdown: bool = True,
    max_length: int = TELEGRAM_MAX_MESSAGE_LENGTH,
) -> str:
    """Render a notification; the summary is truncated to fit max_length."""
    emoji = EVENT_EMOJI.get(notification.event, "🤖")
    summary = strip_ansi(notification.summary or "").strip()
    cwd = short_cwd(notification.cwd)

    if markdown:
        header = f"{emoji} *{notification.event}*: {escape_markdown(notification.label)}"
        footer = f"📂 `{cwd}`\n\n↩️ _Swipe-reply to respond_"
    else:
        header = f"{emoji} {notification.event}: {notification.label}"
        footer = f"📂 {cwd}\n\n↩️ Swipe-reply to respond"

    room = max_length - len(header) - len(footer) - 4
    if len(summary) > room:
        summary = summary[: max(room - 3, 0)] + "..."

    return "\n\n".join(part for part in (header, summary, footer) if part)


def create_reply_keyboard(token: str, buttons: list[QuickReply]) -> Optional[InlineKeyboardMarkup]:
    """Inline keyboard for quick replies, at most three buttons per row."""
    if not buttons:
        return None
    rows = []
    for i in range(0, len(buttons), BUTTONS_PER_ROW):
        rows.append([
            InlineKeyboardButton(b.text, callback_data=f"cmd:{token}:{b.action}")
            for b in buttons[i:i + BUTTONS_PER_ROW]
        ])
    return InlineKeyboardMarkup(rows)


class TelegramChannel(ChatChannel):
    """Telegram implementation of ChatChannel, using long polling."""

    name = "telegram"

    def __init__(
        self,
        token: str,
        chat_id,
        registry: SessionRegistry,
        reply_tokens: Optional[ReplyTokenStore] = None,
        allowed_chat_ids: Optional[list] = None,
        allowed_user_ids: Optional[list] = None,
    ):
        """
        Args:
            token: Telegram bot token from BotFather
            chat_id: Chat that receives notifications
            registry: Used to validate correlation tokens on inbound replies
            reply_tokens: Maps notification message ids to tokens for swipe-replies
            allowed_chat_ids: Chats allowed to send commands
            allowed_user_ids: Users allowed to send commands
        """
        super().__init__(default_channel_id=str(chat_id) if chat_id is not None else None)
        self.token = token
        self.registry = registry
        self.reply_tokens = reply_tokens
        self.allowed_chat_ids = {str(c) for c in allowed_chat_ids} if allowed_chat_ids else None
        self.allowed_user_ids = {str(u) for u in allowed_user_ids} if allowed_user_ids else None
        self.application: Optional[Application] = None
        self.bot: Optional[Bot] = None

    @classmethod
    def from_config(
        cls,
        config: dict,
        registry: SessionRegistry,
        reply_tokens: Optional[ReplyTokenStore] = None,
    ) -> "TelegramChannel":
        """
        Raises:
            ConfigError: if the bot token or chat id is missing
        """
        telegram_config = config.get("telegram", {}) or {}
        token = telegram_config.get("token")
        chat_id = telegram_config.get("chat_id")
        if not token:
            raise ConfigError("telegram.token is required")
        if chat_id is None or chat_id == "":
            raise ConfigError("telegram.chat_id is required")
        return cls(
            token=token,
            chat_id=chat_id,
            registry=registry,
            reply_tokens=reply_tokens,
            allowed_chat_ids=telegram_config.get("allowed_chat_ids"),
            allowed_user_ids=telegram_config.get("allowed_user_ids"),
        )

    @property
    def capabilities(self) -> ChannelCapabilities:
        return ChannelCapabilities(
            supports_buttons=True,
            max_message_length=TELEGRAM_MAX_MESSAGE_LENGTH,
        )

    def _is_allowed(self, chat_id, user_id=None) -> bool:
        """Check if a chat/user is allowed to send commands."""
        if self.allowed_chat_ids is None and self.allowed_user_ids is None:
            return self.default_channel_id is not None and str(chat_id) == self.default_channel_id

        # Check user allowlist first (if configured)
        if self.allowed_user_ids is not None:
            if user_id is None or str(user_id) not in self.allowed_user_ids:
                return False

        # Check chat allowlist (if configured)
        if self.allowed_chat_ids is not None:
            if str(chat_id) not in self.allowed_chat_ids:
                return False

        return True

    # Outbound

    async def send_notification(self, notification: OutboundNotification) -> Optional[str]:
        if not self.bot:
            raise NotificationFailed("Telegram bot not initialized")

        reply_markup = create_reply_keyboard(notification.token, notification.buttons)
        limit = self.capabilities.max_message_length

        try:
            msg = await self.bot.send_message(
                chat_id=self.default_channel_id,
                text=format_notification(notification, markdown=True, max_length=limit),
                parse_mode="Markdown",
                reply_markup=reply_markup,
            )
            return str(msg.message_id)
        except Exception as e:
            # If markdown parsing fails, retry without parse_mode
            logger.warning(f"Markdown notification failed, retrying as plain text: {e}")

        try:
            msg = await self.bot.send_message(
                chat_id=self.default_channel_id,
                text=format_notification(notification, markdown=False, max_length=limit),
                reply_markup=reply_markup,
            )
            return str(msg.message_id)
        except Exception as e:
            logger.error(f"Failed to send Telegram notification: {e}")
            raise NotificationFailed(str(e))

    async def send_command_confirmation(self, channel_id: str, details: CommandConfirmation) -> None:
        if not self.bot:
            logger.error("Bot not initialized")
            return

        # Echoed command is shortened so the confirmation fits in one message
        command = details.command
        if len(command) > CONFIRMATION_COMMAND_MAX_CHARS:
            command = command[:CONFIRMATION_COMMAND_MAX_CHARS - 3] + "..."

        text = (
            f"✅ *Command sent*\n\n"
            f"📝 `{command.replace('`', '')}`\n"
            f"🖥️ *Transport:* {escape_markdown(details.transport)}\n"
            f"📋 *Session:* {escape_markdown(details.session_label)}"
        )
        try:
            await self.bot.send_message(chat_id=channel_id, text=text, parse_mode="Markdown")
        except Exception as e:
            logger.warning(f"Markdown confirmation failed, retrying as plain text: {e}")
            await self.bot.send_message(
                chat_id=channel_id,
                text=self.truncate_text(
                    f"✅ Command sent\n\n{command}\n"
                    f"Transport: {details.transport}\nSession: {details.session_label}"
                ),
            )

    async def send_error(self, channel_id: str, message: str) -> None:
        if not self.bot:
            logger.error("Bot not initialized")
            return
        # Plain text: error messages carry arbitrary transport output
        await self.bot.send_message(chat_id=channel_id, text=self.truncate_text(f"❌ {message}"))

    # Inbound

    def _validate(self, token: str, chat_id: str) -> tuple[Optional[str], Optional[str]]:
        """(session_id, None) for a usable token, else (None, reason)."""
        try:
            session = self.registry.resolve_token(token, chat_id=chat_id)
        except TokenInvalid as e:
            return None, e.reason
        return session.session_id, None

    def correlate(
        self,
        chat_id: str,
        text: str,
        reply_to_message_id: Optional[str] = None,
    ) -> tuple[Optional[str], str, Optional[str]]:
        """
        Find the session an operator message is addressed to.

        Tried in order: reply to a notification, `/cmd TOKEN command`,
        `TOKEN command`.

        Returns:
            (session_id, command, error); session_id is None when the
            message could not be correlated and error says why.
        """
        if reply_to_message_id is not None and self.reply_tokens is not None:
            token = self.reply_tokens.lookup(chat_id, reply_to_message_id)
            if token:
                session_id, reason = self._validate(token, chat_id)
                if session_id:
                    return session_id, text, None
                logger.info(f"Reply-to token rejected in chat {chat_id}: {reason}")

        match = CMD_RE.match(text)
        if match:
            session_id, reason = self._validate(match.group(1), chat_id)
            if session_id:
                return session_id, match.group(2).strip(), None
            return None, text, f"{reason}. Please wait for a new notification."

        match = DIRECT_RE.match(text)
        if match:
            session_id, _ = self._validate(match.group(1), chat_id)
            if session_id:
                return session_id, match.group(2).strip(), None

        if reply_to_message_id is not None:
            return None, text, "That notification has expired. Wait for a new one."
        return None, text, "Invalid format. Reply to a notification or use /cmd TOKEN command."

    async def _handle_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle operator messages (replies to notifications or token commands)."""
        message = update.message
        if message is None or not message.text:
            return

        chat_id = str(update.effective_chat.id)
        user_id = update.effective_user.id if update.effective_user else None

        if not self._is_allowed(chat_id, user_id):
            logger.warning(f"Unauthorized: chat_id={chat_id}, user_id={user_id}")
            await self.send_error(chat_id, "You are not authorized to use this bot.")
            return

        replied = message.reply_to_message
        reply_to_message_id = None
        if replied is not None and replied.from_user is not None and replied.from_user.is_bot:
            reply_to_message_id = str(replied.message_id)

        session_id, command, error = self.correlate(chat_id, message.text.strip(), reply_to_message_id)
        if session_id is None:
            await self.send_error(chat_id, error)
            return

        await self.dispatch_command(InboundCommand(
            channel_id=chat_id,
            session_id=session_id,
            command=command,
            user_id=str(user_id) if user_id is not None else None,
            reply_to_message_id=reply_to_message_id,
        ))

    async def _handle_command_callback(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle quick-reply button press."""
        query = update.callback_query
        chat_id = str(query.message.chat_id)
        user_id = query.from_user.id if query.from_user else None

        if not self._is_allowed(chat_id, user_id):
            logger.warning(f"Unauthorized callback: chat_id={chat_id}, user_id={user_id}")
            await query.answer("Unauthorized.")
            return

        # Format: "cmd:TOKEN:ACTION"
        parts = query.data.split(":", 2)
        if len(parts) != 3:
            logger.error(f"Invalid command callback data: {query.data}")
            await query.answer("Invalid button data.")
            return

        _, token, action = parts
        session_id, reason = self._validate(token, chat_id)
        if session_id is None:
            await query.answer(f"❌ {reason}")
            return

        await query.answer(f"✅ Sent: {action}")
        await self.dispatch_command(InboundCommand(
            channel_id=chat_id,
            session_id=session_id,
            command=action,
            user_id=str(user_id) if user_id is not None else None,
        ))

    async def _cmd_start(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /start and /help."""
        if not self._is_allowed(update.effective_chat.id, update.effective_user.id):
            logger.warning(f"Unauthorized: chat_id={update.effective_chat.id}, user_id={update.effective_user.id}")
            await update.message.reply_text("Unauthorized.")
            return
        await update.message.reply_text(HELP_TEXT)

    async def _cmd_sessions(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /sessions command."""
        if not self._is_allowed(update.effective_chat.id, update.effective_user.id):
            return

        sessions = self.registry.list_sessions(active_only=True, notify_only=True)
        if not sessions:
            await update.message.reply_text("No sessions with notifications enabled.")
            return

        lines = ["Sessions:\n"]
        for s in sessions:
            transports = ", ".join(t.kind for t in s.transports) or "none"
            lines.append(f"{s.display_label} [{s.session_id[:8]}]")
            lines.append(f"   {short_cwd(s.cwd)} ({transports})")
        for chunk in self.chunk_text("\n".join(lines)):
            await update.message.reply_text(chunk)

    async def start(self):
        """Start the bot."""
        self.application = (
            Application.builder()
            .token(self.token)
            .concurrent_updates(True)
            .build()
        )

        self.bot = self.application.bot

        self.application.add_handler(CommandHandler("start", self._cmd_start))
        self.application.add_handler(CommandHandler("help", self._cmd_start))
        self.application.add_handler(CommandHandler("sessions", self._cmd_sessions))

        # Handle quick-reply button presses
        self.application.add_handler(CallbackQueryHandler(self._handle_command_callback, pattern="^cmd:"))

        # Everything else, /cmd included, goes through correlation
        self.application.add_handler(MessageHandler(filters.TEXT, self._handle_message))

        await self.application.initialize()
        await self.application.start()
        await self.application.updater.start_polling()

        logger.info("Telegram channel started")

    async def stop(self):
        """Stop the bot."""
        if self.application:
            await self.application.updater.stop()
            await self.application.stop()
            await self.application.shutdown()
            logger.info("Telegram channel stopped")
