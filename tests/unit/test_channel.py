"""Unit tests for the ChatChannel base class."""

from unittest.mock import AsyncMock, patch

import pytest

from src.channel import ChannelCapabilities, ChatChannel
from src.models import InboundCommand


class SmallChannel(ChatChannel):
    """Channel with a tiny message limit for chunking tests."""

    def __init__(self, limit: int):
        super().__init__(default_channel_id="c")
        self.limit = limit

    @property
    def capabilities(self):
        return ChannelCapabilities(max_message_length=self.limit)

    async def send_notification(self, notification):
        return None

    async def start(self):
        pass

    async def stop(self):
        pass


def test_short_text_single_chunk():
    assert SmallChannel(100).chunk_text("hello") == ["hello"]


def test_chunks_break_at_newlines():
    text = "a" * 40 + "\n" + "b" * 40 + "\n" + "c" * 40
    chunks = SmallChannel(90).chunk_text(text)
    assert chunks == ["a" * 40 + "\n" + "b" * 40, "c" * 40]


def test_chunks_fall_back_to_spaces():
    text = " ".join(["word"] * 30)
    chunks = SmallChannel(50).chunk_text(text)
    assert all(len(c) <= 50 for c in chunks)
    assert "".join(chunks).replace(" ", "") == "word" * 30


def test_chunks_hard_cut_without_break_points():
    chunks = SmallChannel(10).chunk_text("x" * 25)
    assert chunks == ["x" * 10, "x" * 10, "x" * 5]


@pytest.mark.asyncio
async def test_dispatch_without_handler_warns():
    channel = SmallChannel(100)
    with patch("src.channel.logger") as mock_logger:
        await channel.dispatch_command(InboundCommand(channel_id="c", session_id="s", command="y"))
    mock_logger.warning.assert_called_once()


@pytest.mark.asyncio
async def test_dispatch_calls_registered_handler():
    channel = SmallChannel(100)
    handler = AsyncMock()
    channel.on_command(handler)
    command = InboundCommand(channel_id="c", session_id="s", command="y")

    await channel.dispatch_command(command)

    handler.assert_awaited_once_with(command)


def test_truncate_text_within_limit():
    assert SmallChannel(10).truncate_text("x" * 10) == "x" * 10


def test_truncate_text_marks_cut():
    text = SmallChannel(10).truncate_text("x" * 25)
    assert text == "x" * 7 + "..."
    assert len(text) == 10
