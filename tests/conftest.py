"""Shared test fixtures for chatgate tests.

This module provides common fixtures used across all test modules:
- Database isolation with temporary files
- A scriptable fake agent engine
- Channel configurations and a recording adapter

Usage:
    def test_something(temp_db):
        # temp_db is automatically cleaned up after the test
        ...
"""

import os
import tempfile
from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest

from chatgate.agent import StreamEvent
from chatgate.channels.base import ChannelAdapter, StreamingResponder
from chatgate.channels.models import ChannelConfig, NormalizedMessage, WebhookRequest


# ─────────────────────────────────────────────────────────────────────────────
# Path Constants
# ─────────────────────────────────────────────────────────────────────────────

PROJECT_ROOT = Path(__file__).parent.parent
PACKAGE_DIR = PROJECT_ROOT / "chatgate"


# ─────────────────────────────────────────────────────────────────────────────
# Database Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def temp_db() -> Generator[Path, None, None]:
    """Create a temporary database file for testing.

    The database file is automatically deleted after the test completes.

    Yields:
        Path to the temporary database file
    """
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)

    yield db_path

    # Cleanup
    if db_path.exists():
        os.unlink(db_path)


# ─────────────────────────────────────────────────────────────────────────────
# Agent Engine Fixtures
# ─────────────────────────────────────────────────────────────────────────────


class FakeEngine:
    """Agent engine with canned replies that records every call."""

    def __init__(self, reply: str = "Hello from the agent", chunks: list[str] | None = None):
        self.reply = reply
        self.chunks = chunks if chunks is not None else ["Hello ", "world!"]
        self.error: Exception | None = None
        self.calls: list[tuple[str, tuple]] = []

    async def chat(self, thread_id, text, attachments, options):
        self.calls.append(("chat", (thread_id, text, attachments, options)))
        if self.error:
            raise self.error
        return self.reply

    async def chat_with_agent(self, agent_name, thread_id, text, attachments, options):
        self.calls.append(("chat_with_agent", (agent_name, thread_id, text, attachments, options)))
        if self.error:
            raise self.error
        return self.reply

    async def chat_stream(self, thread_id, text, attachments, options):
        self.calls.append(("chat_stream", (thread_id, text, attachments, options)))
        if self.error:
            raise self.error
        yield StreamEvent(type="tool_use")
        for chunk in self.chunks:
            yield StreamEvent(type="text", text=chunk)

    @property
    def methods_called(self) -> list[str]:
        return [name for name, _ in self.calls]


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()


# ─────────────────────────────────────────────────────────────────────────────
# Channel Fixtures
# ─────────────────────────────────────────────────────────────────────────────


def make_channel_config(**overrides: Any) -> ChannelConfig:
    data: dict[str, Any] = {
        "id": "test-channel",
        "type": "test",
        "webhook_path": "/test/webhook",
    }
    data.update(overrides)
    return ChannelConfig.from_dict(data)


class RecordingAdapter(ChannelAdapter):
    """Adapter that records outbound calls instead of hitting a platform."""

    platform = "test"

    def __init__(self, config: ChannelConfig, inbound: NormalizedMessage | None = None, **kwargs):
        super().__init__(config, **kwargs)
        self.inbound = inbound
        self.received: list[WebhookRequest] = []
        self.sent: list[tuple[str, str, dict]] = []
        self.acknowledged: list[dict] = []
        self.indicator_stops = 0
        self.fail_send = False

    async def receive(self, request: WebhookRequest) -> NormalizedMessage | None:
        self.received.append(request)
        return self.inbound

    async def send_response(self, thread_id: str, text: str, metadata: dict) -> None:
        if self.fail_send:
            raise RuntimeError("platform down")
        self.sent.append((thread_id, text, metadata))

    async def acknowledge(self, metadata: dict) -> None:
        self.acknowledged.append(metadata)

    def start_processing_indicator(self, metadata: dict):
        def stop() -> None:
            self.indicator_stops += 1

        return stop


class StreamingRecordingAdapter(RecordingAdapter, StreamingResponder):
    """RecordingAdapter that also accepts streamed edits."""

    def __init__(self, config: ChannelConfig, **kwargs):
        super().__init__(config, **kwargs)
        self.chunks: list[tuple[Any, str]] = []
        self.ended: list[tuple[str, Any]] = []

    @property
    def supports_chunked_delivery(self) -> bool:
        return self.config.streaming.enabled

    async def send_stream_chunk(self, thread_id, handle, text, metadata):
        self.chunks.append((handle, text))
        return handle or "msg-1"

    async def send_stream_end(self, thread_id, text, metadata, handle=None):
        self.ended.append((text, handle))


@pytest.fixture
def channel_config() -> ChannelConfig:
    return make_channel_config()


@pytest.fixture
def recording_adapter(channel_config) -> RecordingAdapter:
    return RecordingAdapter(channel_config)


@pytest.fixture
def user_message() -> NormalizedMessage:
    return NormalizedMessage(
        thread_id="thread-1",
        text="hello there",
        metadata={"sender_id": "user-1", "is_group": False},
    )
