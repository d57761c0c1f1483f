"""
Integration test fixtures for chatgate.

Provides fixtures specific to integration testing:
- A runtime with recording adapters registered at known webhook paths
- FastAPI test clients over the assembled app
"""

import pytest
from fastapi.testclient import TestClient

from chatgate.app import ChatGateRuntime, create_app
from chatgate.channels.models import NormalizedMessage
from chatgate.channels.registry import ChannelRegistry
from tests.conftest import FakeEngine, RecordingAdapter, make_channel_config


# ─────────────────────────────────────────────────────────────────────────────
# Runtime Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine(reply="Hi from the agent")


@pytest.fixture
def adapters() -> dict[str, RecordingAdapter]:
    """One recording adapter per inbound shape, keyed by channel id."""
    return {
        "chat": RecordingAdapter(
            make_channel_config(id="chat", webhook_path="/chat/webhook"),
            inbound=NormalizedMessage(
                thread_id="t-1",
                text="hello",
                metadata={"sender_id": "u-1", "is_group": False},
            ),
        ),
        "verify": RecordingAdapter(
            make_channel_config(id="verify", webhook_path="/verify/webhook"),
            inbound=NormalizedMessage.handshake_challenge("challenge-token"),
        ),
        "ping": RecordingAdapter(
            make_channel_config(id="ping", webhook_path="/ping/interactions"),
            inbound=NormalizedMessage.handshake_pong(),
        ),
        "reject": RecordingAdapter(
            make_channel_config(id="reject", webhook_path="/reject/webhook"),
            inbound=None,
        ),
    }


@pytest.fixture
def runtime(engine, adapters) -> ChatGateRuntime:
    registry = ChannelRegistry()
    for channel_id, adapter in adapters.items():
        registry.register(channel_id, adapter.config, adapter)
    return ChatGateRuntime(engine=engine, registry=registry)


@pytest.fixture
def app(runtime):
    return create_app(runtime)


@pytest.fixture
def client(app):
    """Test client; leaving the block drains in-flight dispatches."""
    with TestClient(app) as client:
        yield client
