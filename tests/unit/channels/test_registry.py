"""Tests for chatgate/channels/registry.py"""

import pytest

from chatgate.channels.registry import ChannelRegistry, build_registry, create_adapter_for_channel
from chatgate.channels.slack import SlackAdapter
from chatgate.channels.telegram import TelegramAdapter
from tests.conftest import RecordingAdapter, make_channel_config


@pytest.fixture
def registry():
    return ChannelRegistry()


def register(registry, channel_id, path):
    config = make_channel_config(id=channel_id, webhook_path=path)
    adapter = RecordingAdapter(config)
    registry.register(channel_id, config, adapter)
    return adapter


class TestChannelRegistry:
    def test_register_and_lookup(self, registry):
        first = register(registry, "a", "/a/webhook")
        second = register(registry, "b", "/b/webhook")

        assert registry.size == 2
        assert len(registry) == 2
        assert registry.get_by_id("a").adapter is first
        assert registry.get_by_route("/b/webhook").adapter is second
        assert "a" in registry

    def test_unknown_lookups(self, registry):
        assert registry.get_by_id("missing") is None
        assert registry.get_by_route("/missing") is None

    def test_reregister_replaces_route(self, registry):
        register(registry, "a", "/old")
        replacement = register(registry, "a", "/new")

        assert registry.size == 1
        assert registry.get_by_route("/old") is None
        assert registry.get_by_route("/new").adapter is replacement
        assert registry.get_webhook_paths() == ["/new"]

    def test_unregister(self, registry):
        register(registry, "a", "/a")

        assert registry.unregister("a") is True
        assert registry.get_by_route("/a") is None
        assert registry.unregister("a") is False

    def test_get_all_summaries(self, registry):
        register(registry, "a", "/a")
        assert registry.get_all() == [
            {"id": "a", "type": "test", "enabled": True, "webhook_path": "/a"}
        ]


class TestBuildRegistry:
    def test_builds_configured_adapters(self):
        configs = [
            make_channel_config(
                id="tg",
                type="telegram",
                webhook_path="/telegram/webhook",
                config={"bot_token_env": "TG_TOKEN", "webhook_secret_env": "TG_SECRET"},
            ),
            make_channel_config(
                id="sl",
                type="slack",
                webhook_path="/slack/events",
                config={"bot_token_env": "SL_TOKEN", "signing_secret_env": "SL_SECRET"},
            ),
        ]
        environ = {
            "TG_TOKEN": "123:abc",
            "TG_SECRET": "s3cret",
            "SL_TOKEN": "xoxb-1",
            "SL_SECRET": "signing",
        }

        registry = build_registry(configs, environ=environ)

        assert registry.size == 2
        assert isinstance(registry.get_by_route("/telegram/webhook").adapter, TelegramAdapter)
        assert isinstance(registry.get_by_route("/slack/events").adapter, SlackAdapter)

    def test_missing_credentials_skip_channel(self):
        configs = [
            make_channel_config(
                id="tg", type="telegram", config={"bot_token_env": "TG_TOKEN"}
            )
        ]
        assert build_registry(configs, environ={}).size == 0

    def test_disabled_channel_skipped(self):
        configs = [
            make_channel_config(
                id="tg", type="telegram", enabled=False, config={"bot_token_env": "TG_TOKEN"}
            )
        ]
        assert build_registry(configs, environ={"TG_TOKEN": "123:abc"}).size == 0

    def test_unknown_type_returns_none(self):
        config = make_channel_config(type="carrier-pigeon")
        assert create_adapter_for_channel(config, environ={}) is None

    def test_default_telegram_channel_from_environment(self):
        registry = build_registry([], environ={"TELEGRAM_BOT_TOKEN": "123:abc"})

        entry = registry.get_by_route("/telegram/webhook")
        assert entry is not None
        assert entry.id == "telegram-default"

    def test_no_channels_without_token(self):
        assert build_registry([], environ={}).size == 0
