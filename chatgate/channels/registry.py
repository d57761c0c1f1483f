"""
Channel registry.

Maps channel ids and webhook paths to their configured adapters. Built
once at startup from the channel configuration and then passed to the
webhook app; there is no module-level instance.

Usage:
    registry = build_registry(configs, pairing_store=store)
    entry = registry.get_by_route("/telegram/webhook")
    message = await entry.adapter.receive(request)
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from chatgate.channels.base import ChannelAdapter, PairingVerifier, Transcriber
from chatgate.channels.models import ChannelConfig

logger = logging.getLogger(__name__)


@dataclass
class ChannelRegistryEntry:
    id: str
    config: ChannelConfig
    adapter: ChannelAdapter


class ChannelRegistry:
    def __init__(self) -> None:
        self._by_id: dict[str, ChannelRegistryEntry] = {}
        self._by_route: dict[str, str] = {}

    def register(self, channel_id: str, config: ChannelConfig, adapter: ChannelAdapter) -> None:
        """Add or replace a channel. Re-registering drops the old route."""
        previous = self._by_id.get(channel_id)
        if previous is not None:
            old_route = previous.config.webhook_path
            if self._by_route.get(old_route) == channel_id:
                del self._by_route[old_route]

        self._by_id[channel_id] = ChannelRegistryEntry(
            id=channel_id, config=config, adapter=adapter
        )
        if config.webhook_path:
            self._by_route[config.webhook_path] = channel_id

    def unregister(self, channel_id: str) -> bool:
        entry = self._by_id.pop(channel_id, None)
        if entry is None:
            return False
        if self._by_route.get(entry.config.webhook_path) == channel_id:
            del self._by_route[entry.config.webhook_path]
        return True

    def get_by_id(self, channel_id: str) -> ChannelRegistryEntry | None:
        return self._by_id.get(channel_id)

    def get_by_route(self, route: str) -> ChannelRegistryEntry | None:
        channel_id = self._by_route.get(route)
        if channel_id is None:
            return None
        return self._by_id.get(channel_id)

    def get_webhook_paths(self) -> list[str]:
        return list(self._by_route)

    def get_all(self) -> list[dict[str, Any]]:
        return [entry.config.summary() for entry in self._by_id.values()]

    def adapters(self) -> list[ChannelAdapter]:
        return [entry.adapter for entry in self._by_id.values()]

    @property
    def size(self) -> int:
        return len(self._by_id)

    def __len__(self) -> int:
        return len(self._by_id)

    def __contains__(self, channel_id: object) -> bool:
        return channel_id in self._by_id


# ─────────────────────────────────────────────────────────────────────────────
# Construction from configuration
# ─────────────────────────────────────────────────────────────────────────────

DEFAULT_TELEGRAM_CHANNEL = {
    "id": "telegram-default",
    "type": "telegram",
    "enabled": True,
    "webhook_path": "/telegram/webhook",
    "config": {
        "bot_token_env": "TELEGRAM_BOT_TOKEN",
        "webhook_secret_env": "TELEGRAM_WEBHOOK_SECRET",
        "chat_id_env": "TELEGRAM_CHAT_ID",
        "verification_env": "TELEGRAM_VERIFICATION",
    },
}


def _env(config: ChannelConfig, key: str, environ: Mapping[str, str]) -> str | None:
    """Resolve ``config.config[key]`` (an env var name) to its value."""
    var_name = config.config.get(key)
    if not var_name:
        return None
    return environ.get(var_name) or None


def create_adapter_for_channel(
    config: ChannelConfig,
    pairing_store: PairingVerifier | None = None,
    transcriber: Transcriber | None = None,
    environ: Mapping[str, str] | None = None,
) -> ChannelAdapter | None:
    """
    Build the adapter for one channel, reading credentials from the
    environment variables named in its config block.

    Returns None (with a warning) when credentials are missing or the
    channel type is unknown.
    """
    environ = os.environ if environ is None else environ
    common = {"pairing_store": pairing_store, "transcriber": transcriber}

    if config.type == "telegram":
        bot_token = _env(config, "bot_token_env", environ)
        if not bot_token:
            logger.warning("%s: %s not set", config.id, config.config.get("bot_token_env"))
            return None
        from chatgate.channels.telegram import TelegramAdapter

        return TelegramAdapter(
            config,
            bot_token=bot_token,
            webhook_secret=_env(config, "webhook_secret_env", environ),
            chat_id=_env(config, "chat_id_env", environ),
            verification_code=_env(config, "verification_env", environ),
            **common,
        )

    if config.type == "slack":
        bot_token = _env(config, "bot_token_env", environ)
        signing_secret = _env(config, "signing_secret_env", environ)
        if not bot_token or not signing_secret:
            logger.warning("%s: Slack credentials not set", config.id)
            return None
        from chatgate.channels.slack import SlackAdapter

        return SlackAdapter(config, bot_token=bot_token, signing_secret=signing_secret, **common)

    if config.type == "discord":
        bot_token = _env(config, "bot_token_env", environ)
        public_key = _env(config, "public_key_env", environ)
        application_id = _env(config, "application_id_env", environ) or ""
        if not bot_token or not public_key:
            logger.warning("%s: Discord credentials not set", config.id)
            return None
        from chatgate.channels.discord import DiscordAdapter

        return DiscordAdapter(
            config,
            bot_token=bot_token,
            application_id=application_id,
            public_key=public_key,
            **common,
        )

    if config.type == "whatsapp":
        phone_number_id = _env(config, "phone_number_id_env", environ)
        access_token = _env(config, "access_token_env", environ)
        verify_token = _env(config, "verify_token_env", environ)
        if not phone_number_id or not access_token or not verify_token:
            logger.warning("%s: WhatsApp credentials not set", config.id)
            return None
        from chatgate.channels.whatsapp import WhatsAppAdapter

        return WhatsAppAdapter(
            config,
            phone_number_id=phone_number_id,
            access_token=access_token,
            verify_token=verify_token,
            app_secret=_env(config, "app_secret_env", environ),
            **common,
        )

    logger.warning("%s: unknown channel type %r", config.id, config.type)
    return None


def build_registry(
    configs: Iterable[ChannelConfig],
    pairing_store: PairingVerifier | None = None,
    transcriber: Transcriber | None = None,
    environ: Mapping[str, str] | None = None,
) -> ChannelRegistry:
    """
    Create adapters for every enabled channel and register them.

    With no channels configured, a Telegram channel is registered from the
    ``TELEGRAM_*`` environment variables when a bot token is present.
    A channel that fails to initialize is logged and skipped.
    """
    environ = os.environ if environ is None else environ
    configs = list(configs)
    if not configs and environ.get("TELEGRAM_BOT_TOKEN"):
        configs = [ChannelConfig.from_dict(DEFAULT_TELEGRAM_CHANNEL)]

    registry = ChannelRegistry()
    for config in configs:
        if not config.enabled:
            logger.debug("Skipping disabled channel %s", config.id)
            continue
        try:
            adapter = create_adapter_for_channel(config, pairing_store, transcriber, environ)
        except Exception as e:
            logger.error("Failed to initialize channel %s: %s", config.id, e)
            continue
        if adapter is not None:
            registry.register(config.id, config, adapter)
            logger.info(
                "Registered %s channel %s at %s", config.type, config.id, config.webhook_path
            )

    return registry
