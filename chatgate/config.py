"""
Configuration loading.

Settings live in ``args/channels.yaml`` (override with CHATGATE_CONFIG).
Credentials never appear in the file; each channel's ``config`` block
names the environment variables that hold them.

Example:
    server:
      host: 0.0.0.0
      port: 8080
    gateway:
      enabled: true
      port: 18789
    channels:
      - id: telegram-main
        type: telegram
        webhook_path: /telegram/webhook
        config:
          bot_token_env: TELEGRAM_BOT_TOKEN
          webhook_secret_env: TELEGRAM_WEBHOOK_SECRET
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from chatgate.channels.gateway import DEFAULT_HOST as GATEWAY_DEFAULT_HOST
from chatgate.channels.gateway import DEFAULT_PORT as GATEWAY_DEFAULT_PORT
from chatgate.channels.models import ChannelConfig

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).parent.parent
CONFIG_PATH = PROJECT_ROOT / "args" / "channels.yaml"
DEFAULT_DB_PATH = PROJECT_ROOT / "data" / "chatgate.db"

DEFAULT_SERVER_HOST = "127.0.0.1"
DEFAULT_SERVER_PORT = 8080


@dataclass
class ServerSettings:
    host: str = DEFAULT_SERVER_HOST
    port: int = DEFAULT_SERVER_PORT


@dataclass
class GatewaySettings:
    enabled: bool = True
    host: str = GATEWAY_DEFAULT_HOST
    port: int = GATEWAY_DEFAULT_PORT
    options: dict[str, Any] = field(default_factory=dict)


@dataclass
class ChatGateConfig:
    server: ServerSettings = field(default_factory=ServerSettings)
    gateway: GatewaySettings = field(default_factory=GatewaySettings)
    channels: list[ChannelConfig] = field(default_factory=list)
    db_path: Path = DEFAULT_DB_PATH
    engine: str | None = None


def resolve_config_path(path: str | Path | None = None) -> Path:
    if path:
        return Path(path)
    env_path = os.environ.get("CHATGATE_CONFIG")
    return Path(env_path) if env_path else CONFIG_PATH


def parse_config(raw: dict[str, Any], environ: dict[str, str] | None = None) -> ChatGateConfig:
    """
    Build a ChatGateConfig from already-parsed YAML.

    A malformed channel entry is logged and skipped rather than failing
    the whole file. GATEWAY_PORT, when set, overrides the gateway port.
    """
    environ = dict(os.environ) if environ is None else environ

    server_raw = raw.get("server") or {}
    server = ServerSettings(
        host=str(server_raw.get("host", DEFAULT_SERVER_HOST)),
        port=int(server_raw.get("port", DEFAULT_SERVER_PORT)),
    )

    gateway_raw = dict(raw.get("gateway") or {})
    gateway = GatewaySettings(
        enabled=bool(gateway_raw.pop("enabled", True)),
        host=str(gateway_raw.pop("host", GATEWAY_DEFAULT_HOST)),
        port=int(gateway_raw.pop("port", GATEWAY_DEFAULT_PORT)),
        options=gateway_raw,
    )
    if environ.get("GATEWAY_PORT"):
        gateway.port = int(environ["GATEWAY_PORT"])

    channels = []
    for entry in raw.get("channels") or []:
        try:
            channels.append(ChannelConfig.from_dict(entry))
        except (KeyError, TypeError, ValueError) as e:
            logger.error("Invalid channel entry %r: %s", entry, e)

    security = raw.get("security") or {}
    db_path = Path(security["db_path"]) if security.get("db_path") else DEFAULT_DB_PATH

    agent = raw.get("agent") or {}
    return ChatGateConfig(
        server=server,
        gateway=gateway,
        channels=channels,
        db_path=db_path,
        engine=agent.get("engine") or environ.get("CHATGATE_ENGINE"),
    )


def load_config(path: str | Path | None = None) -> ChatGateConfig:
    """Load configuration from YAML; a missing file yields defaults."""
    config_path = resolve_config_path(path)
    if not config_path.exists():
        logger.info("No config at %s, using defaults", config_path)
        return parse_config({})

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}
    return parse_config(raw)
