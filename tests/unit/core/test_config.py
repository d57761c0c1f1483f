"""Tests for chatgate/config.py and the channel config models"""

import pytest

from chatgate.channels.gateway import DEFAULT_PORT
from chatgate.channels.models import ChannelConfig, StreamingConfig
from chatgate.config import DEFAULT_DB_PATH, load_config, parse_config


class TestChannelConfig:
    def test_defaults(self):
        config = ChannelConfig.from_dict({"id": "tg", "type": "telegram"})

        assert config.webhook_path == "/telegram/webhook"
        assert config.enabled
        assert config.policies is None
        assert config.streaming == StreamingConfig()
        assert config.agent is None

    def test_camel_case_keys(self):
        config = ChannelConfig.from_dict(
            {
                "id": "tg",
                "type": "telegram",
                "webhookPath": "hooks/tg",
                "policies": {"dm": "allowlist", "allowFrom": ["1"], "groupAllowFrom": ["2"]},
                "streaming": {"enabled": True, "updateIntervalMs": 500, "maxRetries": 1},
            }
        )

        assert config.webhook_path == "/hooks/tg"
        assert config.policies.allow_from == ("1",)
        assert config.policies.group_allow_from == ("2",)
        assert config.streaming == StreamingConfig(
            enabled=True, update_interval_ms=500, max_retries=1
        )

    def test_missing_id_raises(self):
        with pytest.raises(KeyError):
            ChannelConfig.from_dict({"type": "telegram"})


class TestParseConfig:
    def test_empty_config_defaults(self):
        config = parse_config({}, environ={})

        assert config.server.port == 8080
        assert config.gateway.enabled
        assert config.gateway.port == DEFAULT_PORT
        assert config.channels == []
        assert config.db_path == DEFAULT_DB_PATH
        assert config.engine is None

    def test_gateway_port_env_override(self):
        config = parse_config({"gateway": {"port": 9000}}, environ={"GATEWAY_PORT": "9100"})
        assert config.gateway.port == 9100

    def test_gateway_options_kept(self):
        config = parse_config({"gateway": {"ping_interval": 10}}, environ={})
        assert config.gateway.options == {"ping_interval": 10}

    def test_invalid_channel_skipped(self):
        raw = {"channels": [{"type": "slack"}, {"id": "tg", "type": "telegram"}]}

        config = parse_config(raw, environ={})

        assert [c.id for c in config.channels] == ["tg"]

    def test_engine_from_environment(self):
        config = parse_config({}, environ={"CHATGATE_ENGINE": "myagent:Engine"})
        assert config.engine == "myagent:Engine"

    def test_engine_from_file_wins(self):
        config = parse_config(
            {"agent": {"engine": "a:B"}}, environ={"CHATGATE_ENGINE": "c:D"}
        )
        assert config.engine == "a:B"


class TestLoadConfig:
    def test_missing_file_yields_defaults(self, tmp_path):
        config = load_config(tmp_path / "absent.yaml")
        assert config.channels == []

    def test_reads_yaml(self, tmp_path):
        path = tmp_path / "channels.yaml"
        path.write_text(
            "server:\n"
            "  port: 9999\n"
            "security:\n"
            f"  db_path: {tmp_path / 'x.db'}\n"
            "channels:\n"
            "  - id: slack-main\n"
            "    type: slack\n"
            "    webhook_path: /slack/events\n"
            "    config:\n"
            "      bot_token_env: SLACK_BOT_TOKEN\n"
        )

        config = load_config(path)

        assert config.server.port == 9999
        assert config.db_path == tmp_path / "x.db"
        assert config.channels[0].webhook_path == "/slack/events"
        assert config.channels[0].config == {"bot_token_env": "SLACK_BOT_TOKEN"}

    def test_shipped_example_parses(self):
        from chatgate.config import CONFIG_PATH

        config = load_config(CONFIG_PATH)
        assert {c.type for c in config.channels} == {"telegram", "slack", "discord", "whatsapp"}
