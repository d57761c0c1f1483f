"""
chatgate command line.

Usage:
    chatgate --action serve
    chatgate --action serve --config args/channels.yaml --port 8080
    chatgate --action status
    chatgate --action pair --channel telegram-main
    chatgate --action create-api-key
    chatgate --action cleanup
"""

from __future__ import annotations

import argparse
import json
import logging
import sys

from dotenv import load_dotenv

from chatgate.config import ChatGateConfig, load_config
from chatgate.logging_config import setup_logging

logger = logging.getLogger(__name__)


def serve(config: ChatGateConfig, host: str | None = None, port: int | None = None) -> None:
    import uvicorn

    from chatgate.agent import load_engine
    from chatgate.app import build_runtime, create_app

    if not config.engine:
        raise ValueError("No agent engine configured (set agent.engine or CHATGATE_ENGINE)")

    runtime = build_runtime(config, load_engine(config.engine))
    app = create_app(runtime)
    uvicorn.run(
        app,
        host=host or config.server.host,
        port=port or config.server.port,
        log_config=None,
    )


def status(config: ChatGateConfig) -> dict:
    from chatgate.security.api_keys import ApiKeyStore
    from chatgate.security.pairing import PairingStore

    pairing = PairingStore(config.db_path)
    return {
        "success": True,
        "channels": [
            {
                **channel.summary(),
                "paired_senders": len(pairing.get_allowlist(channel.id)),
            }
            for channel in config.channels
        ],
        "gateway": {
            "enabled": config.gateway.enabled,
            "address": f"ws://{config.gateway.host}:{config.gateway.port}",
            "api_key": ApiKeyStore(config.db_path).get_api_key_info(),
        },
        "engine": config.engine,
    }


def main():
    parser = argparse.ArgumentParser(description="chatgate - multi-channel message gateway")
    parser.add_argument(
        "--action",
        required=True,
        choices=["serve", "status", "pair", "create-api-key", "cleanup"],
    )
    parser.add_argument("--config", help="Path to channels.yaml")
    parser.add_argument("--channel", help="Channel id for pair action")
    parser.add_argument("--host", help="HTTP bind host (serve)")
    parser.add_argument("--port", type=int, help="HTTP bind port (serve)")
    parser.add_argument("--log-level", help="Log level (default: CHATGATE_LOG_LEVEL or INFO)")

    args = parser.parse_args()

    load_dotenv()
    setup_logging(level=args.log_level)

    try:
        config = load_config(args.config)

        if args.action == "serve":
            serve(config, host=args.host, port=args.port)
            return

        if args.action == "status":
            result = status(config)

        elif args.action == "pair":
            if not args.channel:
                print("ERROR: --channel required for pair action")
                sys.exit(1)
            from chatgate.security.pairing import PairingStore

            pairing = PairingStore(config.db_path).generate_pairing_code(args.channel)
            result = {"success": True, **pairing.to_dict()}

        elif args.action == "create-api-key":
            from chatgate.security.api_keys import ApiKeyStore

            key = ApiKeyStore(config.db_path).create_api_key(created_by="cli")
            result = {"success": True, "api_key": key, "note": "Shown once; store it now"}

        elif args.action == "cleanup":
            from chatgate.security.pairing import PairingStore

            removed = PairingStore(config.db_path).cleanup_expired()
            result = {"success": True, "removed": removed}

        else:
            print(f"ERROR: Unknown action: {args.action}")
            sys.exit(1)

        print("OK" if result.get("success", True) else "ERROR")
        print(json.dumps(result, indent=2, default=str))

    except Exception as e:
        print(f"ERROR: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
