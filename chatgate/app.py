"""
Application assembly.

ChatGateRuntime holds every long-lived component, built once at startup
and passed explicitly to the HTTP app. The FastAPI lifespan starts the
WebSocket gateway alongside the webhook routes and, on shutdown, waits for
in-flight dispatches before closing adapters.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from fastapi import FastAPI

from chatgate import __version__
from chatgate.agent import AgentEngine
from chatgate.channels.dispatch import DispatchSupervisor
from chatgate.channels.gateway import GatewayServer
from chatgate.channels.metrics import ChannelMetrics
from chatgate.channels.registry import ChannelRegistry, build_registry
from chatgate.channels.webhooks import create_webhook_router
from chatgate.config import ChatGateConfig
from chatgate.security.api_keys import ApiKeyStore
from chatgate.security.pairing import PairingStore

logger = logging.getLogger(__name__)

DRAIN_TIMEOUT_S = 30.0


@dataclass
class ChatGateRuntime:
    engine: AgentEngine
    registry: ChannelRegistry
    supervisor: DispatchSupervisor = field(default_factory=DispatchSupervisor)
    metrics: ChannelMetrics = field(default_factory=ChannelMetrics)
    gateway: GatewayServer | None = None


def build_runtime(config: ChatGateConfig, engine: AgentEngine) -> ChatGateRuntime:
    pairing_store = PairingStore(config.db_path)
    registry = build_registry(config.channels, pairing_store=pairing_store)

    gateway = None
    if config.gateway.enabled:
        key_store = ApiKeyStore(config.db_path)
        gateway = GatewayServer(
            engine,
            key_store.verify_api_key,
            host=config.gateway.host,
            port=config.gateway.port,
            config=config.gateway.options,
        )

    return ChatGateRuntime(engine=engine, registry=registry, gateway=gateway)


def create_app(runtime: ChatGateRuntime) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting chatgate with %d channel(s)", runtime.registry.size)
        if runtime.gateway is not None:
            await runtime.gateway.start()

        yield

        if runtime.gateway is not None:
            await runtime.gateway.stop()
        await runtime.supervisor.drain(timeout=DRAIN_TIMEOUT_S)
        for adapter in runtime.registry.adapters():
            close = getattr(adapter, "aclose", None)
            if close is not None:
                try:
                    await close()
                except Exception as e:
                    logger.debug("Error closing adapter %s: %s", adapter.channel_id, e)
        logger.info("chatgate stopped")

    app = FastAPI(title="chatgate", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime
    app.include_router(
        create_webhook_router(
            runtime.registry, runtime.engine, runtime.supervisor, runtime.metrics
        )
    )
    return app
