"""
Inbound webhook routes.

Every configured channel is reachable at ``/api<webhook_path>`` for both
GET (subscription checks) and POST (deliveries). Platforms expect a fast
200, so the agent call is spawned in the background and the route returns
``{"ok": true}`` immediately.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from chatgate.agent import AgentEngine
from chatgate.channels.dispatch import DispatchSupervisor, process_channel_message
from chatgate.channels.metrics import ChannelMetrics
from chatgate.channels.models import WebhookRequest
from chatgate.channels.registry import ChannelRegistry

logger = logging.getLogger(__name__)


async def to_webhook_request(request: Request, route: str) -> WebhookRequest:
    return WebhookRequest(
        method=request.method,
        path=route,
        headers=dict(request.headers),
        query=dict(request.query_params),
        body=await request.body(),
    )


async def handle_channel_webhook(
    route: str,
    request: WebhookRequest,
    registry: ChannelRegistry,
    engine: AgentEngine,
    supervisor: DispatchSupervisor,
    metrics: ChannelMetrics | None = None,
) -> Response:
    """
    Route one webhook request to its adapter.

    Returns 404 for unknown routes, the raw challenge for subscription
    handshakes, ``{"type": 1}`` for Discord pings and ``{"ok": true}`` for
    everything else, including requests the adapter rejected.
    """
    entry = registry.get_by_route(route)
    if entry is None:
        return JSONResponse({"error": "Not found"}, status_code=404)

    try:
        message = await entry.adapter.receive(request)
    except Exception as e:
        logger.error("Adapter %s failed to parse webhook: %s", entry.id, e)
        message = None

    if message is None:
        return JSONResponse({"ok": True})

    if message.challenge is not None:
        return PlainTextResponse(message.challenge)

    if message.pong:
        return JSONResponse({"type": 1})

    supervisor.spawn(
        process_channel_message(
            entry.adapter, message, entry.id, entry.config, engine, metrics=metrics
        ),
        name=f"dispatch:{entry.id}:{message.thread_id}",
    )
    return JSONResponse({"ok": True})


def create_webhook_router(
    registry: ChannelRegistry,
    engine: AgentEngine,
    supervisor: DispatchSupervisor,
    metrics: ChannelMetrics | None = None,
) -> APIRouter:
    router = APIRouter(prefix="/api")

    @router.get("/ping")
    async def ping() -> dict[str, Any]:
        return {"message": "Pong!"}

    @router.get("/channels")
    async def list_channels() -> dict[str, Any]:
        snapshot = metrics.snapshot() if metrics else {}
        return {
            "channels": [
                {**summary, "metrics": snapshot.get(summary["id"])}
                for summary in registry.get_all()
            ]
        }

    @router.api_route("/{route:path}", methods=["GET", "POST"])
    async def channel_webhook(route: str, request: Request) -> Response:
        path = "/" + route
        webhook_request = await to_webhook_request(request, path)
        return await handle_channel_webhook(
            path, webhook_request, registry, engine, supervisor, metrics
        )

    return router
