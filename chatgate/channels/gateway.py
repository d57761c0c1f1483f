"""
WebSocket gateway.

Direct, adapter-free access to the agent for trusted clients (CLI tools,
desktop apps). Clients connect to ``ws://host:port/?key=<api key>`` and
exchange JSON frames:

    client -> server                         server -> client
    {"type": "ping"}                         {"type": "pong"}
    {"type": "set-thread", "threadId": ...}  (no reply)
    {"type": "chat", "text": ...,            {"type": "chunk", "content": ...} *
     "threadId": ...?}                       {"type": "done"}
                                             {"type": "error", "error": ...}
                                             {"type": "shutdown"}

Auth failures close the socket with 4001 (missing/invalid key) or 4003
(key service unavailable). Every frame is handled in its own task so a
long chat never blocks pings on the same connection.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any
from urllib.parse import parse_qs, urlsplit

import websockets
from websockets.exceptions import ConnectionClosed

from chatgate.agent import AgentEngine, text_delta
from chatgate.channels.errors import AuthError, ValidationError
from chatgate.channels.models import GatewaySession

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 18789
DEFAULT_PING_INTERVAL = 30
DEFAULT_MAX_MESSAGE_SIZE = 1024 * 1024
DEFAULT_SHUTDOWN_TIMEOUT = 10

CLOSE_GOING_AWAY = 1001
CLOSE_UNAUTHORIZED = 4001
CLOSE_AUTH_UNAVAILABLE = 4003

ERR_MISSING_KEY = "Missing API key. Connect with ?key=YOUR_API_KEY"
ERR_INVALID_KEY = "Invalid API key"
ERR_AUTH_UNAVAILABLE = "Auth service unavailable"
ERR_INVALID_JSON = "Invalid JSON"
ERR_MISSING_TEXT = "Missing text field"
ERR_CHAT_FAILED = "Chat processing failed"
ERR_INTERNAL = "Internal error"

# Returns key metadata (truthy) for a valid key, falsy otherwise; may be async
KeyVerifier = Callable[[str], Any]


def _request_path(websocket) -> str:
    request = getattr(websocket, "request", None)
    if request is not None:
        return request.path
    return getattr(websocket, "path", "/")


def parse_frame(raw: str | bytes) -> dict[str, Any]:
    try:
        frame = json.loads(raw)
    except (TypeError, ValueError):
        frame = None
    if not isinstance(frame, dict):
        raise ValidationError(ERR_INVALID_JSON)
    return frame


class GatewayServer:
    def __init__(
        self,
        engine: AgentEngine,
        verify_api_key: KeyVerifier,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        config: dict[str, Any] | None = None,
    ):
        self.engine = engine
        self.verify_api_key = verify_api_key
        self.host = host
        self.port = port
        self.config = config or {}

        self.sessions: dict[str, GatewaySession] = {}
        self.server = None
        self.start_time: datetime | None = None
        self._frame_tasks: set[asyncio.Task] = set()

    @property
    def connection_count(self) -> int:
        return len(self.sessions)

    @property
    def running(self) -> bool:
        return self.server is not None

    def get_sessions(self) -> list[dict[str, Any]]:
        return [session.to_dict() for session in self.sessions.values()]

    # ─────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start listening. Returns once the socket is bound."""
        self.server = await websockets.serve(
            self.handle_connection,
            self.host,
            self.port,
            ping_interval=self.config.get("ping_interval", DEFAULT_PING_INTERVAL),
            max_size=self.config.get("max_message_size", DEFAULT_MAX_MESSAGE_SIZE),
        )
        # Port 0 asks the OS for a free port
        sockets = list(self.server.sockets or [])
        if sockets:
            self.port = sockets[0].getsockname()[1]
        self.start_time = datetime.now(timezone.utc)
        logger.info("Gateway listening on ws://%s:%s", self.host, self.port)

    async def serve_forever(self) -> None:
        if self.server is None:
            await self.start()
        await self.server.wait_closed()

    async def stop(self) -> None:
        """Notify every client, close all sockets with 1001 and stop listening."""
        logger.info("Shutting down gateway (%d session(s))", len(self.sessions))
        sessions = list(self.sessions.values())
        self.sessions.clear()

        for session in sessions:
            try:
                await session.connection.send(json.dumps({"type": "shutdown"}))
                await session.connection.close(CLOSE_GOING_AWAY, "Server shutting down")
            except Exception as e:
                logger.debug("Error closing session %s: %s", session.session_id, e)

        if self.server is not None:
            self.server.close()
            try:
                await asyncio.wait_for(
                    self.server.wait_closed(),
                    timeout=self.config.get("shutdown_timeout", DEFAULT_SHUTDOWN_TIMEOUT),
                )
            except asyncio.TimeoutError:
                logger.warning("Gateway did not close within the shutdown timeout")
            self.server = None

    # ─────────────────────────────────────────────────────────────────────
    # Connections
    # ─────────────────────────────────────────────────────────────────────

    async def handle_connection(self, websocket) -> None:
        session = await self._authenticate(websocket)
        if session is None:
            return

        self.sessions[session.session_id] = session
        logger.info("Gateway session %s connected", session.session_id)

        try:
            async for raw in websocket:
                task = asyncio.get_running_loop().create_task(
                    self._run_frame(session, raw), name=f"gateway-frame:{session.session_id}"
                )
                self._frame_tasks.add(task)
                task.add_done_callback(self._frame_tasks.discard)
        except ConnectionClosed:
            pass
        finally:
            self.sessions.pop(session.session_id, None)
            logger.info("Gateway session %s disconnected", session.session_id)

    async def _authenticate(self, websocket) -> GatewaySession | None:
        query = parse_qs(urlsplit(_request_path(websocket)).query)
        key = (query.get("key") or [""])[0]

        try:
            await self.check_key(key)
        except AuthError as e:
            await self._reject(websocket, str(e), CLOSE_UNAUTHORIZED)
            return None
        except Exception as e:
            logger.error("API key verification failed: %s", e)
            await self._reject(websocket, ERR_AUTH_UNAVAILABLE, CLOSE_AUTH_UNAVAILABLE)
            return None

        return GatewaySession(
            session_id=str(uuid.uuid4()),
            connected_at=datetime.now(timezone.utc),
            connection=websocket,
        )

    async def check_key(self, key: str) -> Any:
        """Return key metadata, or raise AuthError for a missing or unknown key."""
        if not key:
            raise AuthError(ERR_MISSING_KEY)
        record = self.verify_api_key(key)
        if inspect.isawaitable(record):
            record = await record
        if not record:
            raise AuthError(ERR_INVALID_KEY)
        return record

    @staticmethod
    async def _reject(websocket, error: str, code: int) -> None:
        try:
            await websocket.send(json.dumps({"type": "error", "error": error}))
            await websocket.close(code, error[:120])
        except ConnectionClosed:
            pass

    async def _send(self, session: GatewaySession, payload: dict[str, Any]) -> None:
        # Replies for a session that has gone away are dropped
        if session.session_id not in self.sessions:
            return
        try:
            await session.connection.send(json.dumps(payload))
        except ConnectionClosed:
            logger.debug("Session %s closed before send", session.session_id)

    # ─────────────────────────────────────────────────────────────────────
    # Frames
    # ─────────────────────────────────────────────────────────────────────

    async def _run_frame(self, session: GatewaySession, raw: str | bytes) -> None:
        try:
            await self.handle_frame(session, raw)
        except Exception:
            logger.exception("Unhandled error on gateway session %s", session.session_id)
            await self._send(session, {"type": "error", "error": ERR_INTERNAL})

    async def handle_frame(self, session: GatewaySession, raw: str | bytes) -> None:
        try:
            await self._dispatch_frame(session, parse_frame(raw))
        except ValidationError as e:
            await self._send(session, {"type": "error", "error": str(e)})

    async def _dispatch_frame(self, session: GatewaySession, frame: dict[str, Any]) -> None:
        frame_type = frame.get("type")

        if frame_type == "ping":
            await self._send(session, {"type": "pong"})

        elif frame_type == "set-thread":
            thread_id = frame.get("threadId") or frame.get("thread_id")
            if thread_id:
                session.thread_id = str(thread_id)

        elif frame_type == "chat":
            await self._handle_chat(session, frame)

        else:
            raise ValidationError(f"Unknown message type: {frame_type}")

    async def _handle_chat(self, session: GatewaySession, frame: dict[str, Any]) -> None:
        text = frame.get("text")
        if not isinstance(text, str) or not text:
            raise ValidationError(ERR_MISSING_TEXT)

        thread_id = (
            frame.get("threadId")
            or frame.get("thread_id")
            or session.thread_id
            or str(uuid.uuid4())
        )
        session.thread_id = str(thread_id)

        try:
            async for event in self.engine.chat_stream(
                session.thread_id, text, [], {"user_id": "gateway"}
            ):
                delta = text_delta(event)
                if delta:
                    await self._send(session, {"type": "chunk", "content": delta})
            await self._send(session, {"type": "done"})
        except Exception:
            logger.exception("Gateway chat failed on thread %s", session.thread_id)
            await self._send(session, {"type": "error", "error": ERR_CHAT_FAILED})
