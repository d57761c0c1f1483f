"""
Dispatch pipeline: one inbound channel message to one agent reply.

process_channel_message runs after the webhook has already been answered,
so it never raises. Every failure ends in a single best-effort apology to
the user, and the processing indicator is stopped exactly once whatever
happens.

Replies are either delivered in one piece (send_response) or, for
adapters that can edit messages and have streaming enabled, streamed as
rate-limited edits of a single message.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

from chatgate.agent import AgentEngine, text_delta
from chatgate.channels.base import ChannelAdapter, StopIndicator, StreamingResponder
from chatgate.channels.errors import InternalError
from chatgate.channels.metrics import ChannelMetrics
from chatgate.channels.models import ChannelConfig, NormalizedMessage
from chatgate.channels.stream_queue import ChannelStreamQueue
from chatgate.security.sanitizer import sanitize_input

logger = logging.getLogger(__name__)

APOLOGY = "Sorry, I encountered an error processing your message."


def _record(metrics: ChannelMetrics | None, channel_id: str, direction: str) -> None:
    if metrics is None:
        return
    try:
        metrics.record_message(channel_id, direction)  # type: ignore[arg-type]
    except Exception as e:
        logger.debug("Failed to record %s metric for %s: %s", direction, channel_id, e)


def _start_indicator(adapter: ChannelAdapter, metadata: dict[str, Any]) -> StopIndicator:
    try:
        return adapter.start_processing_indicator(metadata)
    except Exception as e:
        logger.debug("Processing indicator failed to start on %s: %s", adapter.channel_id, e)
        return lambda: None


def uses_streaming(adapter: ChannelAdapter, config: ChannelConfig) -> bool:
    """Stream only to capable adapters, and never for sub-agent channels."""
    return (
        isinstance(adapter, StreamingResponder)
        and adapter.supports_chunked_delivery
        and not config.agent
    )


async def process_channel_message(
    adapter: ChannelAdapter,
    message: NormalizedMessage,
    channel_id: str,
    config: ChannelConfig,
    engine: AgentEngine,
    metrics: ChannelMetrics | None = None,
) -> None:
    """
    Take a normalized message through the agent and deliver the reply.

    Args:
        adapter: Adapter that received the message (and will reply)
        message: Non-handshake message with text
        channel_id: Configured channel id
        config: The channel's configuration
        engine: Conversational AI engine
        metrics: Optional counters updated on receipt and on delivery
    """
    thread_id = message.thread_id
    metadata = message.metadata

    _record(metrics, channel_id, "inbound")

    screening = sanitize_input(message.text)
    if screening.sanitized:
        logger.warning(
            "Suspicious input on %s from %s: %s",
            channel_id,
            message.sender_id,
            ", ".join(screening.patterns_found),
        )

    try:
        await adapter.acknowledge(metadata)
    except Exception as e:
        logger.debug("Acknowledge failed on %s: %s", channel_id, e)

    stop_indicator = _start_indicator(adapter, metadata)
    try:
        options = {"user_id": channel_id, "chat_title": channel_id}

        if uses_streaming(adapter, config):
            await _stream_reply(adapter, message, channel_id, config, engine, options)
        else:
            if config.agent:
                reply = await engine.chat_with_agent(
                    config.agent, thread_id, message.text, message.attachments, options
                )
            else:
                reply = await engine.chat(thread_id, message.text, message.attachments, options)
            if not reply:
                raise InternalError("Agent returned an empty reply")
            await adapter.send_response(thread_id, reply, metadata)

        _record(metrics, channel_id, "outbound")

    except Exception:
        logger.exception("Failed to process message on %s (thread %s)", channel_id, thread_id)
        try:
            await adapter.send_response(thread_id, APOLOGY, metadata)
        except Exception as e:
            logger.error("Failed to send apology on %s: %s", channel_id, e)

    finally:
        try:
            stop_indicator()
        except Exception as e:
            logger.debug("Stopping processing indicator failed: %s", e)


async def _stream_reply(
    adapter: ChannelAdapter,
    message: NormalizedMessage,
    channel_id: str,
    config: ChannelConfig,
    engine: AgentEngine,
    options: dict[str, Any],
) -> None:
    assert isinstance(adapter, StreamingResponder)
    thread_id = message.thread_id
    metadata = message.metadata
    queue = ChannelStreamQueue(config.streaming.update_interval_ms)
    key = f"{channel_id}:{thread_id}"

    handle: Any = None
    accumulated = ""

    async def send_chunk(text: str) -> None:
        nonlocal handle
        try:
            result = await adapter.send_stream_chunk(thread_id, handle, text, metadata)
        except Exception as e:
            logger.warning("Stream chunk failed on %s: %s", key, e)
            return
        if handle is None and result is not None:
            handle = result

    try:
        stream = engine.chat_stream(thread_id, message.text, message.attachments, options)
        async for event in stream:
            delta = text_delta(event)
            if delta:
                accumulated += delta
                queue.enqueue(key, accumulated, send_chunk)
    finally:
        await queue.flush()

    if not accumulated:
        raise InternalError("Agent stream produced no text")

    await adapter.send_stream_end(thread_id, accumulated, metadata, handle)


class DispatchSupervisor:
    """
    Owner of fire-and-forget dispatch tasks.

    Holds a strong reference to every task until it finishes, logs any
    failure that escaped it, and lets shutdown wait for in-flight work.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str | None = None) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "Background task %s failed: %s", task.get_name(), error, exc_info=error
            )

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for outstanding tasks; cancel whatever is left after ``timeout``."""
        if not self._tasks:
            return
        pending = list(self._tasks)
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning("Cancelled %d dispatch task(s) at shutdown", len(still_running))
            await asyncio.gather(*still_running, return_exceptions=True)
