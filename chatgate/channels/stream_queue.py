"""
Rate-limited stream delivery.

Streaming responses arrive as many small deltas, but platforms only accept
a few message edits per second. ChannelStreamQueue coalesces them: per key
only the latest text is kept and it is delivered at most once per
``rate_limit_ms``. Deliveries for a key are chained so an older text never
lands after a newer one.

Usage:
    queue = ChannelStreamQueue(rate_limit_ms=1500)
    queue.enqueue("telegram-main:42", accumulated, send_chunk)
    ...
    await queue.flush()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

FlushFn = Callable[[str], Awaitable[object]]

DEFAULT_RATE_LIMIT_MS = 1500


@dataclass
class _PendingFlush:
    text: str
    flush_fn: FlushFn


class ChannelStreamQueue:
    def __init__(self, rate_limit_ms: int = DEFAULT_RATE_LIMIT_MS):
        self.rate_limit_ms = rate_limit_ms
        self._pending: dict[str, _PendingFlush] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        # Last delivery task per key; the next delivery waits for it
        self._inflight: dict[str, asyncio.Task] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def enqueue(self, key: str, text: str, flush_fn: FlushFn) -> None:
        """
        Record ``text`` as the latest content for ``key``.

        Must be called from inside a running event loop. A timer is only
        armed when none is pending, so a steady stream of deltas is
        delivered once per interval rather than postponed forever.
        """
        self._pending[key] = _PendingFlush(text=text, flush_fn=flush_fn)
        if key not in self._timers:
            loop = asyncio.get_running_loop()
            self._timers[key] = loop.call_later(
                self.rate_limit_ms / 1000, self._flush_key, key
            )

    def _flush_key(self, key: str) -> asyncio.Task | None:
        self._timers.pop(key, None)
        entry = self._pending.pop(key, None)
        if entry is None:
            return None

        previous = self._inflight.get(key)
        task = asyncio.get_running_loop().create_task(
            self._deliver(key, entry, previous), name=f"stream-flush:{key}"
        )
        self._inflight[key] = task
        task.add_done_callback(lambda t, k=key: self._forget(k, t))
        return task

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _deliver(
        self, key: str, entry: _PendingFlush, previous: asyncio.Task | None
    ) -> None:
        if previous is not None:
            # _deliver never raises, so awaiting the previous task is safe
            await previous
        try:
            await entry.flush_fn(entry.text)
        except Exception as e:
            logger.error("Stream flush failed for %s: %s", key, e)

    async def flush(self) -> None:
        """Deliver everything pending now and wait for in-flight deliveries."""
        for handle in self._timers.values():
            handle.cancel()
        keys = list(self._timers)
        self._timers.clear()

        for key in keys:
            self._flush_key(key)
        # Keys whose timer already fired but were re-enqueued without a timer
        for key in list(self._pending):
            self._flush_key(key)

        inflight = list(self._inflight.values())
        if inflight:
            await asyncio.gather(*inflight)
