"""Per-channel message counters."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal

logger = logging.getLogger(__name__)

Direction = Literal["inbound", "outbound"]


@dataclass
class ChannelMetricsEntry:
    inbound: int = 0
    outbound: int = 0
    last_message_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "inbound": self.inbound,
            "outbound": self.outbound,
            "last_message_at": self.last_message_at,
        }


class ChannelMetrics:
    """
    In-memory inbound/outbound counts per channel.

    ``listeners`` are called after every update with
    ``(channel_id, direction, entry)``; a failing listener is logged and
    never affects message handling.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._entries: dict[str, ChannelMetricsEntry] = {}
        self.listeners: list[Callable[[str, Direction, ChannelMetricsEntry], Any]] = []

    def record_message(self, channel_id: str, direction: Direction) -> None:
        entry = self._entries.setdefault(channel_id, ChannelMetricsEntry())
        if direction == "inbound":
            entry.inbound += 1
        else:
            entry.outbound += 1
        entry.last_message_at = self._clock()

        for listener in self.listeners:
            try:
                listener(channel_id, direction, entry)
            except Exception as e:
                logger.debug("Metrics listener failed: %s", e)

    def get(self, channel_id: str) -> ChannelMetricsEntry:
        return self._entries.get(channel_id, ChannelMetricsEntry())

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {channel_id: entry.to_dict() for channel_id, entry in self._entries.items()}
