"""
Channel adapter contract.

Every platform integration implements the Receiver and Responder
capabilities; platforms that can edit a message in place additionally
implement StreamingResponder. The dispatch pipeline checks capabilities
with ``isinstance`` rather than probing for optional methods.

ChannelAdapter also owns the access policy (open / allowlist / disabled,
plus pairing-code enrolment for direct messages), because every adapter
must apply it before a message is handed to the agent.
"""

from __future__ import annotations

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, TypeVar

from chatgate.channels.errors import PolicyDenied
from chatgate.channels.models import (
    ChannelConfig,
    NormalizedMessage,
    PolicyResult,
    WebhookRequest,
)
from chatgate.channels.retry import with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

StopIndicator = Callable[[], None]

# A DM consisting solely of something shaped like a pairing code
PAIRING_CODE_PATTERN = re.compile(r"^[A-Z0-9]{6}$", re.IGNORECASE)

DENY_DM = "Sender not in DM allowlist"
DENY_GROUP = "Sender not in group allowlist"
DENY_GROUP_DISABLED = "Group messages are disabled for this channel"


class Transcriber(Protocol):
    """Speech-to-text collaborator used for voice and audio messages."""

    async def transcribe(self, data: bytes, mime_type: str, filename: str) -> str: ...


class PairingVerifier(Protocol):
    def verify_pairing_code(self, channel_id: str, sender_id: str, code: str) -> bool: ...

    def is_allowed(self, channel_id: str, sender_id: str) -> bool: ...


class Receiver(ABC):
    @abstractmethod
    async def receive(self, request: WebhookRequest) -> NormalizedMessage | None:
        """
        Verify and parse an inbound webhook.

        Returns a handshake message, a normalized user message, or None
        when the request is unverifiable, unsupported or denied by policy.
        Never raises for bad input.
        """


class Responder(ABC):
    @abstractmethod
    async def send_response(self, thread_id: str, text: str, metadata: dict[str, Any]) -> None:
        """Deliver a complete reply, splitting it if the platform requires."""


class StreamingResponder(ABC):
    @abstractmethod
    async def send_stream_chunk(
        self, thread_id: str, handle: Any, text: str, metadata: dict[str, Any]
    ) -> Any:
        """
        Show the accumulated reply so far.

        With no handle a new message is posted and its handle returned;
        with a handle the existing message is edited in place.
        """

    @abstractmethod
    async def send_stream_end(
        self, thread_id: str, text: str, metadata: dict[str, Any], handle: Any = None
    ) -> None:
        """Write the final reply text (new message if no handle exists)."""


def _noop_stop() -> None:
    return None


def start_repeating_indicator(
    action: Callable[[], Awaitable[Any]],
    interval: Callable[[], float],
    label: str = "indicator",
) -> StopIndicator:
    """
    Run ``action`` now and then every ``interval()`` seconds until stopped.

    Returns an idempotent stop callable. Failures of ``action`` are logged
    at debug level and do not end the loop.
    """

    async def _loop() -> None:
        while True:
            try:
                await action()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.debug("%s refresh failed: %s", label, e)
            await asyncio.sleep(interval())

    task = asyncio.get_running_loop().create_task(_loop(), name=label)

    def stop() -> None:
        if not task.done():
            task.cancel()

    return stop


class ChannelAdapter(Receiver, Responder):
    """
    Base class for platform adapters.

    Args:
        config: The channel's configuration
        pairing_store: Persisted DM allowlist / pairing codes (optional)
        transcriber: Speech-to-text for voice messages (optional)
    """

    #: Platform identifier, matches ChannelConfig.type
    platform: str = ""

    def __init__(
        self,
        config: ChannelConfig,
        pairing_store: PairingVerifier | None = None,
        transcriber: Transcriber | None = None,
    ):
        self.config = config
        self.pairing_store = pairing_store
        self.transcriber = transcriber

    @property
    def channel_id(self) -> str:
        return self.config.id

    @property
    def supports_streaming(self) -> bool:
        # Webhook adapters never hold a live connection to stream over
        return False

    @property
    def supports_chunked_delivery(self) -> bool:
        return False

    async def acknowledge(self, metadata: dict[str, Any]) -> None:
        """Signal receipt to the sender (reaction, read receipt, ...)."""
        return None

    def start_processing_indicator(self, metadata: dict[str, Any]) -> StopIndicator:
        """Start a "typing..." style indicator; returns its stop callable."""
        return _noop_stop

    # ─────────────────────────────────────────────────────────────────────
    # Access policy
    # ─────────────────────────────────────────────────────────────────────

    def check_policy(
        self,
        sender_id: str,
        is_group: bool,
        text: str | None = None,
        channel_id: str | None = None,
    ) -> PolicyResult:
        """
        Decide whether a sender may reach the agent.

        No configured policies means everyone is allowed. A denied DM whose
        whole text looks like a pairing code is checked against the pairing
        store and, if it verifies, the sender is enrolled and allowed.
        """
        policies = self.config.policies
        if policies is None:
            return PolicyResult.allow()

        channel_id = channel_id or self.channel_id
        sender_id = str(sender_id)

        if is_group:
            if policies.group == "open":
                return PolicyResult.allow()
            if policies.group == "disabled":
                return PolicyResult.deny(DENY_GROUP_DISABLED)
            if sender_id in policies.group_allow_from:
                return PolicyResult.allow()
            return PolicyResult.deny(DENY_GROUP)

        if policies.dm == "open":
            return PolicyResult.allow()
        if sender_id in policies.allow_from:
            return PolicyResult.allow()

        if self.pairing_store is not None:
            try:
                if self.pairing_store.is_allowed(channel_id, sender_id):
                    return PolicyResult.allow()
                candidate = (text or "").strip()
                if channel_id and PAIRING_CODE_PATTERN.match(candidate):
                    if self.pairing_store.verify_pairing_code(channel_id, sender_id, candidate):
                        logger.info("Sender %s paired on channel %s", sender_id, channel_id)
                        return PolicyResult.allow()
            except Exception as e:
                logger.warning("Pairing lookup failed for channel %s: %s", channel_id, e)

        return PolicyResult.deny(DENY_DM)

    def enforce_policy(self, sender_id: str, is_group: bool, text: str | None = None) -> None:
        """Raise PolicyDenied when the sender may not reach the agent."""
        result = self.check_policy(sender_id, is_group, text)
        if not result.allowed:
            raise PolicyDenied(result.reason)

    def _policy_allows(self, sender_id: str, is_group: bool, text: str | None = None) -> bool:
        try:
            self.enforce_policy(sender_id, is_group, text)
        except PolicyDenied as e:
            # Denied senders get no reply
            logger.info("Dropped message on %s from %s: %s", self.channel_id, sender_id, e.reason)
            return False
        return True

    # ─────────────────────────────────────────────────────────────────────
    # Helpers for subclasses
    # ─────────────────────────────────────────────────────────────────────

    async def _deliver(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run an outbound platform call with rate-limit retries."""
        return await with_retry(fn, max_retries=self.config.streaming.max_retries)

    async def _transcribe(self, data: bytes, mime_type: str, filename: str) -> str | None:
        """Transcribe audio, or return None when no transcriber is configured."""
        if self.transcriber is None:
            return None
        return await self.transcriber.transcribe(data, mime_type, filename)

    @staticmethod
    def _parse_json(request: WebhookRequest) -> Any:
        try:
            return request.json()
        except ValueError:
            logger.warning("Discarding webhook with malformed JSON on %s", request.path)
            return None
