"""
Slack channel adapter (Events API).

Slack posts events to the channel's webhook path, signed with the app's
signing secret (``v0`` HMAC-SHA256 over ``v0:{timestamp}:{body}``).
Requests older than five minutes are rejected. The one-off
``url_verification`` request is answered with its challenge.

Only plain user ``message`` events are handled; edits, joins and bot
messages (anything with a ``subtype`` or ``bot_id``) are ignored.
Replies are posted in the originating thread as mrkdwn.
"""

from __future__ import annotations

import logging
import re
from typing import Any

import httpx
from slack_sdk.signature import SignatureVerifier
from slack_sdk.web.async_client import AsyncWebClient

from chatgate.channels.base import ChannelAdapter, StreamingResponder
from chatgate.channels.content.markdown import to_slack_mrkdwn
from chatgate.channels.content.splitter import CHANNEL_LIMITS, split_text, truncate
from chatgate.channels.models import Attachment, ChannelConfig, NormalizedMessage, WebhookRequest

logger = logging.getLogger(__name__)

MESSAGE_LIMIT = CHANNEL_LIMITS["slack"]
ACK_REACTION = "eyes"
STREAM_SUFFIX = "..."
GROUP_CHANNEL_TYPES = ("channel", "group")

MENTION_PATTERN = re.compile(r"<@[A-Z0-9]+>")


class SlackAdapter(ChannelAdapter, StreamingResponder):
    platform = "slack"

    def __init__(
        self,
        config: ChannelConfig,
        bot_token: str,
        signing_secret: str,
        client: AsyncWebClient | None = None,
        verifier: SignatureVerifier | None = None,
        pairing_store=None,
        transcriber=None,
    ):
        super().__init__(config, pairing_store=pairing_store, transcriber=transcriber)
        self.bot_token = bot_token
        self.client = client or AsyncWebClient(token=bot_token)
        self.verifier = verifier or SignatureVerifier(signing_secret)

    @property
    def supports_chunked_delivery(self) -> bool:
        return self.config.streaming.enabled

    # ─────────────────────────────────────────────────────────────────────
    # Inbound
    # ─────────────────────────────────────────────────────────────────────

    def verify_signature(self, request: WebhookRequest) -> bool:
        timestamp = request.header("x-slack-request-timestamp")
        signature = request.header("x-slack-signature")
        if not timestamp or not signature:
            return False
        try:
            return self.verifier.is_valid(
                body=request.body, timestamp=timestamp, signature=signature
            )
        except ValueError:
            # Non-numeric timestamp header
            return False

    async def receive(self, request: WebhookRequest) -> NormalizedMessage | None:
        if not self.verify_signature(request):
            logger.warning("Slack signature verification failed on %s", self.channel_id)
            return None

        body = self._parse_json(request)
        if not isinstance(body, dict):
            return None

        if body.get("type") == "url_verification":
            return NormalizedMessage.handshake_challenge(str(body.get("challenge", "")))

        if body.get("type") != "event_callback":
            return None

        event = body.get("event") or {}
        if event.get("type") != "message" or event.get("subtype") or event.get("bot_id"):
            return None

        sender_id = event.get("user", "")
        is_group = event.get("channel_type") in GROUP_CHANNEL_TYPES
        text = MENTION_PATTERN.sub("", event.get("text") or "").strip()
        if not self._policy_allows(sender_id, is_group, text):
            return None

        try:
            text, attachments = await self._extract_content(event, text)
        except Exception as e:
            logger.error("Failed to process Slack event on %s: %s", self.channel_id, e)
            return None

        if not text:
            return None

        return NormalizedMessage(
            thread_id=event["channel"],
            text=text,
            attachments=attachments,
            metadata={
                "channel": event["channel"],
                "ts": event.get("ts"),
                "thread_ts": event.get("thread_ts") or event.get("ts"),
                "team": body.get("team_id"),
                "sender_id": sender_id,
                "is_group": is_group,
            },
        )

    async def _extract_content(
        self, event: dict[str, Any], text: str
    ) -> tuple[str, list[Attachment]]:
        attachments: list[Attachment] = []

        for file_info in event.get("files") or []:
            mime_type = file_info.get("mimetype") or "application/octet-stream"
            url = file_info.get("url_private")
            if not url:
                continue
            try:
                if mime_type.startswith("audio/"):
                    if self.transcriber is None:
                        logger.info("Skipping Slack audio file, no transcriber configured")
                        continue
                    data = await self.download_file(url)
                    transcript = await self._transcribe(
                        data, mime_type, file_info.get("name") or "audio.ogg"
                    )
                    if transcript:
                        text = f"{text}\n{transcript}" if text else transcript
                else:
                    data = await self.download_file(url)
                    category = "image" if mime_type.startswith("image/") else "document"
                    attachments.append(
                        Attachment(
                            category=category,
                            mime_type=mime_type,
                            data=data,
                            filename=file_info.get("name"),
                        )
                    )
            except Exception as e:
                logger.error("Failed to download Slack file: %s", e)

        return text, attachments

    async def download_file(self, url_private: str) -> bytes:
        async with httpx.AsyncClient(timeout=30.0) as client:
            response = await client.get(
                url_private, headers={"Authorization": f"Bearer {self.bot_token}"}
            )
            response.raise_for_status()
            return response.content

    # ─────────────────────────────────────────────────────────────────────
    # Outbound
    # ─────────────────────────────────────────────────────────────────────

    async def acknowledge(self, metadata: dict[str, Any]) -> None:
        try:
            await self.client.reactions_add(
                channel=metadata["channel"], timestamp=metadata["ts"], name=ACK_REACTION
            )
        except Exception as e:
            logger.debug("Slack reaction failed: %s", e)

    async def send_response(self, thread_id: str, text: str, metadata: dict[str, Any]) -> None:
        thread_ts = metadata.get("thread_ts")
        for chunk in split_text(to_slack_mrkdwn(text), MESSAGE_LIMIT):
            await self._post(thread_id, chunk, thread_ts)

    async def send_stream_chunk(
        self, thread_id: str, handle: Any, text: str, metadata: dict[str, Any]
    ) -> Any:
        body = truncate(to_slack_mrkdwn(text) + STREAM_SUFFIX, MESSAGE_LIMIT)
        if handle is None:
            response = await self._post(thread_id, body, metadata.get("thread_ts"))
            return response["ts"]
        await self._update(thread_id, handle, body)
        return handle

    async def send_stream_end(
        self, thread_id: str, text: str, metadata: dict[str, Any], handle: Any = None
    ) -> None:
        if handle is None:
            await self.send_response(thread_id, text, metadata)
            return

        chunks = split_text(to_slack_mrkdwn(text), MESSAGE_LIMIT)
        await self._update(thread_id, handle, chunks[0])
        for chunk in chunks[1:]:
            await self._post(thread_id, chunk, metadata.get("thread_ts"))

    async def _post(self, channel: str, text: str, thread_ts: str | None):
        return await self._deliver(
            lambda: self.client.chat_postMessage(
                channel=channel, text=text, thread_ts=thread_ts, mrkdwn=True
            )
        )

    async def _update(self, channel: str, ts: str, text: str):
        return await self._deliver(
            lambda: self.client.chat_update(channel=channel, ts=ts, text=text)
        )
