"""
Discord channel adapter (interactions endpoint + forwarded messages).

Discord signs every request to the interactions endpoint with Ed25519 over
``timestamp + body`` using the application's public key. Type 1 (PING) is
answered with a pong handshake; type 2 (slash command) becomes a message
whose text is the first option value or the command name.

Plain channel messages are not delivered by Discord over HTTP; a relay
that listens on the Discord gateway may forward ``MESSAGE_CREATE``
dispatches (``{"t": "MESSAGE_CREATE", "d": {...}}``) to the same path,
signed the same way.

All outbound traffic uses the REST API directly through httpx.
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from chatgate.channels.base import ChannelAdapter, StopIndicator, start_repeating_indicator
from chatgate.channels.content.markdown import to_discord
from chatgate.channels.content.splitter import CHANNEL_LIMITS, split_text
from chatgate.channels.http import download_bytes, new_client, request_json
from chatgate.channels.models import Attachment, ChannelConfig, NormalizedMessage, WebhookRequest

logger = logging.getLogger(__name__)

DISCORD_API = "https://discord.com/api/v10"
MESSAGE_LIMIT = CHANNEL_LIMITS["discord"]
ACK_REACTION = "👀"

# Typing lasts ~10 s on Discord
TYPING_INTERVAL_S = 8.0

INTERACTION_PING = 1
INTERACTION_APPLICATION_COMMAND = 2
CALLBACK_DEFERRED_CHANNEL_MESSAGE = 5


class DiscordAdapter(ChannelAdapter):
    platform = "discord"

    def __init__(
        self,
        config: ChannelConfig,
        bot_token: str,
        application_id: str,
        public_key: str,
        http: httpx.AsyncClient | None = None,
        pairing_store=None,
        transcriber=None,
    ):
        super().__init__(config, pairing_store=pairing_store, transcriber=transcriber)
        self.application_id = application_id
        self.public_key = public_key
        self.http = http or new_client(
            DISCORD_API, headers={"Authorization": f"Bot {bot_token}"}
        )

    # ─────────────────────────────────────────────────────────────────────
    # Inbound
    # ─────────────────────────────────────────────────────────────────────

    def verify_signature(self, body: bytes, signature: str | None, timestamp: str | None) -> bool:
        if not signature or not timestamp or not self.public_key:
            return False
        try:
            key = Ed25519PublicKey.from_public_bytes(bytes.fromhex(self.public_key))
            key.verify(bytes.fromhex(signature), timestamp.encode() + body)
            return True
        except (InvalidSignature, ValueError):
            return False

    async def receive(self, request: WebhookRequest) -> NormalizedMessage | None:
        if not self.verify_signature(
            request.body,
            request.header("x-signature-ed25519"),
            request.header("x-signature-timestamp"),
        ):
            logger.warning("Discord signature verification failed on %s", self.channel_id)
            return None

        body = self._parse_json(request)
        if not isinstance(body, dict):
            return None

        if body.get("type") == INTERACTION_PING:
            return NormalizedMessage.handshake_pong()

        try:
            if body.get("type") == INTERACTION_APPLICATION_COMMAND:
                return self._from_interaction(body)
            if body.get("t") == "MESSAGE_CREATE":
                return await self._from_message(body.get("d") or {})
        except Exception as e:
            logger.error("Failed to process Discord payload on %s: %s", self.channel_id, e)
        return None

    def _from_interaction(self, body: dict[str, Any]) -> NormalizedMessage | None:
        data = body.get("data") or {}
        options = data.get("options") or []
        text = str(options[0].get("value") or "") if options else ""
        text = text or data.get("name") or ""
        if not text:
            return None

        user = (body.get("member") or {}).get("user") or body.get("user") or {}
        sender_id = str(user.get("id", ""))
        is_group = bool(body.get("guild_id"))
        if not self._policy_allows(sender_id, is_group, text):
            return None

        return NormalizedMessage(
            thread_id=str(body.get("channel_id", "")),
            text=text,
            metadata={
                "channel_id": body.get("channel_id"),
                "message_id": body.get("id"),
                "guild_id": body.get("guild_id"),
                "interaction_id": body.get("id"),
                "interaction_token": body.get("token"),
                "is_interaction": True,
                "sender_id": sender_id,
                "is_group": is_group,
            },
        )

    async def _from_message(self, msg: dict[str, Any]) -> NormalizedMessage | None:
        author = msg.get("author") or {}
        if author.get("bot"):
            return None

        text = msg.get("content") or ""
        sender_id = str(author.get("id", ""))
        is_group = bool(msg.get("guild_id"))
        if not self._policy_allows(sender_id, is_group, text):
            return None

        attachments: list[Attachment] = []

        for att in msg.get("attachments") or []:
            content_type = att.get("content_type") or "application/octet-stream"
            try:
                if content_type.startswith("audio/"):
                    if self.transcriber is None:
                        continue
                    data = await download_bytes(self.http, att["url"])
                    transcript = await self._transcribe(
                        data, content_type, att.get("filename") or "audio.ogg"
                    )
                    if transcript:
                        text = f"{text}\n{transcript}" if text else transcript
                else:
                    data = await download_bytes(self.http, att["url"])
                    attachments.append(
                        Attachment(
                            category="image" if content_type.startswith("image/") else "document",
                            mime_type=content_type,
                            data=data,
                            filename=att.get("filename"),
                        )
                    )
            except Exception as e:
                logger.error("Failed to download Discord attachment: %s", e)

        if not text:
            return None

        return NormalizedMessage(
            thread_id=str(msg.get("channel_id", "")),
            text=text,
            attachments=attachments,
            metadata={
                "channel_id": msg.get("channel_id"),
                "message_id": msg.get("id"),
                "guild_id": msg.get("guild_id"),
                "is_interaction": False,
                "sender_id": sender_id,
                "is_group": is_group,
            },
        )

    # ─────────────────────────────────────────────────────────────────────
    # Outbound
    # ─────────────────────────────────────────────────────────────────────

    async def acknowledge(self, metadata: dict[str, Any]) -> None:
        try:
            if metadata.get("is_interaction"):
                # Shows "Bot is thinking..." until @original is edited
                await request_json(
                    self.http,
                    "POST",
                    f"/interactions/{metadata['interaction_id']}/"
                    f"{metadata['interaction_token']}/callback",
                    json={"type": CALLBACK_DEFERRED_CHANNEL_MESSAGE},
                )
            else:
                emoji = quote(ACK_REACTION)
                await request_json(
                    self.http,
                    "PUT",
                    f"/channels/{metadata['channel_id']}/messages/"
                    f"{metadata['message_id']}/reactions/{emoji}/@me",
                )
        except Exception as e:
            logger.debug("Discord acknowledge failed: %s", e)

    def start_processing_indicator(self, metadata: dict[str, Any]) -> StopIndicator:
        channel_id = metadata.get("channel_id")
        if metadata.get("is_interaction") or not channel_id:
            return super().start_processing_indicator(metadata)
        return start_repeating_indicator(
            lambda: request_json(self.http, "POST", f"/channels/{channel_id}/typing"),
            lambda: TYPING_INTERVAL_S,
            label=f"discord-typing:{channel_id}",
        )

    async def send_response(self, thread_id: str, text: str, metadata: dict[str, Any]) -> None:
        chunks = split_text(to_discord(text), MESSAGE_LIMIT)

        if metadata.get("is_interaction"):
            webhook = f"/webhooks/{self.application_id}/{metadata['interaction_token']}"
            await self._deliver(
                lambda: request_json(
                    self.http, "PATCH", f"{webhook}/messages/@original", json={"content": chunks[0]}
                )
            )
            for chunk in chunks[1:]:
                await self._deliver(
                    lambda chunk=chunk: request_json(
                        self.http, "POST", webhook, json={"content": chunk}
                    )
                )
            return

        for chunk in chunks:
            await self._deliver(
                lambda chunk=chunk: request_json(
                    self.http, "POST", f"/channels/{thread_id}/messages", json={"content": chunk}
                )
            )

    async def aclose(self) -> None:
        await self.http.aclose()
