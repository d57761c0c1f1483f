"""
WhatsApp channel adapter (Meta Cloud API webhooks).

Subscription is confirmed with a GET carrying ``hub.mode=subscribe``,
``hub.verify_token`` and ``hub.challenge``; the challenge is echoed back.
Message deliveries are POSTed with ``X-Hub-Signature-256: sha256=<hex>``,
an HMAC of the raw body keyed by the app secret. When no app secret is
configured the signature check is skipped.

WhatsApp has no group chats for business numbers, so every message is a
direct message and the thread is the sender's phone number.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any

import httpx

from chatgate.channels.base import ChannelAdapter
from chatgate.channels.content.markdown import to_whatsapp
from chatgate.channels.content.splitter import CHANNEL_LIMITS, split_text
from chatgate.channels.errors import DeliveryError
from chatgate.channels.http import download_bytes, new_client, request_json
from chatgate.channels.models import Attachment, ChannelConfig, NormalizedMessage, WebhookRequest

logger = logging.getLogger(__name__)

GRAPH_API = "https://graph.facebook.com/v21.0"
MESSAGE_LIMIT = CHANNEL_LIMITS["whatsapp"]
SIGNATURE_PREFIX = "sha256="


class WhatsAppAdapter(ChannelAdapter):
    platform = "whatsapp"

    def __init__(
        self,
        config: ChannelConfig,
        phone_number_id: str,
        access_token: str,
        verify_token: str,
        app_secret: str | None = None,
        http: httpx.AsyncClient | None = None,
        pairing_store=None,
        transcriber=None,
    ):
        super().__init__(config, pairing_store=pairing_store, transcriber=transcriber)
        self.phone_number_id = phone_number_id
        self.verify_token = verify_token
        self.app_secret = app_secret
        self.http = http or new_client(
            GRAPH_API, headers={"Authorization": f"Bearer {access_token}"}
        )

    # ─────────────────────────────────────────────────────────────────────
    # Inbound
    # ─────────────────────────────────────────────────────────────────────

    def verify_signature(self, body: bytes, signature: str | None) -> bool:
        if not self.app_secret:
            return True
        if not signature or not signature.startswith(SIGNATURE_PREFIX):
            return False
        expected = hmac.new(self.app_secret.encode(), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(signature[len(SIGNATURE_PREFIX):], expected)

    async def receive(self, request: WebhookRequest) -> NormalizedMessage | None:
        if request.method == "GET":
            mode = request.query.get("hub.mode")
            token = request.query.get("hub.verify_token") or ""
            if mode == "subscribe" and self.verify_token and hmac.compare_digest(
                token.encode(), self.verify_token.encode()
            ):
                return NormalizedMessage.handshake_challenge(request.query.get("hub.challenge", ""))
            logger.warning("WhatsApp subscription verification failed on %s", self.channel_id)
            return None

        if not self.verify_signature(request.body, request.header("x-hub-signature-256")):
            logger.warning("WhatsApp signature verification failed on %s", self.channel_id)
            return None

        body = self._parse_json(request)
        if not isinstance(body, dict):
            return None

        try:
            value = body["entry"][0]["changes"][0]["value"]
            message = value["messages"][0]
        except (KeyError, IndexError, TypeError):
            # Status updates (sent/delivered/read) carry no messages
            return None

        try:
            return await self._normalize(message)
        except Exception as e:
            logger.error("Failed to process WhatsApp message on %s: %s", self.channel_id, e)
            return None

    async def _normalize(self, message: dict[str, Any]) -> NormalizedMessage | None:
        sender = str(message.get("from", ""))
        message_type = message.get("type")
        if message_type == "text":
            candidate = (message.get("text") or {}).get("body")
        else:
            candidate = (message.get(message_type) or {}).get("caption")
        if not self._policy_allows(sender, False, candidate):
            return None

        text = ""
        attachments: list[Attachment] = []

        if message_type == "text":
            text = (message.get("text") or {}).get("body") or ""

        elif message_type in ("audio", "voice"):
            media = message.get(message_type) or {}
            if self.transcriber is None or not media.get("id"):
                return None
            data, mime_type = await self.download_media(media["id"])
            text = await self._transcribe(data, mime_type, "audio.ogg") or ""

        elif message_type in ("image", "document"):
            media = message.get(message_type) or {}
            if media.get("id"):
                try:
                    data, mime_type = await self.download_media(media["id"])
                    attachments.append(
                        Attachment(
                            category=message_type,
                            mime_type=mime_type,
                            data=data,
                            filename=media.get("filename"),
                        )
                    )
                except Exception as e:
                    logger.error("Failed to download WhatsApp %s: %s", message_type, e)
            text = media.get("caption") or ""

        else:
            logger.debug("Ignoring WhatsApp message type %s", message_type)
            return None

        if not text:
            return None

        return NormalizedMessage(
            thread_id=sender,
            text=text,
            attachments=attachments,
            metadata={
                "from": sender,
                "message_id": message.get("id"),
                "phone_number_id": self.phone_number_id,
                "sender_id": sender,
                "is_group": False,
            },
        )

    async def download_media(self, media_id: str) -> tuple[bytes, str]:
        """Resolve a media id to its URL, then fetch the bytes."""
        meta = await request_json(self.http, "GET", f"/{media_id}") or {}
        url = meta.get("url")
        if not url:
            raise DeliveryError(f"No download URL for media {media_id}")
        data = await download_bytes(self.http, url)
        return data, meta.get("mime_type") or "application/octet-stream"

    # ─────────────────────────────────────────────────────────────────────
    # Outbound
    # ─────────────────────────────────────────────────────────────────────

    async def acknowledge(self, metadata: dict[str, Any]) -> None:
        message_id = metadata.get("message_id")
        if not message_id:
            return
        try:
            await request_json(
                self.http,
                "POST",
                f"/{self.phone_number_id}/messages",
                json={"messaging_product": "whatsapp", "status": "read", "message_id": message_id},
            )
        except Exception as e:
            logger.debug("WhatsApp mark-read failed: %s", e)

    async def send_response(self, thread_id: str, text: str, metadata: dict[str, Any]) -> None:
        for chunk in split_text(to_whatsapp(text), MESSAGE_LIMIT):
            payload = {
                "messaging_product": "whatsapp",
                "to": thread_id,
                "type": "text",
                "text": {"body": chunk},
            }
            await self._deliver(
                lambda payload=payload: request_json(
                    self.http, "POST", f"/{self.phone_number_id}/messages", json=payload
                )
            )

    async def aclose(self) -> None:
        await self.http.aclose()
