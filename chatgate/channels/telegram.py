"""
Telegram channel adapter (Bot API webhooks).

Inbound updates are posted by Telegram to the channel's webhook path with
the ``X-Telegram-Bot-Api-Secret-Token`` header set to the secret given to
``setWebhook``. Outbound calls go through python-telegram-bot's ``Bot``.

Supported inbound content: text, captions, photos and documents (as
attachments), voice and audio (transcribed when a transcriber is set).

Replies are converted to Telegram's HTML subset and split at 4096
characters. When streaming is enabled the reply is posted once and then
edited in place as text accumulates.
"""

from __future__ import annotations

import hmac
import logging
import random
from typing import Any

from telegram import Bot
from telegram.constants import ChatAction, ParseMode
from telegram.error import BadRequest, RetryAfter

from chatgate.channels.base import (
    ChannelAdapter,
    StopIndicator,
    StreamingResponder,
    start_repeating_indicator,
)
from chatgate.channels.content.markdown import to_telegram_html
from chatgate.channels.content.splitter import CHANNEL_LIMITS, split_text, truncate
from chatgate.channels.errors import RateLimitError
from chatgate.channels.models import Attachment, ChannelConfig, NormalizedMessage, WebhookRequest

logger = logging.getLogger(__name__)

SECRET_HEADER = "x-telegram-bot-api-secret-token"
MESSAGE_LIMIT = CHANNEL_LIMITS["telegram"]
STREAM_SUFFIX = "..."
ACK_REACTION = "👍"

# Telegram shows "typing" for ~5 s; refresh a little before it lapses
TYPING_MIN_S = 5.5
TYPING_MAX_S = 8.0

GROUP_CHAT_TYPES = ("group", "supergroup")


class TelegramAdapter(ChannelAdapter, StreamingResponder):
    platform = "telegram"

    def __init__(
        self,
        config: ChannelConfig,
        bot_token: str,
        webhook_secret: str | None,
        chat_id: str | None = None,
        verification_code: str | None = None,
        bot: Bot | None = None,
        pairing_store=None,
        transcriber=None,
    ):
        super().__init__(config, pairing_store=pairing_store, transcriber=transcriber)
        self.webhook_secret = webhook_secret
        self.chat_id = str(chat_id) if chat_id else None
        self.verification_code = verification_code
        self.bot = bot or Bot(bot_token)

    @property
    def supports_chunked_delivery(self) -> bool:
        return self.config.streaming.enabled

    # ─────────────────────────────────────────────────────────────────────
    # Inbound
    # ─────────────────────────────────────────────────────────────────────

    async def receive(self, request: WebhookRequest) -> NormalizedMessage | None:
        if not self.webhook_secret:
            logger.error(
                "Telegram webhook secret not configured for %s, rejecting", self.channel_id
            )
            return None
        header_secret = request.header(SECRET_HEADER) or ""
        if not hmac.compare_digest(header_secret.encode(), self.webhook_secret.encode()):
            logger.warning("Telegram webhook secret mismatch on %s", self.channel_id)
            return None

        update = self._parse_json(request)
        if not isinstance(update, dict):
            return None
        message = update.get("message") or update.get("edited_message")
        if not message or not message.get("chat"):
            return None

        chat_id = str(message["chat"]["id"])
        text = message.get("text") or ""

        # Lets an operator discover the chat id before restricting to it
        if self.verification_code and text == self.verification_code:
            await self._send_text(chat_id, f"Your chat ID:\n<code>{chat_id}</code>")
            return None

        if self.chat_id and chat_id != self.chat_id:
            logger.debug("Ignoring Telegram chat %s (not configured chat)", chat_id)
            return None

        sender_id = str((message.get("from") or {}).get("id", ""))
        is_group = message["chat"].get("type") in GROUP_CHAT_TYPES
        if not self._policy_allows(sender_id, is_group, text or message.get("caption")):
            return None

        try:
            return await self._normalize(message, chat_id, text, sender_id, is_group)
        except Exception as e:
            logger.error("Failed to process Telegram update on %s: %s", self.channel_id, e)
            return None

    async def _normalize(
        self,
        message: dict[str, Any],
        chat_id: str,
        text: str,
        sender_id: str,
        is_group: bool,
    ) -> NormalizedMessage | None:
        attachments: list[Attachment] = []

        for kind in ("voice", "audio"):
            media = message.get(kind)
            if not media or text:
                continue
            if self.transcriber is None:
                await self._send_text(
                    chat_id, f"{kind.capitalize()} messages are not supported on this channel."
                )
                return None
            try:
                data = await self._download(media["file_id"])
                mime_type = media.get("mime_type") or "audio/ogg"
                text = await self._transcribe(data, mime_type, f"{kind}.ogg") or ""
            except Exception as e:
                logger.error("Failed to transcribe Telegram %s: %s", kind, e)
                await self._send_text(
                    chat_id, f"Sorry, I could not transcribe your {kind} message."
                )
                return None

        photos = message.get("photo") or []
        if photos:
            try:
                # Sizes are listed smallest first
                data = await self._download(photos[-1]["file_id"])
                attachments.append(Attachment(category="image", mime_type="image/jpeg", data=data))
            except Exception as e:
                logger.error("Failed to download Telegram photo: %s", e)

        document = message.get("document")
        if document:
            try:
                data = await self._download(document["file_id"])
                attachments.append(
                    Attachment(
                        category="document",
                        mime_type=document.get("mime_type") or "application/octet-stream",
                        data=data,
                        filename=document.get("file_name"),
                    )
                )
            except Exception as e:
                logger.error("Failed to download Telegram document: %s", e)

        if not text:
            text = message.get("caption") or ""
        if not text:
            return None

        return NormalizedMessage(
            thread_id=chat_id,
            text=text,
            attachments=attachments,
            metadata={
                "message_id": message.get("message_id"),
                "chat_id": chat_id,
                "sender_id": sender_id,
                "is_group": is_group,
            },
        )

    async def _download(self, file_id: str) -> bytes:
        tg_file = await self.bot.get_file(file_id)
        return bytes(await tg_file.download_as_bytearray())

    # ─────────────────────────────────────────────────────────────────────
    # Outbound
    # ─────────────────────────────────────────────────────────────────────

    async def acknowledge(self, metadata: dict[str, Any]) -> None:
        try:
            await self.bot.set_message_reaction(
                chat_id=metadata["chat_id"],
                message_id=metadata["message_id"],
                reaction=ACK_REACTION,
            )
        except Exception as e:
            logger.debug("Telegram reaction failed: %s", e)

    def start_processing_indicator(self, metadata: dict[str, Any]) -> StopIndicator:
        chat_id = metadata.get("chat_id")
        if not chat_id:
            return super().start_processing_indicator(metadata)
        return start_repeating_indicator(
            lambda: self.bot.send_chat_action(chat_id=chat_id, action=ChatAction.TYPING),
            lambda: random.uniform(TYPING_MIN_S, TYPING_MAX_S),
            label=f"telegram-typing:{chat_id}",
        )

    async def send_response(self, thread_id: str, text: str, metadata: dict[str, Any]) -> None:
        await self._send_text(thread_id, to_telegram_html(text))

    async def send_stream_chunk(
        self, thread_id: str, handle: Any, text: str, metadata: dict[str, Any]
    ) -> Any:
        body = to_telegram_html(text) + STREAM_SUFFIX
        if handle is None:
            message = await self._call(
                lambda: self.bot.send_message(
                    chat_id=thread_id,
                    text=truncate(body, MESSAGE_LIMIT),
                    parse_mode=ParseMode.HTML,
                )
            )
            return message.message_id

        await self._edit(thread_id, handle, body)
        return handle

    async def send_stream_end(
        self, thread_id: str, text: str, metadata: dict[str, Any], handle: Any = None
    ) -> None:
        if handle is None:
            await self.send_response(thread_id, text, metadata)
            return

        html_text = to_telegram_html(text)
        if len(html_text) <= MESSAGE_LIMIT:
            await self._edit(thread_id, handle, html_text)
            return

        # Final text outgrew one message: the streamed message keeps the
        # first part and the rest follows as new messages
        chunks = split_text(html_text, MESSAGE_LIMIT)
        await self._edit(thread_id, handle, chunks[0])
        for chunk in chunks[1:]:
            await self._send_raw(thread_id, chunk)

    async def _send_text(self, chat_id: str, html_text: str) -> None:
        for chunk in split_text(html_text, MESSAGE_LIMIT):
            await self._send_raw(chat_id, chunk)

    async def _send_raw(self, chat_id: str, chunk: str) -> None:
        await self._call(
            lambda: self.bot.send_message(chat_id=chat_id, text=chunk, parse_mode=ParseMode.HTML)
        )

    async def _edit(self, chat_id: str, message_id: Any, html_text: str) -> None:
        try:
            await self._call(
                lambda: self.bot.edit_message_text(
                    text=truncate(html_text, MESSAGE_LIMIT),
                    chat_id=chat_id,
                    message_id=message_id,
                    parse_mode=ParseMode.HTML,
                )
            )
        except BadRequest as e:
            if "not modified" not in str(e).lower():
                raise

    async def _call(self, fn):
        async def attempt():
            try:
                return await fn()
            except RetryAfter as e:
                retry_after = e.retry_after
                if hasattr(retry_after, "total_seconds"):
                    retry_after = retry_after.total_seconds()
                raise RateLimitError(str(e), retry_after=retry_after) from e

        return await self._deliver(attempt)

    async def aclose(self) -> None:
        await self.bot.shutdown()
