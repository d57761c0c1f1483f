"""
Platform-specific markdown conversion.

Agent replies are written in standard markdown. Each platform renders a
different dialect:
- Telegram: HTML subset (parse_mode=HTML)
- Slack: mrkdwn
- Discord: standard markdown without headers
- WhatsApp: *bold*, _italic_, ~strike~

Code spans and fenced blocks are lifted out before any other rewriting so
their contents are never reformatted.
"""

from __future__ import annotations

import html
import re


_FENCED_CODE = re.compile(r"```[\w+-]*\n([\s\S]*?)```")
_INLINE_CODE = re.compile(r"`([^`\n]+)`")
_TELEGRAM_TAG = re.compile(r"<(/?(b|i|s|u|code|pre|a)\b[^>]*)>")
_HTML_COMMENT = re.compile(r"<!--[\s\S]*?-->")
_LINK = re.compile(r"\[([^\]]+)\]\(([^)]+)\)")
_HEADER = re.compile(r"^#{1,6}\s+(.+)$", re.MULTILINE)
_BULLET = re.compile(r"^[ \t]*[-*][ \t]+", re.MULTILINE)


class _Placeholders:
    """Swap protected fragments for NUL-delimited tokens and back."""

    def __init__(self) -> None:
        self._items: list[str] = []

    def hold(self, content: str) -> str:
        token = f"\x00PH{len(self._items)}\x00"
        self._items.append(content)
        return token

    def restore(self, text: str) -> str:
        # Newest first: later fragments may wrap earlier tokens
        for index in reversed(range(len(self._items))):
            content = self._items[index]
            text = text.replace(f"\x00PH{index}\x00", content)
        return text


def to_telegram_html(text: str) -> str:
    """Convert markdown to the HTML subset accepted by Telegram."""
    if not text:
        return ""

    ph = _Placeholders()
    text = _HTML_COMMENT.sub("", text)
    text = _TELEGRAM_TAG.sub(lambda m: ph.hold(m.group(0)), text)
    text = _FENCED_CODE.sub(
        lambda m: ph.hold(f"<pre>{html.escape(m.group(1).rstrip(chr(10)), quote=False)}</pre>"),
        text,
    )
    text = _INLINE_CODE.sub(
        lambda m: ph.hold(f"<code>{html.escape(m.group(1), quote=False)}</code>"), text
    )

    text = html.escape(text, quote=False)

    text = _LINK.sub(r'<a href="\2">\1</a>', text)
    text = re.sub(r"\*\*(.+?)\*\*", r"<b>\1</b>", text)
    text = re.sub(r"__(.+?)__", r"<b>\1</b>", text)
    text = re.sub(r"(?<!\w)\*([^*\n<]+)\*(?!\w)", r"<i>\1</i>", text)
    text = re.sub(r"(?<!\w)_([^_\n<]+)_(?!\w)", r"<i>\1</i>", text)
    text = re.sub(r"~~(.+?)~~", r"<s>\1</s>", text)
    text = _HEADER.sub(r"<b>\1</b>", text)
    text = _BULLET.sub("• ", text)

    return ph.restore(text)


def to_slack_mrkdwn(text: str) -> str:
    """Convert markdown to Slack mrkdwn."""
    if not text:
        return ""

    ph = _Placeholders()
    text = _FENCED_CODE.sub(lambda m: ph.hold(f"```{m.group(1)}```"), text)
    text = _INLINE_CODE.sub(lambda m: ph.hold(m.group(0)), text)

    text = _LINK.sub(lambda m: ph.hold(f"<{m.group(2)}|{m.group(1)}>"), text)
    # Italic first so the single-asterisk bold produced below is left alone
    text = re.sub(r"(?<![\w*])\*([^*\n]+)\*(?![\w*])", r"_\1_", text)
    text = re.sub(r"\*\*(.+?)\*\*", lambda m: ph.hold(f"*{m.group(1)}*"), text)
    text = re.sub(r"__(.+?)__", lambda m: ph.hold(f"*{m.group(1)}*"), text)
    text = re.sub(r"~~(.+?)~~", r"~\1~", text)
    text = _HEADER.sub(lambda m: ph.hold(f"*{m.group(1)}*"), text)
    text = _BULLET.sub("• ", text)

    return ph.restore(text)


def to_discord(text: str) -> str:
    """Discord renders standard markdown; only headers need flattening."""
    return _HEADER.sub(r"**\1**", text or "")


def to_whatsapp(text: str) -> str:
    if not text:
        return ""

    ph = _Placeholders()
    text = _FENCED_CODE.sub(lambda m: ph.hold(f"```{m.group(1)}```"), text)
    text = _INLINE_CODE.sub(lambda m: ph.hold(m.group(0)), text)

    text = _LINK.sub(r"\1 (\2)", text)
    text = re.sub(r"(?<![\w*])\*([^*\n]+)\*(?![\w*])", r"_\1_", text)
    text = re.sub(r"\*\*(.+?)\*\*", lambda m: ph.hold(f"*{m.group(1)}*"), text)
    text = re.sub(r"~~(.+?)~~", r"~\1~", text)
    text = _HEADER.sub(lambda m: ph.hold(f"*{m.group(1)}*"), text)
    text = _BULLET.sub("• ", text)

    return ph.restore(text)


CONVERTERS = {
    "telegram": to_telegram_html,
    "slack": to_slack_mrkdwn,
    "discord": to_discord,
    "whatsapp": to_whatsapp,
}


def convert(text: str, channel_type: str) -> str:
    """Convert markdown for a channel type; unknown types pass through."""
    converter = CONVERTERS.get(channel_type)
    return converter(text) if converter else text


def strip_markdown(text: str) -> str:
    """Remove markdown formatting, leaving plain text."""
    result = _FENCED_CODE.sub(r"\1", text)
    result = re.sub(r"\*\*(.+?)\*\*", r"\1", result)
    result = re.sub(r"__(.+?)__", r"\1", result)
    result = re.sub(r"(?<!\*)\*(?!\*)(.+?)(?<!\*)\*(?!\*)", r"\1", result)
    result = re.sub(r"(?<!_)_(?!_)(.+?)(?<!_)_(?!_)", r"\1", result)
    result = re.sub(r"~~(.+?)~~", r"\1", result)
    result = _INLINE_CODE.sub(r"\1", result)
    result = _LINK.sub(r"\1", result)
    result = _HEADER.sub(r"\1", result)
    return result
