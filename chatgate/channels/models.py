"""
Channel data models.

Dataclasses shared by every adapter, the registry, the dispatch pipeline
and the WebSocket gateway. Field names are snake_case; ``from_dict``
constructors also accept the camelCase keys used by older config files.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal


AttachmentCategory = Literal["image", "document"]
DmPolicy = Literal["open", "allowlist"]
GroupPolicy = Literal["open", "allowlist", "disabled"]

DEFAULT_STREAM_INTERVAL_MS = 1500
DEFAULT_MAX_RETRIES = 3


def _pick(data: dict[str, Any], *keys: str, default: Any = None) -> Any:
    """Return the first key present in data (snake_case first, then camelCase)."""
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


@dataclass
class Attachment:
    """Binary payload extracted from an inbound platform message."""

    category: AttachmentCategory
    mime_type: str
    data: bytes
    filename: str | None = None

    @property
    def size(self) -> int:
        return len(self.data)

    def to_dict(self) -> dict[str, Any]:
        # Raw bytes stay out of serialized form
        return {
            "category": self.category,
            "mime_type": self.mime_type,
            "filename": self.filename,
            "size": self.size,
        }


@dataclass
class NormalizedMessage:
    """
    Platform-independent inbound message.

    A handshake carries either ``challenge`` (answered verbatim as text) or
    ``pong`` (answered with ``{"type": 1}``) and never reaches the agent.
    Every other message has non-empty ``text``.
    """

    thread_id: str = ""
    text: str = ""
    attachments: list[Attachment] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    challenge: str | None = None
    pong: bool = False

    @classmethod
    def handshake_challenge(cls, value: str) -> NormalizedMessage:
        return cls(challenge=value)

    @classmethod
    def handshake_pong(cls) -> NormalizedMessage:
        return cls(pong=True)

    @property
    def is_handshake(self) -> bool:
        return self.challenge is not None or self.pong

    @property
    def sender_id(self) -> str | None:
        value = self.metadata.get("sender_id")
        return str(value) if value is not None else None

    @property
    def is_group(self) -> bool:
        return bool(self.metadata.get("is_group", False))

    def to_dict(self) -> dict[str, Any]:
        return {
            "thread_id": self.thread_id,
            "text": self.text,
            "attachments": [a.to_dict() for a in self.attachments],
            "metadata": self.metadata,
            "challenge": self.challenge,
            "pong": self.pong,
        }


@dataclass(frozen=True)
class ChannelPolicies:
    """Who may talk to the agent on a channel."""

    dm: DmPolicy = "open"
    group: GroupPolicy = "open"
    allow_from: tuple[str, ...] = ()
    group_allow_from: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChannelPolicies:
        return cls(
            dm=data.get("dm") or "open",
            group=data.get("group") or "open",
            allow_from=tuple(str(s) for s in _pick(data, "allow_from", "allowFrom", default=[])),
            group_allow_from=tuple(
                str(s) for s in _pick(data, "group_allow_from", "groupAllowFrom", default=[])
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "dm": self.dm,
            "group": self.group,
            "allow_from": list(self.allow_from),
            "group_allow_from": list(self.group_allow_from),
        }


@dataclass(frozen=True)
class StreamingConfig:
    enabled: bool = False
    update_interval_ms: int = DEFAULT_STREAM_INTERVAL_MS
    max_retries: int = DEFAULT_MAX_RETRIES

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> StreamingConfig:
        data = data or {}
        return cls(
            enabled=bool(data.get("enabled", False)),
            update_interval_ms=int(
                _pick(
                    data,
                    "update_interval_ms",
                    "updateIntervalMs",
                    default=DEFAULT_STREAM_INTERVAL_MS,
                )
            )
            or DEFAULT_STREAM_INTERVAL_MS,
            max_retries=int(_pick(data, "max_retries", "maxRetries", default=DEFAULT_MAX_RETRIES)),
        )


@dataclass(frozen=True)
class ChannelConfig:
    """
    One configured channel instance.

    ``config`` holds adapter-specific string settings, typically the names
    of environment variables that contain the platform credentials.
    ``agent`` optionally routes every message on the channel to a named
    sub-agent.
    """

    id: str
    type: str
    webhook_path: str
    enabled: bool = True
    policies: ChannelPolicies | None = None
    streaming: StreamingConfig = field(default_factory=StreamingConfig)
    agent: str | None = None
    config: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChannelConfig:
        channel_id = str(data["id"])
        channel_type = str(data["type"])
        webhook_path = _pick(
            data, "webhook_path", "webhookPath", default=f"/{channel_type}/webhook"
        )
        if not webhook_path.startswith("/"):
            webhook_path = "/" + webhook_path

        policies = data.get("policies")
        return cls(
            id=channel_id,
            type=channel_type,
            webhook_path=webhook_path,
            enabled=bool(data.get("enabled", True)),
            policies=ChannelPolicies.from_dict(policies) if policies else None,
            streaming=StreamingConfig.from_dict(data.get("streaming")),
            agent=data.get("agent") or None,
            config={str(k): str(v) for k, v in (data.get("config") or {}).items()},
        )

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "enabled": self.enabled,
            "webhook_path": self.webhook_path,
        }


@dataclass
class PolicyResult:
    allowed: bool
    reason: str | None = None

    @classmethod
    def allow(cls) -> PolicyResult:
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: str) -> PolicyResult:
        return cls(allowed=False, reason=reason)


@dataclass
class PairingCode:
    code: str
    channel_id: str
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "channel_id": self.channel_id, "expires_at": self.expires_at}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PairingCode:
        return cls(
            code=str(data["code"]),
            channel_id=str(data.get("channel_id", "")),
            expires_at=float(data["expires_at"]),
        )


@dataclass
class WebhookRequest:
    """
    Raw inbound HTTP request as seen by an adapter.

    Header names are stored lower-cased so lookups are case-insensitive.
    """

    method: str
    path: str
    headers: dict[str, str] = field(default_factory=dict)
    query: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def __post_init__(self) -> None:
        self.method = self.method.upper()
        self.headers = {k.lower(): v for k, v in self.headers.items()}

    def header(self, name: str, default: str | None = None) -> str | None:
        return self.headers.get(name.lower(), default)

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        """Parse the body as JSON. Raises ValueError on malformed input."""
        return json.loads(self.body or b"null")


@dataclass
class GatewaySession:
    """One authenticated WebSocket client."""

    session_id: str
    connected_at: datetime
    connection: Any = field(repr=False, compare=False)
    thread_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "thread_id": self.thread_id,
            "connected_at": self.connected_at.isoformat(),
        }
