"""
Interface to the conversational AI engine.

The gateway never talks to a model directly; it hands text to an object
implementing AgentEngine. ``chat_stream`` yields events of which only
``type == "text"`` events with non-empty text are forwarded to users.
Engines may yield StreamEvent instances or plain dicts with the same keys.
"""

from __future__ import annotations

import importlib
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from chatgate.channels.models import Attachment


@dataclass
class StreamEvent:
    type: str
    text: str | None = None


@runtime_checkable
class AgentEngine(Protocol):
    async def chat(
        self,
        thread_id: str,
        text: str,
        attachments: list[Attachment],
        options: dict[str, Any],
    ) -> str: ...

    async def chat_with_agent(
        self,
        agent_name: str,
        thread_id: str,
        text: str,
        attachments: list[Attachment],
        options: dict[str, Any],
    ) -> str: ...

    def chat_stream(
        self,
        thread_id: str,
        text: str,
        attachments: list[Attachment],
        options: dict[str, Any],
    ) -> AsyncIterator[StreamEvent | dict[str, Any]]: ...


def text_delta(event: StreamEvent | dict[str, Any]) -> str | None:
    """Return the text of a ``text`` event, or None for anything else."""
    if isinstance(event, dict):
        event_type, text = event.get("type"), event.get("text")
    else:
        event_type, text = getattr(event, "type", None), getattr(event, "text", None)
    if event_type == "text" and text:
        return text
    return None


def load_engine(target: str) -> AgentEngine:
    """
    Import an engine from a ``"package.module:attribute"`` string.

    If the attribute is a class or factory it is called with no arguments.
    """
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Engine must be given as 'module:attribute', got {target!r}")
    obj = getattr(importlib.import_module(module_name), attr)
    engine = obj() if isinstance(obj, type) or not isinstance(obj, AgentEngine) else obj
    if not isinstance(engine, AgentEngine):
        raise TypeError(f"{target} does not provide chat, chat_with_agent and chat_stream")
    return engine
