"""
Shared httpx helpers for adapters that call platform REST APIs directly.

Failed responses are turned into DeliveryError (RateLimitError for 429)
so that the retry wrapper and the dispatch pipeline see one error shape
regardless of platform.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from chatgate.channels.errors import DeliveryError, RateLimitError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


def new_client(base_url: str = "", headers: dict[str, str] | None = None) -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url=base_url, headers=headers or {}, timeout=DEFAULT_TIMEOUT)


def raise_for_delivery(response: httpx.Response) -> None:
    if response.status_code < 400:
        return

    detail = response.text[:200]
    if response.status_code == 429:
        retry_after = None
        header = response.headers.get("retry-after")
        if header:
            try:
                retry_after = float(header)
            except ValueError:
                pass
        raise RateLimitError(f"Rate limited (429): {detail}", retry_after=retry_after)

    raise DeliveryError(
        f"{response.request.method} {response.request.url.path} failed "
        f"({response.status_code}): {detail}",
        status_code=response.status_code,
    )


async def request_json(client: httpx.AsyncClient, method: str, url: str, **kwargs: Any) -> Any:
    """Send a request and return the decoded JSON body (None when empty)."""
    response = await client.request(method, url, **kwargs)
    raise_for_delivery(response)
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        logger.debug("Non-JSON response from %s", url)
        return None


async def download_bytes(client: httpx.AsyncClient, url: str, **kwargs: Any) -> bytes:
    response = await client.get(url, **kwargs)
    raise_for_delivery(response)
    return response.content
