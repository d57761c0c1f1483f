"""Tests for chatgate/channels/discord.py"""

import json
import time

import httpx
import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from chatgate.channels.base import StreamingResponder
from chatgate.channels.discord import DISCORD_API, DiscordAdapter
from chatgate.channels.errors import RateLimitError
from chatgate.channels.models import WebhookRequest
from tests.conftest import make_channel_config


class FakeDiscordApi:
    """Records REST calls and answers them with canned responses."""

    def __init__(self):
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "GET":
            return httpx.Response(200, content=b"file-bytes")
        return httpx.Response(200, json={"id": "m1"})

    def calls(self):
        return [(r.method, r.url.path) for r in self.requests]


@pytest.fixture
def signing_key():
    return Ed25519PrivateKey.generate()


@pytest.fixture
def api():
    return FakeDiscordApi()


@pytest.fixture
def adapter(signing_key, api):
    public_key = signing_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw).hex()
    http = httpx.AsyncClient(base_url=DISCORD_API, transport=httpx.MockTransport(api))
    return DiscordAdapter(
        make_channel_config(id="discord-main", type="discord"),
        bot_token="bot-token",
        application_id="app-1",
        public_key=public_key,
        http=http,
    )


def signed_request(signing_key, payload):
    body = json.dumps(payload).encode()
    timestamp = str(int(time.time()))
    signature = signing_key.sign(timestamp.encode() + body).hex()
    return WebhookRequest(
        method="POST",
        path="/discord/webhook",
        headers={"X-Signature-Ed25519": signature, "X-Signature-Timestamp": timestamp},
        body=body,
    )


def slash_command(**overrides):
    payload = {
        "type": 2,
        "id": "int-1",
        "token": "tok-1",
        "channel_id": "chan-1",
        "guild_id": "guild-1",
        "member": {"user": {"id": "user-1"}},
        "data": {
            "name": "ask",
            "options": [{"name": "question", "value": "why is the sky blue"}],
        },
    }
    payload.update(overrides)
    return payload


class TestReceive:
    def test_not_a_streaming_responder(self, adapter):
        assert not isinstance(adapter, StreamingResponder)

    @pytest.mark.asyncio
    async def test_ping_returns_pong(self, adapter, signing_key):
        message = await adapter.receive(signed_request(signing_key, {"type": 1}))

        assert message.pong
        assert message.is_handshake

    @pytest.mark.asyncio
    async def test_bad_signature_rejected(self, adapter):
        other_key = Ed25519PrivateKey.generate()
        assert await adapter.receive(signed_request(other_key, {"type": 1})) is None

    @pytest.mark.asyncio
    async def test_missing_signature_rejected(self, adapter):
        request = WebhookRequest(method="POST", path="/discord/webhook", body=b'{"type": 1}')
        assert await adapter.receive(request) is None

    @pytest.mark.asyncio
    async def test_tampered_body_rejected(self, adapter, signing_key):
        request = signed_request(signing_key, {"type": 1})
        request.body = b'{"type": 2}'
        assert await adapter.receive(request) is None

    @pytest.mark.asyncio
    async def test_slash_command_uses_first_option(self, adapter, signing_key):
        message = await adapter.receive(signed_request(signing_key, slash_command()))

        assert message.text == "why is the sky blue"
        assert message.thread_id == "chan-1"
        assert message.sender_id == "user-1"
        assert message.is_group
        assert message.metadata["is_interaction"] is True
        assert message.metadata["interaction_token"] == "tok-1"

    @pytest.mark.asyncio
    async def test_slash_command_without_options_uses_name(self, adapter, signing_key):
        payload = slash_command(data={"name": "status"}, guild_id=None, user={"id": "u2"})
        payload.pop("member")

        message = await adapter.receive(signed_request(signing_key, payload))

        assert message.text == "status"
        assert message.sender_id == "u2"
        assert not message.is_group

    @pytest.mark.asyncio
    async def test_forwarded_message(self, adapter, signing_key, api):
        payload = {
            "t": "MESSAGE_CREATE",
            "d": {
                "id": "msg-9",
                "channel_id": "chan-2",
                "content": "look at this",
                "author": {"id": "user-3"},
                "attachments": [
                    {
                        "url": "https://cdn.discordapp.com/a.png",
                        "filename": "a.png",
                        "content_type": "image/png",
                    }
                ],
            },
        }

        message = await adapter.receive(signed_request(signing_key, payload))

        assert message.text == "look at this"
        assert message.attachments[0].data == b"file-bytes"
        assert message.attachments[0].category == "image"
        assert message.metadata["is_interaction"] is False

    @pytest.mark.asyncio
    async def test_bot_authors_ignored(self, adapter, signing_key):
        payload = {
            "t": "MESSAGE_CREATE",
            "d": {"channel_id": "c", "content": "beep", "author": {"id": "b", "bot": True}},
        }
        assert await adapter.receive(signed_request(signing_key, payload)) is None

    @pytest.mark.asyncio
    async def test_denied_sender_attachments_not_downloaded(self, signing_key, api):
        public_key = signing_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw).hex()
        adapter = DiscordAdapter(
            make_channel_config(
                id="discord-main", type="discord", policies={"dm": "allowlist", "allow_from": ["1"]}
            ),
            bot_token="bot-token",
            application_id="app-1",
            public_key=public_key,
            http=httpx.AsyncClient(base_url=DISCORD_API, transport=httpx.MockTransport(api)),
        )
        payload = {
            "t": "MESSAGE_CREATE",
            "d": {
                "channel_id": "chan-2",
                "content": "look",
                "author": {"id": "user-3"},
                "attachments": [
                    {"url": "https://cdn.discordapp.com/a.png", "content_type": "image/png"}
                ],
            },
        }

        assert await adapter.receive(signed_request(signing_key, payload)) is None
        assert api.requests == []


class TestSend:
    @pytest.mark.asyncio
    async def test_channel_reply(self, adapter, api):
        await adapter.send_response("chan-2", "# Title\nbody", {"is_interaction": False})

        assert api.calls() == [("POST", "/api/v10/channels/chan-2/messages")]
        assert json.loads(api.requests[0].content) == {"content": "**Title**\nbody"}

    @pytest.mark.asyncio
    async def test_long_channel_reply_split(self, adapter, api):
        await adapter.send_response("chan-2", "word " * 1000, {})

        assert len(api.requests) == 3
        for request in api.requests:
            assert len(json.loads(request.content)["content"]) <= 2000

    @pytest.mark.asyncio
    async def test_interaction_reply_edits_original(self, adapter, api):
        metadata = {"is_interaction": True, "interaction_token": "tok-1"}

        await adapter.send_response("chan-1", "answer", metadata)

        assert api.calls() == [("PATCH", "/api/v10/webhooks/app-1/tok-1/messages/@original")]

    @pytest.mark.asyncio
    async def test_interaction_acknowledge_defers(self, adapter, api):
        metadata = {
            "is_interaction": True,
            "interaction_id": "int-1",
            "interaction_token": "tok-1",
        }

        await adapter.acknowledge(metadata)

        assert api.calls() == [("POST", "/api/v10/interactions/int-1/tok-1/callback")]
        assert json.loads(api.requests[0].content) == {"type": 5}

    @pytest.mark.asyncio
    async def test_rate_limit_surfaces_after_retries(self, signing_key):
        def always_429(request):
            return httpx.Response(429, headers={"retry-after": "0"}, json={"message": "slow"})

        http = httpx.AsyncClient(base_url=DISCORD_API, transport=httpx.MockTransport(always_429))
        adapter = DiscordAdapter(
            make_channel_config(id="d", type="discord", streaming={"max_retries": 0}),
            bot_token="t",
            application_id="a",
            public_key="00" * 32,
            http=http,
        )

        with pytest.raises(RateLimitError):
            await adapter.send_response("chan", "hi", {})
