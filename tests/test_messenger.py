import json

import httpx
import pytest

from app.services.messenger import InstagramMessenger
from app.services.result import PERMANENT, TRANSIENT


def _messenger(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return InstagramMessenger("https://graph.test/v18.0", timeout_seconds=5, client=client)


class TestSend:
    @pytest.mark.asyncio
    async def test_comment_private_reply(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"recipient_id": "U1", "message_id": "mid.42"})

        result = await _messenger(handler).send("acc", "U1", "Hi!", access_token="tok", comment_id="c1")

        assert result.ok
        assert result.value == "mid.42"
        assert seen["url"].startswith("https://graph.test/v18.0/acc/messages")
        assert "access_token=tok" in seen["url"]
        assert seen["body"] == {"recipient": {"comment_id": "c1"}, "message": {"text": "Hi!"}}

    @pytest.mark.asyncio
    async def test_direct_message(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"message_id": "mid.1"})

        result = await _messenger(handler).send("acc", "U1", "Hi!", access_token="tok")

        assert result.ok
        assert seen["body"]["recipient"] == {"id": "U1"}

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self):
        result = await _messenger(lambda r: httpx.Response(502, text="bad gateway")).send(
            "acc", "U1", "Hi!", access_token="tok"
        )
        assert not result.ok
        assert result.error_code == TRANSIENT
        assert result.error == "http_502"

    @pytest.mark.asyncio
    async def test_rate_limit_is_transient(self):
        result = await _messenger(lambda r: httpx.Response(429)).send("acc", "U1", "Hi!", access_token="tok")
        assert result.error_code == TRANSIENT

    @pytest.mark.asyncio
    async def test_graph_throttle_code_is_transient(self):
        def handler(request):
            return httpx.Response(400, json={"error": {"code": 613, "message": "Calls exceeded"}})

        result = await _messenger(handler).send("acc", "U1", "Hi!", access_token="tok")
        assert result.error_code == TRANSIENT

    @pytest.mark.asyncio
    async def test_client_error_is_permanent(self):
        def handler(request):
            return httpx.Response(400, json={"error": {"code": 100, "message": "Invalid parameter"}})

        result = await _messenger(handler).send("acc", "U1", "Hi!", access_token="tok")
        assert result.error_code == PERMANENT

    @pytest.mark.asyncio
    async def test_non_object_error_body_is_permanent(self):
        for body in (["unexpected"], "oops", {"error": "Invalid OAuth access token"}):
            result = await _messenger(lambda r, body=body: httpx.Response(400, json=body)).send(
                "acc", "U1", "Hi!", access_token="tok"
            )
            assert not result.ok
            assert result.error_code == PERMANENT

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        result = await _messenger(handler).send("acc", "U1", "Hi!", access_token="tok")
        assert not result.ok
        assert result.error_code == TRANSIENT


class TestCommentReply:
    @pytest.mark.asyncio
    async def test_posts_public_reply(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "reply-1"})

        result = await _messenger(handler).reply_to_comment("c1", "Sent you a DM!", access_token="tok")

        assert result.ok
        assert result.value == "reply-1"
        assert "/c1/replies" in seen["url"]
        assert seen["body"] == {"message": "Sent you a DM!"}
