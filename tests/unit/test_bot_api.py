"""Tests for the Bot API client, its transformer chain, and the reply sender."""

from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from tgrelay.bot.api import BotApiClient, BotApiError, BotApiReplySender
from tgrelay.outbound.relay import ReplyKind
from tgrelay.outbound.rpc import InputFile, RpcTransformer
from tgrelay.retry import BackoffPolicy, RetryFailedError
from tests.conftest import make_account

FAST = BackoffPolicy(initial_delay=0.0, max_delay=0.0, jitter=0.0, max_attempts=2)


class _Telegram:
    """Fake api.telegram.org keyed by method name."""

    def __init__(self, responses: dict[str, httpx.Response]) -> None:
        self.responses = responses
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        method = request.url.path.rsplit("/", 1)[-1]
        canned = self.responses.get(method)
        if canned is None:
            return httpx.Response(404, json={"ok": False})
        return httpx.Response(canned.status_code, headers=canned.headers, content=canned.content)


def _client(telegram: _Telegram, token: str | None = "TOKEN") -> BotApiClient:
    return BotApiClient(token, transport=httpx.MockTransport(telegram))


class TestTransformerChain:
    @pytest.mark.asyncio
    async def test_last_installed_runs_first(self) -> None:
        order: list[str] = []

        def tagging(tag: str):
            async def transformer(prev, method, payload, abort) -> Any:
                order.append(tag)
                return await prev(method, {**payload, tag: True}, abort)

            return transformer

        async def terminal(prev, method, payload, abort) -> Any:
            order.append("terminal")
            return {"ok": True, "result": payload}

        client = BotApiClient("t")
        client.use(terminal)
        client.use(tagging("inner"))
        client.use(tagging("outer"))
        result = await client.request("getMe")
        assert order == ["outer", "inner", "terminal"]
        assert result == {"outer": True, "inner": True}

    @pytest.mark.asyncio
    async def test_rpc_transformer_replaces_direct_call(self) -> None:
        seen: list[dict] = []

        def rpc_server(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={"ok": True, "result": {"id": 9, "username": "rpcbot"}})

        client = BotApiClient(None)
        client.use(RpcTransformer("http://rpc.test", transport=httpx.MockTransport(rpc_server)))
        identity = await client.init(policy=FAST)
        assert identity.username == "rpcbot"
        assert seen == [{"method": "getMe"}]


class TestDirectCalls:
    @pytest.mark.asyncio
    async def test_init_learns_identity(self) -> None:
        telegram = _Telegram({
            "getMe": httpx.Response(
                200, json={"ok": True, "result": {"id": 42, "username": "mybot", "first_name": "My"}},
            ),
        })
        client = _client(telegram)
        identity = await client.init(policy=FAST)
        assert identity.id == 42
        assert client.bot_info is identity
        assert telegram.requests[0].url.path == "/botTOKEN/getMe"

    @pytest.mark.asyncio
    async def test_init_fails_on_unauthorized(self) -> None:
        telegram = _Telegram({
            "getMe": httpx.Response(401, json={"ok": False, "description": "Unauthorized"}),
        })
        with pytest.raises(RetryFailedError) as exc_info:
            await _client(telegram).init(policy=FAST)
        assert exc_info.value.attempts == 1
        assert len(telegram.requests) == 1

    @pytest.mark.asyncio
    async def test_init_retries_server_errors(self) -> None:
        telegram = _Telegram({"getMe": httpx.Response(502, text="bad gateway")})
        with pytest.raises(RetryFailedError) as exc_info:
            await _client(telegram).init(policy=FAST)
        assert exc_info.value.attempts == 2
        assert len(telegram.requests) == 2

    @pytest.mark.asyncio
    async def test_missing_token(self) -> None:
        with pytest.raises(BotApiError, match="bot token not configured"):
            await BotApiClient(None).call("getMe")

    @pytest.mark.asyncio
    async def test_ok_false_raises(self) -> None:
        telegram = _Telegram({
            "sendMessage": httpx.Response(
                200, json={"ok": False, "error_code": 400, "description": "chat not found"},
            ),
        })
        with pytest.raises(BotApiError) as exc_info:
            await _client(telegram).request("sendMessage", {"chat_id": 1})
        assert exc_info.value.status_code == 400
        assert exc_info.value.description == "chat not found"

    @pytest.mark.asyncio
    async def test_set_webhook_payload(self) -> None:
        telegram = _Telegram({"setWebhook": httpx.Response(200, json={"ok": True, "result": True})})
        result = await _client(telegram).set_webhook(
            "https://bot.example.com/tgrelay", secret_token="s", allowed_updates=["message"],
        )
        assert result is True
        assert json.loads(telegram.requests[0].content) == {
            "url": "https://bot.example.com/tgrelay",
            "secret_token": "s",
            "allowed_updates": ["message"],
        }

    @pytest.mark.asyncio
    async def test_upload_goes_multipart(self) -> None:
        telegram = _Telegram({"sendPhoto": httpx.Response(200, json={"ok": True, "result": {}})})
        await _client(telegram).call(
            "sendPhoto", {"chat_id": 1, "photo": InputFile(b"png", filename="a.png")},
        )
        request = telegram.requests[0]
        assert request.headers["Content-Type"].startswith("multipart/form-data")
        assert b'filename="a.png"' in request.content


class TestBotApiReplySender:
    @pytest.mark.asyncio
    async def test_send_text_parses_result(self) -> None:
        telegram = _Telegram({
            "sendMessage": httpx.Response(
                200, json={"ok": True, "result": {"message_id": 5, "chat": {"id": 42}}},
            ),
        })
        sender = BotApiReplySender(_client(telegram))
        result = await sender.send_text(make_account(), 42, "hi", reply_to_message_id=3)
        assert (result.ok, result.message_id, result.chat_id) == (True, "5", "42")
        assert json.loads(telegram.requests[0].content) == {
            "chat_id": 42, "text": "hi", "parse_mode": "HTML", "reply_to_message_id": 3,
        }

    @pytest.mark.asyncio
    async def test_send_media_by_url(self) -> None:
        telegram = _Telegram({"sendVideo": httpx.Response(200, json={"ok": True, "result": {}})})
        sender = BotApiReplySender(_client(telegram))
        result = await sender.send_media(
            make_account(), 42, "https://cdn.test/v.mp4", kind=ReplyKind.VIDEO, caption="clip",
        )
        assert result.ok is True
        body = json.loads(telegram.requests[0].content)
        assert body["video"] == "https://cdn.test/v.mp4"
        assert body["caption"] == "clip"

    @pytest.mark.asyncio
    async def test_failures_become_results(self) -> None:
        telegram = _Telegram({"sendMessage": httpx.Response(403, json={"description": "blocked"})})
        result = await BotApiReplySender(_client(telegram)).send_text(make_account(), 42, "hi")
        assert result.ok is False
        assert "blocked" in (result.error or "")

    @pytest.mark.asyncio
    async def test_probe(self) -> None:
        ok = _Telegram({"getMe": httpx.Response(200, json={"ok": True, "result": {"id": 1}})})
        down = _Telegram({})
        account = make_account()
        assert (await BotApiReplySender(_client(ok)).probe(account)).ok is True
        failed = await BotApiReplySender(_client(down)).probe(account)
        assert failed.ok is False
        assert failed.webhook_path == "/tgrelay"
