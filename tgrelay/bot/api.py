"""Minimal Bot API client with a transformer chain.

Calls go through installed transformers (outermost last installed) before
reaching the direct HTTPS call to ``api.telegram.org``. Installing an
:class:`~tgrelay.outbound.rpc.RpcTransformer` turns the client into an RPC
client without changing any caller.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx

from tgrelay.config.accounts import ResolvedAccount
from tgrelay.outbound.relay import (
    DEFAULT_PARSE_MODE,
    ProbeResult,
    ReplyKind,
    SendResult,
    build_text_payload,
    is_local_path,
    parse_send_response,
)
from tgrelay.outbound.rpc import ApiCall, InputFile, run_with_cancel_scope
from tgrelay.retry import BackoffPolicy, retry_async

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"

Transformer = Callable[[ApiCall, str, dict[str, Any], "asyncio.Event | None"], Awaitable[Any]]


class BotApiError(Exception):
    """Telegram answered ``ok: false`` or a non-2xx status."""

    def __init__(self, method: str, status_code: int, description: str) -> None:
        self.method = method
        self.status_code = status_code
        self.description = description
        super().__init__(f"{method} failed: {status_code} {description}")


@dataclass(frozen=True)
class BotIdentity:
    id: int
    username: str | None
    first_name: str | None = None


def _form_value(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class BotApiClient:
    def __init__(
        self,
        token: str | None,
        api_base: str = TELEGRAM_API_BASE,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._token = token
        self._api_base = api_base.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._transformers: list[Transformer] = []
        self.bot_info: BotIdentity | None = None

    def use(self, transformer: Transformer) -> None:
        self._transformers.append(transformer)

    async def call(
        self,
        method: str,
        payload: dict[str, Any] | None = None,
        abort: asyncio.Event | None = None,
    ) -> Any:
        """Run ``method`` through the transformer chain; returns the raw response JSON."""
        chain: ApiCall = self._direct_call
        for transformer in self._transformers:
            chain = _bind(transformer, chain)
        return await chain(method, payload or {}, abort)

    async def request(
        self,
        method: str,
        payload: dict[str, Any] | None = None,
        abort: asyncio.Event | None = None,
    ) -> Any:
        """Like :meth:`call` but unwraps ``result`` and raises on ``ok: false``."""
        response = await self.call(method, payload, abort)
        if not isinstance(response, dict) or response.get("ok") is False:
            body = response if isinstance(response, dict) else {}
            raise BotApiError(
                method,
                int(body.get("error_code") or 0),
                str(body.get("description") or "unexpected response"),
            )
        return response.get("result")

    async def _direct_call(
        self, method: str, payload: dict[str, Any], abort: asyncio.Event | None,
    ) -> Any:
        if not self._token:
            raise BotApiError(method, 0, "bot token not configured")
        url = f"{self._api_base}/bot{self._token}/{method}"
        return await run_with_cancel_scope(self._post(url, method, payload), self._timeout, abort)

    async def _post(self, url: str, method: str, payload: dict[str, Any]) -> Any:
        uploads = {k: v for k, v in payload.items() if isinstance(v, InputFile)}
        async with httpx.AsyncClient(transport=self._transport) as client:
            if uploads:
                files = {
                    key: (upload.filename or key, await upload.read(client))
                    for key, upload in uploads.items()
                }
                data = {
                    k: _form_value(v) for k, v in payload.items()
                    if k not in uploads and v is not None
                }
                resp = await client.post(url, data=data, files=files)
            else:
                resp = await client.post(url, json=payload)
        try:
            body = resp.json()
        except ValueError:
            body = None
        if not resp.is_success:
            description = body.get("description") if isinstance(body, dict) else None
            raise BotApiError(method, resp.status_code, str(description or resp.text[:200]))
        return body

    async def init(
        self,
        abort: asyncio.Event | None = None,
        policy: BackoffPolicy | None = None,
    ) -> BotIdentity:
        """Resolve the bot's own identity via ``getMe``; fatal if retries run out."""
        result = await retry_async(
            lambda: self.request("getMe", {}, abort),
            label="getMe",
            policy=policy,
            abort=abort,
        )
        self.bot_info = BotIdentity(
            id=int(result["id"]),
            username=result.get("username"),
            first_name=result.get("first_name"),
        )
        logger.info("bot initialized: @%s", self.bot_info.username)
        return self.bot_info

    async def set_webhook(
        self,
        url: str,
        secret_token: str | None = None,
        allowed_updates: list[str] | None = None,
    ) -> Any:
        payload: dict[str, Any] = {"url": url}
        if secret_token:
            payload["secret_token"] = secret_token
        if allowed_updates is not None:
            payload["allowed_updates"] = allowed_updates
        return await self.request("setWebhook", payload)


def _bind(transformer: Transformer, prev: ApiCall) -> ApiCall:
    async def bound(method: str, payload: dict[str, Any], abort: asyncio.Event | None) -> Any:
        return await transformer(prev, method, payload, abort)

    return bound


class BotApiReplySender:
    """Sends replies as Bot API calls (usually through the RPC transformer).

    Local files go out as :class:`InputFile` so the transformer can inline
    them; every failure is returned as ``SendResult(ok=False)``.
    """

    def __init__(self, client: BotApiClient) -> None:
        self.client = client

    async def _send(self, method: str, params: dict[str, Any], chat_id: int | str) -> SendResult:
        try:
            response = await self.client.call(method, params)
        except Exception as exc:
            logger.error("tgrelay %s via bot api failed: %s", method, exc)
            return SendResult(ok=False, error=str(exc) or type(exc).__name__)
        if isinstance(response, dict) and response.get("ok") is False:
            return SendResult(ok=False, error=str(response.get("description") or "ok=false"))
        return parse_send_response(response, chat_id)

    async def send_text(
        self,
        account: ResolvedAccount,
        chat_id: int | str,
        text: str,
        reply_to_message_id: int | None = None,
        message_thread_id: int | None = None,
        parse_mode: str | None = None,
        disable_notification: bool | None = None,
    ) -> SendResult:
        payload = build_text_payload(
            chat_id,
            text,
            reply_to_message_id=reply_to_message_id,
            message_thread_id=message_thread_id,
            parse_mode=parse_mode,
            disable_notification=disable_notification,
        )
        return await self._send(payload.method, payload.params(), chat_id)

    async def send_media(
        self,
        account: ResolvedAccount,
        chat_id: int | str,
        media_url: str,
        kind: ReplyKind = ReplyKind.DOCUMENT,
        caption: str | None = None,
        reply_to_message_id: int | None = None,
        message_thread_id: int | None = None,
        parse_mode: str | None = None,
        disable_notification: bool | None = None,
    ) -> SendResult:
        params: dict[str, Any] = {
            "chat_id": chat_id,
            kind.value: InputFile(media_url) if is_local_path(media_url) else media_url,
            "parse_mode": parse_mode or DEFAULT_PARSE_MODE,
        }
        optional = {
            "caption": caption,
            "reply_to_message_id": reply_to_message_id,
            "message_thread_id": message_thread_id,
            "disable_notification": disable_notification,
        }
        params.update({k: v for k, v in optional.items() if v is not None})
        return await self._send(kind.method, params, chat_id)

    async def probe(self, account: ResolvedAccount) -> ProbeResult:
        try:
            await self.client.request("getMe", {})
        except Exception as exc:
            return ProbeResult(
                ok=False, error=str(exc) or type(exc).__name__, webhook_path=account.webhook_path,
            )
        return ProbeResult(ok=True, webhook_path=account.webhook_path)
