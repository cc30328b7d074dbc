"""Direct outbound relay: POSTs reply payloads to an account's outbound URL.

Every failure (missing URL, transport error, non-2xx) comes back as a
``SendResult(ok=False)``; nothing raises past :meth:`OutboundRelay.send`.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, ConfigDict

from tgrelay.audit.logger import AuditLogger
from tgrelay.config.accounts import ResolvedAccount
from tgrelay.models import AuditEvent, AuditEventType, RiskLevel

logger = logging.getLogger(__name__)

TEXT_CHUNK_LIMIT = 4096
DEFAULT_PARSE_MODE = "HTML"

_MIME_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".mp4": "video/mp4",
    ".mp3": "audio/mpeg",
    ".ogg": "audio/ogg",
    ".pdf": "application/pdf",
}


class ReplyKind(str, Enum):
    TEXT = "text"
    PHOTO = "photo"
    DOCUMENT = "document"
    AUDIO = "audio"
    VIDEO = "video"
    VOICE = "voice"

    @property
    def method(self) -> str:
        return _METHODS[self]


_METHODS: dict[ReplyKind, str] = {
    ReplyKind.TEXT: "sendMessage",
    ReplyKind.PHOTO: "sendPhoto",
    ReplyKind.DOCUMENT: "sendDocument",
    ReplyKind.AUDIO: "sendAudio",
    ReplyKind.VIDEO: "sendVideo",
    ReplyKind.VOICE: "sendVoice",
}


class FileData(BaseModel):
    model_config = ConfigDict(frozen=True)

    base64: str
    filename: str | None = None
    mime_type: str | None = None


class OutboundReplyPayload(BaseModel):
    """One send call. Rebuilt per chunk, never mutated."""

    model_config = ConfigDict(frozen=True)

    kind: ReplyKind
    chat_id: int | str
    text: str | None = None
    caption: str | None = None
    parse_mode: str | None = DEFAULT_PARSE_MODE
    reply_to_message_id: int | None = None
    message_thread_id: int | None = None
    disable_notification: bool | None = None
    media: str | None = None
    file_data: FileData | None = None

    @property
    def method(self) -> str:
        return self.kind.method

    def params(self) -> dict[str, Any]:
        """Bot API parameters, without ``method`` and without unset fields."""
        body: dict[str, Any] = {"chat_id": self.chat_id}
        for key in (
            "text",
            "caption",
            "parse_mode",
            "reply_to_message_id",
            "message_thread_id",
            "disable_notification",
        ):
            value = getattr(self, key)
            if value is not None:
                body[key] = value
        if self.media is not None:
            body[self.kind.value] = self.media
        if self.file_data is not None:
            body["file_data"] = self.file_data.model_dump(exclude_none=True)
        return body

    def to_wire(self) -> dict[str, Any]:
        return {"method": self.method, **self.params()}


@dataclass(frozen=True)
class SendResult:
    ok: bool
    message_id: str | None = None
    chat_id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class ProbeResult:
    ok: bool
    webhook_path: str
    error: str | None = None
    outbound_url: str | None = None


class ReplySender(Protocol):
    """Anything that can deliver replies for an account (direct relay or Bot API)."""

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
        ...

    async def send_media(
        self,
        account: ResolvedAccount,
        chat_id: int | str,
        media_url: str,
        kind: ReplyKind = ...,
        caption: str | None = None,
        reply_to_message_id: int | None = None,
        message_thread_id: int | None = None,
        parse_mode: str | None = None,
        disable_notification: bool | None = None,
    ) -> SendResult:
        ...

    async def probe(self, account: ResolvedAccount) -> ProbeResult:
        ...


def is_local_path(media_url: str) -> bool:
    return media_url.startswith("/") or media_url.startswith("./")


def build_text_payload(
    chat_id: int | str,
    text: str,
    reply_to_message_id: int | None = None,
    message_thread_id: int | None = None,
    parse_mode: str | None = None,
    disable_notification: bool | None = None,
) -> OutboundReplyPayload:
    return OutboundReplyPayload(
        kind=ReplyKind.TEXT,
        chat_id=chat_id,
        text=text,
        parse_mode=parse_mode or DEFAULT_PARSE_MODE,
        reply_to_message_id=reply_to_message_id,
        message_thread_id=message_thread_id,
        disable_notification=disable_notification,
    )


async def read_file_data(media_path: str) -> FileData:
    path = Path(media_path)
    content = await asyncio.to_thread(path.read_bytes)
    return FileData(
        base64=base64.b64encode(content).decode("ascii"),
        filename=path.name,
        mime_type=_MIME_TYPES.get(path.suffix.lower()),
    )


async def build_media_payload(
    chat_id: int | str,
    media_url: str,
    kind: ReplyKind = ReplyKind.DOCUMENT,
    caption: str | None = None,
    reply_to_message_id: int | None = None,
    message_thread_id: int | None = None,
    parse_mode: str | None = None,
    disable_notification: bool | None = None,
) -> OutboundReplyPayload:
    """Local files are inlined as base64 ``file_data``; URLs and file ids pass through.

    Raises OSError when a local file cannot be read.
    """
    if kind is ReplyKind.TEXT:
        raise ValueError("media payload needs a media kind, not text")
    local = is_local_path(media_url)
    return OutboundReplyPayload(
        kind=kind,
        chat_id=chat_id,
        caption=caption,
        parse_mode=parse_mode or DEFAULT_PARSE_MODE,
        reply_to_message_id=reply_to_message_id,
        message_thread_id=message_thread_id,
        disable_notification=disable_notification,
        media=None if local else media_url,
        file_data=await read_file_data(media_url) if local else None,
    )


def parse_send_response(data: object, fallback_chat_id: int | str) -> SendResult:
    """Accept the Bot API shape or the flattened ``{ok, message_id, chat_id}`` shape."""
    body = data if isinstance(data, dict) else {}
    result = body.get("result") if isinstance(body.get("result"), dict) else {}
    chat = result.get("chat") if isinstance(result.get("chat"), dict) else {}

    message_id = result.get("message_id", body.get("message_id"))
    chat_id = chat.get("id", body.get("chat_id"))
    return SendResult(
        ok=True,
        message_id=str(message_id) if message_id is not None else None,
        chat_id=str(chat_id) if chat_id is not None else str(fallback_chat_id),
    )


def chunk_text(text: str, limit: int = TEXT_CHUNK_LIMIT) -> list[str]:
    """Split text into pieces of at most ``limit`` characters.

    Prefers paragraph breaks, then line breaks, then spaces, then a hard cut.
    """
    remaining = text.strip()
    chunks: list[str] = []
    while len(remaining) > limit:
        window = remaining[:limit]
        cut = -1
        for separator in ("\n\n", "\n", " "):
            cut = window.rfind(separator)
            if cut > 0:
                break
        if cut <= 0:
            cut = limit
        chunks.append(remaining[:cut].rstrip())
        remaining = remaining[cut:].lstrip()
    if remaining:
        chunks.append(remaining)
    return chunks


_WHITESPACE = re.compile(r"\s+")

# InvalidURL is not an HTTPError; bad header values raise UnicodeEncodeError.
_SEND_ERRORS = (httpx.HTTPError, httpx.InvalidURL, ValueError)


def _short(text: str, limit: int = 200) -> str:
    return _WHITESPACE.sub(" ", text)[:limit]


class OutboundRelay:
    """Sends reply payloads as JSON to the account's ``outboundUrl``."""

    def __init__(
        self,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self._timeout = timeout
        self._transport = transport
        self._audit = audit_logger

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    def _headers(self, account: ResolvedAccount) -> dict[str, str]:
        return {"Content-Type": "application/json", **account.outbound_headers}

    async def send(self, account: ResolvedAccount, payload: OutboundReplyPayload) -> SendResult:
        if not account.outbound_url:
            return SendResult(ok=False, error="outboundUrl not configured for tgrelay account")

        try:
            async with self._client() as client:
                resp = await client.post(
                    account.outbound_url,
                    json=payload.to_wire(),
                    headers=self._headers(account),
                )
        except _SEND_ERRORS as exc:
            error = str(exc) or type(exc).__name__
            logger.error("[%s] tgrelay outbound error: %s", account.account_id, error)
            self._log_failure(account, payload, error)
            return SendResult(ok=False, error=error)

        if not resp.is_success:
            error = f"HTTP {resp.status_code}: {_short(resp.text) or 'unknown error'}"
            logger.error("[%s] tgrelay outbound failed: %s", account.account_id, error)
            self._log_failure(account, payload, error)
            return SendResult(ok=False, error=error)

        try:
            data = resp.json()
        except ValueError:
            data = {}
        return parse_send_response(data, payload.chat_id)

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
        return await self.send(account, payload)

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
        try:
            payload = await build_media_payload(
                chat_id,
                media_url,
                kind=kind,
                caption=caption,
                reply_to_message_id=reply_to_message_id,
                message_thread_id=message_thread_id,
                parse_mode=parse_mode,
                disable_notification=disable_notification,
            )
        except OSError as exc:
            logger.error("[%s] tgrelay failed to read local file: %s", account.account_id, exc)
            return SendResult(ok=False, error=f"Failed to read local file: {exc}")
        return await self.send(account, payload)

    async def probe(self, account: ResolvedAccount) -> ProbeResult:
        """POST a ``getMe`` call to the outbound URL and report reachability."""
        if not account.outbound_url:
            return ProbeResult(
                ok=False, error="outboundUrl not configured", webhook_path=account.webhook_path,
            )
        try:
            async with self._client() as client:
                resp = await client.post(
                    account.outbound_url,
                    json={"method": "getMe"},
                    headers=self._headers(account),
                )
        except _SEND_ERRORS as exc:
            return ProbeResult(
                ok=False,
                error=str(exc) or type(exc).__name__,
                webhook_path=account.webhook_path,
                outbound_url=account.outbound_url,
            )
        return ProbeResult(
            ok=resp.is_success,
            error=None if resp.is_success else f"HTTP {resp.status_code}",
            webhook_path=account.webhook_path,
            outbound_url=account.outbound_url,
        )

    def _log_failure(
        self, account: ResolvedAccount, payload: OutboundReplyPayload, error: str,
    ) -> None:
        if not self._audit:
            return
        self._audit.log(AuditEvent(
            event_type=AuditEventType.OUTBOUND_FAILURE,
            account_id=account.account_id,
            action=payload.method,
            result="failure",
            risk_level=RiskLevel.MEDIUM,
            details={"chat_id": str(payload.chat_id), "error": error},
        ))
