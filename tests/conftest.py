"""Shared test fixtures for tgrelay."""

from __future__ import annotations

from typing import Any
from unittest.mock import MagicMock

import pytest

from tgrelay.audit.logger import AuditLogger
from tgrelay.config.accounts import ChannelConfig, ResolvedAccount, resolve_account
from tgrelay.models import AuditEvent, AuditEventType, RiskLevel
from tgrelay.outbound.relay import ProbeResult, ReplyKind, SendResult
from tgrelay.runtime import (
    AgentRoute,
    InboundContext,
    PairingRequest,
    PairingUpsert,
    ReplyPayload,
)
from tgrelay.webhook.models import InboundMessage, TgUpdate, normalize_update


@pytest.fixture
def mock_audit_logger() -> MagicMock:
    return MagicMock(spec=AuditLogger)


# --- Factory functions for test data ---


def make_audit_event(**kwargs) -> AuditEvent:
    """Factory for AuditEvent with sensible defaults."""
    defaults: dict[str, object] = {
        "event_type": AuditEventType.WEBHOOK_AUTH_FAILURE,
        "action": "test_action",
        "result": "failure",
        "risk_level": RiskLevel.HIGH,
    }
    defaults.update(kwargs)
    return AuditEvent(**defaults)  # type: ignore[arg-type]


def make_update(
    text: str | None = "hello",
    update_id: int = 1,
    chat_id: int = 555,
    chat_type: str = "private",
    chat_title: str | None = None,
    sender_id: int = 555,
    username: str | None = "alice",
    first_name: str | None = "Alice",
    is_bot: bool = False,
    entities: list[dict[str, Any]] | None = None,
    **message_fields: Any,
) -> dict[str, Any]:
    """Raw Telegram update dict, as it arrives on the webhook."""
    chat: dict[str, Any] = {"id": chat_id, "type": chat_type}
    if chat_title is not None:
        chat["title"] = chat_title
    sender: dict[str, Any] = {"id": sender_id, "is_bot": is_bot}
    if first_name is not None:
        sender["first_name"] = first_name
    if username is not None:
        sender["username"] = username
    message: dict[str, Any] = {
        "message_id": 10,
        "date": 1_700_000_000,
        "chat": chat,
        "from": sender,
    }
    if text is not None:
        message["text"] = text
    if entities is not None:
        message["entities"] = entities
    message.update(message_fields)
    return {"update_id": update_id, "message": message}


def make_group_update(
    text: str = "hello",
    chat_id: int = -100123,
    chat_title: str | None = "Team",
    **kwargs: Any,
) -> dict[str, Any]:
    return make_update(
        text=text, chat_id=chat_id, chat_type="supergroup", chat_title=chat_title, **kwargs,
    )


def mention_entity(text: str, username: str) -> dict[str, Any]:
    """A ``mention`` entity covering ``@username`` inside ``text``."""
    needle = f"@{username}"
    prefix = text[: text.index(needle)]
    return {
        "type": "mention",
        "offset": len(prefix.encode("utf-16-le")) // 2,
        "length": len(needle.encode("utf-16-le")) // 2,
    }


def make_message(**kwargs: Any) -> InboundMessage:
    message = normalize_update(TgUpdate.model_validate(make_update(**kwargs)))
    assert message is not None
    return message


def make_group_message(**kwargs: Any) -> InboundMessage:
    message = normalize_update(TgUpdate.model_validate(make_group_update(**kwargs)))
    assert message is not None
    return message


def make_channel_config(**overrides: Any) -> ChannelConfig:
    data: dict[str, Any] = {"outboundUrl": "http://relay.test/send"}
    data.update(overrides)
    return ChannelConfig.model_validate(data)


def make_account(account_id: str | None = None, **overrides: Any) -> ResolvedAccount:
    return resolve_account(make_channel_config(**overrides), account_id)


# --- In-memory collaborators ---


class FakePairingStore:
    """In-memory pairing store with predictable codes."""

    def __init__(self, allow_from: list[str] | None = None) -> None:
        self.allow_from = list(allow_from or [])
        self.requests: dict[str, PairingRequest] = {}
        self.read_calls = 0
        self.upsert_calls = 0

    async def read_allow_from(self, channel: str) -> list[str]:
        self.read_calls += 1
        return list(self.allow_from)

    async def upsert_request(
        self, channel: str, sender_id: str, meta: dict[str, Any],
    ) -> PairingUpsert:
        self.upsert_calls += 1
        existing = self.requests.get(sender_id)
        if existing is not None:
            return PairingUpsert(code=existing.code, created=False)
        code = f"CODE{len(self.requests) + 1:04d}"
        self.requests[sender_id] = PairingRequest(
            channel=channel, sender_id=sender_id, code=code, meta=meta,
        )
        return PairingUpsert(code=code, created=True)

    async def approve(self, channel: str, code: str) -> PairingRequest | None:
        for sender_id, request in list(self.requests.items()):
            if request.code == code:
                del self.requests[sender_id]
                self.allow_from.append(sender_id)
                return request
        return None

    async def list_requests(self, channel: str) -> list[PairingRequest]:
        return list(self.requests.values())


class FakeDispatcher:
    """Records dispatched contexts and delivers canned replies."""

    def __init__(self, replies: list[ReplyPayload] | None = None) -> None:
        self.replies = list(replies or [])
        self.contexts: list[InboundContext] = []
        self.routes: list[tuple[str, str, str]] = []

    def resolve_route(self, account_id: str, peer_kind: str, peer_id: str) -> AgentRoute:
        self.routes.append((account_id, peer_kind, peer_id))
        return AgentRoute(
            agent_id="main",
            session_key=f"tgrelay:{account_id}:{peer_kind}:{peer_id}",
            account_id=account_id,
        )

    async def dispatch_reply(self, ctx, deliver, on_error) -> None:
        self.contexts.append(ctx)
        for reply in self.replies:
            await deliver(reply)


class RecordingSender:
    """Reply sender that records calls; results can be scripted per call."""

    def __init__(self, results: list[SendResult] | None = None) -> None:
        self.calls: list[dict[str, Any]] = []
        self._results = list(results or [])

    def _next(self) -> SendResult:
        if self._results:
            return self._results.pop(0)
        return SendResult(ok=True, message_id=str(len(self.calls)), chat_id="555")

    async def send_text(self, account, chat_id, text, **kwargs: Any) -> SendResult:
        self.calls.append({"kind": ReplyKind.TEXT, "chat_id": chat_id, "text": text, **kwargs})
        return self._next()

    async def send_media(self, account, chat_id, media_url, **kwargs: Any) -> SendResult:
        self.calls.append({"chat_id": chat_id, "media_url": media_url, **kwargs})
        return self._next()

    async def probe(self, account) -> ProbeResult:
        return ProbeResult(ok=True, webhook_path=account.webhook_path)


@pytest.fixture
def pairing_store() -> FakePairingStore:
    return FakePairingStore()


@pytest.fixture
def dispatcher() -> FakeDispatcher:
    return FakeDispatcher()


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()
