"""Integration tests for the webhook router mounted in the FastAPI app."""

from __future__ import annotations

import json
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient

from tgrelay.proxy.app import create_app
from tgrelay.runtime import ReplyPayload
from tgrelay.service import RelayService
from tgrelay.webhook.registry import MAX_BODY_BYTES
from tgrelay.webhook.verifier import SECRET_TOKEN_HEADER
from tests.conftest import (
    FakeDispatcher,
    FakePairingStore,
    RecordingSender,
    make_channel_config,
    make_update,
)

SECRET = "hook-secret"


async def _make_app(
    dispatcher: FakeDispatcher | None = None,
    sender: RecordingSender | None = None,
    mock_audit_logger: Any = None,
    **config: Any,
) -> Any:
    config.setdefault("inboundSecret", SECRET)
    config.setdefault("dm", {"policy": "open"})
    channel = make_channel_config(**config)
    dispatcher = dispatcher or FakeDispatcher()
    service = RelayService(
        channel,
        dispatcher,
        pairing_store=FakePairingStore(),
        audit_logger=mock_audit_logger,
        relay=sender or RecordingSender(),
    )
    app = create_app(channel, dispatcher, service=service)
    await service.start()
    return app


def _client(app: Any) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


def _auth(secret: str = SECRET) -> dict[str, str]:
    return {SECRET_TOKEN_HEADER: secret}


@pytest.mark.asyncio
async def test_accepted_update_returns_empty_object() -> None:
    dispatcher = FakeDispatcher([ReplyPayload(text="pong")])
    sender = RecordingSender()
    app = await _make_app(dispatcher, sender)
    async with _client(app) as client:
        resp = await client.post("/tgrelay", json=make_update(text="ping"), headers=_auth())
    assert resp.status_code == 200
    assert resp.json() == {}
    assert dispatcher.contexts[0].raw_body == "ping"
    assert sender.calls[0]["text"] == "pong"
    assert sender.calls[0]["chat_id"] == 555


@pytest.mark.asyncio
async def test_secret_in_query_or_bearer() -> None:
    app = await _make_app()
    async with _client(app) as client:
        by_query = await client.post(f"/tgrelay?secret={SECRET}", json=make_update())
        by_bearer = await client.post(
            "/tgrelay", json=make_update(), headers={"Authorization": f"Bearer {SECRET}"},
        )
    assert by_query.status_code == 200
    assert by_bearer.status_code == 200


@pytest.mark.asyncio
async def test_trailing_slash_matches_registered_path() -> None:
    app = await _make_app()
    async with _client(app) as client:
        resp = await client.post("/tgrelay/", json=make_update(), headers=_auth())
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_wrong_secret_returns_401(mock_audit_logger) -> None:
    dispatcher = FakeDispatcher()
    app = await _make_app(dispatcher, mock_audit_logger=mock_audit_logger)
    async with _client(app) as client:
        resp = await client.post("/tgrelay", json=make_update(), headers=_auth("nope"))
    assert resp.status_code == 401
    assert resp.json() == {"error": "unauthorized"}
    assert dispatcher.contexts == []
    event = mock_audit_logger.log.call_args[0][0]
    assert event.event_type.value == "webhook_auth_failure"


@pytest.mark.asyncio
async def test_get_returns_405_with_allow_header() -> None:
    app = await _make_app()
    async with _client(app) as client:
        resp = await client.get("/tgrelay")
    assert resp.status_code == 405
    assert resp.headers["allow"] == "POST"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        b"",
        b"   ",
        b"{not json",
        b"[1, 2]",
        b'"text"',
        json.dumps({"message": {}}).encode(),
        json.dumps({"update_id": "7"}).encode(),
        json.dumps({"update_id": True}).encode(),
    ],
)
async def test_bad_payload_returns_400(body: bytes) -> None:
    dispatcher = FakeDispatcher()
    app = await _make_app(dispatcher)
    async with _client(app) as client:
        resp = await client.post(
            "/tgrelay", content=body,
            headers={**_auth(), "Content-Type": "application/json"},
        )
    assert resp.status_code == 400
    assert dispatcher.contexts == []


@pytest.mark.asyncio
async def test_bad_payload_is_checked_before_secret() -> None:
    app = await _make_app()
    async with _client(app) as client:
        resp = await client.post("/tgrelay", content=b"", headers=_auth("nope"))
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_oversized_body_returns_413() -> None:
    app = await _make_app()
    async with _client(app) as client:
        resp = await client.post(
            "/tgrelay", content=b"x" * (MAX_BODY_BYTES + 1), headers=_auth(),
        )
    assert resp.status_code == 413


@pytest.mark.asyncio
async def test_unregistered_path_falls_through_to_404() -> None:
    app = await _make_app()
    async with _client(app) as client:
        resp = await client.post("/tgrelay/nobody", json=make_update(), headers=_auth())
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_health_is_not_a_webhook() -> None:
    app = await _make_app()
    async with _client(app) as client:
        resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_shared_path_routes_by_secret() -> None:
    dispatcher = FakeDispatcher()
    app = await _make_app(
        dispatcher,
        inboundSecret=None,
        accounts={
            "alpha": {"webhookPath": "/shared", "inboundSecret": "a-secret"},
            "beta": {"webhookPath": "/shared", "inboundSecret": "b-secret"},
        },
    )
    async with _client(app) as client:
        first = await client.post("/shared", json=make_update(), headers=_auth("b-secret"))
        second = await client.post("/shared", json=make_update(), headers=_auth("a-secret"))
        rejected = await client.post("/shared", json=make_update(), headers=_auth("c-secret"))
    assert (first.status_code, second.status_code, rejected.status_code) == (200, 200, 401)
    assert [ctx.account_id for ctx in dispatcher.contexts] == ["beta", "alpha"]


@pytest.mark.asyncio
async def test_stopped_service_unregisters_paths() -> None:
    app = await _make_app()
    await app.state.service.stop()
    async with _client(app) as client:
        resp = await client.post("/tgrelay", json=make_update(), headers=_auth())
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_inbound_timestamp_lands_in_status() -> None:
    app = await _make_app()
    async with _client(app) as client:
        await client.post("/tgrelay", json=make_update(), headers=_auth())
    status = app.state.service.status.get("default")
    assert status.last_inbound_at is not None
    assert status.last_outbound_at is None
