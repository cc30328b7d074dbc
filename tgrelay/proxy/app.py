"""FastAPI application hosting the webhook router and admin routes."""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from tgrelay.audit.logger import AuditLogger
from tgrelay.config.accounts import ChannelConfig, load_channel_config
from tgrelay.pairing.store import SqlitePairingStore
from tgrelay.proxy.auth_middleware import AuthMiddleware
from tgrelay.proxy.webhook_middleware import WebhookMiddleware
from tgrelay.runtime import AgentDispatcher, PairingStore, UpstreamAgentDispatcher
from tgrelay.service import PairingUnavailableError, RelayService

logger = logging.getLogger(__name__)


class ApproveRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    code: str = Field(min_length=1)
    account_id: str | None = Field(default=None, alias="accountId")


def create_app_from_env() -> FastAPI:
    """Factory for uvicorn --factory: reads config from environment variables."""
    config_path = os.environ.get("TGRELAY_CONFIG", "config/tgrelay.json")
    upstream_url = os.environ["UPSTREAM_URL"]
    upstream_token = os.environ.get("UPSTREAM_TOKEN", "")
    admin_token = os.environ.get("TGRELAY_ADMIN_TOKEN")
    pairing_db = os.environ.get("TGRELAY_PAIRING_DB", "data/pairing.db")
    audit_log = os.environ.get("TGRELAY_AUDIT_LOG")

    audit_logger = AuditLogger.from_env(audit_log) if audit_log else None

    return create_app(
        load_channel_config(config_path),
        UpstreamAgentDispatcher(upstream_url, upstream_token),
        pairing_store=SqlitePairingStore(pairing_db),
        admin_token=admin_token,
        audit_logger=audit_logger,
    )


def create_app(
    config: ChannelConfig,
    dispatcher: AgentDispatcher,
    pairing_store: PairingStore | None = None,
    admin_token: str | None = None,
    audit_logger: AuditLogger | None = None,
    service: RelayService | None = None,
) -> FastAPI:
    """Create the relay app. Monitors start and stop with the app lifespan."""
    service = service or RelayService(
        config, dispatcher, pairing_store=pairing_store, audit_logger=audit_logger,
    )

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        await service.start()
        try:
            yield
        finally:
            await service.stop()

    app = FastAPI(docs_url=None, redoc_url=None, lifespan=lifespan)
    app.state.service = service

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/admin/status")
    async def admin_status() -> dict[str, object]:
        return service.status_report()

    @app.post("/admin/pairing/approve")
    async def approve_pairing(request: Request) -> JSONResponse:
        try:
            body = ApproveRequest.model_validate(await request.json())
        except ValueError:
            return JSONResponse({"error": "code is required"}, status_code=400)
        try:
            approved = await service.approve_pairing(body.code, body.account_id)
        except PairingUnavailableError as exc:
            return JSONResponse({"error": str(exc)}, status_code=503)
        if approved is None:
            return JSONResponse({"error": "unknown or expired pairing code"}, status_code=404)
        return JSONResponse({"approved": True, "sender_id": approved.sender_id})

    if admin_token:
        app.add_middleware(AuthMiddleware, token=admin_token, audit_logger=audit_logger)
    # Added last so it wraps everything else and sees webhook paths first.
    app.add_middleware(WebhookMiddleware, registry=service.registry)
    return app
