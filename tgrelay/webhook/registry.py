"""Path-keyed webhook registry and request router.

Several accounts may listen on the same path; the first target (in
registration order) whose credential check passes owns the request.
Accepted updates are answered with ``200 {}`` immediately and processed in
a background task, so processing failures only show up in logs and status.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from tgrelay.audit.logger import AuditLogger
from tgrelay.config.accounts import ResolvedAccount
from tgrelay.models import AuditEvent, AuditEventType, RiskLevel
from tgrelay.webhook.verifier import verify_inbound_secret

logger = logging.getLogger(__name__)

MAX_BODY_BYTES = 1024 * 1024  # 1 MiB

UpdateHandler = Callable[[dict[str, Any]], Awaitable[None]]
StatusSink = Callable[..., None]


class PayloadTooLargeError(Exception):
    """Raised when a request body exceeds the configured byte cap."""

    pass


def normalize_webhook_path(raw: str) -> str:
    trimmed = raw.strip()
    if not trimmed:
        return "/"
    with_slash = trimmed if trimmed.startswith("/") else f"/{trimmed}"
    if len(with_slash) > 1 and with_slash.endswith("/"):
        return with_slash[:-1]
    return with_slash


@dataclass(eq=False)
class WebhookTarget:
    """One account listening on one path. Compared by identity."""

    account: ResolvedAccount
    path: str
    handler: UpdateHandler
    inbound_secret: str | None = None
    status_sink: StatusSink | None = None


async def read_body_capped(request: Request, max_bytes: int) -> bytes:
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > max_bytes:
        raise PayloadTooLargeError(f"declared {declared} bytes")

    chunks: list[bytes] = []
    total = 0
    async for chunk in request.stream():
        total += len(chunk)
        if total > max_bytes:
            raise PayloadTooLargeError(f"read more than {max_bytes} bytes")
        chunks.append(chunk)
    return b"".join(chunks)


def _is_numeric(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _error(message: str, status_code: int, headers: dict[str, str] | None = None) -> Response:
    return JSONResponse({"error": message}, status_code=status_code, headers=headers)


class WebhookRegistry:
    """Process-wide path -> targets map.

    Readers see an immutable snapshot; register/unregister swap in a new
    snapshot under a lock, so a target is visible exactly between the two.
    """

    def __init__(
        self,
        max_body_bytes: int = MAX_BODY_BYTES,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self._max_body_bytes = max_body_bytes
        self._audit = audit_logger
        self._lock = threading.Lock()
        self._targets: dict[str, tuple[WebhookTarget, ...]] = {}

    def register(self, target: WebhookTarget) -> Callable[[], None]:
        """Add ``target`` under its normalized path; returns the matching unregister."""
        key = normalize_webhook_path(target.path)
        target.path = key
        with self._lock:
            snapshot = dict(self._targets)
            snapshot[key] = (*snapshot.get(key, ()), target)
            self._targets = snapshot

        def unregister() -> None:
            with self._lock:
                snapshot = dict(self._targets)
                remaining = tuple(t for t in snapshot.get(key, ()) if t is not target)
                if remaining:
                    snapshot[key] = remaining
                else:
                    snapshot.pop(key, None)
                self._targets = snapshot

        return unregister

    def targets_for(self, path: str) -> tuple[WebhookTarget, ...]:
        return self._targets.get(normalize_webhook_path(path), ())

    def paths(self) -> frozenset[str]:
        return frozenset(self._targets)

    async def handle(self, request: Request) -> Response | None:
        """Answer a webhook request, or return None if no target owns the path."""
        targets = self.targets_for(request.url.path)
        if not targets:
            return None

        if request.method != "POST":
            return _error("Method Not Allowed", 405, headers={"Allow": "POST"})

        try:
            raw = await read_body_capped(request, self._max_body_bytes)
        except PayloadTooLargeError:
            return _error("payload too large", 413)

        if not raw.strip():
            return _error("empty payload", 400)
        try:
            update = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return _error("invalid payload", 400)
        if not isinstance(update, dict):
            return _error("invalid payload", 400)
        if not _is_numeric(update.get("update_id")):
            return _error("invalid payload: missing update_id", 400)

        selected = next(
            (
                target
                for target in targets
                if verify_inbound_secret(
                    request.headers, request.query_params, target.inbound_secret,
                )
            ),
            None,
        )
        if selected is None:
            self._log_event(
                AuditEventType.WEBHOOK_AUTH_FAILURE, request, None, "failure", RiskLevel.HIGH,
            )
            return _error("unauthorized", 401)

        if selected.status_sink:
            selected.status_sink(last_inbound_at=time.time())
        self._log_event(
            AuditEventType.WEBHOOK_ACCEPTED, request, selected, "success", RiskLevel.INFO,
            details={"update_id": update["update_id"]},
        )

        return JSONResponse(
            {}, status_code=200, background=BackgroundTask(_run_target, selected, update),
        )

    def _log_event(
        self,
        event_type: AuditEventType,
        request: Request,
        target: WebhookTarget | None,
        result: str,
        risk_level: RiskLevel,
        details: dict[str, object] | None = None,
    ) -> None:
        if not self._audit:
            return
        self._audit.log(AuditEvent(
            event_type=event_type,
            account_id=target.account.account_id if target else None,
            source_ip=request.client.host if request.client else None,
            action=f"{request.method} {request.url.path}",
            result=result,
            risk_level=risk_level,
            details=details,
        ))


async def _run_target(target: WebhookTarget, update: dict[str, Any]) -> None:
    try:
        await target.handler(update)
    except Exception:
        logger.exception("[%s] tgrelay webhook failed", target.account.account_id)
