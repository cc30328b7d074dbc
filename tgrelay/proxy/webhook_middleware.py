"""ASGI middleware that answers registered webhook paths before routing."""

from __future__ import annotations

from starlette.requests import Request
from starlette.types import ASGIApp, Receive, Scope, Send

from tgrelay.webhook.registry import WebhookRegistry


class WebhookMiddleware:
    """Hands HTTP requests to the registry; unclaimed paths fall through."""

    def __init__(self, app: ASGIApp, registry: WebhookRegistry) -> None:
        self.app = app
        self._registry = registry

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)
        response = await self._registry.handle(request)
        if response is None:
            await self.app(scope, receive, send)
            return
        await response(scope, receive, send)
