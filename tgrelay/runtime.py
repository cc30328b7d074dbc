"""Collaborator contracts injected into the relay, plus reference implementations.

The relay never reaches for ambient state: the agent dispatcher, the
pairing store, and the command policy are all passed in at construction.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import httpx

from tgrelay.config.accounts import CommandsConfig

logger = logging.getLogger(__name__)


# --- Value types ---


@dataclass(frozen=True)
class AgentRoute:
    agent_id: str
    session_key: str
    account_id: str


@dataclass(frozen=True)
class PairingUpsert:
    code: str
    created: bool


@dataclass(frozen=True)
class PairingRequest:
    channel: str
    sender_id: str
    code: str
    meta: dict[str, Any] = field(default_factory=dict)
    created_at: str | None = None


@dataclass(frozen=True)
class ReplyPayload:
    """One reply block produced by the agent."""

    text: str | None = None
    media_urls: tuple[str, ...] = ()
    reply_to_id: str | None = None


@dataclass(frozen=True)
class InboundContext:
    """Envelope handed to the agent for one accepted message."""

    body: str
    raw_body: str
    from_: str
    to: str
    session_key: str
    account_id: str
    chat_type: str  # "direct" | "channel"
    conversation_label: str
    sender_id: str
    message_sid: str
    message_sid_full: str
    sender_name: str | None = None
    sender_username: str | None = None
    was_mentioned: bool | None = None
    command_authorized: bool | None = None
    reply_to_id: str | None = None
    message_thread_id: str | None = None
    group_space: str | None = None
    group_system_prompt: str | None = None
    timestamp: int | None = None
    provider: str = "tgrelay"


DeliverFn = Callable[[ReplyPayload], Awaitable[None]]
ReplyErrorFn = Callable[[Exception, str], None]


# --- Contracts ---


@runtime_checkable
class PairingStore(Protocol):
    """Persistent allow-store and pairing-request ledger."""

    async def read_allow_from(self, channel: str) -> list[str]:
        ...

    async def upsert_request(
        self, channel: str, sender_id: str, meta: dict[str, Any],
    ) -> PairingUpsert:
        """Create a request for ``sender_id`` or return the outstanding one."""
        ...

    async def approve(self, channel: str, code: str) -> PairingRequest | None:
        ...

    async def list_requests(self, channel: str) -> list[PairingRequest]:
        ...


@runtime_checkable
class AgentDispatcher(Protocol):
    """Turns an inbound context into replies, delivered through a callback."""

    def resolve_route(self, account_id: str, peer_kind: str, peer_id: str) -> AgentRoute:
        ...

    async def dispatch_reply(
        self, ctx: InboundContext, deliver: DeliverFn, on_error: ReplyErrorFn,
    ) -> None:
        ...


@runtime_checkable
class CommandPolicy(Protocol):
    use_access_groups: bool

    def should_compute_command_authorized(self, text: str) -> bool:
        ...

    def has_control_command(self, text: str) -> bool:
        ...

    def is_control_command(self, text: str) -> bool:
        ...

    def should_handle_text_commands(self) -> bool:
        ...


@dataclass(frozen=True)
class CommandAuthorizer:
    configured: bool
    allowed: bool


def resolve_command_authorized(
    use_access_groups: bool, authorizers: Sequence[CommandAuthorizer],
) -> bool:
    if not use_access_groups:
        return True
    return any(a.configured and a.allowed for a in authorizers)


# --- Reference implementations ---


def _command_name(token: str) -> str | None:
    if not token.startswith("/") or len(token) < 2:
        return None
    return token[1:].split("@", 1)[0].lower()


class SlashCommandPolicy:
    """Control commands are ``/name`` tokens (optionally ``/name@bot``)."""

    def __init__(self, config: CommandsConfig | None = None) -> None:
        config = config or CommandsConfig()
        self.use_access_groups = config.use_access_groups
        self._text_commands = config.text_commands
        self._control = {name.lower().lstrip("/") for name in config.control_commands}

    def should_compute_command_authorized(self, text: str) -> bool:
        tokens = text.split()
        return bool(tokens) and _command_name(tokens[0]) is not None

    def has_control_command(self, text: str) -> bool:
        return any(_command_name(token) in self._control for token in text.split())

    def is_control_command(self, text: str) -> bool:
        tokens = text.split()
        return bool(tokens) and _command_name(tokens[0]) in self._control

    def should_handle_text_commands(self) -> bool:
        return self._text_commands


class UpstreamAgentDispatcher:
    """Sends the inbound envelope to an OpenAI-compatible agent endpoint."""

    def __init__(self, upstream_url: str, upstream_token: str, timeout: float = 120.0) -> None:
        self._upstream_url = upstream_url
        self._upstream_token = upstream_token
        self._timeout = timeout

    def resolve_route(self, account_id: str, peer_kind: str, peer_id: str) -> AgentRoute:
        return AgentRoute(
            agent_id="main",
            session_key=f"tgrelay:{account_id}:{peer_kind}:{peer_id}",
            account_id=account_id,
        )

    def build_request(self, ctx: InboundContext) -> dict[str, Any]:
        messages: list[dict[str, str]] = []
        if ctx.group_system_prompt:
            messages.append({"role": "system", "content": ctx.group_system_prompt})
        messages.append({"role": "user", "content": ctx.body})
        return {
            "model": "default",
            "messages": messages,
            "user": ctx.session_key,
            "metadata": {
                "source": ctx.provider,
                "chat_type": ctx.chat_type,
                "sender_id": ctx.sender_id,
                "was_mentioned": ctx.was_mentioned,
            },
        }

    async def dispatch_reply(
        self, ctx: InboundContext, deliver: DeliverFn, on_error: ReplyErrorFn,
    ) -> None:
        url = f"{self._upstream_url.rstrip('/')}/v1/chat/completions"
        headers = {
            "Authorization": f"Bearer {self._upstream_token}",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient() as client:
                resp = await client.post(
                    url, json=self.build_request(ctx), headers=headers, timeout=self._timeout,
                )
            resp.raise_for_status()
            try:
                text = resp.json()["choices"][0]["message"]["content"]
            except (json.JSONDecodeError, IndexError, KeyError, TypeError):
                text = resp.text
        except httpx.HTTPError as exc:
            on_error(exc, "final")
            return

        if text:
            await deliver(ReplyPayload(text=text))
