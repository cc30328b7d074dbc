"""Per-account message processing and lifecycle.

An :class:`AccountMonitor` registers its webhook target on start and
removes it on stop. Each accepted update runs through
:class:`MessageProcessor`: normalize, access decision, then either a
pairing reply, a silent drop, or dispatch to the agent with replies
delivered through the account's :class:`~tgrelay.outbound.relay.ReplySender`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import httpx
from pydantic import ValidationError

from tgrelay.access.policy import AccessDecision, AccessOutcome, AccessResolver
from tgrelay.audit.logger import AuditLogger
from tgrelay.bot.api import BotApiClient, BotApiReplySender
from tgrelay.config.accounts import ResolvedAccount
from tgrelay.models import CHANNEL_ID, AuditEvent, AuditEventType, RiskLevel
from tgrelay.outbound.relay import (
    OutboundRelay,
    ReplyKind,
    ReplySender,
    SendResult,
    chunk_text,
)
from tgrelay.outbound.rpc import RpcErrorHook, RpcTransformer
from tgrelay.pairing.flow import PairingFlow
from tgrelay.retry import BackoffPolicy
from tgrelay.runtime import (
    AgentDispatcher,
    CommandPolicy,
    InboundContext,
    PairingStore,
    ReplyPayload,
)
from tgrelay.status import StatusStore
from tgrelay.webhook.models import InboundMessage, TgUpdate, normalize_update
from tgrelay.webhook.registry import StatusSink, WebhookRegistry, WebhookTarget

logger = logging.getLogger(__name__)

ENVELOPE_CHANNEL = "Telegram Relay"
ALLOWED_UPDATES = ["message", "edited_message", "channel_post"]


def conversation_label(message: InboundMessage) -> str:
    if message.is_group:
        return message.chat_title or f"chat:{message.chat_id}"
    return message.sender_name or f"user:{message.sender_id}"


def format_agent_envelope(from_label: str, timestamp: int | None, body: str) -> str:
    header = f"{ENVELOPE_CHANNEL} {from_label}"
    if timestamp:
        sent_at = datetime.fromtimestamp(timestamp, tz=UTC).strftime("%Y-%m-%d %H:%M UTC")
        header = f"{header} {sent_at}"
    return f"[{header}] {body}"


def _parse_reply_to(reply_to_id: str | None) -> int | None:
    if reply_to_id and reply_to_id.lstrip("-").isdigit():
        return int(reply_to_id)
    return None


def build_reply_sender(
    account: ResolvedAccount,
    audit_logger: AuditLogger | None = None,
    relay: OutboundRelay | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    on_rpc_error: RpcErrorHook | None = None,
) -> ReplySender:
    """RPC-mode accounts send through the Bot API client; others use the direct relay.

    Makes no network calls.
    """
    rpc = account.config.rpc
    if account.rpc_enabled and rpc is not None:
        client = BotApiClient(account.config.bot_token, transport=transport)
        client.use(RpcTransformer.from_config(rpc, on_error=on_rpc_error, transport=transport))
        return BotApiReplySender(client)
    return relay or OutboundRelay(audit_logger=audit_logger, transport=transport)


class MessageProcessor:
    """Runs one account's inbound pipeline. Holds no per-message state."""

    def __init__(
        self,
        account: ResolvedAccount,
        resolver: AccessResolver,
        dispatcher: AgentDispatcher,
        sender: ReplySender,
        pairing: PairingFlow | None = None,
        status_sink: StatusSink | None = None,
        audit_logger: AuditLogger | None = None,
        bot_username: str | None = None,
    ) -> None:
        self.account = account
        self._resolver = resolver
        self._dispatcher = dispatcher
        self._sender = sender
        self._pairing = pairing
        self._status_sink = status_sink
        self._audit = audit_logger
        self.bot_username = bot_username

    async def handle_update(self, payload: dict[str, Any]) -> None:
        try:
            update = TgUpdate.model_validate(payload)
        except ValidationError as exc:
            logger.warning("[%s] tgrelay ignoring malformed update: %s",
                           self.account.account_id, exc.error_count())
            return
        message = normalize_update(update)
        if message is None:
            logger.debug("[tgrelay] update %s has no message", update.update_id)
            return
        await self.process_message(message)

    async def process_message(self, message: InboundMessage) -> AccessDecision:
        decision = await self._resolver.resolve(message, self.account, self.bot_username)

        if decision.outcome is AccessOutcome.PAIR:
            if self._pairing is not None:
                await self._pairing.issue(message, self.account, self._status_sink)
            return decision

        if decision.outcome is AccessOutcome.REJECT:
            self._log_drop(message, decision)
            return decision

        peer_kind = "group" if message.is_group else "direct"
        peer_id = str(message.chat_id if message.is_group else message.sender_id)
        route = self._dispatcher.resolve_route(self.account.account_id, peer_kind, peer_id)
        ctx = self.build_context(message, decision, route.session_key, route.account_id)

        async def deliver(payload: ReplyPayload) -> None:
            await self.deliver_reply(payload, message.chat_id, message.thread_id)

        def on_error(exc: Exception, kind: str) -> None:
            logger.error("[%s] tgrelay %s reply failed: %s", self.account.account_id, kind, exc)
            if self._status_sink:
                self._status_sink(last_error=str(exc))

        await self._dispatcher.dispatch_reply(ctx, deliver, on_error)
        return decision

    def build_context(
        self,
        message: InboundMessage,
        decision: AccessDecision,
        session_key: str,
        account_id: str,
    ) -> InboundContext:
        label = conversation_label(message)
        entry = decision.group.entry if decision.group else None
        system_prompt = (entry.system_prompt or "").strip() if entry else ""
        return InboundContext(
            body=format_agent_envelope(label, message.timestamp, message.raw_body),
            raw_body=message.raw_body,
            from_=f"{CHANNEL_ID}:{message.sender_id}",
            to=f"{CHANNEL_ID}:{message.chat_id}",
            session_key=session_key,
            account_id=account_id,
            chat_type="channel" if message.is_group else "direct",
            conversation_label=label,
            sender_id=str(message.sender_id),
            sender_name=message.sender_name or None,
            sender_username=message.sender_username,
            was_mentioned=decision.effective_was_mentioned if message.is_group else None,
            command_authorized=decision.command_authorized,
            message_sid=str(message.message_id),
            message_sid_full=f"{message.chat_id}:{message.message_id}",
            reply_to_id=(
                str(message.reply_to_message_id) if message.reply_to_message_id else None
            ),
            message_thread_id=str(message.thread_id) if message.thread_id else None,
            group_space=message.chat_title if message.is_group else None,
            group_system_prompt=(system_prompt or None) if message.is_group else None,
            timestamp=message.timestamp,
        )

    async def deliver_reply(
        self,
        payload: ReplyPayload,
        chat_id: int | str,
        thread_id: int | None = None,
    ) -> list[SendResult]:
        """Send one agent reply block.

        Media go first, one call per item, with the text as the caption of
        the first item only. Text-only replies are chunked. A failed call is
        logged and the remaining items are still attempted.
        """
        reply_to = _parse_reply_to(payload.reply_to_id)
        results: list[SendResult] = []

        if payload.media_urls:
            for index, media_url in enumerate(payload.media_urls):
                result = await self._sender.send_media(
                    self.account,
                    chat_id,
                    media_url,
                    kind=ReplyKind.DOCUMENT,
                    caption=payload.text if index == 0 else None,
                    reply_to_message_id=reply_to,
                    message_thread_id=thread_id,
                )
                self._after_send(result, "media")
                results.append(result)
            return results

        if payload.text:
            for chunk in chunk_text(payload.text):
                result = await self._sender.send_text(
                    self.account,
                    chat_id,
                    chunk,
                    reply_to_message_id=reply_to,
                    message_thread_id=thread_id,
                )
                self._after_send(result, "text")
                results.append(result)
        return results

    def _after_send(self, result: SendResult, kind: str) -> None:
        if result.ok:
            if self._status_sink:
                self._status_sink(last_outbound_at=time.time())
            return
        logger.error("[%s] tgrelay %s send failed: %s",
                     self.account.account_id, kind, result.error)
        if self._status_sink:
            self._status_sink(last_error=result.error)

    def _log_drop(self, message: InboundMessage, decision: AccessDecision) -> None:
        if not self._audit:
            return
        self._audit.log(AuditEvent(
            event_type=AuditEventType.ACCESS_DROPPED,
            account_id=self.account.account_id,
            user_id=str(message.sender_id),
            action="inbound_message",
            result="dropped",
            risk_level=RiskLevel.LOW,
            details={"chat_id": str(message.chat_id), "reason": decision.reason},
        ))


class AccountMonitor:
    """Owns one account's webhook registration, reply sender, and status."""

    def __init__(
        self,
        account: ResolvedAccount,
        registry: WebhookRegistry,
        dispatcher: AgentDispatcher,
        commands: CommandPolicy,
        status: StatusStore,
        pairing_store: PairingStore | None = None,
        audit_logger: AuditLogger | None = None,
        relay: OutboundRelay | None = None,
        retry_policy: BackoffPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.account = account
        self._registry = registry
        self._dispatcher = dispatcher
        self._commands = commands
        self._status = status
        self._pairing_store = pairing_store
        self._audit = audit_logger
        self._relay = relay
        self._retry_policy = retry_policy
        self._transport = transport
        self._unregister: Callable[[], None] | None = None
        self.sender: ReplySender | None = None
        self.pairing: PairingFlow | None = None
        self.processor: MessageProcessor | None = None

    @property
    def running(self) -> bool:
        return self._unregister is not None

    def _on_rpc_error(self, method: str, exc: Exception) -> None:
        account_id = self.account.account_id
        logger.error("[%s] tgrelay rpc %s failed: %s", account_id, method, exc)
        self._status.update(account_id, last_error=f"rpc {method}: {exc}")
        if self._audit:
            self._audit.log(AuditEvent(
                event_type=AuditEventType.RPC_FAILURE,
                account_id=account_id,
                action=method,
                result="failure",
                risk_level=RiskLevel.MEDIUM,
                details={"error": str(exc) or type(exc).__name__},
            ))

    async def _build_sender(self, abort: asyncio.Event | None) -> tuple[ReplySender, str | None]:
        config = self.account.config
        bot_username = config.bot_username
        sender = build_reply_sender(
            self.account,
            audit_logger=self._audit,
            relay=self._relay,
            transport=self._transport,
            on_rpc_error=self._on_rpc_error,
        )

        if isinstance(sender, BotApiReplySender):
            identity = await sender.client.init(abort, self._retry_policy)
            return sender, bot_username or identity.username

        if config.bot_token and config.webhook_url:
            client = BotApiClient(config.bot_token, transport=self._transport)
            identity = await client.init(abort, self._retry_policy)
            await client.set_webhook(
                config.webhook_url.rstrip("/") + self.account.webhook_path,
                secret_token=config.inbound_secret,
                allowed_updates=ALLOWED_UPDATES,
            )
            bot_username = bot_username or identity.username
        return sender, bot_username

    async def start(self, abort: asyncio.Event | None = None) -> None:
        """Resolve the reply path, then register the webhook target.

        Raises RetryFailedError when bot identity cannot be initialized.
        """
        if self.running:
            return
        account_id = self.account.account_id
        self._status.seed(self.account)
        try:
            sender, bot_username = await self._build_sender(abort)
        except Exception as exc:
            self._status.update(account_id, last_error=str(exc), running=False)
            raise

        sink = self._status.sink_for(account_id)
        self.sender = sender
        self.pairing = (
            PairingFlow(self._pairing_store, sender, audit_logger=self._audit)
            if self._pairing_store is not None else None
        )
        self.processor = MessageProcessor(
            account=self.account,
            resolver=AccessResolver(self._commands, self._pairing_store),
            dispatcher=self._dispatcher,
            sender=sender,
            pairing=self.pairing,
            status_sink=sink,
            audit_logger=self._audit,
            bot_username=bot_username,
        )
        self._unregister = self._registry.register(WebhookTarget(
            account=self.account,
            path=self.account.webhook_path,
            handler=self.processor.handle_update,
            inbound_secret=self.account.config.inbound_secret,
            status_sink=sink,
        ))
        self._status.mark_started(account_id)
        logger.info("[%s] tgrelay webhook listening on %s", account_id, self.account.webhook_path)

    def stop(self) -> None:
        if self._unregister is None:
            return
        self._unregister()
        self._unregister = None
        self._status.mark_stopped(self.account.account_id)
        logger.info("[%s] tgrelay stopped", self.account.account_id)

    async def probe(self) -> None:
        if self.sender is None:
            return
        result = await self.sender.probe(self.account)
        self._status.record_probe(self.account.account_id, result)
