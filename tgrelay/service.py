"""Process-level wiring: one registry, one status store, one monitor per account."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import httpx

from tgrelay.audit.logger import AuditLogger
from tgrelay.config.accounts import (
    ChannelConfig,
    ResolvedAccount,
    list_account_ids,
    list_enabled_accounts,
    resolve_account,
    resolve_default_account_id,
)
from tgrelay.models import CHANNEL_ID
from tgrelay.monitor import AccountMonitor, build_reply_sender
from tgrelay.outbound.relay import OutboundRelay, ProbeResult, ReplySender, SendResult
from tgrelay.outbound.target import coerce_chat_id, resolve_target
from tgrelay.pairing.flow import PairingFlow
from tgrelay.retry import BackoffPolicy
from tgrelay.runtime import AgentDispatcher, PairingRequest, PairingStore, SlashCommandPolicy
from tgrelay.status import StatusStore, collect_issues, collect_warnings
from tgrelay.webhook.registry import WebhookRegistry

logger = logging.getLogger(__name__)


class PairingUnavailableError(Exception):
    """No pairing store was configured for this process."""

    pass


class RelayService:
    def __init__(
        self,
        config: ChannelConfig,
        dispatcher: AgentDispatcher,
        pairing_store: PairingStore | None = None,
        audit_logger: AuditLogger | None = None,
        registry: WebhookRegistry | None = None,
        relay: OutboundRelay | None = None,
        retry_policy: BackoffPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.dispatcher = dispatcher
        self.pairing_store = pairing_store
        self.audit_logger = audit_logger
        self.registry = registry or WebhookRegistry(audit_logger=audit_logger)
        self.status = StatusStore()
        self.commands = SlashCommandPolicy(config.commands)
        self.monitors: dict[str, AccountMonitor] = {}
        self._relay = relay
        self._retry_policy = retry_policy
        self._transport = transport
        self._abort = asyncio.Event()

    def accounts(self) -> list[ResolvedAccount]:
        return [
            resolve_account(self.config, account_id)
            for account_id in list_account_ids(self.config)
        ]

    def account(self, account_id: str | None = None) -> ResolvedAccount:
        return resolve_account(self.config, account_id or resolve_default_account_id(self.config))

    async def start(self) -> None:
        """Start every enabled account; a fatal init failure stops the ones already started."""
        self._abort.clear()
        for account in self.accounts():
            self.status.seed(account)
        for account in list_enabled_accounts(self.config):
            for warning in collect_warnings(account):
                logger.warning(warning)
            monitor = AccountMonitor(
                account=account,
                registry=self.registry,
                dispatcher=self.dispatcher,
                commands=self.commands,
                status=self.status,
                pairing_store=self.pairing_store,
                audit_logger=self.audit_logger,
                relay=self._relay,
                retry_policy=self._retry_policy,
                transport=self._transport,
            )
            try:
                await monitor.start(self._abort)
            except Exception:
                logger.exception("[%s] tgrelay failed to start", account.account_id)
                await self.stop()
                raise
            self.monitors[account.account_id] = monitor

    async def stop(self) -> None:
        self._abort.set()
        for monitor in self.monitors.values():
            monitor.stop()
        self.monitors.clear()

    def status_report(self) -> dict[str, Any]:
        accounts = []
        for account in self.accounts():
            status = self.status.get(account.account_id) or self.status.seed(account)
            accounts.append({
                **status.to_dict(),
                "warnings": collect_warnings(account),
                "issues": collect_issues(account),
            })
        return {"channel": CHANNEL_ID, "accounts": accounts}

    def _sender_for(self, account: ResolvedAccount) -> ReplySender:
        monitor = self.monitors.get(account.account_id)
        if monitor is not None and monitor.sender is not None:
            return monitor.sender
        return build_reply_sender(
            account, audit_logger=self.audit_logger, relay=self._relay, transport=self._transport,
        )

    async def probe(self, account_id: str | None = None) -> list[ProbeResult]:
        accounts = [self.account(account_id)] if account_id else list_enabled_accounts(self.config)
        results = []
        for account in accounts:
            result = await self._sender_for(account).probe(account)
            self.status.record_probe(account.account_id, result)
            results.append(result)
        return results

    async def list_pairing_requests(self) -> list[PairingRequest]:
        if self.pairing_store is None:
            raise PairingUnavailableError("pairing store not configured")
        return await self.pairing_store.list_requests(CHANNEL_ID)

    async def approve_pairing(
        self, code: str, account_id: str | None = None,
    ) -> PairingRequest | None:
        """Approve a pending code and notify the sender through ``account_id``'s reply path."""
        if self.pairing_store is None:
            raise PairingUnavailableError("pairing store not configured")
        account = self.account(account_id)
        flow = PairingFlow(self.pairing_store, self._sender_for(account), self.audit_logger)
        return await flow.approve(code, account)

    async def send_text(
        self, text: str, to: str | None = None, account_id: str | None = None,
    ) -> SendResult:
        """Operator-initiated send; with no ``to`` the first ``dm.allowFrom`` entry is used."""
        account = self.account(account_id)
        target = resolve_target(to, account.config.dm.allow_from)
        result = await self._sender_for(account).send_text(account, coerce_chat_id(target), text)
        if result.ok:
            self.status.update(account.account_id, last_outbound_at=time.time())
        else:
            self.status.update(account.account_id, last_error=result.error)
        return result
