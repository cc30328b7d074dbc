"""Pairing handshake for unknown DM senders."""

from __future__ import annotations

import logging
import time

from tgrelay.audit.logger import AuditLogger
from tgrelay.config.accounts import ResolvedAccount
from tgrelay.models import CHANNEL_ID, AuditEvent, AuditEventType, RiskLevel
from tgrelay.outbound.relay import ReplySender
from tgrelay.runtime import PairingRequest, PairingStore
from tgrelay.webhook.models import InboundMessage
from tgrelay.webhook.registry import StatusSink

logger = logging.getLogger(__name__)

PAIRING_APPROVED_MESSAGE = (
    "Your pairing request has been approved. You can now chat with this bot."
)


def build_pairing_reply(sender_id: int | str, code: str) -> str:
    return "\n".join([
        "This bot only answers approved users.",
        "",
        f"Your Telegram user id: {sender_id}",
        f"Pairing code: {code}",
        "",
        "Ask the bot owner to approve it with:",
        f"  tgrelay pairing approve {code}",
    ])


class PairingFlow:
    """Issues pairing codes and notifies senders once approved."""

    def __init__(
        self,
        store: PairingStore,
        sender: ReplySender,
        audit_logger: AuditLogger | None = None,
        channel: str = CHANNEL_ID,
    ) -> None:
        self._store = store
        self._sender = sender
        self._audit = audit_logger
        self._channel = channel

    async def issue(
        self,
        message: InboundMessage,
        account: ResolvedAccount,
        status_sink: StatusSink | None = None,
    ) -> bool:
        """Record a pairing request; reply with the code only when it is new.

        Returns True when a pairing reply was sent.
        """
        sender_id = str(message.sender_id)
        meta = {"name": message.sender_name, "username": message.sender_username}
        try:
            upsert = await self._store.upsert_request(self._channel, sender_id, meta)
        except Exception:
            logger.exception("[%s] tgrelay pairing request failed for %s",
                             account.account_id, sender_id)
            return False

        if not upsert.created:
            logger.debug("[tgrelay] pairing already pending for %s", sender_id)
            return False

        logger.info("[%s] tgrelay pairing request sender=%s", account.account_id, sender_id)
        if self._audit:
            self._audit.log(AuditEvent(
                event_type=AuditEventType.PAIRING_REQUESTED,
                account_id=account.account_id,
                user_id=sender_id,
                action="pairing_request",
                result="pending",
                risk_level=RiskLevel.LOW,
                details={"username": message.sender_username},
            ))

        result = await self._sender.send_text(
            account, message.chat_id, build_pairing_reply(sender_id, upsert.code),
        )
        if not result.ok:
            logger.error("[%s] tgrelay pairing reply failed for %s: %s",
                         account.account_id, sender_id, result.error)
            return False
        if status_sink:
            status_sink(last_outbound_at=time.time())
        return True

    async def approve(self, code: str, account: ResolvedAccount) -> PairingRequest | None:
        """Approve ``code`` and tell the sender; None when the code is unknown."""
        request = await self._store.approve(self._channel, code)
        if request is None:
            return None
        if self._audit:
            self._audit.log(AuditEvent(
                event_type=AuditEventType.PAIRING_APPROVED,
                account_id=account.account_id,
                user_id=request.sender_id,
                action="pairing_approve",
                result="success",
                risk_level=RiskLevel.MEDIUM,
            ))
        await self.notify_approval(account, request.sender_id)
        return request

    async def notify_approval(self, account: ResolvedAccount, sender_id: int | str) -> bool:
        result = await self._sender.send_text(account, sender_id, PAIRING_APPROVED_MESSAGE)
        if not result.ok:
            logger.warning("[%s] tgrelay approval notice failed for %s: %s",
                           account.account_id, sender_id, result.error)
        return result.ok
