"""Per-message access control.

Decides, before any agent work happens, whether a message is processed,
dropped, or answered with a pairing code. Rejections never produce a
reply, only a DEBUG log line.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from tgrelay.access.mention import extract_mention_info, resolve_mention_gating_with_bypass
from tgrelay.config.accounts import GroupConfig, ResolvedAccount
from tgrelay.models import CHANNEL_ID, DmPolicy, GroupPolicy
from tgrelay.runtime import (
    CommandAuthorizer,
    CommandPolicy,
    PairingStore,
    resolve_command_authorized,
)
from tgrelay.webhook.models import InboundMessage

logger = logging.getLogger(__name__)

_ENTRY_PREFIX = re.compile(r"^(tgrelay|telegram-relay|tg-relay):", re.IGNORECASE)


class AccessOutcome(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    PAIR = "pair"


@dataclass(frozen=True)
class GroupResolution:
    entry: GroupConfig | None
    allowlist_configured: bool
    fallback: GroupConfig | None = None


@dataclass(frozen=True)
class AccessDecision:
    outcome: AccessOutcome
    reason: str
    command_authorized: bool | None = None
    effective_was_mentioned: bool | None = None
    group: GroupResolution | None = None

    @property
    def accepted(self) -> bool:
        return self.outcome is AccessOutcome.ACCEPT


def normalize_allow_entry(entry: str | int) -> str:
    return str(entry).strip().lower().removeprefix("@")


def is_sender_allowed(
    sender_id: int | str,
    sender_username: str | None,
    allow_from: Iterable[str | int],
) -> bool:
    """Match a sender against allowlist entries (ids, usernames, or ``*``)."""
    entries = [normalize_allow_entry(e) for e in allow_from]
    if "*" in entries:
        return True
    normalized_id = str(sender_id).strip().lower()
    normalized_username = normalize_allow_entry(sender_username or "")
    for entry in entries:
        if not entry:
            continue
        if entry == normalized_id:
            return True
        if normalized_username and entry == normalized_username:
            return True
        if _ENTRY_PREFIX.sub("", entry) == normalized_id:
            return True
    return False


def resolve_group_config(
    group_id: int | str,
    group_title: str | None,
    groups: dict[str, GroupConfig] | None,
) -> GroupResolution:
    """Find a group's override: exact id, then title, then the ``*`` fallback."""
    if not groups:
        return GroupResolution(entry=None, allowlist_configured=False)
    normalized_title = (group_title or "").strip().lower()
    candidates = [c for c in (str(group_id), group_title or "", normalized_title) if c]
    entry = next((groups[c] for c in candidates if c in groups), None)
    fallback = groups.get("*")
    return GroupResolution(
        entry=entry or fallback, allowlist_configured=True, fallback=fallback,
    )


def _reject(
    reason: str,
    command_authorized: bool | None = None,
    effective_was_mentioned: bool | None = None,
    group: GroupResolution | None = None,
) -> AccessDecision:
    logger.debug("[tgrelay] %s", reason)
    return AccessDecision(
        outcome=AccessOutcome.REJECT,
        reason=reason,
        command_authorized=command_authorized,
        effective_was_mentioned=effective_was_mentioned,
        group=group,
    )


class AccessResolver:
    """Evaluates DM/group policy, allowlists, and the mention gate."""

    def __init__(
        self,
        commands: CommandPolicy,
        pairing_store: PairingStore | None = None,
        channel: str = CHANNEL_ID,
    ) -> None:
        self._commands = commands
        self._store = pairing_store
        self._channel = channel

    async def _store_allow_from(self) -> list[str]:
        if self._store is None:
            return []
        try:
            return await self._store.read_allow_from(self._channel)
        except Exception:
            logger.warning("[tgrelay] pairing store read failed", exc_info=True)
            return []

    async def resolve(
        self,
        message: InboundMessage,
        account: ResolvedAccount,
        bot_username: str | None = None,
    ) -> AccessDecision:
        sender_id = message.sender_id
        dm_policy = account.dm_policy

        # An open DM policy also lets bot-authored messages through.
        if message.is_bot and dm_policy is not DmPolicy.OPEN:
            return _reject(f"skip bot-authored message ({sender_id})")

        raw_body = message.raw_body
        if not raw_body:
            return _reject(f"drop empty message ({sender_id})")

        group = resolve_group_config(
            message.chat_id, message.chat_title, account.config.groups,
        )
        entry = group.entry
        group_users: list[str | int] = (
            entry.users if entry is not None and entry.users is not None
            else account.config.group_allow_from
        )

        if message.is_group:
            rejection = self._check_group(message, account, group, group_users)
            if rejection is not None:
                return rejection

        should_compute_auth = self._commands.should_compute_command_authorized(raw_body)
        store_allow_from: list[str] = []
        if not message.is_group and (dm_policy is not DmPolicy.OPEN or should_compute_auth):
            store_allow_from = await self._store_allow_from()
        effective_allow_from = [*account.config.dm.allow_from, *store_allow_from]
        command_allow_from = group_users if message.is_group else effective_allow_from
        sender_allowed = is_sender_allowed(
            sender_id, message.sender_username, command_allow_from,
        )
        command_authorized: bool | None = None
        if should_compute_auth:
            command_authorized = resolve_command_authorized(
                self._commands.use_access_groups,
                [CommandAuthorizer(configured=bool(command_allow_from), allowed=sender_allowed)],
            )

        if message.is_group:
            return self._gate_group(
                message, account, group, bot_username, command_authorized,
            )
        return self._check_dm(message, dm_policy, sender_allowed, command_authorized)

    def _check_group(
        self,
        message: InboundMessage,
        account: ResolvedAccount,
        group: GroupResolution,
        group_users: list[str | int],
    ) -> AccessDecision | None:
        chat_id = message.chat_id
        policy = account.group_policy
        if policy is GroupPolicy.DISABLED:
            return _reject(f"drop group message (groupPolicy=disabled, chat={chat_id})")
        if policy is GroupPolicy.ALLOWLIST:
            if not group.allowlist_configured:
                return _reject(
                    f"drop group message (groupPolicy=allowlist, no allowlist, chat={chat_id})"
                )
            if group.entry is None:
                return _reject(f"drop group message (not allowlisted, chat={chat_id})")
        entry = group.entry
        if entry is not None and (entry.enabled is False or entry.allow is False):
            return _reject(f"drop group message (chat disabled, chat={chat_id})")
        if group_users and not is_sender_allowed(
            message.sender_id, message.sender_username, group_users,
        ):
            return _reject(f"drop group message (sender not allowed, {message.sender_id})")
        return None

    def _gate_group(
        self,
        message: InboundMessage,
        account: ResolvedAccount,
        group: GroupResolution,
        bot_username: str | None,
        command_authorized: bool | None,
    ) -> AccessDecision:
        entry = group.entry
        require_mention = (
            entry.require_mention
            if entry is not None and entry.require_mention is not None
            else account.require_mention
        )
        mention = extract_mention_info(message, bot_username or account.config.bot_username)
        gate = resolve_mention_gating_with_bypass(
            is_group=True,
            require_mention=require_mention,
            can_detect_mention=True,
            was_mentioned=mention.was_mentioned,
            has_any_mention=mention.has_any_mention,
            allow_text_commands=self._commands.should_handle_text_commands(),
            has_control_command=self._commands.has_control_command(message.raw_body),
            command_authorized=command_authorized is True,
        )
        if gate.should_skip:
            return _reject(
                f"drop group message (mention required, chat={message.chat_id})",
                effective_was_mentioned=gate.effective_was_mentioned,
                group=group,
            )
        if self._commands.is_control_command(message.raw_body) and command_authorized is not True:
            return _reject(
                f"drop control command from {message.sender_id}",
                command_authorized=command_authorized,
                group=group,
            )
        return AccessDecision(
            outcome=AccessOutcome.ACCEPT,
            reason="group message accepted",
            command_authorized=command_authorized,
            effective_was_mentioned=gate.effective_was_mentioned,
            group=group,
        )

    def _check_dm(
        self,
        message: InboundMessage,
        dm_policy: DmPolicy,
        sender_allowed: bool,
        command_authorized: bool | None,
    ) -> AccessDecision:
        sender_id = message.sender_id
        if dm_policy is DmPolicy.DISABLED:
            return _reject(f"blocked DM from {sender_id} (dmPolicy=disabled)")
        if dm_policy is not DmPolicy.OPEN and not sender_allowed:
            if dm_policy is DmPolicy.PAIRING:
                return AccessDecision(
                    outcome=AccessOutcome.PAIR,
                    reason=f"pairing required for {sender_id}",
                    command_authorized=command_authorized,
                )
            return _reject(
                f"blocked unauthorized sender {sender_id} (dmPolicy={dm_policy.value})"
            )
        return AccessDecision(
            outcome=AccessOutcome.ACCEPT,
            reason="direct message accepted",
            command_authorized=command_authorized,
        )
