"""Per-account runtime status, security warnings, and config issues."""

from __future__ import annotations

import threading
import time
from dataclasses import asdict, dataclass, replace
from typing import Any

from tgrelay.config.accounts import ResolvedAccount
from tgrelay.models import DmPolicy, GroupPolicy
from tgrelay.outbound.relay import ProbeResult
from tgrelay.webhook.registry import StatusSink


@dataclass(frozen=True)
class AccountStatus:
    account_id: str
    name: str | None = None
    enabled: bool = True
    configured: bool = False
    running: bool = False
    webhook_path: str | None = None
    dm_policy: str | None = None
    last_start_at: float | None = None
    last_stop_at: float | None = None
    last_error: str | None = None
    last_inbound_at: float | None = None
    last_outbound_at: float | None = None
    probe: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class StatusStore:
    """Latest status per account. Updates replace the snapshot, never mutate it."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._statuses: dict[str, AccountStatus] = {}

    def seed(self, account: ResolvedAccount) -> AccountStatus:
        status = AccountStatus(
            account_id=account.account_id,
            name=account.name,
            enabled=account.enabled,
            configured=account.configured,
            webhook_path=account.webhook_path,
            dm_policy=account.dm_policy.value,
        )
        with self._lock:
            current = self._statuses.get(account.account_id)
            self._statuses[account.account_id] = (
                replace(
                    current,
                    name=status.name,
                    enabled=status.enabled,
                    configured=status.configured,
                    webhook_path=status.webhook_path,
                    dm_policy=status.dm_policy,
                )
                if current else status
            )
            return self._statuses[account.account_id]

    def update(self, account_id: str, **changes: Any) -> AccountStatus:
        with self._lock:
            current = self._statuses.get(account_id) or AccountStatus(account_id=account_id)
            updated = replace(current, **changes)
            self._statuses[account_id] = updated
            return updated

    def sink_for(self, account_id: str) -> StatusSink:
        """A status sink bound to one account, for the webhook registry and monitors."""

        def sink(**changes: Any) -> None:
            self.update(account_id, **changes)

        return sink

    def mark_started(self, account_id: str) -> AccountStatus:
        return self.update(account_id, running=True, last_start_at=time.time(), last_error=None)

    def mark_stopped(self, account_id: str) -> AccountStatus:
        return self.update(account_id, running=False, last_stop_at=time.time())

    def record_probe(self, account_id: str, probe: ProbeResult) -> AccountStatus:
        return self.update(account_id, probe=asdict(probe))

    def get(self, account_id: str) -> AccountStatus | None:
        return self._statuses.get(account_id)


def collect_warnings(account: ResolvedAccount) -> list[str]:
    """Security warnings for policies that let strangers reach the agent."""
    warnings: list[str] = []
    if account.dm_policy is DmPolicy.OPEN:
        warnings.append(
            f"- tgrelay[{account.account_id}]: dmPolicy=\"open\" allows any user to message "
            "the bot. Set dm.policy=\"pairing\" or \"allowlist\" to restrict access."
        )
    if account.group_policy is GroupPolicy.OPEN:
        warnings.append(
            f"- tgrelay[{account.account_id}]: groupPolicy=\"open\" allows any group to "
            "trigger the bot (mention-gated). Set groupPolicy=\"allowlist\" and configure groups."
        )
    if not account.config.inbound_secret:
        warnings.append(
            f"- tgrelay[{account.account_id}]: no inboundSecret set; the webhook accepts "
            "unauthenticated requests."
        )
    return warnings


def collect_issues(account: ResolvedAccount) -> list[dict[str, str]]:
    issues: list[dict[str, str]] = []
    if not account.outbound_url and not account.rpc_enabled:
        issues.append({
            "account_id": account.account_id,
            "kind": "config",
            "message": "outboundUrl is not configured; replies cannot be delivered",
        })
    rpc = account.config.rpc
    if rpc is not None and rpc.enabled and not rpc.rpc_url:
        issues.append({
            "account_id": account.account_id,
            "kind": "config",
            "message": "rpc.enabled is set but rpc.rpcUrl is empty",
        })
    return issues
