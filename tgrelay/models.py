"""Shared Pydantic data models for tgrelay."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field

CHANNEL_ID = "tgrelay"
DEFAULT_ACCOUNT_ID = "default"

# --- Enums ---


class DmPolicy(str, Enum):
    OPEN = "open"
    ALLOWLIST = "allowlist"
    PAIRING = "pairing"
    DISABLED = "disabled"


class GroupPolicy(str, Enum):
    OPEN = "open"
    ALLOWLIST = "allowlist"
    DISABLED = "disabled"


class ChatType(str, Enum):
    PRIVATE = "private"
    GROUP = "group"
    SUPERGROUP = "supergroup"
    CHANNEL = "channel"

    @property
    def is_group(self) -> bool:
        return self is not ChatType.PRIVATE


class AuditEventType(str, Enum):
    WEBHOOK_ACCEPTED = "webhook_accepted"
    WEBHOOK_AUTH_FAILURE = "webhook_auth_failure"
    ACCESS_DROPPED = "access_dropped"
    PAIRING_REQUESTED = "pairing_requested"
    PAIRING_APPROVED = "pairing_approved"
    OUTBOUND_FAILURE = "outbound_failure"
    RPC_FAILURE = "rpc_failure"
    ADMIN_AUTH_FAILURE = "admin_auth_failure"


class RiskLevel(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


# --- Audit Models ---


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class AuditEvent(BaseModel):
    timestamp: str = Field(default_factory=_now_iso)
    event_type: AuditEventType
    account_id: str | None = None
    source_ip: str | None = None
    user_id: str | None = None
    action: str
    result: str  # "success" | "failure" | "blocked"
    risk_level: RiskLevel
    details: dict[str, object] | None = None
