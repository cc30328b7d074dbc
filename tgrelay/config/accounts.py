"""Account configuration: JSON schema, per-account merge, and resolution.

The channel section holds base values shared by every account plus an
optional ``accounts`` map of per-account overrides. Resolving an account
shallow-merges the two (the account wins) into an immutable
:class:`ResolvedAccount`, rebuilt on every inbound event.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from tgrelay.models import DEFAULT_ACCOUNT_ID, DmPolicy, GroupPolicy

DEFAULT_MEDIA_MAX_MB = 20

# Keys that belong to the channel section only and never merge into an account.
_CHANNEL_ONLY_FIELDS = {"accounts", "default_account", "defaults", "commands"}


class _ConfigModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


class DmConfig(_ConfigModel):
    policy: DmPolicy | None = None
    allow_from: list[str | int] = Field(default_factory=list, alias="allowFrom")


class GroupConfig(_ConfigModel):
    enabled: bool | None = None
    allow: bool | None = None
    require_mention: bool | None = Field(default=None, alias="requireMention")
    users: list[str | int] | None = None
    system_prompt: str | None = Field(default=None, alias="systemPrompt")


class RpcConfig(_ConfigModel):
    """Forward Bot API calls to a remote executor instead of Telegram."""

    enabled: bool = False
    rpc_url: str = Field(default="", alias="rpcUrl")
    rpc_headers: dict[str, str] = Field(default_factory=dict, alias="rpcHeaders")
    rpc_timeout: float = Field(default=30.0, gt=0, alias="rpcTimeout")
    exclude_methods: list[str] = Field(default_factory=list, alias="excludeMethods")


class AccountConfig(_ConfigModel):
    enabled: bool | None = None
    name: str | None = None
    webhook_path: str | None = Field(default=None, alias="webhookPath")
    webhook_url: str | None = Field(default=None, alias="webhookUrl")
    inbound_secret: str | None = Field(default=None, alias="inboundSecret")
    outbound_url: str | None = Field(default=None, alias="outboundUrl")
    outbound_headers: dict[str, str] = Field(default_factory=dict, alias="outboundHeaders")
    bot_username: str | None = Field(default=None, alias="botUsername")
    bot_token: str | None = Field(default=None, alias="botToken")
    dm: DmConfig = Field(default_factory=DmConfig)
    group_policy: GroupPolicy | None = Field(default=None, alias="groupPolicy")
    group_allow_from: list[str | int] = Field(default_factory=list, alias="groupAllowFrom")
    groups: dict[str, GroupConfig] | None = None
    require_mention: bool | None = Field(default=None, alias="requireMention")
    media_max_mb: float | None = Field(default=None, gt=0, alias="mediaMaxMb")
    reply_to_mode: str | None = Field(default=None, alias="replyToMode")
    rpc: RpcConfig | None = None


class ChannelDefaults(_ConfigModel):
    group_policy: GroupPolicy | None = Field(default=None, alias="groupPolicy")


class CommandsConfig(_ConfigModel):
    use_access_groups: bool = Field(default=True, alias="useAccessGroups")
    text_commands: bool = Field(default=True, alias="textCommands")
    control_commands: list[str] = Field(
        default_factory=lambda: ["new", "reset", "stop", "status", "help"],
        alias="controlCommands",
    )


class ChannelConfig(AccountConfig):
    default_account: str | None = Field(default=None, alias="defaultAccount")
    accounts: dict[str, AccountConfig] = Field(default_factory=dict)
    defaults: ChannelDefaults = Field(default_factory=ChannelDefaults)
    commands: CommandsConfig = Field(default_factory=CommandsConfig)


@dataclass(frozen=True)
class ResolvedAccount:
    account_id: str
    enabled: bool
    config: AccountConfig
    webhook_path: str
    group_policy: GroupPolicy
    name: str | None = None
    outbound_url: str | None = None
    outbound_headers: dict[str, str] = field(default_factory=dict)

    @property
    def dm_policy(self) -> DmPolicy:
        return self.config.dm.policy or DmPolicy.PAIRING

    @property
    def require_mention(self) -> bool:
        return True if self.config.require_mention is None else self.config.require_mention

    @property
    def media_max_mb(self) -> float:
        return self.config.media_max_mb or DEFAULT_MEDIA_MAX_MB

    @property
    def rpc_enabled(self) -> bool:
        return is_rpc_enabled(self.config.rpc)

    @property
    def configured(self) -> bool:
        return bool(self.outbound_url) or self.rpc_enabled


def is_rpc_enabled(rpc: RpcConfig | None) -> bool:
    return bool(rpc and rpc.enabled and rpc.rpc_url)


def load_channel_config(config_path: str) -> ChannelConfig:
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Channel config file not found: {config_path}")
    return ChannelConfig.model_validate(json.loads(path.read_text()))


def normalize_account_id(raw: str | None) -> str:
    value = (raw or "").strip().lower()
    return value or DEFAULT_ACCOUNT_ID


def list_account_ids(cfg: ChannelConfig) -> list[str]:
    ids = sorted(key for key in cfg.accounts if key)
    return ids or [DEFAULT_ACCOUNT_ID]


def resolve_default_account_id(cfg: ChannelConfig) -> str:
    if cfg.default_account and cfg.default_account.strip():
        return cfg.default_account.strip()
    ids = list_account_ids(cfg)
    if DEFAULT_ACCOUNT_ID in ids:
        return DEFAULT_ACCOUNT_ID
    return ids[0]


def merge_account_config(cfg: ChannelConfig, account_id: str) -> AccountConfig:
    base = cfg.model_dump(exclude_unset=True, exclude=_CHANNEL_ONLY_FIELDS)
    override = next(
        (value for key, value in cfg.accounts.items() if normalize_account_id(key) == account_id),
        None,
    )
    if override is not None:
        base.update(override.model_dump(exclude_unset=True))
    return AccountConfig.model_validate(base)


def resolve_account(cfg: ChannelConfig, account_id: str | None = None) -> ResolvedAccount:
    resolved_id = normalize_account_id(account_id)
    merged = merge_account_config(cfg, resolved_id)
    enabled = cfg.enabled is not False and merged.enabled is not False

    webhook_path = (merged.webhook_path or "").strip()
    if not webhook_path:
        webhook_path = (
            "/tgrelay" if resolved_id == DEFAULT_ACCOUNT_ID else f"/tgrelay/{resolved_id}"
        )

    group_policy = merged.group_policy or cfg.defaults.group_policy or GroupPolicy.ALLOWLIST

    return ResolvedAccount(
        account_id=resolved_id,
        enabled=enabled,
        config=merged,
        webhook_path=webhook_path,
        group_policy=group_policy,
        name=(merged.name or "").strip() or None,
        outbound_url=(merged.outbound_url or "").strip() or None,
        outbound_headers=dict(merged.outbound_headers),
    )


def list_enabled_accounts(cfg: ChannelConfig) -> list[ResolvedAccount]:
    accounts = (resolve_account(cfg, account_id) for account_id in list_account_ids(cfg))
    return [account for account in accounts if account.enabled]
