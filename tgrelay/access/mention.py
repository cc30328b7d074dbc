"""Mention detection and the group mention gate."""

from __future__ import annotations

from dataclasses import dataclass

from tgrelay.webhook.models import InboundMessage, TgMessageEntity

MENTION_ENTITY_TYPES = frozenset({"mention", "text_mention"})


@dataclass(frozen=True)
class MentionInfo:
    has_any_mention: bool
    was_mentioned: bool


@dataclass(frozen=True)
class MentionGateResult:
    should_skip: bool
    effective_was_mentioned: bool


def normalize_username(raw: str | None) -> str:
    return (raw or "").strip().lower().removeprefix("@")


def entity_text(text: str, entity: TgMessageEntity) -> str:
    """Slice ``text`` by an entity's offset/length, which count UTF-16 code units."""
    encoded = text.encode("utf-16-le")
    start = entity.offset * 2
    end = (entity.offset + entity.length) * 2
    return encoded[start:end].decode("utf-16-le", errors="ignore")


def extract_mention_info(message: InboundMessage, bot_username: str | None) -> MentionInfo:
    mentions = [e for e in message.entities if e.type in MENTION_ENTITY_TYPES]
    has_any_mention = bool(mentions)
    bot = normalize_username(bot_username)
    if not bot:
        return MentionInfo(has_any_mention=has_any_mention, was_mentioned=False)

    def addresses_bot(entity: TgMessageEntity) -> bool:
        if entity.type == "text_mention":
            return bool(entity.user and entity.user.username) and (
                normalize_username(entity.user.username) == bot
            )
        return normalize_username(entity_text(message.entity_text, entity)) == bot

    return MentionInfo(
        has_any_mention=has_any_mention,
        was_mentioned=any(addresses_bot(e) for e in mentions),
    )


def resolve_mention_gating_with_bypass(
    *,
    is_group: bool,
    require_mention: bool,
    can_detect_mention: bool,
    was_mentioned: bool,
    has_any_mention: bool,
    allow_text_commands: bool,
    has_control_command: bool,
    command_authorized: bool,
    implicit_mention: bool = False,
) -> MentionGateResult:
    """Decide whether a message that may need a mention gets through.

    An authorized control command with no mention at all counts as
    addressing the bot, so ``/reset`` works in a group without ``@bot``.
    """
    bypass = (
        is_group
        and require_mention
        and not was_mentioned
        and not has_any_mention
        and allow_text_commands
        and command_authorized
        and has_control_command
    )
    effective = was_mentioned or implicit_mention or bypass
    return MentionGateResult(
        should_skip=require_mention and can_detect_mention and not effective,
        effective_was_mentioned=effective,
    )
