"""Telegram-shaped update models and the normalized inbound envelope.

Only the subset of Bot API fields needed for routing and delivery is
modelled; unknown fields are ignored.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from tgrelay.models import ChatType

MEDIA_PLACEHOLDER = "<media:attachment>"


class _TgModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


class TgUser(_TgModel):
    id: int
    is_bot: bool = False
    first_name: str | None = None
    last_name: str | None = None
    username: str | None = None


class TgChat(_TgModel):
    id: int
    type: ChatType
    title: str | None = None
    username: str | None = None


class TgMessageEntity(_TgModel):
    type: str
    offset: int
    length: int
    user: TgUser | None = None


class TgReplyRef(_TgModel):
    message_id: int


class TgMessage(_TgModel):
    message_id: int
    message_thread_id: int | None = None
    from_user: TgUser | None = Field(default=None, alias="from")
    date: int | None = None
    chat: TgChat
    reply_to_message: TgReplyRef | None = None
    text: str | None = None
    entities: list[TgMessageEntity] | None = None
    caption: str | None = None
    caption_entities: list[TgMessageEntity] | None = None
    photo: list[dict[str, Any]] | None = None
    document: dict[str, Any] | None = None
    audio: dict[str, Any] | None = None
    video: dict[str, Any] | None = None
    voice: dict[str, Any] | None = None
    sticker: dict[str, Any] | None = None


class TgUpdate(_TgModel):
    update_id: int
    message: TgMessage | None = None
    edited_message: TgMessage | None = None
    channel_post: TgMessage | None = None

    @property
    def effective_message(self) -> TgMessage | None:
        return self.message or self.edited_message or self.channel_post


@dataclass(frozen=True)
class InboundMessage:
    """Normalized view of one inbound message, read-only during processing."""

    message_id: int
    chat_id: int
    chat_type: ChatType
    sender_id: int
    text: str
    has_media: bool
    chat_title: str | None = None
    sender_username: str | None = None
    sender_name: str = ""
    is_bot: bool = False
    reply_to_message_id: int | None = None
    thread_id: int | None = None
    entities: tuple[TgMessageEntity, ...] = field(default_factory=tuple)
    entity_text: str = ""
    timestamp: int | None = None

    @property
    def is_group(self) -> bool:
        return self.chat_type.is_group

    @property
    def raw_body(self) -> str:
        """Text to hand to the agent; media-only messages get a placeholder."""
        if self.text:
            return self.text
        return MEDIA_PLACEHOLDER if self.has_media else ""


def normalize_message(message: TgMessage) -> InboundMessage:
    sender = message.from_user
    sender_name = ""
    if sender is not None:
        sender_name = " ".join(part for part in (sender.first_name, sender.last_name) if part)

    has_media = bool(
        message.photo
        or message.document
        or message.audio
        or message.video
        or message.voice
        or message.sticker
    )
    entities = message.entities if message.entities is not None else message.caption_entities

    return InboundMessage(
        message_id=message.message_id,
        chat_id=message.chat.id,
        chat_type=message.chat.type,
        chat_title=message.chat.title,
        sender_id=sender.id if sender else 0,
        sender_username=sender.username if sender else None,
        sender_name=sender_name,
        is_bot=bool(sender and sender.is_bot),
        text=(message.text or message.caption or "").strip(),
        has_media=has_media,
        reply_to_message_id=(
            message.reply_to_message.message_id if message.reply_to_message else None
        ),
        thread_id=message.message_thread_id,
        entities=tuple(entities or ()),
        entity_text=message.text or message.caption or "",
        timestamp=message.date,
    )


def normalize_update(update: TgUpdate) -> InboundMessage | None:
    message = update.effective_message
    if message is None:
        return None
    return normalize_message(message)
