from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

GateMode = Literal["restricted", "unlocked"]
IdentityKind = Literal["business", "individual", "unknown"]
FeedEventType = Literal["subscribed", "message.created", "error"]


class CreateThreadRequest(BaseModel):
    participant_id: str = Field(min_length=1, max_length=128)
    subject_ref: str | None = Field(default=None, max_length=128)

    @field_validator("participant_id")
    @classmethod
    def _normalize_participant_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("participant_id cannot be blank")
        return normalized

    @field_validator("subject_ref")
    @classmethod
    def _normalize_subject_ref(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None


class ThreadItem(BaseModel):
    thread_id: str
    subject_ref: str | None = None
    participant_ids: list[str]
    created_at: datetime


class MessageItem(BaseModel):
    message_id: str
    thread_id: str
    sender_id: str
    content: str
    sent_at: datetime
    sequence: int


class MessageListResponse(BaseModel):
    items: list[MessageItem]


class PostMessageRequest(BaseModel):
    content: str = Field(min_length=1, max_length=4000)

    @field_validator("content")
    @classmethod
    def _normalize_content(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("content cannot be blank")
        return normalized


class PostMessageResponse(BaseModel):
    message: MessageItem
    mode: GateMode
    flagged: bool
    advisory: str | None = None


class OtherPartyItem(BaseModel):
    kind: IdentityKind
    user_id: str | None = None
    display_name: str
    avatar_url: str | None = None


class ThreadSummaryItem(BaseModel):
    thread_id: str
    subject_ref: str | None = None
    subject_label: str | None = None
    other_party: OtherPartyItem
    last_message_preview: str | None = None
    last_message_at: datetime | None = None
    created_at: datetime


class InboxResponse(BaseModel):
    items: list[ThreadSummaryItem]


class GateStatusResponse(BaseModel):
    thread_id: str
    mode: GateMode
    available_presets: list[str]


class ThreadDetailResponse(BaseModel):
    thread: ThreadItem
    mode: GateMode
    available_presets: list[str]
    messages: list[MessageItem]


class PresetCatalogResponse(BaseModel):
    items: list[str]


class ClassifyRequest(BaseModel):
    text: str = Field(max_length=4000)


class ClassifyResponse(BaseModel):
    text: str
    flagged: bool
    advisory: str | None = None
    reasons: list[str]


class FeedEnvelope(BaseModel):
    type: FeedEventType
    data: dict[str, Any] = Field(default_factory=dict)
