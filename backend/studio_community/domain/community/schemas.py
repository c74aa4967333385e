"""Pydantic schemas for the community API."""

from __future__ import annotations

from datetime import datetime, time
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from studio_community.domain.community import models

ThreadKindLiteral = Literal["direct", "class", "retreat", "announcement", "support"]
VisibilityLiteral = Literal["org", "roster", "staff", "private"]
RoleLiteral = Literal["owner", "moderator", "member"]
CategoryLiteral = Literal[
    "new_messages",
    "class_reminders",
    "community_updates",
    "instructor_responses",
    "engagement_milestones",
    "system_alerts",
]
PriorityLiteral = Literal["low", "medium", "high", "urgent"]


class ThreadCreateRequest(BaseModel):
    kind: ThreadKindLiteral
    title: str = Field(..., min_length=1, max_length=200)
    visibility: VisibilityLiteral
    context_id: Optional[str] = Field(default=None, max_length=128)
    member_ids: List[str] = Field(default_factory=list, max_length=500)


class ThreadDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    kind: str
    title: str
    visibility: str
    context_id: Optional[str] = None
    locked: bool
    archived: bool
    archived_at: Optional[datetime] = None
    auto_created: bool
    created_by: str
    created_at: datetime
    last_message_at: datetime


class ThreadListResponse(BaseModel):
    items: List[ThreadDTO]
    next_cursor: Optional[str] = None


class MemberAddRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=128)
    role: RoleLiteral = "member"


class MemberSettingsRequest(BaseModel):
    muted: Optional[bool] = None
    notifications_enabled: Optional[bool] = None


class ThreadMemberDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    thread_id: str
    user_id: str
    role: str
    joined_at: datetime
    last_read_at: datetime
    muted: bool
    notifications_enabled: bool


class ThreadMembersResponse(BaseModel):
    items: List[ThreadMemberDTO]


class LockRequest(BaseModel):
    locked: bool


class AttachmentIn(BaseModel):
    attachment_id: Optional[str] = Field(default=None, max_length=64)
    media_type: str = Field(..., min_length=1, max_length=128)
    size_bytes: Optional[int] = Field(default=None, ge=0)
    file_name: Optional[str] = Field(default=None, max_length=255)
    remote_url: Optional[str] = Field(default=None, max_length=2048)


class AttachmentDTO(AttachmentIn):
    model_config = ConfigDict(from_attributes=True)

    attachment_id: str


class MessagePostRequest(BaseModel):
    body: str = Field(default="", max_length=20000)
    attachments: List[AttachmentIn] = Field(default_factory=list)
    reply_to_id: Optional[str] = None


class MessageEditRequest(BaseModel):
    body: str = Field(..., max_length=20000)


class FlagRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class MessageDTO(BaseModel):
    id: str
    thread_id: str
    sender_id: str
    body: Optional[str] = None
    body_html: Optional[str] = None
    attachments: List[AttachmentDTO] = Field(default_factory=list)
    reply_to_id: Optional[str] = None
    created_at: datetime
    edited_at: Optional[datetime] = None
    deleted: bool = False
    flagged: bool = False
    flag_reason: Optional[str] = None

    @classmethod
    def from_message(cls, message: models.Message) -> "MessageDTO":
        # Soft-deleted bodies stay in the store for moderation but are not served.
        hidden = message.is_deleted
        return cls(
            id=message.id,
            thread_id=message.thread_id,
            sender_id=message.sender_id,
            body=None if hidden else message.body,
            body_html=None if hidden else message.body_html,
            attachments=[] if hidden else [AttachmentDTO.model_validate(item) for item in message.attachments],
            reply_to_id=message.reply_to_id,
            created_at=message.created_at,
            edited_at=message.edited_at,
            deleted=hidden,
            flagged=message.flagged,
            flag_reason=message.flag_reason,
        )


class MessageListResponse(BaseModel):
    items: List[MessageDTO]
    next_cursor: Optional[str] = None


class ReadRequest(BaseModel):
    upto_message_id: str


class ReadCursorResponse(BaseModel):
    thread_id: str
    last_read_at: datetime
    unread_count: int


class UnreadCountResponse(BaseModel):
    unread_count: int


class ModerationItemDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    message_id: str
    thread_id: str
    reporter_id: str
    reason: str
    state: str
    created_at: datetime
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    notes: Optional[str] = None


class ModerationQueueResponse(BaseModel):
    items: List[ModerationItemDTO]


class ReviewRequest(BaseModel):
    decision: Literal["approved", "rejected"]
    notes: Optional[str] = Field(default=None, max_length=1000)


class NotificationDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    category: str
    priority: str
    title: str
    body: str
    source_ref: str
    thread_id: Optional[str] = None
    created_at: datetime
    read: bool
    read_at: Optional[datetime] = None
    channels: List[str] = Field(default_factory=list)


class NotificationListResponse(BaseModel):
    items: List[NotificationDTO]
    next_cursor: Optional[str] = None
    unread_count: int


class MarkAllReadResponse(BaseModel):
    updated: int


class PreferencesDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    in_app: bool
    email: bool
    push: bool
    sound: bool
    new_messages: bool
    class_reminders: bool
    community_updates: bool
    instructor_responses: bool
    engagement_milestones: bool
    system_alerts: bool
    quiet_hours_enabled: bool
    quiet_hours_start: time
    quiet_hours_end: time
    timezone: str


class PreferencesUpdateRequest(BaseModel):
    in_app: Optional[bool] = None
    email: Optional[bool] = None
    push: Optional[bool] = None
    sound: Optional[bool] = None
    new_messages: Optional[bool] = None
    class_reminders: Optional[bool] = None
    community_updates: Optional[bool] = None
    instructor_responses: Optional[bool] = None
    engagement_milestones: Optional[bool] = None
    system_alerts: Optional[bool] = None
    quiet_hours_enabled: Optional[bool] = None
    quiet_hours_start: Optional[time] = None
    quiet_hours_end: Optional[time] = None
    timezone: Optional[str] = Field(default=None, max_length=64)


class ClassThreadCreateRequest(BaseModel):
    class_id: str = Field(..., min_length=1, max_length=128)
    class_name: str = Field(..., min_length=1, max_length=160)
    instructor_id: Optional[str] = None
    roster_ids: List[str] = Field(default_factory=list, max_length=1000)
    start_time: Optional[datetime] = None


class ClassThreadResponse(BaseModel):
    thread: ThreadDTO
    welcome_message: MessageDTO


class ClassReminderRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    body: str = Field(..., min_length=1, max_length=2000)


class NotifyRequest(BaseModel):
    category: CategoryLiteral
    title: str = Field(..., min_length=1, max_length=200)
    body: str = Field(..., min_length=1, max_length=2000)
    source_ref: str = Field(..., min_length=1, max_length=256)
    user_ids: List[str] = Field(..., min_length=1, max_length=1000)
    priority: Optional[PriorityLiteral] = None
    thread_id: Optional[str] = None


class RoutingOutcomeDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    notification_id: Optional[str] = None
    enqueued: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)
    skip_reason: Optional[str] = None
    error: Optional[str] = None


class NotifyResponse(BaseModel):
    items: List[RoutingOutcomeDTO]
