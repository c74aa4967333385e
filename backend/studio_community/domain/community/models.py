"""Domain models for community threads, messages and notifications."""

from __future__ import annotations

import html
from dataclasses import dataclass, field
from datetime import datetime, time
from typing import Optional, Tuple


ThreadKind = str
ThreadVisibility = str
MemberRole = str
Category = str
Priority = str
Channel = str

THREAD_KINDS = frozenset({"direct", "class", "retreat", "announcement", "support"})
VISIBILITIES = frozenset({"org", "roster", "staff", "private"})
ROLES = frozenset({"owner", "moderator", "member"})

# Which visibilities each thread kind may be created with.
KIND_VISIBILITY: dict[str, frozenset[str]] = {
	"direct": frozenset({"private"}),
	"class": frozenset({"roster", "staff", "private"}),
	"retreat": frozenset({"roster", "staff", "private"}),
	"announcement": frozenset({"org", "roster", "staff"}),
	"support": frozenset({"staff", "private"}),
}

CATEGORIES = (
	"new_messages",
	"class_reminders",
	"community_updates",
	"instructor_responses",
	"engagement_milestones",
	"system_alerts",
)
PRIORITIES = ("low", "medium", "high", "urgent")
CHANNELS = ("in_app", "email", "push", "sound")

MODERATION_STATES = frozenset({"pending", "approved", "rejected"})


@dataclass(slots=True)
class Thread:
	"""A conversation container scoped to one organization."""

	id: str
	organization_id: str
	kind: ThreadKind
	title: str
	visibility: ThreadVisibility
	created_by: str
	created_at: datetime
	last_message_at: datetime
	context_id: Optional[str] = None
	locked: bool = False
	archived: bool = False
	archived_at: Optional[datetime] = None
	auto_created: bool = False

	def accepts_messages_from(self, role: MemberRole) -> bool:
		if self.archived:
			return False
		if self.locked and role == "member":
			return False
		return True


@dataclass(slots=True)
class ThreadMember:
	thread_id: str
	user_id: str
	role: MemberRole
	joined_at: datetime
	last_read_at: datetime
	muted: bool = False
	notifications_enabled: bool = True

	def can_moderate(self) -> bool:
		return self.role in {"owner", "moderator"}

	def is_owner(self) -> bool:
		return self.role == "owner"


@dataclass(slots=True)
class AttachmentRef:
	attachment_id: str
	media_type: str
	size_bytes: Optional[int] = None
	file_name: Optional[str] = None
	remote_url: Optional[str] = None


@dataclass(slots=True)
class Message:
	id: str
	thread_id: str
	sender_id: str
	body: str
	created_at: datetime
	attachments: Tuple[AttachmentRef, ...] = ()
	reply_to_id: Optional[str] = None
	edited_at: Optional[datetime] = None
	deleted_at: Optional[datetime] = None
	flagged: bool = False
	flag_reason: Optional[str] = None

	@property
	def sort_key(self) -> Tuple[datetime, str]:
		return (self.created_at, self.id)

	@property
	def is_deleted(self) -> bool:
		return self.deleted_at is not None

	@property
	def body_html(self) -> str:
		"""Escaped HTML rendering of the body; the plain body stays authoritative."""
		return html.escape(self.body).replace("\n", "<br>")


@dataclass(slots=True)
class NotificationPreference:
	user_id: str
	in_app: bool = True
	email: bool = True
	push: bool = True
	sound: bool = True
	new_messages: bool = True
	class_reminders: bool = True
	community_updates: bool = True
	instructor_responses: bool = True
	engagement_milestones: bool = True
	system_alerts: bool = True
	quiet_hours_enabled: bool = True
	quiet_hours_start: time = time(22, 0)
	quiet_hours_end: time = time(7, 0)
	timezone: str = "UTC"

	def channel_enabled(self, channel: Channel) -> bool:
		return bool(getattr(self, channel))

	def category_enabled(self, category: Category) -> bool:
		return bool(getattr(self, category))


@dataclass(slots=True)
class Notification:
	id: str
	user_id: str
	category: Category
	priority: Priority
	title: str
	body: str
	source_ref: str
	created_at: datetime
	thread_id: Optional[str] = None
	read: bool = False
	read_at: Optional[datetime] = None
	channels: Tuple[Channel, ...] = ()


@dataclass(slots=True)
class DeliveryJob:
	"""Unit of work handed to the external delivery dispatcher."""

	user_id: str
	channel: Channel
	title: str
	body: str
	source_ref: str
	notification_id: str
	priority: Priority

	def to_fields(self) -> dict[str, str]:
		return {
			"user_id": self.user_id,
			"channel": self.channel,
			"title": self.title,
			"body": self.body,
			"source_ref": self.source_ref,
			"notification_id": self.notification_id,
			"priority": self.priority,
		}


@dataclass(slots=True)
class ModerationItem:
	id: str
	message_id: str
	thread_id: str
	organization_id: str
	reporter_id: str
	reason: str
	created_at: datetime
	state: str = "pending"
	reviewed_by: Optional[str] = None
	reviewed_at: Optional[datetime] = None
	notes: Optional[str] = None


@dataclass(slots=True)
class ThreadPage:
	items: list[Thread]
	next_cursor: Optional[str]


@dataclass(slots=True)
class MessagePage:
	items: list[Message]
	next_cursor: Optional[str]


@dataclass(slots=True)
class NotificationEvent:
	"""Something that may notify members: a posted message or an external trigger."""

	category: Category
	title: str
	body: str
	source_ref: str
	actor_id: Optional[str] = None
	thread_id: Optional[str] = None
	priority: Optional[Priority] = None
	metadata: dict[str, str] = field(default_factory=dict)
