"""Error taxonomy for the community core."""

from __future__ import annotations

from fastapi import status

if hasattr(status, "HTTP_422_UNPROCESSABLE_CONTENT"):
	_HTTP_422 = status.HTTP_422_UNPROCESSABLE_CONTENT
else:  # pragma: no cover - older Starlette builds
	_HTTP_422 = status.HTTP_422_UNPROCESSABLE_ENTITY


class CommunityError(Exception):
	"""Base class for caller-facing community errors."""

	status_code: int = status.HTTP_400_BAD_REQUEST
	code: str = "community_error"
	retryable: bool = False

	def __init__(self, detail: str | None = None) -> None:
		super().__init__(detail or self.code)
		self.detail = detail or self.code


class NotAMember(CommunityError):
	status_code = status.HTTP_403_FORBIDDEN
	code = "not_member"


class Forbidden(CommunityError):
	status_code = status.HTTP_403_FORBIDDEN
	code = "forbidden"


class ThreadLocked(CommunityError):
	"""Thread is archived, or locked against member-role senders."""

	status_code = status.HTTP_409_CONFLICT
	code = "thread_locked"


class DuplicateMember(CommunityError):
	status_code = status.HTTP_409_CONFLICT
	code = "duplicate_member"


class LastOwner(CommunityError):
	status_code = status.HTTP_409_CONFLICT
	code = "last_owner"


class InvalidReply(CommunityError):
	status_code = _HTTP_422
	code = "invalid_reply"


class InvalidVisibility(CommunityError):
	status_code = _HTTP_422
	code = "invalid_visibility"


class InvalidMessage(CommunityError):
	status_code = _HTTP_422
	code = "invalid_message"


class InvalidPreference(CommunityError):
	status_code = _HTTP_422
	code = "invalid_preference"


class InvalidCursor(CommunityError):
	status_code = status.HTTP_400_BAD_REQUEST
	code = "invalid_cursor"


class ThreadNotFound(CommunityError):
	status_code = status.HTTP_404_NOT_FOUND
	code = "thread_not_found"


class MessageNotFound(CommunityError):
	status_code = status.HTTP_404_NOT_FOUND
	code = "message_not_found"


class NotificationNotFound(CommunityError):
	status_code = status.HTTP_404_NOT_FOUND
	code = "notification_not_found"


class ModerationItemNotFound(CommunityError):
	status_code = status.HTTP_404_NOT_FOUND
	code = "moderation_item_not_found"


class StoreUnavailable(CommunityError):
	"""Transient data-access failure; nothing was committed."""

	status_code = status.HTTP_503_SERVICE_UNAVAILABLE
	code = "store_unavailable"
	retryable = True


class DispatchEnqueueFailed(Exception):
	"""The delivery dispatcher refused or could not take a job.

	Never surfaced to callers of the messaging API.
	"""

	def __init__(self, channel: str, reason: str) -> None:
		super().__init__(f"{channel}: {reason}")
		self.channel = channel
		self.reason = reason
