"""Authorization and invariant checks for threads and messages."""

from __future__ import annotations

from typing import Optional

from studio_community.domain.community import exceptions, models


def ensure_kind_visibility(kind: str, visibility: str) -> None:
	allowed = models.KIND_VISIBILITY.get(kind)
	if allowed is None:
		raise exceptions.InvalidVisibility(f"unknown_kind:{kind}")
	if visibility not in models.VISIBILITIES:
		raise exceptions.InvalidVisibility(f"unknown_visibility:{visibility}")
	if visibility not in allowed:
		raise exceptions.InvalidVisibility(f"{kind}_cannot_be_{visibility}")


def ensure_role(role: str) -> None:
	if role not in models.ROLES:
		raise exceptions.Forbidden(f"unknown_role:{role}")


def ensure_thread(thread: Optional[models.Thread]) -> models.Thread:
	if thread is None:
		raise exceptions.ThreadNotFound()
	return thread


def ensure_member(member: Optional[models.ThreadMember]) -> models.ThreadMember:
	if member is None:
		raise exceptions.NotAMember()
	return member


def ensure_not_member(member: Optional[models.ThreadMember]) -> None:
	if member is not None:
		raise exceptions.DuplicateMember()


def ensure_not_archived(thread: models.Thread) -> None:
	if thread.archived:
		raise exceptions.ThreadLocked("thread_archived")


def ensure_can_post(thread: models.Thread, member: models.ThreadMember) -> None:
	ensure_not_archived(thread)
	if not thread.accepts_messages_from(member.role):
		raise exceptions.ThreadLocked()


def ensure_moderator(member: Optional[models.ThreadMember]) -> models.ThreadMember:
	if member is None or not member.can_moderate():
		raise exceptions.Forbidden()
	return member


def ensure_can_remove(member: models.ThreadMember, *, owner_count: int) -> None:
	if member.is_owner() and owner_count <= 1:
		raise exceptions.LastOwner()


def ensure_sender(message: models.Message, editor_id: str) -> None:
	if message.sender_id != editor_id:
		raise exceptions.Forbidden("not_sender")


def ensure_can_delete(message: models.Message, actor: models.ThreadMember) -> None:
	if message.sender_id == actor.user_id:
		return
	if not actor.can_moderate():
		raise exceptions.Forbidden()


def ensure_visible(message: Optional[models.Message]) -> models.Message:
	if message is None or message.is_deleted:
		raise exceptions.MessageNotFound()
	return message


def ensure_reply_target(parent: Optional[models.Message], thread_id: str) -> models.Message:
	if parent is None or parent.thread_id != thread_id or parent.is_deleted:
		raise exceptions.InvalidReply()
	return parent
