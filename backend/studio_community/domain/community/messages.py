"""Message posting, editing, flagging, soft deletion and moderation review."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Mapping, Optional

import ulid

from studio_community.api.pagination import encode_cursor
from studio_community.domain.community import exceptions, models, policy, repo
from studio_community.domain.community.attachments import normalize_attachments
from studio_community.domain.community.locks import thread_locks
from studio_community.domain.community.read_state import ReadTracker
from studio_community.domain.community.routing import NotificationRouter
from studio_community.domain.community.threads import clamp_limit, parse_cursor
from studio_community.obs import metrics as obs_metrics
from studio_community.settings import settings

_LOG = logging.getLogger(__name__)

_PREVIEW_LENGTH = 140
_DECISIONS = frozenset({"approved", "rejected"})


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


def _validate_body(body: str, *, allow_empty: bool = False) -> str:
	if body is None:
		body = ""
	if len(body) > settings.message_max_length:
		raise exceptions.InvalidMessage("body_too_long")
	if not allow_empty and not body.strip():
		raise exceptions.InvalidMessage("empty_body")
	return body


def preview(message: models.Message) -> str:
	text = " ".join(message.body.split())
	if not text and message.attachments:
		return "Sent an attachment"
	if len(text) > _PREVIEW_LENGTH:
		return text[: _PREVIEW_LENGTH - 1] + "…"
	return text


class MessageService:
	def __init__(
		self,
		repository: repo.CommunityRepository | None = None,
		*,
		router: NotificationRouter | None = None,
		read_tracker: ReadTracker | None = None,
		clock: Callable[[], datetime] | None = None,
	) -> None:
		self._repo = repository or repo.CommunityRepository()
		self._router = router or NotificationRouter(self._repo)
		self._reads = read_tracker or ReadTracker(self._repo)
		self._clock = clock or _utcnow

	async def post_message(
		self,
		thread_id: str,
		sender_id: str,
		body: str,
		attachments: Optional[Iterable[Mapping[str, object] | models.AttachmentRef]] = None,
		reply_to_id: Optional[str] = None,
	) -> models.Message:
		items = normalize_attachments(attachments)
		body = _validate_body(body, allow_empty=bool(items))
		async with thread_locks.hold(thread_id):
			thread = policy.ensure_thread(await self._repo.get_thread(thread_id))
			sender = policy.ensure_member(await self._repo.get_member(thread_id, sender_id))
			policy.ensure_can_post(thread, sender)
			if reply_to_id:
				policy.ensure_reply_target(await self._repo.get_message(reply_to_id), thread_id)
			message = await self._repo.append_message(
				models.Message(
					id=str(ulid.new()),
					thread_id=thread_id,
					sender_id=sender_id,
					body=body,
					created_at=self._clock(),
					attachments=tuple(items),
					reply_to_id=reply_to_id or None,
				)
			)
		obs_metrics.inc_message_posted()
		_LOG.info("message.posted", extra={"thread_id": thread_id, "message_id": message.id})
		# Cancelling the caller past this point must not skip settling or routing.
		tail = self._router.track(self._after_post(thread, message))
		await asyncio.shield(tail)
		return message

	async def _after_post(self, thread: models.Thread, message: models.Message) -> None:
		# The post is committed at this point; failures below are logged, not raised.
		try:
			members = await self._repo.list_members(thread.id)
		except exceptions.CommunityError:
			_LOG.error("message.recipients_unavailable", extra={"message_id": message.id})
			return
		recipients = [m for m in members if m.user_id != message.sender_id]
		try:
			await self._reads.settle_after_post(message, recipients)
		except exceptions.CommunityError:
			_LOG.warning("message.settle_failed", extra={"message_id": message.id})
		event = models.NotificationEvent(
			category="new_messages",
			title=f"New message in {thread.title}",
			body=preview(message),
			source_ref=message.id,
			actor_id=message.sender_id,
			thread_id=thread.id,
		)
		self._router.schedule(event, recipients)

	async def edit_message(self, message_id: str, editor_id: str, new_body: str) -> models.Message:
		message = policy.ensure_visible(await self._repo.get_message(message_id))
		policy.ensure_sender(message, editor_id)
		new_body = _validate_body(new_body, allow_empty=bool(message.attachments))
		async with thread_locks.hold(message.thread_id):
			policy.ensure_member(await self._repo.get_member(message.thread_id, editor_id))
			current = policy.ensure_visible(await self._repo.get_message(message_id))
			current.body = new_body
			current.edited_at = self._clock()
			updated = await self._repo.update_message(current)
		obs_metrics.inc_message_mutation("edit")
		return updated

	async def flag_message(self, message_id: str, flagger_id: str, reason: str) -> models.Message:
		"""Flag for moderation; re-flagging an outstanding flag only refreshes the reason."""
		reason = (reason or "").strip()
		if not reason:
			raise exceptions.InvalidMessage("flag_reason_required")
		message = policy.ensure_visible(await self._repo.get_message(message_id))
		thread = policy.ensure_thread(await self._repo.get_thread(message.thread_id))
		policy.ensure_member(await self._repo.get_member(thread.id, flagger_id))
		async with thread_locks.hold(thread.id):
			current = policy.ensure_visible(await self._repo.get_message(message_id))
			pending = await self._repo.pending_item_for_message(message_id)
			if current.flagged and pending is not None:
				pending.reason = reason
				await self._repo.save_moderation_item(pending)
			else:
				await self._repo.save_moderation_item(
					models.ModerationItem(
						id=str(ulid.new()),
						message_id=message_id,
						thread_id=thread.id,
						organization_id=thread.organization_id,
						reporter_id=flagger_id,
						reason=reason,
						created_at=self._clock(),
					)
				)
			current.flagged = True
			current.flag_reason = reason
			updated = await self._repo.update_message(current)
		obs_metrics.inc_message_mutation("flag")
		_LOG.info("message.flagged", extra={"message_id": message_id, "thread_id": thread.id})
		return updated

	async def delete_message(self, message_id: str, actor_id: str) -> models.Message:
		message = await self._repo.get_message(message_id)
		if message is None:
			raise exceptions.MessageNotFound()
		actor = policy.ensure_member(await self._repo.get_member(message.thread_id, actor_id))
		policy.ensure_can_delete(message, actor)
		if message.is_deleted:
			return message
		async with thread_locks.hold(message.thread_id):
			current = await self._repo.get_message(message_id)
			if current is None:
				raise exceptions.MessageNotFound()
			if current.is_deleted:
				return current
			current.deleted_at = self._clock()
			updated = await self._repo.update_message(current)
		obs_metrics.inc_message_mutation("delete")
		_LOG.info("message.deleted", extra={"message_id": message_id, "actor_id": actor_id})
		return updated

	async def list_messages(
		self,
		thread_id: str,
		viewer_id: str,
		*,
		after: Optional[str] = None,
		limit: Optional[int] = None,
		include_deleted: bool = False,
	) -> models.MessagePage:
		policy.ensure_thread(await self._repo.get_thread(thread_id))
		viewer = policy.ensure_member(await self._repo.get_member(thread_id, viewer_id))
		if include_deleted and not viewer.can_moderate():
			raise exceptions.Forbidden("include_deleted_requires_moderator")
		page_size = clamp_limit(limit, settings.message_page_size)
		rows = await self._repo.list_messages(
			thread_id,
			after=parse_cursor(after),
			limit=page_size + 1,
			include_deleted=include_deleted,
		)
		items = rows[:page_size]
		next_cursor = None
		if len(rows) > page_size:
			next_cursor = encode_cursor(items[-1].created_at, items[-1].id)
		return models.MessagePage(items=items, next_cursor=next_cursor)

	async def moderation_queue(
		self,
		organization_id: str,
		reviewer_id: str,
		*,
		state: Optional[str] = "pending",
	) -> List[models.ModerationItem]:
		"""Flags in threads the reviewer owns or moderates."""
		if state is not None and state not in models.MODERATION_STATES:
			raise exceptions.InvalidMessage("invalid_moderation_state")
		items = await self._repo.list_moderation_items(organization_id, state=state)
		visible: List[models.ModerationItem] = []
		moderates: dict[str, bool] = {}
		for item in items:
			if item.thread_id not in moderates:
				member = await self._repo.get_member(item.thread_id, reviewer_id)
				moderates[item.thread_id] = bool(member and member.can_moderate())
			if moderates[item.thread_id]:
				visible.append(item)
		return visible

	async def review_flag(
		self,
		item_id: str,
		reviewer_id: str,
		decision: str,
		notes: Optional[str] = None,
	) -> models.ModerationItem:
		if decision not in _DECISIONS:
			raise exceptions.InvalidMessage("invalid_decision")
		item = await self._repo.get_moderation_item(item_id)
		if item is None:
			raise exceptions.ModerationItemNotFound()
		policy.ensure_moderator(await self._repo.get_member(item.thread_id, reviewer_id))
		if item.state != "pending":
			return item
		async with thread_locks.hold(item.thread_id):
			message = await self._repo.get_message(item.message_id)
			now = self._clock()
			if message is not None:
				if decision == "rejected":
					if not message.is_deleted:
						message.deleted_at = now
				else:
					message.flagged = False
					message.flag_reason = None
				await self._repo.update_message(message)
			item.state = decision
			item.reviewed_by = reviewer_id
			item.reviewed_at = now
			item.notes = notes
			reviewed = await self._repo.save_moderation_item(item)
		obs_metrics.inc_message_mutation(f"review_{decision}")
		_LOG.info("moderation.reviewed", extra={"item_id": item_id, "decision": decision})
		return reviewed
