"""Thread lifecycle and membership."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, List, Optional

import ulid

from studio_community.api.pagination import decode_cursor, encode_cursor
from studio_community.domain.community import exceptions, models, policy, repo
from studio_community.domain.community.locks import thread_locks
from studio_community.obs import metrics as obs_metrics
from studio_community.settings import settings

_LOG = logging.getLogger(__name__)

_MAX_PAGE = 200


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


def clamp_limit(limit: Optional[int], default: int) -> int:
	if limit is None:
		return default
	return max(1, min(int(limit), _MAX_PAGE))


def parse_cursor(cursor: Optional[str]) -> Optional[repo.Keyset]:
	if not cursor:
		return None
	try:
		return decode_cursor(cursor)
	except ValueError as exc:
		raise exceptions.InvalidCursor() from exc


class ThreadService:
	def __init__(
		self,
		repository: repo.CommunityRepository | None = None,
		*,
		clock: Callable[[], datetime] | None = None,
	) -> None:
		self._repo = repository or repo.CommunityRepository()
		self._clock = clock or _utcnow

	async def create_thread(
		self,
		organization_id: str,
		kind: str,
		title: str,
		visibility: str,
		creator_id: str,
		*,
		context_id: Optional[str] = None,
		auto_created: bool = False,
	) -> models.Thread:
		policy.ensure_kind_visibility(kind, visibility)
		now = self._clock()
		thread = models.Thread(
			id=str(ulid.new()),
			organization_id=organization_id,
			kind=kind,
			title=title.strip(),
			visibility=visibility,
			created_by=creator_id,
			created_at=now,
			last_message_at=now,
			context_id=context_id,
			auto_created=auto_created,
		)
		owner = models.ThreadMember(
			thread_id=thread.id,
			user_id=creator_id,
			role="owner",
			joined_at=now,
			last_read_at=now,
		)
		created = await self._repo.create_thread(thread, owner)
		obs_metrics.inc_thread_created(kind)
		_LOG.info("thread.created", extra={"thread_id": created.id, "kind": kind, "organization_id": organization_id})
		return created

	async def get_thread(self, thread_id: str, viewer_id: Optional[str] = None) -> models.Thread:
		thread = policy.ensure_thread(await self._repo.get_thread(thread_id))
		if viewer_id is not None:
			policy.ensure_member(await self._repo.get_member(thread_id, viewer_id))
		return thread

	async def list_members(self, thread_id: str, viewer_id: Optional[str] = None) -> List[models.ThreadMember]:
		await self.get_thread(thread_id, viewer_id)
		return await self._repo.list_members(thread_id)

	async def add_member(
		self,
		thread_id: str,
		user_id: str,
		role: str = "member",
		*,
		by_user_id: Optional[str] = None,
	) -> models.ThreadMember:
		policy.ensure_role(role)
		thread = policy.ensure_thread(await self._repo.get_thread(thread_id))
		if by_user_id is not None:
			policy.ensure_moderator(await self._repo.get_member(thread_id, by_user_id))
		policy.ensure_not_archived(thread)
		async with thread_locks.hold(thread_id):
			policy.ensure_not_member(await self._repo.get_member(thread_id, user_id))
			now = self._clock()
			member = await self._repo.add_member(
				models.ThreadMember(
					thread_id=thread_id,
					user_id=user_id,
					role=role,
					joined_at=now,
					last_read_at=now,
				)
			)
		obs_metrics.inc_membership("add")
		return member

	async def remove_member(self, thread_id: str, user_id: str, *, by_user_id: Optional[str] = None) -> None:
		"""Remove a member; absent members are a no-op, the last owner stays."""
		policy.ensure_thread(await self._repo.get_thread(thread_id))
		if by_user_id is not None and by_user_id != user_id:
			policy.ensure_moderator(await self._repo.get_member(thread_id, by_user_id))
		async with thread_locks.hold(thread_id):
			member = await self._repo.get_member(thread_id, user_id)
			if member is None:
				return
			owner_count = await self._repo.count_role(thread_id, "owner")
			policy.ensure_can_remove(member, owner_count=owner_count)
			removed = await self._repo.remove_member(thread_id, user_id)
		if removed:
			obs_metrics.inc_membership("remove")

	async def set_locked(self, thread_id: str, locked: bool, by_user_id: str) -> models.Thread:
		policy.ensure_thread(await self._repo.get_thread(thread_id))
		policy.ensure_moderator(await self._repo.get_member(thread_id, by_user_id))
		async with thread_locks.hold(thread_id):
			thread = await self._repo.update_thread_flags(thread_id, locked=locked)
		_LOG.info("thread.lock_changed", extra={"thread_id": thread_id, "locked": locked})
		return policy.ensure_thread(thread)

	async def archive_thread(self, thread_id: str, by_user_id: str) -> models.Thread:
		thread = policy.ensure_thread(await self._repo.get_thread(thread_id))
		policy.ensure_moderator(await self._repo.get_member(thread_id, by_user_id))
		if thread.archived:
			return thread
		async with thread_locks.hold(thread_id):
			updated = await self._repo.update_thread_flags(thread_id, archived=True, archived_at=self._clock())
		_LOG.info("thread.archived", extra={"thread_id": thread_id})
		return policy.ensure_thread(updated)

	async def update_membership(
		self,
		thread_id: str,
		user_id: str,
		*,
		muted: Optional[bool] = None,
		notifications_enabled: Optional[bool] = None,
	) -> models.ThreadMember:
		policy.ensure_member(await self._repo.get_member(thread_id, user_id))
		updated = await self._repo.update_member_settings(
			thread_id,
			user_id,
			muted=muted,
			notifications_enabled=notifications_enabled,
		)
		return policy.ensure_member(updated)

	async def list_threads_for_user(
		self,
		user_id: str,
		organization_id: str,
		*,
		cursor: Optional[str] = None,
		limit: Optional[int] = None,
	) -> models.ThreadPage:
		page_size = clamp_limit(limit, settings.thread_page_size)
		rows = await self._repo.list_threads_for_user(
			user_id,
			organization_id,
			after=parse_cursor(cursor),
			limit=page_size + 1,
		)
		items = rows[:page_size]
		next_cursor = None
		if len(rows) > page_size:
			last = items[-1]
			next_cursor = encode_cursor(last.last_message_at, last.id)
		return models.ThreadPage(items=items, next_cursor=next_cursor)

	async def iter_threads_for_user(
		self,
		user_id: str,
		organization_id: str,
		*,
		page_size: Optional[int] = None,
	) -> AsyncIterator[models.Thread]:
		cursor: Optional[str] = None
		while True:
			page = await self.list_threads_for_user(user_id, organization_id, cursor=cursor, limit=page_size)
			for thread in page.items:
				yield thread
			if page.next_cursor is None:
				return
			cursor = page.next_cursor
