"""Per-member read cursors and unread counts."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Iterable, List

from studio_community.domain.community import exceptions, models, policy, repo, routing
from studio_community.domain.community.locks import cursor_locks
from studio_community.obs import metrics as obs_metrics

_LOG = logging.getLogger(__name__)


class ReadTracker:
	def __init__(self, repository: repo.CommunityRepository | None = None) -> None:
		self._repo = repository or repo.CommunityRepository()

	async def _advance(self, member: models.ThreadMember, read_at: datetime) -> datetime:
		async with cursor_locks.hold((member.thread_id, member.user_id)):
			effective = await self._repo.advance_read_cursor(member.thread_id, member.user_id, read_at)
		if effective is None:
			raise exceptions.NotAMember()
		obs_metrics.inc_read_cursor("advanced" if effective > member.last_read_at else "unchanged")
		return effective

	async def mark_read(self, thread_id: str, user_id: str, upto_message_id: str) -> datetime:
		"""Move the member's cursor to the message's created_at; never moves it back."""
		member = policy.ensure_member(await self._repo.get_member(thread_id, user_id))
		message = await self._repo.get_message(upto_message_id)
		if message is None or message.thread_id != thread_id:
			raise exceptions.MessageNotFound()
		return await self._advance(member, message.created_at)

	async def mark_all_read(self, thread_id: str, user_id: str) -> datetime:
		member = policy.ensure_member(await self._repo.get_member(thread_id, user_id))
		latest = await self._repo.latest_message(thread_id)
		if latest is None:
			return member.last_read_at
		return await self._advance(member, latest.created_at)

	async def unread_count(self, thread_id: str, user_id: str) -> int:
		member = policy.ensure_member(await self._repo.get_member(thread_id, user_id))
		return await self._repo.count_unread(thread_id, user_id, member.last_read_at)

	async def aggregate_unread(self, user_id: str, organization_id: str) -> int:
		memberships = await self._repo.list_memberships(user_id, organization_id)
		counts = await asyncio.gather(
			*(self._repo.count_unread(m.thread_id, user_id, m.last_read_at) for m in memberships)
		)
		return sum(counts)

	async def settle_after_post(
		self,
		message: models.Message,
		recipients: Iterable[models.ThreadMember],
		*,
		category: str = "new_messages",
	) -> List[str]:
		"""Advance cursors of members who opted out of the post's audience.

		Muted members, members with thread notifications off and members with
		the category disabled do not see the post as unread, unless they still
		have older unread messages: the cursor only moves when nothing before
		the post is pending. Members who left meanwhile are skipped and one
		member's failure does not stop the rest. Returns the settled ids.
		"""
		settled: List[str] = []
		for member in recipients:
			try:
				if await self._settle_member(message, member, category):
					settled.append(member.user_id)
			except exceptions.NotAMember:
				_LOG.info(
					"read_state.settle_member_left",
					extra={"thread_id": message.thread_id, "user_id": member.user_id},
				)
			except exceptions.CommunityError as exc:
				_LOG.warning(
					"read_state.settle_failed",
					extra={"thread_id": message.thread_id, "user_id": member.user_id, "code": exc.code},
				)
		return settled

	async def _settle_member(self, message: models.Message, member: models.ThreadMember, category: str) -> bool:
		preferences = await self._repo.preferences_for(member.user_id)
		if routing.excluded_from_audience(member, preferences, category) is None:
			return False
		current = policy.ensure_member(await self._repo.get_member(member.thread_id, member.user_id))
		earlier = await self._repo.count_unread(
			current.thread_id, current.user_id, current.last_read_at, before=message.created_at
		)
		if earlier:
			return False
		await self._advance(current, message.created_at)
		return True
