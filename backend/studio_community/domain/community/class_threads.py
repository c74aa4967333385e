"""Discussion threads created from class scheduling events."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, List, Optional

from studio_community.domain.community import exceptions, models, policy, repo
from studio_community.domain.community.messages import MessageService
from studio_community.domain.community.routing import NotificationRouter, RoutingOutcome
from studio_community.domain.community.threads import ThreadService
from studio_community.settings import settings

_LOG = logging.getLogger(__name__)

WELCOME_TEMPLATE = (
	"Namaste! Welcome to the {class_name} discussion. This is your space to ask questions, "
	"share insights, and connect with fellow practitioners. Let's breathe and grow together!"
)


def class_thread_title(class_name: str) -> str:
	return f"{class_name.strip()} - Class Discussion"


class ClassThreadService:
	def __init__(
		self,
		repository: repo.CommunityRepository | None = None,
		*,
		threads: ThreadService | None = None,
		messages: MessageService | None = None,
		router: NotificationRouter | None = None,
	) -> None:
		self._repo = repository or repo.CommunityRepository()
		self._router = router or NotificationRouter(self._repo)
		self._threads = threads or ThreadService(self._repo)
		self._messages = messages or MessageService(self._repo, router=self._router)

	async def create_class_thread(
		self,
		organization_id: str,
		class_id: str,
		class_name: str,
		*,
		instructor_id: Optional[str] = None,
		roster_ids: Iterable[str] = (),
		start_time: Optional[datetime] = None,
	) -> tuple[models.Thread, models.Message]:
		"""Create the roster thread for a scheduled class and post the welcome message."""
		if not class_name or not class_name.strip():
			raise exceptions.InvalidMessage("class_name_required")
		owner_id = instructor_id or settings.system_user_id
		thread = await self._threads.create_thread(
			organization_id,
			"class",
			class_thread_title(class_name),
			"roster",
			owner_id,
			context_id=class_id,
			auto_created=True,
		)
		for user_id in dict.fromkeys(roster_ids):
			if user_id == owner_id:
				continue
			try:
				await self._threads.add_member(thread.id, user_id, "member")
			except exceptions.DuplicateMember:
				continue
		welcome = await self._messages.post_message(
			thread.id,
			owner_id,
			WELCOME_TEMPLATE.format(class_name=class_name.strip()),
		)
		_LOG.info(
			"class_thread.created",
			extra={
				"thread_id": thread.id,
				"class_id": class_id,
				"start_time": start_time.isoformat() if start_time else None,
			},
		)
		return policy.ensure_thread(await self._repo.get_thread(thread.id)), welcome

	async def list_class_threads(self, organization_id: str) -> List[models.Thread]:
		return await self._repo.list_threads(organization_id, kind="class", include_archived=False)

	async def archive_class_thread(self, thread_id: str, by_user_id: str) -> models.Thread:
		return await self._threads.archive_thread(thread_id, by_user_id)

	async def send_class_reminder(
		self,
		thread_id: str,
		by_user_id: str,
		*,
		title: str,
		body: str,
	) -> List[RoutingOutcome]:
		"""Route a class_reminders notification to every member of the class thread."""
		thread = policy.ensure_thread(await self._repo.get_thread(thread_id))
		policy.ensure_moderator(await self._repo.get_member(thread_id, by_user_id))
		members = await self._repo.list_members(thread_id)
		event = models.NotificationEvent(
			category="class_reminders",
			title=title,
			body=body,
			source_ref=thread.context_id or thread.id,
			actor_id=by_user_id,
			thread_id=thread.id,
		)
		return await self._router.fan_out(event, members)
