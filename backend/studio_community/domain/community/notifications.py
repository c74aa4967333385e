"""In-app notification inbox and per-user delivery preferences."""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from datetime import datetime, time, timezone
from typing import Callable, List, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from studio_community.api.pagination import encode_cursor
from studio_community.domain.community import exceptions, models, repo
from studio_community.domain.community.threads import clamp_limit, parse_cursor
from studio_community.settings import settings

_BOOL_FIELDS = frozenset(
	f.name for f in fields(models.NotificationPreference) if f.type in ("bool", bool)
)
_TIME_FIELDS = frozenset({"quiet_hours_start", "quiet_hours_end"})


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


def _parse_time(name: str, value: object) -> time:
	if isinstance(value, time):
		return value.replace(tzinfo=None)
	if isinstance(value, str):
		try:
			return time.fromisoformat(value)
		except ValueError:
			pass
	raise exceptions.InvalidPreference(f"invalid_time:{name}")


@dataclass(slots=True)
class NotificationPage:
	items: List[models.Notification]
	next_cursor: Optional[str]
	unread_count: int


class NotificationService:
	def __init__(
		self,
		repository: repo.CommunityRepository | None = None,
		*,
		clock: Callable[[], datetime] | None = None,
	) -> None:
		self._repo = repository or repo.CommunityRepository()
		self._clock = clock or _utcnow

	async def list_notifications(
		self,
		user_id: str,
		*,
		limit: Optional[int] = None,
		cursor: Optional[str] = None,
	) -> NotificationPage:
		page_size = clamp_limit(limit, settings.thread_page_size)
		rows = await self._repo.list_notifications(user_id, before=parse_cursor(cursor), limit=page_size + 1)
		items = rows[:page_size]
		next_cursor = None
		if len(rows) > page_size:
			next_cursor = encode_cursor(items[-1].created_at, items[-1].id)
		unread = await self._repo.count_unread_notifications(user_id)
		return NotificationPage(items=items, next_cursor=next_cursor, unread_count=unread)

	async def mark_notification_read(self, user_id: str, notification_id: str) -> models.Notification:
		notification = await self._repo.mark_notification_read(user_id, notification_id, self._clock())
		if notification is None:
			raise exceptions.NotificationNotFound()
		return notification

	async def mark_all_read(self, user_id: str) -> int:
		return await self._repo.mark_all_notifications_read(user_id, self._clock())

	async def get_preferences(self, user_id: str) -> models.NotificationPreference:
		return await self._repo.preferences_for(user_id)

	async def update_preferences(self, user_id: str, patch: Mapping[str, object]) -> models.NotificationPreference:
		"""Merge a partial update over the stored (or default) preferences.

		Existing notifications are history: turning a category off only stops
		new ones from being created.
		"""
		current = await self._repo.preferences_for(user_id)
		changes: dict[str, object] = {}
		for name, value in patch.items():
			if value is None:
				continue
			if name in _BOOL_FIELDS:
				if not isinstance(value, bool):
					raise exceptions.InvalidPreference(f"invalid_flag:{name}")
				changes[name] = value
			elif name in _TIME_FIELDS:
				changes[name] = _parse_time(name, value)
			elif name == "timezone":
				try:
					ZoneInfo(str(value))
				except (ZoneInfoNotFoundError, ValueError) as exc:
					raise exceptions.InvalidPreference("invalid_timezone") from exc
				changes[name] = str(value)
			else:
				raise exceptions.InvalidPreference(f"unknown_field:{name}")
		if not changes:
			return current
		return await self._repo.save_preferences(replace(current, **changes))
