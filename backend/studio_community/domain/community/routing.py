"""Notification routing: per-recipient gates, quiet hours and channel fan-out."""

from __future__ import annotations

import asyncio
import logging
import time as perf
from dataclasses import dataclass
from datetime import datetime, time, timezone
from typing import Callable, Coroutine, Iterable, List, Optional, Sequence, Set, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import ulid

from studio_community.domain.community import models, repo
from studio_community.domain.community.dispatch import DeliveryDispatcher, QueueDispatcher
from studio_community.domain.community.exceptions import DispatchEnqueueFailed
from studio_community.obs import metrics as obs_metrics

_LOG = logging.getLogger(__name__)

_DEFAULT_PRIORITY = {
	"system_alerts": "urgent",
	"class_reminders": "high",
	"instructor_responses": "high",
	"new_messages": "medium",
	"community_updates": "medium",
	"engagement_milestones": "low",
}

_QUIET_CHANNELS = frozenset({"push", "email", "sound"})


@dataclass(slots=True)
class Recipient:
	"""A user outside any thread context (external triggers)."""

	user_id: str
	muted: bool = False
	notifications_enabled: bool = True


@dataclass(slots=True)
class RoutingDecision:
	user_id: str
	create_record: bool
	priority: Optional[str] = None
	channels: Tuple[str, ...] = ()
	suppressed: Tuple[str, ...] = ()
	quiet_hours: bool = False
	skip_reason: Optional[str] = None


@dataclass(slots=True)
class RoutingOutcome:
	user_id: str
	notification: Optional[models.Notification] = None
	enqueued: Tuple[str, ...] = ()
	failed: Tuple[str, ...] = ()
	skip_reason: Optional[str] = None
	error: Optional[str] = None


def default_priority(category: str) -> str:
	try:
		return _DEFAULT_PRIORITY[category]
	except KeyError:
		raise ValueError(f"unknown_category:{category}") from None


def in_quiet_hours(local: time, start: time, end: time) -> bool:
	"""True when local falls in [start, end), wrapping past midnight when start > end."""
	if start == end:
		return False
	if start < end:
		return start <= local < end
	return local >= start or local < end


def local_time(now: datetime, tz_name: str) -> time:
	if now.tzinfo is None:
		now = now.replace(tzinfo=timezone.utc)
	try:
		zone = ZoneInfo(tz_name)
	except (ZoneInfoNotFoundError, ValueError):
		_LOG.warning("routing.unknown_timezone", extra={"timezone": tz_name})
		zone = ZoneInfo("UTC")
	return now.astimezone(zone).time().replace(tzinfo=None)


def excluded_from_audience(recipient, preferences: models.NotificationPreference, category: str) -> Optional[str]:
	"""Reason a recipient is gated out of an event, or None."""
	if not preferences.category_enabled(category):
		return "category_disabled"
	if recipient.muted:
		return "thread_muted"
	if not recipient.notifications_enabled:
		return "notifications_disabled"
	return None


def evaluate(
	event: models.NotificationEvent,
	recipient,
	preferences: models.NotificationPreference,
	*,
	now: datetime,
) -> RoutingDecision:
	if event.category not in models.CATEGORIES:
		raise ValueError(f"unknown_category:{event.category}")
	skip = excluded_from_audience(recipient, preferences, event.category)
	if skip is not None:
		return RoutingDecision(user_id=recipient.user_id, create_record=False, skip_reason=skip)

	priority = event.priority if event.priority in models.PRIORITIES else default_priority(event.category)

	quiet = preferences.quiet_hours_enabled and in_quiet_hours(
		local_time(now, preferences.timezone),
		preferences.quiet_hours_start,
		preferences.quiet_hours_end,
	)
	channels: List[str] = []
	suppressed: List[str] = []
	for channel in models.CHANNELS:
		if not preferences.channel_enabled(channel):
			continue
		if quiet and (channel in _QUIET_CHANNELS or priority != "urgent"):
			suppressed.append(channel)
			continue
		channels.append(channel)
	return RoutingDecision(
		user_id=recipient.user_id,
		create_record=True,
		priority=priority,
		channels=tuple(channels),
		suppressed=tuple(suppressed),
		quiet_hours=quiet,
	)


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


class NotificationRouter:
	"""Runs `evaluate` per recipient, persists records and hands jobs to the dispatcher."""

	def __init__(
		self,
		repository: repo.CommunityRepository | None = None,
		dispatcher: DeliveryDispatcher | None = None,
		*,
		clock: Callable[[], datetime] | None = None,
	) -> None:
		self._repo = repository or repo.CommunityRepository()
		self.dispatcher = dispatcher or QueueDispatcher()
		self._clock = clock or _utcnow
		self._tasks: Set[asyncio.Task] = set()

	async def route(self, event: models.NotificationEvent, recipient) -> RoutingOutcome:
		preferences = await self._repo.preferences_for(recipient.user_id)
		now = self._clock()
		decision = evaluate(event, recipient, preferences, now=now)
		if not decision.create_record:
			obs_metrics.notification_routed(event.category, decision.skip_reason or "skipped")
			return RoutingOutcome(user_id=recipient.user_id, skip_reason=decision.skip_reason)

		notification = await self._repo.insert_notification(
			models.Notification(
				id=str(ulid.new()),
				user_id=recipient.user_id,
				category=event.category,
				priority=decision.priority or "medium",
				title=event.title,
				body=event.body,
				source_ref=event.source_ref,
				created_at=now,
				thread_id=event.thread_id,
				channels=decision.channels,
			)
		)
		obs_metrics.notification_routed(event.category, "quiet_hours" if decision.quiet_hours else "created")

		enqueued: List[str] = []
		failed: List[str] = []
		for channel in decision.channels:
			job = models.DeliveryJob(
				user_id=recipient.user_id,
				channel=channel,
				title=event.title,
				body=event.body,
				source_ref=event.source_ref,
				notification_id=notification.id,
				priority=notification.priority,
			)
			try:
				await self.dispatcher.enqueue(job)
			except DispatchEnqueueFailed as exc:
				failed.append(channel)
				obs_metrics.delivery_job(channel, "dropped")
				_LOG.warning(
					"routing.dispatch_failed",
					extra={"channel": exc.channel, "reason": exc.reason, "notification_id": notification.id},
				)
				continue
			enqueued.append(channel)
			obs_metrics.delivery_job(channel, "enqueued")
		for channel in decision.suppressed:
			obs_metrics.delivery_job(channel, "suppressed")
		return RoutingOutcome(
			user_id=recipient.user_id,
			notification=notification,
			enqueued=tuple(enqueued),
			failed=tuple(failed),
		)

	async def _route_isolated(self, event: models.NotificationEvent, recipient) -> RoutingOutcome:
		try:
			return await self.route(event, recipient)
		except Exception as exc:  # one recipient must not sink the others
			obs_metrics.notification_routed(event.category, "error")
			_LOG.exception(
				"routing.recipient_failed",
				extra={"recipient_id": recipient.user_id, "source_ref": event.source_ref},
			)
			return RoutingOutcome(user_id=recipient.user_id, error=type(exc).__name__)

	async def fan_out(self, event: models.NotificationEvent, recipients: Iterable) -> List[RoutingOutcome]:
		started = perf.perf_counter()
		targets = [r for r in recipients if r.user_id != event.actor_id]
		outcomes = await asyncio.gather(*(self._route_isolated(event, r) for r in targets))
		obs_metrics.observe_fanout(perf.perf_counter() - started)
		return list(outcomes)

	def schedule(self, event: models.NotificationEvent, recipients: Sequence) -> asyncio.Task:
		"""Run fan_out detached from the caller; cancelling the caller leaves it running."""
		return self.track(self.fan_out(event, list(recipients)))

	def track(self, coro: Coroutine) -> asyncio.Task:
		"""Own a background task until it finishes; drain() waits for it."""
		task = asyncio.create_task(coro)
		self._tasks.add(task)
		task.add_done_callback(self._tasks.discard)
		return task

	@property
	def pending(self) -> int:
		return len(self._tasks)

	async def drain(self) -> None:
		while self._tasks:
			await asyncio.gather(*list(self._tasks), return_exceptions=True)

	async def notify_users(self, event: models.NotificationEvent, user_ids: Iterable[str]) -> List[RoutingOutcome]:
		"""Route an external trigger; thread-bound events honour each member's thread settings."""
		recipients = []
		for user_id in dict.fromkeys(user_ids):
			member = None
			if event.thread_id:
				member = await self._repo.get_member(event.thread_id, user_id)
			recipients.append(member or Recipient(user_id=user_id))
		return await self.fan_out(event, recipients)
