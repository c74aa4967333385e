"""Data access for threads, members, messages, preferences and notifications.

The repository talks to Postgres through asyncpg when `COMMUNITY_STORE=postgres`
and to an in-process store otherwise. Both back ends enforce the same
uniqueness rules and the same append ordering.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict, replace
from datetime import datetime, timedelta
from typing import AsyncIterator, Dict, List, Optional, Tuple

import asyncpg

from studio_community.domain.community import exceptions, models
from studio_community.infra import postgres
from studio_community.obs import metrics as obs_metrics
from studio_community.settings import settings

_LOG = logging.getLogger(__name__)

Keyset = Tuple[datetime, str]

_TICK = timedelta(microseconds=1)

_TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
	asyncpg.exceptions.PostgresConnectionError,
	asyncpg.exceptions.InterfaceError,
	asyncpg.exceptions.TooManyConnectionsError,
	ConnectionError,
	OSError,
	asyncio.TimeoutError,
)


def next_created_at(candidate: datetime, previous: Optional[datetime]) -> datetime:
	"""Return a creation time strictly after the thread's previous message."""
	if previous is not None and candidate <= previous:
		return previous + _TICK
	return candidate


class _MemoryStore:
	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self.threads: Dict[str, models.Thread] = {}
		self.members: Dict[str, Dict[str, models.ThreadMember]] = {}
		self.messages: Dict[str, List[models.Message]] = {}
		self.message_index: Dict[str, models.Message] = {}
		self.preferences: Dict[str, models.NotificationPreference] = {}
		self.notifications: Dict[str, List[models.Notification]] = {}
		self.notification_index: Dict[str, models.Notification] = {}
		self.moderation: Dict[str, models.ModerationItem] = {}

	def clear(self) -> None:
		self.threads.clear()
		self.members.clear()
		self.messages.clear()
		self.message_index.clear()
		self.preferences.clear()
		self.notifications.clear()
		self.notification_index.clear()
		self.moderation.clear()

	# threads -----------------------------------------------------------

	async def create_thread(self, thread: models.Thread, owner: models.ThreadMember) -> models.Thread:
		async with self._lock:
			self.threads[thread.id] = replace(thread)
			self.members[thread.id] = {owner.user_id: replace(owner)}
			self.messages[thread.id] = []
			return replace(thread)

	async def get_thread(self, thread_id: str) -> Optional[models.Thread]:
		async with self._lock:
			thread = self.threads.get(thread_id)
			return replace(thread) if thread else None

	async def update_thread_flags(
		self,
		thread_id: str,
		*,
		locked: Optional[bool],
		archived: Optional[bool],
		archived_at: Optional[datetime],
	) -> Optional[models.Thread]:
		async with self._lock:
			thread = self.threads.get(thread_id)
			if thread is None:
				return None
			if locked is not None:
				thread.locked = locked
			if archived is not None:
				thread.archived = archived
				thread.archived_at = archived_at
			return replace(thread)

	async def list_threads_for_user(
		self,
		user_id: str,
		organization_id: str,
		*,
		after: Optional[Keyset],
		limit: int,
	) -> List[models.Thread]:
		async with self._lock:
			candidates = [
				thread
				for thread in self.threads.values()
				if thread.organization_id == organization_id and user_id in self.members.get(thread.id, {})
			]
			candidates.sort(key=lambda t: (t.last_message_at, t.id), reverse=True)
			if after is not None:
				candidates = [t for t in candidates if (t.last_message_at, t.id) < after]
			return [replace(t) for t in candidates[:limit]]

	async def list_threads(
		self,
		organization_id: str,
		*,
		kind: Optional[str],
		include_archived: bool,
	) -> List[models.Thread]:
		async with self._lock:
			result = [
				replace(thread)
				for thread in self.threads.values()
				if thread.organization_id == organization_id
				and (kind is None or thread.kind == kind)
				and (include_archived or not thread.archived)
			]
			result.sort(key=lambda t: (t.last_message_at, t.id), reverse=True)
			return result

	# members -----------------------------------------------------------

	async def get_member(self, thread_id: str, user_id: str) -> Optional[models.ThreadMember]:
		async with self._lock:
			member = self.members.get(thread_id, {}).get(user_id)
			return replace(member) if member else None

	async def list_members(self, thread_id: str) -> List[models.ThreadMember]:
		async with self._lock:
			members = sorted(self.members.get(thread_id, {}).values(), key=lambda m: (m.joined_at, m.user_id))
			return [replace(m) for m in members]

	async def add_member(self, member: models.ThreadMember) -> models.ThreadMember:
		async with self._lock:
			members = self.members.setdefault(member.thread_id, {})
			if member.user_id in members:
				raise exceptions.DuplicateMember()
			members[member.user_id] = replace(member)
			return replace(member)

	async def remove_member(self, thread_id: str, user_id: str) -> bool:
		async with self._lock:
			return self.members.get(thread_id, {}).pop(user_id, None) is not None

	async def update_member_settings(
		self,
		thread_id: str,
		user_id: str,
		*,
		muted: Optional[bool],
		notifications_enabled: Optional[bool],
	) -> Optional[models.ThreadMember]:
		async with self._lock:
			member = self.members.get(thread_id, {}).get(user_id)
			if member is None:
				return None
			if muted is not None:
				member.muted = muted
			if notifications_enabled is not None:
				member.notifications_enabled = notifications_enabled
			return replace(member)

	async def count_role(self, thread_id: str, role: str) -> int:
		async with self._lock:
			return sum(1 for m in self.members.get(thread_id, {}).values() if m.role == role)

	async def advance_read_cursor(self, thread_id: str, user_id: str, read_at: datetime) -> Optional[datetime]:
		async with self._lock:
			member = self.members.get(thread_id, {}).get(user_id)
			if member is None:
				return None
			if read_at > member.last_read_at:
				member.last_read_at = read_at
			return member.last_read_at

	async def list_memberships(self, user_id: str, organization_id: str) -> List[models.ThreadMember]:
		async with self._lock:
			result: List[models.ThreadMember] = []
			for thread_id, members in self.members.items():
				thread = self.threads.get(thread_id)
				member = members.get(user_id)
				if thread is not None and member is not None and thread.organization_id == organization_id:
					result.append(replace(member))
			return result

	# messages ----------------------------------------------------------

	async def append_message(self, message: models.Message) -> models.Message:
		async with self._lock:
			thread = self.threads[message.thread_id]
			messages = self.messages.setdefault(message.thread_id, [])
			previous = messages[-1].created_at if messages else None
			stored = replace(message, created_at=next_created_at(message.created_at, previous))
			messages.append(stored)
			self.message_index[stored.id] = stored
			thread.last_message_at = max(thread.last_message_at, stored.created_at)
			return replace(stored)

	async def get_message(self, message_id: str) -> Optional[models.Message]:
		async with self._lock:
			message = self.message_index.get(message_id)
			return replace(message) if message else None

	async def latest_message(self, thread_id: str) -> Optional[models.Message]:
		async with self._lock:
			messages = [m for m in self.messages.get(thread_id, []) if not m.is_deleted]
			return replace(messages[-1]) if messages else None

	async def list_messages(
		self,
		thread_id: str,
		*,
		after: Optional[Keyset],
		limit: int,
		include_deleted: bool,
	) -> List[models.Message]:
		async with self._lock:
			selected = [
				m
				for m in self.messages.get(thread_id, [])
				if (include_deleted or not m.is_deleted) and (after is None or m.sort_key > after)
			]
			selected.sort(key=lambda m: m.sort_key)
			return [replace(m) for m in selected[:limit]]

	async def update_message(self, message: models.Message) -> models.Message:
		async with self._lock:
			stored = self.message_index[message.id]
			stored.body = message.body
			stored.edited_at = message.edited_at
			stored.deleted_at = message.deleted_at
			stored.flagged = message.flagged
			stored.flag_reason = message.flag_reason
			return replace(stored)

	async def count_unread(
		self, thread_id: str, user_id: str, since: datetime, before: Optional[datetime] = None
	) -> int:
		async with self._lock:
			return sum(
				1
				for m in self.messages.get(thread_id, [])
				if m.created_at > since
				and (before is None or m.created_at < before)
				and not m.is_deleted
				and m.sender_id != user_id
			)

	# preferences -------------------------------------------------------

	async def get_preferences(self, user_id: str) -> Optional[models.NotificationPreference]:
		async with self._lock:
			prefs = self.preferences.get(user_id)
			return replace(prefs) if prefs else None

	async def save_preferences(self, prefs: models.NotificationPreference) -> models.NotificationPreference:
		async with self._lock:
			self.preferences[prefs.user_id] = replace(prefs)
			return replace(prefs)

	# notifications -----------------------------------------------------

	async def insert_notification(self, notification: models.Notification) -> models.Notification:
		async with self._lock:
			stored = replace(notification)
			self.notifications.setdefault(stored.user_id, []).append(stored)
			self.notification_index[stored.id] = stored
			return replace(stored)

	async def list_notifications(
		self,
		user_id: str,
		*,
		before: Optional[Keyset],
		limit: int,
	) -> List[models.Notification]:
		async with self._lock:
			items = sorted(self.notifications.get(user_id, []), key=lambda n: (n.created_at, n.id), reverse=True)
			if before is not None:
				items = [n for n in items if (n.created_at, n.id) < before]
			return [replace(n) for n in items[:limit]]

	async def mark_notification_read(
		self,
		user_id: str,
		notification_id: str,
		read_at: datetime,
	) -> Optional[models.Notification]:
		async with self._lock:
			notification = self.notification_index.get(notification_id)
			if notification is None or notification.user_id != user_id:
				return None
			if not notification.read:
				notification.read = True
				notification.read_at = read_at
			return replace(notification)

	async def mark_all_notifications_read(self, user_id: str, read_at: datetime) -> int:
		async with self._lock:
			updated = 0
			for notification in self.notifications.get(user_id, []):
				if not notification.read:
					notification.read = True
					notification.read_at = read_at
					updated += 1
			return updated

	async def count_unread_notifications(self, user_id: str) -> int:
		async with self._lock:
			return sum(1 for n in self.notifications.get(user_id, []) if not n.read)

	# moderation --------------------------------------------------------

	async def save_moderation_item(self, item: models.ModerationItem) -> models.ModerationItem:
		async with self._lock:
			self.moderation[item.id] = replace(item)
			return replace(item)

	async def get_moderation_item(self, item_id: str) -> Optional[models.ModerationItem]:
		async with self._lock:
			item = self.moderation.get(item_id)
			return replace(item) if item else None

	async def pending_item_for_message(self, message_id: str) -> Optional[models.ModerationItem]:
		async with self._lock:
			for item in self.moderation.values():
				if item.message_id == message_id and item.state == "pending":
					return replace(item)
			return None

	async def list_moderation_items(self, organization_id: str, state: Optional[str]) -> List[models.ModerationItem]:
		async with self._lock:
			items = [
				replace(item)
				for item in self.moderation.values()
				if item.organization_id == organization_id and (state is None or item.state == state)
			]
			items.sort(key=lambda i: (i.created_at, i.id))
			return items


_MEMORY = _MemoryStore()


def _row_to_thread(row: asyncpg.Record) -> models.Thread:
	return models.Thread(
		id=str(row["id"]),
		organization_id=str(row["organization_id"]),
		kind=row["kind"],
		title=row["title"],
		visibility=row["visibility"],
		created_by=str(row["created_by"]),
		created_at=row["created_at"],
		last_message_at=row["last_message_at"],
		context_id=row["context_id"],
		locked=bool(row["locked"]),
		archived=bool(row["archived"]),
		archived_at=row["archived_at"],
		auto_created=bool(row["auto_created"]),
	)


def _row_to_member(row: asyncpg.Record) -> models.ThreadMember:
	return models.ThreadMember(
		thread_id=str(row["thread_id"]),
		user_id=str(row["user_id"]),
		role=row["role"],
		joined_at=row["joined_at"],
		last_read_at=row["last_read_at"],
		muted=bool(row["muted"]),
		notifications_enabled=bool(row["notifications_enabled"]),
	)


def _row_to_message(row: asyncpg.Record) -> models.Message:
	attachments_raw = row["attachments"]
	if isinstance(attachments_raw, str):
		payload = json.loads(attachments_raw) if attachments_raw else []
	else:
		payload = attachments_raw or []
	return models.Message(
		id=str(row["id"]),
		thread_id=str(row["thread_id"]),
		sender_id=str(row["sender_id"]),
		body=row["body"],
		created_at=row["created_at"],
		attachments=tuple(models.AttachmentRef(**item) for item in payload),
		reply_to_id=row["reply_to_id"],
		edited_at=row["edited_at"],
		deleted_at=row["deleted_at"],
		flagged=bool(row["flagged"]),
		flag_reason=row["flag_reason"],
	)


def _row_to_preferences(row: asyncpg.Record) -> models.NotificationPreference:
	return models.NotificationPreference(
		user_id=str(row["user_id"]),
		in_app=row["in_app"],
		email=row["email"],
		push=row["push"],
		sound=row["sound"],
		new_messages=row["new_messages"],
		class_reminders=row["class_reminders"],
		community_updates=row["community_updates"],
		instructor_responses=row["instructor_responses"],
		engagement_milestones=row["engagement_milestones"],
		system_alerts=row["system_alerts"],
		quiet_hours_enabled=row["quiet_hours_enabled"],
		quiet_hours_start=row["quiet_hours_start"],
		quiet_hours_end=row["quiet_hours_end"],
		timezone=row["timezone"],
	)


def _row_to_notification(row: asyncpg.Record) -> models.Notification:
	return models.Notification(
		id=str(row["id"]),
		user_id=str(row["user_id"]),
		category=row["category"],
		priority=row["priority"],
		title=row["title"],
		body=row["body"],
		source_ref=row["source_ref"],
		created_at=row["created_at"],
		thread_id=row["thread_id"],
		read=bool(row["read"]),
		read_at=row["read_at"],
		channels=tuple(row["channels"] or ()),
	)


def _row_to_moderation(row: asyncpg.Record) -> models.ModerationItem:
	return models.ModerationItem(
		id=str(row["id"]),
		message_id=str(row["message_id"]),
		thread_id=str(row["thread_id"]),
		organization_id=str(row["organization_id"]),
		reporter_id=str(row["reporter_id"]),
		reason=row["reason"],
		created_at=row["created_at"],
		state=row["state"],
		reviewed_by=row["reviewed_by"],
		reviewed_at=row["reviewed_at"],
		notes=row["notes"],
	)


_PREFERENCE_COLUMNS = (
	"in_app",
	"email",
	"push",
	"sound",
	*models.CATEGORIES,
	"quiet_hours_enabled",
	"quiet_hours_start",
	"quiet_hours_end",
	"timezone",
)


class CommunityRepository:
	"""Repository backed by asyncpg with an in-memory store for local runs and tests."""

	def __init__(self, *, use_postgres: Optional[bool] = None) -> None:
		self._use_postgres = settings.uses_postgres() if use_postgres is None else use_postgres

	@asynccontextmanager
	async def _connection(self, operation: str) -> AsyncIterator[asyncpg.Connection]:
		try:
			pool = await postgres.get_pool()
			async with pool.acquire() as conn:
				yield conn
		except _TRANSIENT_ERRORS as exc:
			obs_metrics.inc_store_error(operation)
			_LOG.warning("community_store.unavailable", extra={"operation": operation}, exc_info=True)
			raise exceptions.StoreUnavailable() from exc

	# threads -----------------------------------------------------------

	async def create_thread(self, thread: models.Thread, owner: models.ThreadMember) -> models.Thread:
		if not self._use_postgres:
			return await _MEMORY.create_thread(thread, owner)
		async with self._connection("create_thread") as conn:
			async with conn.transaction():
				await conn.execute(
					"""
					INSERT INTO community_threads (
						id, organization_id, kind, title, visibility, context_id, locked, archived,
						archived_at, auto_created, created_by, created_at, last_message_at
					) VALUES ($1,$2,$3,$4,$5,$6,$7,$8,$9,$10,$11,$12,$13)
					""",
					thread.id,
					thread.organization_id,
					thread.kind,
					thread.title,
					thread.visibility,
					thread.context_id,
					thread.locked,
					thread.archived,
					thread.archived_at,
					thread.auto_created,
					thread.created_by,
					thread.created_at,
					thread.last_message_at,
				)
				await self._insert_member(conn, owner)
		return thread

	async def get_thread(self, thread_id: str) -> Optional[models.Thread]:
		if not self._use_postgres:
			return await _MEMORY.get_thread(thread_id)
		async with self._connection("get_thread") as conn:
			row = await conn.fetchrow("SELECT * FROM community_threads WHERE id=$1", thread_id)
			return _row_to_thread(row) if row else None

	async def update_thread_flags(
		self,
		thread_id: str,
		*,
		locked: Optional[bool] = None,
		archived: Optional[bool] = None,
		archived_at: Optional[datetime] = None,
	) -> Optional[models.Thread]:
		if not self._use_postgres:
			return await _MEMORY.update_thread_flags(thread_id, locked=locked, archived=archived, archived_at=archived_at)
		async with self._connection("update_thread_flags") as conn:
			row = await conn.fetchrow(
				"""
				UPDATE community_threads
				SET locked = COALESCE($2, locked),
					archived = COALESCE($3, archived),
					archived_at = CASE WHEN $3::boolean IS NULL THEN archived_at ELSE $4 END
				WHERE id=$1
				RETURNING *
				""",
				thread_id,
				locked,
				archived,
				archived_at,
			)
			return _row_to_thread(row) if row else None

	async def list_threads_for_user(
		self,
		user_id: str,
		organization_id: str,
		*,
		after: Optional[Keyset],
		limit: int,
	) -> List[models.Thread]:
		if not self._use_postgres:
			return await _MEMORY.list_threads_for_user(user_id, organization_id, after=after, limit=limit)
		params: List[object] = [user_id, organization_id]
		where_clause = ""
		if after is not None:
			params.extend([after[0], after[1]])
			where_clause = " AND (t.last_message_at, t.id) < ($3, $4)"
		params.append(limit)
		query = (
			"""
			SELECT t.*
			FROM community_threads t
			JOIN community_thread_members m ON m.thread_id = t.id AND m.user_id = $1
			WHERE t.organization_id = $2
			"""
			+ where_clause
			+ f" ORDER BY t.last_message_at DESC, t.id DESC LIMIT ${len(params)}"
		)
		async with self._connection("list_threads_for_user") as conn:
			rows = await conn.fetch(query, *params)
			return [_row_to_thread(row) for row in rows]

	async def list_threads(
		self,
		organization_id: str,
		*,
		kind: Optional[str] = None,
		include_archived: bool = False,
	) -> List[models.Thread]:
		if not self._use_postgres:
			return await _MEMORY.list_threads(organization_id, kind=kind, include_archived=include_archived)
		async with self._connection("list_threads") as conn:
			rows = await conn.fetch(
				"""
				SELECT * FROM community_threads
				WHERE organization_id = $1
					AND ($2::text IS NULL OR kind = $2)
					AND ($3 OR NOT archived)
				ORDER BY last_message_at DESC, id DESC
				""",
				organization_id,
				kind,
				include_archived,
			)
			return [_row_to_thread(row) for row in rows]

	# members -----------------------------------------------------------

	async def _insert_member(self, conn: asyncpg.Connection, member: models.ThreadMember) -> None:
		try:
			await conn.execute(
				"""
				INSERT INTO community_thread_members (
					thread_id, user_id, role, joined_at, last_read_at, muted, notifications_enabled
				) VALUES ($1,$2,$3,$4,$5,$6,$7)
				""",
				member.thread_id,
				member.user_id,
				member.role,
				member.joined_at,
				member.last_read_at,
				member.muted,
				member.notifications_enabled,
			)
		except asyncpg.exceptions.UniqueViolationError as exc:
			raise exceptions.DuplicateMember() from exc

	async def get_member(self, thread_id: str, user_id: str) -> Optional[models.ThreadMember]:
		if not self._use_postgres:
			return await _MEMORY.get_member(thread_id, user_id)
		async with self._connection("get_member") as conn:
			row = await conn.fetchrow(
				"SELECT * FROM community_thread_members WHERE thread_id=$1 AND user_id=$2",
				thread_id,
				user_id,
			)
			return _row_to_member(row) if row else None

	async def list_members(self, thread_id: str) -> List[models.ThreadMember]:
		if not self._use_postgres:
			return await _MEMORY.list_members(thread_id)
		async with self._connection("list_members") as conn:
			rows = await conn.fetch(
				"SELECT * FROM community_thread_members WHERE thread_id=$1 ORDER BY joined_at, user_id",
				thread_id,
			)
			return [_row_to_member(row) for row in rows]

	async def add_member(self, member: models.ThreadMember) -> models.ThreadMember:
		if not self._use_postgres:
			return await _MEMORY.add_member(member)
		async with self._connection("add_member") as conn:
			await self._insert_member(conn, member)
		return member

	async def remove_member(self, thread_id: str, user_id: str) -> bool:
		if not self._use_postgres:
			return await _MEMORY.remove_member(thread_id, user_id)
		async with self._connection("remove_member") as conn:
			async with conn.transaction():
				# Re-check the owner invariant under the thread row lock.
				await conn.execute("SELECT id FROM community_threads WHERE id=$1 FOR UPDATE", thread_id)
				row = await conn.fetchrow(
					"SELECT role FROM community_thread_members WHERE thread_id=$1 AND user_id=$2",
					thread_id,
					user_id,
				)
				if row is None:
					return False
				if row["role"] == "owner":
					owners = await conn.fetchval(
						"SELECT COUNT(*) FROM community_thread_members WHERE thread_id=$1 AND role='owner'",
						thread_id,
					)
					if int(owners) <= 1:
						raise exceptions.LastOwner()
				await conn.execute(
					"DELETE FROM community_thread_members WHERE thread_id=$1 AND user_id=$2",
					thread_id,
					user_id,
				)
				return True

	async def update_member_settings(
		self,
		thread_id: str,
		user_id: str,
		*,
		muted: Optional[bool] = None,
		notifications_enabled: Optional[bool] = None,
	) -> Optional[models.ThreadMember]:
		if not self._use_postgres:
			return await _MEMORY.update_member_settings(
				thread_id, user_id, muted=muted, notifications_enabled=notifications_enabled
			)
		async with self._connection("update_member_settings") as conn:
			row = await conn.fetchrow(
				"""
				UPDATE community_thread_members
				SET muted = COALESCE($3, muted),
					notifications_enabled = COALESCE($4, notifications_enabled)
				WHERE thread_id=$1 AND user_id=$2
				RETURNING *
				""",
				thread_id,
				user_id,
				muted,
				notifications_enabled,
			)
			return _row_to_member(row) if row else None

	async def count_role(self, thread_id: str, role: str) -> int:
		if not self._use_postgres:
			return await _MEMORY.count_role(thread_id, role)
		async with self._connection("count_role") as conn:
			value = await conn.fetchval(
				"SELECT COUNT(*) FROM community_thread_members WHERE thread_id=$1 AND role=$2",
				thread_id,
				role,
			)
			return int(value or 0)

	async def advance_read_cursor(self, thread_id: str, user_id: str, read_at: datetime) -> Optional[datetime]:
		"""Move last_read_at forward only; returns the effective cursor or None for non-members."""
		if not self._use_postgres:
			return await _MEMORY.advance_read_cursor(thread_id, user_id, read_at)
		async with self._connection("advance_read_cursor") as conn:
			return await conn.fetchval(
				"""
				UPDATE community_thread_members
				SET last_read_at = GREATEST(last_read_at, $3)
				WHERE thread_id=$1 AND user_id=$2
				RETURNING last_read_at
				""",
				thread_id,
				user_id,
				read_at,
			)

	async def list_memberships(self, user_id: str, organization_id: str) -> List[models.ThreadMember]:
		if not self._use_postgres:
			return await _MEMORY.list_memberships(user_id, organization_id)
		async with self._connection("list_memberships") as conn:
			rows = await conn.fetch(
				"""
				SELECT m.*
				FROM community_thread_members m
				JOIN community_threads t ON t.id = m.thread_id
				WHERE m.user_id = $1 AND t.organization_id = $2
				""",
				user_id,
				organization_id,
			)
			return [_row_to_member(row) for row in rows]

	# messages ----------------------------------------------------------

	async def append_message(self, message: models.Message) -> models.Message:
		"""Append atomically and advance the thread's last_message_at.

		created_at is bumped past the thread's latest message when the clock
		has not moved, so (created_at, id) stays strictly increasing.
		"""
		if not self._use_postgres:
			return await _MEMORY.append_message(message)
		async with self._connection("append_message") as conn:
			async with conn.transaction():
				await conn.execute("SELECT id FROM community_threads WHERE id=$1 FOR UPDATE", message.thread_id)
				previous = await conn.fetchval(
					"SELECT MAX(created_at) FROM community_messages WHERE thread_id=$1",
					message.thread_id,
				)
				stored = replace(message, created_at=next_created_at(message.created_at, previous))
				await conn.execute(
					"""
					INSERT INTO community_messages (
						id, thread_id, sender_id, body, attachments, reply_to_id, created_at
					) VALUES ($1,$2,$3,$4,$5,$6,$7)
					""",
					stored.id,
					stored.thread_id,
					stored.sender_id,
					stored.body,
					json.dumps([asdict(item) for item in stored.attachments]),
					stored.reply_to_id,
					stored.created_at,
				)
				await conn.execute(
					"UPDATE community_threads SET last_message_at = GREATEST(last_message_at, $2) WHERE id=$1",
					stored.thread_id,
					stored.created_at,
				)
		return stored

	async def get_message(self, message_id: str) -> Optional[models.Message]:
		if not self._use_postgres:
			return await _MEMORY.get_message(message_id)
		async with self._connection("get_message") as conn:
			row = await conn.fetchrow("SELECT * FROM community_messages WHERE id=$1", message_id)
			return _row_to_message(row) if row else None

	async def latest_message(self, thread_id: str) -> Optional[models.Message]:
		if not self._use_postgres:
			return await _MEMORY.latest_message(thread_id)
		async with self._connection("latest_message") as conn:
			row = await conn.fetchrow(
				"""
				SELECT * FROM community_messages
				WHERE thread_id=$1 AND deleted_at IS NULL
				ORDER BY created_at DESC, id DESC
				LIMIT 1
				""",
				thread_id,
			)
			return _row_to_message(row) if row else None

	async def list_messages(
		self,
		thread_id: str,
		*,
		after: Optional[Keyset] = None,
		limit: int = 100,
		include_deleted: bool = False,
	) -> List[models.Message]:
		if not self._use_postgres:
			return await _MEMORY.list_messages(thread_id, after=after, limit=limit, include_deleted=include_deleted)
		params: List[object] = [thread_id, include_deleted]
		where_clause = ""
		if after is not None:
			params.extend([after[0], after[1]])
			where_clause = " AND (created_at, id) > ($3, $4)"
		params.append(limit)
		query = (
			"""
			SELECT * FROM community_messages
			WHERE thread_id = $1 AND ($2 OR deleted_at IS NULL)
			"""
			+ where_clause
			+ f" ORDER BY created_at ASC, id ASC LIMIT ${len(params)}"
		)
		async with self._connection("list_messages") as conn:
			rows = await conn.fetch(query, *params)
			return [_row_to_message(row) for row in rows]

	async def update_message(self, message: models.Message) -> models.Message:
		if not self._use_postgres:
			return await _MEMORY.update_message(message)
		async with self._connection("update_message") as conn:
			row = await conn.fetchrow(
				"""
				UPDATE community_messages
				SET body=$2, edited_at=$3, deleted_at=$4, flagged=$5, flag_reason=$6
				WHERE id=$1
				RETURNING *
				""",
				message.id,
				message.body,
				message.edited_at,
				message.deleted_at,
				message.flagged,
				message.flag_reason,
			)
			return _row_to_message(row) if row else message

	async def count_unread(
		self, thread_id: str, user_id: str, since: datetime, before: Optional[datetime] = None
	) -> int:
		"""Messages by others after 'since', optionally only those older than 'before'."""
		if not self._use_postgres:
			return await _MEMORY.count_unread(thread_id, user_id, since, before)
		async with self._connection("count_unread") as conn:
			value = await conn.fetchval(
				"""
				SELECT COUNT(*) FROM community_messages
				WHERE thread_id=$1 AND created_at > $3 AND deleted_at IS NULL AND sender_id <> $2
				  AND ($4::timestamptz IS NULL OR created_at < $4)
				""",
				thread_id,
				user_id,
				since,
				before,
			)
			return int(value or 0)

	# preferences -------------------------------------------------------

	async def get_preferences(self, user_id: str) -> Optional[models.NotificationPreference]:
		if not self._use_postgres:
			return await _MEMORY.get_preferences(user_id)
		async with self._connection("get_preferences") as conn:
			row = await conn.fetchrow("SELECT * FROM community_notification_prefs WHERE user_id=$1", user_id)
			return _row_to_preferences(row) if row else None

	async def save_preferences(self, prefs: models.NotificationPreference) -> models.NotificationPreference:
		if not self._use_postgres:
			return await _MEMORY.save_preferences(prefs)
		columns = ", ".join(_PREFERENCE_COLUMNS)
		placeholders = ", ".join(f"${idx}" for idx in range(2, len(_PREFERENCE_COLUMNS) + 2))
		updates = ", ".join(f"{column} = EXCLUDED.{column}" for column in _PREFERENCE_COLUMNS)
		values = [getattr(prefs, column) for column in _PREFERENCE_COLUMNS]
		async with self._connection("save_preferences") as conn:
			await conn.execute(
				f"""
				INSERT INTO community_notification_prefs (user_id, {columns}, updated_at)
				VALUES ($1, {placeholders}, NOW())
				ON CONFLICT (user_id) DO UPDATE SET {updates}, updated_at = NOW()
				""",
				prefs.user_id,
				*values,
			)
		return prefs

	async def preferences_for(self, user_id: str) -> models.NotificationPreference:
		prefs = await self.get_preferences(user_id)
		if prefs is None:
			return models.NotificationPreference(user_id=user_id, timezone=settings.default_timezone)
		return prefs

	# notifications -----------------------------------------------------

	async def insert_notification(self, notification: models.Notification) -> models.Notification:
		if not self._use_postgres:
			return await _MEMORY.insert_notification(notification)
		async with self._connection("insert_notification") as conn:
			await conn.execute(
				"""
				INSERT INTO community_notifications (
					id, user_id, category, priority, title, body, source_ref, thread_id,
					created_at, read, read_at, channels
				) VALUES ($1,$2,$3,$4,$5,$6,$7,$8,$9,$10,$11,$12)
				""",
				notification.id,
				notification.user_id,
				notification.category,
				notification.priority,
				notification.title,
				notification.body,
				notification.source_ref,
				notification.thread_id,
				notification.created_at,
				notification.read,
				notification.read_at,
				list(notification.channels),
			)
		return notification

	async def list_notifications(
		self,
		user_id: str,
		*,
		before: Optional[Keyset] = None,
		limit: int = 50,
	) -> List[models.Notification]:
		if not self._use_postgres:
			return await _MEMORY.list_notifications(user_id, before=before, limit=limit)
		params: List[object] = [user_id]
		where_clause = ""
		if before is not None:
			params.extend([before[0], before[1]])
			where_clause = " AND (created_at, id) < ($2, $3)"
		params.append(limit)
		query = (
			"SELECT * FROM community_notifications WHERE user_id = $1"
			+ where_clause
			+ f" ORDER BY created_at DESC, id DESC LIMIT ${len(params)}"
		)
		async with self._connection("list_notifications") as conn:
			rows = await conn.fetch(query, *params)
			return [_row_to_notification(row) for row in rows]

	async def mark_notification_read(
		self,
		user_id: str,
		notification_id: str,
		read_at: datetime,
	) -> Optional[models.Notification]:
		if not self._use_postgres:
			return await _MEMORY.mark_notification_read(user_id, notification_id, read_at)
		async with self._connection("mark_notification_read") as conn:
			row = await conn.fetchrow(
				"""
				UPDATE community_notifications
				SET read = TRUE, read_at = COALESCE(read_at, $3)
				WHERE id=$1 AND user_id=$2
				RETURNING *
				""",
				notification_id,
				user_id,
				read_at,
			)
			return _row_to_notification(row) if row else None

	async def mark_all_notifications_read(self, user_id: str, read_at: datetime) -> int:
		if not self._use_postgres:
			return await _MEMORY.mark_all_notifications_read(user_id, read_at)
		async with self._connection("mark_all_notifications_read") as conn:
			rows = await conn.fetch(
				"""
				UPDATE community_notifications
				SET read = TRUE, read_at = $2
				WHERE user_id=$1 AND NOT read
				RETURNING id
				""",
				user_id,
				read_at,
			)
			return len(rows)

	async def count_unread_notifications(self, user_id: str) -> int:
		if not self._use_postgres:
			return await _MEMORY.count_unread_notifications(user_id)
		async with self._connection("count_unread_notifications") as conn:
			value = await conn.fetchval(
				"SELECT COUNT(*) FROM community_notifications WHERE user_id=$1 AND NOT read",
				user_id,
			)
			return int(value or 0)

	# moderation --------------------------------------------------------

	async def save_moderation_item(self, item: models.ModerationItem) -> models.ModerationItem:
		if not self._use_postgres:
			return await _MEMORY.save_moderation_item(item)
		async with self._connection("save_moderation_item") as conn:
			await conn.execute(
				"""
				INSERT INTO community_moderation_items (
					id, message_id, thread_id, organization_id, reporter_id, reason, state,
					created_at, reviewed_by, reviewed_at, notes
				) VALUES ($1,$2,$3,$4,$5,$6,$7,$8,$9,$10,$11)
				ON CONFLICT (id) DO UPDATE SET
					reason = EXCLUDED.reason,
					state = EXCLUDED.state,
					reviewed_by = EXCLUDED.reviewed_by,
					reviewed_at = EXCLUDED.reviewed_at,
					notes = EXCLUDED.notes
				""",
				item.id,
				item.message_id,
				item.thread_id,
				item.organization_id,
				item.reporter_id,
				item.reason,
				item.state,
				item.created_at,
				item.reviewed_by,
				item.reviewed_at,
				item.notes,
			)
		return item

	async def get_moderation_item(self, item_id: str) -> Optional[models.ModerationItem]:
		if not self._use_postgres:
			return await _MEMORY.get_moderation_item(item_id)
		async with self._connection("get_moderation_item") as conn:
			row = await conn.fetchrow("SELECT * FROM community_moderation_items WHERE id=$1", item_id)
			return _row_to_moderation(row) if row else None

	async def pending_item_for_message(self, message_id: str) -> Optional[models.ModerationItem]:
		if not self._use_postgres:
			return await _MEMORY.pending_item_for_message(message_id)
		async with self._connection("pending_item_for_message") as conn:
			row = await conn.fetchrow(
				"SELECT * FROM community_moderation_items WHERE message_id=$1 AND state='pending' LIMIT 1",
				message_id,
			)
			return _row_to_moderation(row) if row else None

	async def list_moderation_items(
		self,
		organization_id: str,
		*,
		state: Optional[str] = "pending",
	) -> List[models.ModerationItem]:
		if not self._use_postgres:
			return await _MEMORY.list_moderation_items(organization_id, state)
		async with self._connection("list_moderation_items") as conn:
			rows = await conn.fetch(
				"""
				SELECT * FROM community_moderation_items
				WHERE organization_id=$1 AND ($2::text IS NULL OR state=$2)
				ORDER BY created_at, id
				""",
				organization_id,
				state,
			)
			return [_row_to_moderation(row) for row in rows]


async def reset_memory_state() -> None:
	"""Test helper to clear in-memory store state."""
	async with _MEMORY._lock:  # type: ignore[attr-defined]
		_MEMORY.clear()
