"""FastAPI routes for community threads, messages and notifications."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from studio_community.domain.community import (
	ClassThreadService,
	MessageService,
	NotificationRouter,
	NotificationService,
	ReadTracker,
	ThreadService,
	exceptions,
	models,
	schemas,
)
from studio_community.domain.community.dispatch import build_dispatcher
from studio_community.domain.community.repo import CommunityRepository
from studio_community.domain.community.routing import RoutingOutcome
from studio_community.infra.auth import AuthenticatedUser, get_current_user

router = APIRouter(prefix="/community", tags=["community"])

_repository = CommunityRepository()
_notification_router = NotificationRouter(_repository, build_dispatcher())
_thread_service = ThreadService(_repository)
_read_tracker = ReadTracker(_repository)
_message_service = MessageService(_repository, router=_notification_router, read_tracker=_read_tracker)
_notification_service = NotificationService(_repository)
_class_service = ClassThreadService(
	_repository,
	threads=_thread_service,
	messages=_message_service,
	router=_notification_router,
)

_STAFF_ROLES = ("admin", "owner", "manager", "staff")


def get_notification_router() -> NotificationRouter:
	return _notification_router


def _ensure_staff(auth_user: AuthenticatedUser) -> None:
	if not any(auth_user.has_role(role) for role in _STAFF_ROLES):
		raise exceptions.Forbidden("staff_only")


def _thread_dto(thread: models.Thread) -> schemas.ThreadDTO:
	return schemas.ThreadDTO.model_validate(thread)


def _notify_response(outcomes: list[RoutingOutcome]) -> schemas.NotifyResponse:
	return schemas.NotifyResponse(
		items=[
			schemas.RoutingOutcomeDTO(
				user_id=o.user_id,
				notification_id=o.notification.id if o.notification else None,
				enqueued=list(o.enqueued),
				failed=list(o.failed),
				skip_reason=o.skip_reason,
				error=o.error,
			)
			for o in outcomes
		]
	)


# threads ---------------------------------------------------------------


@router.post("/threads", response_model=schemas.ThreadDTO, status_code=status.HTTP_201_CREATED)
async def create_thread_endpoint(
	payload: schemas.ThreadCreateRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.ThreadDTO:
	thread = await _thread_service.create_thread(
		auth_user.organization_id,
		payload.kind,
		payload.title,
		payload.visibility,
		auth_user.id,
		context_id=payload.context_id,
	)
	for user_id in dict.fromkeys(payload.member_ids):
		if user_id == auth_user.id:
			continue
		await _thread_service.add_member(thread.id, user_id, "member", by_user_id=auth_user.id)
	return _thread_dto(thread)


@router.get("/threads", response_model=schemas.ThreadListResponse)
async def list_threads_endpoint(
	cursor: Optional[str] = Query(default=None),
	limit: Optional[int] = Query(default=None, ge=1, le=200),
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.ThreadListResponse:
	page = await _thread_service.list_threads_for_user(
		auth_user.id,
		auth_user.organization_id,
		cursor=cursor,
		limit=limit,
	)
	return schemas.ThreadListResponse(items=[_thread_dto(t) for t in page.items], next_cursor=page.next_cursor)


@router.get("/threads/{thread_id}", response_model=schemas.ThreadDTO)
async def get_thread_endpoint(
	thread_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.ThreadDTO:
	thread = await _thread_service.get_thread(thread_id, auth_user.id)
	if thread.organization_id != auth_user.organization_id:
		raise exceptions.ThreadNotFound()
	return _thread_dto(thread)


@router.post("/threads/{thread_id}/lock", response_model=schemas.ThreadDTO)
async def lock_thread_endpoint(
	thread_id: str,
	payload: schemas.LockRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.ThreadDTO:
	return _thread_dto(await _thread_service.set_locked(thread_id, payload.locked, auth_user.id))


@router.post("/threads/{thread_id}/archive", response_model=schemas.ThreadDTO)
async def archive_thread_endpoint(
	thread_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.ThreadDTO:
	return _thread_dto(await _thread_service.archive_thread(thread_id, auth_user.id))


@router.get("/threads/{thread_id}/members", response_model=schemas.ThreadMembersResponse)
async def list_members_endpoint(
	thread_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.ThreadMembersResponse:
	members = await _thread_service.list_members(thread_id, auth_user.id)
	return schemas.ThreadMembersResponse(items=[schemas.ThreadMemberDTO.model_validate(m) for m in members])


@router.post(
	"/threads/{thread_id}/members",
	response_model=schemas.ThreadMemberDTO,
	status_code=status.HTTP_201_CREATED,
)
async def add_member_endpoint(
	thread_id: str,
	payload: schemas.MemberAddRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.ThreadMemberDTO:
	member = await _thread_service.add_member(thread_id, payload.user_id, payload.role, by_user_id=auth_user.id)
	return schemas.ThreadMemberDTO.model_validate(member)


@router.delete("/threads/{thread_id}/members/{user_id}", status_code=status.HTTP_200_OK)
async def remove_member_endpoint(
	thread_id: str,
	user_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> dict:
	await _thread_service.remove_member(thread_id, user_id, by_user_id=auth_user.id)
	return {"ok": True}


@router.patch("/threads/{thread_id}/members/me", response_model=schemas.ThreadMemberDTO)
async def update_membership_endpoint(
	thread_id: str,
	payload: schemas.MemberSettingsRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.ThreadMemberDTO:
	member = await _thread_service.update_membership(
		thread_id,
		auth_user.id,
		muted=payload.muted,
		notifications_enabled=payload.notifications_enabled,
	)
	return schemas.ThreadMemberDTO.model_validate(member)


# messages --------------------------------------------------------------


@router.get("/threads/{thread_id}/messages", response_model=schemas.MessageListResponse)
async def list_messages_endpoint(
	thread_id: str,
	after: Optional[str] = Query(default=None),
	limit: Optional[int] = Query(default=None, ge=1, le=200),
	include_deleted: bool = Query(default=False),
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.MessageListResponse:
	page = await _message_service.list_messages(
		thread_id,
		auth_user.id,
		after=after,
		limit=limit,
		include_deleted=include_deleted,
	)
	return schemas.MessageListResponse(
		items=[schemas.MessageDTO.from_message(m) for m in page.items],
		next_cursor=page.next_cursor,
	)


@router.post(
	"/threads/{thread_id}/messages",
	response_model=schemas.MessageDTO,
	status_code=status.HTTP_201_CREATED,
)
async def post_message_endpoint(
	thread_id: str,
	payload: schemas.MessagePostRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.MessageDTO:
	message = await _message_service.post_message(
		thread_id,
		auth_user.id,
		payload.body,
		[item.model_dump() for item in payload.attachments],
		payload.reply_to_id,
	)
	return schemas.MessageDTO.from_message(message)


@router.patch("/messages/{message_id}", response_model=schemas.MessageDTO)
async def edit_message_endpoint(
	message_id: str,
	payload: schemas.MessageEditRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.MessageDTO:
	message = await _message_service.edit_message(message_id, auth_user.id, payload.body)
	return schemas.MessageDTO.from_message(message)


@router.delete("/messages/{message_id}", response_model=schemas.MessageDTO)
async def delete_message_endpoint(
	message_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.MessageDTO:
	message = await _message_service.delete_message(message_id, auth_user.id)
	return schemas.MessageDTO.from_message(message)


@router.post("/messages/{message_id}/flag", response_model=schemas.MessageDTO)
async def flag_message_endpoint(
	message_id: str,
	payload: schemas.FlagRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.MessageDTO:
	message = await _message_service.flag_message(message_id, auth_user.id, payload.reason)
	return schemas.MessageDTO.from_message(message)


@router.get("/moderation", response_model=schemas.ModerationQueueResponse)
async def moderation_queue_endpoint(
	state: Optional[str] = Query(default="pending"),
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.ModerationQueueResponse:
	items = await _message_service.moderation_queue(auth_user.organization_id, auth_user.id, state=state or None)
	return schemas.ModerationQueueResponse(items=[schemas.ModerationItemDTO.model_validate(i) for i in items])


@router.post("/moderation/{item_id}/review", response_model=schemas.ModerationItemDTO)
async def review_flag_endpoint(
	item_id: str,
	payload: schemas.ReviewRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.ModerationItemDTO:
	item = await _message_service.review_flag(item_id, auth_user.id, payload.decision, payload.notes)
	return schemas.ModerationItemDTO.model_validate(item)


# read state ------------------------------------------------------------


@router.post("/threads/{thread_id}/read", response_model=schemas.ReadCursorResponse)
async def mark_read_endpoint(
	thread_id: str,
	payload: schemas.ReadRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.ReadCursorResponse:
	last_read_at = await _read_tracker.mark_read(thread_id, auth_user.id, payload.upto_message_id)
	unread = await _read_tracker.unread_count(thread_id, auth_user.id)
	return schemas.ReadCursorResponse(thread_id=thread_id, last_read_at=last_read_at, unread_count=unread)


@router.post("/threads/{thread_id}/read-all", response_model=schemas.ReadCursorResponse)
async def mark_all_read_endpoint(
	thread_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.ReadCursorResponse:
	last_read_at = await _read_tracker.mark_all_read(thread_id, auth_user.id)
	unread = await _read_tracker.unread_count(thread_id, auth_user.id)
	return schemas.ReadCursorResponse(thread_id=thread_id, last_read_at=last_read_at, unread_count=unread)


@router.get("/threads/{thread_id}/unread", response_model=schemas.UnreadCountResponse)
async def thread_unread_endpoint(
	thread_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.UnreadCountResponse:
	return schemas.UnreadCountResponse(unread_count=await _read_tracker.unread_count(thread_id, auth_user.id))


@router.get("/unread", response_model=schemas.UnreadCountResponse)
async def aggregate_unread_endpoint(
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.UnreadCountResponse:
	total = await _read_tracker.aggregate_unread(auth_user.id, auth_user.organization_id)
	return schemas.UnreadCountResponse(unread_count=total)


# notifications ---------------------------------------------------------


@router.get("/notifications", response_model=schemas.NotificationListResponse)
async def list_notifications_endpoint(
	cursor: Optional[str] = Query(default=None),
	limit: Optional[int] = Query(default=None, ge=1, le=200),
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.NotificationListResponse:
	page = await _notification_service.list_notifications(auth_user.id, limit=limit, cursor=cursor)
	return schemas.NotificationListResponse(
		items=[schemas.NotificationDTO.model_validate(n) for n in page.items],
		next_cursor=page.next_cursor,
		unread_count=page.unread_count,
	)


@router.post("/notifications/read-all", response_model=schemas.MarkAllReadResponse)
async def mark_all_notifications_read_endpoint(
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.MarkAllReadResponse:
	return schemas.MarkAllReadResponse(updated=await _notification_service.mark_all_read(auth_user.id))


@router.post("/notifications/{notification_id}/read", response_model=schemas.NotificationDTO)
async def mark_notification_read_endpoint(
	notification_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.NotificationDTO:
	notification = await _notification_service.mark_notification_read(auth_user.id, notification_id)
	return schemas.NotificationDTO.model_validate(notification)


@router.get("/preferences", response_model=schemas.PreferencesDTO)
async def get_preferences_endpoint(
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.PreferencesDTO:
	return schemas.PreferencesDTO.model_validate(await _notification_service.get_preferences(auth_user.id))


@router.patch("/preferences", response_model=schemas.PreferencesDTO)
async def update_preferences_endpoint(
	payload: schemas.PreferencesUpdateRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.PreferencesDTO:
	prefs = await _notification_service.update_preferences(auth_user.id, payload.model_dump(exclude_none=True))
	return schemas.PreferencesDTO.model_validate(prefs)


@router.post("/notify", response_model=schemas.NotifyResponse)
async def notify_endpoint(
	payload: schemas.NotifyRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.NotifyResponse:
	_ensure_staff(auth_user)
	event = models.NotificationEvent(
		category=payload.category,
		title=payload.title,
		body=payload.body,
		source_ref=payload.source_ref,
		actor_id=auth_user.id,
		thread_id=payload.thread_id,
		priority=payload.priority,
	)
	outcomes = await _notification_router.notify_users(event, payload.user_ids)
	return _notify_response(outcomes)


# class threads ---------------------------------------------------------


@router.post(
	"/class-threads",
	response_model=schemas.ClassThreadResponse,
	status_code=status.HTTP_201_CREATED,
)
async def create_class_thread_endpoint(
	payload: schemas.ClassThreadCreateRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.ClassThreadResponse:
	_ensure_staff(auth_user)
	thread, welcome = await _class_service.create_class_thread(
		auth_user.organization_id,
		payload.class_id,
		payload.class_name,
		instructor_id=payload.instructor_id,
		roster_ids=payload.roster_ids,
		start_time=payload.start_time,
	)
	return schemas.ClassThreadResponse(thread=_thread_dto(thread), welcome_message=schemas.MessageDTO.from_message(welcome))


@router.get("/class-threads", response_model=schemas.ThreadListResponse)
async def list_class_threads_endpoint(
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.ThreadListResponse:
	_ensure_staff(auth_user)
	threads = await _class_service.list_class_threads(auth_user.organization_id)
	return schemas.ThreadListResponse(items=[_thread_dto(t) for t in threads])


@router.post("/class-threads/{thread_id}/reminders", response_model=schemas.NotifyResponse)
async def class_reminder_endpoint(
	thread_id: str,
	payload: schemas.ClassReminderRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.NotifyResponse:
	outcomes = await _class_service.send_class_reminder(thread_id, auth_user.id, title=payload.title, body=payload.body)
	return _notify_response(outcomes)
