import asyncio
from datetime import datetime, timezone

import pytest
import pytest_asyncio

from studio_community.domain.community import exceptions
from studio_community.domain.community.locks import cursor_locks


@pytest_asyncio.fixture
async def thread(services):
    created = await services.threads.create_thread("org-1", "class", "Vinyasa", "roster", "owner")
    await services.threads.add_member(created.id, "student")
    await services.threads.add_member(created.id, "assistant", "moderator")
    return created


@pytest.mark.asyncio
async def test_post_message_appends_and_advances_thread(services, thread):
    message = await services.messages.post_message(thread.id, "student", "Namaste")
    stored = await services.threads.get_thread(thread.id)
    assert stored.last_message_at == message.created_at
    page = await services.messages.list_messages(thread.id, "owner")
    assert [m.id for m in page.items] == [message.id]
    assert page.items[0].body_html == "Namaste"


@pytest.mark.asyncio
async def test_post_message_requires_membership(services, thread):
    with pytest.raises(exceptions.NotAMember):
        await services.messages.post_message(thread.id, "stranger", "hello")


@pytest.mark.asyncio
async def test_lock_enforcement(services, thread):
    await services.threads.set_locked(thread.id, True, "owner")
    with pytest.raises(exceptions.ThreadLocked):
        await services.messages.post_message(thread.id, "student", "can I still talk?")
    message = await services.messages.post_message(thread.id, "assistant", "Thread is locked for now")
    assert message.sender_id == "assistant"


@pytest.mark.asyncio
async def test_archived_thread_rejects_all_posts(services, thread):
    await services.threads.archive_thread(thread.id, "owner")
    with pytest.raises(exceptions.ThreadLocked):
        await services.messages.post_message(thread.id, "owner", "anyone here?")


@pytest.mark.asyncio
async def test_failed_post_leaves_no_message(services, thread):
    await services.threads.set_locked(thread.id, True, "owner")
    with pytest.raises(exceptions.ThreadLocked):
        await services.messages.post_message(thread.id, "student", "blocked")
    page = await services.messages.list_messages(thread.id, "owner")
    assert page.items == []
    assert (await services.threads.get_thread(thread.id)).last_message_at == thread.last_message_at


@pytest.mark.asyncio
async def test_reply_must_target_same_thread(services, thread):
    other = await services.threads.create_thread("org-1", "class", "Yin", "roster", "owner")
    foreign = await services.messages.post_message(other.id, "owner", "other thread")
    with pytest.raises(exceptions.InvalidReply):
        await services.messages.post_message(thread.id, "student", "reply", reply_to_id=foreign.id)
    with pytest.raises(exceptions.InvalidReply):
        await services.messages.post_message(thread.id, "student", "reply", reply_to_id="missing")

    parent = await services.messages.post_message(thread.id, "owner", "question?")
    reply = await services.messages.post_message(thread.id, "student", "answer", reply_to_id=parent.id)
    assert reply.reply_to_id == parent.id
    assert reply.sort_key > parent.sort_key


@pytest.mark.asyncio
async def test_post_message_validates_body_and_attachments(services, thread):
    with pytest.raises(exceptions.InvalidMessage):
        await services.messages.post_message(thread.id, "student", "   ")
    with pytest.raises(exceptions.InvalidMessage):
        await services.messages.post_message(thread.id, "student", "x" * 4001)
    with pytest.raises(exceptions.InvalidMessage):
        await services.messages.post_message(
            thread.id, "student", "file", attachments=[{"media_type": "application/x-msdownload"}]
        )
    with pytest.raises(exceptions.InvalidMessage):
        await services.messages.post_message(
            thread.id, "student", "big", attachments=[{"media_type": "image/png", "size_bytes": 11 * 1024 * 1024}]
        )
    with pytest.raises(exceptions.InvalidMessage):
        await services.messages.post_message(
            thread.id, "student", "many", attachments=[{"media_type": "image/png"}] * 11
        )
    with pytest.raises(exceptions.InvalidMessage) as excinfo:
        await services.messages.post_message(
            thread.id, "student", "odd", attachments=[{"media_type": "image/png", "size_bytes": "huge"}]
        )
    assert excinfo.value.detail == "invalid_attachment_size"

    message = await services.messages.post_message(
        thread.id, "student", "", attachments=[{"media_type": "application/pdf", "file_name": "sequence.pdf"}]
    )
    assert message.attachments[0].file_name == "sequence.pdf"
    assert message.attachments[0].attachment_id


@pytest.mark.asyncio
async def test_same_timestamp_posts_are_strictly_ordered(services, thread):
    fixed = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    services.messages._clock = lambda: fixed

    async def post(sender, index):
        return await services.messages.post_message(thread.id, sender, f"{sender}-{index}")

    posted = await asyncio.gather(*(post(sender, i) for i in range(10) for sender in ("student", "assistant")))
    first = await services.messages.list_messages(thread.id, "owner")
    second = await services.messages.list_messages(thread.id, "owner")
    keys = [m.sort_key for m in first.items]
    assert keys == sorted(keys)
    assert len({m.created_at for m in first.items}) == len(posted)
    assert [m.id for m in first.items] == [m.id for m in second.items]


@pytest.mark.asyncio
async def test_list_messages_paginates_in_ascending_order(services, thread):
    ids = [(await services.messages.post_message(thread.id, "owner", f"m{i}")).id for i in range(5)]
    page = await services.messages.list_messages(thread.id, "student", limit=2)
    collected = [m.id for m in page.items]
    while page.next_cursor:
        page = await services.messages.list_messages(thread.id, "student", after=page.next_cursor, limit=2)
        collected.extend(m.id for m in page.items)
    assert collected == ids


@pytest.mark.asyncio
async def test_edit_message_only_by_sender(services, thread):
    message = await services.messages.post_message(thread.id, "student", "first draft")
    with pytest.raises(exceptions.Forbidden):
        await services.messages.edit_message(message.id, "owner", "hijacked")
    edited = await services.messages.edit_message(message.id, "student", "final")
    assert edited.body == "final"
    assert edited.edited_at is not None
    assert edited.created_at == message.created_at


@pytest.mark.asyncio
async def test_edit_deleted_message_is_not_found(services, thread):
    message = await services.messages.post_message(thread.id, "student", "oops")
    await services.messages.delete_message(message.id, "student")
    with pytest.raises(exceptions.MessageNotFound):
        await services.messages.edit_message(message.id, "student", "fix")


@pytest.mark.asyncio
async def test_flag_is_idempotent_while_outstanding(services, thread):
    message = await services.messages.post_message(thread.id, "owner", "buy my course")
    flagged = await services.messages.flag_message(message.id, "student", "spam")
    assert flagged.flagged is True and flagged.flag_reason == "spam"

    again = await services.messages.flag_message(message.id, "assistant", "advertising")
    assert again.flagged is True and again.flag_reason == "advertising"

    queue = await services.messages.moderation_queue("org-1", "owner")
    assert len(queue) == 1
    assert queue[0].reason == "advertising"
    assert queue[0].reporter_id == "student"


@pytest.mark.asyncio
async def test_flag_requires_membership_and_reason(services, thread):
    message = await services.messages.post_message(thread.id, "owner", "hello")
    with pytest.raises(exceptions.NotAMember):
        await services.messages.flag_message(message.id, "stranger", "spam")
    with pytest.raises(exceptions.InvalidMessage):
        await services.messages.flag_message(message.id, "student", "  ")


@pytest.mark.asyncio
async def test_delete_permissions_and_listing(services, thread):
    await services.threads.add_member(thread.id, "peer")
    own = await services.messages.post_message(thread.id, "student", "mine")
    other = await services.messages.post_message(thread.id, "peer", "theirs")

    with pytest.raises(exceptions.Forbidden):
        await services.messages.delete_message(other.id, "student")

    deleted = await services.messages.delete_message(own.id, "student")
    assert deleted.deleted_at is not None
    again = await services.messages.delete_message(own.id, "student")
    assert again.deleted_at == deleted.deleted_at

    await services.messages.delete_message(other.id, "assistant")

    visible = await services.messages.list_messages(thread.id, "owner")
    assert visible.items == []
    audit = await services.messages.list_messages(thread.id, "owner", include_deleted=True)
    assert [m.id for m in audit.items] == [own.id, other.id]
    assert audit.items[0].body == "mine"
    with pytest.raises(exceptions.Forbidden):
        await services.messages.list_messages(thread.id, "student", include_deleted=True)


@pytest.mark.asyncio
async def test_moderation_queue_only_for_moderators(services, thread):
    message = await services.messages.post_message(thread.id, "owner", "hello")
    await services.messages.flag_message(message.id, "student", "rude")
    assert await services.messages.moderation_queue("org-1", "student") == []
    assert len(await services.messages.moderation_queue("org-1", "assistant")) == 1
    assert await services.messages.moderation_queue("org-2", "owner") == []


@pytest.mark.asyncio
async def test_review_rejected_soft_deletes_message(services, thread):
    message = await services.messages.post_message(thread.id, "student", "rude words")
    await services.messages.flag_message(message.id, "owner", "abuse")
    item = (await services.messages.moderation_queue("org-1", "owner"))[0]

    with pytest.raises(exceptions.Forbidden):
        await services.messages.review_flag(item.id, "student", "approved")

    reviewed = await services.messages.review_flag(item.id, "assistant", "rejected", notes="removed")
    assert reviewed.state == "rejected"
    assert reviewed.reviewed_by == "assistant"
    stored = await services.repo.get_message(message.id)
    assert stored.is_deleted
    assert await services.messages.moderation_queue("org-1", "owner") == []


@pytest.mark.asyncio
async def test_review_approved_clears_flag_and_allows_new_flag(services, thread):
    message = await services.messages.post_message(thread.id, "student", "fine actually")
    await services.messages.flag_message(message.id, "owner", "unsure")
    item = (await services.messages.moderation_queue("org-1", "owner"))[0]
    await services.messages.review_flag(item.id, "owner", "approved")

    stored = await services.repo.get_message(message.id)
    assert stored.flagged is False and stored.flag_reason is None

    await services.messages.flag_message(message.id, "assistant", "second look")
    pending = await services.messages.moderation_queue("org-1", "owner")
    assert len(pending) == 1 and pending[0].id != item.id


@pytest.mark.asyncio
async def test_review_unknown_item(services, thread):
    with pytest.raises(exceptions.ModerationItemNotFound):
        await services.messages.review_flag("missing", "owner", "approved")
    with pytest.raises(exceptions.InvalidMessage):
        await services.messages.review_flag("missing", "owner", "maybe")


async def _wait_until_stored(services, thread_id):
    while await services.repo.latest_message(thread_id) is None:
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_cancelled_post_still_settles_and_notifies(services, thread):
    await services.notifications.update_preferences("assistant", {"new_messages": False})

    async with cursor_locks.hold((thread.id, "assistant")):
        post = asyncio.create_task(services.messages.post_message(thread.id, "owner", "Namaste"))
        await _wait_until_stored(services, thread.id)
        post.cancel()
        with pytest.raises(asyncio.CancelledError):
            await post

    await services.router.drain()
    page = await services.messages.list_messages(thread.id, "owner")
    assert len(page.items) == 1
    inbox = await services.notifications.list_notifications("student")
    assert [n.source_ref for n in inbox.items] == [page.items[0].id]
    assert await services.reads.unread_count(thread.id, "assistant") == 0


@pytest.mark.asyncio
async def test_member_leaving_mid_post_does_not_fail_the_post(services, thread):
    await services.notifications.update_preferences("assistant", {"new_messages": False})

    async with cursor_locks.hold((thread.id, "assistant")):
        post = asyncio.create_task(services.messages.post_message(thread.id, "owner", "Namaste"))
        await _wait_until_stored(services, thread.id)
        await services.threads.remove_member(thread.id, "assistant")

    message = await post
    assert message.body == "Namaste"
    await services.router.drain()
    inbox = await services.notifications.list_notifications("student")
    assert [n.source_ref for n in inbox.items] == [message.id]
    assert (await services.notifications.list_notifications("assistant")).items == []
