import pytest
import pytest_asyncio

from studio_community.domain.community import exceptions


@pytest_asyncio.fixture
async def thread(services):
    created = await services.threads.create_thread("org-1", "retreat", "Bali Retreat", "roster", "owner")
    await services.threads.add_member(created.id, "reader")
    return created


@pytest.mark.asyncio
async def test_unread_counts_other_members_messages(services, thread):
    await services.messages.post_message(thread.id, "owner", "one")
    await services.messages.post_message(thread.id, "owner", "two")
    await services.messages.post_message(thread.id, "reader", "mine")
    assert await services.reads.unread_count(thread.id, "reader") == 2
    # own messages never count as unread
    assert await services.reads.unread_count(thread.id, "owner") == 1


@pytest.mark.asyncio
async def test_mark_read_is_monotonic(services, thread):
    first = await services.messages.post_message(thread.id, "owner", "one")
    second = await services.messages.post_message(thread.id, "owner", "two")

    cursor = await services.reads.mark_read(thread.id, "reader", second.id)
    assert cursor == second.created_at
    assert await services.reads.unread_count(thread.id, "reader") == 0

    stale = await services.reads.mark_read(thread.id, "reader", first.id)
    assert stale == second.created_at
    member = await services.repo.get_member(thread.id, "reader")
    assert member.last_read_at == second.created_at


@pytest.mark.asyncio
async def test_mark_read_rejects_foreign_messages(services, thread):
    other = await services.threads.create_thread("org-1", "class", "Other", "roster", "owner")
    foreign = await services.messages.post_message(other.id, "owner", "elsewhere")
    with pytest.raises(exceptions.MessageNotFound):
        await services.reads.mark_read(thread.id, "reader", foreign.id)
    with pytest.raises(exceptions.MessageNotFound):
        await services.reads.mark_read(thread.id, "reader", "missing")
    with pytest.raises(exceptions.NotAMember):
        await services.reads.mark_read(other.id, "reader", foreign.id)


@pytest.mark.asyncio
async def test_deleted_messages_are_not_unread(services, thread):
    message = await services.messages.post_message(thread.id, "owner", "typo")
    assert await services.reads.unread_count(thread.id, "reader") == 1
    await services.messages.delete_message(message.id, "owner")
    assert await services.reads.unread_count(thread.id, "reader") == 0


@pytest.mark.asyncio
async def test_mark_all_read(services, thread):
    member = await services.repo.get_member(thread.id, "reader")
    assert await services.reads.mark_all_read(thread.id, "reader") == member.last_read_at

    for body in ("a", "b", "c"):
        latest = await services.messages.post_message(thread.id, "owner", body)
    assert await services.reads.mark_all_read(thread.id, "reader") == latest.created_at
    assert await services.reads.unread_count(thread.id, "reader") == 0


@pytest.mark.asyncio
async def test_aggregate_unread_spans_threads_in_org(services, thread):
    second = await services.threads.create_thread("org-1", "class", "Hatha", "roster", "owner")
    await services.threads.add_member(second.id, "reader")
    elsewhere = await services.threads.create_thread("org-2", "class", "Remote", "roster", "owner")
    await services.threads.add_member(elsewhere.id, "reader")

    await services.messages.post_message(thread.id, "owner", "a")
    await services.messages.post_message(second.id, "owner", "b")
    await services.messages.post_message(second.id, "owner", "c")
    await services.messages.post_message(elsewhere.id, "owner", "d")

    assert await services.reads.aggregate_unread("reader", "org-1") == 3
    assert await services.reads.aggregate_unread("reader", "org-2") == 1
    assert await services.reads.aggregate_unread("nobody", "org-1") == 0


@pytest.mark.asyncio
async def test_muted_member_never_sees_unread(services, thread):
    await services.threads.update_membership(thread.id, "reader", muted=True)
    message = await services.messages.post_message(thread.id, "owner", "quiet please")
    assert await services.reads.unread_count(thread.id, "reader") == 0
    member = await services.repo.get_member(thread.id, "reader")
    assert member.last_read_at == message.created_at


@pytest.mark.asyncio
async def test_category_opt_out_settles_cursor(services, thread):
    await services.notifications.update_preferences("reader", {"new_messages": False})
    await services.messages.post_message(thread.id, "owner", "hello")
    assert await services.reads.unread_count(thread.id, "reader") == 0

    await services.notifications.update_preferences("reader", {"new_messages": True})
    await services.messages.post_message(thread.id, "owner", "again")
    assert await services.reads.unread_count(thread.id, "reader") == 1


@pytest.mark.asyncio
async def test_settle_after_post_reports_settled_members(services, thread):
    await services.threads.add_member(thread.id, "silent")
    await services.threads.update_membership(thread.id, "silent", notifications_enabled=False)
    message = await services.messages.post_message(thread.id, "owner", "hi")
    members = [m for m in await services.repo.list_members(thread.id) if m.user_id != "owner"]
    settled = await services.reads.settle_after_post(message, members)
    assert settled == ["silent"]


@pytest.mark.asyncio
async def test_opted_out_post_keeps_earlier_unread(services, thread):
    first = await services.messages.post_message(thread.id, "owner", "first")
    await services.threads.update_membership(thread.id, "reader", muted=True)
    await services.messages.post_message(thread.id, "owner", "second")
    await services.threads.update_membership(thread.id, "reader", muted=False)

    member = await services.repo.get_member(thread.id, "reader")
    assert member.last_read_at < first.created_at
    assert await services.reads.unread_count(thread.id, "reader") == 2
    await services.reads.mark_read(thread.id, "reader", first.id)
    assert await services.reads.unread_count(thread.id, "reader") == 1


@pytest.mark.asyncio
async def test_settle_after_post_skips_members_who_left(services, thread):
    await services.threads.add_member(thread.id, "silent")
    await services.threads.update_membership(thread.id, "silent", notifications_enabled=False)
    message = await services.messages.post_message(thread.id, "owner", "hi")
    members = [m for m in await services.repo.list_members(thread.id) if m.user_id != "owner"]
    await services.threads.remove_member(thread.id, "silent")

    assert await services.reads.settle_after_post(message, members) == []
