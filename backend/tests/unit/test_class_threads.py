import pytest

from studio_community.domain.community import exceptions
from studio_community.domain.community.class_threads import WELCOME_TEMPLATE, class_thread_title


@pytest.mark.asyncio
async def test_create_class_thread_builds_roster_and_welcome(services):
    thread, welcome = await services.classes.create_class_thread(
        "org-1",
        "class-42",
        "Sunrise Vinyasa",
        instructor_id="instructor",
        roster_ids=["s1", "s2", "s1", "instructor"],
    )
    assert thread.title == class_thread_title("Sunrise Vinyasa") == "Sunrise Vinyasa - Class Discussion"
    assert thread.kind == "class" and thread.visibility == "roster"
    assert thread.context_id == "class-42"
    assert thread.auto_created is True
    assert thread.last_message_at == welcome.created_at

    members = await services.threads.list_members(thread.id)
    assert sorted((m.user_id, m.role) for m in members) == [("instructor", "owner"), ("s1", "member"), ("s2", "member")]
    assert welcome.sender_id == "instructor"
    assert welcome.body == WELCOME_TEMPLATE.format(class_name="Sunrise Vinyasa")
    assert await services.reads.unread_count(thread.id, "s1") == 1


@pytest.mark.asyncio
async def test_create_class_thread_without_instructor_uses_system_owner(services):
    thread, welcome = await services.classes.create_class_thread("org-1", "class-7", "Yin", roster_ids=["s1"])
    assert welcome.sender_id == "system"
    owner = await services.repo.get_member(thread.id, "system")
    assert owner.role == "owner"


@pytest.mark.asyncio
async def test_create_class_thread_requires_name(services):
    with pytest.raises(exceptions.InvalidMessage):
        await services.classes.create_class_thread("org-1", "class-1", "  ")


@pytest.mark.asyncio
async def test_list_and_archive_class_threads(services):
    first, _ = await services.classes.create_class_thread("org-1", "c1", "Hatha", instructor_id="instructor")
    second, _ = await services.classes.create_class_thread("org-1", "c2", "Kundalini", instructor_id="instructor")
    await services.threads.create_thread("org-1", "support", "Help", "staff", "instructor")

    listed = await services.classes.list_class_threads("org-1")
    assert {t.id for t in listed} == {first.id, second.id}

    with pytest.raises(exceptions.Forbidden):
        await services.classes.archive_class_thread(first.id, "stranger")
    await services.classes.archive_class_thread(first.id, "instructor")
    assert [t.id for t in await services.classes.list_class_threads("org-1")] == [second.id]


@pytest.mark.asyncio
async def test_send_class_reminder_targets_members(services):
    thread, _ = await services.classes.create_class_thread(
        "org-1", "c9", "Restorative", instructor_id="instructor", roster_ids=["s1", "s2"]
    )
    await services.notifications.update_preferences("s2", {"class_reminders": False})

    with pytest.raises(exceptions.Forbidden):
        await services.classes.send_class_reminder(thread.id, "s1", title="Soon", body="Class in 1 hour")

    outcomes = await services.classes.send_class_reminder(
        thread.id, "instructor", title="Soon", body="Class in 1 hour"
    )
    by_user = {o.user_id: o for o in outcomes}
    assert set(by_user) == {"s1", "s2"}
    assert by_user["s1"].notification.category == "class_reminders"
    assert by_user["s1"].notification.priority == "high"
    assert by_user["s1"].notification.source_ref == "c9"
    assert by_user["s2"].skip_reason == "category_disabled"
