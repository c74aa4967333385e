from datetime import time

import pytest

from studio_community.domain.community import exceptions, models
from studio_community.domain.community.routing import Recipient


def _event(index):
    return models.NotificationEvent(
        category="community_updates",
        title=f"Update {index}",
        body="Studio news",
        source_ref=f"ref-{index}",
    )


@pytest.mark.asyncio
async def test_list_notifications_newest_first_with_cursor(services):
    for index in range(5):
        await services.router.route(_event(index), Recipient("u1"))

    page = await services.notifications.list_notifications("u1", limit=2)
    assert [n.title for n in page.items] == ["Update 4", "Update 3"]
    assert page.unread_count == 5
    titles = [n.title for n in page.items]
    while page.next_cursor:
        page = await services.notifications.list_notifications("u1", limit=2, cursor=page.next_cursor)
        titles.extend(n.title for n in page.items)
    assert titles == [f"Update {i}" for i in range(4, -1, -1)]


@pytest.mark.asyncio
async def test_mark_notification_read_is_per_user(services):
    outcome = await services.router.route(_event(1), Recipient("u1"))
    with pytest.raises(exceptions.NotificationNotFound):
        await services.notifications.mark_notification_read("u2", outcome.notification.id)

    read = await services.notifications.mark_notification_read("u1", outcome.notification.id)
    assert read.read is True and read.read_at is not None
    again = await services.notifications.mark_notification_read("u1", outcome.notification.id)
    assert again.read_at == read.read_at


@pytest.mark.asyncio
async def test_mark_all_read_counts_changes(services):
    for index in range(3):
        await services.router.route(_event(index), Recipient("u1"))
    assert await services.notifications.mark_all_read("u1") == 3
    assert await services.notifications.mark_all_read("u1") == 0
    page = await services.notifications.list_notifications("u1")
    assert page.unread_count == 0


@pytest.mark.asyncio
async def test_default_preferences(services):
    prefs = await services.notifications.get_preferences("fresh")
    assert prefs.in_app and prefs.email and prefs.push and prefs.sound
    assert prefs.quiet_hours_enabled is True
    assert (prefs.quiet_hours_start, prefs.quiet_hours_end) == (time(22, 0), time(7, 0))
    assert prefs.timezone == "UTC"


@pytest.mark.asyncio
async def test_update_preferences_merges_partial_patch(services):
    prefs = await services.notifications.update_preferences(
        "u1",
        {"push": False, "quiet_hours_start": "21:30", "timezone": "Europe/Lisbon", "sound": None},
    )
    assert prefs.push is False
    assert prefs.sound is True
    assert prefs.quiet_hours_start == time(21, 30)
    assert prefs.timezone == "Europe/Lisbon"

    prefs = await services.notifications.update_preferences("u1", {"email": False})
    assert prefs.push is False and prefs.email is False
    assert prefs.timezone == "Europe/Lisbon"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "patch",
    [
        {"push": "yes"},
        {"quiet_hours_end": "late"},
        {"timezone": "Mars/Olympus"},
        {"favourite_colour": "teal"},
    ],
)
async def test_update_preferences_rejects_invalid_values(services, patch):
    with pytest.raises(exceptions.InvalidPreference):
        await services.notifications.update_preferences("u1", patch)
    assert await services.repo.get_preferences("u1") is None
