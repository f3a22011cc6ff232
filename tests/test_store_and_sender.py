from datetime import datetime, timezone

import pytest

from backend.models import Frequency
from backend.sender import NotificationSender
from tests.conftest import make_reminder


@pytest.mark.asyncio
async def test_store_round_trip(store):
    reminder = make_reminder(frequency="weekly", days_of_week=[5, 1, 1], timezone="Europe/Paris")
    await store.insert_reminder(reminder)

    loaded = await store.find_reminder(reminder.id)

    assert loaded == reminder
    assert loaded.days_of_week == [1, 5]
    assert loaded.start_date == datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_store_filters_by_owner_and_state(store):
    mine = make_reminder(user_id="u1", time_of_day={"hour": 20, "minute": 0})
    early = make_reminder(user_id="u1", time_of_day={"hour": 6, "minute": 30}, habit_id="h1")
    paused = make_reminder(user_id="u1", is_active=False)
    theirs = make_reminder(user_id="u2")
    for reminder in (mine, early, paused, theirs):
        await store.insert_reminder(reminder)

    assert await store.find_reminder(mine.id, user_id="u2") is None
    assert [r.id for r in await store.find_reminders("u1", active_only=True)] == [early.id, mine.id]
    assert len(await store.find_reminders("u1")) == 3
    assert [r.id for r in await store.find_reminders("u1", habit_id="h1")] == [early.id]
    assert {r.id for r in await store.find_active_reminders()} == {mine.id, early.id, theirs.id}


@pytest.mark.asyncio
async def test_store_update_and_delete(store):
    reminder = make_reminder()
    await store.insert_reminder(reminder)

    assert await store.update_reminder(reminder.id, {"is_active": False, "user_id": "someone-else"})
    loaded = await store.find_reminder(reminder.id)
    assert loaded.is_active is False
    assert loaded.user_id == reminder.user_id

    assert await store.delete_reminder(reminder.id)
    assert await store.find_reminder(reminder.id) is None
    assert not await store.update_reminder(reminder.id, {"is_active": True})


@pytest.mark.asyncio
async def test_store_skips_broken_documents(db, store):
    good = make_reminder()
    await store.insert_reminder(good)
    await db.reminders.insert_one({"id": "broken", "user_id": "user-1", "is_active": True})

    assert [r.id for r in await store.find_active_reminders()] == [good.id]


def test_weekly_without_days_is_stored_with_all_days():
    reminder = make_reminder(frequency=Frequency.WEEKLY, days_of_week=[])
    assert reminder.to_document()["days_of_week"] == [0, 1, 2, 3, 4, 5, 6]


@pytest.mark.asyncio
async def test_in_app_notification_lands_in_inbox(db):
    await db.users.insert_one({"id": "user-1", "email": "a@example.com", "name": "A"})
    await db.habits.insert_one({"id": "h1", "user_id": "user-1", "name": "Stretch"})
    reminder = make_reminder(habit_id="h1", channel="in_app")

    outcome = await NotificationSender(db).send(reminder)

    assert outcome.delivered
    inbox = await db.notifications.find({"user_id": "user-1"}).to_list(10)
    assert len(inbox) == 1
    assert inbox[0]["message"] == 'Don\'t forget about your habit "Stretch"!'
    assert inbox[0]["priority"] == "high"
    assert inbox[0]["reminder_id"] == reminder.id


@pytest.mark.asyncio
async def test_sender_tolerates_deleted_habit(db):
    await db.users.insert_one({"id": "user-1", "email": "a@example.com", "name": "A"})
    reminder = make_reminder(habit_id="gone", channel="push")

    sender = NotificationSender(db)
    payload = await sender.render(reminder, is_test=True)
    outcome = await sender.send(reminder, is_test=True)

    assert payload["message"] == "Don't forget about your task!"
    assert payload["priority"] == "low"
    assert outcome.delivered
    assert await db.notifications.find({}).to_list(10) == []


@pytest.mark.asyncio
async def test_sender_uses_custom_message(db):
    await db.users.insert_one({"id": "user-1", "email": "a@example.com", "name": "A"})
    reminder = make_reminder(message="  Time for a walk  ")

    await NotificationSender(db).send(reminder)

    inbox = await db.notifications.find({}).to_list(10)
    assert inbox[0]["message"] == "Time for a walk"


@pytest.mark.asyncio
async def test_sender_reports_missing_owner(db):
    outcome = await NotificationSender(db).send(make_reminder())

    assert not outcome.delivered
    assert outcome.error == "User not found"
