import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from backend.models import SendOutcome
from backend.recurrence import next_fire_time
from backend.scheduler import ReminderScheduler
from tests.conftest import FakeSender, make_reminder


def _scheduler(store, sender, **kwargs) -> ReminderScheduler:
    scheduler = ReminderScheduler(store, sender, **kwargs)
    scheduler.start()
    return scheduler


async def _wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        if await predicate():
            return True
        await asyncio.sleep(0.05)
    return False


@pytest.mark.asyncio
async def test_reconcile_twice_leaves_one_job(store, sender):
    scheduler = _scheduler(store, sender)
    try:
        reminder = make_reminder()
        await store.insert_reminder(reminder)

        first = scheduler.reconcile(reminder)
        second = scheduler.reconcile(reminder)

        assert first == second
        assert scheduler.is_scheduled(reminder.id)
        assert scheduler.registry.scheduled_ids() == [reminder.id]
    finally:
        scheduler.shutdown()


@pytest.mark.asyncio
async def test_inactive_reminder_is_not_scheduled(store, sender):
    scheduler = _scheduler(store, sender)
    try:
        reminder = make_reminder(is_active=False)
        assert await scheduler.on_reminder_created(reminder) is None
        assert not scheduler.is_scheduled(reminder.id)
    finally:
        scheduler.shutdown()


@pytest.mark.asyncio
async def test_toggle_off_and_on_restores_schedule(store, sender):
    scheduler = _scheduler(store, sender)
    try:
        reminder = make_reminder(time_of_day={"hour": 6, "minute": 45})
        await store.insert_reminder(reminder)
        await scheduler.on_reminder_created(reminder)
        assert scheduler.is_scheduled(reminder.id)

        reminder.is_active = False
        await scheduler.on_reminder_toggled(reminder)
        assert not scheduler.is_scheduled(reminder.id)

        reminder.is_active = True
        scheduled = await scheduler.on_reminder_toggled(reminder)
        assert scheduler.is_scheduled(reminder.id)
        assert scheduled == next_fire_time(reminder)
        assert scheduler.next_run_time(reminder.id) == scheduled
    finally:
        scheduler.shutdown()


@pytest.mark.asyncio
async def test_update_moves_the_timer(store, sender):
    scheduler = _scheduler(store, sender)
    try:
        reminder = make_reminder(time_of_day={"hour": 6, "minute": 0})
        await scheduler.on_reminder_created(reminder)

        reminder.time_of_day.hour = 21
        scheduled = await scheduler.on_reminder_updated(reminder)

        assert scheduled.hour == 21
        assert scheduler.next_run_time(reminder.id) == scheduled
        assert scheduler.registry.scheduled_ids() == [reminder.id]
    finally:
        scheduler.shutdown()


@pytest.mark.asyncio
async def test_delete_cancels_immediately(store, sender):
    scheduler = _scheduler(store, sender)
    try:
        reminder = make_reminder()
        await store.insert_reminder(reminder)
        await scheduler.on_reminder_created(reminder)

        scheduler.on_reminder_deleted(reminder.id)

        assert not scheduler.is_scheduled(reminder.id)
    finally:
        scheduler.shutdown()


@pytest.mark.asyncio
async def test_fire_after_delete_does_not_reschedule(store, sender):
    scheduler = _scheduler(store, sender)
    try:
        reminder = make_reminder()
        await store.insert_reminder(reminder)
        await scheduler.on_reminder_created(reminder)

        # The record is still in storage, as if the fire raced the delete
        scheduler.on_reminder_deleted(reminder.id)
        await scheduler._fire(reminder.id)

        assert sender.calls == []
        assert not scheduler.is_scheduled(reminder.id)
    finally:
        scheduler.shutdown()


@pytest.mark.asyncio
async def test_fire_sends_records_and_reschedules(store, sender):
    scheduler = _scheduler(store, sender)
    try:
        reminder = make_reminder()
        await store.insert_reminder(reminder)

        await scheduler._fire(reminder.id)

        assert sender.calls == [(reminder.id, False)]
        stored = await store.find_reminder(reminder.id)
        assert stored.last_fired_at is not None
        assert scheduler.is_scheduled(reminder.id)
        assert scheduler.next_run_time(reminder.id) > datetime.now(timezone.utc)
    finally:
        scheduler.shutdown()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "failing_sender",
    [
        FakeSender(error=RuntimeError("smtp down")),
        FakeSender(outcome=SendOutcome(delivered=False, error="no device token")),
    ],
)
async def test_failed_delivery_keeps_recurrence(store, failing_sender):
    scheduler = _scheduler(store, failing_sender)
    try:
        reminder = make_reminder(channel="email")
        await store.insert_reminder(reminder)

        await scheduler._fire(reminder.id)

        stored = await store.find_reminder(reminder.id)
        assert stored.last_fired_at is not None
        assert scheduler.is_scheduled(reminder.id)
    finally:
        scheduler.shutdown()


@pytest.mark.asyncio
async def test_hung_sender_times_out(store):
    class SlowSender(FakeSender):
        async def send(self, reminder, is_test=False):
            await asyncio.sleep(10)

    scheduler = _scheduler(store, SlowSender(), send_timeout=0.05)
    try:
        reminder = make_reminder()
        await store.insert_reminder(reminder)

        outcome = await scheduler.send_test_now(reminder)

        assert not outcome.delivered
        assert "Timed out" in outcome.error
    finally:
        scheduler.shutdown()


@pytest.mark.asyncio
async def test_fire_of_updated_reminder_uses_stored_state(store, sender):
    scheduler = _scheduler(store, sender)
    try:
        reminder = make_reminder()
        await store.insert_reminder(reminder)
        await store.update_reminder(reminder.id, {"is_active": False})

        await scheduler._fire(reminder.id)

        assert sender.calls == []
        assert not scheduler.is_scheduled(reminder.id)
    finally:
        scheduler.shutdown()


@pytest.mark.asyncio
async def test_overdue_once_reminder_fires_once(store, sender):
    scheduler = _scheduler(store, sender)
    try:
        reminder = make_reminder(
            frequency="once",
            start_date=datetime.now(timezone.utc) - timedelta(days=2),
        )
        await store.insert_reminder(reminder)
        await scheduler.on_reminder_created(reminder)

        async def fired():
            stored = await store.find_reminder(reminder.id)
            return stored.last_fired_at is not None

        assert await _wait_for(fired)
        assert sender.calls == [(reminder.id, False)]
        assert not scheduler.is_scheduled(reminder.id)

        stored = await store.find_reminder(reminder.id)
        assert await scheduler.on_reminder_updated(stored) is None
    finally:
        scheduler.shutdown()


@pytest.mark.asyncio
async def test_send_test_now_leaves_schedule_alone(store, sender):
    scheduler = _scheduler(store, sender)
    try:
        reminder = make_reminder()
        await store.insert_reminder(reminder)
        scheduled = await scheduler.on_reminder_created(reminder)

        outcome = await scheduler.send_test_now(reminder)

        assert outcome.delivered
        assert sender.calls == [(reminder.id, True)]
        assert (await store.find_reminder(reminder.id)).last_fired_at is None
        assert scheduler.next_run_time(reminder.id) == scheduled
    finally:
        scheduler.shutdown()


@pytest.mark.asyncio
async def test_bootstrap_schedules_active_reminders(store, sender):
    scheduler = _scheduler(store, sender)
    try:
        live = make_reminder()
        paused = make_reminder(is_active=False)
        expired = make_reminder(end_date=datetime(2024, 2, 1, tzinfo=timezone.utc))
        for reminder in (live, paused, expired):
            await store.insert_reminder(reminder)

        assert await scheduler.bootstrap() == 1
        assert scheduler.registry.scheduled_ids() == [live.id]
    finally:
        scheduler.shutdown()


@pytest.mark.asyncio
async def test_update_during_one_off_send_does_not_leave_a_timer(store):
    class SlowSender(FakeSender):
        async def send(self, reminder, is_test=False):
            await asyncio.sleep(0.2)
            return await super().send(reminder, is_test=is_test)

    sender = SlowSender()
    scheduler = _scheduler(store, sender)
    try:
        reminder = make_reminder(
            frequency="once",
            start_date=datetime.now(timezone.utc) + timedelta(hours=1),
        )
        await store.insert_reminder(reminder)
        stale = await store.find_reminder(reminder.id)

        firing = asyncio.create_task(scheduler._fire(reminder.id))
        await asyncio.sleep(0.05)
        assert await scheduler.on_reminder_updated(stale) is not None
        await firing

        assert sender.calls == [(reminder.id, False)]
        assert not scheduler.is_scheduled(reminder.id)
    finally:
        scheduler.shutdown()


@pytest.mark.asyncio
async def test_one_off_reminder_that_already_fired_is_not_sent_again(store, sender):
    scheduler = _scheduler(store, sender)
    try:
        reminder = make_reminder(frequency="once", last_fired_at=datetime.now(timezone.utc))
        await store.insert_reminder(reminder)

        await scheduler._fire(reminder.id)

        assert sender.calls == []
        assert not scheduler.is_scheduled(reminder.id)
    finally:
        scheduler.shutdown()


@pytest.mark.asyncio
async def test_update_with_stale_copy_keeps_stored_fire_time(store, sender):
    scheduler = _scheduler(store, sender)
    try:
        reminder = make_reminder(
            frequency="once",
            start_date=datetime.now(timezone.utc) + timedelta(hours=1),
        )
        await store.insert_reminder(reminder)
        await store.update_reminder(reminder.id, {"last_fired_at": datetime.now(timezone.utc).isoformat()})

        assert await scheduler.on_reminder_updated(reminder) is None
        assert not scheduler.is_scheduled(reminder.id)
    finally:
        scheduler.shutdown()


@pytest.mark.asyncio
async def test_bookkeeping_does_not_grow_without_bound(store, sender, monkeypatch):
    monkeypatch.setattr("backend.scheduler.RETIRED_LIMIT", 3)
    scheduler = _scheduler(store, sender)
    try:
        reminders = [make_reminder() for _ in range(5)]
        for reminder in reminders:
            await scheduler.on_reminder_created(reminder)
            scheduler.on_reminder_deleted(reminder.id)

        assert scheduler._locks == {}
        assert list(scheduler._retired) == [r.id for r in reminders[-3:]]
    finally:
        scheduler.shutdown()
