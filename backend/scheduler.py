"""
Reminder scheduler.

Each reminder is Unscheduled, Scheduled (one pending timer in the registry) or
Firing (its timer elapsed and the fire callback is running). ``reconcile``
moves a reminder to Scheduled or Unscheduled from its current state; the fire
callback ends by reloading the reminder and reconciling it again, so a
recurring reminder keeps rescheduling itself one occurrence at a time.
"""

import asyncio
import logging
from collections import Counter, OrderedDict
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, Optional
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from .config import REMINDER_SEND_TIMEOUT
from .models import Frequency, Reminder, SendOutcome, utcnow
from .recurrence import next_fire_time
from .registry import JobRegistry, RegistryError
from .sender import INotificationSender
from .store import ReminderStore

logger = logging.getLogger(__name__)

# Deleted ids remembered so an in-flight fire cannot reschedule them
RETIRED_LIMIT = 1024


class ReminderScheduler:
    def __init__(
        self,
        store: ReminderStore,
        sender: INotificationSender,
        scheduler: Optional[AsyncIOScheduler] = None,
        send_timeout: float = REMINDER_SEND_TIMEOUT,
    ):
        self._store = store
        self._sender = sender
        self._owns_scheduler = scheduler is None
        self._scheduler = scheduler or AsyncIOScheduler(timezone=ZoneInfo("UTC"))
        self._registry = JobRegistry(self._scheduler)
        self._send_timeout = send_timeout
        # Per-reminder locks only live while someone holds or waits on them
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Counter = Counter()
        self._retired: "OrderedDict[str, None]" = OrderedDict()

    @property
    def registry(self) -> JobRegistry:
        return self._registry

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("Reminder scheduler started")

    def shutdown(self) -> None:
        if self._owns_scheduler and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        else:
            self._registry.clear()
        logger.info("Reminder scheduler stopped")

    # ============== RECONCILE ==============

    def reconcile(self, reminder: Reminder, now: Optional[datetime] = None) -> Optional[datetime]:
        """
        Cancel the current timer of the reminder and install a new one for its
        next fire time. Returns the scheduled instant, or None if unscheduled.
        """
        self._registry.cancel(reminder.id)
        if reminder.id in self._retired:
            return None

        try:
            fire_at = next_fire_time(reminder, now)
        except Exception:
            logger.exception("Failed to compute next fire time for reminder %s", reminder.id)
            return None
        if fire_at is None:
            logger.info("Reminder %s not scheduled (no upcoming occurrence)", reminder.id)
            return None

        try:
            self._registry.install(reminder.id, fire_at, self._fire)
        except RegistryError as e:
            logger.error("%s", e)
            return None

        logger.info(
            "Reminder scheduled: reminder=%s user=%s next=%s",
            reminder.id,
            reminder.user_id,
            fire_at.isoformat(),
        )
        return fire_at

    @asynccontextmanager
    async def _locked(self, reminder_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(reminder_id, asyncio.Lock())
        self._lock_users[reminder_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[reminder_id] -= 1
            if self._lock_users[reminder_id] <= 0:
                del self._lock_users[reminder_id]
                self._locks.pop(reminder_id, None)

    async def _reconcile_locked(self, reminder: Reminder, refresh: bool = False) -> Optional[datetime]:
        async with self._locked(reminder.id):
            if refresh:
                reminder = await self._with_stored_fire_time(reminder)
            return self.reconcile(reminder)

    async def _with_stored_fire_time(self, reminder: Reminder) -> Reminder:
        # last_fired_at is owned by the fire callback; a caller may hold an older copy
        stored = await self._load(reminder.id)
        if stored is None or stored.last_fired_at is None:
            return reminder
        if reminder.last_fired_at is None or stored.last_fired_at > reminder.last_fired_at:
            return reminder.model_copy(update={"last_fired_at": stored.last_fired_at})
        return reminder

    # ============== SURFACE ==============

    async def on_reminder_created(self, reminder: Reminder) -> Optional[datetime]:
        self._retired.pop(reminder.id, None)
        return await self._reconcile_locked(reminder)

    async def on_reminder_updated(self, reminder: Reminder) -> Optional[datetime]:
        return await self._reconcile_locked(reminder, refresh=True)

    async def on_reminder_toggled(self, reminder: Reminder) -> Optional[datetime]:
        return await self._reconcile_locked(reminder, refresh=True)

    def on_reminder_deleted(self, reminder_id: str) -> None:
        self._retired[reminder_id] = None
        while len(self._retired) > RETIRED_LIMIT:
            self._retired.popitem(last=False)
        self._registry.cancel(reminder_id)
        logger.info("Reminder %s unscheduled (deleted)", reminder_id)

    async def send_test_now(self, reminder: Reminder) -> SendOutcome:
        return await self._deliver(reminder, is_test=True)

    def is_scheduled(self, reminder_id: str) -> bool:
        return self._registry.has(reminder_id)

    def next_run_time(self, reminder_id: str) -> Optional[datetime]:
        return self._registry.next_run_time(reminder_id)

    async def bootstrap(self) -> int:
        """Schedule every active reminder found in storage. Returns how many got a timer."""
        try:
            reminders = await self._store.find_active_reminders()
        except Exception:
            logger.exception("Failed to load active reminders")
            return 0

        scheduled = 0
        for reminder in reminders:
            if await self._reconcile_locked(reminder) is not None:
                scheduled += 1
        logger.info("Reminder scheduler initialized: %s of %s active reminders scheduled", scheduled, len(reminders))
        return scheduled

    # ============== FIRING ==============

    async def _fire(self, reminder_id: str) -> None:
        reminder = await self._load(reminder_id)
        if reminder is None or not reminder.is_active or reminder_id in self._retired:
            logger.info("Reminder %s fired but is gone or inactive; skipping", reminder_id)
            return
        if reminder.frequency == Frequency.ONCE and reminder.last_fired_at is not None:
            logger.info("One-off reminder %s already fired; skipping", reminder_id)
            return

        outcome = await self._deliver(reminder, is_test=False)
        fired_at = utcnow()
        try:
            await self._store.update_reminder(reminder_id, {"last_fired_at": fired_at.isoformat()})
        except Exception:
            logger.exception("Failed to record last_fired_at for reminder %s", reminder_id)
        logger.info("Reminder %s fired (delivered=%s)", reminder_id, outcome.delivered)

        # A one-off reminder resolves to None here, which drops any timer
        # installed by an update that raced the send
        async with self._locked(reminder_id):
            if reminder_id in self._retired:
                return
            current = await self._load(reminder_id)
            if current is None:
                return
            # The stored value may be missing if the write above failed
            current.last_fired_at = fired_at
            self.reconcile(current)

    async def _deliver(self, reminder: Reminder, is_test: bool) -> SendOutcome:
        try:
            outcome = await asyncio.wait_for(
                self._sender.send(reminder, is_test=is_test),
                timeout=self._send_timeout,
            )
        except asyncio.TimeoutError:
            outcome = SendOutcome(delivered=False, error=f"Timed out after {self._send_timeout}s")
        except Exception as e:
            outcome = SendOutcome(delivered=False, error=str(e) or e.__class__.__name__)

        if not outcome.delivered:
            logger.warning(
                "Reminder delivery failed: reminder=%s channel=%s error=%s",
                reminder.id,
                reminder.channel.value,
                outcome.error,
            )
        return outcome

    async def _load(self, reminder_id: str) -> Optional[Reminder]:
        try:
            return await self._store.find_reminder(reminder_id)
        except Exception:
            logger.exception("Failed to load reminder %s", reminder_id)
            return None
