import logging
from datetime import datetime
from typing import Any, Callable, List, Optional

from apscheduler.job import Job
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

logger = logging.getLogger(__name__)

JOB_PREFIX = "reminder:"


class RegistryError(Exception):
    """The timer facility refused to schedule a job."""


def job_id(reminder_id: str) -> str:
    return f"{JOB_PREFIX}{reminder_id}"


class JobRegistry:
    """
    Maps reminder ids to their one pending timer.

    Jobs live in a shared AsyncIOScheduler under the id ``reminder:<id>``. All
    calls are synchronous on the event loop thread, so a cancel followed by an
    install can't interleave with another coroutine touching the same id.
    """

    def __init__(self, scheduler: AsyncIOScheduler):
        self._scheduler = scheduler

    def install(self, reminder_id: str, fire_at: datetime, callback: Callable[..., Any]) -> Job:
        self.cancel(reminder_id)
        try:
            job = self._scheduler.add_job(
                callback,
                DateTrigger(run_date=fire_at),
                args=[reminder_id],
                id=job_id(reminder_id),
                name=f"reminder {reminder_id}",
                replace_existing=True,
                coalesce=True,
                max_instances=1,
                misfire_grace_time=None,  # a late timer still fires
            )
        except Exception as e:
            raise RegistryError(f"Could not schedule reminder {reminder_id}: {e}") from e
        logger.debug("Installed timer for reminder %s at %s", reminder_id, fire_at.isoformat())
        return job

    def cancel(self, reminder_id: str) -> bool:
        try:
            self._scheduler.remove_job(job_id(reminder_id))
        except JobLookupError:
            return False
        logger.debug("Cancelled timer for reminder %s", reminder_id)
        return True

    def has(self, reminder_id: str) -> bool:
        return self._scheduler.get_job(job_id(reminder_id)) is not None

    def next_run_time(self, reminder_id: str) -> Optional[datetime]:
        job = self._scheduler.get_job(job_id(reminder_id))
        if job is None:
            return None
        # Pending jobs of a scheduler that hasn't started yet have no next_run_time
        return getattr(job, "next_run_time", None) or job.trigger.run_date

    def scheduled_ids(self) -> List[str]:
        return [
            job.id[len(JOB_PREFIX):]
            for job in self._scheduler.get_jobs()
            if job.id.startswith(JOB_PREFIX)
        ]

    def clear(self) -> None:
        for reminder_id in self.scheduled_ids():
            self.cancel(reminder_id)
