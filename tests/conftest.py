import uuid
from datetime import datetime, timezone
from typing import List, Tuple

import pytest

from backend.database import InMemoryDB
from backend.models import Reminder, SendOutcome
from backend.sender import INotificationSender
from backend.store import ReminderStore


class FakeSender(INotificationSender):
    def __init__(self, outcome: SendOutcome = None, error: Exception = None):
        self.outcome = outcome or SendOutcome(delivered=True)
        self.error = error
        self.calls: List[Tuple[str, bool]] = []

    async def send(self, reminder: Reminder, is_test: bool = False) -> SendOutcome:
        self.calls.append((reminder.id, is_test))
        if self.error is not None:
            raise self.error
        return self.outcome


def make_reminder(**overrides) -> Reminder:
    fields = {
        "id": str(uuid.uuid4()),
        "user_id": "user-1",
        "title": "Drink water",
        "frequency": "daily",
        "time_of_day": {"hour": 9, "minute": 0},
        "start_date": datetime(2024, 1, 1, tzinfo=timezone.utc),
    }
    fields.update(overrides)
    return Reminder(**fields)


@pytest.fixture
def db():
    return InMemoryDB()


@pytest.fixture
def store(db):
    return ReminderStore(db.reminders)


@pytest.fixture
def sender():
    return FakeSender()
