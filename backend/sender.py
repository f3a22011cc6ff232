import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from .models import Channel, Reminder, SendOutcome, utcnow

logger = logging.getLogger(__name__)


class INotificationSender(ABC):

    @abstractmethod
    async def send(self, reminder: Reminder, is_test: bool = False) -> SendOutcome:
        """
        Deliver a notification for the reminder. Implementations report failures
        through the outcome rather than raising.
        """


class NotificationSender(INotificationSender):
    """
    Renders the reminder payload and hands it to the transport for its channel.

    In-app notifications are written to the ``notifications`` collection and
    served by the inbox endpoint. Push, email and SMS have no provider wired in
    and go to the console.
    """

    def __init__(self, db: Any):
        self._db = db

    async def send(self, reminder: Reminder, is_test: bool = False) -> SendOutcome:
        try:
            user = await self._db.users.find_one({"id": reminder.user_id}, {"_id": 0, "password": 0})
            if user is None:
                return SendOutcome(delivered=False, error="User not found")

            payload = await self.render(reminder, is_test=is_test)
            if reminder.channel == Channel.IN_APP:
                await self._send_in_app(payload)
            else:
                self._send_console(payload, user)
        except Exception as e:
            logger.exception("Sending reminder %s over %s failed", reminder.id, reminder.channel.value)
            return SendOutcome(delivered=False, error=str(e))

        logger.info(
            "Reminder sent: reminder=%s user=%s channel=%s test=%s",
            reminder.id,
            reminder.user_id,
            reminder.channel.value,
            is_test,
        )
        return SendOutcome(delivered=True)

    async def render(self, reminder: Reminder, is_test: bool = False) -> Dict[str, Any]:
        text = reminder.message or await self._default_message(reminder)
        return {
            "id": str(uuid.uuid4()),
            "user_id": reminder.user_id,
            "reminder_id": reminder.id,
            "habit_id": reminder.habit_id,
            "title": reminder.title,
            "message": text,
            "channel": reminder.channel.value,
            "priority": "low" if is_test else "high",
            "is_test": is_test,
            "settings": reminder.notification_settings.model_dump(),
            "created_at": utcnow().isoformat(),
        }

    async def _default_message(self, reminder: Reminder) -> str:
        habit = await self._find_habit(reminder.habit_id) if reminder.habit_id else None
        if habit is not None:
            return f"Don't forget about your habit \"{habit['name']}\"!"
        return "Don't forget about your task!"

    async def _find_habit(self, habit_id: str) -> Optional[Dict[str, Any]]:
        # The habit may have been deleted since the reminder was created
        return await self._db.habits.find_one({"id": habit_id}, {"_id": 0})

    async def _send_in_app(self, payload: Dict[str, Any]) -> None:
        await self._db.notifications.insert_one(dict(payload))

    def _send_console(self, payload: Dict[str, Any], user: Dict[str, Any]) -> None:
        logger.info(
            "[%s] to %s: %s - %s",
            payload["channel"],
            user.get("email") or user.get("id"),
            payload["title"],
            payload["message"],
        )
