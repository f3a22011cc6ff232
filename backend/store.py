import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .models import Reminder, utcnow

logger = logging.getLogger(__name__)

# Sorting by time of day, like the reminder list in the app
TIME_SORT = [("time_of_day.hour", 1), ("time_of_day.minute", 1)]
MAX_REMINDERS = 10000


class ReminderStore:
    """Reminder persistence over a mongo (or mongo-like) collection."""

    def __init__(self, collection: Any):
        self._collection = collection

    async def find_reminder(self, reminder_id: str, user_id: Optional[str] = None) -> Optional[Reminder]:
        query: Dict[str, Any] = {"id": reminder_id}
        if user_id is not None:
            query["user_id"] = user_id
        doc = await self._collection.find_one(query, {"_id": 0})
        if doc is None:
            return None
        return Reminder.model_validate(doc)

    async def find_reminders(
        self,
        user_id: str,
        active_only: bool = False,
        habit_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Reminder]:
        query: Dict[str, Any] = {"user_id": user_id}
        if active_only:
            query["is_active"] = True
        if habit_id:
            query["habit_id"] = habit_id
        return await self._find(query, limit or MAX_REMINDERS)

    async def find_active_reminders(self) -> List[Reminder]:
        return await self._find({"is_active": True}, MAX_REMINDERS)

    async def insert_reminder(self, reminder: Reminder) -> Reminder:
        await self._collection.insert_one(reminder.to_document())
        return reminder

    async def update_reminder(self, reminder_id: str, patch: Dict[str, Any]) -> bool:
        update = {k: v for k, v in patch.items() if k not in ("id", "user_id")}
        update["updated_at"] = utcnow().isoformat()
        result = await self._collection.update_one({"id": reminder_id}, {"$set": update})
        return result.matched_count > 0

    async def delete_reminder(self, reminder_id: str) -> bool:
        result = await self._collection.delete_one({"id": reminder_id})
        return result.deleted_count > 0

    async def _find(self, query: Dict[str, Any], limit: int) -> List[Reminder]:
        docs = await self._collection.find(query, {"_id": 0}).sort(TIME_SORT).to_list(limit)
        reminders = []
        for doc in docs:
            try:
                reminders.append(Reminder.model_validate(doc))
            except ValidationError as e:
                logger.warning("Skipping invalid reminder document %s: %s", doc.get("id"), e)
        return reminders
