"""
Reminder preferences and the event reminder lifecycle.

A reminder moves scheduled -> triggered -> dismissed and never back. The
trigger step is a single conditional update so that concurrent pollers fire
each reminder at most once.
"""

import logging
import uuid
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, List, NamedTuple, Optional

import pytz
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import from_db_time, to_db_time, utcnow
from formatting import render_all_day_message, render_message
from schemas import EventReminder, ReminderPreferences

logger = logging.getLogger(__name__)

PREFERENCES_COLLECTION = "reminderpreferences"
REMINDER_COLLECTION = "eventreminder"

_TIME_FIELDS = ("event_start", "event_end", "reminder_time", "triggered_at", "dismissed_at", "created_at", "updated_at")


class ReminderError(Exception):
    pass


class ReminderNotFoundError(ReminderError):
    pass


class InvalidTransitionError(ReminderError):
    pass


class CreateResult(NamedTuple):
    reminder: EventReminder
    created: bool


class TriggerResult(NamedTuple):
    reminder: EventReminder
    fired: bool


def compute_reminder_time(event_start: datetime, minutes_before: int) -> datetime:
    return event_start - timedelta(minutes=minutes_before)


def all_day_reminder_time(event_date: date, lead_time: time, tz_name: str = "UTC") -> datetime:
    """Reminder instant for an all-day event, at lead_time on that day in the user's timezone."""
    tz = pytz.timezone(tz_name)
    local = tz.localize(datetime.combine(event_date, lead_time))
    return local.astimezone(pytz.utc)


def render_reminder(reminder: EventReminder, tz_name: str = "UTC") -> str:
    if reminder.is_all_day:
        return render_all_day_message(reminder.event_title, reminder.location)
    return render_message(
        reminder.event_title,
        reminder.event_start,
        reminder.minutes_before_event,
        reminder.location,
        tz_name,
    )


def notification_payload(reminder: EventReminder, preferences: ReminderPreferences) -> Optional[Dict[str, Any]]:
    """What the client should show or speak; None when both channels are off."""
    if not (preferences.notify_visually or preferences.notify_spoken):
        return None
    return {
        "id": reminder.id,
        "title": reminder.event_title,
        "message": reminder.message,
        "event_start": reminder.event_start.isoformat(),
        "location": reminder.location,
        "show": preferences.notify_visually,
        "speak": preferences.notify_spoken,
    }


class PreferenceStore:
    def __init__(self, db):
        self._collection = db[PREFERENCES_COLLECTION]

    def get_preferences(self, user_id: str) -> Optional[ReminderPreferences]:
        doc = self._collection.find_one({"user_id": user_id}, {"_id": 0})
        if doc is None:
            return None
        return ReminderPreferences.model_validate(doc)

    def get_or_create_defaults(self, user_id: str) -> ReminderPreferences:
        defaults = ReminderPreferences(user_id=user_id).model_dump(mode="json")
        # $setOnInsert keeps a concurrent first write from clobbering the other
        self._collection.update_one(
            {"user_id": user_id},
            {"$setOnInsert": defaults},
            upsert=True,
        )
        return self.get_preferences(user_id)

    def save_preferences(self, user_id: str, preferences: ReminderPreferences) -> bool:
        data = preferences.model_copy(update={"user_id": user_id}).model_dump(mode="json")
        if not preferences.default_is_preset:
            logger.warning(
                "default_lead_minutes=%s for user %s is not one of %s",
                preferences.default_lead_minutes, user_id, preferences.available_lead_options,
            )
        try:
            self._collection.update_one({"user_id": user_id}, {"$set": data}, upsert=True)
        except PyMongoError as e:
            logger.error("Failed to save reminder preferences for %s: %s", user_id, e)
            return False
        return True


class ReminderStore:
    def __init__(self, db):
        self._collection = db[REMINDER_COLLECTION]
        self._collection.create_index(
            [("user_id", ASCENDING), ("external_event_id", ASCENDING), ("minutes_before_event", ASCENDING)],
            unique=True,
        )

    @staticmethod
    def _from_doc(doc: Dict[str, Any]) -> EventReminder:
        data = dict(doc)
        data["id"] = data.pop("_id")
        for field in _TIME_FIELDS:
            data[field] = from_db_time(data.get(field))
        return EventReminder.model_validate(data)

    @staticmethod
    def _to_doc(reminder: EventReminder) -> Dict[str, Any]:
        data = reminder.model_dump()
        data["_id"] = data.pop("id")
        for field in _TIME_FIELDS:
            data[field] = to_db_time(data.get(field))
        return data

    def get_or_create_reminder(
        self,
        user_id: str,
        external_event_id: str,
        event_title: str,
        event_start: datetime,
        minutes_before_event: int,
        event_end: Optional[datetime] = None,
        description: Optional[str] = None,
        location: Optional[str] = None,
        is_all_day: bool = False,
        reminder_time: Optional[datetime] = None,
    ) -> CreateResult:
        """Insert the reminder unless one exists for this event and lead time."""
        now = utcnow()
        reminder = EventReminder(
            id=uuid.uuid4().hex,
            user_id=user_id,
            external_event_id=external_event_id,
            event_title=event_title,
            event_start=event_start,
            event_end=event_end,
            description=description,
            location=location,
            is_all_day=is_all_day,
            reminder_time=reminder_time or compute_reminder_time(event_start, minutes_before_event),
            minutes_before_event=minutes_before_event,
            created_at=now,
            updated_at=now,
        )
        key = {
            "user_id": user_id,
            "external_event_id": external_event_id,
            "minutes_before_event": minutes_before_event,
        }
        try:
            self._collection.insert_one(self._to_doc(reminder))
        except DuplicateKeyError:
            # the unique index keeps one reminder per event and lead time
            return CreateResult(self._from_doc(self._collection.find_one(key)), False)

        logger.info("Created reminder %s for '%s' at %s", reminder.id, event_title, reminder.reminder_time.isoformat())
        return CreateResult(reminder, True)

    def create_reminder(self, *args, **kwargs) -> EventReminder:
        """Like get_or_create_reminder, returning the stored reminder either way."""
        return self.get_or_create_reminder(*args, **kwargs).reminder

    def get_reminder(self, user_id: str, reminder_id: str) -> EventReminder:
        doc = self._collection.find_one({"_id": reminder_id, "user_id": user_id})
        if doc is None:
            raise ReminderNotFoundError(reminder_id)
        return self._from_doc(doc)

    def find_existing(self, user_id: str, external_event_id: str, minutes_before_event: int) -> Optional[EventReminder]:
        doc = self._collection.find_one(
            {
                "user_id": user_id,
                "external_event_id": external_event_id,
                "minutes_before_event": minutes_before_event,
            }
        )
        return self._from_doc(doc) if doc else None

    def list_pending(self, user_id: str, now: Optional[datetime] = None) -> List[EventReminder]:
        now = now or utcnow()
        cursor = self._collection.find(
            {
                "user_id": user_id,
                "is_triggered": False,
                "is_dismissed": False,
                "reminder_time": {"$lte": to_db_time(now)},
            }
        ).sort("reminder_time", ASCENDING)
        return [self._from_doc(doc) for doc in cursor]

    def list_active(self, user_id: str) -> List[EventReminder]:
        cursor = self._collection.find(
            {"user_id": user_id, "is_triggered": True, "is_dismissed": False}
        ).sort("reminder_time", ASCENDING)
        return [self._from_doc(doc) for doc in cursor]

    def trigger(
        self,
        user_id: str,
        reminder_id: str,
        preferences: ReminderPreferences,
        now: Optional[datetime] = None,
        tz_name: str = "UTC",
    ) -> TriggerResult:
        now = now or utcnow()
        current = self.get_reminder(user_id, reminder_id)
        if current.is_triggered or current.is_dismissed:
            return TriggerResult(current, False)
        if not preferences.enabled:
            logger.debug("Reminders disabled for user %s, not triggering %s", user_id, reminder_id)
            return TriggerResult(current, False)
        if now < current.reminder_time:
            return TriggerResult(current, False)

        message = render_reminder(current, tz_name)
        doc = self._collection.find_one_and_update(
            {
                "_id": reminder_id,
                "user_id": user_id,
                "is_triggered": False,
                "is_dismissed": False,
                "reminder_time": {"$lte": to_db_time(now)},
            },
            {
                "$set": {
                    "is_triggered": True,
                    "triggered_at": to_db_time(now),
                    "message": message,
                    "updated_at": to_db_time(now),
                }
            },
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            # another poller got there first
            return TriggerResult(self.get_reminder(user_id, reminder_id), False)
        logger.info("Triggered reminder %s: %s", reminder_id, message)
        return TriggerResult(self._from_doc(doc), True)

    def dismiss(self, user_id: str, reminder_id: str, now: Optional[datetime] = None) -> EventReminder:
        now = now or utcnow()
        doc = self._collection.find_one_and_update(
            {"_id": reminder_id, "user_id": user_id, "is_triggered": True, "is_dismissed": False},
            {"$set": {"is_dismissed": True, "dismissed_at": to_db_time(now), "updated_at": to_db_time(now)}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is not None:
            logger.info("Dismissed reminder %s", reminder_id)
            return self._from_doc(doc)

        current = self.get_reminder(user_id, reminder_id)
        if current.is_dismissed:
            return current
        raise InvalidTransitionError(f"reminder {reminder_id} has not been triggered")
