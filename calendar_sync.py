"""
Google Calendar polling: turns upcoming events into reminder records and
fires the reminders that are due.
"""

import logging
import os
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from dateutil import parser as dateparser
from google.auth.transport.requests import Request as GoogleRequest
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build

import database
from database import utcnow
from reminders import (
    PreferenceStore,
    ReminderStore,
    all_day_reminder_time,
    compute_reminder_time,
    notification_payload,
)
from schemas import EventReminder, ReminderPreferences

logger = logging.getLogger(__name__)

GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")
POLL_INTERVAL_MINUTES = int(os.getenv("POLL_INTERVAL_MINUTES", "2"))
LOOKAHEAD_DAYS = 7
# reminders that fell due less than this long ago are still created
PAST_GRACE = timedelta(minutes=1)

scheduler = BackgroundScheduler()
_job = None


def get_google_service(refresh_token: str):
    if not GOOGLE_CLIENT_ID or not GOOGLE_CLIENT_SECRET:
        raise RuntimeError("Google client credentials not configured")
    creds = Credentials(
        token=None,
        refresh_token=refresh_token,
        token_uri="https://oauth2.googleapis.com/token",
        client_id=GOOGLE_CLIENT_ID,
        client_secret=GOOGLE_CLIENT_SECRET,
        scopes=["https://www.googleapis.com/auth/calendar.readonly"],
    )
    # Force refresh to obtain access token
    creds.refresh(GoogleRequest())
    return build("calendar", "v3", credentials=creds, cache_discovery=False)


def fetch_upcoming_events(service, now: datetime, days: int = LOOKAHEAD_DAYS) -> List[dict]:
    events_result = (
        service.events()
        .list(
            calendarId="primary",
            timeMin=now.isoformat(),
            timeMax=(now + timedelta(days=days)).isoformat(),
            maxResults=50,
            singleEvents=True,
            orderBy="startTime",
        )
        .execute()
    )
    return events_result.get("items", [])


def _parse_when(when: dict) -> Optional[Union[datetime, date]]:
    if when.get("dateTime"):
        dt = dateparser.isoparse(when["dateTime"])  # may include tzinfo
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    if when.get("date"):
        return date.fromisoformat(when["date"])
    return None


def parse_event_start(event: dict) -> Optional[Tuple[Union[datetime, date], bool]]:
    """(start, is_all_day): an aware UTC datetime for timed events, a date for all-day ones."""
    start = _parse_when(event.get("start") or {})
    if start is None:
        return None
    return start, not isinstance(start, datetime)


def _as_instant(value: Optional[Union[datetime, date]], tz_name: str) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return all_day_reminder_time(value, time(0, 0), tz_name)


def schedule_reminder_for_event(
    reminders: ReminderStore,
    user_id: str,
    event: dict,
    preferences: ReminderPreferences,
    tz_name: str = "UTC",
    now: Optional[datetime] = None,
) -> Optional[EventReminder]:
    now = now or utcnow()
    parsed = parse_event_start(event)
    if parsed is None:
        return None
    start, is_all_day = parsed
    title = event.get("summary") or "Untitled Event"

    if is_all_day:
        if not preferences.remind_for_all_day_events:
            return None
        minutes_before = 0
        reminder_time = all_day_reminder_time(start, preferences.all_day_event_lead_time, tz_name)
    else:
        minutes_before = preferences.default_lead_minutes
        reminder_time = compute_reminder_time(start, minutes_before)

    if reminder_time < now - PAST_GRACE:
        logger.debug("Skipping reminder for '%s', time already passed", title)
        return None

    result = reminders.get_or_create_reminder(
        user_id=user_id,
        external_event_id=event["id"],
        event_title=title,
        event_start=_as_instant(start, tz_name),
        event_end=_as_instant(_parse_when(event.get("end") or {}), tz_name),
        description=event.get("description"),
        location=event.get("location"),
        is_all_day=is_all_day,
        minutes_before_event=minutes_before,
        reminder_time=reminder_time,
    )
    return result.reminder if result.created else None


def fire_due_reminders(
    reminders: ReminderStore,
    user_id: str,
    preferences: ReminderPreferences,
    tz_name: str = "UTC",
    now: Optional[datetime] = None,
) -> List[EventReminder]:
    """Trigger every due reminder; returns the ones this call fired."""
    if not preferences.enabled:
        return []
    now = now or utcnow()
    fired = []
    for pending in reminders.list_pending(user_id, now):
        result = reminders.trigger(user_id, pending.id, preferences, now=now, tz_name=tz_name)
        if result.fired:
            fired.append(result.reminder)
    return fired


def process_pending_reminders(
    reminders: ReminderStore,
    user_id: str,
    preferences: ReminderPreferences,
    tz_name: str = "UTC",
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """Trigger every due reminder and return the notifications to deliver."""
    notifications = []
    for reminder in fire_due_reminders(reminders, user_id, preferences, tz_name, now):
        payload = notification_payload(reminder, preferences)
        if payload is not None:
            notifications.append(payload)
    return notifications


def active_notifications(
    reminders: ReminderStore,
    user_id: str,
    preferences: ReminderPreferences,
) -> List[Dict[str, Any]]:
    """Notifications for fired, undismissed reminders, wherever they were fired."""
    notifications = []
    for reminder in reminders.list_active(user_id):
        payload = notification_payload(reminder, preferences)
        if payload is not None:
            notifications.append(payload)
    return notifications


def user_timezone(db, user_id: str) -> str:
    user = db["user"].find_one({"user_id": user_id}) or {}
    return user.get("timezone") or "UTC"


def _sync_user(db, account: dict, reminders: ReminderStore, now: datetime, service_factory) -> dict:
    user_id = account["user_id"]
    tz_name = user_timezone(db, user_id)
    preferences = PreferenceStore(db).get_or_create_defaults(user_id)
    if not preferences.enabled:
        return {"user": user_id, "skipped": "reminders disabled"}

    try:
        service = service_factory(account["refresh_token"])
        events = fetch_upcoming_events(service, now)
    except Exception as e:
        logger.error("Google Calendar fetch failed for %s: %s", user_id, e)
        return {"user": user_id, "error": f"Google API error: {str(e)[:120]}"}

    scheduled = 0
    skipped = 0
    for event in events:
        try:
            if schedule_reminder_for_event(reminders, user_id, event, preferences, tz_name, now):
                scheduled += 1
        except Exception as e:
            skipped += 1
            logger.error("Skipping malformed event %r for %s: %s", event.get("id"), user_id, e)

    fired = fire_due_reminders(reminders, user_id, preferences, tz_name, now)
    summary = {"user": user_id, "scheduled": scheduled, "triggered": len(fired)}
    if skipped:
        summary["skipped_events"] = skipped
    return summary


def poll_once(db=None, now: Optional[datetime] = None, service_factory=get_google_service) -> dict:
    """Sync calendars and fire due reminders for every user with a Google connection."""
    db = db if db is not None else database.db
    if db is None:
        raise RuntimeError("Database not configured")
    now = now or utcnow()
    reminders = ReminderStore(db)
    processed = []

    accounts = list(db["connectedaccount"].find({"provider": "google", "refresh_token": {"$exists": True, "$ne": None}}))
    for account in accounts:
        try:
            processed.append(_sync_user(db, account, reminders, now, service_factory))
        except Exception as e:
            # one user's failure must not stop the others
            logger.exception("Reminder poll failed for %s", account.get("user_id"))
            processed.append({"user": account.get("user_id"), "error": str(e)[:120]})

    return {"now": now.isoformat(), "results": processed}


def ensure_scheduler():
    global _job
    if not scheduler.running:
        scheduler.start()
    if _job is None:
        _job = scheduler.add_job(
            poll_once,
            IntervalTrigger(minutes=POLL_INTERVAL_MINUTES),
            id="poll-job",
            replace_existing=True,
        )
        logger.info("Calendar poller scheduled every %s minutes", POLL_INTERVAL_MINUTES)


def next_run_time() -> Optional[str]:
    job = scheduler.get_job("poll-job")
    if job and job.next_run_time:
        return job.next_run_time.astimezone(timezone.utc).isoformat()
    return None
