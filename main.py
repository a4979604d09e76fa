import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

# Load environment variables before the modules that read them
from dotenv import load_dotenv
load_dotenv()

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pymongo.errors import PyMongoError

import pytz

from calendar_sync import (
    active_notifications,
    ensure_scheduler,
    next_run_time,
    poll_once,
    process_pending_reminders,
    scheduler,
    user_timezone,
)
from database import db
from extractor import extract_scheduling_intent
from formatting import reminder_time_options
from reminders import InvalidTransitionError, PreferenceStore, ReminderNotFoundError, ReminderStore
from schemas import ConnectedAccount, NotAScheduleRequest, ReminderPreferences, User
from session import SessionUser, current_user, require_user

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if db is not None:
        ensure_scheduler()
    yield
    if scheduler.running:
        scheduler.shutdown(wait=False)


app = FastAPI(title="Buddy Reminder API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# -------- Models (requests) --------
class TimezoneIn(BaseModel):
    timezone: str


class SaveRefreshTokenIn(BaseModel):
    refresh_token: str


class ReminderIn(BaseModel):
    external_event_id: str
    event_title: str
    event_start: datetime
    event_end: Optional[datetime] = None
    description: Optional[str] = None
    location: Optional[str] = None
    minutes_before_event: Optional[int] = Field(None, ge=0)


# -------- Utilities --------

def _db():
    if db is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    return db


def _aware(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


# -------- Routes --------
@app.get("/")
def index():
    return {"message": "Buddy Reminder API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["database_name"] = db.name
            response["connection_status"] = "Connected"
            response["collections"] = db.list_collection_names()[:10]
    except PyMongoError as e:
        response["database"] = f"⚠️ Error: {str(e)[:80]}"
    return response


@app.post("/api/schedule")
async def api_schedule(request: Request):
    try:
        body = await request.json()
    except ValueError:
        body = None
    user_text = body.get("userText") if isinstance(body, dict) else None
    if not isinstance(user_text, str) or not user_text.strip():
        return NotAScheduleRequest().model_dump(by_alias=True, exclude_none=True)

    result = await extract_scheduling_intent(user_text)
    if isinstance(result, NotAScheduleRequest):
        return result.model_dump(by_alias=True, exclude_none=True)
    return result.model_dump(by_alias=True)


@app.get("/api/reminder-options")
def api_reminder_options():
    return {"options": reminder_time_options()}


@app.post("/api/user")
def api_set_timezone(payload: TimezoneIn, user: SessionUser = Depends(require_user)):
    try:
        pytz.timezone(payload.timezone)
    except pytz.UnknownTimeZoneError:
        raise HTTPException(status_code=400, detail="Invalid IANA timezone")
    _db()["user"].update_one(
        {"user_id": user.user_id},
        {"$set": User(user_id=user.user_id, timezone=payload.timezone).model_dump()},
        upsert=True,
    )
    return {"status": "ok"}


@app.get("/api/reminder-preferences")
def api_get_preferences(user: SessionUser = Depends(require_user)):
    return PreferenceStore(_db()).get_or_create_defaults(user.user_id).model_dump(mode="json")


@app.put("/api/reminder-preferences")
def api_save_preferences(payload: ReminderPreferences, user: SessionUser = Depends(require_user)):
    if not PreferenceStore(_db()).save_preferences(user.user_id, payload):
        raise HTTPException(status_code=500, detail="Failed to save reminder preferences")
    return {"status": "ok"}


@app.post("/api/reminders")
def api_create_reminder(payload: ReminderIn, user: SessionUser = Depends(require_user)):
    database = _db()
    minutes = payload.minutes_before_event
    if minutes is None:
        minutes = PreferenceStore(database).get_or_create_defaults(user.user_id).default_lead_minutes
    # returns the stored reminder when this event and lead time already have one
    reminder = ReminderStore(database).create_reminder(
        user_id=user.user_id,
        external_event_id=payload.external_event_id,
        event_title=payload.event_title,
        event_start=_aware(payload.event_start),
        event_end=_aware(payload.event_end),
        description=payload.description,
        location=payload.location,
        minutes_before_event=minutes,
    )
    return reminder.model_dump(mode="json")


@app.post("/api/reminders/process")
def api_process_reminders(user: SessionUser = Depends(require_user)):
    database = _db()
    preferences = PreferenceStore(database).get_or_create_defaults(user.user_id)
    tz_name = user_timezone(database, user.user_id)
    notifications = process_pending_reminders(ReminderStore(database), user.user_id, preferences, tz_name)
    return {"notifications": notifications}


@app.get("/api/reminders/active")
def api_active_reminders(user: SessionUser = Depends(require_user)):
    database = _db()
    preferences = PreferenceStore(database).get_or_create_defaults(user.user_id)
    return {"reminders": active_notifications(ReminderStore(database), user.user_id, preferences)}


@app.post("/api/reminders/{reminder_id}/dismiss")
def api_dismiss_reminder(reminder_id: str, user: SessionUser = Depends(require_user)):
    try:
        reminder = ReminderStore(_db()).dismiss(user.user_id, reminder_id)
    except ReminderNotFoundError:
        raise HTTPException(status_code=404, detail="Reminder not found")
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return reminder.model_dump(mode="json")


@app.post("/api/google/token")
def api_save_refresh_token(payload: SaveRefreshTokenIn, user: SessionUser = Depends(require_user)):
    _db()["connectedaccount"].update_one(
        {"user_id": user.user_id, "provider": "google"},
        {"$set": ConnectedAccount(user_id=user.user_id, refresh_token=payload.refresh_token).model_dump()},
        upsert=True,
    )
    return {"status": "ok"}


@app.post("/api/clear-google-tokens")
def api_clear_google_tokens(request: Request):
    user = current_user(request)
    if user is None:
        return JSONResponse(
            status_code=401,
            content={"success": False, "error": "User not authenticated", "details": None},
        )

    logger.info("Clearing Google tokens for user %s", user.user_id)
    try:
        result = _db()["connectedaccount"].delete_many({"user_id": user.user_id, "provider": "google"})
    except PyMongoError as e:
        logger.error("Error clearing tokens: %s", e)
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Failed to clear tokens", "details": str(e)},
        )
    except HTTPException as e:
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Internal server error", "details": e.detail},
        )

    return {
        "success": True,
        "message": "Google connections cleared. Please sign out and sign back in to get calendar permissions.",
        "clearedConnections": result.deleted_count,
    }


@app.post("/api/trigger")
def api_trigger_now():
    return poll_once(_db())


@app.get("/api/status")
def api_status():
    database = _db()
    accounts = list(database["connectedaccount"].find({"provider": "google"}, {"_id": 0, "user_id": 1}))
    users = [
        {"user_id": a["user_id"], "timezone": user_timezone(database, a["user_id"])}
        for a in accounts
    ]
    return {"users": users, "next_run": next_run_time()}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
