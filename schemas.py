"""
Database Schemas for Buddy Calendar Reminders

Each Pydantic model corresponds to a MongoDB collection (lowercased name),
except the scheduling intents which only travel over HTTP.
"""

from datetime import datetime, time
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from formatting import DEFAULT_LEAD_OPTIONS

PREFERENCES_SCHEMA_VERSION = 1


class User(BaseModel):
    """Stores the user's timezone; identity itself lives with the auth provider"""
    user_id: str = Field(..., description="Identity provider user id")
    timezone: str = Field("UTC", description="IANA timezone, e.g., Europe/Amsterdam")


class ConnectedAccount(BaseModel):
    """A linked Google account used to read the user's calendar"""
    user_id: str = Field(...)
    provider: str = Field("google")
    # Minimal token storage (encrypted at rest in real app); here we store refresh token only
    refresh_token: str = Field(..., description="Google OAuth refresh token")


class ReminderPreferences(BaseModel):
    """Per-user reminder configuration, one document per user_id"""
    schema_version: int = Field(PREFERENCES_SCHEMA_VERSION)
    # filled in from the session on save
    user_id: Optional[str] = None
    default_lead_minutes: int = Field(30, ge=0, description="Minutes before an event to remind")
    enabled: bool = Field(True)
    notify_visually: bool = Field(True)
    notify_spoken: bool = Field(True)
    remind_for_all_day_events: bool = Field(True)
    all_day_event_lead_time: time = Field(time(9, 0), description="Local time-of-day for all-day event reminders")
    available_lead_options: List[int] = Field(default_factory=lambda: list(DEFAULT_LEAD_OPTIONS))
    use_emojis: bool = Field(False)

    @field_validator("available_lead_options")
    @classmethod
    def _strictly_increasing(cls, value: List[int]) -> List[int]:
        if not value:
            raise ValueError("available_lead_options must not be empty")
        if any(m <= 0 for m in value):
            raise ValueError("available_lead_options must be positive")
        if any(b <= a for a, b in zip(value, value[1:])):
            raise ValueError("available_lead_options must be strictly increasing")
        return value

    @property
    def default_is_preset(self) -> bool:
        return self.default_lead_minutes in self.available_lead_options


class EventReminder(BaseModel):
    """One scheduled notification for an external calendar event"""
    id: str = Field(...)
    user_id: str = Field(...)
    external_event_id: str = Field(..., description="Event id in the source calendar")
    event_title: str = Field(...)
    event_start: datetime = Field(...)
    event_end: Optional[datetime] = None
    description: Optional[str] = None
    location: Optional[str] = None
    is_all_day: bool = Field(False)
    reminder_time: datetime = Field(...)
    minutes_before_event: int = Field(..., ge=0)
    is_triggered: bool = Field(False)
    triggered_at: Optional[datetime] = None
    is_dismissed: bool = Field(False)
    dismissed_at: Optional[datetime] = None
    message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def state(self) -> str:
        if self.is_dismissed:
            return "dismissed"
        if self.is_triggered:
            return "triggered"
        return "scheduled"


class SchedulingIntent(BaseModel):
    """A free-form request interpreted as a calendar event to create"""
    model_config = ConfigDict(populate_by_name=True)

    is_scheduling_request: bool = Field(True, alias="isSchedulingRequest")
    title: Optional[str] = None
    date: Optional[str] = None
    time: Optional[str] = None
    duration: Optional[str] = None
    location: Optional[str] = None
    guests: List[str] = Field(default_factory=list)
    description: Optional[str] = None
    missing: List[str] = Field(default_factory=list)

    @field_validator("date", "time", "duration", mode="before")
    @classmethod
    def _stringify(cls, value: Union[str, int, float, None]) -> Optional[str]:
        # models sometimes answer "duration": 60
        if value is None or isinstance(value, str):
            return value
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        raise ValueError("expected a string")

    @field_validator("guests", "missing", mode="before")
    @classmethod
    def _null_list(cls, value):
        return [] if value is None else value


class NotAScheduleRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_scheduling_request: bool = Field(False, alias="isSchedulingRequest")
    error: Optional[str] = None
