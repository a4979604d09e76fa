"""
Pytest configuration and shared fixtures for the reminder service tests.
"""

import sys
from datetime import datetime, timezone
from pathlib import Path

import mongomock
import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from reminders import PreferenceStore, ReminderStore  # noqa: E402
from schemas import ReminderPreferences  # noqa: E402


@pytest.fixture(autouse=True)
def no_provider_keys(monkeypatch):
    """Tests opt in to completion providers explicitly."""
    monkeypatch.delenv("XAI_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)


@pytest.fixture
def mongo_db():
    return mongomock.MongoClient().buddy_test


@pytest.fixture
def reminder_store(mongo_db):
    return ReminderStore(mongo_db)


@pytest.fixture
def preference_store(mongo_db):
    return PreferenceStore(mongo_db)


@pytest.fixture
def preferences():
    return ReminderPreferences(user_id="user-1", default_lead_minutes=15)


@pytest.fixture
def event_start():
    return datetime(2024, 1, 1, 15, 0, tzinfo=timezone.utc)
