"""
MongoDB access shared by the API and the calendar poller.

`db` is None when DATABASE_URL is not configured; callers check before use.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Optional

from pymongo import MongoClient

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "buddy")

db = None
if DATABASE_URL:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]
else:
    logger.warning("DATABASE_URL not set, database unavailable")


def to_db_time(dt: Optional[datetime]) -> Optional[datetime]:
    """Aware datetimes are stored as naive UTC, which is what BSON keeps."""
    if dt is None or dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def from_db_time(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utcnow() -> datetime:
    # BSON keeps milliseconds only
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)
