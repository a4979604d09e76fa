import logging
from datetime import date, datetime, time, timedelta, timezone

import pytest
from pydantic import ValidationError

from reminders import (
    InvalidTransitionError,
    ReminderNotFoundError,
    ReminderStore,
    all_day_reminder_time,
    notification_payload,
)
from schemas import ReminderPreferences


@pytest.fixture
def reminder(reminder_store, event_start):
    return reminder_store.create_reminder(
        user_id="user-1",
        external_event_id="evt-1",
        event_title="Dentist",
        event_start=event_start,
        minutes_before_event=15,
        location="Main St Clinic",
    )


class TestPreferences:
    def test_defaults_are_created_once(self, preference_store):
        prefs = preference_store.get_or_create_defaults("user-1")
        assert prefs.user_id == "user-1"
        assert prefs.default_lead_minutes == 30
        assert prefs.enabled is True
        assert prefs.all_day_event_lead_time == time(9, 0)
        assert prefs.available_lead_options == [1, 5, 15, 30, 45, 60, 120, 240, 480, 1440]

        prefs = prefs.model_copy(update={"default_lead_minutes": 60})
        assert preference_store.save_preferences("user-1", prefs)
        assert preference_store.get_or_create_defaults("user-1").default_lead_minutes == 60

    def test_missing_preferences(self, preference_store):
        assert preference_store.get_preferences("nobody") is None

    def test_save_sets_owner(self, preference_store):
        prefs = ReminderPreferences(notify_spoken=False)
        assert preference_store.save_preferences("user-2", prefs)
        loaded = preference_store.get_preferences("user-2")
        assert loaded.user_id == "user-2"
        assert loaded.notify_spoken is False

    def test_default_outside_presets_is_saved_with_warning(self, preference_store, caplog):
        prefs = ReminderPreferences(default_lead_minutes=7)
        with caplog.at_level(logging.WARNING, logger="reminders"):
            assert preference_store.save_preferences("user-1", prefs)
        assert "not one of" in caplog.text
        assert preference_store.get_preferences("user-1").default_lead_minutes == 7

    @pytest.mark.parametrize("options", [[], [5, 5, 10], [10, 5], [0, 5]])
    def test_lead_options_must_be_positive_and_increasing(self, options):
        with pytest.raises(ValidationError):
            ReminderPreferences(available_lead_options=options)


class TestLifecycle:
    def test_reminder_time_is_lead_before_start(self, reminder, event_start):
        assert reminder.reminder_time == event_start - timedelta(minutes=15)
        assert reminder.state == "scheduled"
        assert reminder.message is None

    def test_round_trip_keeps_utc(self, reminder_store, reminder, event_start):
        loaded = reminder_store.get_reminder("user-1", reminder.id)
        assert loaded.event_start == event_start
        assert loaded.event_start.tzinfo is not None

    def test_trigger_before_reminder_time_is_noop(self, reminder_store, reminder, preferences, event_start):
        result = reminder_store.trigger("user-1", reminder.id, preferences, now=event_start - timedelta(minutes=20))
        assert result.fired is False
        assert result.reminder.state == "scheduled"

    def test_trigger_renders_message(self, reminder_store, reminder, preferences, event_start):
        now = event_start - timedelta(minutes=15)
        result = reminder_store.trigger("user-1", reminder.id, preferences, now=now)
        assert result.fired is True
        assert result.reminder.state == "triggered"
        assert result.reminder.triggered_at == now
        assert result.reminder.message == 'Reminder: "Dentist" starts in 15 minutes at 15:00 at Main St Clinic.'

    def test_trigger_is_idempotent(self, reminder_store, reminder, preferences, event_start):
        first_now = event_start - timedelta(minutes=10)
        first = reminder_store.trigger("user-1", reminder.id, preferences, now=first_now)
        second = reminder_store.trigger("user-1", reminder.id, preferences, now=event_start)
        assert first.fired is True
        assert second.fired is False
        assert second.reminder.triggered_at == first_now
        assert second.reminder.message == first.reminder.message

    def test_disabled_preferences_block_trigger(self, reminder_store, reminder, event_start):
        prefs = ReminderPreferences(user_id="user-1", enabled=False)
        result = reminder_store.trigger("user-1", reminder.id, prefs, now=event_start)
        assert result.fired is False
        assert reminder_store.get_reminder("user-1", reminder.id).is_triggered is False

    def test_concurrent_trigger_fires_once(self, reminder_store, reminder, preferences, event_start, monkeypatch):
        real_get = reminder_store.get_reminder
        stale = real_get("user-1", reminder.id)
        # both pollers read the record while it was still scheduled
        monkeypatch.setattr(reminder_store, "get_reminder", lambda user_id, reminder_id: stale)

        now = event_start - timedelta(minutes=5)
        results = [reminder_store.trigger("user-1", reminder.id, preferences, now=now) for _ in range(2)]

        assert [r.fired for r in results] == [True, False]
        stored = real_get("user-1", reminder.id)
        assert stored.is_triggered is True
        assert stored.triggered_at == now
        assert stored.message == results[0].reminder.message

    def test_dismiss_requires_trigger(self, reminder_store, reminder):
        with pytest.raises(InvalidTransitionError):
            reminder_store.dismiss("user-1", reminder.id)
        assert reminder_store.get_reminder("user-1", reminder.id).state == "scheduled"

    def test_dismiss_after_trigger(self, reminder_store, reminder, preferences, event_start):
        reminder_store.trigger("user-1", reminder.id, preferences, now=event_start)
        dismissed_at = event_start + timedelta(minutes=1)
        dismissed = reminder_store.dismiss("user-1", reminder.id, now=dismissed_at)
        assert dismissed.state == "dismissed"
        assert dismissed.dismissed_at == dismissed_at

        again = reminder_store.dismiss("user-1", reminder.id, now=event_start + timedelta(hours=1))
        assert again.dismissed_at == dismissed_at

    def test_dismissed_reminder_is_never_triggered_again(self, reminder_store, reminder, preferences, event_start):
        reminder_store.trigger("user-1", reminder.id, preferences, now=event_start)
        reminder_store.dismiss("user-1", reminder.id, now=event_start)
        result = reminder_store.trigger("user-1", reminder.id, preferences, now=event_start + timedelta(hours=1))
        assert result.fired is False
        assert result.reminder.state == "dismissed"

    def test_reminders_belong_to_their_user(self, reminder_store, reminder):
        with pytest.raises(ReminderNotFoundError):
            reminder_store.get_reminder("user-2", reminder.id)
        with pytest.raises(ReminderNotFoundError):
            reminder_store.dismiss("user-2", reminder.id)

    def test_pending_and_active_lists(self, reminder_store, reminder, preferences, event_start):
        later = reminder_store.create_reminder(
            user_id="user-1",
            external_event_id="evt-2",
            event_title="Lunch",
            event_start=event_start + timedelta(hours=2),
            minutes_before_event=30,
        )
        now = event_start
        assert [r.id for r in reminder_store.list_pending("user-1", now)] == [reminder.id]
        assert [r.id for r in reminder_store.list_pending("user-1", later.event_start)] == [reminder.id, later.id]

        reminder_store.trigger("user-1", reminder.id, preferences, now=now)
        assert [r.id for r in reminder_store.list_pending("user-1", now)] == []
        assert [r.id for r in reminder_store.list_active("user-1")] == [reminder.id]
        assert reminder_store.list_pending("user-2", later.event_start) == []

    def test_find_existing_matches_event_and_lead(self, reminder_store, reminder):
        assert reminder_store.find_existing("user-1", "evt-1", 15).id == reminder.id
        assert reminder_store.find_existing("user-1", "evt-1", 30) is None


class TestNotifications:
    def test_payload_follows_channels(self, reminder):
        prefs = ReminderPreferences(user_id="user-1", notify_spoken=False)
        payload = notification_payload(reminder, prefs)
        assert payload["show"] is True
        assert payload["speak"] is False
        assert payload["title"] == "Dentist"

    def test_both_channels_off_suppresses(self, reminder):
        prefs = ReminderPreferences(user_id="user-1", notify_visually=False, notify_spoken=False)
        assert notification_payload(reminder, prefs) is None


def test_all_day_reminder_time_uses_local_clock():
    # CET is UTC+1 in March before the DST switch
    result = all_day_reminder_time(date(2024, 3, 10), time(9, 0), "Europe/Amsterdam")
    assert result == datetime(2024, 3, 10, 8, 0, tzinfo=timezone.utc)


class TestCreation:
    def kwargs(self, event_start, **extra):
        data = {
            "user_id": "user-1",
            "external_event_id": "evt-9",
            "event_title": "Standup",
            "event_start": event_start,
            "minutes_before_event": 15,
        }
        data.update(extra)
        return data

    def test_second_create_returns_stored_reminder(self, reminder_store, mongo_db, event_start):
        first = reminder_store.get_or_create_reminder(**self.kwargs(event_start))
        second = reminder_store.get_or_create_reminder(**self.kwargs(event_start, event_title="Renamed"))

        assert [first.created, second.created] == [True, False]
        assert second.reminder.id == first.reminder.id
        assert second.reminder.event_title == "Standup"
        assert mongo_db["eventreminder"].count_documents({"external_event_id": "evt-9"}) == 1

    def test_other_lead_time_is_a_new_reminder(self, reminder_store, event_start):
        reminder_store.get_or_create_reminder(**self.kwargs(event_start))
        assert reminder_store.get_or_create_reminder(**self.kwargs(event_start, minutes_before_event=30)).created

    def test_index_guards_racing_stores(self, mongo_db, event_start):
        # two pollers that both passed a "not there yet" check still end up with one record
        first, second = ReminderStore(mongo_db), ReminderStore(mongo_db)
        a = first.get_or_create_reminder(**self.kwargs(event_start))
        b = second.get_or_create_reminder(**self.kwargs(event_start))

        assert a.created and not b.created
        assert b.reminder.id == a.reminder.id
        indexes = mongo_db["eventreminder"].index_information().values()
        [ix] = [ix for ix in indexes if ix["key"] == [("user_id", 1), ("external_event_id", 1), ("minutes_before_event", 1)]]
        assert ix["unique"] is True

    def test_create_reminder_returns_existing(self, reminder_store, reminder, event_start):
        again = reminder_store.create_reminder(**self.kwargs(event_start, external_event_id="evt-1"))
        assert again.id == reminder.id
