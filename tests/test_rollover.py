from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from tarantulabox.errors import InvalidInterval, UpdateConflict
from tarantulabox.services.rollover import (
    RolloverEngine,
    add_calendar_days,
    due_occurrences,
    latest_due_occurrence,
)
from tarantulabox.services.schedule_store import DueItem, InMemoryScheduleStore

NEW_YORK = ZoneInfo("America/New_York")


def test_add_calendar_days_keeps_local_time_across_spring_forward():
    start = datetime(2024, 3, 9, 23, 30, tzinfo=NEW_YORK)
    result = add_calendar_days(start, 1, "America/New_York")
    local = result.astimezone(NEW_YORK)
    assert (local.year, local.month, local.day) == (2024, 3, 10)
    assert (local.hour, local.minute) == (23, 30)
    assert result - start == timedelta(hours=23)
    assert result.tzinfo == timezone.utc


def test_add_calendar_days_keeps_local_time_across_fall_back():
    start = datetime(2024, 11, 2, 23, 30, tzinfo=NEW_YORK)
    result = add_calendar_days(start, 1, "America/New_York")
    assert result.astimezone(NEW_YORK).strftime("%Y-%m-%d %H:%M") == "2024-11-03 23:30"
    assert result - start == timedelta(hours=25)


def test_add_calendar_days_requires_aware_datetime():
    with pytest.raises(ValueError):
        add_calendar_days(datetime(2024, 1, 1, 8, 0), 1)


def test_advance_moves_schedule_once():
    store = InMemoryScheduleStore()
    due = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)
    item = store.add(due, 7)
    engine = RolloverEngine(store)

    result = engine.advance(item, due)
    assert result.next_feed_at == datetime(2024, 1, 8, 8, 0, tzinfo=timezone.utc)
    assert not result.already_applied
    assert store.get_item(item.id).next_feed_at == result.next_feed_at


def test_advance_replay_does_not_double_advance():
    store = InMemoryScheduleStore()
    due = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)
    item = store.add(due, 7)
    engine = RolloverEngine(store)

    engine.advance(item, due)
    replay = engine.advance(item, due)
    assert replay.already_applied
    assert store.get_item(item.id).next_feed_at == datetime(2024, 1, 8, 8, 0, tzinfo=timezone.utc)


def test_advance_preserves_local_time_over_dst():
    store = InMemoryScheduleStore()
    due = datetime(2024, 3, 9, 23, 30, tzinfo=NEW_YORK)
    item = store.add(due, 1, timezone="America/New_York")
    RolloverEngine(store).advance(item, due)
    stored = store.get_item(item.id).next_feed_at.astimezone(NEW_YORK)
    assert stored.strftime("%Y-%m-%d %H:%M") == "2024-03-10 23:30"


def test_advance_detects_concurrent_reschedule():
    store = InMemoryScheduleStore()
    due = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)
    item = store.add(due, 7)
    rescheduled = due + timedelta(days=3)
    store.edit(item.id, next_feed_at=rescheduled)

    with pytest.raises(UpdateConflict):
        RolloverEngine(store).advance(item, due)
    assert store.get_item(item.id).next_feed_at == rescheduled


def test_advance_detects_interval_edit():
    store = InMemoryScheduleStore()
    due = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)
    item = store.add(due, 7)
    store.edit(item.id, feed_interval_days=10)
    with pytest.raises(UpdateConflict):
        RolloverEngine(store).advance(item, due)


def test_advance_on_deleted_record_conflicts():
    store = InMemoryScheduleStore()
    due = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)
    item = store.add(due, 7)
    store.delete(item.id)
    with pytest.raises(UpdateConflict) as excinfo:
        RolloverEngine(store).advance(item, due)
    assert "no longer exists" in str(excinfo.value)


def test_advance_rejects_non_positive_interval():
    store = InMemoryScheduleStore()
    due = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)
    item = store.add(due, 0)
    with pytest.raises(InvalidInterval):
        RolloverEngine(store).advance(item, due)
    assert store.update_calls == 0


def test_latest_due_occurrence_for_long_overdue_pet():
    item = DueItem(
        id=1,
        next_feed_at=datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc),
        feed_interval_days=7,
        owner_id=1,
    )
    now = datetime(2024, 1, 23, 9, 0, tzinfo=timezone.utc)
    assert latest_due_occurrence(item, now) == datetime(2024, 1, 22, 8, 0, tzinfo=timezone.utc)
    earlier_same_day = datetime(2024, 1, 22, 7, 0, tzinfo=timezone.utc)
    assert latest_due_occurrence(item, earlier_same_day) == datetime(
        2024, 1, 15, 8, 0, tzinfo=timezone.utc
    )


def test_latest_due_occurrence_is_none_when_not_due():
    item = DueItem(
        id=1,
        next_feed_at=datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc),
        feed_interval_days=7,
        owner_id=1,
    )
    assert latest_due_occurrence(item, datetime(2024, 1, 1, 7, 59, tzinfo=timezone.utc)) is None


def test_due_occurrences_are_capped():
    item = DueItem(
        id=1,
        next_feed_at=datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc),
        feed_interval_days=1,
        owner_id=1,
    )
    now = datetime(2024, 1, 10, 9, 0, tzinfo=timezone.utc)
    occurrences = due_occurrences(item, now, limit=3)
    assert occurrences == [
        datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc),
        datetime(2024, 1, 2, 8, 0, tzinfo=timezone.utc),
        datetime(2024, 1, 3, 8, 0, tzinfo=timezone.utc),
    ]
