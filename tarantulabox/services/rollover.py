from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..errors import InvalidInterval, UpdateConflict
from .schedule_store import DueItem, ScheduleStore, UpdateResult

logger = logging.getLogger(__name__)


def resolve_zone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, falling back to UTC.", name)
        return ZoneInfo("UTC")


def add_calendar_days(moment: datetime, days: int, tz_name: str = "UTC") -> datetime:
    """Shift ``moment`` by whole days on the wall clock of ``tz_name``.

    Aware arithmetic on a local datetime keeps the local time of day, so a
    23:30 reminder stays at 23:30 across a daylight-saving change even though
    the elapsed time is 23 or 25 hours. The result is returned in UTC.
    """
    if moment.tzinfo is None:
        raise ValueError("moment must be timezone-aware")
    local = moment.astimezone(resolve_zone(tz_name))
    return (local + timedelta(days=days)).astimezone(timezone.utc)


def latest_due_occurrence(item: DueItem, now: datetime) -> datetime | None:
    """Last point of the item's schedule grid that is not after ``now``.

    Returns ``None`` when the item is not due yet. A pet whose reminder was
    missed for several intervals maps to its most recent slot, so a single
    rollover lands it back in the future.
    """
    if not item.is_due(now):
        return None
    if item.feed_interval_days <= 0:
        return item.next_feed_at
    zone = resolve_zone(item.timezone)
    first_local = item.next_feed_at.astimezone(zone)
    now_local = now.astimezone(zone)
    steps = (now_local.date() - first_local.date()).days // item.feed_interval_days
    while steps > 0:
        candidate = add_calendar_days(item.next_feed_at, steps * item.feed_interval_days, item.timezone)
        if candidate <= now:
            return candidate
        steps -= 1
    return item.next_feed_at


def due_occurrences(item: DueItem, now: datetime, limit: int) -> list[datetime]:
    """Every missed slot from ``next_feed_at`` up to ``now``, capped at ``limit``."""
    occurrences: list[datetime] = []
    if item.feed_interval_days <= 0:
        return [item.next_feed_at] if item.is_due(now) else occurrences
    cursor = item.next_feed_at
    while cursor <= now and len(occurrences) < limit:
        occurrences.append(cursor)
        cursor = add_calendar_days(cursor, item.feed_interval_days, item.timezone)
    if cursor <= now:
        logger.warning(
            "Catch-up cap reached for pet %s (cap=%s), backlog remains.", item.id, limit
        )
    return occurrences


@dataclass(frozen=True, slots=True)
class RolloverResult:
    pet_id: int
    previous: datetime
    next_feed_at: datetime
    already_applied: bool = False


class RolloverEngine:
    """Moves a pet's next feed date forward once its reminder went out."""

    def __init__(self, store: ScheduleStore) -> None:
        self._store = store

    def next_feed_after(self, item: DueItem, trigger_time: datetime) -> datetime:
        if item.feed_interval_days <= 0:
            raise InvalidInterval(item.id, item.feed_interval_days)
        return add_calendar_days(trigger_time, item.feed_interval_days, item.timezone)

    def advance(self, item: DueItem, trigger_time: datetime) -> RolloverResult:
        """Persist ``trigger_time + feed_interval_days`` for ``item``.

        The write is conditional on the record still matching ``item``.
        Replaying the same call is a no-op reported as ``already_applied``.
        """
        new_value = self.next_feed_after(item, trigger_time)
        if new_value <= item.next_feed_at:
            raise ValueError(
                f"rollover for pet {item.id} would not move the schedule forward "
                f"({item.next_feed_at.isoformat()} -> {new_value.isoformat()})"
            )
        outcome = self._store.update_next_feed_at(item.id, new_value, expected=item)
        if outcome is UpdateResult.UPDATED:
            logger.info(
                "Advanced pet %s next feed %s -> %s.",
                item.id,
                item.next_feed_at.isoformat(),
                new_value.isoformat(),
            )
            return RolloverResult(item.id, item.next_feed_at, new_value)
        if outcome is UpdateResult.ALREADY_APPLIED:
            logger.debug("Rollover for pet %s already applied, skipping.", item.id)
            return RolloverResult(item.id, item.next_feed_at, new_value, already_applied=True)
        if outcome is UpdateResult.MISSING:
            raise UpdateConflict(item.id, "record no longer exists")
        raise UpdateConflict(item.id)
