"""Schedule store: the persistence seam of the feeding-reminder scheduler.

The scheduler only talks to a :class:`ScheduleStore`. ``SqlScheduleStore`` is
the production adapter over the ``tarantulas`` table;
``InMemoryScheduleStore`` backs the tests and local experiments.

Advancement is a compare-and-set: the write only lands if the record still
carries the ``next_feed_at``/``feed_interval_days`` that were observed at
selection time. The consumed ``next_feed_at`` is remembered in
``last_rollover_from`` so that replaying the same advance is recognised as
already applied instead of being reported as a conflict.
"""
from __future__ import annotations

import enum
import itertools
import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Protocol

from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from .. import models
from ..errors import InvalidInterval, StoreUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DueItem:
    """Snapshot of one pet schedule as seen by the scheduler."""

    id: int
    next_feed_at: datetime
    feed_interval_days: int
    owner_id: int
    name: str = ""
    species: str = ""
    timezone: str = "UTC"

    def is_due(self, now: datetime) -> bool:
        return self.next_feed_at <= now


class UpdateResult(enum.Enum):
    UPDATED = "updated"
    ALREADY_APPLIED = "already_applied"
    CONFLICT = "conflict"
    MISSING = "missing"


class ScheduleStore(Protocol):
    def list_soonest(
        self,
        limit: int,
        include_disabled: bool = False,
        owner_id: int | None = None,
    ) -> list[DueItem]:
        """Records ordered by ``(next_feed_at, id)``, at most ``limit`` of them."""
        ...

    def get_item(self, pet_id: int) -> DueItem | None:
        ...

    def update_next_feed_at(
        self, pet_id: int, new_value: datetime, expected: DueItem
    ) -> UpdateResult:
        """Conditionally move ``next_feed_at`` from ``expected`` to ``new_value``."""
        ...


def _log_invalid(rows: list[tuple[int, int]]) -> None:
    # excluded from selection, reported on every listing
    for pet_id, interval in rows:
        logger.error("Skipping schedule: %s", InvalidInterval(pet_id, interval))


def _to_item(row: models.Tarantula) -> DueItem:
    return DueItem(
        id=row.id,
        next_feed_at=row.next_feed_date,
        feed_interval_days=row.feed_interval_days,
        owner_id=row.owner_id,
        name=row.name,
        species=row.species,
        timezone=row.timezone or "UTC",
    )


class SqlScheduleStore:
    """Schedule store over the SQLAlchemy ``tarantulas`` table."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def list_soonest(
        self,
        limit: int,
        include_disabled: bool = False,
        owner_id: int | None = None,
    ) -> list[DueItem]:
        if limit <= 0:
            return []
        filters = []
        if not include_disabled:
            filters.append(models.Tarantula.notify.is_(True))
        if owner_id is not None:
            filters.append(models.Tarantula.owner_id == owner_id)
        query = (
            select(models.Tarantula)
            .where(models.Tarantula.feed_interval_days > 0, *filters)
            .order_by(models.Tarantula.next_feed_date.asc(), models.Tarantula.id.asc())
            .limit(limit)
        )
        invalid = select(models.Tarantula.id, models.Tarantula.feed_interval_days).where(
            models.Tarantula.feed_interval_days <= 0, *filters
        )
        try:
            with self._session_factory() as db:
                items = [_to_item(row) for row in db.execute(query).scalars().all()]
                skipped = [tuple(row) for row in db.execute(invalid).all()]
        except (DBAPIError, PoolTimeoutError) as exc:
            raise StoreUnavailable(f"listing schedules failed: {exc}") from exc
        _log_invalid(skipped)
        return items

    def get_item(self, pet_id: int) -> DueItem | None:
        try:
            with self._session_factory() as db:
                row = db.get(models.Tarantula, pet_id)
                return _to_item(row) if row else None
        except (DBAPIError, PoolTimeoutError) as exc:
            raise StoreUnavailable(f"reading pet {pet_id} failed: {exc}") from exc

    def update_next_feed_at(
        self, pet_id: int, new_value: datetime, expected: DueItem
    ) -> UpdateResult:
        statement = (
            update(models.Tarantula)
            .where(
                models.Tarantula.id == pet_id,
                models.Tarantula.next_feed_date == expected.next_feed_at,
                models.Tarantula.feed_interval_days == expected.feed_interval_days,
            )
            .values(next_feed_date=new_value, last_rollover_from=expected.next_feed_at)
            .execution_options(synchronize_session=False)
        )
        try:
            with self._session_factory() as db:
                result = db.execute(statement)
                if result.rowcount == 1:
                    db.commit()
                    return UpdateResult.UPDATED
                db.rollback()
                current = db.execute(
                    select(models.Tarantula.last_rollover_from).where(
                        models.Tarantula.id == pet_id
                    )
                ).one_or_none()
        except (DBAPIError, PoolTimeoutError) as exc:
            raise StoreUnavailable(f"advancing pet {pet_id} failed: {exc}") from exc
        if current is None:
            return UpdateResult.MISSING
        if current[0] is not None and current[0] == expected.next_feed_at:
            return UpdateResult.ALREADY_APPLIED
        return UpdateResult.CONFLICT


@dataclass(slots=True)
class _Record:
    item: DueItem
    notify: bool = True
    last_rollover_from: datetime | None = None


class InMemoryScheduleStore:
    """Thread-safe dict-backed store with the same contract as the SQL one."""

    def __init__(self) -> None:
        self._records: dict[int, _Record] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self.available = True
        self.update_calls = 0

    def add(
        self,
        next_feed_at: datetime,
        feed_interval_days: int,
        owner_id: int = 1,
        notify: bool = True,
        name: str = "",
        species: str = "",
        timezone: str = "UTC",
        pet_id: int | None = None,
    ) -> DueItem:
        with self._lock:
            new_id = pet_id if pet_id is not None else next(self._ids)
            item = DueItem(
                id=new_id,
                next_feed_at=next_feed_at,
                feed_interval_days=feed_interval_days,
                owner_id=owner_id,
                name=name,
                species=species,
                timezone=timezone,
            )
            self._records[new_id] = _Record(item=item, notify=notify)
            return item

    def edit(self, pet_id: int, **changes) -> DueItem:
        """Apply a user-side edit, the way the web handlers would."""
        with self._lock:
            record = self._records[pet_id]
            notify = changes.pop("notify", record.notify)
            record.item = replace(record.item, **changes)
            record.notify = notify
            record.last_rollover_from = None
            return record.item

    def delete(self, pet_id: int) -> None:
        with self._lock:
            self._records.pop(pet_id, None)

    def _check_available(self) -> None:
        if not self.available:
            raise StoreUnavailable("in-memory store marked unavailable")

    def list_soonest(
        self,
        limit: int,
        include_disabled: bool = False,
        owner_id: int | None = None,
    ) -> list[DueItem]:
        self._check_available()
        if limit <= 0:
            return []
        with self._lock:
            matching = [
                record.item
                for record in self._records.values()
                if (include_disabled or record.notify)
                and (owner_id is None or record.item.owner_id == owner_id)
            ]
        items = [item for item in matching if item.feed_interval_days > 0]
        _log_invalid(
            [(item.id, item.feed_interval_days) for item in matching if item.feed_interval_days <= 0]
        )
        items.sort(key=lambda item: (item.next_feed_at, item.id))
        return items[:limit]

    def get_item(self, pet_id: int) -> DueItem | None:
        self._check_available()
        with self._lock:
            record = self._records.get(pet_id)
            return record.item if record else None

    def update_next_feed_at(
        self, pet_id: int, new_value: datetime, expected: DueItem
    ) -> UpdateResult:
        self._check_available()
        with self._lock:
            self.update_calls += 1
            record = self._records.get(pet_id)
            if record is None:
                return UpdateResult.MISSING
            current = record.item
            if (
                current.next_feed_at == expected.next_feed_at
                and current.feed_interval_days == expected.feed_interval_days
            ):
                record.item = replace(current, next_feed_at=new_value)
                record.last_rollover_from = expected.next_feed_at
                return UpdateResult.UPDATED
            if record.last_rollover_from == expected.next_feed_at:
                return UpdateResult.ALREADY_APPLIED
            return UpdateResult.CONFLICT
