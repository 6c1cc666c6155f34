from __future__ import annotations

from datetime import datetime

from .schedule_store import DueItem, ScheduleStore


def select_due(
    store: ScheduleStore,
    batch_size: int,
    include_disabled: bool = False,
    owner_id: int | None = None,
) -> list[DueItem]:
    """Return the ``batch_size`` globally soonest schedules, earliest first.

    Past and future records alike are returned; deciding whether an item is
    actually due is left to the caller (see :func:`split_due`). Pets with
    notifications switched off are left out unless ``include_disabled``.
    Raises :class:`~tarantulabox.errors.StoreUnavailable` when the store
    cannot be reached.
    """
    if batch_size < 0:
        raise ValueError("batch_size must not be negative")
    if batch_size == 0:
        return []
    items = store.list_soonest(batch_size, include_disabled=include_disabled, owner_id=owner_id)
    # the store contract already orders rows; keep the guarantee local too
    return sorted(items, key=lambda item: (item.next_feed_at, item.id))[:batch_size]


def split_due(items: list[DueItem], now: datetime) -> tuple[list[DueItem], list[DueItem]]:
    """Partition a selection into ``(due, pending)`` relative to ``now``."""
    due: list[DueItem] = []
    pending: list[DueItem] = []
    for item in items:
        (due if item.is_due(now) else pending).append(item)
    return due, pending
