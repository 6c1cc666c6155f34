"""Failure taxonomy of the feeding-reminder scheduler.

Every error here is recovered by the scheduler driver, either for a single
pet or for a whole tick. None of them is meant to reach the web layer.
"""
from __future__ import annotations


class SchedulerError(Exception):
    """Base class for scheduler failures."""


class StoreUnavailable(SchedulerError):
    """The schedule store could not be read or written (or timed out)."""


class DeliveryFailure(SchedulerError):
    """A single reminder could not be delivered."""

    def __init__(self, pet_id: int, reason: str) -> None:
        super().__init__(f"delivery failed for pet {pet_id}: {reason}")
        self.pet_id = pet_id
        self.reason = reason


class UpdateConflict(SchedulerError):
    """The record changed or vanished between selection and advancement."""

    def __init__(self, pet_id: int, reason: str = "record changed since selection") -> None:
        super().__init__(f"update conflict for pet {pet_id}: {reason}")
        self.pet_id = pet_id
        self.reason = reason


class InvalidInterval(SchedulerError):
    """A record reached the rollover engine with a non-positive interval."""

    def __init__(self, pet_id: int, feed_interval_days: int) -> None:
        super().__init__(
            f"pet {pet_id} has invalid feed interval {feed_interval_days}; expected > 0"
        )
        self.pet_id = pet_id
        self.feed_interval_days = feed_interval_days
