"""Feeding-reminder scheduler driver.

An APScheduler interval job runs ticks: fetch the soonest schedules, deliver
a reminder for each one that is due, then roll its next feed date forward.
Ticks never overlap; store and delivery calls run on a small worker pool so
that every call can be bounded by a timeout.
"""
from __future__ import annotations

import enum
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Protocol
from zoneinfo import ZoneInfo

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..config import SchedulerConfig
from ..database import utcnow
from ..errors import DeliveryFailure, InvalidInterval, StoreUnavailable, UpdateConflict
from .notifications import reminder_message
from .rollover import RolloverEngine, RolloverResult, due_occurrences, latest_due_occurrence
from .schedule_store import DueItem, ScheduleStore
from .selector import select_due, split_due

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

JOB_ID = "feeding-reminders"
UTC = ZoneInfo("UTC")


class Notifier(Protocol):
    def send(self, owner_id: int, pet_id: int, message: str) -> bool:
        ...


class SchedulerState(str, enum.Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    DELIVERING = "delivering"
    ADVANCING = "advancing"
    FAULTED = "faulted"
    STOPPED = "stopped"


@dataclass(slots=True)
class ItemFailure:
    pet_id: int
    kind: str
    reason: str


@dataclass(slots=True)
class TickReport:
    started_at: datetime
    selected: int = 0
    due: list[int] = field(default_factory=list)
    delivered: list[int] = field(default_factory=list)
    advanced: list[int] = field(default_factory=list)
    failures: list[ItemFailure] = field(default_factory=list)
    next_due_at: datetime | None = None
    skipped: bool = False
    aborted: bool = False
    interrupted: bool = False
    faulted: bool = False
    finished_at: datetime | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "selected": self.selected,
            "due": list(self.due),
            "delivered": list(self.delivered),
            "advanced": list(self.advanced),
            "failures": [
                {"pet_id": f.pet_id, "kind": f.kind, "reason": f.reason} for f in self.failures
            ],
            "next_due_at": self.next_due_at.isoformat() if self.next_due_at else None,
            "skipped": self.skipped,
            "aborted": self.aborted,
            "interrupted": self.interrupted,
            "faulted": self.faulted,
        }


@dataclass(slots=True)
class _PendingSend:
    """A reminder send that outlived its delivery timeout."""

    occurrence: datetime
    future: Future


class ReminderScheduler:
    """Periodic fetch, deliver and advance loop for feeding reminders."""

    def __init__(
        self,
        store: ScheduleStore,
        notifier: Notifier,
        config: SchedulerConfig | None = None,
        clock: Clock | None = None,
        message_builder: Callable[[DueItem, datetime], str] = reminder_message,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self._config = config or SchedulerConfig()
        self._clock = clock or utcnow
        self._message_builder = message_builder
        self._engine = RolloverEngine(store)
        self._tick_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._executor_lock = threading.Lock()
        self._stop = threading.Event()
        self._wake_requested = threading.Event()
        self._state = SchedulerState.IDLE
        self._scheduler: BackgroundScheduler | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._closed = False
        # only touched by the tick holding _tick_lock
        self._pending_sends: dict[int, _PendingSend] = {}
        self._last_report: TickReport | None = None
        self._ticks = 0

    @property
    def config(self) -> SchedulerConfig:
        return self._config

    @property
    def state(self) -> SchedulerState:
        with self._state_lock:
            return self._state

    @property
    def last_report(self) -> TickReport | None:
        return self._last_report

    def is_running(self) -> bool:
        scheduler = self._scheduler
        return scheduler is not None and scheduler.running

    def _set_state(self, state: SchedulerState) -> None:
        with self._state_lock:
            self._state = state

    def start(self) -> None:
        if self.is_running():
            return
        self._stop.clear()
        with self._executor_lock:
            self._closed = False
        self._set_state(SchedulerState.IDLE)
        scheduler = BackgroundScheduler(timezone=UTC)
        scheduler.add_job(
            self._scheduled_tick,
            trigger=IntervalTrigger(seconds=self._config.tick_interval.total_seconds()),
            id=JOB_ID,
            name="Feeding reminders",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=None,
            next_run_time=datetime.now(UTC),
        )
        self._scheduler = scheduler
        scheduler.start()
        logger.info(
            "Reminder scheduler started (tick=%ss, batch=%s).",
            self._config.tick_interval.total_seconds(),
            self._config.batch_size,
        )

    def stop(self, timeout: float | None = 30) -> None:
        """Stop after the item in flight; the rest of the batch is dropped."""
        self._stop.set()
        scheduler, self._scheduler = self._scheduler, None
        if scheduler is not None and scheduler.running:
            scheduler.shutdown(wait=False)
        acquired = self._tick_lock.acquire(timeout=-1 if timeout is None else timeout)
        try:
            if not acquired:
                logger.warning("Reminder tick still running after %ss, closing its worker pool.", timeout)
            with self._executor_lock:
                self._closed = True
                if self._executor is not None:
                    self._executor.shutdown(wait=False, cancel_futures=True)
                    self._executor = None
        finally:
            if acquired:
                self._tick_lock.release()
        self._set_state(SchedulerState.STOPPED)
        logger.info("Reminder scheduler stopped.")

    def wake(self) -> None:
        """Run the next tick now instead of waiting for the timer."""
        self._wake_requested.set()
        self._reschedule(0)

    def status(self) -> dict[str, Any]:
        report = self._last_report
        next_run = None
        scheduler = self._scheduler
        if scheduler is not None and scheduler.running:
            job = scheduler.get_job(JOB_ID)
            if job is not None and job.next_run_time is not None:
                next_run = job.next_run_time.isoformat()
        return {
            "state": self.state.value,
            "running": self.is_running(),
            "ticks": self._ticks,
            "tick_interval_seconds": self._config.tick_interval.total_seconds(),
            "batch_size": self._config.batch_size,
            "next_run_at": next_run,
            "last_tick": report.as_dict() if report else None,
        }

    def _scheduled_tick(self) -> None:
        self._wake_requested.clear()
        report = self.run_once()
        if self._stop.is_set():
            return
        wait = 0.0 if self._wake_requested.is_set() else self._next_wait(report)
        if wait < self._config.tick_interval.total_seconds():
            self._reschedule(wait)

    def _reschedule(self, seconds: float) -> None:
        scheduler = self._scheduler
        if scheduler is None or not scheduler.running:
            return
        try:
            scheduler.modify_job(JOB_ID, next_run_time=datetime.now(UTC) + timedelta(seconds=seconds))
        except JobLookupError:
            logger.debug("Reminder job is gone, not rescheduling.")

    def _next_wait(self, report: TickReport) -> float:
        floor = self._config.min_wait.total_seconds()
        wait = self._config.tick_interval.total_seconds()
        if report.advanced and len(report.due) >= self._config.batch_size:
            # a full batch of due pets, more may be waiting behind it
            return floor
        if self._config.align_to_next_due and report.next_due_at is not None:
            until = (report.next_due_at - self._clock()).total_seconds()
            wait = min(wait, until)
        return max(wait, floor)

    def _submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        with self._executor_lock:
            if self._closed:
                raise StoreUnavailable("reminder scheduler is stopped")
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="reminder-io")
            return self._executor.submit(fn, *args, **kwargs)

    def _call(self, timeout: float, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return self._submit(fn, *args, **kwargs).result(timeout=timeout)

    def run_once(self) -> TickReport:
        """Run a single tick, or report it skipped if one is already running."""
        report = TickReport(started_at=self._clock())
        if not self._tick_lock.acquire(blocking=False):
            logger.info("Reminder tick skipped: previous batch still in flight.")
            report.skipped = True
            report.finished_at = report.started_at
            return report
        try:
            self._tick(report)
        except Exception:
            logger.exception("Reminder tick failed unexpectedly.")
            report.faulted = True
            self._set_state(SchedulerState.FAULTED)
        else:
            self._set_state(SchedulerState.STOPPED if self._closed else SchedulerState.IDLE)
        finally:
            report.finished_at = self._clock()
            self._last_report = report
            self._ticks += 1
            self._tick_lock.release()
        return report

    def _tick(self, report: TickReport) -> None:
        now = report.started_at
        self._set_state(SchedulerState.FETCHING)
        try:
            items = self._call(
                self._config.store_timeout,
                select_due,
                self._store,
                self._config.batch_size,
                include_disabled=self._config.include_disabled,
            )
        except (StoreUnavailable, FutureTimeout) as exc:
            logger.warning("Schedule store unavailable, skipping tick: %s", str(exc) or "timed out")
            report.aborted = True
            return

        due, pending = split_due(items, now)
        report.selected = len(items)
        report.due = [item.id for item in due]
        report.next_due_at = pending[0].next_feed_at if pending else None
        if due:
            logger.info("%s of %s selected pets are due for feeding.", len(due), len(items))

        for item in due:
            if self._stop.is_set():
                logger.info("Stop requested, leaving the rest of the batch for the next run.")
                report.interrupted = True
                break
            self._process(item, now, report)

        if report.failures:
            logger.warning(
                "Reminder tick finished with %s failure(s): %s",
                len(report.failures),
                ", ".join(f"{f.pet_id}:{f.kind}" for f in report.failures),
            )

    def _process(self, item: DueItem, now: datetime, report: TickReport) -> None:
        if item.feed_interval_days <= 0:
            error = InvalidInterval(item.id, item.feed_interval_days)
            logger.error("%s", error)
            report.failures.append(ItemFailure(item.id, "invalid_interval", str(error)))
            return
        if self._config.catch_up_missed:
            occurrences = due_occurrences(item, now, self._config.max_catch_up_runs)
        else:
            occurrences = [latest_due_occurrence(item, now) or item.next_feed_at]

        current = item
        advanced = False
        for occurrence in occurrences:
            self._set_state(SchedulerState.DELIVERING)
            if not self._deliver(current, occurrence, report):
                break
            self._set_state(SchedulerState.ADVANCING)
            result = self._advance(current, occurrence, report)
            if result is None:
                break
            advanced = True
            current = replace(current, next_feed_at=result.next_feed_at)
        if advanced:
            report.advanced.append(item.id)

    def _late_delivery(self, item: DueItem, occurrence: datetime) -> bool | None:
        """Outcome of an earlier send for ``item`` that timed out.

        ``None`` means there is nothing pending and a fresh send may go out.
        ``False`` means the earlier send is still running.
        """
        pending = self._pending_sends.get(item.id)
        if pending is None:
            return None
        if not pending.future.done():
            return False
        del self._pending_sends[item.id]
        if pending.occurrence != occurrence or pending.future.exception() is not None:
            return None
        return True if pending.future.result() else None

    def _deliver(self, item: DueItem, occurrence: datetime, report: TickReport) -> bool:
        late = self._late_delivery(item, occurrence)
        if late is False:
            logger.info("Reminder for pet %s is still being sent, skipping it this tick.", item.id)
            report.failures.append(ItemFailure(item.id, "in_flight", "previous reminder still sending"))
            return False
        if late:
            logger.info("Late reminder for pet %s went out, advancing without resending.", item.id)
            if item.id not in report.delivered:
                report.delivered.append(item.id)
            return True

        message = self._message_builder(item, occurrence)
        future: Future | None = None
        try:
            future = self._submit(self._notifier.send, item.owner_id, item.id, message)
            ok = future.result(timeout=self._config.delivery_timeout)
        except FutureTimeout:
            self._pending_sends[item.id] = _PendingSend(occurrence, future)
            failure = DeliveryFailure(item.id, f"timed out after {self._config.delivery_timeout}s")
        except Exception as exc:
            failure = DeliveryFailure(item.id, str(exc) or exc.__class__.__name__)
        else:
            if ok:
                if item.id not in report.delivered:
                    report.delivered.append(item.id)
                return True
            failure = DeliveryFailure(item.id, "notifier reported failure")
        logger.warning("%s", failure)
        report.failures.append(ItemFailure(item.id, "delivery", failure.reason))
        return False

    def _advance(
        self, item: DueItem, trigger: datetime, report: TickReport
    ) -> RolloverResult | None:
        try:
            return self._call(self._config.store_timeout, self._engine.advance, item, trigger)
        except UpdateConflict as exc:
            logger.info("%s; re-reading once.", exc)
            return self._resolve_conflict(item, trigger, report)
        except InvalidInterval as exc:
            logger.error("%s", exc)
            report.failures.append(ItemFailure(item.id, "invalid_interval", str(exc)))
        except (StoreUnavailable, FutureTimeout) as exc:
            logger.warning("Could not advance pet %s: %s", item.id, str(exc) or "timed out")
            report.failures.append(ItemFailure(item.id, "store", str(exc) or "timed out"))
        return None

    def _resolve_conflict(
        self, item: DueItem, trigger: datetime, report: TickReport
    ) -> RolloverResult | None:
        try:
            fresh = self._call(self._config.store_timeout, self._store.get_item, item.id)
        except (StoreUnavailable, FutureTimeout) as exc:
            logger.warning("Could not re-read pet %s: %s", item.id, str(exc) or "timed out")
            report.failures.append(ItemFailure(item.id, "store", str(exc) or "timed out"))
            return None
        if fresh is None:
            logger.info("Pet %s was deleted before its rollover.", item.id)
            report.failures.append(ItemFailure(item.id, "conflict", "record deleted"))
            return None
        if fresh.next_feed_at != item.next_feed_at:
            logger.info(
                "Pet %s was rescheduled to %s while its reminder was in flight; "
                "leaving it for re-selection.",
                item.id,
                fresh.next_feed_at.isoformat(),
            )
            report.failures.append(ItemFailure(item.id, "conflict", "rescheduled by owner"))
            return None
        # same due event, only the interval moved: the reminder still applies
        try:
            return self._call(self._config.store_timeout, self._engine.advance, fresh, trigger)
        except (UpdateConflict, InvalidInterval, StoreUnavailable, FutureTimeout) as exc:
            logger.warning("Retry of rollover for pet %s failed: %s", item.id, str(exc) or "timed out")
            report.failures.append(ItemFailure(item.id, "conflict", str(exc) or "timed out"))
            return None
