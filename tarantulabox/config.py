from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta

SESSION_MAX_AGE = int(os.getenv("SESSION_MAX_AGE", str(60 * 60 * 24 * 7)))
CSRF_COOKIE_NAME = "csrf"
CSRF_HEADER_NAME = "X-CSRF-Token"
UNSAFE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
APP_VERSION = os.getenv("APP_VERSION", "V.0.1")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
MIN_PASSWORD_LENGTH = 8

UPLOAD_DIR = os.getenv("UPLOAD_DIR", "./uploads")
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(2_000_000)))
ALLOWED_IMAGE_TYPES = {"image/jpeg": ".jpg", "image/png": ".png"}

DB_INIT_RETRIES = int(os.getenv("DB_INIT_RETRIES", "5"))
DB_INIT_DELAY_SECONDS = float(os.getenv("DB_INIT_DELAY_SECONDS", "2.0"))
DB_INIT_STRICT = os.getenv("DB_INIT_STRICT", "0") == "1"

SMTP_HOST = os.getenv("SMTP_HOST", "")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER", "")
SMTP_PASS = os.getenv("SMTP_PASS", "")
SMTP_FROM = os.getenv("SMTP_FROM", "")

VAPID_PUBLIC_KEY = os.getenv("VAPID_PUBLIC_KEY", "")
VAPID_PRIVATE_KEY = os.getenv("VAPID_PRIVATE_KEY", "")
VAPID_SUBJECT = os.getenv("VAPID_SUBJECT", "mailto:admin@example.com")

SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "1") == "1"


@dataclass(slots=True)
class SchedulerConfig:
    """Timing and batching knobs for the feeding-reminder scheduler."""

    tick_interval: timedelta = timedelta(hours=1)
    batch_size: int = 50
    store_timeout: float = 10.0
    delivery_timeout: float = 15.0
    include_disabled: bool = False
    catch_up_missed: bool = False
    max_catch_up_runs: int = 10
    align_to_next_due: bool = True
    min_wait: timedelta = timedelta(seconds=1)

    def __post_init__(self) -> None:
        if self.tick_interval <= timedelta(0):
            raise ValueError("tick_interval must be positive")
        if self.batch_size < 0:
            raise ValueError("batch_size must not be negative")
        if self.store_timeout <= 0 or self.delivery_timeout <= 0:
            raise ValueError("timeouts must be positive")
        if self.max_catch_up_runs < 1:
            raise ValueError("max_catch_up_runs must be at least 1")

    @classmethod
    def from_env(cls) -> SchedulerConfig:
        return cls(
            tick_interval=timedelta(seconds=float(os.getenv("SCHEDULER_TICK_SECONDS", "3600"))),
            batch_size=int(os.getenv("SCHEDULER_BATCH_SIZE", "50")),
            store_timeout=float(os.getenv("SCHEDULER_STORE_TIMEOUT_SECONDS", "10")),
            delivery_timeout=float(os.getenv("SCHEDULER_DELIVERY_TIMEOUT_SECONDS", "15")),
            include_disabled=os.getenv("SCHEDULER_INCLUDE_DISABLED", "0") == "1",
            catch_up_missed=os.getenv("SCHEDULER_CATCH_UP_MISSED", "0") == "1",
            max_catch_up_runs=int(os.getenv("SCHEDULER_MAX_CATCH_UP_RUNS", "10")),
            align_to_next_due=os.getenv("SCHEDULER_ALIGN_TO_NEXT_DUE", "1") == "1",
        )
