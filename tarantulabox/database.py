from __future__ import annotations

import os
from datetime import datetime, timezone

from sqlalchemy import DateTime, create_engine, text
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.types import TypeDecorator

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./tarantulabox.db")
DB_TIMEOUT_SECONDS = float(os.getenv("SCHEDULER_STORE_TIMEOUT_SECONDS", "10"))

connect_args: dict = {}
if DATABASE_URL.startswith("sqlite"):
    connect_args = {"check_same_thread": False, "timeout": DB_TIMEOUT_SECONDS}

engine = create_engine(DATABASE_URL, connect_args=connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    pass


class UTCDateTime(TypeDecorator):
    """Stores naive UTC and hands back aware UTC datetimes.

    Naive values passed in are taken to be UTC already.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.replace(tzinfo=None)

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_schema() -> None:
    if not DATABASE_URL.startswith("sqlite"):
        return
    with engine.begin() as conn:
        columns = {row[1] for row in conn.execute(text("PRAGMA table_info(tarantulas)"))}
        if not columns:
            return
        if "timezone" not in columns:
            conn.execute(text("ALTER TABLE tarantulas ADD COLUMN timezone VARCHAR DEFAULT 'UTC'"))
            conn.execute(text("UPDATE tarantulas SET timezone = 'UTC' WHERE timezone IS NULL"))
        if "last_rollover_from" not in columns:
            conn.execute(text("ALTER TABLE tarantulas ADD COLUMN last_rollover_from DATETIME"))
        user_columns = {row[1] for row in conn.execute(text("PRAGMA table_info(users)"))}
        if user_columns and "notify_email" not in user_columns:
            conn.execute(text("ALTER TABLE users ADD COLUMN notify_email INTEGER DEFAULT 0"))
            conn.execute(text("UPDATE users SET notify_email = 0 WHERE notify_email IS NULL"))
