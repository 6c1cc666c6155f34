from __future__ import annotations

import hashlib
import secrets
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from . import models
from .database import utcnow


def _hash_password(password: str, salt: str) -> str:
    return hashlib.pbkdf2_hmac(
        "sha256", password.encode("utf-8"), salt.encode("utf-8"), 120000
    ).hex()


def _make_salt() -> str:
    return secrets.token_hex(16)


def create_user(db: Session, email: str, password: str) -> models.User:
    existing = get_user_by_email(db, email)
    if existing:
        raise ValueError("Email address is already in use.")
    salt = _make_salt()
    password_hash = f"{salt}${_hash_password(password, salt)}"
    user = models.User(
        email=email,
        password_hash=password_hash,
        created_at=utcnow(),
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def get_user_by_email(db: Session, email: str) -> models.User | None:
    return db.execute(
        select(models.User).where(func.lower(models.User.email) == email.lower())
    ).scalar_one_or_none()


def verify_user_password(user: models.User, password: str) -> bool:
    try:
        salt, stored = user.password_hash.split("$", 1)
    except ValueError:
        return False
    return secrets.compare_digest(_hash_password(password, salt), stored)


def update_user_email_settings(db: Session, user: models.User, notify_email: bool) -> models.User:
    user.notify_email = notify_email
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def create_session(db: Session, user_id: int) -> models.AuthSession:
    token = secrets.token_urlsafe(32)
    record = models.AuthSession(
        token=token,
        user_id=user_id,
        created_at=utcnow(),
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    return record


def get_session(db: Session, token: str) -> models.AuthSession | None:
    return db.execute(
        select(models.AuthSession).where(models.AuthSession.token == token)
    ).scalar_one_or_none()


def delete_session(db: Session, token: str) -> None:
    record = get_session(db, token)
    if not record:
        return
    db.delete(record)
    db.commit()


def create_audit_log(
    db: Session,
    action: str,
    actor_user_id: int | None = None,
    details: str | None = None,
    tarantula_id: int | None = None,
) -> models.AuditLog:
    record = models.AuditLog(
        action=action,
        actor_user_id=actor_user_id,
        details=details,
        tarantula_id=tarantula_id,
        created_at=utcnow(),
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    return record


def list_activity_for_user(db: Session, user_id: int, limit: int = 50) -> list[models.AuditLog]:
    return list(
        db.execute(
            select(models.AuditLog)
            .where(models.AuditLog.actor_user_id == user_id)
            .order_by(models.AuditLog.created_at.desc(), models.AuditLog.id.desc())
            .limit(limit)
        )
        .scalars()
        .all()
    )


def create_tarantula(
    db: Session,
    owner_id: int,
    species: str,
    name: str,
    feed_interval_days: int,
    notify: bool,
    next_feed_date: datetime,
    timezone_name: str = "UTC",
    img_url: str | None = None,
) -> models.Tarantula:
    tarantula = models.Tarantula(
        owner_id=owner_id,
        species=species,
        name=name,
        feed_interval_days=feed_interval_days,
        notify=notify,
        next_feed_date=next_feed_date,
        timezone=timezone_name,
        img_url=img_url,
        created_at=utcnow(),
    )
    db.add(tarantula)
    db.commit()
    db.refresh(tarantula)
    return tarantula


def get_tarantula(db: Session, tarantula_id: int) -> models.Tarantula | None:
    return db.execute(
        select(models.Tarantula).where(models.Tarantula.id == tarantula_id)
    ).scalar_one_or_none()


def get_tarantula_for_owner(
    db: Session, tarantula_id: int, owner_id: int
) -> models.Tarantula | None:
    return db.execute(
        select(models.Tarantula).where(
            models.Tarantula.id == tarantula_id,
            models.Tarantula.owner_id == owner_id,
        )
    ).scalar_one_or_none()


def list_tarantulas_for_owner(db: Session, owner_id: int) -> list[models.Tarantula]:
    return list(
        db.execute(
            select(models.Tarantula)
            .where(models.Tarantula.owner_id == owner_id)
            .order_by(models.Tarantula.next_feed_date.asc(), models.Tarantula.id.asc())
        )
        .scalars()
        .all()
    )


def update_tarantula(db: Session, tarantula: models.Tarantula, payload: dict) -> models.Tarantula:
    schedule_fields = {"next_feed_date", "feed_interval_days", "timezone"}
    for key, value in payload.items():
        setattr(tarantula, key, value)
    if schedule_fields & payload.keys():
        # a hand-edited schedule is a new due event, not a replay of the old one
        tarantula.last_rollover_from = None
    db.commit()
    db.refresh(tarantula)
    return tarantula


def delete_tarantula(db: Session, tarantula: models.Tarantula) -> None:
    db.delete(tarantula)
    db.commit()


def upsert_push_subscription(
    db: Session, user_id: int, endpoint: str, p256dh: str, auth: str
) -> models.PushSubscription:
    now = utcnow()
    record = db.execute(
        select(models.PushSubscription).where(models.PushSubscription.endpoint == endpoint)
    ).scalar_one_or_none()
    if record:
        record.user_id = user_id
        record.p256dh = p256dh
        record.auth = auth
        record.updated_at = now
    else:
        record = models.PushSubscription(
            user_id=user_id,
            endpoint=endpoint,
            p256dh=p256dh,
            auth=auth,
            created_at=now,
            updated_at=now,
        )
        db.add(record)
    db.commit()
    db.refresh(record)
    return record


def list_push_subscriptions_for_user(db: Session, user_id: int) -> list[models.PushSubscription]:
    return list(
        db.execute(
            select(models.PushSubscription).where(models.PushSubscription.user_id == user_id)
        )
        .scalars()
        .all()
    )


def delete_push_subscription(db: Session, endpoint: str) -> None:
    record = db.execute(
        select(models.PushSubscription).where(models.PushSubscription.endpoint == endpoint)
    ).scalar_one_or_none()
    if not record:
        return
    db.delete(record)
    db.commit()
