from __future__ import annotations

import json
import logging
import smtplib
from datetime import datetime
from email.message import EmailMessage
from typing import Callable

from pywebpush import WebPushException, webpush
from requests.exceptions import RequestException
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from .. import config, crud, models
from .rollover import resolve_zone
from .schedule_store import DueItem

logger = logging.getLogger(__name__)


def reminder_message(item: DueItem, due_at: datetime) -> str:
    local = due_at.astimezone(resolve_zone(item.timezone))
    label = f"{item.name} ({item.species})" if item.species else item.name or f"pet #{item.id}"
    return (
        f"Time to feed {label}. Feeding was due {local.strftime('%Y-%m-%d %H:%M')} "
        f"{item.timezone}; next reminder in {item.feed_interval_days} day(s)."
    )


def send_smtp_email(
    host: str,
    port: int,
    user: str,
    password: str,
    from_email: str,
    recipients: list[str],
    subject: str,
    body: str,
    timeout: float = 10,
) -> bool:
    if not host or not user or not password or not from_email or not recipients:
        return False
    message = EmailMessage()
    message["Subject"] = subject
    message["From"] = from_email
    message["To"] = ", ".join(sorted(set(recipients)))
    message.set_content(body)
    if port == 465:
        with smtplib.SMTP_SSL(host, port, timeout=timeout) as server:
            server.login(user, password)
            server.send_message(message)
        return True
    with smtplib.SMTP(host, port, timeout=timeout) as server:
        server.ehlo()
        server.starttls()
        server.login(user, password)
        server.send_message(message)
    return True


def smtp_configured() -> bool:
    return bool(config.SMTP_HOST and config.SMTP_USER and config.SMTP_PASS and config.SMTP_FROM)


def push_configured() -> bool:
    return bool(config.VAPID_PRIVATE_KEY)


def send_push_payload(
    db: Session,
    subscriptions: list[models.PushSubscription],
    payload: dict,
    timeout: float = 10,
) -> int:
    """Push ``payload`` to each subscription, returning how many accepted it."""
    delivered = 0
    for sub in subscriptions:
        try:
            webpush(
                subscription_info={
                    "endpoint": sub.endpoint,
                    "keys": {"p256dh": sub.p256dh, "auth": sub.auth},
                },
                data=json.dumps(payload),
                vapid_private_key=config.VAPID_PRIVATE_KEY,
                vapid_claims={"sub": config.VAPID_SUBJECT},
                timeout=timeout,
            )
        except WebPushException as exc:
            if exc.response is not None and exc.response.status_code in {404, 410}:
                logger.info("Pruning expired push subscription %s.", sub.id)
                crud.delete_push_subscription(db, sub.endpoint)
            else:
                logger.warning("Push to subscription %s failed: %s", sub.id, exc)
            continue
        except RequestException as exc:
            logger.warning("Push to subscription %s failed: %s", sub.id, exc)
            continue
        delivered += 1
    return delivered


class ReminderNotifier:
    """Delivers feeding reminders over web push and email.

    A reminder counts as delivered when at least one configured channel took
    it, or when the owner has no external channel at all (the audit trail is
    then the only place it shows up).
    """

    def __init__(self, session_factory: Callable[[], Session], timeout: float = 10) -> None:
        self._session_factory = session_factory
        self._timeout = timeout

    def send(self, owner_id: int, pet_id: int, message: str) -> bool:
        with self._session_factory() as db:
            user = db.get(models.User, owner_id)
            if user is None or not user.is_active:
                logger.info("Owner %s of pet %s is gone or disabled; nothing to send.", owner_id, pet_id)
                return True
            attempted = 0
            delivered = 0

            subscriptions = crud.list_push_subscriptions_for_user(db, owner_id)
            if subscriptions and push_configured():
                attempted += 1
                payload = {"title": "Feeding due", "body": message, "url": f"/tarantulas/{pet_id}"}
                if send_push_payload(db, subscriptions, payload, timeout=self._timeout):
                    delivered += 1

            if user.notify_email and smtp_configured():
                attempted += 1
                try:
                    if send_smtp_email(
                        config.SMTP_HOST,
                        config.SMTP_PORT,
                        config.SMTP_USER,
                        config.SMTP_PASS,
                        config.SMTP_FROM,
                        [user.email],
                        "Feeding reminder",
                        message,
                        timeout=self._timeout,
                    ):
                        delivered += 1
                except (smtplib.SMTPException, OSError) as exc:
                    logger.warning("Reminder email for pet %s failed: %s", pet_id, exc)

            if attempted and not delivered:
                return False
            try:
                crud.create_audit_log(
                    db,
                    "feeding_reminder",
                    actor_user_id=owner_id,
                    details=message,
                    tarantula_id=pet_id,
                )
            except DBAPIError as exc:
                logger.warning("Could not record reminder for pet %s: %s", pet_id, exc)
            return True
