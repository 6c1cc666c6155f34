from __future__ import annotations

import logging
import os
import secrets
import threading
import time as time_module
from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fastapi import Cookie, Depends, FastAPI, File, Form, HTTPException, Query, Request, Response, UploadFile
from fastapi.staticfiles import StaticFiles
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from . import config, crud, models, schemas
from .database import SessionLocal, engine, ensure_schema, utcnow
from .errors import StoreUnavailable
from .services import notifications, reports, uploads
from .services.notifications import ReminderNotifier
from .services.schedule_store import SqlScheduleStore
from .services.scheduler import ReminderScheduler
from .services.selector import select_due

app = FastAPI(title="TarantulaBox API")

logger = logging.getLogger(__name__)
logging.getLogger("tarantulabox").setLevel(config.LOG_LEVEL)

_schema_lock = threading.Lock()
_schema_ready = False

os.makedirs(config.UPLOAD_DIR, exist_ok=True)
app.mount("/uploads", StaticFiles(directory=config.UPLOAD_DIR, check_dir=False), name="uploads")

scheduler_config = config.SchedulerConfig.from_env()
schedule_store = SqlScheduleStore(SessionLocal)
app.state.scheduler = ReminderScheduler(
    schedule_store,
    ReminderNotifier(SessionLocal, timeout=scheduler_config.delivery_timeout),
    scheduler_config,
)


def init_db_schema() -> None:
    global _schema_ready
    attempts = max(config.DB_INIT_RETRIES, 1)
    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            models.Base.metadata.create_all(bind=engine)
            ensure_schema()
            _schema_ready = True
            return
        except OperationalError as exc:
            last_error = exc
            logger.warning(
                "Database init failed (attempt %s/%s).", attempt, attempts, exc_info=exc
            )
            if attempt < attempts:
                time_module.sleep(config.DB_INIT_DELAY_SECONDS)
    if config.DB_INIT_STRICT and last_error:
        raise last_error


def get_db():
    if not _schema_ready:
        with _schema_lock:
            if not _schema_ready:
                init_db_schema()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_scheduler() -> ReminderScheduler:
    return app.state.scheduler


def get_user_from_session(db: Session, session_token: str | None) -> models.User | None:
    if not session_token:
        return None
    session = crud.get_session(db, session_token)
    if not session:
        return None
    return db.get(models.User, session.user_id)


def verify_csrf(request: Request) -> None:
    if request.method not in config.UNSAFE_METHODS:
        return
    cookie_token = request.cookies.get(config.CSRF_COOKIE_NAME)
    header_token = request.headers.get(config.CSRF_HEADER_NAME)
    if not cookie_token or not header_token:
        raise HTTPException(status_code=403, detail="CSRF token missing.")
    if not secrets.compare_digest(cookie_token, header_token):
        raise HTTPException(status_code=403, detail="CSRF token invalid.")


def require_auth(
    request: Request,
    db: Session = Depends(get_db),
    session_token: str | None = Cookie(default=None, alias="session"),
) -> models.User:
    user = get_user_from_session(db, session_token)
    if not user:
        raise HTTPException(status_code=401, detail="Auth required.")
    if not user.is_active:
        raise HTTPException(status_code=403, detail="Account disabled.")
    verify_csrf(request)
    return user


def issue_session_cookies(response: Response, token: str) -> None:
    response.set_cookie(
        "session",
        token,
        httponly=True,
        samesite="lax",
        path="/",
        max_age=config.SESSION_MAX_AGE,
    )
    response.set_cookie(
        config.CSRF_COOKIE_NAME,
        secrets.token_urlsafe(32),
        httponly=False,
        samesite="lax",
        path="/",
        max_age=config.SESSION_MAX_AGE,
    )


def parse_zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise HTTPException(status_code=422, detail="Unknown timezone.") from exc


def parse_next_feed_date(value: str | datetime, zone: ZoneInfo) -> datetime:
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.strip())
        except ValueError as exc:
            raise HTTPException(status_code=422, detail="Invalid next feed date.") from exc
    if value.tzinfo is None:
        value = value.replace(tzinfo=zone)
    if value < utcnow():
        raise HTTPException(status_code=422, detail="Next feed date cannot be in the past.")
    return value


def validate_email(email: str) -> str:
    email = email.strip()
    local, _, domain = email.partition("@")
    if not local or "." not in domain or " " in email:
        raise HTTPException(status_code=400, detail="This field must be a valid email address.")
    return email


def get_owned_tarantula(db: Session, tarantula_id: int, user: models.User) -> models.Tarantula:
    tarantula = crud.get_tarantula_for_owner(db, tarantula_id, user.id)
    if not tarantula:
        raise HTTPException(status_code=404, detail="Tarantula not found.")
    return tarantula


@app.on_event("startup")
def startup() -> None:
    init_db_schema()
    if config.SCHEDULER_ENABLED:
        get_scheduler().start()


@app.on_event("shutdown")
def shutdown() -> None:
    get_scheduler().stop()


@app.get("/health")
def health_check():
    return {"status": "ok", "version": config.APP_VERSION}


@app.post("/signup", response_model=schemas.LoginResponse)
def signup(payload: schemas.SignupRequest, response: Response, db: Session = Depends(get_db)):
    email = validate_email(payload.email)
    if len(payload.password) < config.MIN_PASSWORD_LENGTH:
        raise HTTPException(status_code=400, detail="Password must be at least 8 characters.")
    try:
        user = crud.create_user(db, email, payload.password)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    session = crud.create_session(db, user.id)
    crud.create_audit_log(db, "signup", actor_user_id=user.id)
    issue_session_cookies(response, session.token)
    return schemas.LoginResponse(token=session.token)


@app.post("/login", response_model=schemas.LoginResponse)
def login(payload: schemas.LoginRequest, response: Response, db: Session = Depends(get_db)):
    user = crud.get_user_by_email(db, payload.email.strip())
    if not user or not crud.verify_user_password(user, payload.password):
        raise HTTPException(status_code=401, detail="Email or password is incorrect.")
    if not user.is_active:
        raise HTTPException(status_code=403, detail="Account disabled.")
    session = crud.create_session(db, user.id)
    crud.create_audit_log(db, "login", actor_user_id=user.id)
    issue_session_cookies(response, session.token)
    return schemas.LoginResponse(token=session.token)


@app.post("/logout")
def logout(
    request: Request,
    response: Response,
    session_token: str | None = Cookie(default=None, alias="session"),
    db: Session = Depends(get_db),
):
    verify_csrf(request)
    if session_token:
        session = crud.get_session(db, session_token)
        if session:
            crud.create_audit_log(db, "logout", actor_user_id=session.user_id)
        crud.delete_session(db, session_token)
    response.delete_cookie("session", path="/")
    response.delete_cookie(config.CSRF_COOKIE_NAME, path="/")
    return {"ok": True}


@app.get("/me")
def me(user: models.User = Depends(require_auth)):
    return {"email": user.email, "notify_email": user.notify_email}


@app.patch("/me/notifications")
def update_notification_settings(
    payload: schemas.NotificationSettings,
    user: models.User = Depends(require_auth),
    db: Session = Depends(get_db),
):
    user = crud.update_user_email_settings(db, user, payload.notify_email)
    return {"notify_email": user.notify_email}


@app.post("/tarantulas", response_model=schemas.TarantulaOut)
def create_tarantula(
    species: str = Form(...),
    name: str = Form(...),
    next_feed_date: str = Form(...),
    feed_interval_days: int = Form(...),
    timezone_name: str = Form(default="UTC", alias="timezone"),
    notify: bool = Form(default=False),
    tarantula_image: UploadFile = File(...),
    user: models.User = Depends(require_auth),
    db: Session = Depends(get_db),
):
    if not species.strip():
        raise HTTPException(status_code=422, detail="Species cannot be blank.")
    if not name.strip():
        raise HTTPException(status_code=422, detail="Name cannot be blank.")
    if feed_interval_days <= 0:
        raise HTTPException(status_code=422, detail="Feed interval must be a positive value.")
    zone = parse_zone(timezone_name)
    next_feed = parse_next_feed_date(next_feed_date, zone)
    data = tarantula_image.file.read(config.MAX_UPLOAD_BYTES + 1)
    img_url = uploads.save_tarantula_image(data, user.id, upload_dir=config.UPLOAD_DIR)
    tarantula = crud.create_tarantula(
        db,
        owner_id=user.id,
        species=species.strip(),
        name=name.strip(),
        feed_interval_days=feed_interval_days,
        notify=notify,
        next_feed_date=next_feed,
        timezone_name=timezone_name,
        img_url=img_url,
    )
    crud.create_audit_log(
        db, "tarantula_created", actor_user_id=user.id, details=tarantula.name, tarantula_id=tarantula.id
    )
    get_scheduler().wake()
    return tarantula


@app.get("/tarantulas", response_model=list[schemas.TarantulaOut])
def list_tarantulas(user: models.User = Depends(require_auth), db: Session = Depends(get_db)):
    return crud.list_tarantulas_for_owner(db, user.id)


@app.get("/tarantulas/upcoming", response_model=list[schemas.UpcomingFeeding])
def upcoming_feedings(
    limit: int = Query(default=10, ge=0, le=100),
    user: models.User = Depends(require_auth),
):
    now = utcnow()
    try:
        items = select_due(schedule_store, limit, include_disabled=True, owner_id=user.id)
    except StoreUnavailable as exc:
        logger.warning("Upcoming feedings unavailable: %s", exc)
        raise HTTPException(status_code=503, detail="Schedule temporarily unavailable.") from exc
    return [
        schemas.UpcomingFeeding(
            id=item.id,
            name=item.name,
            species=item.species,
            next_feed_at=item.next_feed_at,
            feed_interval_days=item.feed_interval_days,
            due=item.is_due(now),
        )
        for item in items
    ]


@app.get("/tarantulas/report")
def schedule_report(user: models.User = Depends(require_auth), db: Session = Depends(get_db)):
    tarantulas = crud.list_tarantulas_for_owner(db, user.id)
    reminders = [
        entry
        for entry in crud.list_activity_for_user(db, user.id, limit=100)
        if entry.action == "feeding_reminder"
    ][:25]
    pdf = reports.build_schedule_report_pdf(user, tarantulas, reminders, utcnow())
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": 'attachment; filename="feeding-schedule.pdf"'},
    )


@app.get("/tarantulas/{tarantula_id}", response_model=schemas.TarantulaOut)
def get_tarantula(
    tarantula_id: int,
    user: models.User = Depends(require_auth),
    db: Session = Depends(get_db),
):
    return get_owned_tarantula(db, tarantula_id, user)


@app.patch("/tarantulas/{tarantula_id}", response_model=schemas.TarantulaOut)
def update_tarantula(
    tarantula_id: int,
    payload: schemas.TarantulaUpdate,
    user: models.User = Depends(require_auth),
    db: Session = Depends(get_db),
):
    tarantula = get_owned_tarantula(db, tarantula_id, user)
    changes = payload.model_dump(exclude_unset=True)
    for key in ("species", "name", "feed_interval_days", "notify", "timezone"):
        if key in changes and changes[key] is None:
            raise HTTPException(status_code=422, detail=f"{key} cannot be null.")
    zone = parse_zone(changes.get("timezone") or tarantula.timezone)
    if changes.get("next_feed_date") is not None:
        changes["next_feed_date"] = parse_next_feed_date(changes["next_feed_date"], zone)
    elif "next_feed_date" in changes:
        raise HTTPException(status_code=422, detail="next_feed_date cannot be null.")
    tarantula = crud.update_tarantula(db, tarantula, changes)
    crud.create_audit_log(
        db,
        "tarantula_updated",
        actor_user_id=user.id,
        details=", ".join(sorted(changes)),
        tarantula_id=tarantula.id,
    )
    get_scheduler().wake()
    return tarantula


@app.delete("/tarantulas/{tarantula_id}")
def delete_tarantula(
    tarantula_id: int,
    user: models.User = Depends(require_auth),
    db: Session = Depends(get_db),
):
    tarantula = get_owned_tarantula(db, tarantula_id, user)
    name = tarantula.name
    crud.delete_tarantula(db, tarantula)
    crud.create_audit_log(
        db, "tarantula_deleted", actor_user_id=user.id, details=name, tarantula_id=tarantula_id
    )
    return {"ok": True}


@app.get("/activity", response_model=list[schemas.AuditLogOut])
def activity_feed(
    limit: int = Query(default=20, ge=1, le=200),
    user: models.User = Depends(require_auth),
    db: Session = Depends(get_db),
):
    return crud.list_activity_for_user(db, user.id, limit=limit)


@app.get("/push/vapid-public-key")
def get_vapid_public_key(_: models.User = Depends(require_auth)):
    if not config.VAPID_PUBLIC_KEY or not notifications.push_configured():
        raise HTTPException(status_code=404, detail="Push not configured.")
    return {"public_key": config.VAPID_PUBLIC_KEY}


@app.post("/push/subscribe")
def subscribe_push(
    payload: schemas.PushSubscriptionIn,
    user: models.User = Depends(require_auth),
    db: Session = Depends(get_db),
):
    if not payload.endpoint or not payload.keys.p256dh or not payload.keys.auth:
        raise HTTPException(status_code=400, detail="Invalid subscription.")
    crud.upsert_push_subscription(
        db, user.id, payload.endpoint, payload.keys.p256dh, payload.keys.auth
    )
    return {"ok": True}


@app.post("/push/unsubscribe")
def unsubscribe_push(
    payload: schemas.PushUnsubscribeIn,
    _: models.User = Depends(require_auth),
    db: Session = Depends(get_db),
):
    if not payload.endpoint:
        raise HTTPException(status_code=400, detail="Invalid subscription.")
    crud.delete_push_subscription(db, payload.endpoint)
    return {"ok": True}


@app.get("/scheduler/status")
def scheduler_status(_: models.User = Depends(require_auth)):
    return get_scheduler().status()


@app.post("/scheduler/run")
def scheduler_run(_: models.User = Depends(require_auth)):
    report = get_scheduler().run_once()
    return report.as_dict()
