from typing import List, Optional
from contextlib import asynccontextmanager
from datetime import datetime
import logging
import secrets
from pathlib import Path

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Header, status, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from . import activity_log, auth, events, gdpr, models, registrations, schemas
from .clock import normalize_dt, now_utc
from .config import settings
from .database import engine, get_db
from .errors import SignupError
from .logging_utils import configure_logging, RequestIdMiddleware, log_event, log_warning

configure_logging()


def _run_migrations():
    """Run Alembic migrations to latest head. Controlled via settings.auto_run_migrations."""
    try:
        from alembic import command
        from alembic.config import Config
        base_dir = Path(__file__).resolve().parent.parent
        alembic_ini = base_dir / 'alembic.ini'
        if not alembic_ini.exists():
            logging.warning('alembic.ini not found; skipping migrations')
            return
        cfg = Config(str(alembic_ini))
        cfg.set_main_option('script_location', str(base_dir / 'alembic'))
        command.upgrade(cfg, 'head')
        logging.info('Migrations applied to head')
    except Exception:
        logging.exception('Failed to run migrations on startup')


def _check_configuration():
    if not settings.database_url:
        raise RuntimeError('DATABASE_URL is required')
    if not settings.secret_key:
        raise RuntimeError('SECRET_KEY is required')
    if not settings.cron_secret:
        logging.warning('CRON_SECRET not set; /api/cron/delete-users is disabled')


@asynccontextmanager
async def lifespan(_app: FastAPI):
    _check_configuration()
    if getattr(settings, "auto_run_migrations", False):
        _run_migrations()
    elif settings.auto_create_tables:
        models.Base.metadata.create_all(bind=engine)
    yield


app = FastAPI(title="Event Signup API", version="1.0.0", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins or [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    code = f"http_{exc.status_code}"
    message = exc.detail if isinstance(exc.detail, str) else "Error"
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"code": code, "message": message}, "detail": message},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(SignupError)
async def signup_error_handler(request: Request, exc: SignupError):
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {"code": exc.code, "message": exc.message, "details": exc.details},
            "detail": exc.message,
        },
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logging.getLogger("eventsignup").exception("unhandled_exception", extra={"path": request.url.path})
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": {"code": "internal_error", "message": "An unexpected error occurred."}},
    )


def _client_ip(request: Request | None) -> Optional[str]:
    if request is None:
        return None
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


def _ensure_registrations_enabled() -> None:
    if getattr(settings, "maintenance_mode_registrations_disabled", False):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Registrations are temporarily disabled. Please try again later.",
        )


def _serialize_event(event: models.Event, seats_taken: int, now: datetime) -> schemas.EventResponse:
    return schemas.EventResponse(
        id=event.id,
        title=event.title,
        capacity=event.capacity,
        registration_deadline=normalize_dt(event.registration_deadline),
        start_time=normalize_dt(event.start_time),
        status=event.status,
        seats_taken=int(seats_taken or 0),
        seats_left=events.seats_left(event, seats_taken),
        is_open=events.is_open_for_registration(event, now) and events.has_free_seat(event, seats_taken),
    )


def _serialize_registration(registration: models.Registration) -> schemas.RegistrationResponse:
    return schemas.RegistrationResponse(
        id=registration.id,
        user_id=registration.user_id,
        event_id=registration.event_id,
        additional_data=registration.additional_data,
        registered_at=normalize_dt(registration.registered_at),
        cancelled_at=normalize_dt(registration.cancelled_at),
        cancellation_reason=registration.cancellation_reason,
    )


@app.get("/")
def read_root():
    return {"message": "Hello from Event Signup API!"}


@app.get("/api/health")
def health_check(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok", "database": "ok"}
    except Exception:
        raise HTTPException(status_code=503, detail="Database unavailable")


@app.get("/api/events", response_model=List[schemas.EventResponse])
def list_events(db: Session = Depends(get_db)):
    now = now_utc()
    return [_serialize_event(event, seats, now) for event, seats in events.list_open_events(db, now)]


@app.get("/api/events/{event_id}", response_model=schemas.EventResponse)
def get_event(event_id: int, db: Session = Depends(get_db)):
    event = events.get_event(db, event_id)
    if not event or event.status == models.EventStatus.draft:
        raise HTTPException(status_code=404, detail="Event not found")
    return _serialize_event(event, events.count_active_registrations(db, event.id), now_utc())


@app.post("/api/events/{event_id}/register", response_model=schemas.RegisterResponse, status_code=status.HTTP_201_CREATED)
def register_for_event(
    event_id: int,
    background_tasks: BackgroundTasks,
    request: Request,
    payload: Optional[schemas.RegistrationCreate] = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    _ensure_registrations_enabled()
    user_id = current_user.id
    result = registrations.register(
        db,
        user_id,
        event_id,
        payload.additional_data if payload else None,
    )
    registration = result.registration
    activity_log.record_activity_async(
        background_tasks,
        activity_log.ACTION_REGISTRATION_REACTIVATE if result.reactivated else activity_log.ACTION_REGISTRATION_CREATE,
        user_id,
        {"event_id": event_id, "registration_id": registration.id},
        _client_ip(request),
    )
    return schemas.RegisterResponse(registration=_serialize_registration(registration), reactivated=result.reactivated)


@app.delete("/api/events/{event_id}/register", response_model=schemas.RegistrationResponse)
def unregister_from_event(
    event_id: int,
    background_tasks: BackgroundTasks,
    request: Request,
    payload: Optional[schemas.RegistrationCancel] = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    _ensure_registrations_enabled()
    user_id = current_user.id
    registration = registrations.cancel(
        db,
        user_id,
        event_id,
        payload.cancellation_reason if payload else None,
    )
    activity_log.record_activity_async(
        background_tasks,
        activity_log.ACTION_REGISTRATION_CANCEL,
        user_id,
        {
            "event_id": event_id,
            "registration_id": registration.id,
            "cancellation_reason": registration.cancellation_reason,
        },
        _client_ip(request),
    )
    return _serialize_registration(registration)


@app.get("/api/me/registrations", response_model=List[schemas.RegistrationWithEventResponse])
def my_registrations(db: Session = Depends(get_db), current_user: models.User = Depends(auth.get_current_user)):
    return [
        schemas.RegistrationWithEventResponse(
            **_serialize_registration(registration).model_dump(),
            event_title=registration.event.title,
            event_start_time=normalize_dt(registration.event.start_time),
            event_status=registration.event.status,
        )
        for registration in registrations.list_user_registrations(db, current_user.id)
    ]


@app.delete("/api/me", response_model=schemas.AccountDeleteResponse)
def delete_my_account(
    payload: schemas.AccountDeleteRequest,
    background_tasks: BackgroundTasks,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    if not auth.verify_password(payload.password, current_user.password_hash):
        raise HTTPException(status_code=400, detail="Incorrect password.")

    user_id = current_user.id
    outcome = gdpr.request_deletion(db, user_id)
    if outcome.immediate:
        activity_log.record_activity_async(
            background_tasks,
            activity_log.ACTION_PROFILE_DELETED_IMMEDIATE,
            None,
            {"deleted_user_id": user_id},
            _client_ip(request),
        )
        log_event("account_deleted", user_id=user_id)
    else:
        activity_log.record_activity_async(
            background_tasks,
            activity_log.ACTION_PROFILE_DELETION_SCHEDULED,
            user_id,
            {"deletion_date": outcome.delete_date.isoformat()},
            _client_ip(request),
        )
        log_event("account_deletion_scheduled", user_id=user_id, deletion_date=outcome.delete_date.isoformat())
    return schemas.AccountDeleteResponse(deleted=outcome.immediate, immediate=outcome.immediate, delete_date=outcome.delete_date)


@app.get("/api/admin/deletions", response_model=schemas.ScheduledDeletionListResponse)
def admin_list_scheduled_deletions(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_admin),
):
    items = [schemas.ScheduledDeletionResponse(**item._asdict()) for item in gdpr.list_scheduled_deletions(db)]
    return schemas.ScheduledDeletionListResponse(items=items, total=len(items))


@app.post("/api/admin/deletions/sweep", response_model=schemas.SweepResponse)
def admin_trigger_sweep(
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_admin),
):
    admin_id = current_user.id
    deleted = gdpr.sweep_due_deletions(db)
    activity_log.record_activity(
        activity_log.ACTION_SYSTEM_CRON_DELETION,
        admin_id,
        {"deleted_count": deleted, "triggered_by": "manual_admin", "admin_id": admin_id},
        _client_ip(request),
    )
    return schemas.SweepResponse(deleted=deleted, timestamp=now_utc())


@app.get("/api/admin/events/{event_id}/registrations", response_model=schemas.EventRegistrationListResponse)
def admin_event_registrations(
    event_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_admin),
):
    if events.get_event(db, event_id) is None:
        raise HTTPException(status_code=404, detail="Event not found")
    items = [
        schemas.EventRegistrationResponse(
            **_serialize_registration(registration).model_dump(),
            user=schemas.RegistrationUser(
                id=registration.user.id,
                first_name=registration.user.first_name,
                last_name=registration.user.last_name,
                email=registration.user.email,
            ),
        )
        for registration in registrations.list_event_registrations(db, event_id)
    ]
    return schemas.EventRegistrationListResponse(items=items, total=len(items))


@app.post("/api/admin/registrations/{registration_id}/cancel", response_model=schemas.RegistrationResponse)
def admin_cancel_registration(
    registration_id: int,
    payload: schemas.AdminRegistrationCancel,
    background_tasks: BackgroundTasks,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_admin),
):
    admin_id = current_user.id
    registration = registrations.admin_cancel(db, registration_id, payload.reason)
    activity_log.record_activity_async(
        background_tasks,
        activity_log.ACTION_REGISTRATION_CANCEL,
        admin_id,
        {
            "registration_id": registration.id,
            "user_id": registration.user_id,
            "event_id": registration.event_id,
            "reason": registration.cancellation_reason,
            "cancelled_by": "admin",
        },
        _client_ip(request),
    )
    return _serialize_registration(registration)


@app.post("/api/cron/delete-users", response_model=schemas.SweepResponse)
def cron_delete_users(
    authorization: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    if not settings.cron_secret:
        raise HTTPException(status_code=503, detail="Scheduled deletions are not configured.")
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing or invalid Authorization header")
    if not secrets.compare_digest(authorization[len("Bearer "):], settings.cron_secret):
        log_warning("cron_secret_rejected")
        raise HTTPException(status_code=401, detail="Invalid authorization token")

    deleted = gdpr.sweep_due_deletions(db)
    activity_log.record_activity(
        activity_log.ACTION_SYSTEM_CRON_DELETION,
        None,
        {"deleted_count": deleted, "triggered_by": "cron"},
    )
    return schemas.SweepResponse(deleted=deleted, timestamp=now_utc())
