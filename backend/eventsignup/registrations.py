"""Registration ledger: one row per (user, event), soft-cancelled and reactivated in place.

The store gives us single-statement atomicity and nothing more, so every write
here is either a plain INSERT guarded by the ``uq_registration_user_event``
constraint or a conditional UPDATE whose WHERE clause re-states the state it
expects to leave.
"""

from datetime import datetime
from typing import Any, NamedTuple, Optional

from sqlalchemy import case
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from . import events, guard, models, store
from .clock import resolve_now
from .errors import (
    AlreadyRegistered,
    EventNotFound,
    InvalidPayload,
    RegistrationAlreadyCancelled,
    RegistrationConflict,
    RegistrationNotFound,
    UserNotFound,
)
from .logging_utils import log_event, log_warning

DEFAULT_CANCELLATION_REASON = "User cancelled"
ADMIN_REASON_MIN_LENGTH = 5

# One initial attempt plus exactly one retry after a uniqueness collision.
REGISTER_ATTEMPTS = 2


class RegistrationResult(NamedTuple):
    registration: models.Registration
    reactivated: bool


def _find_registration(db: Session, user_id: int, event_id: int) -> Optional[models.Registration]:
    return store.read(
        db,
        lambda: db.query(models.Registration)
        .filter(models.Registration.user_id == user_id, models.Registration.event_id == event_id)
        .first(),
        operation="find_registration",
    )


def _find_active_registration(db: Session, user_id: int, event_id: int) -> Optional[models.Registration]:
    return store.read(
        db,
        lambda: db.query(models.Registration)
        .filter(
            models.Registration.user_id == user_id,
            models.Registration.event_id == event_id,
            models.Registration.cancelled_at.is_(None),
        )
        .first(),
        operation="find_active_registration",
    )


def _pair_exists(db: Session, user_id: int, event_id: int) -> bool:
    return store.read(
        db,
        lambda: db.query(models.Registration.id)
        .filter(models.Registration.user_id == user_id, models.Registration.event_id == event_id)
        .first()
        is not None,
        operation="registration_pair_exists",
    )


def _raise_missing_parent(db: Session, user_id: int, event_id: int) -> None:
    if guard.get_user(db, user_id) is None:
        raise UserNotFound(user_id=user_id)
    if events.get_event(db, event_id) is None:
        raise EventNotFound(event_id=event_id)


def _insert(db: Session, user_id: int, event_id: int, payload: dict | None, now: datetime) -> Optional[models.Registration]:
    registration = models.Registration(
        user_id=user_id,
        event_id=event_id,
        additional_data=payload,
        registered_at=now,
    )
    with store.writing(db, operation="insert_registration"):
        db.add(registration)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            if not _pair_exists(db, user_id, event_id):
                # Not a uniqueness race: a referenced row went away under us.
                _raise_missing_parent(db, user_id, event_id)
                raise
            log_warning("registration_insert_conflict", user_id=user_id, event_id=event_id)
            return None
    db.refresh(registration)
    return registration


def _reactivate(db: Session, existing: models.Registration, payload: dict | None, now: datetime) -> bool:
    with store.writing(db, operation="reactivate_registration"):
        updated = (
            db.query(models.Registration)
            .filter(models.Registration.id == existing.id, models.Registration.cancelled_at.isnot(None))
            .update(
                {
                    "cancelled_at": None,
                    "cancellation_reason": None,
                    "registered_at": now,
                    "additional_data": payload,
                },
                synchronize_session=False,
            )
        )
        db.commit()
    if not updated:
        log_warning("registration_reactivate_conflict", registration_id=existing.id)
        return False
    db.refresh(existing)
    return True


def register(
    db: Session,
    user_id: int,
    event_id: int,
    payload: Any = None,
    *,
    now: Optional[datetime] = None,
) -> RegistrationResult:
    """Admit ``user_id`` to ``event_id``, inserting a row or reactivating a cancelled one.

    Raises the guard's state errors, ``AlreadyRegistered`` when an active row
    exists, and ``RegistrationConflict`` when a concurrent writer beat us twice.
    """
    now = resolve_now(now)
    admission = guard.check_registration(db, user_id, event_id, payload, now)
    payload = guard.validate_payload(payload)
    event = admission.event

    for attempt in range(1, REGISTER_ATTEMPTS + 1):
        existing = _find_registration(db, user_id, event_id)

        if existing is not None and existing.cancelled_at is None:
            raise AlreadyRegistered(user_id=user_id, event_id=event_id)

        # Re-validate occupancy as late as possible before the committing write.
        guard.ensure_capacity(db, event)

        if existing is None:
            registration = _insert(db, user_id, event_id, payload, now)
            if registration is not None:
                log_event("event_registered", event_id=event_id, user_id=user_id, registration_id=registration.id)
                return RegistrationResult(registration, reactivated=False)
        elif _reactivate(db, existing, payload, now):
            log_event("event_reregistered", event_id=event_id, user_id=user_id, registration_id=existing.id)
            return RegistrationResult(existing, reactivated=True)

        log_warning("registration_retry", event_id=event_id, user_id=user_id, attempt=attempt)

    raise RegistrationConflict(user_id=user_id, event_id=event_id)


def cancel(
    db: Session,
    user_id: int,
    event_id: int,
    reason: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> models.Registration:
    now = resolve_now(now)
    registration = _find_active_registration(db, user_id, event_id)
    if registration is None:
        raise RegistrationNotFound(user_id=user_id, event_id=event_id)

    event = events.get_event(db, registration.event_id)
    if event is None:
        raise EventNotFound(event_id=event_id)
    guard.check_cancellation(event, now)

    reason = (reason or "").strip() or DEFAULT_CANCELLATION_REASON
    with store.writing(db, operation="cancel_registration"):
        updated = (
            db.query(models.Registration)
            .filter(models.Registration.id == registration.id, models.Registration.cancelled_at.is_(None))
            .update(
                {"cancelled_at": now, "cancellation_reason": reason},
                synchronize_session=False,
            )
        )
        db.commit()
    if not updated:
        # Cancelled by a concurrent request between our lookup and the update.
        raise RegistrationNotFound(user_id=user_id, event_id=event_id)

    db.refresh(registration)
    log_event("event_unregistered", event_id=event_id, user_id=user_id, registration_id=registration.id)
    return registration


def admin_cancel(
    db: Session,
    registration_id: int,
    reason: str,
    *,
    now: Optional[datetime] = None,
) -> models.Registration:
    """Cancel any active registration on an administrator's behalf.

    The cancellation window does not apply, but a reason of at least
    ``ADMIN_REASON_MIN_LENGTH`` characters is required.
    """
    now = resolve_now(now)
    reason = (reason or "").strip()
    if len(reason) < ADMIN_REASON_MIN_LENGTH:
        raise InvalidPayload(
            f"Reason must be at least {ADMIN_REASON_MIN_LENGTH} characters.",
            field="reason",
        )

    registration = get_registration(db, registration_id)
    if registration is None:
        raise RegistrationNotFound(registration_id=registration_id)
    if registration.cancelled_at is not None:
        raise RegistrationAlreadyCancelled(registration_id=registration_id)

    with store.writing(db, operation="admin_cancel_registration"):
        updated = (
            db.query(models.Registration)
            .filter(models.Registration.id == registration_id, models.Registration.cancelled_at.is_(None))
            .update(
                {"cancelled_at": now, "cancellation_reason": reason},
                synchronize_session=False,
            )
        )
        db.commit()
    if not updated:
        raise RegistrationAlreadyCancelled(registration_id=registration_id)

    db.refresh(registration)
    log_event(
        "event_unregistered_by_admin",
        event_id=registration.event_id,
        user_id=registration.user_id,
        registration_id=registration_id,
    )
    return registration


def get_registration(db: Session, registration_id: int) -> Optional[models.Registration]:
    return store.read(
        db,
        lambda: db.query(models.Registration).filter(models.Registration.id == registration_id).first(),
        operation="get_registration",
    )


def list_user_registrations(db: Session, user_id: int, *, now: Optional[datetime] = None) -> list[models.Registration]:
    """All of a user's rows, cancelled ones included; upcoming events first."""
    now = resolve_now(now)
    upcoming_first = case((models.Event.start_time >= now, 0), else_=1)
    return store.read(
        db,
        lambda: db.query(models.Registration)
        .join(models.Event, models.Event.id == models.Registration.event_id)
        .options(joinedload(models.Registration.event))
        .filter(models.Registration.user_id == user_id)
        .order_by(upcoming_first, models.Event.start_time.asc())
        .all(),
        operation="list_user_registrations",
    )


def list_event_registrations(db: Session, event_id: int) -> list[models.Registration]:
    return store.read(
        db,
        lambda: db.query(models.Registration)
        .options(joinedload(models.Registration.user))
        .filter(models.Registration.event_id == event_id, models.Registration.cancelled_at.is_(None))
        .order_by(models.Registration.registered_at.asc())
        .all(),
        operation="list_event_registrations",
    )

