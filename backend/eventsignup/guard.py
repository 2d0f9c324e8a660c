"""Pre-write eligibility checks for registering and cancelling.

Nothing here writes. The capacity answer is advisory: the ledger calls
``ensure_capacity`` again right before it commits, which narrows but does not
close the window in which two different users can take the last seat.
"""

from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Any, NamedTuple

from sqlalchemy.orm import Session

from . import events, models, store
from .clock import normalize_dt
from .config import settings
from .errors import (
    AlreadyRegistered,
    CancellationTooLate,
    DeadlineExpired,
    EventFull,
    EventNotActive,
    EventNotFound,
    InvalidPayload,
    UserBlocked,
    UserNotFound,
)


class Admission(NamedTuple):
    user: models.User
    event: models.Event
    occupancy: int


def validate_payload(payload: Any) -> dict | None:
    if payload is None:
        return None
    if not isinstance(payload, Mapping):
        raise InvalidPayload(received=type(payload).__name__)
    return dict(payload)


def get_user(db: Session, user_id: int) -> models.User | None:
    return store.read(
        db,
        lambda: db.query(models.User).filter(models.User.id == user_id).first(),
        operation="get_user",
    )


def ensure_user_can_register(db: Session, user_id: int) -> models.User:
    user = get_user(db, user_id)
    if user is None:
        raise UserNotFound(user_id=user_id)
    if user.is_blocked:
        raise UserBlocked(user_id=user_id)
    return user


def ensure_event_active(db: Session, event_id: int) -> models.Event:
    event = events.get_event(db, event_id)
    if event is None:
        raise EventNotFound(event_id=event_id)
    if event.status != models.EventStatus.active:
        raise EventNotActive(event_id=event_id, status=event.status.value)
    return event


def ensure_deadline_open(event: models.Event, now: datetime) -> None:
    deadline = normalize_dt(event.registration_deadline)
    if now > deadline:
        raise DeadlineExpired(event_id=event.id, deadline=deadline.isoformat())


def ensure_capacity(db: Session, event: models.Event) -> int:
    occupancy = events.count_active_registrations(db, event.id)
    if not events.has_free_seat(event, occupancy):
        raise EventFull(event_id=event.id, capacity=event.capacity, occupancy=occupancy)
    return occupancy


def has_active_registration(db: Session, user_id: int, event_id: int) -> bool:
    return store.read(
        db,
        lambda: db.query(models.Registration.id)
        .filter(
            models.Registration.user_id == user_id,
            models.Registration.event_id == event_id,
            models.Registration.cancelled_at.is_(None),
        )
        .first()
        is not None,
        operation="has_active_registration",
    )


def check_registration(db: Session, user_id: int, event_id: int, payload: Any, now: datetime) -> Admission:
    validate_payload(payload)
    user = ensure_user_can_register(db, user_id)
    event = ensure_event_active(db, event_id)
    ensure_deadline_open(event, now)
    occupancy = ensure_capacity(db, event)
    if has_active_registration(db, user_id, event_id):
        raise AlreadyRegistered(user_id=user_id, event_id=event_id)
    return Admission(user=user, event=event, occupancy=occupancy)


def check_cancellation(event: models.Event, now: datetime) -> None:
    min_lead = timedelta(days=settings.cancellation_min_days)
    start_time = normalize_dt(event.start_time)
    if start_time - now <= min_lead:
        raise CancellationTooLate(
            event_id=event.id,
            start_time=start_time.isoformat(),
            min_days=settings.cancellation_min_days,
        )
