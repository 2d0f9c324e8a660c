from datetime import datetime
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from . import models, store
from .clock import normalize_dt


def get_event(db: Session, event_id: int) -> Optional[models.Event]:
    return store.read(
        db,
        lambda: db.query(models.Event).filter(models.Event.id == event_id).first(),
        operation="get_event",
    )


def count_active_registrations(db: Session, event_id: int) -> int:
    """Live occupancy: active rows only, never a cached counter."""
    return store.read(
        db,
        lambda: int(
            db.query(func.count(models.Registration.id))
            .filter(models.Registration.event_id == event_id, models.Registration.cancelled_at.is_(None))
            .scalar()
            or 0
        ),
        operation="count_active_registrations",
    )


def seats_left(event: models.Event, occupancy: int) -> Optional[int]:
    if event.capacity is None:
        return None
    return max(0, int(event.capacity) - int(occupancy))


def has_free_seat(event: models.Event, occupancy: int) -> bool:
    return event.capacity is None or occupancy < event.capacity


def is_open_for_registration(event: models.Event, now: datetime) -> bool:
    if event.status != models.EventStatus.active:
        return False
    return now <= normalize_dt(event.registration_deadline)


def _events_with_counts_query(db: Session):
    seats_subquery = (
        db.query(
            models.Registration.event_id,
            func.count(models.Registration.id).label("seats_taken"),
        )
        .filter(models.Registration.cancelled_at.is_(None))
        .group_by(models.Registration.event_id)
        .subquery()
    )
    return (
        db.query(models.Event)
        .outerjoin(seats_subquery, models.Event.id == seats_subquery.c.event_id)
        .add_columns(func.coalesce(seats_subquery.c.seats_taken, 0).label("seats_taken"))
    )


def list_open_events(db: Session, now: datetime) -> list[tuple[models.Event, int]]:
    def _query():
        rows = (
            _events_with_counts_query(db)
            .filter(
                models.Event.status == models.EventStatus.active,
                models.Event.registration_deadline >= now,
            )
            .order_by(models.Event.start_time.asc())
            .all()
        )
        return [(event, int(seats_taken or 0)) for event, seats_taken in rows]

    return store.read(db, _query, operation="list_open_events")
