"""Account deletion under the 28-day retention rule.

A user may be destroyed once none of their active registrations points at an
event that started less than ``deletion_retention_days`` ago (or has not
started yet). Otherwise the request is parked in ``pending_deletions``, the
account is blocked, and a later sweep (triggered from outside the process)
destroys it once the date is reached.

Destruction is one commit of six steps. Each step is safe to repeat on its
own, so a retried or concurrent destruction of the same user finds nothing
left to do instead of failing.
"""

from datetime import datetime, timedelta
from typing import Iterable, NamedTuple, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import guard, models, store
from .clock import normalize_dt, resolve_now
from .config import settings
from .errors import DeletionAlreadyScheduled, UserNotFound
from .logging_utils import log_event, log_warning


class Eligibility(NamedTuple):
    eligible: bool
    delete_date: Optional[datetime] = None
    last_event_start: Optional[datetime] = None


class DeletionOutcome(NamedTuple):
    immediate: bool
    delete_date: Optional[datetime] = None


class ScheduledDeletion(NamedTuple):
    id: int
    user_id: int
    deletion_date: datetime
    created_at: Optional[datetime]
    user_email: str
    user_first_name: str
    user_last_name: str
    last_event_start: Optional[datetime]


def _retention() -> timedelta:
    return timedelta(days=settings.deletion_retention_days)


def evaluate_eligibility(start_times: Iterable[datetime], now: datetime) -> Eligibility:
    """Decide whether data may be destroyed now, given the start times of active registrations.

    Cancelled registrations are not passed in and so never defer deletion.
    """
    starts = [normalize_dt(value) for value in start_times if value is not None]
    if not starts:
        return Eligibility(eligible=True)

    last = max(starts)
    if last < now and now - last >= _retention():
        return Eligibility(eligible=True, last_event_start=last)
    return Eligibility(eligible=False, delete_date=last + _retention(), last_event_start=last)


def _active_event_starts(db: Session, user_id: int) -> list[datetime]:
    rows = store.read(
        db,
        lambda: db.query(models.Event.start_time)
        .join(models.Registration, models.Registration.event_id == models.Event.id)
        .filter(models.Registration.user_id == user_id, models.Registration.cancelled_at.is_(None))
        .all(),
        operation="active_event_starts",
    )
    return [row[0] for row in rows]


def check_user_eligibility(db: Session, user_id: int, *, now: Optional[datetime] = None) -> Eligibility:
    return evaluate_eligibility(_active_event_starts(db, user_id), resolve_now(now))


def _has_pending_deletion(db: Session, user_id: int) -> bool:
    return store.read(
        db,
        lambda: db.query(models.PendingDeletion.id).filter(models.PendingDeletion.user_id == user_id).first()
        is not None,
        operation="has_pending_deletion",
    )


def request_deletion(db: Session, user_id: int, *, now: Optional[datetime] = None) -> DeletionOutcome:
    now = resolve_now(now)
    if guard.get_user(db, user_id) is None:
        raise UserNotFound(user_id=user_id)
    # A scheduled user stays scheduled until the sweep runs, even once the date has passed.
    if _has_pending_deletion(db, user_id):
        raise DeletionAlreadyScheduled(user_id=user_id)

    eligibility = check_user_eligibility(db, user_id, now=now)
    if eligibility.eligible:
        destroy_user(db, user_id, now=now)
        return DeletionOutcome(immediate=True)

    # Intent row and account block go out in the same commit; the unique
    # constraint on pending_deletions.user_id rejects a second request.
    with store.writing(db, operation="schedule_deletion"):
        db.add(
            models.PendingDeletion(
                user_id=user_id,
                deletion_date=eligibility.delete_date,
                created_at=now,
            )
        )
        db.query(models.User).filter(models.User.id == user_id).update(
            {"is_blocked": True},
            synchronize_session=False,
        )
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            if _has_pending_deletion(db, user_id):
                raise DeletionAlreadyScheduled(user_id=user_id)
            if guard.get_user(db, user_id) is None:
                raise UserNotFound(user_id=user_id)
            raise

    log_event(
        "deletion_scheduled",
        user_id=user_id,
        deletion_date=eligibility.delete_date.isoformat(),
        last_event_start=eligibility.last_event_start.isoformat() if eligibility.last_event_start else None,
    )
    return DeletionOutcome(immediate=False, delete_date=eligibility.delete_date)


def _participated_events(db: Session, user_id: int, now: datetime) -> list[dict]:
    rows = (
        db.query(models.Event.id, models.Event.title, models.Event.start_time)
        .join(models.Registration, models.Registration.event_id == models.Event.id)
        .filter(
            models.Registration.user_id == user_id,
            models.Registration.cancelled_at.is_(None),
            models.Event.start_time <= now,
        )
        .order_by(models.Event.start_time.desc())
        .all()
    )
    return [
        {"event_id": event_id, "title": title, "start_time": normalize_dt(start_time).isoformat()}
        for event_id, title, start_time in rows
    ]


def destroy_user(db: Session, user_id: int, *, now: Optional[datetime] = None) -> bool:
    """Archive and remove a user. Returns False when there was no user row left to remove."""
    now = resolve_now(now)
    with store.writing(db, operation="destroy_user"):
        try:
            # 1. archive, only while the user row still exists
            user = db.query(models.User).filter(models.User.id == user_id).first()
            if user is not None:
                participated = _participated_events(db, user_id, now)
                db.add(
                    models.DeletedUserArchive(
                        first_name=user.first_name,
                        last_name=user.last_name,
                        registered_at=user.created_at or now,
                        deleted_at=now,
                        events_participated=participated or None,
                    )
                )
            # 2. admin role
            db.query(models.Admin).filter(models.Admin.user_id == user_id).delete(synchronize_session=False)
            db.query(models.Admin).filter(models.Admin.created_by == user_id).update(
                {"created_by": None},
                synchronize_session=False,
            )
            # 3. registrations, active and cancelled
            db.query(models.Registration).filter(models.Registration.user_id == user_id).delete(
                synchronize_session=False
            )
            # 4. pending intent
            db.query(models.PendingDeletion).filter(models.PendingDeletion.user_id == user_id).delete(
                synchronize_session=False
            )
            # 5. detach audit history
            db.query(models.ActivityLog).filter(models.ActivityLog.user_id == user_id).update(
                {"user_id": None},
                synchronize_session=False,
            )
            # 6. the user
            removed = db.query(models.User).filter(models.User.id == user_id).delete(synchronize_session=False)
            db.commit()
        except Exception:
            db.rollback()
            raise

    if removed:
        log_event("user_destroyed", user_id=user_id)
        return True
    log_event("user_already_destroyed", user_id=user_id)
    return False


def sweep_due_deletions(db: Session, *, now: Optional[datetime] = None) -> int:
    """Destroy every user whose pending deletion is due. Returns how many users were destroyed."""
    now = resolve_now(now)
    due = store.read(
        db,
        lambda: db.query(models.PendingDeletion.user_id, models.PendingDeletion.deletion_date)
        .filter(models.PendingDeletion.deletion_date <= now)
        .order_by(models.PendingDeletion.deletion_date.asc())
        .all(),
        operation="due_pending_deletions",
    )

    destroyed = 0
    failed = 0
    for user_id, deletion_date in due:
        try:
            if destroy_user(db, user_id, now=now):
                destroyed += 1
        except Exception as exc:  # noqa: BLE001
            failed += 1
            db.rollback()
            log_warning(
                "deletion_sweep_failed_user",
                user_id=user_id,
                deletion_date=normalize_dt(deletion_date).isoformat(),
                error=str(exc),
            )

    log_event("deletion_sweep_completed", due=len(due), destroyed=destroyed, failed=failed)
    return destroyed


def list_scheduled_deletions(db: Session) -> list[ScheduledDeletion]:
    last_event = (
        db.query(
            models.Registration.user_id.label("user_id"),
            func.max(models.Event.start_time).label("last_event_start"),
        )
        .join(models.Event, models.Event.id == models.Registration.event_id)
        .filter(models.Registration.cancelled_at.is_(None))
        .group_by(models.Registration.user_id)
        .subquery()
    )

    def _query():
        return (
            db.query(models.PendingDeletion, models.User, last_event.c.last_event_start)
            .join(models.User, models.User.id == models.PendingDeletion.user_id)
            .outerjoin(last_event, last_event.c.user_id == models.PendingDeletion.user_id)
            .order_by(models.PendingDeletion.deletion_date.asc())
            .all()
        )

    return [
        ScheduledDeletion(
            id=pending.id,
            user_id=pending.user_id,
            deletion_date=normalize_dt(pending.deletion_date),
            created_at=normalize_dt(pending.created_at),
            user_email=user.email,
            user_first_name=user.first_name,
            user_last_name=user.last_name,
            last_event_start=normalize_dt(last_event_start),
        )
        for pending, user, last_event_start in store.read(db, _query, operation="list_scheduled_deletions")
    ]
