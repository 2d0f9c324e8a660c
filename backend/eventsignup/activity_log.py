from typing import Any, Optional

from fastapi import BackgroundTasks
from sqlalchemy.orm import Session

from . import models
from .clock import now_utc
from .database import SessionLocal
from .logging_utils import log_warning

ACTION_REGISTRATION_CREATE = "registration_create"
ACTION_REGISTRATION_REACTIVATE = "registration_reactivate"
ACTION_REGISTRATION_CANCEL = "registration_cancel"
ACTION_PROFILE_DELETED_IMMEDIATE = "profile_deleted_immediate"
ACTION_PROFILE_DELETION_SCHEDULED = "profile_deletion_scheduled"
ACTION_SYSTEM_CRON_DELETION = "system_cron_deletion"


def record_activity(
    action_type: str,
    user_id: Optional[int],
    details: dict[str, Any] | None = None,
    ip_address: Optional[str] = None,
    *,
    session_factory=SessionLocal,
) -> None:
    """Append one audit row in a session of its own. Never raises."""
    db: Session | None = None
    try:
        db = session_factory()
        db.add(
            models.ActivityLog(
                user_id=user_id,
                action_type=action_type,
                details=details,
                ip_address=ip_address,
                timestamp=now_utc(),
            )
        )
        db.commit()
    except Exception as exc:  # noqa: BLE001
        if db is not None:
            db.rollback()
        log_warning("activity_log_failed", action_type=action_type, user_id=user_id, error=str(exc))
    finally:
        if db is not None:
            db.close()


def record_activity_async(
    background_tasks: BackgroundTasks | None,
    action_type: str,
    user_id: Optional[int],
    details: dict[str, Any] | None = None,
    ip_address: Optional[str] = None,
) -> None:
    # Runs after the response is sent when a request is in flight; inline otherwise.
    if background_tasks is None:
        record_activity(action_type, user_id, details, ip_address)
        return
    background_tasks.add_task(record_activity, action_type, user_id, details, ip_address)
