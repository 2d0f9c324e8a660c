#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys
from datetime import datetime, timezone
from pathlib import Path


def _bootstrap_imports() -> None:
    backend_root = Path(__file__).resolve().parents[1]
    sys.path.insert(0, str(backend_root))


def _parse_now(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Destroy users whose scheduled deletion date has passed.")
    parser.add_argument(
        "--now",
        help="ISO-8601 instant to sweep as of (defaults to the current time; naive values are UTC).",
    )
    args = parser.parse_args(argv)

    _bootstrap_imports()

    from eventsignup import activity_log, gdpr  # noqa: PLC0415
    from eventsignup.database import SessionLocal  # noqa: PLC0415
    from eventsignup.logging_utils import configure_logging  # noqa: PLC0415

    configure_logging()

    with SessionLocal() as db:
        deleted = gdpr.sweep_due_deletions(db, now=_parse_now(args.now))

    activity_log.record_activity(
        activity_log.ACTION_SYSTEM_CRON_DELETION,
        None,
        {"deleted_count": deleted, "triggered_by": "script"},
    )
    print(f"deleted users={deleted}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
