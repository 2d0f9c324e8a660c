from contextlib import contextmanager
from typing import Callable, Iterator, TypeVar

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from .errors import StoreUnavailable
from .logging_utils import log_warning

T = TypeVar("T")

# Timeouts, dropped connections and pool exhaustion. IntegrityError is deliberately absent.
STORE_ERRORS = (OperationalError, InterfaceError, PoolTimeoutError)

READ_ATTEMPTS = 2


def read(db: Session, fn: Callable[[], T], *, operation: str) -> T:
    """Run an idempotent read, retrying once when the store is unreachable."""
    for attempt in range(1, READ_ATTEMPTS + 1):
        try:
            return fn()
        except STORE_ERRORS as exc:
            db.rollback()
            if attempt >= READ_ATTEMPTS:
                log_warning("store_read_failed", operation=operation, attempts=attempt, error=str(exc))
                raise StoreUnavailable(operation=operation) from exc
            log_warning("store_read_retry", operation=operation, attempt=attempt, error=str(exc))
    raise StoreUnavailable(operation=operation)


@contextmanager
def writing(db: Session, *, operation: str) -> Iterator[None]:
    """Surface store failures during a write as StoreUnavailable; writes are never retried here."""
    try:
        yield
    except STORE_ERRORS as exc:
        db.rollback()
        log_warning("store_write_failed", operation=operation, error=str(exc))
        raise StoreUnavailable(operation=operation) from exc
