# Overview: Service-layer helpers for row locking and transactional retry.

from __future__ import annotations

import time

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


class ConcurrentWriteError(Exception):
    """Another transaction inserted the same row first; the unit of work can be retried."""


RETRYABLE_ERRORS = (OperationalError, StaleDataError, ConcurrentWriteError)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    The version_id columns on Order, LedgerAccount and PaymentChangeRequest
    catch the conflicting writer there instead (StaleDataError).
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute one unit of work with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks), StaleDataError
    (optimistic locking conflicts) and ConcurrentWriteError (lost insert
    race). Any other exception rolls the session back and propagates, so a
    refused operation leaves no partial writes.
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except RETRYABLE_ERRORS as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise
    if last_exc:
        raise last_exc
