# Overview: Service-layer helpers for concurrency; row locks and optimistic-lock retries.

from __future__ import annotations

import time

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


class ConcurrencyConflict(Exception):
    """
    Lost the race to mutate a record after all retries.

    Callers reconciling gateway callbacks treat this as "someone else already
    decided" and no-op instead of surfacing an error.
    """


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    The version_id column still catches lost updates there.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). func must be safe to re-run from the top:
    it re-reads whatever it mutates.

    Raises ConcurrencyConflict when the last attempt still conflicts.
    """
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise ConcurrencyConflict(str(exc)) from exc
            time.sleep(backoff_base * (2 ** attempt))
