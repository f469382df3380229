# Overview: Service-layer helpers for row locking, transaction boundaries and caller-side retry.

from __future__ import annotations

import time

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


class ConcurrencyConflict(Exception):
    """
    Raised when a write lost a race: the optimistic version check failed
    (StaleDataError) or the database refused a lock.

    Callers decide whether to reload and retry; services never do.
    """
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; the version_id columns on
    Order and Product still catch the lost update at flush time.
    """
    return query.with_for_update()


def _is_lock_error(exc: OperationalError) -> bool:
    message = str(getattr(exc, "orig", exc)).lower()
    return "lock" in message or "deadlock" in message or "could not serialize" in message


def run_in_transaction(op):
    """
    Run op() and commit. Any exception rolls the session back.

    Lost optimistic-lock races and lock errors surface as ConcurrencyConflict;
    domain errors propagate unchanged.
    """
    try:
        result = op()
        db.session.commit()
        return result
    except StaleDataError as exc:
        db.session.rollback()
        raise ConcurrencyConflict(
            "Record was modified concurrently; reload and try again",
            details={"cause": str(exc)},
        ) from exc
    except OperationalError as exc:
        db.session.rollback()
        if _is_lock_error(exc):
            raise ConcurrencyConflict(
                "Record is locked by another transaction; try again",
                details={"cause": str(exc.orig)},
            ) from exc
        raise
    except Exception:
        db.session.rollback()
        raise


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute func() again after a ConcurrencyConflict, with exponential backoff.

    Only maintenance callers (the CLI) use this; func must reload whatever it
    needs, since the session was rolled back.
    """
    for attempt in range(attempts):
        try:
            return func()
        except ConcurrencyConflict:
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
