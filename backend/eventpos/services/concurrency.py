# Overview: Transaction helpers shared by the order core; row locks and retry on lost races.

from __future__ import annotations

import logging
import time

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from .errors import ConflictError


logger = logging.getLogger(__name__)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; there the version_id check on
    flush and SQLite's single writer still reject lost updates.
    """
    return query.with_for_update()


def begin_write() -> None:
    """
    Open the unit of work as a write transaction.

    On SQLite this takes the write lock up front (BEGIN IMMEDIATE), so two
    writers queue on the busy timeout instead of deadlocking on lock upgrade.
    Other databases rely on the row locks taken by lock_for_update.
    """
    if db.engine.dialect.name == "sqlite":
        db.session.execute(text("BEGIN IMMEDIATE"))


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float = 0.05):
    """
    Execute one unit of work as a transaction, retrying lost races.

    Retries on OperationalError (deadlocks, lock timeouts) and StaleDataError
    (optimistic locking conflicts). When attempts run out the failure reaches
    the caller as ConflictError. Any other exception rolls the session back
    before propagating, so nothing flushed by a failed unit survives it.
    """
    if attempts is None:
        attempts = current_app.config.get("RETRY_ATTEMPTS", 3)

    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                logger.warning("Giving up after %d attempts: %s", attempts, exc)
                raise ConflictError(
                    "Concurrent modification detected, please retry",
                    details={"attempts": attempts},
                ) from exc
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise
