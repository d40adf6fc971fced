from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import Session

from inventory_engine.core.exceptions import ConcurrencyConflict, StoreUnavailableError
from inventory_engine.services.backoff import ATOMIC_WRITE_RETRY_POLICY, RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CONFLICT_MARKERS = (
    "database is locked",
    "could not serialize",
    "deadlock detected",
    "lock wait timeout",
    "serialization failure",
)


def translate_store_error(exc: DBAPIError) -> Exception:
    """Classify a driver error as a write conflict or an unreachable store."""
    message = str(getattr(exc, "orig", exc) or exc).lower()
    if any(marker in message for marker in _CONFLICT_MARKERS):
        return ConcurrencyConflict(message)
    if isinstance(exc, OperationalError) or getattr(exc, "connection_invalidated", False):
        return StoreUnavailableError(message)
    return exc


def run_atomic(
    db: Session,
    operation: Callable[[Session], T],
    *,
    policy: RetryPolicy = ATOMIC_WRITE_RETRY_POLICY,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation`` and commit it as one unit, retrying lost write races.

    ConcurrencyConflict is retried with backoff up to ``policy.max_retries``;
    StoreUnavailableError and every other error roll back and propagate.
    """
    attempts = 0
    while True:
        try:
            result = operation(db)
            db.commit()
            return result
        except DBAPIError as exc:
            db.rollback()
            translated = translate_store_error(exc)
            if translated is exc:
                raise
            if not isinstance(translated, ConcurrencyConflict):
                raise translated from exc
            attempts += 1
            if policy.exhausted(attempts):
                logger.warning("[ATOMIC] conflict retries exhausted attempts=%s", attempts)
                raise translated from exc
            delay = policy.delay_for(attempts)
            logger.info("[ATOMIC] write conflict, retrying attempt=%s delay=%.2fs", attempts, delay)
            sleep(delay)
        except Exception:
            db.rollback()
            raise
