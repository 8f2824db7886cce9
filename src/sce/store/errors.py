"""Classification and translation of storage errors.

The store runs every write inside a short ``BEGIN IMMEDIATE``
transaction.  Lock contention is transient and retried; constraint
violations are permanent and are translated into domain errors by the
caller that knows which constraint it touched.
"""

import sqlite3
from enum import Enum

from tenacity import (
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ..config.settings import settings
from ..core.errors import StorageError
from ..utils.logging import get_logger

logger = get_logger(__name__)


class StorageErrorType(Enum):
    """Classification of storage failures for appropriate handling."""
    LOCKED = "locked"          # database is locked/busy - retry
    UNIQUE = "unique"          # uniqueness constraint - translate, don't retry
    INTEGRITY = "integrity"    # other constraint (FK, CHECK, NOT NULL) - don't retry
    UNKNOWN = "unknown"        # anything else - surface as StorageError


def classify_error(error: BaseException) -> StorageErrorType:
    """Classify a storage exception."""
    message = str(error).lower()
    if isinstance(error, sqlite3.OperationalError):
        if "locked" in message or "busy" in message:
            return StorageErrorType.LOCKED
        return StorageErrorType.UNKNOWN
    if isinstance(error, sqlite3.IntegrityError):
        if "unique constraint" in message or "primary key" in message:
            return StorageErrorType.UNIQUE
        return StorageErrorType.INTEGRITY
    return StorageErrorType.UNKNOWN


def is_unique_violation(error: BaseException, table: str) -> bool:
    """Return True when ``error`` is a uniqueness failure on ``table``."""
    return (
        classify_error(error) == StorageErrorType.UNIQUE
        and f"{table}." in str(error)
    )


def _is_lock_error(error: BaseException) -> bool:
    return classify_error(error) == StorageErrorType.LOCKED


def _log_retry(retry_state) -> None:
    logger.warning(
        f"Database locked, retrying transaction "
        f"(attempt {retry_state.attempt_number}/{settings.lock_retry_attempts})"
    )


def lock_retrying() -> Retrying:
    """Retry policy for transactions that lose the writer lock."""
    return Retrying(
        retry=retry_if_exception(_is_lock_error),
        stop=stop_after_attempt(settings.lock_retry_attempts),
        wait=wait_exponential(
            multiplier=settings.lock_retry_wait,
            max=settings.lock_retry_max_wait,
        ),
        before_sleep=_log_retry,
        reraise=True,
    )


def translate(error: sqlite3.Error) -> StorageError:
    """Wrap a raw sqlite error that no caller translated more precisely."""
    error_type = classify_error(error)
    logger.error(f"Unhandled storage error ({error_type.value}): {error}")
    return StorageError(f"Storage failure ({error_type.value})")
