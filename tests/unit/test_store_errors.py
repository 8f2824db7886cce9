"""Unit tests for storage error classification."""

import sqlite3

from sce.store.errors import StorageErrorType, classify_error, is_unique_violation, translate
from sce.core.errors import StorageError


class TestClassifyError:
    """Tests for classify_error and friends."""

    def test_locked(self) -> None:
        """Test busy/locked errors are retryable."""
        assert classify_error(sqlite3.OperationalError("database is locked")) == StorageErrorType.LOCKED

    def test_unique(self) -> None:
        """Test unique failures are recognised per table."""
        exc = sqlite3.IntegrityError(
            "UNIQUE constraint failed: decisions.study_id, decisions.reviewer_id, decisions.phase"
        )
        assert classify_error(exc) == StorageErrorType.UNIQUE
        assert is_unique_violation(exc, "decisions")
        assert not is_unique_violation(exc, "conflicts")

    def test_other_integrity(self) -> None:
        """Test CHECK failures are not uniqueness violations."""
        exc = sqlite3.IntegrityError("CHECK constraint failed: decision != 'exclude'")
        assert classify_error(exc) == StorageErrorType.INTEGRITY
        assert not is_unique_violation(exc, "decisions")

    def test_unknown(self) -> None:
        """Test anything else is unknown."""
        assert classify_error(sqlite3.OperationalError("no such table: x")) == StorageErrorType.UNKNOWN
        assert classify_error(ValueError("boom")) == StorageErrorType.UNKNOWN

    def test_translate(self) -> None:
        """Test raw errors become StorageError."""
        err = translate(sqlite3.OperationalError("disk I/O error"))
        assert isinstance(err, StorageError)
