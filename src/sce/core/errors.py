"""Domain error taxonomy raised at the engine boundary.

Storage-level failures are translated into these exceptions before
they reach callers (see :mod:`sce.store.errors`).
"""

from __future__ import annotations

from typing import Any, Optional


class EngineError(Exception):
    """Base class for all screening engine errors."""


class NotFoundError(EngineError):
    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class ForbiddenError(EngineError):
    """The acting user lacks the project role required for the operation."""


class ScreeningValidationError(EngineError):
    """Input or precondition violation (bad payload, wrong phase, ...)."""


class StudyNotScreenableError(ScreeningValidationError):
    """The study is not open for decisions in the requested phase."""

    def __init__(self, message: str, study: Any = None) -> None:
        super().__init__(message)
        self.study = study


class DuplicateDecisionError(EngineError):
    """A decision already exists for (study, reviewer, phase)."""

    def __init__(self, study_id: str, reviewer_id: str, phase: Any, existing: Any = None) -> None:
        phase_value = getattr(phase, "value", phase)
        super().__init__(
            f"Reviewer {reviewer_id} already screened study {study_id} in phase {phase_value}"
        )
        self.study_id = study_id
        self.reviewer_id = reviewer_id
        self.phase = phase
        self.existing = existing


class ConflictError(EngineError):
    """Base class for conflict lifecycle races; carries the current state."""

    def __init__(self, message: str, conflict: Optional[Any] = None) -> None:
        super().__init__(message)
        self.conflict = conflict


class ConflictAlreadyOpenError(ConflictError):
    pass


class ConflictAlreadyResolvedError(ConflictError):
    def __init__(self, conflict: Optional[Any] = None) -> None:
        super().__init__("Conflict is already resolved", conflict)


class InconsistentStateError(EngineError):
    """A study's persisted status disagreed with its decision records.

    Raised and caught inside the reconciliation sweeper so the repair is
    logged; never surfaced to end users.
    """

    def __init__(self, study_id: str, detail: str) -> None:
        super().__init__(f"Study {study_id} inconsistent: {detail}")
        self.study_id = study_id
        self.detail = detail


class StorageError(EngineError):
    """Unclassified storage failure translated at the engine boundary."""
