"""HTTP API for the screening engine.

Endpoints cover decision submission and lead batch screening, conflict
handling, reviewer queues, reliability reports, calibration rounds,
phase management and reconciliation sweeps.  Engine errors are mapped
to HTTP status codes: missing entities to 404, role violations to 403,
invalid input to 422 and lost races or duplicates to 409.
"""

from __future__ import annotations

from contextlib import contextmanager
from functools import lru_cache
from typing import Any, Dict, Iterator, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from ..consensus.batch import DEFAULT_AI_CONFIDENCE_THRESHOLD, BatchOperation, BatchResult
from ..consensus.conflicts import ResolutionOutcome
from ..consensus.evaluator import DecisionOutcome
from ..core.errors import (
    ConflictError,
    DuplicateDecisionError,
    EngineError,
    ForbiddenError,
    NotFoundError,
    ScreeningValidationError,
)
from ..core.models import (
    CalibrationRound,
    Conflict,
    ConflictStatus,
    Decision,
    Phase,
    QueueStrategy,
    ScreeningDecision,
)
from ..engine import ScreeningEngine
from ..reconcile.sweeper import SweepReport
from ..reliability.analyzer import ReliabilityReport
from ..scheduler.queue import QueuedStudy
from ..utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()


@lru_cache(maxsize=1)
def get_engine() -> ScreeningEngine:
    """Engine bound to the configured database; overridden in tests."""
    return ScreeningEngine()


def _dump(obj: Any) -> Optional[Dict[str, Any]]:
    return obj.model_dump(mode="json") if isinstance(obj, BaseModel) else None


@contextmanager
def engine_errors() -> Iterator[None]:
    """Translate engine exceptions into HTTP errors.

    409 responses carry the state the caller lost to: the existing
    decision for duplicates, the current conflict for conflict races.
    """
    try:
        yield
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ForbiddenError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    except ScreeningValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except DuplicateDecisionError as exc:
        raise HTTPException(
            status_code=409, detail={"message": str(exc), "existing": _dump(exc.existing)}
        ) from exc
    except ConflictError as exc:
        raise HTTPException(
            status_code=409, detail={"message": str(exc), "conflict": _dump(exc.conflict)}
        ) from exc
    except EngineError as exc:
        logger.error(f"Engine failure: {exc}")
        raise HTTPException(status_code=500, detail="Internal engine error") from exc


class DecisionRequest(BaseModel):
    """Reviewer decision submission."""

    reviewer_id: str
    phase: Phase
    decision: ScreeningDecision
    reasoning: Optional[str] = None
    exclusion_reason: Optional[str] = None
    confidence: Optional[int] = None
    time_spent_ms: Optional[int] = None


class ResolveRequest(BaseModel):
    resolver_id: str
    final_decision: ScreeningDecision
    reasoning: Optional[str] = None


class EscalateRequest(BaseModel):
    user_id: str
    reason: str = Field(..., min_length=1)


class DiscussionRequest(BaseModel):
    user_id: str


class CalibrationRequest(BaseModel):
    """Calibration round parameters; range checks happen in the engine."""

    phase: Phase = Phase.TITLE_ABSTRACT
    sample_size: int = 20
    target_agreement: float = 0.8
    created_by: Optional[str] = None
    participant_ids: Optional[List[str]] = None


class CalibrationDecisionRequest(BaseModel):
    study_id: str
    reviewer_id: str
    decision: ScreeningDecision
    reasoning: Optional[str] = None
    time_spent_ms: Optional[int] = None


class BatchRequest(BaseModel):
    """Lead batch operation over several studies."""

    user_id: str
    operation: BatchOperation
    study_ids: List[str] = Field(..., min_length=1)
    decision: Optional[ScreeningDecision] = None
    reasoning: Optional[str] = None
    exclusion_reason: Optional[str] = None
    ai_confidence_threshold: float = Field(DEFAULT_AI_CONFIDENCE_THRESHOLD, ge=0.0, le=1.0)


class AdvancePhaseRequest(BaseModel):
    current_phase: Phase
    user_id: str


@router.post("/studies/{study_id}/decisions", response_model=DecisionOutcome)
def submit_decision(
    study_id: str,
    request: DecisionRequest,
    engine: ScreeningEngine = Depends(get_engine),
) -> DecisionOutcome:
    with engine_errors():
        return engine.submit_decision(
            study_id,
            request.reviewer_id,
            request.phase,
            request.decision,
            reasoning=request.reasoning,
            exclusion_reason=request.exclusion_reason,
            confidence=request.confidence,
            time_spent_ms=request.time_spent_ms,
        )


@router.get("/studies/{study_id}/decisions", response_model=List[Decision])
def list_decisions(
    study_id: str,
    viewer_id: str,
    phase: Optional[Phase] = None,
    engine: ScreeningEngine = Depends(get_engine),
) -> List[Decision]:
    with engine_errors():
        return engine.list_decisions(study_id, viewer_id, phase)


@router.post("/projects/{project_id}/screening/batch", response_model=BatchResult)
def batch_screen(
    project_id: str,
    request: BatchRequest,
    engine: ScreeningEngine = Depends(get_engine),
) -> BatchResult:
    with engine_errors():
        return engine.batch_screen(
            project_id,
            request.user_id,
            request.study_ids,
            request.operation,
            decision=request.decision,
            reasoning=request.reasoning,
            exclusion_reason=request.exclusion_reason,
            ai_confidence_threshold=request.ai_confidence_threshold,
        )


@router.get("/conflicts/{conflict_id}", response_model=Conflict)
def get_conflict(conflict_id: str, engine: ScreeningEngine = Depends(get_engine)) -> Conflict:
    with engine_errors():
        return engine.get_conflict(conflict_id)


@router.post("/conflicts/{conflict_id}/resolve", response_model=ResolutionOutcome)
def resolve_conflict(
    conflict_id: str,
    request: ResolveRequest,
    engine: ScreeningEngine = Depends(get_engine),
) -> ResolutionOutcome:
    with engine_errors():
        return engine.resolve_conflict(
            conflict_id, request.resolver_id, request.final_decision, request.reasoning
        )


@router.post("/conflicts/{conflict_id}/escalate", response_model=Conflict)
def escalate_conflict(
    conflict_id: str,
    request: EscalateRequest,
    engine: ScreeningEngine = Depends(get_engine),
) -> Conflict:
    with engine_errors():
        return engine.escalate_conflict(conflict_id, request.user_id, request.reason)


@router.post("/conflicts/{conflict_id}/discussion", response_model=Conflict)
def start_discussion(
    conflict_id: str,
    request: DiscussionRequest,
    engine: ScreeningEngine = Depends(get_engine),
) -> Conflict:
    with engine_errors():
        return engine.start_discussion(conflict_id, request.user_id)


@router.get("/projects/{project_id}/conflicts", response_model=List[Conflict])
def list_conflicts(
    project_id: str,
    phase: Optional[Phase] = None,
    status: Optional[ConflictStatus] = None,
    engine: ScreeningEngine = Depends(get_engine),
) -> List[Conflict]:
    with engine_errors():
        return engine.list_conflicts(project_id, phase=phase, status=status)


@router.get("/projects/{project_id}/conflicts/stats")
def conflict_stats(project_id: str, engine: ScreeningEngine = Depends(get_engine)) -> Dict:
    with engine_errors():
        return engine.conflict_stats(project_id)


@router.get("/projects/{project_id}/queue", response_model=List[QueuedStudy])
def get_queue(
    project_id: str,
    reviewer_id: str,
    phase: Phase = Phase.TITLE_ABSTRACT,
    strategy: QueueStrategy = QueueStrategy.DEFAULT,
    limit: Optional[int] = Query(None, ge=1, le=500),
    engine: ScreeningEngine = Depends(get_engine),
) -> List[QueuedStudy]:
    with engine_errors():
        return engine.get_queue(reviewer_id, project_id, phase, strategy, limit)


@router.get("/projects/{project_id}/queue/stats")
def queue_stats(
    project_id: str,
    phase: Phase = Phase.TITLE_ABSTRACT,
    engine: ScreeningEngine = Depends(get_engine),
) -> Dict:
    with engine_errors():
        stats = engine.queue_stats(project_id, phase)
        stats["workload"] = engine.workload_distribution(project_id, phase)
        return stats


@router.get("/projects/{project_id}/reliability", response_model=ReliabilityReport)
def get_reliability(
    project_id: str,
    phase: Phase = Phase.TITLE_ABSTRACT,
    collapse_maybe: bool = False,
    engine: ScreeningEngine = Depends(get_engine),
) -> ReliabilityReport:
    with engine_errors():
        return engine.get_reliability(project_id, phase, collapse_maybe)


@router.get("/projects/{project_id}/reviewers/performance")
def reviewer_performance(
    project_id: str,
    phase: Phase = Phase.TITLE_ABSTRACT,
    engine: ScreeningEngine = Depends(get_engine),
) -> List[Dict]:
    with engine_errors():
        return engine.reviewer_performance(project_id, phase)


@router.post("/projects/{project_id}/calibration", response_model=CalibrationRound, status_code=201)
def create_calibration_round(
    project_id: str,
    request: CalibrationRequest,
    engine: ScreeningEngine = Depends(get_engine),
) -> CalibrationRound:
    with engine_errors():
        return engine.create_calibration_round(
            project_id,
            request.phase,
            request.sample_size,
            request.target_agreement,
            created_by=request.created_by,
            participant_ids=request.participant_ids,
        )


@router.get("/projects/{project_id}/calibration", response_model=List[CalibrationRound])
def list_calibration_rounds(
    project_id: str, engine: ScreeningEngine = Depends(get_engine)
) -> List[CalibrationRound]:
    with engine_errors():
        return engine.list_calibration_rounds(project_id)


@router.get("/calibration/{round_id}", response_model=CalibrationRound)
def get_calibration_round(
    round_id: str, engine: ScreeningEngine = Depends(get_engine)
) -> CalibrationRound:
    with engine_errors():
        return engine.get_calibration_round(round_id)


@router.post("/calibration/{round_id}/decisions", response_model=CalibrationRound)
def submit_calibration_decision(
    round_id: str,
    request: CalibrationDecisionRequest,
    engine: ScreeningEngine = Depends(get_engine),
) -> CalibrationRound:
    with engine_errors():
        return engine.submit_calibration_decision(
            round_id,
            request.study_id,
            request.reviewer_id,
            request.decision,
            request.reasoning,
            request.time_spent_ms,
        )


@router.post("/projects/{project_id}/phases/advance")
def advance_phase(
    project_id: str,
    request: AdvancePhaseRequest,
    engine: ScreeningEngine = Depends(get_engine),
) -> Dict:
    with engine_errors():
        return engine.advance_phase(project_id, request.current_phase, request.user_id)


@router.get("/projects/{project_id}/progress")
def phase_progress(
    project_id: str,
    phase: Phase = Phase.TITLE_ABSTRACT,
    engine: ScreeningEngine = Depends(get_engine),
) -> Dict:
    with engine_errors():
        return engine.phase_progress(project_id, phase)


@router.post("/projects/{project_id}/sweep", response_model=SweepReport)
def sweep(
    project_id: str,
    phase: Optional[Phase] = None,
    engine: ScreeningEngine = Depends(get_engine),
) -> SweepReport:
    with engine_errors():
        return engine.sweep(project_id, phase)
