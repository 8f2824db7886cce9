"""Lead batch screening.

Project owners and leads can record the same decision on many studies
at once (``bulk_decision``) or adopt the AI suggestion on every study
whose AI confidence reaches a threshold (``apply_ai``).  Each study is
recorded through :meth:`ConsensusEvaluator.record_decision` in its own
transaction, so consensus, conflicts and the ingestion signal behave
exactly as for a single decision, and one failing study never rolls
back the others.
"""

from __future__ import annotations

from enum import Enum
from typing import List, Optional, Sequence

from pydantic import BaseModel, Field

from ..core.errors import EngineError, ForbiddenError, ScreeningValidationError
from ..core.models import AuditAction, ScreeningDecision, Study
from ..store.database import ScreeningStore
from ..utils.logging import get_logger
from .evaluator import ConsensusEvaluator, DecisionOutcome, build_decision_input

logger = get_logger(__name__)

DEFAULT_AI_CONFIDENCE_THRESHOLD = 0.8
AI_FALLBACK_EXCLUSION_REASON = "Applied AI suggestion"


class BatchOperation(str, Enum):
    BULK_DECISION = "bulk_decision"
    APPLY_AI = "apply_ai"


class BatchItemStatus(str, Enum):
    PROCESSED = "processed"
    FAILED = "failed"
    SKIPPED = "skipped"


class BatchItem(BaseModel):
    """Outcome for one study of a batch."""

    study_id: str
    status: BatchItemStatus
    decision: Optional[ScreeningDecision] = None
    study_status: Optional[str] = None
    error: Optional[str] = None
    ingestion_signaled: bool = False


class BatchResult(BaseModel):
    operation: BatchOperation
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    items: List[BatchItem] = Field(default_factory=list)

    @property
    def ingestion_signaled(self) -> bool:
        return any(item.ingestion_signaled for item in self.items)


class BatchScreener:
    """Apply lead batch operations study by study."""

    def __init__(self, store: ScreeningStore, evaluator: ConsensusEvaluator) -> None:
        self.store = store
        self.evaluator = evaluator

    def run(
        self,
        project_id: str,
        user_id: str,
        study_ids: Sequence[str],
        operation: BatchOperation,
        decision: Optional[ScreeningDecision] = None,
        reasoning: Optional[str] = None,
        exclusion_reason: Optional[str] = None,
        ai_confidence_threshold: float = DEFAULT_AI_CONFIDENCE_THRESHOLD,
    ) -> BatchResult:
        """Run ``operation`` over ``study_ids`` as ``user_id``.

        Every study is decided in its current phase.  Per-study engine
        errors (duplicates, closed studies, studies of another project)
        are reported as failed items.

        Raises:
            NotFoundError: The project does not exist.
            ForbiddenError: ``user_id`` is not an active OWNER or LEAD.
            ScreeningValidationError: Empty batch, missing or invalid
                ``bulk_decision`` payload, or a threshold outside 0-1.
        """
        operation = BatchOperation(operation)
        self.store.get_project(project_id)
        member = self.store.get_member(project_id, user_id)
        if member is None or not member.active or not member.role.can_resolve:
            raise ForbiddenError("Only project owners and leads can perform batch operations")
        if not study_ids:
            raise ScreeningValidationError("At least one study required")
        if operation == BatchOperation.BULK_DECISION:
            if decision is None:
                raise ScreeningValidationError("bulk_decision requires a decision")
            decision = ScreeningDecision(decision)
            build_decision_input(decision, reasoning, exclusion_reason)
        elif not 0.0 <= ai_confidence_threshold <= 1.0:
            raise ScreeningValidationError("AI confidence threshold must be between 0 and 1")

        result = BatchResult(operation=operation)
        for study_id in dict.fromkeys(study_ids):
            item = self._run_one(
                project_id,
                user_id,
                study_id,
                operation,
                decision,
                reasoning,
                exclusion_reason,
                ai_confidence_threshold,
            )
            result.items.append(item)
            if item.status == BatchItemStatus.PROCESSED:
                result.processed += 1
            elif item.status == BatchItemStatus.FAILED:
                result.failed += 1
            else:
                result.skipped += 1

        self.store.run(
            lambda conn: self.store.append_audit(
                conn,
                project_id,
                AuditAction.BATCH_SCREENED.value,
                actor_id=user_id,
                payload={
                    "operation": operation.value,
                    "study_count": len(result.items),
                    "processed": result.processed,
                    "failed": result.failed,
                    "skipped": result.skipped,
                },
            )
        )
        logger.info(
            f"Batch {operation.value} by {user_id}: {result.processed} processed, "
            f"{result.failed} failed, {result.skipped} skipped",
            extra={"project_id": project_id, "reviewer_id": user_id},
        )
        return result

    def _run_one(
        self,
        project_id: str,
        user_id: str,
        study_id: str,
        operation: BatchOperation,
        decision: Optional[ScreeningDecision],
        reasoning: Optional[str],
        exclusion_reason: Optional[str],
        threshold: float,
    ) -> BatchItem:
        try:
            study = self.store.get_study(study_id)
        except EngineError as exc:
            return BatchItem(study_id=study_id, status=BatchItemStatus.FAILED, error=str(exc))
        if study.project_id != project_id:
            return BatchItem(
                study_id=study_id,
                status=BatchItemStatus.FAILED,
                error=f"Study {study_id} not found in project {project_id}",
            )

        confidence: Optional[int] = None
        if operation == BatchOperation.APPLY_AI:
            if not _ai_applicable(study, threshold):
                return BatchItem(study_id=study_id, status=BatchItemStatus.SKIPPED)
            decision = study.ai_suggestion
            confidence = round(study.ai_confidence * 100)
            reasoning = f"Applied AI suggestion (confidence: {confidence}%)"
            exclusion_reason = None
            if decision == ScreeningDecision.EXCLUDE:
                exclusion_reason = study.ai_reasoning or AI_FALLBACK_EXCLUSION_REASON

        try:
            outcome: DecisionOutcome = self.evaluator.record_decision(
                study_id,
                user_id,
                study.phase,
                decision,
                reasoning=reasoning,
                exclusion_reason=exclusion_reason,
                confidence=confidence,
            )
        except EngineError as exc:
            logger.warning(
                f"Batch {operation.value} failed for study {study_id}: {exc}",
                extra={"project_id": project_id, "study_id": study_id},
            )
            return BatchItem(
                study_id=study_id,
                status=BatchItemStatus.FAILED,
                decision=decision,
                error=str(exc),
            )
        return BatchItem(
            study_id=study_id,
            status=BatchItemStatus.PROCESSED,
            decision=decision,
            study_status=outcome.study.status.value,
            ingestion_signaled=outcome.ingestion_signaled,
        )


def _ai_applicable(study: Study, threshold: float) -> bool:
    return (
        study.ai_suggestion is not None
        and study.ai_confidence is not None
        and study.ai_confidence >= threshold
    )
