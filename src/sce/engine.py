"""Screening engine facade.

:class:`ScreeningEngine` wires the store, consensus evaluator, conflict
manager, queue scheduler, reliability analyzer, calibration controller
and reconciliation sweeper together and is what the web API and the
CLI talk to.  Pending ingestion signals are dispatched to the injected
queue, or to the one selected by settings, right after the transaction
that produced them commits.
"""

from __future__ import annotations

import random
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional

from .calibration.controller import CalibrationController
from .consensus.batch import (
    DEFAULT_AI_CONFIDENCE_THRESHOLD,
    BatchOperation,
    BatchResult,
    BatchScreener,
)
from .consensus.conflicts import ConflictManager, Notifier, ResolutionOutcome
from .consensus.evaluator import ConsensusEvaluator, DecisionOutcome
from .consensus.ingestion import IngestionDispatcher, IngestionQueue, default_ingestion_queue
from .consensus.state_machine import phase_completion, validate_phase_advancement
from .core.errors import ForbiddenError, ScreeningValidationError
from .core.models import (
    NEXT_PHASE,
    AuditAction,
    CalibrationRound,
    Conflict,
    ConflictStatus,
    Decision,
    Phase,
    QueueStrategy,
    ScreeningDecision,
    StudyStatus,
)
from .reconcile.sweeper import ReconciliationSweeper, SweepReport
from .reliability.analyzer import ReliabilityAnalyzer, ReliabilityReport
from .scheduler.priority import PriorityScorer
from .scheduler.queue import QueuedStudy, ScreeningQueue
from .store.database import ScreeningStore
from .utils.logging import get_logger

logger = get_logger(__name__)


class ScreeningEngine:
    """Entry point for every screening operation."""

    def __init__(
        self,
        store: Optional[ScreeningStore] = None,
        db_path: Optional[Path] = None,
        ingestion_queue: Optional[IngestionQueue] = None,
        notifier: Optional[Notifier] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.store = store or ScreeningStore(db_path)
        self.conflicts = ConflictManager(self.store, notifier=notifier)
        self.evaluator = ConsensusEvaluator(self.store, conflicts=self.conflicts)
        self.queue = ScreeningQueue(self.store, rng=rng)
        self.priority = PriorityScorer(self.store)
        self.reliability = ReliabilityAnalyzer(self.store)
        self.calibration = CalibrationController(self.store, rng=rng)
        self.sweeper = ReconciliationSweeper(self.store, self.evaluator)
        self.batch = BatchScreener(self.store, self.evaluator)
        self.dispatcher = IngestionDispatcher(
            self.store, ingestion_queue if ingestion_queue is not None else default_ingestion_queue()
        )

    def close(self) -> None:
        self.store.close()

    # ------------------------------------------------------------------
    # Decisions and conflicts
    # ------------------------------------------------------------------

    def submit_decision(
        self,
        study_id: str,
        reviewer_id: str,
        phase: Phase,
        decision: ScreeningDecision,
        reasoning: Optional[str] = None,
        exclusion_reason: Optional[str] = None,
        confidence: Optional[int] = None,
        time_spent_ms: Optional[int] = None,
    ) -> DecisionOutcome:
        outcome = self.evaluator.record_decision(
            study_id,
            reviewer_id,
            Phase(phase),
            ScreeningDecision(decision),
            reasoning=reasoning,
            exclusion_reason=exclusion_reason,
            confidence=confidence,
            time_spent_ms=time_spent_ms,
        )
        if outcome.ingestion_signaled:
            self.dispatch_ingestion(outcome.study.project_id)
        return outcome

    def resolve_conflict(
        self,
        conflict_id: str,
        resolver_id: str,
        final_decision: ScreeningDecision,
        reasoning: Optional[str] = None,
    ) -> ResolutionOutcome:
        outcome = self.conflicts.resolve(
            conflict_id, resolver_id, ScreeningDecision(final_decision), reasoning
        )
        if outcome.ingestion_signaled:
            self.dispatch_ingestion(outcome.study.project_id)
        return outcome

    def list_decisions(
        self, study_id: str, viewer_id: str, phase: Optional[Phase] = None
    ) -> List[Decision]:
        """Decisions on a study in ``phase`` (default: its current phase).

        In a blind-screening project a reviewer sees only their own
        decision while the study is still open; owners and leads, and
        everyone once the study left screening, see all of them.

        Raises:
            ForbiddenError: ``viewer_id`` is not an active project member.
        """

        def work(conn: sqlite3.Connection) -> List[Decision]:
            study = self.store.get_study(study_id, conn)
            project = self.store.get_project(study.project_id, conn)
            member = self.store.get_member(study.project_id, viewer_id, conn)
            if member is None or not member.active:
                raise ForbiddenError(
                    f"User {viewer_id} is not an active member of project {study.project_id}"
                )
            decisions = self.store.get_decisions(study_id, Phase(phase or study.phase), conn)
            hidden = (
                project.blind_screening
                and study.is_open
                and (phase is None or Phase(phase) == study.phase)
                and not member.role.can_resolve
            )
            if hidden:
                return [d for d in decisions if d.reviewer_id == viewer_id]
            return decisions

        return self.store.run(work)

    def batch_screen(
        self,
        project_id: str,
        user_id: str,
        study_ids: List[str],
        operation: BatchOperation,
        decision: Optional[ScreeningDecision] = None,
        reasoning: Optional[str] = None,
        exclusion_reason: Optional[str] = None,
        ai_confidence_threshold: float = DEFAULT_AI_CONFIDENCE_THRESHOLD,
    ) -> BatchResult:
        result = self.batch.run(
            project_id,
            user_id,
            study_ids,
            BatchOperation(operation),
            decision=ScreeningDecision(decision) if decision is not None else None,
            reasoning=reasoning,
            exclusion_reason=exclusion_reason,
            ai_confidence_threshold=ai_confidence_threshold,
        )
        if result.ingestion_signaled:
            self.dispatch_ingestion(project_id)
        return result

    def escalate_conflict(self, conflict_id: str, by_user_id: str, reason: str) -> Conflict:
        return self.conflicts.escalate(conflict_id, by_user_id, reason)

    def start_discussion(self, conflict_id: str, user_id: str) -> Conflict:
        return self.conflicts.start_discussion(conflict_id, user_id)

    def get_conflict(self, conflict_id: str) -> Conflict:
        return self.conflicts.get_conflict(conflict_id)

    def list_conflicts(
        self,
        project_id: str,
        phase: Optional[Phase] = None,
        status: Optional[ConflictStatus] = None,
    ) -> List[Conflict]:
        self.store.get_project(project_id)
        return self.conflicts.list_conflicts(project_id, phase=phase, status=status)

    def conflict_stats(self, project_id: str) -> Dict[str, Any]:
        self.store.get_project(project_id)
        return self.conflicts.conflict_stats(project_id)

    # ------------------------------------------------------------------
    # Queues
    # ------------------------------------------------------------------

    def get_queue(
        self,
        reviewer_id: str,
        project_id: str,
        phase: Phase = Phase.TITLE_ABSTRACT,
        strategy: QueueStrategy = QueueStrategy.DEFAULT,
        limit: Optional[int] = None,
    ) -> List[QueuedStudy]:
        return self.queue.get_queue(reviewer_id, project_id, Phase(phase), QueueStrategy(strategy), limit)

    def queue_stats(self, project_id: str, phase: Phase = Phase.TITLE_ABSTRACT) -> Dict[str, object]:
        self.store.get_project(project_id)
        return self.queue.get_queue_stats(project_id, phase)

    def workload_distribution(
        self, project_id: str, phase: Phase = Phase.TITLE_ABSTRACT
    ) -> List[Dict[str, object]]:
        self.store.get_project(project_id)
        return self.queue.get_workload_distribution(project_id, phase)

    def recompute_priority(
        self,
        project_id: str,
        boost_by_year: bool = True,
        journals: Optional[List[str]] = None,
        keywords: Optional[List[str]] = None,
        current_year: Optional[int] = None,
    ) -> int:
        self.store.get_project(project_id)
        return self.priority.recompute(project_id, boost_by_year, journals, keywords, current_year)

    # ------------------------------------------------------------------
    # Reliability and calibration
    # ------------------------------------------------------------------

    def get_reliability(
        self,
        project_id: str,
        phase: Phase = Phase.TITLE_ABSTRACT,
        collapse_maybe: bool = False,
    ) -> ReliabilityReport:
        return self.reliability.get_reliability(project_id, Phase(phase), collapse_maybe)

    def reviewer_performance(
        self, project_id: str, phase: Phase = Phase.TITLE_ABSTRACT
    ) -> List[Dict[str, object]]:
        self.store.get_project(project_id)
        return self.reliability.reviewer_performance(project_id, phase)

    def create_calibration_round(
        self,
        project_id: str,
        phase: Phase = Phase.TITLE_ABSTRACT,
        sample_size: int = 20,
        target_agreement: float = 0.8,
        created_by: Optional[str] = None,
        participant_ids: Optional[List[str]] = None,
    ) -> CalibrationRound:
        return self.calibration.create_round(
            project_id,
            Phase(phase),
            sample_size,
            target_agreement,
            created_by=created_by,
            participant_ids=participant_ids,
        )

    def submit_calibration_decision(
        self,
        round_id: str,
        study_id: str,
        reviewer_id: str,
        decision: ScreeningDecision,
        reasoning: Optional[str] = None,
        time_spent_ms: Optional[int] = None,
    ) -> CalibrationRound:
        return self.calibration.submit_decision(
            round_id, study_id, reviewer_id, ScreeningDecision(decision), reasoning, time_spent_ms
        )

    def get_calibration_round(self, round_id: str) -> CalibrationRound:
        return self.calibration.get_round(round_id)

    def list_calibration_rounds(self, project_id: str) -> List[CalibrationRound]:
        return self.calibration.list_rounds(project_id)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def advance_phase(self, project_id: str, current_phase: Phase, user_id: str) -> Dict[str, Any]:
        """Move every INCLUDED study of ``current_phase`` to the next phase.

        Raises:
            ForbiddenError: ``user_id`` is not an active OWNER or LEAD.
            ScreeningValidationError: The phase is final, or studies are
                still pending, in screening or in open conflicts.
        """
        current_phase = Phase(current_phase)

        def work(conn: sqlite3.Connection) -> Dict[str, Any]:
            self.store.get_project(project_id, conn)
            member = self.store.get_member(project_id, user_id, conn)
            if member is None or not member.active or not member.role.can_resolve:
                raise ForbiddenError("Only project owners and leads can advance phases")
            counts = self.store.count_studies_by_status(project_id, current_phase, conn)
            open_conflicts = [
                c
                for c in self.store.list_conflicts(project_id, phase=current_phase, conn=conn)
                if c.is_open
            ]
            errors = validate_phase_advancement(current_phase, counts, len(open_conflicts))
            if errors:
                raise ScreeningValidationError("; ".join(errors))

            next_phase = NEXT_PHASE[current_phase]
            included = self.store.list_studies(
                project_id, phase=current_phase, statuses=[StudyStatus.INCLUDED], conn=conn
            )
            for study in included:
                self.store.update_study_state(
                    conn,
                    study.study_id,
                    status=StudyStatus.PENDING,
                    phase=next_phase,
                    final_decision=None,
                )
            self.store.append_audit(
                conn,
                project_id,
                AuditAction.PHASE_ADVANCED.value,
                actor_id=user_id,
                payload={
                    "manual": True,
                    "from_phase": current_phase.value,
                    "to_phase": next_phase.value,
                    "studies_advanced": len(included),
                },
            )
            return {
                "from_phase": current_phase.value,
                "to_phase": next_phase.value,
                "studies_advanced": len(included),
            }

        result = self.store.run(work)
        logger.info(
            f"Advanced {result['studies_advanced']} studies in {project_id} from "
            f"{result['from_phase']} to {result['to_phase']}"
        )
        return result

    def phase_progress(self, project_id: str, phase: Phase = Phase.TITLE_ABSTRACT) -> Dict[str, Any]:
        """Status counts, decision counts and completion of one phase."""
        phase = Phase(phase)
        self.store.get_project(project_id)
        counts = self.store.count_studies_by_status(project_id, phase)
        total = sum(counts.values())
        awaiting = counts[StudyStatus.PENDING] + counts[StudyStatus.SCREENING]
        unresolved = sum(
            1 for c in self.store.list_conflicts(project_id, phase=phase) if c.is_open
        )
        progress: Dict[str, Any] = {
            "phase": phase.value,
            "total": total,
            "status_counts": {s.value: n for s, n in counts.items()},
            "decision_counts": {
                d.value: n for d, n in self.store.get_phase_counters(project_id, phase).items()
            },
        }
        progress.update(phase_completion(total, total - awaiting, unresolved))
        return progress

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------

    def sweep(self, project_id: str, phase: Optional[Phase] = None) -> SweepReport:
        report = self.sweeper.sweep(project_id, Phase(phase) if phase else None)
        self.dispatch_ingestion(project_id)
        return report

    def dispatch_ingestion(self, project_id: Optional[str] = None) -> int:
        return self.dispatcher.dispatch_pending(project_id)
