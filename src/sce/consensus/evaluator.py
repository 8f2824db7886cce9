"""Consensus evaluation of reviewer decisions.

:class:`ConsensusEvaluator` turns a just-recorded decision into a study
state transition.  The decision insert, the re-read of all decisions
for the study and phase, and the resulting status write (or conflict
open) run as one ``BEGIN IMMEDIATE`` transaction, so two reviewers
racing to submit the last required decision are serialized by the
database and the second one observes the first one's result.
"""

from __future__ import annotations

import sqlite3
from typing import List, Optional, Sequence

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ..config.settings import settings
from ..core.errors import (
    ConflictAlreadyOpenError,
    DuplicateDecisionError,
    ForbiddenError,
    ScreeningValidationError,
    StudyNotScreenableError,
)
from ..core.models import (
    AuditAction,
    Conflict,
    Decision,
    DecisionInput,
    Phase,
    Project,
    ScreeningDecision,
    Study,
    StudyStatus,
)
from ..store.database import ScreeningStore
from ..utils.logging import get_logger
from .conflicts import ConflictManager
from .finalize import finalize_study
from .state_machine import Transition, TransitionReason, evaluate_decisions

logger = get_logger(__name__)


class DecisionOutcome(BaseModel):
    """Study state after evaluating its decisions."""

    study: Study
    transition: Transition
    decision: Optional[Decision] = None
    conflict: Optional[Conflict] = None
    ingestion_signaled: bool = False


def build_decision_input(
    decision: ScreeningDecision,
    reasoning: Optional[str] = None,
    exclusion_reason: Optional[str] = None,
    confidence: Optional[int] = None,
    time_spent_ms: Optional[int] = None,
) -> DecisionInput:
    """Validate a decision payload, raising the engine's validation error."""
    try:
        return DecisionInput(
            decision=decision,
            reasoning=reasoning,
            exclusion_reason=exclusion_reason,
            confidence=confidence,
            time_spent_ms=time_spent_ms,
        )
    except PydanticValidationError as exc:
        messages = "; ".join(err["msg"] for err in exc.errors())
        raise ScreeningValidationError(messages) from exc


class ConsensusEvaluator:
    """Record reviewer decisions and apply the resulting transitions."""

    def __init__(
        self,
        store: ScreeningStore,
        conflicts: Optional[ConflictManager] = None,
        ingestion_source: Optional[str] = None,
    ) -> None:
        self.store = store
        self.ingestion_source = ingestion_source or settings.ingestion_source
        self.conflicts = conflicts or ConflictManager(store, ingestion_source=self.ingestion_source)

    def record_decision(
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
        """Store a reviewer's decision and move the study accordingly.

        Raises:
            ScreeningValidationError: Invalid payload (e.g. EXCLUDE without
                an exclusion reason) or the study is not open for screening
                in ``phase``.
            NotFoundError: The study does not exist.
            ForbiddenError: The reviewer may not screen in this project.
            DuplicateDecisionError: The reviewer already decided this study
                in this phase.
        """
        payload = build_decision_input(
            decision, reasoning, exclusion_reason, confidence, time_spent_ms
        )

        def work(conn: sqlite3.Connection) -> DecisionOutcome:
            study = self.store.get_study(study_id, conn)
            project = self.store.get_project(study.project_id, conn)
            member = self.store.get_member(study.project_id, reviewer_id, conn)
            if member is None or not member.active or not member.role.can_screen:
                raise ForbiddenError(
                    f"User {reviewer_id} cannot screen studies in project {study.project_id}"
                )
            existing = self.store.get_decision(study_id, reviewer_id, phase, conn)
            if existing is not None:
                raise DuplicateDecisionError(study_id, reviewer_id, phase, existing)
            if study.phase != phase:
                raise StudyNotScreenableError(
                    f"Study {study_id} is in phase {study.phase.value}, not {phase.value}", study
                )
            if not study.is_open:
                raise StudyNotScreenableError(
                    f"Study {study_id} is {study.status.value} and not open for screening", study
                )

            recorded = self.store.insert_decision(conn, study, reviewer_id, phase, payload)
            self.store.append_audit(
                conn,
                study.project_id,
                AuditAction.DECISION_RECORDED.value,
                study_id=study_id,
                actor_id=reviewer_id,
                payload={"phase": phase.value, "decision": recorded.decision.value},
            )
            decisions = self.store.get_decisions(study_id, phase, conn)
            outcome = self.evaluate(
                conn, study, project, decisions, actor_id=reviewer_id, source="user_decision"
            )
            outcome.decision = recorded
            return outcome

        outcome = self.store.run(work)
        logger.info(
            f"Decision {decision.value} by {reviewer_id} on {study_id} ({phase.value}): "
            f"{outcome.transition.reason.value}",
            extra={
                "project_id": outcome.study.project_id,
                "study_id": study_id,
                "reviewer_id": reviewer_id,
                "phase": phase,
            },
        )
        return outcome

    def evaluate(
        self,
        conn: sqlite3.Connection,
        study: Study,
        project: Project,
        decisions: Sequence[Decision],
        *,
        actor_id: Optional[str] = None,
        source: str,
        reviewers_required: Optional[int] = None,
    ) -> DecisionOutcome:
        """Apply the transition implied by ``decisions`` to ``study``.

        ``reviewers_required`` overrides the project quota; the
        reconciliation sweeper lowers it when no further reviewer can
        ever decide the study.
        """
        required = reviewers_required or project.reviewers_required
        verdicts: List[ScreeningDecision] = [d.decision for d in decisions]
        transition = evaluate_decisions(study.phase, verdicts, required)

        if transition.reason == TransitionReason.WAITING_FOR_REVIEWERS:
            updated = study
            if study.status != StudyStatus.SCREENING:
                updated = self.store.update_study_state(
                    conn,
                    study.study_id,
                    status=StudyStatus.SCREENING,
                    phase=study.phase,
                    final_decision=None,
                )
            return DecisionOutcome(study=updated, transition=transition)

        if transition.opens_conflict:
            conflict = self._open_conflict(conn, study, decisions, actor_id)
            return DecisionOutcome(
                study=self.store.get_study(study.study_id, conn),
                transition=transition,
                conflict=conflict,
            )

        result = finalize_study(
            self.store,
            conn,
            study,
            transition.verdict,
            actor_id=actor_id,
            source=source,
            ingestion_source=self.ingestion_source,
            decisions_recorded=transition.decisions_recorded,
            reviewers_required=required,
            details={
                "decisions": [
                    {"reviewer_id": d.reviewer_id, "decision": d.decision.value} for d in decisions
                ]
            },
        )
        return DecisionOutcome(
            study=result.study,
            transition=result.transition,
            ingestion_signaled=result.ingestion_signaled,
        )

    def _open_conflict(
        self,
        conn: sqlite3.Connection,
        study: Study,
        decisions: Sequence[Decision],
        actor_id: Optional[str],
    ) -> Conflict:
        """Open a conflict, or adopt the one a racing writer already opened."""
        try:
            with self.store.savepoint(conn, "open_conflict"):
                return self.conflicts.open_conflict(
                    study.study_id, study.phase, decisions, actor_id=actor_id, conn=conn
                )
        except ConflictAlreadyOpenError as exc:
            logger.warning(
                f"Conflict for study {study.study_id} in {study.phase.value} already open; "
                f"observing existing conflict"
            )
            self.store.update_study_state(
                conn,
                study.study_id,
                status=StudyStatus.CONFLICT,
                phase=study.phase,
                final_decision=None,
            )
            return exc.conflict
