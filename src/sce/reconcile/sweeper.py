"""Reconciliation sweeper.

The sweeper re-derives the state of every open study that already holds
decisions for its current phase and repairs studies whose status lags
behind their decision records (for example after a crash between a
decision insert and its evaluation in an older deployment, or after the
reviewer pool shrank below the project's quota).

Each study is reconciled in its own short transaction through the same
:meth:`~sce.consensus.evaluator.ConsensusEvaluator.evaluate` path the
live decision flow uses, so a sweep is idempotent and never diverges
from live finalization.
"""

from __future__ import annotations

import sqlite3
from typing import List, Optional, Sequence

from pydantic import BaseModel, Field

from ..core.errors import EngineError, InconsistentStateError
from ..core.models import AuditAction, Decision, Phase, Project, Study, StudyStatus
from ..consensus.evaluator import ConsensusEvaluator
from ..store.database import ScreeningStore
from ..utils.logging import get_logger

logger = get_logger(__name__)


class SweepReport(BaseModel):
    """Summary of one sweep over a project."""

    project_id: str
    phase: Optional[Phase] = None
    checked: int = 0
    repaired: int = 0
    conflicts_opened: int = 0
    overrides: int = 0
    skipped: int = 0
    errors: int = 0
    repaired_study_ids: List[str] = Field(default_factory=list)


class ReconciliationSweeper:
    """Repair studies whose status disagrees with their decisions."""

    def __init__(self, store: ScreeningStore, evaluator: Optional[ConsensusEvaluator] = None) -> None:
        self.store = store
        self.evaluator = evaluator or ConsensusEvaluator(store)

    def sweep(self, project_id: str, phase: Optional[Phase] = None) -> SweepReport:
        """Reconcile every open study of ``project_id`` that has decisions."""
        self.store.get_project(project_id)
        report = SweepReport(project_id=project_id, phase=phase)
        for study_id in self.store.studies_needing_reconciliation(project_id, phase):
            report.checked += 1
            try:
                outcome = self.store.run(lambda conn, sid=study_id: self._reconcile(conn, sid))
            except EngineError as exc:
                report.errors += 1
                logger.error(f"Failed to reconcile study {study_id}: {exc}")
                continue
            if outcome is None:
                report.skipped += 1
                continue
            report.repaired += 1
            report.repaired_study_ids.append(study_id)
            if outcome == "conflict":
                report.conflicts_opened += 1
            elif outcome == "override":
                report.overrides += 1

        logger.info(
            f"Sweep of {project_id}: checked={report.checked} repaired={report.repaired} "
            f"conflicts={report.conflicts_opened} overrides={report.overrides} "
            f"skipped={report.skipped} errors={report.errors}"
        )
        return report

    def _eligible_reviewers(
        self, conn: sqlite3.Connection, project_id: str, decisions: Sequence[Decision]
    ) -> List[str]:
        decided = {d.reviewer_id for d in decisions}
        return [
            m.user_id
            for m in self.store.list_members(project_id, active_only=True, conn=conn)
            if m.role.can_screen and m.user_id not in decided
        ]

    @staticmethod
    def _verify(
        study: Study,
        project: Project,
        decisions: Sequence[Decision],
        eligible: Sequence[str],
    ) -> None:
        """Raise if ``study``'s status is not what its decisions imply."""
        required = project.reviewers_required
        if len(decisions) >= required:
            raise InconsistentStateError(
                study.study_id,
                f"{len(decisions)} of {required} decisions recorded but status is {study.status.value}",
            )
        if not eligible:
            raise InconsistentStateError(
                study.study_id,
                f"{len(decisions)} of {required} decisions recorded and no eligible reviewer remains",
            )
        if study.status != StudyStatus.SCREENING:
            raise InconsistentStateError(
                study.study_id, f"has decisions but status is {study.status.value}"
            )

    def _reconcile(self, conn: sqlite3.Connection, study_id: str) -> Optional[str]:
        study = self.store.get_study(study_id, conn)
        if not study.is_open:
            return None
        decisions = self.store.get_decisions(study_id, study.phase, conn)
        if not decisions:
            return None
        project = self.store.get_project(study.project_id, conn)
        eligible = self._eligible_reviewers(conn, project.project_id, decisions)

        try:
            self._verify(study, project, decisions, eligible)
        except InconsistentStateError as exc:
            logger.warning(
                f"Repairing {exc}",
                extra={"project_id": project.project_id, "study_id": study_id, "phase": study.phase},
            )
            detail = exc.detail
        else:
            return None

        override = len(decisions) < project.reviewers_required and not eligible
        outcome = self.evaluator.evaluate(
            conn,
            study,
            project,
            decisions,
            source="reconciliation",
            reviewers_required=len(decisions) if override else None,
        )
        if override:
            logger.warning(
                f"Liveness override for study {study_id}: finalizing from {len(decisions)} of "
                f"{project.reviewers_required} decisions ({outcome.transition.reason.value})",
                extra={"project_id": project.project_id, "study_id": study_id},
            )
            self.store.append_audit(
                conn,
                project.project_id,
                AuditAction.LIVENESS_OVERRIDE.value,
                study_id=study_id,
                payload={
                    "phase": study.phase.value,
                    "decisions_recorded": len(decisions),
                    "reviewers_required": project.reviewers_required,
                    "result": outcome.transition.reason.value,
                },
            )
        self.store.append_audit(
            conn,
            project.project_id,
            AuditAction.STATE_RECONCILED.value,
            study_id=study_id,
            payload={
                "detail": detail,
                "from_status": study.status.value,
                "to_status": outcome.study.status.value,
                "to_phase": outcome.study.phase.value,
                "conflict_id": outcome.conflict.conflict_id if outcome.conflict else None,
            },
        )
        if outcome.conflict is not None:
            return "conflict"
        return "override" if override else "repaired"
