"""Conflict lifecycle management.

A conflict is opened when the required reviewers of a study disagree,
can be moved into discussion or escalated to the project leads, and is
closed only by a :class:`~sce.core.models.ConflictResolution` written by
an OWNER or LEAD.  Resolving applies the same finalize rules as a
unanimous decision, including phase advancement and the ingestion
signal.
"""

from __future__ import annotations

import sqlite3
from collections import defaultdict
from typing import Any, Dict, List, Optional, Protocol, Sequence

from pydantic import BaseModel

from ..config.settings import settings
from ..core.errors import ConflictAlreadyResolvedError, ForbiddenError
from ..core.models import (
    AuditAction,
    Conflict,
    ConflictResolution,
    ConflictStatus,
    Decision,
    DecisionSnapshot,
    Phase,
    ProjectRole,
    ScreeningDecision,
    Study,
    StudyStatus,
)
from ..store.database import ScreeningStore
from ..utils.logging import get_logger
from .finalize import finalize_study

logger = get_logger(__name__)


class Notifier(Protocol):
    """External collaborator that delivers notifications to users."""

    def notify(self, user_id: str, subject: str, payload: Dict[str, Any]) -> None:
        ...


class LoggingNotifier:
    """Default notifier that writes notifications to the log."""

    def notify(self, user_id: str, subject: str, payload: Dict[str, Any]) -> None:
        logger.info(f"Notify {user_id}: {subject} {payload}")


class ResolutionOutcome(BaseModel):
    """Result of resolving a conflict."""

    resolution: ConflictResolution
    conflict: Conflict
    study: Study
    ingestion_signaled: bool = False


class ConflictManager:
    """Own conflict creation, escalation and resolution."""

    def __init__(
        self,
        store: ScreeningStore,
        notifier: Optional[Notifier] = None,
        ingestion_source: Optional[str] = None,
    ) -> None:
        self.store = store
        self.notifier = notifier or LoggingNotifier()
        self.ingestion_source = ingestion_source or settings.ingestion_source

    def _require_role(
        self,
        conn: sqlite3.Connection,
        project_id: str,
        user_id: str,
        resolve: bool = False,
    ) -> None:
        member = self.store.get_member(project_id, user_id, conn)
        if member is None or not member.active:
            raise ForbiddenError(f"User {user_id} is not an active member of project {project_id}")
        if resolve and not member.role.can_resolve:
            raise ForbiddenError("Only project owners and leads can resolve conflicts")

    def open_conflict(
        self,
        study_id: str,
        phase: Phase,
        decisions: Sequence[Decision],
        actor_id: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Conflict:
        """Open a conflict for (study, phase) and mark the study CONFLICT.

        Runs inside ``conn``'s transaction when given, otherwise in its own.

        Raises:
            ConflictAlreadyOpenError: An unresolved conflict already exists
                for this study and phase.
        """

        def work(conn: sqlite3.Connection) -> Conflict:
            study = self.store.get_study(study_id, conn)
            snapshots = [DecisionSnapshot.from_decision(d) for d in decisions]
            conflict = self.store.insert_conflict(conn, study, phase, snapshots)
            self.store.update_study_state(
                conn, study_id, status=StudyStatus.CONFLICT, phase=phase, final_decision=None
            )
            self.store.append_audit(
                conn,
                study.project_id,
                AuditAction.CONFLICT_OPENED.value,
                study_id=study_id,
                actor_id=actor_id,
                payload={
                    "conflict_id": conflict.conflict_id,
                    "phase": phase.value,
                    "decisions": [
                        {"reviewer_id": s.reviewer_id, "decision": s.decision.value}
                        for s in snapshots
                    ],
                },
            )
            logger.info(
                f"Opened conflict {conflict.conflict_id} for study {study_id} in {phase.value}",
                extra={
                    "project_id": study.project_id,
                    "study_id": study_id,
                    "conflict_id": conflict.conflict_id,
                    "phase": phase,
                },
            )
            return conflict

        return work(conn) if conn is not None else self.store.run(work)

    def get_conflict(self, conflict_id: str) -> Conflict:
        return self.store.get_conflict(conflict_id)

    def list_conflicts(
        self,
        project_id: str,
        phase: Optional[Phase] = None,
        status: Optional[ConflictStatus] = None,
    ) -> List[Conflict]:
        return self.store.list_conflicts(project_id, phase=phase, status=status)

    def start_discussion(self, conflict_id: str, user_id: str) -> Conflict:
        """Move a pending conflict into discussion."""

        def work(conn: sqlite3.Connection) -> Conflict:
            conflict = self.store.get_conflict(conflict_id, conn)
            self._require_role(conn, conflict.project_id, user_id)
            if not conflict.is_open:
                raise ConflictAlreadyResolvedError(conflict)
            if conflict.status == ConflictStatus.PENDING:
                self.store.update_conflict_status(conn, conflict_id, ConflictStatus.IN_DISCUSSION)
                self.store.append_audit(
                    conn,
                    conflict.project_id,
                    AuditAction.CONFLICT_DISCUSSION_STARTED.value,
                    study_id=conflict.study_id,
                    actor_id=user_id,
                    payload={"conflict_id": conflict_id},
                )
            return self.store.get_conflict(conflict_id, conn)

        return self.store.run(work)

    def escalate(self, conflict_id: str, by_user_id: str, reason: str) -> Conflict:
        """Annotate a conflict with escalation metadata and notify the leads.

        Escalation is informational: the conflict status does not change.
        """

        def work(conn: sqlite3.Connection) -> Conflict:
            conflict = self.store.get_conflict(conflict_id, conn)
            self._require_role(conn, conflict.project_id, by_user_id)
            if not conflict.is_open:
                raise ConflictAlreadyResolvedError(conflict)
            self.store.record_escalation(conn, conflict_id, by_user_id, reason)
            self.store.append_audit(
                conn,
                conflict.project_id,
                AuditAction.CONFLICT_ESCALATED.value,
                study_id=conflict.study_id,
                actor_id=by_user_id,
                payload={"conflict_id": conflict_id, "reason": reason},
            )
            return self.store.get_conflict(conflict_id, conn)

        conflict = self.store.run(work)
        leads = self.store.list_members(
            conflict.project_id,
            roles=[ProjectRole.OWNER, ProjectRole.LEAD],
            active_only=True,
        )
        for lead in leads:
            self.notifier.notify(
                lead.user_id,
                "Screening conflict escalated",
                {
                    "conflict_id": conflict.conflict_id,
                    "study_id": conflict.study_id,
                    "phase": conflict.phase.value,
                    "escalated_by": by_user_id,
                    "reason": reason,
                },
            )
        logger.info(f"Escalated conflict {conflict_id} to {len(leads)} leads")
        return conflict

    def resolve(
        self,
        conflict_id: str,
        resolver_id: str,
        final_decision: ScreeningDecision,
        reasoning: Optional[str] = None,
    ) -> ResolutionOutcome:
        """Settle a conflict with a lead's final decision.

        Raises:
            NotFoundError: The conflict does not exist.
            ForbiddenError: The resolver is not an OWNER or LEAD.
            ConflictAlreadyResolvedError: The conflict was already resolved;
                the error carries the resolved conflict and nothing changes.
        """

        def work(conn: sqlite3.Connection) -> ResolutionOutcome:
            conflict = self.store.get_conflict(conflict_id, conn)
            self._require_role(conn, conflict.project_id, resolver_id, resolve=True)
            if not conflict.is_open or conflict.resolution is not None:
                raise ConflictAlreadyResolvedError(conflict)
            resolution = self.store.insert_resolution(
                conn, conflict, resolver_id, final_decision, reasoning
            )
            self.store.update_conflict_status(conn, conflict_id, ConflictStatus.RESOLVED)
            study = self.store.get_study(conflict.study_id, conn)
            result = finalize_study(
                self.store,
                conn,
                study,
                final_decision,
                phase=conflict.phase,
                actor_id=resolver_id,
                source="conflict_resolution",
                ingestion_source=self.ingestion_source,
                decisions_recorded=len(conflict.decisions),
                details={"conflict_id": conflict_id},
            )
            self.store.append_audit(
                conn,
                conflict.project_id,
                AuditAction.CONFLICT_RESOLVED.value,
                study_id=conflict.study_id,
                actor_id=resolver_id,
                payload={
                    "conflict_id": conflict_id,
                    "final_decision": final_decision.value,
                    "reasoning": reasoning,
                    "decisions": [
                        {"reviewer_id": s.reviewer_id, "decision": s.decision.value}
                        for s in conflict.decisions
                    ],
                    "study_status": result.study.status.value,
                    "study_phase": result.study.phase.value,
                },
            )
            return ResolutionOutcome(
                resolution=resolution,
                conflict=self.store.get_conflict(conflict_id, conn),
                study=result.study,
                ingestion_signaled=result.ingestion_signaled,
            )

        outcome = self.store.run(work)
        logger.info(
            f"Resolved conflict {conflict_id} as {final_decision.value} by {resolver_id}",
            extra={
                "project_id": outcome.conflict.project_id,
                "study_id": outcome.conflict.study_id,
                "conflict_id": conflict_id,
            },
        )
        return outcome

    def conflict_stats(self, project_id: str) -> Dict[str, Any]:
        """Totals, per-phase counts and average time to resolution."""
        conflicts = self.store.list_conflicts(project_id)
        resolved = [c for c in conflicts if c.status == ConflictStatus.RESOLVED]
        by_phase: Dict[str, int] = defaultdict(int)
        for c in conflicts:
            by_phase[c.phase.value] += 1
        durations = [
            (c.resolved_at - c.created_at).total_seconds() * 1000
            for c in resolved
            if c.resolved_at is not None
        ]
        return {
            "total": len(conflicts),
            "pending": sum(1 for c in conflicts if c.status == ConflictStatus.PENDING),
            "in_discussion": sum(1 for c in conflicts if c.status == ConflictStatus.IN_DISCUSSION),
            "resolved": len(resolved),
            "escalated": sum(1 for c in conflicts if c.escalated_at is not None),
            "by_phase": dict(by_phase),
            "resolution_rate": round(len(resolved) / len(conflicts) * 100) if conflicts else 100,
            "average_resolution_time_ms": sum(durations) / len(durations) if durations else None,
        }
