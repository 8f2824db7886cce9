"""Calibration rounds.

A calibration round samples not-yet-screened studies of a phase and has
every participant screen all of them before full screening starts.
Calibration decisions live in their own table and never touch the live
decision records or study statuses.  Once every participant has decided
every sampled study the round is completed and scored with Cohen's
Kappa; the ``passed`` flag on the round is advisory only.
"""

from __future__ import annotations

import random
import sqlite3
from typing import Dict, List, Optional, Sequence

from ..core.errors import ForbiddenError, ScreeningValidationError
from ..core.ids import generate_id
from ..core.models import (
    AuditAction,
    CalibrationDecision,
    CalibrationRound,
    CalibrationStatus,
    Phase,
    ScreeningDecision,
    StudyStatus,
)
from ..reliability.kappa import average_kappa, pairwise_kappas
from ..store.database import ScreeningStore
from ..utils.logging import get_logger

logger = get_logger(__name__)

MIN_SAMPLE_SIZE = 10
MAX_SAMPLE_SIZE = 100
MIN_TARGET_AGREEMENT = 0.5
MAX_TARGET_AGREEMENT = 1.0


def unanimous_share(ratings: Dict[str, Dict[str, ScreeningDecision]], study_ids: Sequence[str]) -> Optional[float]:
    """Share of studies on which every participant gave the same verdict."""
    if not study_ids:
        return None
    agreed = 0
    for study_id in study_ids:
        verdicts = {r[study_id] for r in ratings.values() if study_id in r}
        if len(verdicts) == 1:
            agreed += 1
    return agreed / len(study_ids)


class CalibrationController:
    """Create calibration rounds, collect their decisions and score them."""

    def __init__(self, store: ScreeningStore, rng: Optional[random.Random] = None) -> None:
        self.store = store
        self.rng = rng or random.Random()

    def create_round(
        self,
        project_id: str,
        phase: Phase = Phase.TITLE_ABSTRACT,
        sample_size: int = 20,
        target_agreement: float = 0.8,
        created_by: Optional[str] = None,
        participant_ids: Optional[Sequence[str]] = None,
    ) -> CalibrationRound:
        """Sample studies and open a PENDING calibration round.

        Args:
            project_id: Project to calibrate.
            phase: Phase whose unscreened studies are sampled.
            sample_size: Number of studies to sample (10-100).  Fewer are
                used when the phase has fewer unscreened studies.
            target_agreement: Kappa the team aims for (0.5-1.0).
            created_by: Acting user; must be an OWNER or LEAD when given.
            participant_ids: Reviewers taking part.  Defaults to every
                active member allowed to screen.

        Raises:
            ScreeningValidationError: Out-of-range parameters, fewer than
                two participants or no study left to sample.
            ForbiddenError: ``created_by`` cannot manage the project.
        """
        if not MIN_SAMPLE_SIZE <= sample_size <= MAX_SAMPLE_SIZE:
            raise ScreeningValidationError(
                f"Sample size must be between {MIN_SAMPLE_SIZE} and {MAX_SAMPLE_SIZE}"
            )
        if not MIN_TARGET_AGREEMENT <= target_agreement <= MAX_TARGET_AGREEMENT:
            raise ScreeningValidationError(
                f"Target agreement must be between {MIN_TARGET_AGREEMENT} and {MAX_TARGET_AGREEMENT}"
            )

        def work(conn: sqlite3.Connection) -> CalibrationRound:
            self.store.get_project(project_id, conn)
            if created_by is not None:
                member = self.store.get_member(project_id, created_by, conn)
                if member is None or not member.active or not member.role.can_resolve:
                    raise ForbiddenError("Only project owners and leads can create calibration rounds")

            if participant_ids is None:
                participants = [
                    m.user_id
                    for m in self.store.list_members(project_id, active_only=True, conn=conn)
                    if m.role.can_screen
                ]
            else:
                participants = sorted(set(participant_ids))
                for user_id in participants:
                    member = self.store.get_member(project_id, user_id, conn)
                    if member is None or not member.active or not member.role.can_screen:
                        raise ScreeningValidationError(
                            f"User {user_id} cannot take part in calibration for project {project_id}"
                        )
            if len(participants) < 2:
                raise ScreeningValidationError("Calibration needs at least two participants")

            candidates = [
                s.study_id
                for s in self.store.list_studies(
                    project_id, phase=phase, statuses=[StudyStatus.PENDING], conn=conn
                )
                if not s.is_calibration_sample
                and not self.store.get_decisions(s.study_id, phase, conn)
            ]
            if not candidates:
                raise ScreeningValidationError(
                    f"No unscreened studies available in {phase.value} for calibration"
                )
            sample = self.rng.sample(candidates, min(sample_size, len(candidates)))

            round_ = CalibrationRound(
                round_id=generate_id("cal"),
                project_id=project_id,
                phase=phase,
                sample_size=sample_size,
                target_agreement=target_agreement,
                study_ids=sample,
                participant_ids=participants,
                created_by=created_by,
            )
            self.store.insert_calibration_round(conn, round_)
            self.store.mark_calibration_sample(conn, sample)
            self.store.append_audit(
                conn,
                project_id,
                AuditAction.CALIBRATION_CREATED.value,
                actor_id=created_by,
                payload={
                    "round_id": round_.round_id,
                    "phase": phase.value,
                    "sample_size": len(sample),
                    "participants": participants,
                    "target_agreement": target_agreement,
                },
            )
            return self.store.get_calibration_round(round_.round_id, conn)

        round_ = self.store.run(work)
        logger.info(
            f"Created calibration round {round_.round_id} for {project_id}: "
            f"{len(round_.study_ids)} studies, {len(round_.participant_ids)} participants"
        )
        return round_

    def submit_decision(
        self,
        round_id: str,
        study_id: str,
        reviewer_id: str,
        decision: ScreeningDecision,
        reasoning: Optional[str] = None,
        time_spent_ms: Optional[int] = None,
    ) -> CalibrationRound:
        """Record a calibration decision and complete the round when full."""

        def work(conn: sqlite3.Connection) -> CalibrationRound:
            round_ = self.store.get_calibration_round(round_id, conn)
            if round_.status == CalibrationStatus.COMPLETED:
                raise ScreeningValidationError(f"Calibration round {round_id} is already completed")
            if reviewer_id not in round_.participant_ids:
                raise ForbiddenError(f"User {reviewer_id} is not a participant of round {round_id}")
            if study_id not in round_.study_ids:
                raise ScreeningValidationError(f"Study {study_id} is not part of round {round_id}")

            self.store.insert_calibration_decision(
                conn,
                CalibrationDecision(
                    round_id=round_id,
                    study_id=study_id,
                    reviewer_id=reviewer_id,
                    decision=decision,
                    reasoning=reasoning,
                    time_spent_ms=time_spent_ms,
                ),
            )
            if round_.status == CalibrationStatus.PENDING:
                self.store.update_calibration_round(conn, round_id, CalibrationStatus.IN_PROGRESS)

            decisions = self.store.list_calibration_decisions(round_id, conn)
            if len(decisions) == len(round_.participant_ids) * len(round_.study_ids):
                self._complete(conn, round_, decisions)
            return self.store.get_calibration_round(round_id, conn)

        return self.store.run(work)

    def _complete(
        self,
        conn: sqlite3.Connection,
        round_: CalibrationRound,
        decisions: List[CalibrationDecision],
    ) -> None:
        ratings: Dict[str, Dict[str, ScreeningDecision]] = {}
        for d in decisions:
            ratings.setdefault(d.reviewer_id, {})[d.study_id] = d.decision
        kappa = average_kappa(pairwise_kappas(ratings))
        agreement = unanimous_share(ratings, round_.study_ids)
        self.store.update_calibration_round(
            conn,
            round_.round_id,
            CalibrationStatus.COMPLETED,
            kappa_score=kappa,
            percent_agreement=agreement,
        )
        passed = kappa is not None and kappa >= round_.target_agreement
        self.store.append_audit(
            conn,
            round_.project_id,
            AuditAction.CALIBRATION_COMPLETED.value,
            payload={
                "round_id": round_.round_id,
                "kappa": kappa,
                "percent_agreement": agreement,
                "target_agreement": round_.target_agreement,
                "passed": passed,
            },
        )
        logger.info(
            f"Calibration round {round_.round_id} completed: kappa={kappa}, "
            f"agreement={agreement}, passed={passed}",
            extra={"project_id": round_.project_id, "round_id": round_.round_id},
        )

    def get_round(self, round_id: str) -> CalibrationRound:
        return self.store.get_calibration_round(round_id)

    def list_rounds(self, project_id: str) -> List[CalibrationRound]:
        self.store.get_project(project_id)
        return self.store.list_calibration_rounds(project_id)
