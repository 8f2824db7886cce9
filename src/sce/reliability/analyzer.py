"""Project-level inter-rater reliability and reviewer analytics."""

from __future__ import annotations

from typing import Dict, List, Optional

import pandas as pd
from pydantic import BaseModel

from ..core.models import Finalized, Phase, ScreeningDecision, Study
from ..store.database import ScreeningStore
from ..utils.logging import get_logger
from .kappa import (
    KappaInterpretation,
    PairwiseKappa,
    average_kappa,
    interpret_kappa,
    kappa_matrix,
    pairwise_kappas,
)

logger = get_logger(__name__)


class ReliabilityReport(BaseModel):
    """Agreement statistics for one project phase."""

    project_id: str
    phase: Phase
    kappa: Optional[float] = None
    interpretation: Optional[KappaInterpretation] = None
    reviewers: List[str] = []
    pairwise: List[PairwiseKappa] = []
    matrix: Dict[str, Dict[str, Optional[float]]] = {}
    studies_analyzed: int = 0
    agreement_rate: Optional[float] = None
    collapse_maybe: bool = False


def _phase_order(phase: Phase) -> int:
    order = [Phase.TITLE_ABSTRACT, Phase.FULL_TEXT, Phase.FINAL]
    return order.index(phase)


def phase_verdict(study: Study, phase: Phase) -> Optional[ScreeningDecision]:
    """Settled outcome of ``study`` in ``phase``, if any.

    A study that has moved past ``phase`` was advanced, which only an
    INCLUDE does.
    """
    if _phase_order(study.phase) > _phase_order(phase):
        return ScreeningDecision.INCLUDE
    state = study.final_state
    if study.phase == phase and isinstance(state, Finalized):
        return state.verdict
    return None


class ReliabilityAnalyzer:
    """Compute agreement statistics from the decision store."""

    def __init__(self, store: ScreeningStore) -> None:
        self.store = store

    def decision_frame(self, project_id: str, phase: Phase) -> pd.DataFrame:
        """Decisions of a phase as a study-by-reviewer table."""
        decisions = self.store.list_project_decisions(project_id, phase)
        if not decisions:
            return pd.DataFrame()
        df = pd.DataFrame(
            [
                {"study_id": d.study_id, "reviewer_id": d.reviewer_id, "decision": d.decision.value}
                for d in decisions
            ]
        )
        return df.pivot(index="study_id", columns="reviewer_id", values="decision")

    def get_reliability(
        self,
        project_id: str,
        phase: Phase = Phase.TITLE_ABSTRACT,
        collapse_maybe: bool = False,
    ) -> ReliabilityReport:
        """Average pairwise kappa, its interpretation and the per-pair matrix."""
        self.store.get_project(project_id)
        frame = self.decision_frame(project_id, phase)
        if frame.empty:
            return ReliabilityReport(project_id=project_id, phase=phase, collapse_maybe=collapse_maybe)

        ratings = {
            reviewer: {
                study_id: ScreeningDecision(value)
                for study_id, value in frame[reviewer].dropna().items()
            }
            for reviewer in frame.columns
        }
        reviewers = sorted(ratings)
        pairs = pairwise_kappas(ratings, collapse_maybe)
        kappa = average_kappa(pairs)

        multi = frame[frame.notna().sum(axis=1) >= 2]
        agreement = None
        if not multi.empty:
            agreement = float(multi.apply(lambda row: row.dropna().nunique() == 1, axis=1).mean())

        report = ReliabilityReport(
            project_id=project_id,
            phase=phase,
            kappa=kappa,
            interpretation=interpret_kappa(kappa) if kappa is not None else None,
            reviewers=reviewers,
            pairwise=pairs,
            matrix=kappa_matrix(reviewers, pairs),
            studies_analyzed=len(multi),
            agreement_rate=agreement,
            collapse_maybe=collapse_maybe,
        )
        logger.info(
            f"Reliability for {project_id}/{phase.value}: kappa={kappa} over "
            f"{len(pairs)} reviewer pairs, {len(multi)} co-screened studies"
        )
        return report

    def reviewer_performance(self, project_id: str, phase: Phase = Phase.TITLE_ABSTRACT) -> List[Dict[str, object]]:
        """Per-reviewer volume, pace, confidence and agreement with outcomes."""
        decisions = self.store.list_project_decisions(project_id, phase)
        if not decisions:
            return []
        verdicts = {
            s.study_id: phase_verdict(s, phase) for s in self.store.list_studies(project_id)
        }
        df = pd.DataFrame(
            [
                {
                    "reviewer_id": d.reviewer_id,
                    "time_spent_ms": d.time_spent_ms,
                    "confidence": d.confidence,
                    "matches_final": (
                        None
                        if verdicts.get(d.study_id) is None
                        else verdicts[d.study_id] == d.decision
                    ),
                }
                for d in decisions
            ]
        )
        performance: List[Dict[str, object]] = []
        for reviewer_id, group in df.groupby("reviewer_id"):
            settled = group["matches_final"].dropna()
            performance.append(
                {
                    "reviewer_id": reviewer_id,
                    "decisions": int(len(group)),
                    "avg_time_ms": float(group["time_spent_ms"].dropna().mean())
                    if group["time_spent_ms"].notna().any()
                    else None,
                    "avg_confidence": float(group["confidence"].dropna().mean())
                    if group["confidence"].notna().any()
                    else None,
                    "agreement_with_final": float(settled.astype(bool).mean()) if len(settled) else None,
                }
            )
        return sorted(performance, key=lambda p: p["decisions"], reverse=True)
