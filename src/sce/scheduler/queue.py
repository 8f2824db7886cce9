"""Per-reviewer screening queues.

A study is in reviewer R's queue for phase P when R has not decided it
in P and it is still open (PENDING or SCREENING).  Studies in conflict
or already finalized never appear.  The order depends on the selected
:class:`~sce.core.models.QueueStrategy`.
"""

from __future__ import annotations

import random
from typing import Dict, List, Optional, Sequence

import pandas as pd
from pydantic import BaseModel

from ..config.settings import settings
from ..core.errors import ScreeningValidationError
from ..core.models import (
    OPEN_STATUSES,
    TERMINAL_STATUSES,
    Phase,
    ProjectRole,
    QueueStrategy,
    ScreeningDecision,
    Study,
    StudyStatus,
)
from ..store.database import ScreeningStore
from ..utils.logging import get_logger

logger = get_logger(__name__)


class QueuedStudy(BaseModel):
    """A study as presented in a reviewer's queue."""

    study_id: str
    work_id: str
    title: str
    abstract: Optional[str] = None
    year: Optional[int] = None
    journal: Optional[str] = None
    keywords: List[str] = []
    status: StudyStatus
    priority_score: int
    ai_suggestion: Optional[ScreeningDecision] = None
    ai_confidence: Optional[float] = None
    ai_reasoning: Optional[str] = None
    position: int


def _by_priority(studies: Sequence[Study]) -> List[Study]:
    # sorted() is stable, so ties keep creation order
    return sorted(studies, key=lambda s: -s.priority_score)


def _by_confidence(studies: Sequence[Study], descending: bool) -> List[Study]:
    ranked = _by_priority(studies)
    known = [s for s in ranked if s.ai_confidence is not None]
    unknown = [s for s in ranked if s.ai_confidence is None]
    known.sort(key=lambda s: s.ai_confidence, reverse=descending)
    return known + unknown if descending else unknown + known


def balance_queue(studies: Sequence[Study], split: Optional[float] = None) -> List[Study]:
    """Interleave low- and high-confidence studies, starting with a low one.

    Studies without an AI confidence count as low-confidence.
    """
    threshold = settings.balanced_confidence_split if split is None else split
    high = [s for s in studies if s.ai_confidence is not None and s.ai_confidence >= threshold]
    low = [s for s in studies if s.ai_confidence is None or s.ai_confidence < threshold]
    balanced: List[Study] = []
    for i in range(max(len(high), len(low))):
        if i < len(low):
            balanced.append(low[i])
        if i < len(high):
            balanced.append(high[i])
    return balanced


def order_studies(
    studies: Sequence[Study],
    strategy: QueueStrategy,
    rng: Optional[random.Random] = None,
) -> List[Study]:
    """Order eligible studies (given in creation order) by ``strategy``."""
    if strategy == QueueStrategy.PRIORITY:
        return _by_priority(studies)
    if strategy == QueueStrategy.AI_CONFIDENT:
        return _by_confidence(studies, descending=True)
    if strategy == QueueStrategy.AI_UNCERTAIN:
        return _by_confidence(studies, descending=False)
    if strategy == QueueStrategy.BALANCED:
        return balance_queue(_by_priority(studies))
    if strategy == QueueStrategy.RANDOM:
        shuffled = list(studies)
        (rng or random.Random()).shuffle(shuffled)
        return shuffled
    return list(studies)


class ScreeningQueue:
    """Build ordered, duplicate-free screening queues for reviewers."""

    def __init__(self, store: ScreeningStore, rng: Optional[random.Random] = None) -> None:
        self.store = store
        self.rng = rng

    def get_queue(
        self,
        reviewer_id: str,
        project_id: str,
        phase: Phase = Phase.TITLE_ABSTRACT,
        strategy: QueueStrategy = QueueStrategy.DEFAULT,
        limit: Optional[int] = None,
    ) -> List[QueuedStudy]:
        """Return the next studies awaiting ``reviewer_id`` in ``phase``."""
        limit = settings.default_queue_limit if limit is None else limit
        if limit < 1:
            raise ScreeningValidationError("limit must be positive")
        self.store.get_project(project_id)
        eligible = self.store.studies_awaiting(project_id, reviewer_id, phase)
        ordered = order_studies(eligible, QueueStrategy(strategy), self.rng)[:limit]
        logger.debug(
            f"Queue for {reviewer_id} in {project_id}/{phase.value}: "
            f"{len(ordered)} of {len(eligible)} eligible ({strategy})"
        )
        return [
            QueuedStudy(
                study_id=s.study_id,
                work_id=s.work_id,
                title=s.title,
                abstract=s.abstract,
                year=s.year,
                journal=s.journal,
                keywords=s.keywords,
                status=s.status,
                priority_score=s.priority_score,
                ai_suggestion=s.ai_suggestion,
                ai_confidence=s.ai_confidence,
                ai_reasoning=s.ai_reasoning,
                position=i + 1,
            )
            for i, s in enumerate(ordered)
        ]

    def get_queue_stats(self, project_id: str, phase: Phase = Phase.TITLE_ABSTRACT) -> Dict[str, object]:
        studies = self.store.list_studies(project_id, phase=phase)
        open_studies = [s for s in studies if s.status in OPEN_STATUSES]
        with_ai = [s for s in open_studies if s.ai_suggestion is not None]
        return {
            "total": len(studies),
            "pending": len(open_studies),
            "screened": sum(1 for s in studies if s.status in TERMINAL_STATUSES),
            "conflicts": sum(1 for s in studies if s.status == StudyStatus.CONFLICT),
            "ai_coverage": (len(with_ai) / len(open_studies) * 100) if open_studies else 100.0,
        }

    def get_workload_distribution(
        self, project_id: str, phase: Phase = Phase.TITLE_ABSTRACT
    ) -> List[Dict[str, object]]:
        """Decisions made and studies still awaiting each screening member."""
        members = self.store.list_members(
            project_id,
            roles=[ProjectRole.OWNER, ProjectRole.LEAD, ProjectRole.REVIEWER],
        )
        decisions = self.store.list_project_decisions(project_id, phase)
        completed: Dict[str, int] = {}
        if decisions:
            df = pd.DataFrame([{"reviewer_id": d.reviewer_id} for d in decisions])
            completed = df["reviewer_id"].value_counts().to_dict()
        distribution = [
            {
                "user_id": m.user_id,
                "role": m.role.value,
                "active": m.active,
                "completed": int(completed.get(m.user_id, 0)),
                "pending": len(self.store.studies_awaiting(project_id, m.user_id, phase)),
            }
            for m in members
        ]
        return sorted(distribution, key=lambda d: d["completed"], reverse=True)
