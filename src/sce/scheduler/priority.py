"""Batch recomputation of study priority scores.

Scores start at a base of 50 and are nudged by publication recency,
journal and keyword matches, and the AI triage confidence: uncertain
AI calls are pushed up so humans see them first, confident ones are
pushed slightly down.  The result is clamped to [0, 100].
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Optional

from ..config.settings import settings
from ..core.models import OPEN_STATUSES, Study
from ..store.database import ScreeningStore
from ..utils.logging import get_logger

logger = get_logger(__name__)


def compute_priority_score(
    study: Study,
    current_year: int,
    boost_by_year: bool = True,
    journals: Iterable[str] = (),
    keywords: Iterable[str] = (),
    base_score: Optional[int] = None,
) -> int:
    """Score a single study on a 0-100 scale."""
    score = settings.priority_base_score if base_score is None else base_score

    if boost_by_year and study.year:
        years_old = current_year - study.year
        if years_old <= 2:
            score += 20
        elif years_old <= 5:
            score += 10
        elif years_old > 10:
            score -= 10

    journal_list = [j.lower() for j in journals]
    if journal_list and study.journal:
        journal = study.journal.lower()
        if any(j in journal for j in journal_list):
            score += 15

    keyword_list = [k.lower() for k in keywords]
    if keyword_list:
        matches = sum(
            1 for kw in study.keywords if any(bk in kw.lower() for bk in keyword_list)
        )
        score += min(matches * 5, 20)

    if study.ai_confidence is not None:
        if study.ai_confidence < 0.6:
            score += 15
        elif study.ai_confidence > 0.9:
            score -= 5

    return max(0, min(100, score))


class PriorityScorer:
    """Recompute priority scores for the open studies of a project."""

    def __init__(self, store: ScreeningStore) -> None:
        self.store = store

    def recompute(
        self,
        project_id: str,
        boost_by_year: bool = True,
        journals: Optional[List[str]] = None,
        keywords: Optional[List[str]] = None,
        current_year: Optional[int] = None,
    ) -> int:
        """Rescore open studies one at a time; returns how many changed.

        Each study is written in its own short transaction so the batch
        never holds the writer lock for long.
        """
        year = current_year or datetime.utcnow().year
        studies = self.store.list_studies(project_id, statuses=OPEN_STATUSES)
        updated = 0
        for study in studies:
            score = compute_priority_score(
                study,
                current_year=year,
                boost_by_year=boost_by_year,
                journals=journals or [],
                keywords=keywords or [],
            )
            if score == study.priority_score:
                continue
            self.store.run(
                lambda conn, sid=study.study_id, value=score: self.store.set_priority_score(
                    conn, sid, value
                )
            )
            updated += 1
        logger.info(
            f"Recomputed priority scores for project {project_id}: "
            f"{updated} of {len(studies)} studies changed"
        )
        return updated
