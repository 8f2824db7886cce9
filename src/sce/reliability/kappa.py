"""Cohen's Kappa and agreement statistics for screening decisions.

Kappa is computed from a contingency table over the decision categories
the two reviewers actually used:

    kappa = (po - pe) / (1 - pe)

where ``po`` is the observed agreement proportion and ``pe`` the
agreement expected by chance from the marginal frequencies.  When both
reviewers put every study in the same single category ``pe`` is 1 and
kappa is defined as 1.0.  Fewer than two co-screened studies give no
kappa at all (``None``).
"""

from __future__ import annotations

from itertools import combinations
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from pydantic import BaseModel

from ..core.models import ScreeningDecision

DecisionPair = Tuple[ScreeningDecision, ScreeningDecision]

_COLLAPSED = {ScreeningDecision.MAYBE: ScreeningDecision.EXCLUDE}


class KappaInterpretation(BaseModel):
    """Landis & Koch band for a kappa value."""

    level: str
    recommendation: str


class PairwiseKappa(BaseModel):
    reviewer_a: str
    reviewer_b: str
    shared_studies: int
    kappa: Optional[float] = None
    percent_agreement: Optional[float] = None


def _values(decisions: Sequence[ScreeningDecision], collapse_maybe: bool) -> List[str]:
    if collapse_maybe:
        decisions = [_COLLAPSED.get(d, d) for d in decisions]
    return [ScreeningDecision(d).value for d in decisions]


def contingency_table(pairs: Sequence[DecisionPair], collapse_maybe: bool = False) -> pd.DataFrame:
    """Square table of counts: rows are reviewer A, columns reviewer B."""
    first = _values([a for a, _ in pairs], collapse_maybe)
    second = _values([b for _, b in pairs], collapse_maybe)
    categories = sorted(set(first) | set(second))
    table = pd.crosstab(pd.Series(first, name="reviewer_a"), pd.Series(second, name="reviewer_b"))
    return table.reindex(index=categories, columns=categories, fill_value=0)


def percent_agreement(pairs: Sequence[DecisionPair], collapse_maybe: bool = False) -> Optional[float]:
    if not pairs:
        return None
    first = _values([a for a, _ in pairs], collapse_maybe)
    second = _values([b for _, b in pairs], collapse_maybe)
    return sum(1 for a, b in zip(first, second) if a == b) / len(pairs)


def cohens_kappa(pairs: Sequence[DecisionPair], collapse_maybe: bool = False) -> Optional[float]:
    """Cohen's Kappa between two reviewers; ``None`` below two shared studies.

    Args:
        pairs: One ``(reviewer_a, reviewer_b)`` decision pair per study.
        collapse_maybe: Count MAYBE as EXCLUDE before tabulating.
    """
    if len(pairs) < 2:
        return None
    table = contingency_table(pairs, collapse_maybe).to_numpy(dtype=float)
    n = table.sum()
    po = np.trace(table) / n
    pe = float(np.dot(table.sum(axis=1), table.sum(axis=0))) / (n * n)
    if np.isclose(pe, 1.0):
        return 1.0
    return float((po - pe) / (1.0 - pe))


def interpret_kappa(kappa: float) -> KappaInterpretation:
    """Map a kappa value onto the Landis & Koch agreement bands."""
    if kappa < 0:
        return KappaInterpretation(
            level="Poor",
            recommendation="Agreement is worse than chance. Review eligibility criteria and retrain reviewers.",
        )
    if kappa <= 0.20:
        return KappaInterpretation(
            level="Slight",
            recommendation="Very low agreement. Run a calibration round and clarify eligibility criteria.",
        )
    if kappa <= 0.40:
        return KappaInterpretation(
            level="Fair",
            recommendation="Below acceptable threshold. Consider calibration and team discussion.",
        )
    if kappa <= 0.60:
        return KappaInterpretation(
            level="Moderate",
            recommendation="Acceptable for exploratory work. Consider improving before publication.",
        )
    if kappa <= 0.80:
        return KappaInterpretation(
            level="Substantial",
            recommendation="Good agreement. Suitable for most systematic reviews.",
        )
    return KappaInterpretation(
        level="Almost Perfect",
        recommendation="Excellent agreement. Meets the highest standards for systematic reviews.",
    )


def pairwise_kappas(
    ratings: Mapping[str, Mapping[str, ScreeningDecision]],
    collapse_maybe: bool = False,
) -> List[PairwiseKappa]:
    """Kappa for every reviewer pair that shares at least one study.

    Args:
        ratings: ``{reviewer_id: {study_id: decision}}``.
    """
    results: List[PairwiseKappa] = []
    for reviewer_a, reviewer_b in combinations(sorted(ratings), 2):
        shared = sorted(set(ratings[reviewer_a]) & set(ratings[reviewer_b]))
        if not shared:
            continue
        pairs = [(ratings[reviewer_a][s], ratings[reviewer_b][s]) for s in shared]
        results.append(
            PairwiseKappa(
                reviewer_a=reviewer_a,
                reviewer_b=reviewer_b,
                shared_studies=len(shared),
                kappa=cohens_kappa(pairs, collapse_maybe),
                percent_agreement=percent_agreement(pairs, collapse_maybe),
            )
        )
    return results


def average_kappa(pairs: Sequence[PairwiseKappa]) -> Optional[float]:
    values = [p.kappa for p in pairs if p.kappa is not None]
    if not values:
        return None
    return float(np.mean(values))


def kappa_matrix(
    reviewers: Sequence[str], pairs: Sequence[PairwiseKappa]
) -> Dict[str, Dict[str, Optional[float]]]:
    """Symmetric reviewer-by-reviewer kappa matrix (diagonal is 1.0)."""
    matrix: Dict[str, Dict[str, Optional[float]]] = {
        a: {b: (1.0 if a == b else None) for b in reviewers} for a in reviewers
    }
    for p in pairs:
        matrix[p.reviewer_a][p.reviewer_b] = p.kappa
        matrix[p.reviewer_b][p.reviewer_a] = p.kappa
    return matrix
