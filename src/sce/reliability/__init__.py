"""Inter-rater reliability: Cohen's Kappa, agreement bands and analytics."""

from .analyzer import ReliabilityAnalyzer, ReliabilityReport
from .kappa import (
    KappaInterpretation,
    PairwiseKappa,
    cohens_kappa,
    contingency_table,
    interpret_kappa,
    pairwise_kappas,
    percent_agreement,
)

__all__ = [
    "ReliabilityAnalyzer",
    "ReliabilityReport",
    "KappaInterpretation",
    "PairwiseKappa",
    "cohens_kappa",
    "contingency_table",
    "interpret_kappa",
    "pairwise_kappas",
    "percent_agreement",
]
