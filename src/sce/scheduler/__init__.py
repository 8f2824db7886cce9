"""Screening queue scheduling and study prioritization."""

from .priority import PriorityScorer, compute_priority_score
from .queue import QueuedStudy, ScreeningQueue, balance_queue, order_studies

__all__ = [
    "PriorityScorer",
    "compute_priority_score",
    "QueuedStudy",
    "ScreeningQueue",
    "balance_queue",
    "order_studies",
]
