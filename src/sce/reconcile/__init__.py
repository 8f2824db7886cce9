"""Reconciliation of study state with decision records."""

from .scheduler import SweepScheduler
from .sweeper import ReconciliationSweeper, SweepReport

__all__ = ["ReconciliationSweeper", "SweepReport", "SweepScheduler"]
