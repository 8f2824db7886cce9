"""Periodic reconciliation sweeps using the ``schedule`` library."""

from __future__ import annotations

import time
from typing import List, Optional, Sequence

import schedule

from ..config.settings import settings
from ..consensus.ingestion import IngestionDispatcher
from ..utils.logging import get_logger
from .sweeper import ReconciliationSweeper, SweepReport

logger = get_logger(__name__)


class SweepScheduler:
    """Run the reconciliation sweeper (and ingestion dispatch) on a timer."""

    def __init__(
        self,
        sweeper: ReconciliationSweeper,
        project_ids: Sequence[str],
        interval_minutes: Optional[int] = None,
        dispatcher: Optional[IngestionDispatcher] = None,
    ) -> None:
        self.sweeper = sweeper
        self.project_ids = list(project_ids)
        self.interval_minutes = interval_minutes or settings.sweep_interval_minutes
        self.dispatcher = dispatcher
        self.scheduler = schedule.Scheduler()
        self.job = self.scheduler.every(self.interval_minutes).minutes.do(self.run_once)

    def run_once(self) -> List[SweepReport]:
        """Sweep every registered project, then drain pending ingestion signals."""
        reports = [self.sweeper.sweep(project_id) for project_id in self.project_ids]
        if self.dispatcher is not None:
            for project_id in self.project_ids:
                self.dispatcher.dispatch_pending(project_id)
        return reports

    def run_pending(self) -> None:
        self.scheduler.run_pending()

    def start(self, poll_seconds: float = 30.0, max_iterations: Optional[int] = None) -> None:
        """Start the scheduler loop in a blocking manner."""
        logger.info(
            f"Starting sweep scheduler for {len(self.project_ids)} projects "
            f"every {self.interval_minutes} minutes"
        )
        iterations = 0
        while max_iterations is None or iterations < max_iterations:
            self.scheduler.run_pending()
            time.sleep(poll_seconds)
            iterations += 1
