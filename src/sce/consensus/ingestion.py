"""Hand-off of included studies to the downstream ingestion queue.

Finalizing a study as INCLUDE only writes a row into the
``ingestion_signals`` outbox, inside the finalize transaction.  The
:class:`IngestionDispatcher` drains that outbox after commit, claiming
each signal exactly once before calling the external queue, so retried
transactions, reconciliation repairs and the live path can never
enqueue the same study twice.
"""

from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Protocol

from ..config.settings import settings
from ..core.models import IngestionSignal, Phase
from ..store.database import ScreeningStore
from ..utils.logging import get_logger

logger = get_logger(__name__)


class IngestionQueue(Protocol):
    """External collaborator that runs PDF ingestion jobs."""

    def enqueue_ingestion(self, study_id: str, phase: Phase, source: str) -> None:
        ...


class RecordingIngestionQueue:
    """Ingestion queue that keeps enqueued jobs in memory.

    Used when no external queue is configured (CLI, local runs) and in
    tests to observe exactly which jobs were enqueued.
    """

    def __init__(self) -> None:
        self.jobs: List[dict] = []

    def enqueue_ingestion(self, study_id: str, phase: Phase, source: str) -> None:
        self.jobs.append({"study_id": study_id, "phase": phase, "source": source})
        logger.info(f"Enqueued ingestion for study {study_id} ({phase.value}, source={source})")


class JsonlIngestionQueue:
    """Ingestion queue that appends one JSON line per job to a spool file.

    The downstream ingestion worker tails the file.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def enqueue_ingestion(self, study_id: str, phase: Phase, source: str) -> None:
        record = {
            "study_id": study_id,
            "phase": Phase(phase).value,
            "source": source,
            "enqueued_at": datetime.now(timezone.utc).isoformat(),
        }
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(record) + "\n")
        logger.info(f"Spooled ingestion for study {study_id} to {self.path}")


def default_ingestion_queue() -> IngestionQueue:
    """Queue selected by ``settings.ingestion_spool_path``."""
    if settings.ingestion_spool_path is not None:
        return JsonlIngestionQueue(settings.ingestion_spool_path)
    return RecordingIngestionQueue()


class IngestionDispatcher:
    """Deliver pending ingestion signals to an :class:`IngestionQueue`."""

    def __init__(self, store: ScreeningStore, queue: IngestionQueue) -> None:
        self.store = store
        self.queue = queue

    def _claim(self, signal: IngestionSignal) -> bool:
        return self.store.run(
            lambda conn: self.store.claim_ingestion_signal(conn, signal.study_id)
        )

    def _release(self, signal: IngestionSignal) -> None:
        self.store.run(
            lambda conn: self.store.release_ingestion_signal(conn, signal.study_id)
        )

    def dispatch_pending(self, project_id: Optional[str] = None) -> int:
        """Enqueue every undelivered signal; returns how many were enqueued.

        A signal whose enqueue call fails is released so the next
        dispatch retries it.
        """
        dispatched = 0
        for signal in self.store.list_ingestion_signals(project_id, pending_only=True):
            if not self._claim(signal):
                continue
            try:
                self.queue.enqueue_ingestion(signal.study_id, signal.phase, signal.source)
            except Exception as exc:
                self._release(signal)
                logger.error(f"Failed to enqueue ingestion for study {signal.study_id}: {exc}")
                continue
            dispatched += 1
        if dispatched:
            logger.info(f"Dispatched {dispatched} ingestion jobs")
        return dispatched
