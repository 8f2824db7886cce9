"""Applying a settled verdict to a study.

Live decisions, conflict resolutions and reconciliation repairs all go
through :func:`finalize_study`, inside the caller's transaction.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..core.errors import InconsistentStateError
from ..core.models import AuditAction, Finalized, Phase, ScreeningDecision, Study
from ..store.database import ScreeningStore
from ..utils.logging import get_logger
from .state_machine import Transition, consensus_transition

logger = get_logger(__name__)


@dataclass
class FinalizeResult:
    """Study state after a verdict was applied."""

    study: Study
    transition: Transition
    ingestion_signaled: bool = False


def finalize_study(
    store: ScreeningStore,
    conn: sqlite3.Connection,
    study: Study,
    verdict: ScreeningDecision,
    *,
    phase: Optional[Phase] = None,
    actor_id: Optional[str] = None,
    source: str,
    ingestion_source: str,
    decisions_recorded: int = 1,
    reviewers_required: int = 1,
    details: Optional[Dict[str, Any]] = None,
) -> FinalizeResult:
    """Write ``verdict`` into the study and emit the resulting side effects.

    An INCLUDE at title/abstract advances the study to full-text as
    PENDING with no final decision.  Any other verdict sets the matching
    terminal status; a terminal INCLUDE records the ingestion-ready
    signal, at most one per study across all phases.

    Raises:
        InconsistentStateError: ``phase`` is not the study's phase, or the
            study already carries a final verdict.
    """
    phase = phase or study.phase
    if study.phase != phase:
        raise InconsistentStateError(
            study.study_id, f"finalizing phase {phase.value} but study is in {study.phase.value}"
        )
    state = study.final_state
    if isinstance(state, Finalized):
        raise InconsistentStateError(
            study.study_id, f"already finalized as {state.verdict.value} in {study.phase.value}"
        )
    transition = consensus_transition(phase, verdict, decisions_recorded, reviewers_required)
    updated = store.update_study_state(
        conn,
        study.study_id,
        status=transition.new_status,
        phase=transition.new_phase,
        final_decision=transition.final_decision,
    )
    signaled = False
    if transition.triggers_ingestion:
        signaled = store.insert_ingestion_signal(conn, updated, phase, ingestion_source)
        if not signaled:
            logger.info(f"Ingestion already signaled for study {study.study_id}")

    action = AuditAction.PHASE_ADVANCED if transition.advanced else AuditAction.STUDY_FINALIZED
    payload: Dict[str, Any] = {
        "verdict": verdict.value,
        "source": source,
        "from_phase": phase.value,
        "to_phase": transition.new_phase.value,
        "status": transition.new_status.value,
        "ingestion_signaled": signaled,
    }
    payload.update(details or {})
    store.append_audit(
        conn,
        study.project_id,
        action.value,
        study_id=study.study_id,
        actor_id=actor_id,
        payload=payload,
    )
    logger.info(
        f"Study {study.study_id} {action.value}: {verdict.value} in {phase.value} "
        f"-> {transition.new_phase.value}/{transition.new_status.value} (source={source})"
    )
    return FinalizeResult(study=updated, transition=transition, ingestion_signaled=signaled)
