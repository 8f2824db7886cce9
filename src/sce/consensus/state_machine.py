"""Screening state machine.

Pure functions that map the decisions recorded for a study in a phase
to the study's next state.  Nothing here touches storage; the evaluator,
the conflict manager and the reconciliation sweeper all apply the
transitions computed here so there is exactly one definition of what
it means to finalize a study.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel

from ..core.models import (
    NEXT_PHASE,
    STATUS_FOR_DECISION,
    Phase,
    ScreeningDecision,
    StudyStatus,
)


class TransitionReason(str, Enum):
    WAITING_FOR_REVIEWERS = "waiting_for_reviewers"
    CONFLICT_DETECTED = "conflict_detected"
    CONSENSUS_REACHED = "consensus_reached"


class Transition(BaseModel):
    """Next state of a study computed from its decisions."""

    reason: TransitionReason
    new_status: StudyStatus
    new_phase: Phase
    final_decision: Optional[ScreeningDecision] = None
    verdict: Optional[ScreeningDecision] = None
    opens_conflict: bool = False
    advanced: bool = False
    triggers_ingestion: bool = False
    decisions_recorded: int = 0
    reviewers_required: int = 1


def is_unanimous(decisions: Sequence[ScreeningDecision]) -> bool:
    return len(set(decisions)) == 1


def should_auto_advance(phase: Phase, verdict: ScreeningDecision) -> bool:
    """INCLUDE at title/abstract moves straight on to full-text screening."""
    return phase == Phase.TITLE_ABSTRACT and verdict == ScreeningDecision.INCLUDE


def consensus_transition(
    phase: Phase,
    verdict: ScreeningDecision,
    decisions_recorded: int = 1,
    reviewers_required: int = 1,
) -> Transition:
    """Transition for a settled verdict (unanimous decisions or a resolution)."""
    advance = should_auto_advance(phase, verdict)
    if advance:
        next_phase = NEXT_PHASE[phase]
        return Transition(
            reason=TransitionReason.CONSENSUS_REACHED,
            new_status=StudyStatus.PENDING,
            new_phase=next_phase,
            final_decision=None,
            verdict=verdict,
            advanced=True,
            decisions_recorded=decisions_recorded,
            reviewers_required=reviewers_required,
        )
    return Transition(
        reason=TransitionReason.CONSENSUS_REACHED,
        new_status=STATUS_FOR_DECISION[verdict],
        new_phase=phase,
        final_decision=verdict,
        verdict=verdict,
        triggers_ingestion=verdict == ScreeningDecision.INCLUDE,
        decisions_recorded=decisions_recorded,
        reviewers_required=reviewers_required,
    )


def evaluate_decisions(
    phase: Phase,
    decisions: Sequence[ScreeningDecision],
    reviewers_required: int,
) -> Transition:
    """Compute the next state of a study from its decisions in ``phase``.

    Fewer than ``reviewers_required`` decisions keeps the study in
    screening.  Once the quota is met, unanimous decisions finalize the
    study and any disagreement opens a conflict; there is no majority
    vote, whatever the number of reviewers.
    """
    if reviewers_required < 1:
        raise ValueError("reviewers_required must be at least 1")
    recorded = len(decisions)
    if recorded < reviewers_required:
        return Transition(
            reason=TransitionReason.WAITING_FOR_REVIEWERS,
            new_status=StudyStatus.SCREENING,
            new_phase=phase,
            decisions_recorded=recorded,
            reviewers_required=reviewers_required,
        )
    if not is_unanimous(decisions):
        return Transition(
            reason=TransitionReason.CONFLICT_DETECTED,
            new_status=StudyStatus.CONFLICT,
            new_phase=phase,
            opens_conflict=True,
            decisions_recorded=recorded,
            reviewers_required=reviewers_required,
        )
    return consensus_transition(phase, decisions[0], recorded, reviewers_required)


def validate_phase_advancement(
    current_phase: Phase,
    status_counts: Dict[StudyStatus, int],
    open_conflicts: int,
) -> List[str]:
    """Return the reasons a manual phase advancement is blocked."""
    errors: List[str] = []
    if NEXT_PHASE[current_phase] is None:
        errors.append("Cannot advance: already at final phase")
    pending = status_counts.get(StudyStatus.PENDING, 0)
    if pending:
        errors.append(f"Cannot advance: {pending} studies still pending")
    if open_conflicts:
        errors.append(f"Cannot advance: {open_conflicts} unresolved conflicts")
    screening = status_counts.get(StudyStatus.SCREENING, 0)
    if screening:
        errors.append(f"Cannot advance: {screening} studies awaiting more reviewers")
    return errors


def phase_completion(
    total_studies: int,
    studies_with_required_decisions: int,
    unresolved_conflicts: int,
) -> Dict[str, object]:
    blockers: List[str] = []
    if unresolved_conflicts > 0:
        blockers.append(f"{unresolved_conflicts} unresolved conflicts")
    incomplete = total_studies - studies_with_required_decisions
    if incomplete > 0:
        blockers.append(f"{incomplete} studies need more reviews")
    percentage = (
        round(studies_with_required_decisions / total_studies * 100) if total_studies > 0 else 100
    )
    return {
        "complete": not blockers and total_studies > 0,
        "percentage": percentage,
        "blockers": blockers,
    }
