"""Core domain models for projects, studies, decisions and conflicts.

Every entity the engine persists has a Pydantic model here.  The store
converts rows into these models and the consensus, queue, reliability
and calibration components only ever see the models, never raw rows.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator


class Phase(str, Enum):
    """Stages of the review pipeline."""

    TITLE_ABSTRACT = "title_abstract"
    FULL_TEXT = "full_text"
    FINAL = "final"


class StudyStatus(str, Enum):
    """Screening status of a study within its current phase."""

    PENDING = "pending"
    SCREENING = "screening"
    CONFLICT = "conflict"
    INCLUDED = "included"
    EXCLUDED = "excluded"
    MAYBE = "maybe"


class ScreeningDecision(str, Enum):
    """Verdict a reviewer (or a resolver) gives a study."""

    INCLUDE = "include"
    EXCLUDE = "exclude"
    MAYBE = "maybe"


class ConflictStatus(str, Enum):
    PENDING = "pending"
    IN_DISCUSSION = "in_discussion"
    RESOLVED = "resolved"


class ProjectRole(str, Enum):
    """Roles a user can hold in a project."""

    OWNER = "owner"
    LEAD = "lead"
    REVIEWER = "reviewer"
    OBSERVER = "observer"

    @property
    def can_resolve(self) -> bool:
        return self in (ProjectRole.OWNER, ProjectRole.LEAD)

    @property
    def can_screen(self) -> bool:
        return self is not ProjectRole.OBSERVER


class CalibrationStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class QueueStrategy(str, Enum):
    """Ordering strategies for a reviewer's screening queue."""

    DEFAULT = "default"  # FIFO
    PRIORITY = "priority"
    AI_CONFIDENT = "ai_confident"
    AI_UNCERTAIN = "ai_uncertain"
    BALANCED = "balanced"
    RANDOM = "random"


NEXT_PHASE: Dict[Phase, Optional[Phase]] = {
    Phase.TITLE_ABSTRACT: Phase.FULL_TEXT,
    Phase.FULL_TEXT: Phase.FINAL,
    Phase.FINAL: None,
}

STATUS_FOR_DECISION: Dict[ScreeningDecision, StudyStatus] = {
    ScreeningDecision.INCLUDE: StudyStatus.INCLUDED,
    ScreeningDecision.EXCLUDE: StudyStatus.EXCLUDED,
    ScreeningDecision.MAYBE: StudyStatus.MAYBE,
}

OPEN_STATUSES = frozenset({StudyStatus.PENDING, StudyStatus.SCREENING})
TERMINAL_STATUSES = frozenset(STATUS_FOR_DECISION.values())


class Undecided(BaseModel):
    """Final state of a study that has not been finalized in its phase."""

    kind: Literal["undecided"] = "undecided"


class Finalized(BaseModel):
    """Final state of a study whose phase outcome is settled."""

    kind: Literal["finalized"] = "finalized"
    verdict: ScreeningDecision


FinalState = Union[Undecided, Finalized]


class Project(BaseModel):
    """Screening configuration of a review project."""

    project_id: str
    name: str
    reviewers_required: int = Field(2, ge=1, le=10)
    blind_screening: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def dual_screening(self) -> bool:
        return self.reviewers_required > 1


class ProjectMember(BaseModel):
    project_id: str
    user_id: str
    role: ProjectRole
    active: bool = True
    joined_at: datetime = Field(default_factory=datetime.utcnow)


class Study(BaseModel):
    """One publication under review within one project."""

    study_id: str
    project_id: str
    work_id: str
    title: str = ""
    abstract: Optional[str] = None
    year: Optional[int] = Field(None, ge=1800, le=2100)
    journal: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)

    phase: Phase = Phase.TITLE_ABSTRACT
    status: StudyStatus = StudyStatus.PENDING
    final_decision: Optional[ScreeningDecision] = None
    priority_score: int = Field(50, ge=0, le=100)

    # AI assistance
    ai_suggestion: Optional[ScreeningDecision] = None
    ai_confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    ai_reasoning: Optional[str] = None

    is_calibration_sample: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _final_decision_matches_status(self) -> "Study":
        terminal = self.status in TERMINAL_STATUSES
        if terminal != (self.final_decision is not None):
            raise ValueError(
                f"final_decision must be set exactly when status is terminal "
                f"(status={self.status.value}, final_decision={self.final_decision})"
            )
        return self

    @property
    def final_state(self) -> FinalState:
        if self.final_decision is None:
            return Undecided()
        return Finalized(verdict=self.final_decision)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES


class DecisionInput(BaseModel):
    """Validated payload of a reviewer decision before it is stored."""

    decision: ScreeningDecision
    reasoning: Optional[str] = Field(None, max_length=2000)
    exclusion_reason: Optional[str] = Field(None, max_length=500)
    confidence: Optional[int] = Field(None, ge=0, le=100)
    time_spent_ms: Optional[int] = Field(None, ge=0)

    @field_validator("exclusion_reason")
    @classmethod
    def _strip_reason(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip() or None

    @model_validator(mode="after")
    def _exclusion_reason_required(self) -> "DecisionInput":
        if self.decision == ScreeningDecision.EXCLUDE and not self.exclusion_reason:
            raise ValueError("Exclusion reason is required when excluding a study")
        return self


class Decision(BaseModel):
    """One reviewer's verdict on one study in one phase."""

    decision_id: str
    study_id: str
    project_id: str
    reviewer_id: str
    phase: Phase
    decision: ScreeningDecision
    reasoning: Optional[str] = None
    exclusion_reason: Optional[str] = None
    confidence: Optional[int] = Field(None, ge=0, le=100)
    time_spent_ms: Optional[int] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class DecisionSnapshot(BaseModel):
    """Copy of a decision frozen into a conflict at detection time."""

    reviewer_id: str
    decision: ScreeningDecision
    reasoning: Optional[str] = None
    exclusion_reason: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_decision(cls, decision: Decision) -> "DecisionSnapshot":
        return cls(
            reviewer_id=decision.reviewer_id,
            decision=decision.decision,
            reasoning=decision.reasoning,
            exclusion_reason=decision.exclusion_reason,
            created_at=decision.created_at,
        )


class ConflictResolution(BaseModel):
    """Terminal record of how a conflict was settled."""

    conflict_id: str
    resolver_id: str
    final_decision: ScreeningDecision
    reasoning: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Conflict(BaseModel):
    """Disagreement among the required reviewers of a study in a phase."""

    conflict_id: str
    project_id: str
    study_id: str
    phase: Phase
    status: ConflictStatus = ConflictStatus.PENDING
    decisions: List[DecisionSnapshot] = Field(default_factory=list)
    escalated_at: Optional[datetime] = None
    escalated_by: Optional[str] = None
    escalation_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    resolved_at: Optional[datetime] = None
    resolution: Optional[ConflictResolution] = None

    @property
    def is_open(self) -> bool:
        return self.status != ConflictStatus.RESOLVED


class CalibrationDecision(BaseModel):
    round_id: str
    study_id: str
    reviewer_id: str
    decision: ScreeningDecision
    reasoning: Optional[str] = None
    time_spent_ms: Optional[int] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class CalibrationRound(BaseModel):
    """A bounded trial screening exercise run before full screening."""

    round_id: str
    project_id: str
    phase: Phase
    sample_size: int = Field(..., ge=1, le=100)
    target_agreement: float = Field(..., ge=0.0, le=1.0)
    status: CalibrationStatus = CalibrationStatus.PENDING
    kappa_score: Optional[float] = None
    percent_agreement: Optional[float] = None
    study_ids: List[str] = Field(default_factory=list)
    participant_ids: List[str] = Field(default_factory=list)
    reviewers_participated: int = 0
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def passed(self) -> Optional[bool]:
        """Advisory pass flag; ``None`` until a kappa score exists."""
        if self.kappa_score is None:
            return None
        return self.kappa_score >= self.target_agreement


class AuditEntry(BaseModel):
    entry_id: int
    project_id: str
    study_id: Optional[str] = None
    actor_id: Optional[str] = None
    action: str
    payload: Dict[str, object] = Field(default_factory=dict)
    created_at: datetime


class IngestionSignal(BaseModel):
    """Ready-for-ingestion marker for a study finalized as INCLUDE."""

    study_id: str
    phase: Phase
    project_id: str
    work_id: str
    source: str
    created_at: datetime
    dispatched_at: Optional[datetime] = None


class AuditAction(str, Enum):
    """Activity log entry types emitted by the engine."""

    DECISION_RECORDED = "decision_recorded"
    STUDY_FINALIZED = "study_finalized"
    PHASE_ADVANCED = "phase_advanced"
    CONFLICT_OPENED = "conflict_opened"
    CONFLICT_DISCUSSION_STARTED = "conflict_discussion_started"
    CONFLICT_ESCALATED = "conflict_escalated"
    CONFLICT_RESOLVED = "conflict_resolved"
    STATE_RECONCILED = "state_reconciled"
    LIVENESS_OVERRIDE = "liveness_override"
    CALIBRATION_CREATED = "calibration_created"
    CALIBRATION_COMPLETED = "calibration_completed"
    BATCH_SCREENED = "batch_screened"
