"""Unit tests for core domain models."""

from datetime import datetime

import pytest
from pydantic import ValidationError

from sce.core.models import (
    CalibrationRound,
    DecisionInput,
    Finalized,
    Phase,
    ProjectRole,
    ScreeningDecision,
    Study,
    StudyStatus,
    Undecided,
)
from sce.reliability.analyzer import phase_verdict


class TestStudyModel:
    """Tests for the Study model."""

    def test_study_defaults(self) -> None:
        """Test a new study is pending in title/abstract and undecided."""
        study = Study(study_id="s1", project_id="p1", work_id="W1")
        assert study.phase == Phase.TITLE_ABSTRACT
        assert study.status == StudyStatus.PENDING
        assert study.priority_score == 50
        assert study.is_open
        assert isinstance(study.final_state, Undecided)

    def test_terminal_status_requires_final_decision(self) -> None:
        """Test a terminal status without a final decision is rejected."""
        with pytest.raises(ValidationError):
            Study(study_id="s1", project_id="p1", work_id="W1", status=StudyStatus.INCLUDED)

    def test_open_status_rejects_final_decision(self) -> None:
        """Test a final decision on an open study is rejected."""
        with pytest.raises(ValidationError):
            Study(
                study_id="s1",
                project_id="p1",
                work_id="W1",
                status=StudyStatus.SCREENING,
                final_decision=ScreeningDecision.INCLUDE,
            )

    def test_finalized_state(self) -> None:
        """Test the tagged final state of a finalized study."""
        study = Study(
            study_id="s1",
            project_id="p1",
            work_id="W1",
            status=StudyStatus.EXCLUDED,
            final_decision=ScreeningDecision.EXCLUDE,
        )
        state = study.final_state
        assert isinstance(state, Finalized)
        assert state.verdict == ScreeningDecision.EXCLUDE
        assert not study.is_open

    def test_phase_verdict_reads_final_state(self) -> None:
        """Test the settled verdict of a phase comes from the final state."""
        open_study = Study(study_id="s1", project_id="p1", work_id="W1", phase=Phase.FULL_TEXT)
        assert phase_verdict(open_study, Phase.FULL_TEXT) is None
        assert phase_verdict(open_study, Phase.TITLE_ABSTRACT) == ScreeningDecision.INCLUDE

        maybe = open_study.model_copy(
            update={"status": StudyStatus.MAYBE, "final_decision": ScreeningDecision.MAYBE}
        )
        assert maybe.final_state == Finalized(verdict=ScreeningDecision.MAYBE)
        assert phase_verdict(maybe, Phase.FULL_TEXT) == ScreeningDecision.MAYBE
        assert phase_verdict(maybe, Phase.FINAL) is None


class TestDecisionInput:
    """Tests for decision payload validation."""

    def test_exclude_requires_reason(self) -> None:
        """Test EXCLUDE without an exclusion reason is invalid."""
        with pytest.raises(ValidationError):
            DecisionInput(decision=ScreeningDecision.EXCLUDE)
        with pytest.raises(ValidationError):
            DecisionInput(decision=ScreeningDecision.EXCLUDE, exclusion_reason="   ")

    def test_exclude_with_reason(self) -> None:
        """Test the exclusion reason is stripped and accepted."""
        payload = DecisionInput(decision=ScreeningDecision.EXCLUDE, exclusion_reason=" wrong population ")
        assert payload.exclusion_reason == "wrong population"

    def test_confidence_bounds(self) -> None:
        """Test confidence must lie in 0-100."""
        with pytest.raises(ValidationError):
            DecisionInput(decision=ScreeningDecision.INCLUDE, confidence=101)

    def test_reasoning_length(self) -> None:
        """Test overlong reasoning is rejected."""
        with pytest.raises(ValidationError):
            DecisionInput(decision=ScreeningDecision.INCLUDE, reasoning="x" * 2001)


class TestRolesAndRounds:
    """Tests for role capabilities and calibration rounds."""

    def test_role_capabilities(self) -> None:
        """Test only owners and leads resolve; observers never screen."""
        assert ProjectRole.OWNER.can_resolve and ProjectRole.LEAD.can_resolve
        assert not ProjectRole.REVIEWER.can_resolve
        assert ProjectRole.REVIEWER.can_screen
        assert not ProjectRole.OBSERVER.can_screen

    def test_round_passed_is_advisory(self) -> None:
        """Test passed is None until scored, then compares against the target."""
        round_ = CalibrationRound(
            round_id="c1",
            project_id="p1",
            phase=Phase.TITLE_ABSTRACT,
            sample_size=10,
            target_agreement=0.7,
            created_at=datetime.utcnow(),
        )
        assert round_.passed is None
        round_.kappa_score = 0.75
        assert round_.passed is True
        round_.kappa_score = 0.5
        assert round_.passed is False
