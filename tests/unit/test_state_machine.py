"""Unit tests for the screening state machine."""

import pytest

from sce.consensus.state_machine import (
    TransitionReason,
    consensus_transition,
    evaluate_decisions,
    phase_completion,
    should_auto_advance,
    validate_phase_advancement,
)
from sce.core.models import Phase, ScreeningDecision as D, StudyStatus


class TestEvaluateDecisions:
    """Tests for evaluate_decisions."""

    def test_waiting_below_quota(self) -> None:
        """Test fewer decisions than required keeps the study in screening."""
        t = evaluate_decisions(Phase.TITLE_ABSTRACT, [D.INCLUDE], reviewers_required=2)
        assert t.reason == TransitionReason.WAITING_FOR_REVIEWERS
        assert t.new_status == StudyStatus.SCREENING
        assert t.final_decision is None

    def test_unanimous_include_at_title_abstract_advances(self) -> None:
        """Test two INCLUDEs at TA move the study to full-text, pending."""
        t = evaluate_decisions(Phase.TITLE_ABSTRACT, [D.INCLUDE, D.INCLUDE], 2)
        assert t.reason == TransitionReason.CONSENSUS_REACHED
        assert t.advanced
        assert t.new_phase == Phase.FULL_TEXT
        assert t.new_status == StudyStatus.PENDING
        assert t.final_decision is None
        assert not t.triggers_ingestion

    def test_unanimous_exclude_is_terminal(self) -> None:
        """Test unanimous EXCLUDE finalizes in place."""
        t = evaluate_decisions(Phase.TITLE_ABSTRACT, [D.EXCLUDE, D.EXCLUDE], 2)
        assert t.new_status == StudyStatus.EXCLUDED
        assert t.new_phase == Phase.TITLE_ABSTRACT
        assert t.final_decision == D.EXCLUDE

    def test_include_at_full_text_triggers_ingestion(self) -> None:
        """Test INCLUDE that does not advance emits the ingestion signal."""
        t = evaluate_decisions(Phase.FULL_TEXT, [D.INCLUDE, D.INCLUDE], 2)
        assert t.new_status == StudyStatus.INCLUDED
        assert t.new_phase == Phase.FULL_TEXT
        assert t.triggers_ingestion

    def test_disagreement_opens_conflict(self) -> None:
        """Test any disagreement at quota opens a conflict."""
        t = evaluate_decisions(Phase.TITLE_ABSTRACT, [D.INCLUDE, D.EXCLUDE], 2)
        assert t.opens_conflict
        assert t.new_status == StudyStatus.CONFLICT

    def test_no_majority_vote_with_three_reviewers(self) -> None:
        """Test a 2-1 split among three reviewers is still a conflict."""
        t = evaluate_decisions(Phase.TITLE_ABSTRACT, [D.INCLUDE, D.INCLUDE, D.EXCLUDE], 3)
        assert t.opens_conflict
        assert t.verdict is None

    def test_single_reviewer_maybe(self) -> None:
        """Test k=1 MAYBE finalizes as MAYBE."""
        t = evaluate_decisions(Phase.TITLE_ABSTRACT, [D.MAYBE], 1)
        assert t.new_status == StudyStatus.MAYBE
        assert t.final_decision == D.MAYBE

    def test_invalid_quota(self) -> None:
        """Test a quota below one is rejected."""
        with pytest.raises(ValueError):
            evaluate_decisions(Phase.TITLE_ABSTRACT, [D.INCLUDE], 0)


class TestConsensusTransition:
    """Tests for consensus_transition and auto-advance."""

    @pytest.mark.parametrize(
        "phase,verdict,expected",
        [
            (Phase.TITLE_ABSTRACT, D.INCLUDE, True),
            (Phase.TITLE_ABSTRACT, D.MAYBE, False),
            (Phase.FULL_TEXT, D.INCLUDE, False),
            (Phase.FINAL, D.INCLUDE, False),
        ],
    )
    def test_should_auto_advance(self, phase, verdict, expected) -> None:
        """Test only INCLUDE at title/abstract auto-advances."""
        assert should_auto_advance(phase, verdict) is expected

    def test_final_phase_include(self) -> None:
        """Test INCLUDE in the final phase stays and signals ingestion."""
        t = consensus_transition(Phase.FINAL, D.INCLUDE)
        assert t.new_phase == Phase.FINAL
        assert t.new_status == StudyStatus.INCLUDED
        assert t.triggers_ingestion


class TestPhaseAdvancement:
    """Tests for manual phase advancement checks."""

    def test_clean_phase_can_advance(self) -> None:
        """Test no blockers when everything is finalized."""
        counts = {StudyStatus.INCLUDED: 3, StudyStatus.EXCLUDED: 2}
        assert validate_phase_advancement(Phase.FULL_TEXT, counts, 0) == []

    def test_blockers_reported(self) -> None:
        """Test pending, screening and conflicts each block advancement."""
        counts = {StudyStatus.PENDING: 1, StudyStatus.SCREENING: 2}
        errors = validate_phase_advancement(Phase.TITLE_ABSTRACT, counts, 3)
        assert len(errors) == 3
        assert any("1 studies still pending" in e for e in errors)
        assert any("3 unresolved conflicts" in e for e in errors)

    def test_final_phase_cannot_advance(self) -> None:
        """Test the final phase has no successor."""
        errors = validate_phase_advancement(Phase.FINAL, {}, 0)
        assert errors == ["Cannot advance: already at final phase"]

    def test_phase_completion(self) -> None:
        """Test completion percentage and blockers."""
        result = phase_completion(10, 8, 1)
        assert result["percentage"] == 80
        assert not result["complete"]
        assert len(result["blockers"]) == 2
        assert phase_completion(4, 4, 0)["complete"]
        assert not phase_completion(0, 0, 0)["complete"]
