"""Integration tests for calibration rounds."""

import pytest

from sce.core.errors import DuplicateDecisionError, ForbiddenError, ScreeningValidationError
from sce.core.models import CalibrationStatus, Phase, ScreeningDecision, StudyStatus

pytestmark = pytest.mark.integration


@pytest.fixture
def project(make_project):
    return make_project(studies=12)


@pytest.fixture
def round_(engine, project):
    return engine.create_calibration_round(
        project.project_id,
        Phase.TITLE_ABSTRACT,
        sample_size=10,
        target_agreement=0.8,
        created_by="lead",
        participant_ids=["alice", "bob"],
    )


def _verdict(i: int) -> ScreeningDecision:
    return ScreeningDecision.INCLUDE if i % 2 == 0 else ScreeningDecision.EXCLUDE


class TestCreateRound:
    """Tests for creating calibration rounds."""

    def test_samples_unscreened_studies(self, engine, store, project, round_) -> None:
        """Test the round samples pending studies and starts PENDING."""
        assert round_.status == CalibrationStatus.PENDING
        assert len(round_.study_ids) == 10
        assert len(set(round_.study_ids)) == 10
        assert round_.participant_ids == ["alice", "bob"]
        sampled = [store.get_study(sid) for sid in round_.study_ids]
        assert all(s.is_calibration_sample for s in sampled)
        assert all(s.status == StudyStatus.PENDING for s in sampled)

    def test_next_round_uses_remaining_studies(self, engine, project, round_) -> None:
        """Test studies already sampled are not sampled again."""
        second = engine.create_calibration_round(
            project.project_id, sample_size=10, target_agreement=0.7, participant_ids=["alice", "bob"]
        )
        assert len(second.study_ids) == 2
        assert not set(second.study_ids) & set(round_.study_ids)
        with pytest.raises(ScreeningValidationError):
            engine.create_calibration_round(
                project.project_id, sample_size=10, participant_ids=["alice", "bob"]
            )

    @pytest.mark.parametrize("sample_size,target", [(5, 0.8), (101, 0.8), (20, 0.4), (20, 1.2)])
    def test_parameter_ranges(self, engine, project, sample_size, target) -> None:
        """Test sample size and target agreement bounds."""
        with pytest.raises(ScreeningValidationError):
            engine.create_calibration_round(
                project.project_id, sample_size=sample_size, target_agreement=target
            )

    def test_reviewer_cannot_create(self, engine, project) -> None:
        """Test only owners and leads create rounds."""
        with pytest.raises(ForbiddenError):
            engine.create_calibration_round(project.project_id, sample_size=10, created_by="alice")

    def test_default_participants(self, engine, project) -> None:
        """Test every active screening member takes part by default."""
        round_ = engine.create_calibration_round(project.project_id, sample_size=10)
        assert set(round_.participant_ids) == {"lead", "alice", "bob"}

    def test_needs_two_participants(self, engine, project) -> None:
        """Test a single participant cannot calibrate."""
        with pytest.raises(ScreeningValidationError):
            engine.create_calibration_round(project.project_id, sample_size=10, participant_ids=["alice"])


class TestCalibrationDecisions:
    """Tests for submitting calibration decisions and scoring."""

    def test_round_completes_with_kappa(self, engine, store, round_) -> None:
        """Test the round completes once every participant decided every study."""
        first = engine.submit_calibration_decision(
            round_.round_id, round_.study_ids[0], "alice", _verdict(0)
        )
        assert first.status == CalibrationStatus.IN_PROGRESS
        assert first.started_at is not None
        assert first.reviewers_participated == 1

        for i, sid in enumerate(round_.study_ids):
            if i:
                engine.submit_calibration_decision(round_.round_id, sid, "alice", _verdict(i))
        for i, sid in enumerate(round_.study_ids[:-1]):
            engine.submit_calibration_decision(round_.round_id, sid, "bob", _verdict(i))
        assert engine.get_calibration_round(round_.round_id).status == CalibrationStatus.IN_PROGRESS

        last = engine.submit_calibration_decision(
            round_.round_id, round_.study_ids[-1], "bob", _verdict(9)
        )
        assert last.status == CalibrationStatus.COMPLETED
        assert last.completed_at is not None
        assert last.kappa_score == pytest.approx(1.0)
        assert last.percent_agreement == pytest.approx(1.0)
        assert last.passed is True

    def test_live_state_untouched(self, engine, store, round_) -> None:
        """Test calibration decisions never become live decisions."""
        engine.submit_calibration_decision(
            round_.round_id, round_.study_ids[0], "alice", ScreeningDecision.INCLUDE
        )
        study = store.get_study(round_.study_ids[0])
        assert study.status == StudyStatus.PENDING
        assert store.get_decisions(study.study_id, Phase.TITLE_ABSTRACT) == []

    def test_disagreeing_round_fails_target(self, engine, round_) -> None:
        """Test systematic disagreement yields a failing kappa."""
        for i, sid in enumerate(round_.study_ids):
            engine.submit_calibration_decision(round_.round_id, sid, "alice", _verdict(i))
            engine.submit_calibration_decision(round_.round_id, sid, "bob", _verdict(i + 1))
        done = engine.get_calibration_round(round_.round_id)
        assert done.status == CalibrationStatus.COMPLETED
        assert done.kappa_score <= 0
        assert done.percent_agreement == 0
        assert done.passed is False

    def test_submission_checks(self, engine, project, round_) -> None:
        """Test participant, sample, duplicate and completion checks."""
        sid = round_.study_ids[0]
        with pytest.raises(ForbiddenError):
            engine.submit_calibration_decision(round_.round_id, sid, "lead", ScreeningDecision.INCLUDE)
        outside = next(
            s.study_id
            for s in engine.store.list_studies(project.project_id)
            if s.study_id not in round_.study_ids
        )
        with pytest.raises(ScreeningValidationError):
            engine.submit_calibration_decision(round_.round_id, outside, "alice", ScreeningDecision.INCLUDE)
        engine.submit_calibration_decision(round_.round_id, sid, "alice", ScreeningDecision.INCLUDE)
        with pytest.raises(DuplicateDecisionError):
            engine.submit_calibration_decision(round_.round_id, sid, "alice", ScreeningDecision.EXCLUDE)

    def test_list_rounds(self, engine, project, round_) -> None:
        """Test rounds are listed per project."""
        rounds = engine.list_calibration_rounds(project.project_id)
        assert [r.round_id for r in rounds] == [round_.round_id]
