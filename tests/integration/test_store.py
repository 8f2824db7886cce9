"""Integration tests for the SQLite store's uniqueness guarantees."""

import pytest

from sce.core.errors import (
    ConflictAlreadyOpenError,
    ConflictAlreadyResolvedError,
    DuplicateDecisionError,
    NotFoundError,
)
from sce.core.models import (
    ConflictStatus,
    DecisionInput,
    DecisionSnapshot,
    Phase,
    ProjectRole,
    ScreeningDecision,
    StudyStatus,
)

pytestmark = pytest.mark.integration


class TestProjectsAndStudies:
    """Tests for project, member and study plumbing."""

    def test_create_and_get_project(self, store) -> None:
        """Test projects round-trip with their reviewer quota."""
        project = store.create_project("Review", reviewers_required=3)
        loaded = store.get_project(project.project_id)
        assert loaded.reviewers_required == 3
        assert loaded.dual_screening

    def test_missing_entities(self, store) -> None:
        """Test unknown IDs raise NotFoundError."""
        with pytest.raises(NotFoundError):
            store.get_project("nope")
        with pytest.raises(NotFoundError):
            store.get_study("nope")
        with pytest.raises(NotFoundError):
            store.get_conflict("nope")

    def test_members(self, store, make_project) -> None:
        """Test role updates and active filtering."""
        project = make_project()
        pid = project.project_id
        store.add_member(pid, "alice", ProjectRole.OBSERVER)
        assert store.get_member(pid, "alice").role == ProjectRole.OBSERVER
        store.set_member_active(pid, "bob", False)
        active = {m.user_id for m in store.list_members(pid, active_only=True)}
        assert active == {"lead", "alice"}
        leads = store.list_members(pid, roles=[ProjectRole.LEAD])
        assert [m.user_id for m in leads] == ["lead"]
        with pytest.raises(NotFoundError):
            store.set_member_active(pid, "ghost", True)

    def test_studies_in_creation_order(self, store, make_project) -> None:
        """Test studies list in insertion order and start pending."""
        project = make_project(studies=5)
        studies = store.list_studies(project.project_id)
        assert [s.work_id for s in studies] == ["W0", "W1", "W2", "W3", "W4"]
        assert all(s.status == StudyStatus.PENDING for s in studies)
        assert all(s.phase == Phase.TITLE_ABSTRACT for s in studies)

    def test_ai_suggestion(self, store, make_project) -> None:
        """Test AI triage fields are stored."""
        project = make_project(studies=1)
        study = store.list_studies(project.project_id)[0]
        updated = store.set_ai_suggestion(study.study_id, ScreeningDecision.INCLUDE, 0.82, "matches PICO")
        assert updated.ai_suggestion == ScreeningDecision.INCLUDE
        assert updated.ai_confidence == pytest.approx(0.82)


class TestUniqueness:
    """Tests for constraint-backed uniqueness."""

    def test_duplicate_decision(self, store, make_project, raw_decision) -> None:
        """Test a second decision by the same reviewer is rejected."""
        project = make_project(studies=1)
        study = store.list_studies(project.project_id)[0]
        first = raw_decision(study, "alice", "include")
        with pytest.raises(DuplicateDecisionError) as exc_info:
            raw_decision(study, "alice", "exclude")
        assert exc_info.value.existing.decision_id == first.decision_id
        assert len(store.get_decisions(study.study_id, Phase.TITLE_ABSTRACT)) == 1

    def test_phase_counters(self, store, make_project, raw_decision) -> None:
        """Test the materialized counters follow decision inserts."""
        project = make_project(studies=2)
        s0, s1 = store.list_studies(project.project_id)
        raw_decision(s0, "alice", "include")
        raw_decision(s0, "bob", "include")
        raw_decision(s1, "alice", "exclude")
        counts = store.get_phase_counters(project.project_id, Phase.TITLE_ABSTRACT)
        assert counts[ScreeningDecision.INCLUDE] == 2
        assert counts[ScreeningDecision.EXCLUDE] == 1
        assert counts[ScreeningDecision.MAYBE] == 0

    def test_one_open_conflict_per_study_phase(self, store, make_project, raw_decision) -> None:
        """Test the partial unique index allows one unresolved conflict."""
        project = make_project(studies=1)
        study = store.list_studies(project.project_id)[0]
        d1 = raw_decision(study, "alice", "include")
        d2 = raw_decision(study, "bob", "exclude")
        snapshots = [DecisionSnapshot.from_decision(d) for d in (d1, d2)]

        first = store.run(lambda conn: store.insert_conflict(conn, study, Phase.TITLE_ABSTRACT, snapshots))
        with pytest.raises(ConflictAlreadyOpenError) as exc_info:
            store.run(lambda conn: store.insert_conflict(conn, study, Phase.TITLE_ABSTRACT, snapshots))
        assert exc_info.value.conflict.conflict_id == first.conflict_id

        store.run(
            lambda conn: store.update_conflict_status(conn, first.conflict_id, ConflictStatus.RESOLVED)
        )
        second = store.run(
            lambda conn: store.insert_conflict(conn, study, Phase.TITLE_ABSTRACT, snapshots)
        )
        assert second.conflict_id != first.conflict_id

    def test_one_resolution_per_conflict(self, store, make_project, raw_decision) -> None:
        """Test a second resolution row is rejected."""
        project = make_project(studies=1)
        study = store.list_studies(project.project_id)[0]
        snapshots = [DecisionSnapshot.from_decision(raw_decision(study, "alice", "include"))]
        conflict = store.run(
            lambda conn: store.insert_conflict(conn, study, Phase.TITLE_ABSTRACT, snapshots)
        )
        store.run(
            lambda conn: store.insert_resolution(conn, conflict, "lead", ScreeningDecision.INCLUDE, None)
        )
        with pytest.raises(ConflictAlreadyResolvedError):
            store.run(
                lambda conn: store.insert_resolution(
                    conn, conflict, "lead", ScreeningDecision.EXCLUDE, None
                )
            )
        assert store.get_conflict(conflict.conflict_id).resolution.final_decision == ScreeningDecision.INCLUDE

    def test_ingestion_signal_once(self, store, make_project) -> None:
        """Test a study gets one ingestion signal whatever the phase."""
        project = make_project(studies=1)
        study = store.list_studies(project.project_id)[0]
        assert store.run(lambda conn: store.insert_ingestion_signal(conn, study, Phase.FULL_TEXT, "t"))
        assert not store.run(
            lambda conn: store.insert_ingestion_signal(conn, study, Phase.FULL_TEXT, "t")
        )
        assert not store.run(lambda conn: store.insert_ingestion_signal(conn, study, Phase.FINAL, "t"))
        signals = store.list_ingestion_signals(project.project_id)
        assert [(s.study_id, s.phase) for s in signals] == [(study.study_id, Phase.FULL_TEXT)]

    def test_transaction_rolls_back(self, store, make_project) -> None:
        """Test a failing unit of work leaves no partial writes."""
        project = make_project(studies=1)
        study = store.list_studies(project.project_id)[0]
        payload = DecisionInput(decision=ScreeningDecision.INCLUDE)

        def work(conn):
            store.insert_decision(conn, study, "alice", Phase.TITLE_ABSTRACT, payload)
            raise RuntimeError("crash after insert")

        with pytest.raises(RuntimeError):
            store.run(work)
        assert store.get_decisions(study.study_id, Phase.TITLE_ABSTRACT) == []
        counts = store.get_phase_counters(project.project_id, Phase.TITLE_ABSTRACT)
        assert counts[ScreeningDecision.INCLUDE] == 0
