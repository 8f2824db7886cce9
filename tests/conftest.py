"""Shared fixtures: temporary databases, engines and seeded projects."""

import random
from typing import Callable, Sequence

import pytest

from sce.consensus.ingestion import RecordingIngestionQueue
from sce.core.models import Project, ProjectRole
from sce.engine import ScreeningEngine
from sce.store.database import ScreeningStore


@pytest.fixture
def store(tmp_path):
    """A fresh SQLite store in a temporary directory."""
    s = ScreeningStore(tmp_path / "screening.db")
    yield s
    s.close()


@pytest.fixture
def ingestion_queue():
    return RecordingIngestionQueue()


@pytest.fixture
def engine(store, ingestion_queue):
    """Engine over the temporary store that records ingestion jobs."""
    return ScreeningEngine(store=store, ingestion_queue=ingestion_queue, rng=random.Random(7))


@pytest.fixture
def make_project(store) -> Callable[..., Project]:
    """Factory creating a project with a lead and the given reviewers."""

    def _make(
        reviewers_required: int = 2,
        reviewers: Sequence[str] = ("alice", "bob"),
        lead: str = "lead",
        studies: int = 0,
    ) -> Project:
        project = store.create_project("Test review", reviewers_required=reviewers_required)
        store.add_member(project.project_id, lead, ProjectRole.LEAD)
        for reviewer in reviewers:
            store.add_member(project.project_id, reviewer, ProjectRole.REVIEWER)
        if studies:
            store.add_studies(
                project.project_id,
                [{"work_id": f"W{i}", "title": f"Study {i}"} for i in range(studies)],
            )
        return project

    return _make


@pytest.fixture
def decide(engine):
    """Submit a decision, supplying an exclusion reason for EXCLUDE."""
    from sce.core.models import Phase, ScreeningDecision

    def _decide(study_id, reviewer_id, decision, phase=Phase.TITLE_ABSTRACT, **fields):
        decision = ScreeningDecision(decision)
        if decision == ScreeningDecision.EXCLUDE:
            fields.setdefault("exclusion_reason", "wrong population")
        return engine.submit_decision(study_id, reviewer_id, phase, decision, **fields)

    return _decide


@pytest.fixture
def raw_decision(store):
    """Insert a decision without evaluating it, as if the process crashed."""
    from sce.core.models import DecisionInput, ScreeningDecision

    def _insert(study, reviewer_id, decision):
        decision = ScreeningDecision(decision)
        payload = DecisionInput(
            decision=decision,
            exclusion_reason="wrong population" if decision == ScreeningDecision.EXCLUDE else None,
        )
        return store.run(lambda conn: store.insert_decision(conn, study, reviewer_id, study.phase, payload))

    return _insert
