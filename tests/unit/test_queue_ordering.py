"""Unit tests for queue ordering strategies and priority scoring."""

import random

import pytest

from sce.core.models import QueueStrategy, Study
from sce.scheduler.priority import compute_priority_score
from sce.scheduler.queue import balance_queue, order_studies


def _study(sid, priority=50, confidence=None, **fields):
    return Study(
        study_id=sid,
        project_id="p1",
        work_id=f"W-{sid}",
        priority_score=priority,
        ai_confidence=confidence,
        **fields,
    )


@pytest.fixture
def studies():
    return [
        _study("a", priority=40, confidence=0.95),
        _study("b", priority=80, confidence=0.30),
        _study("c", priority=80, confidence=None),
        _study("d", priority=60, confidence=0.75),
        _study("e", priority=10, confidence=0.50),
    ]


class TestOrderStudies:
    """Tests for order_studies."""

    def test_default_is_fifo(self, studies) -> None:
        """Test the default strategy keeps creation order."""
        ordered = order_studies(studies, QueueStrategy.DEFAULT)
        assert [s.study_id for s in ordered] == ["a", "b", "c", "d", "e"]

    def test_priority_descending_stable(self, studies) -> None:
        """Test priority order with ties kept in creation order."""
        ordered = order_studies(studies, QueueStrategy.PRIORITY)
        assert [s.study_id for s in ordered] == ["b", "c", "d", "a", "e"]

    def test_ai_confident_nulls_last(self, studies) -> None:
        """Test most confident first, unknown confidence last."""
        ordered = order_studies(studies, QueueStrategy.AI_CONFIDENT)
        assert [s.study_id for s in ordered] == ["a", "d", "e", "b", "c"]

    def test_ai_uncertain_nulls_first(self, studies) -> None:
        """Test unknown confidence first, then least confident."""
        ordered = order_studies(studies, QueueStrategy.AI_UNCERTAIN)
        assert [s.study_id for s in ordered] == ["c", "b", "e", "d", "a"]

    def test_balanced_interleaves(self, studies) -> None:
        """Test balanced alternates low and high confidence."""
        ordered = order_studies(studies, QueueStrategy.BALANCED)
        # low (<0.7 or unknown) by priority: b, c, e ; high: d, a
        assert [s.study_id for s in ordered] == ["b", "d", "c", "a", "e"]

    def test_random_is_a_permutation(self, studies) -> None:
        """Test random returns every study exactly once."""
        ordered = order_studies(studies, QueueStrategy.RANDOM, random.Random(3))
        assert sorted(s.study_id for s in ordered) == ["a", "b", "c", "d", "e"]

    def test_balance_queue_custom_split(self) -> None:
        """Test the confidence split is configurable."""
        items = [_study("x", confidence=0.5), _study("y", confidence=0.6)]
        assert [s.study_id for s in balance_queue(items, split=0.55)] == ["x", "y"]
        assert [s.study_id for s in balance_queue(items, split=0.4)] == ["x", "y"]


class TestPriorityScore:
    """Tests for compute_priority_score."""

    def test_base_score(self) -> None:
        """Test a study with no signals keeps the base score."""
        assert compute_priority_score(_study("s"), current_year=2024) == 50

    @pytest.mark.parametrize(
        "year,expected",
        [(2023, 70), (2020, 60), (2016, 50), (2010, 40)],
    )
    def test_recency(self, year, expected) -> None:
        """Test the recency adjustments."""
        assert compute_priority_score(_study("s", year=year), current_year=2024) == expected

    def test_recency_disabled(self) -> None:
        """Test the year boost can be switched off."""
        study = _study("s", year=2024)
        assert compute_priority_score(study, current_year=2024, boost_by_year=False) == 50

    def test_journal_and_keywords(self) -> None:
        """Test journal allow-list and capped keyword hits."""
        study = _study(
            "s",
            journal="The Lancet Digital Health",
            keywords=["machine learning", "bias", "fairness", "audit", "ethics"],
        )
        score = compute_priority_score(
            study,
            current_year=2024,
            journals=["lancet"],
            keywords=["learning", "bias", "fair", "audit", "ethic"],
        )
        assert score == 50 + 15 + 20

    def test_ai_confidence(self) -> None:
        """Test uncertain AI calls rise and confident ones drop."""
        assert compute_priority_score(_study("s", confidence=0.4), current_year=2024) == 65
        assert compute_priority_score(_study("s", confidence=0.95), current_year=2024) == 45
        assert compute_priority_score(_study("s", confidence=0.75), current_year=2024) == 50

    def test_clamped(self) -> None:
        """Test the score stays within 0-100."""
        study = _study("s", year=2024, journal="Nature", keywords=["a", "b", "c", "d"], confidence=0.1)
        score = compute_priority_score(
            study, current_year=2024, journals=["nature"], keywords=["a", "b", "c", "d"], base_score=90
        )
        assert score == 100
        low = _study("t", year=1990, confidence=0.99)
        assert compute_priority_score(low, current_year=2024, base_score=5) == 0
