"""Unit tests for Cohen's Kappa and agreement helpers."""

import pytest

from sce.core.models import ScreeningDecision as D
from sce.reliability.kappa import (
    average_kappa,
    cohens_kappa,
    contingency_table,
    interpret_kappa,
    kappa_matrix,
    pairwise_kappas,
    percent_agreement,
)


class TestCohensKappa:
    """Tests for cohens_kappa."""

    def test_identical_ratings(self) -> None:
        """Test identical, varied ratings give perfect agreement."""
        pairs = [(D.INCLUDE, D.INCLUDE), (D.EXCLUDE, D.EXCLUDE), (D.MAYBE, D.MAYBE), (D.INCLUDE, D.INCLUDE)]
        assert cohens_kappa(pairs) == pytest.approx(1.0)

    def test_single_category_is_perfect(self) -> None:
        """Test pe = 1 yields kappa 1.0 instead of dividing by zero."""
        pairs = [(D.EXCLUDE, D.EXCLUDE)] * 5
        assert cohens_kappa(pairs) == 1.0

    def test_anti_correlated_balanced(self) -> None:
        """Test fully anti-correlated balanced ratings give kappa <= 0."""
        pairs = [(D.INCLUDE, D.EXCLUDE)] * 5 + [(D.EXCLUDE, D.INCLUDE)] * 5
        kappa = cohens_kappa(pairs)
        assert kappa is not None
        assert kappa <= 0
        assert kappa == pytest.approx(-1.0)

    def test_known_value(self) -> None:
        """Test a textbook 2x2 example."""
        # 20 yes/yes, 5 yes/no, 10 no/yes, 15 no/no -> po=0.7, pe=0.5
        pairs = (
            [(D.INCLUDE, D.INCLUDE)] * 20
            + [(D.INCLUDE, D.EXCLUDE)] * 5
            + [(D.EXCLUDE, D.INCLUDE)] * 10
            + [(D.EXCLUDE, D.EXCLUDE)] * 15
        )
        assert cohens_kappa(pairs) == pytest.approx(0.4)

    def test_too_few_pairs(self) -> None:
        """Test fewer than two shared studies give no kappa."""
        assert cohens_kappa([]) is None
        assert cohens_kappa([(D.INCLUDE, D.INCLUDE)]) is None

    def test_collapse_maybe(self) -> None:
        """Test MAYBE counts as EXCLUDE when collapsed."""
        pairs = [(D.MAYBE, D.EXCLUDE), (D.INCLUDE, D.INCLUDE), (D.EXCLUDE, D.MAYBE)]
        assert cohens_kappa(pairs, collapse_maybe=True) == pytest.approx(1.0)
        assert cohens_kappa(pairs) < 1.0

    def test_contingency_table_is_square(self) -> None:
        """Test the table covers every category either reviewer used."""
        table = contingency_table([(D.INCLUDE, D.MAYBE), (D.EXCLUDE, D.EXCLUDE)])
        assert list(table.index) == list(table.columns)
        assert set(table.index) == {"include", "exclude", "maybe"}
        assert int(table.to_numpy().sum()) == 2


class TestInterpretKappa:
    """Tests for the Landis & Koch bands."""

    @pytest.mark.parametrize(
        "kappa,level",
        [
            (-0.1, "Poor"),
            (0.0, "Slight"),
            (0.20, "Slight"),
            (0.21, "Fair"),
            (0.40, "Fair"),
            (0.55, "Moderate"),
            (0.60, "Moderate"),
            (0.75, "Substantial"),
            (0.80, "Substantial"),
            (0.81, "Almost Perfect"),
            (1.0, "Almost Perfect"),
        ],
    )
    def test_bands(self, kappa, level) -> None:
        """Test each band boundary."""
        assert interpret_kappa(kappa).level == level

    def test_recommendation_present(self) -> None:
        """Test every band carries a recommendation."""
        assert interpret_kappa(0.3).recommendation


class TestPairwise:
    """Tests for pairwise kappa over several reviewers."""

    def test_pairs_and_matrix(self) -> None:
        """Test every reviewer pair with shared studies is scored."""
        ratings = {
            "a": {"s1": D.INCLUDE, "s2": D.EXCLUDE, "s3": D.INCLUDE},
            "b": {"s1": D.INCLUDE, "s2": D.EXCLUDE, "s3": D.INCLUDE},
            "c": {"s1": D.EXCLUDE, "s2": D.INCLUDE},
            "d": {"s9": D.INCLUDE},
        }
        pairs = pairwise_kappas(ratings)
        names = {(p.reviewer_a, p.reviewer_b) for p in pairs}
        assert names == {("a", "b"), ("a", "c"), ("b", "c")}
        ab = next(p for p in pairs if (p.reviewer_a, p.reviewer_b) == ("a", "b"))
        assert ab.kappa == pytest.approx(1.0)
        assert ab.shared_studies == 3
        assert ab.percent_agreement == pytest.approx(1.0)

        matrix = kappa_matrix(["a", "b", "c", "d"], pairs)
        assert matrix["a"]["a"] == 1.0
        assert matrix["b"]["a"] == matrix["a"]["b"]
        assert matrix["a"]["d"] is None

    def test_average_ignores_undefined(self) -> None:
        """Test pairs without a kappa are left out of the average."""
        ratings = {
            "a": {"s1": D.INCLUDE, "s2": D.EXCLUDE},
            "b": {"s1": D.INCLUDE, "s2": D.EXCLUDE},
            "c": {"s1": D.INCLUDE},
        }
        assert average_kappa(pairwise_kappas(ratings)) == pytest.approx(1.0)
        assert average_kappa([]) is None

    def test_percent_agreement(self) -> None:
        """Test raw agreement proportion."""
        assert percent_agreement([(D.INCLUDE, D.INCLUDE), (D.INCLUDE, D.EXCLUDE)]) == 0.5
        assert percent_agreement([]) is None
