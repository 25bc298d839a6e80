"""Tests for the two-proportion significance test."""

import pytest

from src.domains.experiments.models import ExperimentMetrics, Group, GroupMetrics
from src.domains.experiments.statistics import (
    _normal_cdf,
    compute_significance,
    two_tailed_p_value,
)


def _metrics(correct_a, n_a, correct_b, n_b) -> ExperimentMetrics:
    return ExperimentMetrics(
        group_a=GroupMetrics(predictions=n_a, correct=correct_a),
        group_b=GroupMetrics(predictions=n_b, correct=correct_b),
    )


class TestNormalCdf:
    @pytest.mark.parametrize(
        "z,expected",
        [(0.0, 0.5), (1.0, 0.841345), (1.96, 0.975002), (-1.96, 0.024998), (3.0, 0.998650)],
    )
    def test_known_values(self, z, expected):
        assert _normal_cdf(z) == pytest.approx(expected, abs=1e-6)

    def test_p_value_stays_in_unit_interval(self):
        for z in (0.0, 0.5, 2.0, 10.0, 40.0):
            p = two_tailed_p_value(z)
            assert 0.0 <= p <= 1.0
        assert two_tailed_p_value(0.0) == pytest.approx(1.0, abs=1e-6)


class TestComputeSignificance:
    def test_empty_group_is_not_significant(self):
        result = compute_significance(_metrics(3, 4, 0, 0))
        assert not result.is_significant
        assert result.p_value == 1.0
        assert result.winner is None

    def test_zero_variance_reports_p_one(self):
        result = compute_significance(_metrics(10, 10, 10, 10))
        assert not result.is_significant
        assert result.p_value == 1.0
        assert result.z_score == 0.0
        assert result.winner is None
        assert result.confidence_interval is None

    def test_four_users_per_group(self):
        """75% vs 25% on four predictions each: a 50 point gap, z = sqrt(2)."""
        result = compute_significance(_metrics(3, 4, 1, 4))
        assert result.winner == Group.A
        assert result.improvement == pytest.approx(50.0)
        assert result.accuracy_a == pytest.approx(0.75)
        assert result.accuracy_b == pytest.approx(0.25)
        assert result.z_score == pytest.approx(2**0.5, rel=1e-6)
        assert result.p_value == pytest.approx(0.1573, abs=1e-3)
        # Too few samples for the gap to clear alpha = 0.05
        assert not result.is_significant

    def test_same_rates_at_scale_are_significant(self):
        result = compute_significance(_metrics(75, 100, 25, 100))
        assert result.is_significant
        assert result.p_value < 0.05
        assert result.z_score > 7
        assert result.winner == Group.A
        assert result.improvement == pytest.approx(50.0)

    def test_b_wins_when_more_accurate(self):
        result = compute_significance(_metrics(40, 100, 70, 100))
        assert result.winner == Group.B
        assert result.difference == pytest.approx(-0.3)
        assert result.improvement == pytest.approx(30.0)
        assert result.is_significant

    def test_confidence_interval_brackets_difference(self):
        result = compute_significance(_metrics(3, 4, 1, 4))
        low, high = result.confidence_interval
        assert low < result.difference < high
        assert low == pytest.approx(-0.100125, abs=1e-5)
        assert high == pytest.approx(1.100125, abs=1e-5)

    def test_significance_level_is_respected(self):
        metrics = _metrics(3, 4, 1, 4)
        assert compute_significance(metrics, significance_level=0.2).is_significant
        assert not compute_significance(metrics, significance_level=0.1).is_significant
