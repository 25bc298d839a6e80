"""Two-proportion z-test on per-group accuracy."""

import math

from src.domains.experiments.models import ExperimentMetrics, Group, SignificanceResult


def _normal_cdf(z: float) -> float:
    """Standard normal CDF, Abramowitz & Stegun 26.2.17 (|error| < 7.5e-8)."""
    if z < 0:
        return 1.0 - _normal_cdf(-z)

    p = 0.2316419
    b1 = 0.319381530
    b2 = -0.356563782
    b3 = 1.781477937
    b4 = -1.821255978
    b5 = 1.330274429

    t_val = 1.0 / (1.0 + p * z)
    phi = (1.0 / math.sqrt(2.0 * math.pi)) * math.exp(-z * z / 2.0)
    return 1.0 - phi * (
        b1 * t_val + b2 * t_val**2 + b3 * t_val**3 + b4 * t_val**4 + b5 * t_val**5
    )


def two_tailed_p_value(z_abs: float) -> float:
    p_value = 2.0 * (1.0 - _normal_cdf(abs(z_abs)))
    return max(0.0, min(1.0, p_value))


def compute_significance(
    metrics: ExperimentMetrics, significance_level: float = 0.05
) -> SignificanceResult:
    """Compare group accuracies with a pooled two-proportion z-test.

    An empty group or a zero standard error (no variance, e.g. both groups
    at 100%) is reported as not significant with p = 1 and no winner.
    """
    n_a = metrics.group_a.predictions
    n_b = metrics.group_b.predictions

    if n_a == 0 or n_b == 0:
        return SignificanceResult(is_significant=False, p_value=1.0)

    correct_a = metrics.group_a.correct
    correct_b = metrics.group_b.correct
    acc_a = correct_a / n_a
    acc_b = correct_b / n_b

    pooled = (correct_a + correct_b) / (n_a + n_b)
    se = math.sqrt(pooled * (1 - pooled) * (1 / n_a + 1 / n_b))

    difference = acc_a - acc_b
    winner = Group.A if acc_a > acc_b else Group.B

    if se == 0:
        return SignificanceResult(
            is_significant=False,
            p_value=1.0,
            z_score=0.0,
            accuracy_a=acc_a,
            accuracy_b=acc_b,
            difference=difference,
        )

    z_score = abs(difference) / se
    p_value = two_tailed_p_value(z_score)

    # Unpooled standard error for the 95% interval on the difference
    se_diff = math.sqrt(acc_a * (1 - acc_a) / n_a + acc_b * (1 - acc_b) / n_b)
    ci = (round(difference - 1.96 * se_diff, 6), round(difference + 1.96 * se_diff, 6))

    return SignificanceResult(
        is_significant=p_value < significance_level,
        p_value=p_value,
        z_score=z_score,
        accuracy_a=acc_a,
        accuracy_b=acc_b,
        difference=difference,
        confidence_interval=ci,
        winner=winner,
        improvement=abs(difference) * 100,
    )
