"""Frequentist analysis of conversion counts.

Pure functions over counts; nothing here touches the database. Each
non-control row is compared with the control row for the same metric using a
pooled two-proportion z-test.
"""

from __future__ import annotations

import math
from datetime import datetime

from src.models.domain.experiment import ExperimentRead, StatisticalConfig
from src.models.domain.results import (
    ConfidenceInterval,
    ExperimentResult,
    ExperimentRunStatus,
    LiftInterval,
    Recommendation,
)


def normal_cdf(x: float) -> float:
    """Standard normal cumulative distribution function."""
    return 0.5 * (1.0 + math.erf(x / math.sqrt(2.0)))


def conversion_rate(conversions: int, sample_size: int) -> float:
    if sample_size <= 0:
        return 0.0
    return conversions / sample_size


def bernoulli_variance(rate: float) -> float:
    """``p * (1 - p)``, floored at 0.

    Conversions are not deduplicated, so a rate can exceed 1 when users convert
    more than once on a metric.
    """
    return max(0.0, rate * (1.0 - rate))


def standard_error(rate: float, sample_size: int) -> float:
    if sample_size <= 0:
        return 0.0
    return math.sqrt(bernoulli_variance(rate) / sample_size)


def confidence_interval(
    rate: float,
    sample_size: int,
    z: float,
    confidence_level: float,
) -> ConfidenceInterval:
    """Normal-approximation interval around ``rate``, clamped to [0, 1]."""
    margin = z * standard_error(rate, sample_size)
    return ConfidenceInterval(
        lower=min(1.0, max(0.0, rate - margin)),
        upper=max(0.0, min(1.0, rate + margin)),
        confidence_level=confidence_level,
    )


def lift(rate: float, control_rate: float) -> float:
    """Percent change of ``rate`` over ``control_rate``; 0 when control is 0."""
    if control_rate == 0:
        return 0.0
    return (rate - control_rate) / control_rate * 100.0


def _unpooled_se(rate: float, n: int, control_rate: float, control_n: int) -> float:
    return math.sqrt(bernoulli_variance(rate) / n + bernoulli_variance(control_rate) / control_n)


def two_proportion_p_value(
    conversions: int,
    sample_size: int,
    control_conversions: int,
    control_sample_size: int,
) -> float:
    """Two-sided p-value of a pooled two-proportion z-test."""
    if sample_size <= 0 or control_sample_size <= 0:
        return 1.0

    pooled = (conversions + control_conversions) / (sample_size + control_sample_size)
    se = math.sqrt(
        bernoulli_variance(pooled) * (1.0 / sample_size + 1.0 / control_sample_size)
    )
    if se == 0:
        return 1.0

    diff = conversions / sample_size - control_conversions / control_sample_size
    z = diff / se
    return max(0.0, min(1.0, 2.0 * (1.0 - normal_cdf(abs(z)))))


def lift_interval(
    rate: float,
    sample_size: int,
    control_rate: float,
    control_sample_size: int,
    z: float,
) -> LiftInterval:
    """Interval of the rate difference, in percent of the control rate."""
    if control_rate == 0 or sample_size <= 0 or control_sample_size <= 0:
        return LiftInterval()

    margin = z * _unpooled_se(rate, sample_size, control_rate, control_sample_size)
    diff = rate - control_rate
    return LiftInterval(
        lower=(diff - margin) / control_rate * 100.0,
        upper=(diff + margin) / control_rate * 100.0,
    )


def post_hoc_power(
    rate: float,
    sample_size: int,
    control_rate: float,
    control_sample_size: int,
    z: float,
) -> float | None:
    """Power to detect the observed difference at the configured alpha."""
    if sample_size <= 0 or control_sample_size <= 0:
        return None

    diff = abs(rate - control_rate)
    se = _unpooled_se(rate, sample_size, control_rate, control_sample_size)
    if se == 0:
        return 0.0 if diff == 0 else 1.0
    return normal_cdf(diff / se - z)


def calculate_results(
    experiment: ExperimentRead,
    sample_sizes: dict[str, int],
    conversions: dict[tuple[str, str], int],
    calculated_at: datetime,
) -> list[ExperimentResult]:
    """One result per (variant, metric), variants in definition order.

    Args:
        experiment: Experiment definition.
        sample_sizes: Distinct assigned users per variant id.
        conversions: Conversion counts per (variant id, metric name).
        calculated_at: Timestamp stamped on every row.
    """
    config = experiment.statistical_config
    z = config.z_score
    alpha = 1.0 - config.confidence_level
    control = experiment.control_variant

    results: list[ExperimentResult] = []
    for variant in experiment.variants:
        n = sample_sizes.get(variant.id, 0)
        is_control = control is not None and variant.id == control.id

        for metric in experiment.metrics:
            count = conversions.get((variant.id, metric.name), 0)
            rate = conversion_rate(count, n)
            row = ExperimentResult(
                experiment_id=experiment.id,
                variant_id=variant.id,
                metric_name=metric.name,
                is_control=is_control,
                sample_size=n,
                conversion_count=count,
                conversion_rate=rate,
                standard_error=standard_error(rate, n),
                confidence_interval=confidence_interval(rate, n, z, config.confidence_level),
                calculated_at=calculated_at,
            )

            if control is not None and not is_control:
                control_n = sample_sizes.get(control.id, 0)
                control_count = conversions.get((control.id, metric.name), 0)
                control_rate = conversion_rate(control_count, control_n)
                p_value = two_proportion_p_value(count, n, control_count, control_n)
                row = row.model_copy(
                    update={
                        "lift": lift(rate, control_rate),
                        "lift_confidence_interval": lift_interval(
                            rate, n, control_rate, control_n, z
                        ),
                        "p_value": p_value,
                        "is_significant": p_value < alpha,
                        "statistical_power": post_hoc_power(
                            rate, n, control_rate, control_n, z
                        ),
                    }
                )
            results.append(row)
    return results


def runtime_hours(experiment: ExperimentRead, now: datetime) -> int:
    """Whole hours between start and end (or ``now`` while still open)."""
    if experiment.started_at is None:
        return 0
    end = experiment.ended_at or now
    return max(0, int((end - experiment.started_at).total_seconds() // 3600))


def run_status(
    experiment: ExperimentRead,
    results: list[ExperimentResult],
    now: datetime,
) -> ExperimentRunStatus:
    config = experiment.statistical_config
    sample_sizes = {r.variant_id: r.sample_size for r in results}
    total = sum(sample_sizes.values())
    hours = runtime_hours(experiment, now)

    primary_names = experiment.primary_metric_names
    primary = [r for r in results if r.metric_name in primary_names]
    significance_achieved = any(r.is_significant for r in primary)

    candidates = [r for r in primary if not r.is_control and r.is_significant and r.lift > 0]
    winner = max(candidates, key=lambda r: r.lift, default=None)

    sample_size_reached = total >= config.minimum_sample_size
    return ExperimentRunStatus(
        is_running=experiment.is_active,
        runtime_hours=hours,
        total_sample_size=total,
        sample_size_reached=sample_size_reached,
        significance_achieved=significance_achieved,
        winner_declared=winner is not None,
        winner_variant_id=winner.variant_id if winner else None,
        can_conclude=sample_size_reached
        and (significance_achieved or hours >= config.minimum_runtime_hours),
    )


def recommend(status: ExperimentRunStatus, config: StatisticalConfig) -> Recommendation:
    """Decision table, first matching row wins.

    | condition                          | action   | confidence |
    |------------------------------------|----------|------------|
    | minimum sample size not reached    | continue | high       |
    | significance on a primary metric   | conclude | high       |
    | maximum runtime elapsed            | conclude | medium     |
    | otherwise                          | continue | medium     |
    """
    if not status.sample_size_reached:
        return Recommendation(
            action="continue",
            reason="Minimum sample size not yet reached",
            confidence="high",
        )
    if status.significance_achieved:
        return Recommendation(
            action="conclude",
            reason="Statistical significance achieved",
            confidence="high",
        )
    if status.runtime_hours >= config.maximum_runtime_days * 24:
        return Recommendation(
            action="conclude",
            reason="Maximum runtime reached",
            confidence="medium",
        )
    return Recommendation(
        action="continue",
        reason="Continue collecting data",
        confidence="medium",
    )
