"""
KPI aggregation - weekly metrics, team metrics, scoring, and ranking.

Pure functions over collections of ClaimEstimate. Nothing here reads
storage or mutates its input; every ratio degrades to 0 instead of
dividing by zero.
"""

import math
from datetime import datetime, timezone
from itertools import chain
from typing import Iterable, Mapping

from estimator_kpi.models import (
    ClaimEstimate,
    EstimatorProfile,
    WeeklyMetrics,
    RankedEstimator,
    Recommendation,
)
from estimator_kpi.lifecycle import as_utc, round_half_up
from estimator_kpi.config import (
    SCORE_WEIGHTS,
    DOLLAR_PER_HOUR_CEILING,
    REVISION_RATE_CEILING,
    DAYS_HELD_CEILING,
    HIGH_REVISION_RATE,
    TARGET_DOLLAR_PER_HOUR,
    EXCELLENT_APPROVAL_RATE,
    SEVERITY_LEVELS,
    SEVERITY_TARGETS,
    PERFORMANCE_WARNING_RATIO,
    ACCURACY_EXCELLENT,
    ACCURACY_GOOD,
)

SECONDS_PER_DAY = 86400

# (metric, profile field, lower is better)
_PROFILE_TARGETS = (
    ("dollar_per_hour", "target_dollars_per_hour", False),
    ("total_estimates", "target_estimates_per_week", False),
    ("revision_rate", "target_max_revision_rate", True),
    ("avg_days_held", "target_max_cycle_days", True),
)


# --- Public API ---

def compute_weekly_metrics(
    entries: Iterable[ClaimEstimate],
    now: datetime | None = None,
) -> WeeklyMetrics:
    """
    Folds estimates into one WeeklyMetrics.

    Only entries with severity, active time, and estimate value set count
    toward any ratio. An empty valid set returns all-zero metrics.
    """
    valid = [e for e in entries if is_scorable(e)]
    if not valid:
        return WeeklyMetrics()

    now = as_utc(now) if now else datetime.now(timezone.utc)
    count = len(valid)

    total_days = sum(_days_held(e, now) for e in valid)
    total_revisions = sum(e.revisions or 0 for e in valid)
    first_time_approvals = sum(1 for e in valid if not e.revisions)

    total_value = sum(e.estimate_value for e in valid)
    total_hours = sum(
        (e.active_time_minutes + (e.revision_time_minutes or 0)) / 60 for e in valid
    )

    severity_breakdown: dict[int, int] = {s: 0 for s in SEVERITY_LEVELS}
    avg_time: dict[int, float] = {}
    avg_value: dict[int, float] = {}

    for severity in SEVERITY_LEVELS:
        bucket = [e for e in valid if e.severity == severity]
        severity_breakdown[severity] = len(bucket)
        avg_time[severity] = _mean([e.active_time_minutes / 60 for e in bucket])
        avg_value[severity] = _mean([e.estimate_value for e in bucket])

    return WeeklyMetrics(
        avg_days_held=total_days / count,
        revision_rate=total_revisions / count,
        first_time_approval_rate=first_time_approvals / count * 100,
        dollar_per_hour=total_value / total_hours if total_hours > 0 else 0.0,
        total_estimates=count,
        severity_breakdown=severity_breakdown,
        avg_time_per_severity=avg_time,
        avg_value_per_severity=avg_value,
    )


def compute_team_metrics(
    per_estimator: Mapping[str, Iterable[ClaimEstimate]],
    now: datetime | None = None,
) -> WeeklyMetrics:
    """
    Recomputes metrics over the union of every estimator's entries.

    Not an average of individual metrics: team $/hour is total team
    dollars over total team hours.
    """
    return compute_weekly_metrics(chain.from_iterable(per_estimator.values()), now=now)


def compute_overall_score(metrics: WeeklyMetrics) -> int:
    """
    Weighted 0-100 score used for ranking.

    $/hour 40%, revision rate 30% (lower is better), first-time
    approval 20%, days held 10% (lower is better).
    """
    dollar_hour_score = _clamp(metrics.dollar_per_hour / DOLLAR_PER_HOUR_CEILING) * SCORE_WEIGHTS["dollar_per_hour"]
    revision_score = _clamp(
        (REVISION_RATE_CEILING - metrics.revision_rate) / REVISION_RATE_CEILING
    ) * SCORE_WEIGHTS["revision_rate"]
    approval_score = _clamp(metrics.first_time_approval_rate / 100) * SCORE_WEIGHTS["first_time_approval"]
    efficiency_score = _clamp(
        (DAYS_HELD_CEILING - metrics.avg_days_held) / DAYS_HELD_CEILING
    ) * SCORE_WEIGHTS["efficiency"]

    return round_half_up(dollar_hour_score + revision_score + approval_score + efficiency_score)


def rank_estimators(
    per_estimator: Mapping[str, Iterable[ClaimEstimate]],
    now: datetime | None = None,
) -> list[RankedEstimator]:
    """
    Scores every estimator and sorts by overall score, highest first.

    Equal scores keep the mapping's iteration order (stable sort).
    """
    ranked = []
    for estimator_id, entries in per_estimator.items():
        metrics = compute_weekly_metrics(entries, now=now)
        ranked.append(RankedEstimator(
            estimator_id=estimator_id,
            metrics=metrics,
            overall_score=compute_overall_score(metrics),
        ))
    return sorted(ranked, key=lambda r: r.overall_score, reverse=True)


def generate_recommendations(estimator_name: str, metrics: WeeklyMetrics) -> list[Recommendation]:
    """Rule-based coaching notes for the scorecard."""
    recommendations = []

    if metrics.revision_rate > HIGH_REVISION_RATE:
        recommendations.append(Recommendation(
            type="warning",
            message=(
                f"{estimator_name} has a high revision rate ({metrics.revision_rate:.1f}). "
                "Consider additional training or limiting to lower severity claims."
            ),
        ))

    if metrics.dollar_per_hour < TARGET_DOLLAR_PER_HOUR:
        recommendations.append(Recommendation(
            type="warning",
            message=(
                f"{estimator_name}'s productivity is below target "
                f"(${metrics.dollar_per_hour:,.0f}/hour). Review work assignment strategy."
            ),
        ))

    if metrics.first_time_approval_rate > EXCELLENT_APPROVAL_RATE:
        recommendations.append(Recommendation(
            type="success",
            message=(
                f"{estimator_name} has excellent first-time approval rate "
                f"({metrics.first_time_approval_rate:.0f}%). Consider assigning more complex claims."
            ),
        ))

    return recommendations


def is_scorable(entry: ClaimEstimate) -> bool:
    """Whether an entry has the fields every ratio depends on."""
    return (
        entry.severity is not None
        and entry.active_time_minutes is not None
        and entry.estimate_value is not None
    )


# --- Targets ---

def performance_status(actual: float, target: float, lower_is_better: bool = False) -> str:
    """success at or past target, warning within 80% of it, destructive otherwise."""
    if lower_is_better:
        if actual <= 0:
            return "success"
        ratio = target / actual
    else:
        if target <= 0:
            return "success"
        ratio = actual / target

    if ratio >= 1:
        return "success"
    if ratio >= PERFORMANCE_WARNING_RATIO:
        return "warning"
    return "destructive"


def target_statuses(
    metrics: WeeklyMetrics,
    profile: EstimatorProfile | None = None,
) -> dict[str, dict]:
    """
    Compares metrics with an estimator's targets.

    Profile targets win. $/hour and revision rate fall back to the
    team-wide defaults; volume and days held are only reported when the
    profile sets them.
    """
    targets: dict[str, tuple[float, bool]] = {
        "dollar_per_hour": (TARGET_DOLLAR_PER_HOUR, False),
        "revision_rate": (HIGH_REVISION_RATE, True),
    }
    if profile is not None:
        for metric, field, lower_is_better in _PROFILE_TARGETS:
            target = getattr(profile, field)
            if target is not None:
                targets[metric] = (target, lower_is_better)

    statuses = {}
    for metric, (target, lower_is_better) in targets.items():
        actual = getattr(metrics, metric)
        statuses[metric] = {
            "actual": actual,
            "target": target,
            "status": performance_status(actual, target, lower_is_better=lower_is_better),
        }
    return statuses


def severity_targets(metrics: WeeklyMetrics) -> dict[int, dict]:
    """Per-severity averages beside the expected time and value range."""
    table = {}
    for severity in SEVERITY_LEVELS:
        target = SEVERITY_TARGETS[severity]
        count = metrics.severity_breakdown[severity]
        avg_value = metrics.avg_value_per_severity[severity]
        table[severity] = {
            "estimates": count,
            "avg_hours": metrics.avg_time_per_severity[severity],
            "time_target": target["time"],
            "avg_value": avg_value,
            "value_min": target["value_min"],
            "value_max": target["value_max"] if math.isfinite(target["value_max"]) else None,
            "value_status": severity_value_status(avg_value, severity) if count else None,
        }
    return table


def severity_value_status(value: float, severity: int) -> str:
    """Where an average estimate value falls against its severity's expected range."""
    target = SEVERITY_TARGETS[severity]
    if target["value_min"] <= value <= target["value_max"]:
        return "success"
    if value < target["value_min"]:
        return "warning"
    return "destructive"


# --- Settlement Accuracy ---

def settlement_accuracy(estimated: float, actual: float) -> float:
    """Percent the settlement deviated from the estimate. Positive means it settled higher."""
    if not estimated:
        return 0.0
    return (actual - estimated) / estimated * 100


def accuracy_rating(accuracy: float) -> str:
    if abs(accuracy) <= ACCURACY_EXCELLENT:
        return "excellent"
    if abs(accuracy) <= ACCURACY_GOOD:
        return "good"
    return "needs-review"


def average_settlement_accuracy(entries: Iterable[ClaimEstimate]) -> float:
    """Mean accuracy over settled entries that carry both amounts."""
    return _mean(_settlement_accuracies(entries))


def settlement_summary(entries: Iterable[ClaimEstimate]) -> dict:
    """Settled count, mean accuracy, and its rating (None until something settles)."""
    accuracies = _settlement_accuracies(entries)
    average = _mean(accuracies)
    return {
        "settled_estimates": len(accuracies),
        "average_accuracy": average,
        "rating": accuracy_rating(average) if accuracies else None,
    }


# --- Internal ---

def _settlement_accuracies(entries: Iterable[ClaimEstimate]) -> list[float]:
    return [
        settlement_accuracy(e.estimate_value, e.actual_settlement)
        for e in entries
        if e.is_settled and e.actual_settlement and e.estimate_value
    ]


def _days_held(entry: ClaimEstimate, now: datetime) -> int:
    """Whole days since receipt, rounded up. Future-dated entries count as 0."""
    elapsed = (now - as_utc(entry.date_received)).total_seconds() / SECONDS_PER_DAY
    return max(0, math.ceil(elapsed))


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))
