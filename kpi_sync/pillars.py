"""
Pillar Aggregation Module
Rolls a pillar's key-result metrics up into one score and status.
"""

from typing import Any, Dict, Iterable, List, Mapping

from kpi_sync.config_manager import DEFAULT_THRESHOLDS
from kpi_sync.dates import DateLike
from kpi_sync.scoring import (
    GREEN, RED, YELLOW, evaluate_metric, get_percentage_of_target,
    metric_target, round_half_up, status_from_percentage
)


SCORED_METRIC_TYPE = 'key_result'


def scored_metrics(metrics: Iterable[Any]) -> List[Any]:
    """Metrics that count towards the pillar score; leading indicators and quality metrics do not."""
    return [m for m in metrics if (getattr(m, 'metric_type', None) or SCORED_METRIC_TYPE) == SCORED_METRIC_TYPE]


def get_pillar_score(metrics: Iterable[Any]) -> int:
    """
    Unweighted mean of each metric's rounded percentage of target, rounded.
    
    The caller decides which metrics participate; see `scored_metrics`.
    Returns 0 for an empty list.
    """
    metrics = list(metrics)
    if not metrics:
        return 0
    
    total = sum(
        get_percentage_of_target(m.current_value or 0, metric_target(m)['target'])
        for m in metrics
    )
    return round_half_up(total / len(metrics))


def calculate_pillar_status(score: float, thresholds: Mapping[str, float] = None) -> str:
    """Bucket a pillar score against the pillar's own thresholds."""
    return status_from_percentage(score, thresholds or DEFAULT_THRESHOLDS)


def summarize_pillar(
    pillar: Any,
    metrics: Iterable[Any],
    now: DateLike,
    metric_thresholds: Mapping[str, float] = None
) -> Dict[str, Any]:
    """
    Score, status and per-status metric counts for one pillar.
    
    Args:
        pillar: Object with id, name and color_thresholds
        metrics: All of the pillar's metrics
        now: Reference instant for pace-adjusted metrics
        metric_thresholds: Dashboard thresholds for metric statuses
    """
    metrics = list(metrics)
    thresholds = getattr(pillar, 'color_thresholds', None) or DEFAULT_THRESHOLDS
    score = get_pillar_score(scored_metrics(metrics))
    
    counts = {GREEN: 0, YELLOW: 0, RED: 0}
    for metric in metrics:
        counts[evaluate_metric(metric, now, metric_thresholds)['status']] += 1
    
    return {
        'id': pillar.id,
        'name': pillar.name,
        'score': score,
        'status': calculate_pillar_status(score, thresholds),
        'metricCount': len(metrics),
        'statusCounts': counts,
    }
