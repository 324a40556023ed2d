"""
Metric Scoring Module
Derives status, percentage of target, trend and pace for a metric.

Nothing here is stored; every value is recomputed from current, target and
previous values on each read. All functions are total over numeric input:
a zero target or missing previous value has a defined result.
"""

import math
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from kpi_sync.config_manager import DEFAULT_THRESHOLDS
from kpi_sync.dates import DateLike, period_bounds


GREEN = 'green'
YELLOW = 'yellow'
RED = 'red'

COMPARISON_MODES = ('on_track', 'at_or_above', 'at_or_below', 'exact')
CADENCES = ('weekly', 'monthly', 'quarterly', 'annual')

STATUS_LABELS = {GREEN: 'On Track', YELLOW: 'At Risk', RED: 'Off Track'}
STATUS_COLORS = {GREEN: '#12B76A', YELLOW: '#F79009', RED: '#F04438'}
STATUS_BG_COLORS = {GREEN: '#ECFDF3', YELLOW: '#FFFAEB', RED: '#FEF3F2'}

COMPARISON_MODE_LABELS = {
    'on_track': 'On Track to Goal',
    'at_or_above': 'At or Above Target',
    'at_or_below': 'At or Below Target',
    'exact': 'Exactly at Target',
}

COMPARISON_MODE_DESCRIPTIONS = {
    'on_track': 'Cumulative progress toward end-of-period goal (e.g., "15 new customers by EOQ")',
    'at_or_above': 'Value should stay at or above target (e.g., "95% retention rate")',
    'at_or_below': 'Value should stay at or below target (e.g., "< 3 day resolution time")',
    'exact': 'Value should be exactly at target (rare, for specific SLAs)',
}

# Variance bands for 'exact' mode, in percent of target
EXACT_GREEN_VARIANCE = 5
EXACT_YELLOW_VARIANCE = 15


def status_from_percentage(percentage: float, thresholds: Mapping[str, float] = None) -> str:
    """Bucket a percentage against green/yellow floors."""
    thresholds = thresholds or DEFAULT_THRESHOLDS
    if percentage >= thresholds['green']:
        return GREEN
    if percentage >= thresholds['yellow']:
        return YELLOW
    return RED


def get_metric_status(
    current_value: float,
    target_value: float,
    thresholds: Mapping[str, float] = None,
    comparison_mode: str = 'at_or_above'
) -> str:
    """
    Status of a metric under its comparison mode.
    
    Args:
        current_value: Latest value
        target_value: Target; zero always yields yellow
        thresholds: {'green': floor, 'yellow': floor} in percent
        comparison_mode: 'at_or_above', 'at_or_below', 'on_track' or 'exact'
        
    Returns:
        'green', 'yellow' or 'red'
    """
    thresholds = thresholds or DEFAULT_THRESHOLDS
    
    if target_value == 0:
        return YELLOW
    
    if comparison_mode == 'at_or_below':
        if current_value <= target_value:
            return GREEN
        overage_percent = (current_value - target_value) / target_value * 100
        # Yellow band width comes from the green threshold, not the yellow one
        if overage_percent <= 100 - thresholds['green']:
            return YELLOW
        return RED
    
    if comparison_mode == 'exact':
        variance = abs(current_value - target_value) / target_value * 100
        if variance <= EXACT_GREEN_VARIANCE:
            return GREEN
        if variance <= EXACT_YELLOW_VARIANCE:
            return YELLOW
        return RED
    
    # at_or_above, naive on_track, and anything unrecognised
    return status_from_percentage(current_value / target_value * 100, thresholds)


def get_pace(current_value: float, target_value: float, cadence: str, now: DateLike) -> Dict[str, float]:
    """
    Expected value and pace for a cumulative metric at `now`.
    
    Both elapsed and total days count the current day, so the first day of a
    weekly period expects 1/7 of the target.
    
    Returns:
        Dict with elapsedFraction, expectedValue and pacePercentage
    """
    start, end = period_bounds(cadence, now)
    today = now.date() if isinstance(now, datetime) else now
    
    total_days = (end - start).days + 1
    days_elapsed = (today - start).days + 1
    elapsed_fraction = days_elapsed / total_days
    
    expected_value = target_value * days_elapsed / total_days
    if expected_value > 0:
        pace_percentage = current_value * 100 * total_days / (target_value * days_elapsed)
    else:
        pace_percentage = 100
    
    return {
        'elapsedFraction': elapsed_fraction,
        'expectedValue': expected_value,
        'pacePercentage': pace_percentage,
    }


def get_on_track_status(
    current_value: float,
    target_value: float,
    cadence: str,
    now: DateLike,
    thresholds: Mapping[str, float] = None
) -> str:
    """Pace-adjusted status: current value against the expected value so far in the period."""
    if target_value == 0:
        return YELLOW
    pace = get_pace(current_value, target_value, cadence, now)
    return status_from_percentage(pace['pacePercentage'], thresholds)


def get_percentage_of_target(current_value: float, target_value: float) -> int:
    """Rounded percentage of target; 0 when the target is 0."""
    if target_value == 0:
        return 0
    return round_half_up(current_value / target_value * 100)


def get_trend_direction(current_value: float, previous_value: Optional[float]) -> str:
    """'up', 'down' or 'flat'; flat when there is no previous value."""
    if previous_value is None:
        return 'flat'
    if current_value > previous_value:
        return 'up'
    if current_value < previous_value:
        return 'down'
    return 'flat'


def is_trend_positive(direction: str, comparison_mode: str) -> bool:
    """Whether movement in `direction` is good news for a metric in `comparison_mode`."""
    if direction == 'flat':
        return True
    if comparison_mode == 'at_or_below':
        return direction == 'down'
    if comparison_mode == 'exact':
        return False
    return direction == 'up'


def metric_target(metric: Any) -> Dict[str, Any]:
    """
    Target and thresholds that apply to a metric for its cadence.
    
    A per-cadence entry in `targets` wins over `target_value`; its
    warningThreshold/criticalThreshold, when both are set, become the
    green/yellow floors.
    """
    target = metric.target_value or 0
    thresholds = None
    
    period = (getattr(metric, 'targets', None) or {}).get(getattr(metric, 'cadence', None) or '')
    if period and period.get('target') is not None:
        target = period['target']
        if period.get('warningThreshold') is not None and period.get('criticalThreshold') is not None:
            thresholds = {'green': period['warningThreshold'], 'yellow': period['criticalThreshold']}
    
    return {'target': target, 'thresholds': thresholds}


def evaluate_metric(
    metric: Any,
    now: DateLike,
    thresholds: Mapping[str, float] = None
) -> Dict[str, Any]:
    """
    Compute every derived field of a metric.
    
    Args:
        metric: Object with current_value, target_value, previous_value,
            comparison_mode, cadence and optional targets
        now: Reference instant for pace calculation
        thresholds: Dashboard thresholds used when the metric has none of its own
        
    Returns:
        Dict with status, percentageOfTarget, trendDirection, trendPositive,
        and expectedValue/pacePercentage for 'on_track' metrics
    """
    current = metric.current_value or 0
    mode = getattr(metric, 'comparison_mode', None)
    if mode not in COMPARISON_MODES:
        mode = 'at_or_above'
    applicable = metric_target(metric)
    target = applicable['target']
    thresholds = applicable['thresholds'] or thresholds or DEFAULT_THRESHOLDS
    trend = get_trend_direction(current, metric.previous_value)
    
    result = {
        'percentageOfTarget': get_percentage_of_target(current, target),
        'trendDirection': trend,
        'trendPositive': is_trend_positive(trend, mode),
    }
    
    cadence = getattr(metric, 'cadence', None)
    if mode == 'on_track' and cadence in CADENCES:
        result['status'] = get_on_track_status(current, target, cadence, now, thresholds)
        if target != 0:
            pace = get_pace(current, target, cadence, now)
            result['expectedValue'] = round(pace['expectedValue'], 2)
            result['pacePercentage'] = round(pace['pacePercentage'], 1)
    else:
        result['status'] = get_metric_status(current, target, thresholds, mode)
    
    return result


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves towards positive infinity."""
    return math.floor(value + 0.5)
