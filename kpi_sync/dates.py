"""
Date Placeholder Module
Substitutes symbolic date tokens in mapping queries and computes cadence periods.
"""

import re
from datetime import date, datetime, timedelta
from typing import Callable, Dict, Tuple, Union

from dateutil.relativedelta import relativedelta


DateLike = Union[date, datetime]

DATE_FORMAT = '%Y-%m-%d'


def _as_date(now: DateLike) -> date:
    return now.date() if isinstance(now, datetime) else now


def month_bounds(day: date) -> Tuple[date, date]:
    """First and last day of the month containing `day`."""
    start = day.replace(day=1)
    end = start + relativedelta(months=1) - timedelta(days=1)
    return start, end


def quarter_bounds(day: date) -> Tuple[date, date]:
    """First and last day of the calendar quarter containing `day`."""
    first_month = 3 * ((day.month - 1) // 3) + 1
    start = date(day.year, first_month, 1)
    end = start + relativedelta(months=3) - timedelta(days=1)
    return start, end


def year_bounds(day: date) -> Tuple[date, date]:
    """Jan 1 and Dec 31 of the year containing `day`."""
    return date(day.year, 1, 1), date(day.year, 12, 31)


def week_bounds(day: date) -> Tuple[date, date]:
    """Monday and Sunday of the ISO week containing `day`."""
    start = day - timedelta(days=day.weekday())
    return start, start + timedelta(days=6)


CADENCE_BOUNDS: Dict[str, Callable[[date], Tuple[date, date]]] = {
    'weekly': week_bounds,
    'monthly': month_bounds,
    'quarterly': quarter_bounds,
    'annual': year_bounds,
}


def period_bounds(cadence: str, now: DateLike) -> Tuple[date, date]:
    """
    Start and end dates (inclusive) of the cadence period containing `now`.
    
    Args:
        cadence: 'weekly', 'monthly', 'quarterly' or 'annual'
        now: Reference instant
        
    Raises:
        ValueError: For an unknown cadence
    """
    try:
        bounds = CADENCE_BOUNDS[cadence]
    except KeyError:
        raise ValueError(f"Unknown cadence: {cadence}")
    return bounds(_as_date(now))


def placeholder_values(now: DateLike) -> Dict[str, date]:
    """
    Map every supported placeholder token to its concrete date.
    
    Args:
        now: Reference instant; the calendar date is taken as-is, so callers
            should pass a timezone-adjusted value
    """
    today = _as_date(now)
    
    month_start, month_end = month_bounds(today)
    last_month_start, last_month_end = month_bounds(month_start - timedelta(days=1))
    quarter_start, quarter_end = quarter_bounds(today)
    last_quarter_start, last_quarter_end = quarter_bounds(quarter_start - timedelta(days=1))
    year_start, year_end = year_bounds(today)
    last_year_start, last_year_end = year_bounds(year_start - timedelta(days=1))
    
    return {
        'CURRENT_DATE': today,
        'CURRENT_MONTH_START': month_start,
        'CURRENT_MONTH_END': month_end,
        'LAST_MONTH_START': last_month_start,
        'LAST_MONTH_END': last_month_end,
        'CURRENT_QUARTER_START': quarter_start,
        'CURRENT_QUARTER_END': quarter_end,
        'LAST_QUARTER_START': last_quarter_start,
        'LAST_QUARTER_END': last_quarter_end,
        'CURRENT_YEAR_START': year_start,
        'CURRENT_YEAR_END': year_end,
        'LAST_YEAR_START': last_year_start,
        'LAST_YEAR_END': last_year_end,
        'YTD_START': year_start,
    }


# Longest tokens first so no token is matched as part of another
_TOKEN_PATTERN = re.compile(
    '|'.join(sorted(placeholder_values(date(2000, 1, 1)), key=len, reverse=True))
)


def resolve_date_placeholders(query: str, now: DateLike) -> str:
    """
    Replace every date placeholder in a query string with a YYYY-MM-DD date.
    
    This is plain text substitution with no knowledge of JSON or JQL syntax,
    so it must run before the query is parsed. Unknown tokens are left as
    they are.
    
    Args:
        query: Raw mapping query
        now: Reference instant
        
    Returns:
        Query with placeholders substituted
    """
    if not query:
        return query
    
    values = placeholder_values(now)
    return _TOKEN_PATTERN.sub(lambda m: values[m.group(0)].strftime(DATE_FORMAT), query)
