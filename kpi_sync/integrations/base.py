"""
Integration Base Module
HTTP session setup, value extraction and aggregation shared by every provider client.
"""

import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from kpi_sync.utils.helpers import to_number
from kpi_sync.utils.logger import get_logger

logger = get_logger(__name__)


AGGREGATION_METHODS = ('sum', 'count', 'average', 'max', 'min')

DEFAULT_MAX_RECORDS = 10000


class IntegrationAPIError(Exception):
    """Raised when a provider API call fails (auth, network, non-2xx)."""
    
    def __init__(self, message: str, status_code: int = None, response: dict = None):
        self.message = message
        self.status_code = status_code
        self.response = response
        super().__init__(self.message)


class QueryConfigurationError(ValueError):
    """Raised for a mapping that can never succeed as configured."""


@dataclass
class AggregationResult:
    """Outcome of reducing a record set to one number."""
    value: float
    records_matched: int
    values_used: int = 0
    values_discarded: int = 0


def create_session(
    max_retries: int = 3,
    retry_delay: float = 1,
    headers: Dict[str, str] = None
) -> requests.Session:
    """Create a requests session with retry logic on throttling and 5xx."""
    session = requests.Session()
    
    session.headers.update({
        'Accept': 'application/json',
        'Content-Type': 'application/json'
    })
    if headers:
        session.headers.update(headers)
    
    retry_strategy = Retry(
        total=max_retries,
        backoff_factor=retry_delay,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=['GET', 'POST']
    )
    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount('https://', adapter)
    session.mount('http://', adapter)
    
    return session


class RateLimiter:
    """Spaces consecutive requests to at most `requests_per_second`."""
    
    def __init__(self, requests_per_second: float = 5):
        self.requests_per_second = requests_per_second
        self._last_request_time = 0.0
    
    def wait(self) -> None:
        if not self.requests_per_second or self.requests_per_second <= 0:
            return
        
        min_interval = 1.0 / self.requests_per_second
        elapsed = time.time() - self._last_request_time
        
        if elapsed < min_interval:
            time.sleep(min_interval - elapsed)
        
        self._last_request_time = time.time()


def error_message(response: requests.Response, *paths) -> str:
    """
    Pull a human-readable error out of a failed response body.
    
    Args:
        response: Failed response
        *paths: Candidate key paths into the JSON body, tried in order
    """
    try:
        body = response.json()
    except ValueError:
        body = None
    
    if isinstance(body, dict):
        for path in paths:
            value: Any = body
            for key in path:
                if isinstance(value, dict):
                    value = value.get(key)
                elif isinstance(value, list) and isinstance(key, int) and len(value) > key:
                    value = value[key]
                else:
                    value = None
                    break
            if value:
                return str(value)
    
    return response.reason or f"HTTP {response.status_code}"


def validate_aggregation(aggregation_method: str, value_field: Optional[str]) -> None:
    """
    Reject aggregation settings that cannot work.
    
    Raises:
        QueryConfigurationError: Unknown method, or a non-count method without a value field
    """
    if aggregation_method not in AGGREGATION_METHODS:
        raise QueryConfigurationError(f"Unknown aggregation method: {aggregation_method}")
    if aggregation_method != 'count' and not value_field:
        raise QueryConfigurationError(
            'valueField is required for aggregation methods other than count'
        )


def aggregate_values(
    raw_values: Iterable[Any],
    aggregation_method: str,
    strip_currency: bool = False
) -> AggregationResult:
    """
    Coerce extracted field values and reduce them.
    
    Non-numeric and empty values are skipped and only counted in
    `values_discarded`. An empty set of usable values reduces to 0 for
    every method.
    
    Args:
        raw_values: One extracted value per matched record
        aggregation_method: 'sum', 'average', 'max' or 'min'
        strip_currency: Remove '$' and ',' before parsing
    """
    numbers = []
    discarded = 0
    matched = 0
    
    for raw in raw_values:
        matched += 1
        number = to_number(raw, strip_currency=strip_currency)
        if number is None:
            discarded += 1
        else:
            numbers.append(number)
    
    if not numbers:
        value = 0
    elif aggregation_method == 'sum':
        value = sum(numbers)
    elif aggregation_method == 'average':
        value = sum(numbers) / len(numbers)
    elif aggregation_method == 'max':
        value = max(numbers)
    elif aggregation_method == 'min':
        value = min(numbers)
    else:
        raise QueryConfigurationError(f"Unknown aggregation method: {aggregation_method}")
    
    if discarded:
        logger.debug(f"Discarded {discarded} non-numeric values out of {matched}")
    
    return AggregationResult(
        value=value,
        records_matched=matched,
        values_used=len(numbers),
        values_discarded=discarded
    )
