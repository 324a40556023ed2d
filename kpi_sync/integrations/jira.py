"""
Jira REST API Client Module
Runs JQL searches against Jira Cloud and reduces the matches to one number.
"""

from typing import Any, Dict, Generator, List, Optional

import requests

from kpi_sync.integrations.base import (
    DEFAULT_MAX_RECORDS, AggregationResult, IntegrationAPIError,
    RateLimiter, aggregate_values, create_session, error_message,
    validate_aggregation
)
from kpi_sync.utils.logger import get_logger

logger = get_logger(__name__)


# Friendly field names mapped to the custom fields that usually hold them
FIELD_ALIASES = {
    'storyPoints': ('customfield_10016', 'story_points'),
}


def extract_field(issue: Dict, value_field: str) -> Any:
    """Read `value_field` from an issue, following known aliases when it is empty."""
    fields = issue.get('fields') or {}
    value = fields.get(value_field)
    
    if not value and value_field in FIELD_ALIASES:
        for alias in FIELD_ALIASES[value_field]:
            if fields.get(alias):
                return fields[alias]
        return 0
    
    return value


class JiraClient:
    """
    Jira Cloud REST client with pagination, rate limiting, and error handling.
    """
    
    def __init__(self, config: Dict, settings: Dict = None):
        """
        Args:
            config: Integration credentials: host, email, apiToken
            settings: HTTP settings from the `integrations` config section
        """
        settings = settings or {}
        host = (config.get('host') or '').strip().rstrip('/')
        if host and not host.startswith('http'):
            host = f"https://{host}"
        
        self.base_url = host
        self.email = config.get('email', '')
        self.api_token = config.get('apiToken', '')
        
        self.timeout = settings.get('timeout', 30)
        self.page_size = settings.get('page_size', 100)
        self.max_records = settings.get('max_records', DEFAULT_MAX_RECORDS)
        
        self._session = create_session(settings.get('max_retries', 3), settings.get('retry_delay', 1))
        self._session.auth = (self.email, self.api_token)
        self._limiter = RateLimiter(settings.get('requests_per_second', 5))
    
    def _make_request(
        self,
        method: str,
        endpoint: str,
        params: Dict = None,
        json_data: Dict = None
    ) -> Dict:
        """
        Make HTTP request to Jira API.
        
        Args:
            method: HTTP method
            endpoint: API endpoint below /rest/
            params: Query parameters
            json_data: JSON body data
            
        Returns:
            Response JSON
            
        Raises:
            IntegrationAPIError: If request fails
        """
        self._limiter.wait()
        
        url = f"{self.base_url}/rest/{endpoint}"
        
        try:
            response = self._session.request(
                method=method,
                url=url,
                params=params,
                json=json_data,
                timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Jira request failed: {e}")
            raise IntegrationAPIError(f"Jira API Error: {e}")
        
        if response.status_code == 401:
            raise IntegrationAPIError("Jira API Error: Authentication failed. Check your credentials.", 401)
        if response.status_code == 403:
            raise IntegrationAPIError("Jira API Error: Access forbidden. Check permissions.", 403)
        if response.status_code >= 400:
            message = error_message(response, ('errorMessages', 0), ('message',))
            raise IntegrationAPIError(f"Jira API Error: {message}", response.status_code)
        
        return response.json() if response.text else {}
    
    def search_issues(self, jql: str, fields: List[str] = None) -> Generator[Dict, None, None]:
        """
        Fetch issues matching a JQL query.
        
        Uses POST /api/3/search/jql with nextPageToken pagination and stops
        after `max_records` issues.
        
        Args:
            jql: JQL query string
            fields: Fields to include on each issue
            
        Yields:
            Issue dictionaries
        """
        jql = jql.replace('\n', ' ').strip()
        logger.info(f"Searching issues with JQL: {jql[:100]}")
        
        body: Dict[str, Any] = {'jql': jql, 'maxResults': self.page_size}
        if fields:
            body['fields'] = fields
        
        fetched = 0
        while True:
            response = self._make_request('POST', 'api/3/search/jql', json_data=body)
            
            issues = response.get('issues', [])
            if not issues:
                break
            
            for issue in issues:
                if fetched >= self.max_records:
                    logger.warning(f"Jira search hit the {self.max_records} issue cap")
                    return
                fetched += 1
                yield issue
            
            next_page_token = response.get('nextPageToken')
            if not next_page_token:
                break
            body['nextPageToken'] = next_page_token
            logger.debug(f"Fetched {fetched} issues, getting next page...")
    
    def aggregate(
        self,
        query: str,
        aggregation_method: str,
        value_field: Optional[str] = None
    ) -> AggregationResult:
        """
        Run a resolved JQL mapping query and reduce the matches.
        
        Raises:
            QueryConfigurationError: Bad aggregation settings
            IntegrationAPIError: The search failed
        """
        validate_aggregation(aggregation_method, value_field)
        
        if aggregation_method == 'count':
            count = sum(1 for _ in self.search_issues(query, fields=['key']))
            return AggregationResult(value=count, records_matched=count)
        
        fields = [value_field] + list(FIELD_ALIASES.get(value_field, ()))
        issues = self.search_issues(query, fields=fields)
        return aggregate_values(
            (extract_field(issue, value_field) for issue in issues),
            aggregation_method
        )
    
    def execute_query_with_aggregation(
        self,
        query: str,
        aggregation_method: str,
        value_field: Optional[str] = None
    ) -> float:
        """Run a JQL mapping query and return only the aggregated value."""
        return self.aggregate(query, aggregation_method, value_field).value
    
    def test_connection(self) -> bool:
        """Test connection to Jira API."""
        try:
            self._make_request('GET', 'api/3/myself')
            logger.info("Jira connection test successful")
            return True
        except Exception as e:
            logger.error(f"Jira connection test failed: {e}")
            return False
