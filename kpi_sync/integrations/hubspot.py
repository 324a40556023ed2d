"""
HubSpot CRM Client Module
Runs filtered CRM object searches and reduces the matches to one number.
"""

import json
from typing import Any, Dict, Generator, List, Optional, Tuple

import requests

from kpi_sync.filters import DEFAULT_OBJECT_TYPE, OBJECT_TYPE_KEY
from kpi_sync.integrations.base import (
    DEFAULT_MAX_RECORDS, AggregationResult, IntegrationAPIError,
    QueryConfigurationError, RateLimiter, aggregate_values, create_session,
    error_message, validate_aggregation
)
from kpi_sync.utils.helpers import safe_get
from kpi_sync.utils.logger import get_logger

logger = get_logger(__name__)


OBJECT_TYPES = [
    {'id': 'deals', 'label': 'Deals', 'description': 'Sales pipeline opportunities'},
    {'id': 'contacts', 'label': 'Contacts', 'description': 'Individual people in your CRM'},
    {'id': 'companies', 'label': 'Companies', 'description': 'Organizations in your CRM'},
]

_DEAL_STAGES = [
    {'label': 'Appointment Scheduled', 'value': 'appointmentscheduled'},
    {'label': 'Qualified to Buy', 'value': 'qualifiedtobuy'},
    {'label': 'Presentation Scheduled', 'value': 'presentationscheduled'},
    {'label': 'Decision Maker Bought-In', 'value': 'decisionmakerboughtin'},
    {'label': 'Contract Sent', 'value': 'contractsent'},
    {'label': 'Closed Won', 'value': 'closedwon'},
    {'label': 'Closed Lost', 'value': 'closedlost'},
]

_LIFECYCLE_STAGES = [
    {'label': 'Subscriber', 'value': 'subscriber'},
    {'label': 'Lead', 'value': 'lead'},
    {'label': 'Marketing Qualified Lead', 'value': 'marketingqualifiedlead'},
    {'label': 'Sales Qualified Lead', 'value': 'salesqualifiedlead'},
    {'label': 'Opportunity', 'value': 'opportunity'},
    {'label': 'Customer', 'value': 'customer'},
]

# Served when the live property list cannot be fetched
FALLBACK_PROPERTIES: Dict[str, List[Dict]] = {
    'deals': [
        {'name': 'dealname', 'label': 'Deal Name', 'type': 'string', 'fieldType': 'text'},
        {'name': 'amount', 'label': 'Amount', 'type': 'number', 'fieldType': 'number'},
        {'name': 'dealstage', 'label': 'Deal Stage', 'type': 'enumeration', 'fieldType': 'select',
         'options': _DEAL_STAGES},
        {'name': 'closedate', 'label': 'Close Date', 'type': 'date', 'fieldType': 'date'},
        {'name': 'createdate', 'label': 'Create Date', 'type': 'date', 'fieldType': 'date'},
        {'name': 'pipeline', 'label': 'Pipeline', 'type': 'enumeration', 'fieldType': 'select'},
    ],
    'contacts': [
        {'name': 'firstname', 'label': 'First Name', 'type': 'string', 'fieldType': 'text'},
        {'name': 'lastname', 'label': 'Last Name', 'type': 'string', 'fieldType': 'text'},
        {'name': 'email', 'label': 'Email', 'type': 'string', 'fieldType': 'text'},
        {'name': 'createdate', 'label': 'Create Date', 'type': 'date', 'fieldType': 'date'},
        {'name': 'lifecyclestage', 'label': 'Lifecycle Stage', 'type': 'enumeration',
         'fieldType': 'select', 'options': _LIFECYCLE_STAGES},
    ],
    'companies': [
        {'name': 'name', 'label': 'Company Name', 'type': 'string', 'fieldType': 'text'},
        {'name': 'domain', 'label': 'Domain', 'type': 'string', 'fieldType': 'text'},
        {'name': 'industry', 'label': 'Industry', 'type': 'string', 'fieldType': 'text'},
        {'name': 'createdate', 'label': 'Create Date', 'type': 'date', 'fieldType': 'date'},
        {'name': 'numberofemployees', 'label': 'Number of Employees', 'type': 'number',
         'fieldType': 'number'},
    ],
}


def parse_crm_query(query: str) -> Tuple[str, Dict[str, Any]]:
    """
    Split a resolved JSON mapping query into object type and filter criteria.
    
    Raises:
        QueryConfigurationError: If the query is not a JSON object
    """
    try:
        criteria = json.loads(query)
    except (TypeError, ValueError) as e:
        raise QueryConfigurationError(f"Invalid HubSpot query JSON: {e}")
    if not isinstance(criteria, dict):
        raise QueryConfigurationError("HubSpot query must be a JSON object")
    
    object_type = criteria.pop(OBJECT_TYPE_KEY, None) or DEFAULT_OBJECT_TYPE
    return object_type, criteria


def build_filter_groups(criteria: Dict[str, Any]) -> List[Dict]:
    """
    Translate canonical filter criteria into HubSpot search filter groups.
    
    All filters go into a single group, so they are ANDed. An operator with a
    list of values expands into one filter per value.
    """
    filters = []
    
    for property_name, condition in criteria.items():
        if isinstance(condition, dict):
            for operator, value in condition.items():
                values = value if isinstance(value, list) else [value]
                for v in values:
                    filters.append({
                        'propertyName': property_name,
                        'operator': operator.upper(),
                        'value': v
                    })
        else:
            filters.append({
                'propertyName': property_name,
                'operator': 'EQ',
                'value': condition
            })
    
    return [{'filters': filters}] if filters else []


def normalize_property(prop: Dict, object_type: str) -> Dict:
    """Map a HubSpot property definition onto the editor's four property types."""
    raw_type = prop.get('type')
    if raw_type == 'number':
        prop_type = 'number'
    elif raw_type in ('date', 'datetime'):
        prop_type = 'date'
    elif raw_type == 'enumeration':
        prop_type = 'enumeration'
    else:
        prop_type = 'string'
    
    result = {
        'name': prop.get('name'),
        'label': prop.get('label'),
        'type': prop_type,
        'fieldType': prop.get('fieldType') or 'text',
    }
    
    if prop_type == 'enumeration':
        options = prop.get('options') or []
        if options:
            result['options'] = [{'label': o.get('label'), 'value': o.get('value')} for o in options]
        else:
            fallback = next(
                (p for p in FALLBACK_PROPERTIES.get(object_type, []) if p['name'] == result['name']),
                None
            )
            result['options'] = list(fallback.get('options', [])) if fallback else []
    
    return result


class HubSpotClient:
    """
    HubSpot CRM v3 client.
    
    Authenticates with a private-app access token when one is configured and
    falls back to a legacy API key passed as `hapikey`.
    """
    
    def __init__(self, config: Dict, settings: Dict = None):
        settings = settings or {}
        self.access_token = config.get('accessToken')
        self.api_key = config.get('apiKey')
        
        self.base_url = settings.get('base_url', 'https://api.hubapi.com').rstrip('/')
        self.timeout = settings.get('timeout', 30)
        self.page_size = min(settings.get('page_size', 100), 100)
        self.max_records = settings.get('max_records', DEFAULT_MAX_RECORDS)
        
        headers = {}
        if self.access_token:
            headers['Authorization'] = f"Bearer {self.access_token}"
        self._session = create_session(
            settings.get('max_retries', 3),
            settings.get('retry_delay', 1),
            headers
        )
        self._limiter = RateLimiter(settings.get('requests_per_second', 9))
    
    def _make_request(self, method: str, endpoint: str, params: Dict = None, json_data: Dict = None) -> Dict:
        """
        Make an HTTP request to the HubSpot API.
        
        Raises:
            IntegrationAPIError: On network failure or a non-2xx response
        """
        self._limiter.wait()
        
        params = dict(params or {})
        if not self.access_token and self.api_key:
            params['hapikey'] = self.api_key
        
        try:
            response = self._session.request(
                method=method,
                url=f"{self.base_url}{endpoint}",
                params=params,
                json=json_data,
                timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"HubSpot request failed: {e}")
            raise IntegrationAPIError(f"HubSpot API Error: {e}")
        
        if not response.ok:
            message = error_message(response, ('message',))
            raise IntegrationAPIError(
                f"HubSpot API Error: {message}",
                response.status_code
            )
        
        return response.json() if response.text else {}
    
    def test_connection(self) -> bool:
        """Probe the API with a one-record contact read."""
        try:
            self._make_request('GET', '/crm/v3/objects/contacts', params={'limit': 1})
            logger.info("HubSpot connection test successful")
            return True
        except Exception as e:
            logger.error(f"HubSpot connection test failed: {e}")
            return False
    
    def search(
        self,
        object_type: str,
        criteria: Dict[str, Any],
        properties: List[str] = None
    ) -> Generator[Dict, None, None]:
        """
        Page through a CRM search, stopping at `max_records`.
        
        Args:
            object_type: 'deals', 'contacts', 'companies', ...
            criteria: Canonical filter criteria (without the object type key)
            properties: Properties to return on each record
            
        Yields:
            Matching CRM records
        """
        body: Dict[str, Any] = {
            'limit': self.page_size,
            'properties': properties or [],
            'filterGroups': build_filter_groups(criteria),
        }
        
        fetched = 0
        while fetched < self.max_records:
            response = self._make_request(
                'POST', f'/crm/v3/objects/{object_type}/search', json_data=body
            )
            
            for record in response.get('results', []):
                if fetched >= self.max_records:
                    logger.warning(f"HubSpot search on {object_type} hit the {self.max_records} record cap")
                    return
                fetched += 1
                yield record
            
            after = safe_get(response, 'paging', 'next', 'after')
            if not after:
                break
            body['after'] = after
            logger.debug(f"Fetched {fetched} {object_type}, getting next page...")
    
    def aggregate(
        self,
        query: str,
        aggregation_method: str,
        value_field: Optional[str] = None
    ) -> AggregationResult:
        """
        Run a resolved JSON mapping query and reduce the matches.
        
        Raises:
            QueryConfigurationError: Bad JSON or aggregation settings
            IntegrationAPIError: The search failed
        """
        validate_aggregation(aggregation_method, value_field)
        object_type, criteria = parse_crm_query(query)
        
        properties = [value_field] if value_field else []
        records = self.search(object_type, criteria, properties)
        
        if aggregation_method == 'count':
            count = sum(1 for _ in records)
            return AggregationResult(value=count, records_matched=count)
        
        return aggregate_values(
            ((record.get('properties') or {}).get(value_field) for record in records),
            aggregation_method
        )
    
    def execute_query_with_aggregation(
        self,
        query: str,
        aggregation_method: str,
        value_field: Optional[str] = None
    ) -> float:
        """Run a mapping query and return only the aggregated value."""
        return self.aggregate(query, aggregation_method, value_field).value
    
    def fetch_properties(self, object_type: str) -> List[Dict]:
        """Fetch property definitions for an object type, normalized for the filter editor."""
        response = self._make_request('GET', f'/crm/v3/properties/{object_type}')
        return [normalize_property(p, object_type) for p in response.get('results', [])]
