"""
Remote aggregation clients, selected by integration type.

Every client offers the same two calls:
    test_connection() -> bool
    execute_query_with_aggregation(query, aggregation_method, value_field=None) -> float
plus `aggregate(...)`, which returns the full AggregationResult.
"""

from typing import Dict

from kpi_sync.config_manager import ConfigManager
from kpi_sync.integrations.base import (
    AGGREGATION_METHODS, AggregationResult, IntegrationAPIError,
    QueryConfigurationError
)
from kpi_sync.integrations.hubspot import HubSpotClient
from kpi_sync.integrations.jira import JiraClient
from kpi_sync.integrations.sheets import GoogleSheetsClient


CLIENT_CLASSES = {
    'hubspot': HubSpotClient,
    'jira': JiraClient,
    'sheets': GoogleSheetsClient,
}

INTEGRATION_TYPES = tuple(CLIENT_CLASSES)


def create_client(integration_type: str, config: Dict, settings: Dict = None):
    """
    Build the client for an integration type.
    
    Args:
        integration_type: 'hubspot', 'jira' or 'sheets'
        config: Integration credentials as stored on the Integration row
        settings: HTTP settings; read from the config file when omitted
        
    Raises:
        QueryConfigurationError: For an unsupported integration type
    """
    try:
        client_class = CLIENT_CLASSES[integration_type]
    except KeyError:
        raise QueryConfigurationError(f"Unsupported integration type: {integration_type}")
    
    if settings is None:
        settings = ConfigManager().get_provider_config(integration_type)
    
    return client_class(config or {}, settings)


__all__ = [
    'AGGREGATION_METHODS', 'AggregationResult', 'CLIENT_CLASSES', 'GoogleSheetsClient',
    'HubSpotClient', 'INTEGRATION_TYPES', 'IntegrationAPIError', 'JiraClient',
    'QueryConfigurationError', 'create_client',
]
