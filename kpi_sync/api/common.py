"""
Shared helpers for the API blueprints.
"""

from typing import Any, Dict

from flask import current_app

from kpi_sync.integrations import create_client
from kpi_sync.integrations.cache import MetadataCache
from kpi_sync.sync_pipeline import SyncOrchestrator, default_store_scope
from kpi_sync.utils.helpers import current_time, isoformat, mask_config


def store_scope():
    """Open a MetricStore scope using the app's configured factory."""
    return current_app.config.get('STORE_SCOPE', default_store_scope)()


def get_client_factory():
    return current_app.config.get('CLIENT_FACTORY', create_client)


def get_orchestrator() -> SyncOrchestrator:
    return SyncOrchestrator(
        store_scope=current_app.config.get('STORE_SCOPE', default_store_scope),
        client_factory=get_client_factory(),
        timezone=current_app.config.get('SYNC_TIMEZONE')
    )


def get_metadata_cache() -> MetadataCache:
    cache = current_app.extensions.get('metadata_cache')
    if cache is None:
        cache = MetadataCache(current_app.config.get('PROPERTIES_CACHE_TTL', 900))
        current_app.extensions['metadata_cache'] = cache
    return cache


def request_now():
    """Current time in the app's sync timezone; the only clock read in the API."""
    return current_time(current_app.config.get('SYNC_TIMEZONE'))


def serialize_integration(integration: Any) -> Dict:
    return {
        'id': integration.id,
        'type': integration.type,
        'name': integration.name,
        'config': mask_config(integration.config or {}),
        'is_active': integration.is_active,
        'last_sync_at': isoformat(integration.last_sync_at),
        'last_sync_status': integration.last_sync_status,
        'last_sync_error': integration.last_sync_error,
    }


def serialize_mapping(mapping: Any) -> Dict:
    return {
        'id': mapping.id,
        'integration_id': mapping.integration_id,
        'metric_id': mapping.metric_id,
        'query': mapping.query,
        'aggregation_method': mapping.aggregation_method,
        'value_field': mapping.value_field,
        'transformation_rules': mapping.transformation_rules,
        'is_active': mapping.is_active,
    }


def serialize_sync_log(sync_log: Any) -> Dict:
    return {
        'id': sync_log.id,
        'integration_id': sync_log.integration_id,
        'status': sync_log.status,
        'started_at': isoformat(sync_log.started_at),
        'completed_at': isoformat(sync_log.completed_at),
        'records_fetched': sync_log.records_fetched,
        'records_updated': sync_log.records_updated,
        'error_message': sync_log.error_message,
    }
