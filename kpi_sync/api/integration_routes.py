"""
Integrations API Blueprint
Integration configuration, sync trigger, mapping CRUD and CRM metadata.
"""

from flask import Blueprint, current_app, jsonify, request

from kpi_sync.api.common import (
    get_client_factory, get_metadata_cache, get_orchestrator, serialize_integration,
    serialize_mapping, serialize_sync_log, store_scope
)
from kpi_sync.integrations import AGGREGATION_METHODS, INTEGRATION_TYPES
from kpi_sync.filters import OPERATOR_LABELS
from kpi_sync.integrations.hubspot import FALLBACK_PROPERTIES, OBJECT_TYPES
from kpi_sync.sync_pipeline import IntegrationNotFoundError, SyncError
from kpi_sync.utils.helpers import SECRET_MASK
from kpi_sync.utils.logger import get_logger

logger = get_logger(__name__)

integrations_bp = Blueprint('integrations', __name__, url_prefix='/api/integrations')


def _error(message: str, status: int):
    return jsonify({'success': False, 'error': message}), status


def _unsupported(integration_type: str):
    return _error(f"Unsupported integration type: {integration_type}", 404)


def validate_mapping(integration_type: str, payload: dict) -> str:
    """Return an error message for an invalid mapping payload, or '' when it is valid."""
    if not payload.get('query'):
        return 'query is required'
    aggregation = payload.get('aggregation_method')
    if aggregation not in AGGREGATION_METHODS:
        return f"Invalid aggregation_method: {aggregation}"
    # Spreadsheet mappings read the column named by valueColumnIndex instead
    if aggregation != 'count' and integration_type != 'sheets' and not payload.get('value_field'):
        return 'value_field is required unless aggregation_method is count'
    
    rules = payload.get('transformation_rules')
    if rules is not None:
        if not isinstance(rules, dict):
            return 'transformation_rules must be an object'
        for key in ('divide', 'multiply'):
            factor = rules.get(key)
            if factor is not None and (isinstance(factor, bool) or not isinstance(factor, (int, float))):
                return f"transformation_rules.{key} must be a number"
    return ''


# ========================================
# CRM Metadata
# ========================================

@integrations_bp.route('/hubspot/object-types', methods=['GET'])
def get_hubspot_object_types():
    """List the CRM object types a mapping can query, with filter operator labels."""
    return jsonify({'success': True, 'objectTypes': OBJECT_TYPES, 'operators': OPERATOR_LABELS})


@integrations_bp.route('/hubspot/properties', methods=['GET'])
def get_hubspot_properties():
    """
    List filterable properties of a CRM object type.
    
    Query params:
        objectType: deals (default), contacts, companies
    
    Returns:
        JSON with properties and whether they came from the cache. Falls back
        to a built-in list when there is no active integration or the API fails.
    """
    object_type = request.args.get('objectType', 'deals')
    cache = get_metadata_cache()
    
    cached = cache.get('hubspot', object_type)
    if cached is not None:
        return jsonify({'success': True, 'properties': cached, 'cached': True})
    
    fallback = FALLBACK_PROPERTIES.get(object_type, [])
    
    try:
        with store_scope() as store:
            integration = store.get_active_integration('hubspot')
            config = dict(integration.config or {}) if integration else None
    except Exception as e:
        logger.error(f"Failed to load HubSpot integration: {e}")
        return _error('Failed to fetch properties', 500)
    
    if config is None:
        logger.info("No active HubSpot integration, using fallback properties")
        return jsonify({'success': True, 'properties': fallback, 'cached': False})
    
    try:
        client = get_client_factory()('hubspot', config)
        properties = client.fetch_properties(object_type)
    except Exception as e:
        logger.error(f"Error fetching HubSpot properties for {object_type}: {e}")
        return jsonify({
            'success': True,
            'properties': fallback,
            'cached': False,
            'error': 'Using fallback properties due to API error'
        })
    
    cache.set('hubspot', object_type, properties)
    logger.info(f"Fetched {len(properties)} HubSpot properties for {object_type}")
    return jsonify({'success': True, 'properties': properties, 'cached': False})


# ========================================
# Integration Configuration
# ========================================

@integrations_bp.route('/<integration_type>', methods=['GET'])
def get_integration(integration_type: str):
    """Integration status and configuration with credentials masked."""
    if integration_type not in INTEGRATION_TYPES:
        return _unsupported(integration_type)
    
    try:
        with store_scope() as store:
            integration = store.get_integration(integration_type)
            payload = serialize_integration(integration) if integration else None
        return jsonify({'success': True, 'integration': payload})
    except Exception as e:
        logger.error(f"Failed to get integration {integration_type}: {e}")
        return _error(str(e), 500)


@integrations_bp.route('/<integration_type>', methods=['POST'])
def save_integration(integration_type: str):
    """
    Save integration configuration after a successful connection test.
    
    Body:
        {"name": "...", "config": {...credentials...}}
    
    Masked credential values are replaced by the stored ones, so a config
    read back from GET can be saved again unchanged.
    """
    if integration_type not in INTEGRATION_TYPES:
        return _unsupported(integration_type)
    
    body = request.get_json(silent=True) or {}
    config = body.get('config')
    if not isinstance(config, dict):
        return _error('config must be an object', 400)
    
    try:
        with store_scope() as store:
            existing = store.get_integration(integration_type)
            stored = dict(existing.config or {}) if existing else {}
    except Exception as e:
        logger.error(f"Failed to load integration {integration_type}: {e}")
        return _error(str(e), 500)
    
    config = {
        key: stored.get(key) if value == SECRET_MASK else value
        for key, value in config.items()
    }
    
    try:
        client = get_client_factory()(integration_type, config)
        is_valid = client.test_connection()
    except Exception as e:
        return _error(f"Connection test failed: {e}", 400)
    
    if not is_valid:
        return _error('Invalid credentials or configuration', 400)
    
    try:
        with store_scope() as store:
            integration = store.save_integration(integration_type, body.get('name'), config)
            payload = serialize_integration(integration)
        get_metadata_cache().invalidate(integration_type)
        logger.info(f"Saved {integration_type} integration")
        return jsonify({'success': True, 'integration': payload})
    except Exception as e:
        logger.error(f"Failed to save integration {integration_type}: {e}")
        return _error(str(e), 500)


@integrations_bp.route('/<integration_type>', methods=['DELETE'])
def delete_integration(integration_type: str):
    """Disconnect an integration, removing its mappings and sync logs."""
    if integration_type not in INTEGRATION_TYPES:
        return _unsupported(integration_type)
    
    try:
        with store_scope() as store:
            store.delete_integration(integration_type)
        get_metadata_cache().invalidate(integration_type)
        return jsonify({'success': True})
    except Exception as e:
        logger.error(f"Failed to delete integration {integration_type}: {e}")
        return _error(str(e), 500)


# ========================================
# Sync
# ========================================

@integrations_bp.route('/<integration_type>/sync', methods=['POST'])
def trigger_sync(integration_type: str):
    """
    Run a sync for one integration.
    
    Returns:
        {"success": true, "recordsFetched": n, "recordsUpdated": m, ...} on
        full or partial success; an error with 404/500 otherwise
    """
    if integration_type not in INTEGRATION_TYPES:
        return _unsupported(integration_type)
    
    logger.info(f"Sync triggered via API for {integration_type}")
    
    try:
        result = get_orchestrator().sync(integration_type)
        return jsonify(result.to_dict())
    except IntegrationNotFoundError:
        return _error('Integration not found or not active', 404)
    except SyncError as e:
        return _error(e.message, 500)
    except Exception as e:
        logger.error(f"Sync for {integration_type} failed: {e}")
        return _error(f"Sync failed: {e}", 500)


@integrations_bp.route('/<integration_type>/sync-logs', methods=['GET'])
def get_sync_logs(integration_type: str):
    """
    Recent sync logs for an integration.
    
    Query params:
        limit: Number of logs to return (default 10)
    """
    if integration_type not in INTEGRATION_TYPES:
        return _unsupported(integration_type)
    
    try:
        limit = int(request.args.get('limit', 10))
        with store_scope() as store:
            integration = store.get_integration(integration_type)
            if integration is None:
                return _error('Integration not found', 404)
            logs = [serialize_sync_log(log) for log in store.get_sync_logs(integration.id, limit)]
        return jsonify({'success': True, 'logs': logs})
    except ValueError:
        return _error('limit must be an integer', 400)
    except Exception as e:
        logger.error(f"Failed to get sync logs for {integration_type}: {e}")
        return _error(str(e), 500)


# ========================================
# Mappings
# ========================================

@integrations_bp.route('/<integration_type>/mappings', methods=['GET'])
def list_mappings(integration_type: str):
    """
    List mappings of an integration.
    
    Query params:
        metricId: Only mappings for this metric
    """
    if integration_type not in INTEGRATION_TYPES:
        return _unsupported(integration_type)
    
    metric_id = request.args.get('metricId', type=int)
    
    try:
        with store_scope() as store:
            integration = store.get_integration(integration_type)
            if integration is None:
                return _error('Integration not found', 404)
            mappings = [serialize_mapping(m) for m in store.list_mappings(integration.id, metric_id)]
        return jsonify({'success': True, 'mappings': mappings})
    except Exception as e:
        logger.error(f"Failed to list mappings for {integration_type}: {e}")
        return _error(str(e), 500)


@integrations_bp.route('/<integration_type>/mappings', methods=['POST'])
def create_mapping(integration_type: str):
    """
    Create a mapping.
    
    Body:
        {"integration_id", "metric_id", "query", "aggregation_method",
         "value_field"?, "transformation_rules"?, "is_active"?}
    """
    if integration_type not in INTEGRATION_TYPES:
        return _unsupported(integration_type)
    
    body = request.get_json(silent=True) or {}
    if not body.get('metric_id') or not body.get('query'):
        return _error('Missing required fields', 400)
    if not body.get('aggregation_method'):
        body['aggregation_method'] = current_app.config.get('DEFAULT_AGGREGATION', 'sum')
    
    problem = validate_mapping(integration_type, body)
    if problem:
        return _error(problem, 400)
    
    try:
        with store_scope() as store:
            integration = store.get_integration(integration_type)
            if integration is None:
                return _error('Integration not found', 404)
            if body.get('integration_id') not in (None, integration.id):
                return _error('integration_id does not match integration type', 400)
            if store.get_metric(body['metric_id']) is None:
                return _error('Metric not found', 404)
            
            mapping = store.create_mapping(
                integration_id=integration.id,
                metric_id=body['metric_id'],
                query=body['query'],
                aggregation_method=body['aggregation_method'],
                value_field=body.get('value_field'),
                transformation_rules=body.get('transformation_rules'),
                is_active=body.get('is_active', True)
            )
            payload = serialize_mapping(mapping)
        return jsonify({'success': True, 'mapping': payload})
    except Exception as e:
        logger.error(f"Failed to create mapping for {integration_type}: {e}")
        return _error(str(e), 500)


@integrations_bp.route('/<integration_type>/mappings/<int:mapping_id>', methods=['PUT'])
def update_mapping(integration_type: str, mapping_id: int):
    """Update a mapping's query, aggregation, value field, rules or active flag."""
    if integration_type not in INTEGRATION_TYPES:
        return _unsupported(integration_type)
    
    body = request.get_json(silent=True) or {}
    
    try:
        with store_scope() as store:
            mapping = store.get_mapping(mapping_id)
            if mapping is None or mapping.integration.type != integration_type:
                return _error('Mapping not found', 404)
            
            merged = serialize_mapping(mapping)
            merged.update({k: v for k, v in body.items() if k in merged})
            problem = validate_mapping(integration_type, merged)
            if problem:
                return _error(problem, 400)
            
            mapping = store.update_mapping(
                mapping_id,
                query=merged['query'],
                aggregation_method=merged['aggregation_method'],
                value_field=merged['value_field'] or None,
                transformation_rules=merged['transformation_rules'] or None,
                is_active=bool(merged['is_active'])
            )
            payload = serialize_mapping(mapping)
        return jsonify({'success': True, 'mapping': payload})
    except Exception as e:
        logger.error(f"Failed to update mapping {mapping_id}: {e}")
        return _error(str(e), 500)


@integrations_bp.route('/<integration_type>/mappings/<int:mapping_id>', methods=['DELETE'])
def delete_mapping(integration_type: str, mapping_id: int):
    """Delete a mapping."""
    if integration_type not in INTEGRATION_TYPES:
        return _unsupported(integration_type)
    
    try:
        with store_scope() as store:
            mapping = store.get_mapping(mapping_id)
            if mapping is None or mapping.integration.type != integration_type:
                return _error('Mapping not found', 404)
            store.delete_mapping(mapping_id)
        return jsonify({'success': True})
    except Exception as e:
        logger.error(f"Failed to delete mapping {mapping_id}: {e}")
        return _error(str(e), 500)
