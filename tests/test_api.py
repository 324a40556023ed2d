"""
Integration Tests for the REST API
Uses the Flask test client with an in-memory database and mocked provider clients.
"""

import unittest
from unittest.mock import Mock

from kpi_sync.app import create_app
from kpi_sync.integrations import AggregationResult, IntegrationAPIError
from kpi_sync.integrations.hubspot import FALLBACK_PROPERTIES
from kpi_sync.utils.helpers import SECRET_MASK
from tests.support import make_engine, make_store_scope, seed_dashboard


class ApiTestCase(unittest.TestCase):
    """Base class wiring an app to a fresh database."""
    
    integration_type = 'hubspot'
    
    def setUp(self):
        self.engine = make_engine()
        self.store_scope = make_store_scope(self.engine)
        self.integration_id, self.metric_ids = seed_dashboard(self.store_scope, self.integration_type)
        
        self.provider = Mock()
        self.client_factory = Mock(return_value=self.provider)
        self.app = create_app({
            'TESTING': True,
            'STORE_SCOPE': self.store_scope,
            'CLIENT_FACTORY': self.client_factory,
            'SYNC_TIMEZONE': 'UTC',
        })
        self.client = self.app.test_client()
    
    def tearDown(self):
        self.engine.dispose()


class TestIntegrationConfig(ApiTestCase):
    """Test reading, saving and deleting integration configuration."""
    
    def test_get_masks_secrets(self):
        response = self.client.get('/api/integrations/hubspot')
        
        self.assertEqual(response.status_code, 200)
        integration = response.get_json()['integration']
        self.assertEqual(integration['config'], {'accessToken': SECRET_MASK})
        self.assertTrue(integration['is_active'])
    
    def test_get_unconfigured(self):
        response = self.client.get('/api/integrations/jira')
        self.assertEqual(response.status_code, 200)
        self.assertIsNone(response.get_json()['integration'])
    
    def test_unsupported_type(self):
        response = self.client.get('/api/integrations/salesforce')
        self.assertEqual(response.status_code, 404)
        self.assertFalse(response.get_json()['success'])
    
    def test_save_requires_working_connection(self):
        self.provider.test_connection.return_value = False
        
        response = self.client.post('/api/integrations/jira', json={
            'name': 'Jira', 'config': {'host': 'acme.atlassian.net', 'email': 'a@b.c', 'apiToken': 't'}
        })
        
        self.assertEqual(response.status_code, 400)
        self.assertEqual(self.client.get('/api/integrations/jira').get_json()['integration'], None)
    
    def test_save_connection_error(self):
        self.client_factory.side_effect = IntegrationAPIError('Google Sheets API Error: bad key')
        
        response = self.client.post('/api/integrations/sheets', json={'config': {'privateKey': 'k'}})
        
        self.assertEqual(response.status_code, 400)
        self.assertIn('bad key', response.get_json()['error'])
    
    def test_save_keeps_masked_secrets(self):
        self.provider.test_connection.return_value = True
        
        response = self.client.post('/api/integrations/hubspot', json={
            'name': 'CRM', 'config': {'accessToken': SECRET_MASK, 'portalId': '123'}
        })
        
        self.assertEqual(response.status_code, 200)
        self.client_factory.assert_called_once_with(
            'hubspot', {'accessToken': 'secret-token', 'portalId': '123'}
        )
        saved = response.get_json()['integration']
        self.assertEqual(saved['config'], {'accessToken': SECRET_MASK, 'portalId': '123'})
        self.assertEqual(saved['name'], 'CRM')
    
    def test_save_rejects_missing_config(self):
        response = self.client.post('/api/integrations/hubspot', json={'name': 'CRM'})
        self.assertEqual(response.status_code, 400)
    
    def test_delete(self):
        response = self.client.delete('/api/integrations/hubspot')
        
        self.assertEqual(response.status_code, 200)
        self.assertIsNone(self.client.get('/api/integrations/hubspot').get_json()['integration'])


class TestSyncEndpoint(ApiTestCase):
    """Test triggering syncs and reading sync logs."""
    
    def test_sync_reports_counts(self):
        self.client.post('/api/integrations/hubspot/mappings', json={
            'metric_id': self.metric_ids[0], 'query': '{"dealstage": "closedwon"}',
            'aggregation_method': 'count'
        })
        self.provider.aggregate.return_value = AggregationResult(value=12, records_matched=12)
        
        response = self.client.post('/api/integrations/hubspot/sync')
        
        self.assertEqual(response.status_code, 200)
        body = response.get_json()
        self.assertEqual(body['recordsFetched'], 1)
        self.assertEqual(body['recordsUpdated'], 1)
        self.assertEqual(body['failedMappings'], [])
        
        logs = self.client.get('/api/integrations/hubspot/sync-logs').get_json()['logs']
        self.assertEqual(len(logs), 1)
        self.assertEqual(logs[0]['status'], 'success')
        
        metric = self.client.get(f"/api/metrics/{self.metric_ids[0]}").get_json()['metric']
        self.assertEqual(metric['currentValue'], 12)
        self.assertEqual(metric['previousValue'], 10)
        self.assertEqual(len(metric['history']), 1)
    
    def test_sync_without_integration(self):
        response = self.client.post('/api/integrations/jira/sync')
        
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.get_json()['error'], 'Integration not found or not active')
    
    def test_sync_failure(self):
        self.client.post('/api/integrations/hubspot/mappings', json={
            'metric_id': self.metric_ids[0], 'query': '{}', 'aggregation_method': 'count'
        })
        self.client_factory.side_effect = RuntimeError('client exploded')
        
        response = self.client.post('/api/integrations/hubspot/sync')
        
        self.assertEqual(response.status_code, 500)
        self.assertIn('client exploded', response.get_json()['error'])
        integration = self.client.get('/api/integrations/hubspot').get_json()['integration']
        self.assertEqual(integration['last_sync_status'], 'failed')
    
    def test_sync_logs_bad_limit(self):
        response = self.client.get('/api/integrations/hubspot/sync-logs?limit=abc')
        self.assertEqual(response.status_code, 400)


class TestMappings(ApiTestCase):
    """Test mapping CRUD and validation."""
    
    def create(self, **payload):
        body = {'metric_id': self.metric_ids[0], 'query': '{}', 'aggregation_method': 'count'}
        body.update(payload)
        return self.client.post('/api/integrations/hubspot/mappings', json=body)
    
    def test_create_and_list(self):
        response = self.create(aggregation_method='sum', value_field='amount',
                               transformation_rules={'divide': 100})
        
        self.assertEqual(response.status_code, 200)
        mapping = response.get_json()['mapping']
        self.assertEqual(mapping['integration_id'], self.integration_id)
        self.assertEqual(mapping['transformation_rules'], {'divide': 100})
        
        listed = self.client.get('/api/integrations/hubspot/mappings').get_json()['mappings']
        self.assertEqual([m['id'] for m in listed], [mapping['id']])
        
        filtered = self.client.get(
            f"/api/integrations/hubspot/mappings?metricId={self.metric_ids[1]}"
        ).get_json()['mappings']
        self.assertEqual(filtered, [])
    
    def test_validation(self):
        self.assertEqual(self.create(metric_id=None).status_code, 400)
        self.assertEqual(self.create(aggregation_method='median').status_code, 400)
        self.assertEqual(self.create(aggregation_method='sum').status_code, 400)
        self.assertEqual(self.create(transformation_rules={'divide': 'ten'}).status_code, 400)
        self.assertEqual(self.create(transformation_rules={'divide': True}).status_code, 400)
        self.assertEqual(self.create(integration_id=self.integration_id + 1).status_code, 400)
        self.assertEqual(self.create(metric_id=9999).status_code, 404)
    
    def test_update(self):
        mapping_id = self.create().get_json()['mapping']['id']
        
        response = self.client.put(f"/api/integrations/hubspot/mappings/{mapping_id}", json={
            'aggregation_method': 'average', 'value_field': 'amount', 'is_active': False
        })
        
        self.assertEqual(response.status_code, 200)
        mapping = response.get_json()['mapping']
        self.assertEqual(mapping['aggregation_method'], 'average')
        self.assertFalse(mapping['is_active'])
        
        invalid = self.client.put(f"/api/integrations/hubspot/mappings/{mapping_id}",
                                  json={'value_field': ''})
        self.assertEqual(invalid.status_code, 400)
    
    def test_delete(self):
        mapping_id = self.create().get_json()['mapping']['id']
        
        self.assertEqual(self.client.delete(f"/api/integrations/hubspot/mappings/{mapping_id}").status_code, 200)
        self.assertEqual(self.client.delete(f"/api/integrations/hubspot/mappings/{mapping_id}").status_code, 404)
    
    def test_mapping_of_other_integration_is_not_found(self):
        mapping_id = self.create().get_json()['mapping']['id']
        
        response = self.client.put(f"/api/integrations/jira/mappings/{mapping_id}", json={'is_active': False})
        self.assertEqual(response.status_code, 404)


class TestSheetsMappings(ApiTestCase):
    """Spreadsheet mappings take their column from the query."""
    
    integration_type = 'sheets'
    
    def test_value_field_not_required(self):
        response = self.client.post('/api/integrations/sheets/mappings', json={
            'metric_id': self.metric_ids[0],
            'query': '{"spreadsheetId": "s", "range": "A:B", "valueColumnIndex": 1}',
            'aggregation_method': 'sum'
        })
        self.assertEqual(response.status_code, 200)


class TestHubSpotMetadata(ApiTestCase):
    """Test object types and the cached property list."""
    
    def test_object_types(self):
        body = self.client.get('/api/integrations/hubspot/object-types').get_json()
        self.assertEqual([t['id'] for t in body['objectTypes']], ['deals', 'contacts', 'companies'])
    
    def test_properties_are_cached(self):
        live = [{'name': 'amount', 'label': 'Amount', 'type': 'number', 'fieldType': 'number'}]
        self.provider.fetch_properties.return_value = live
        
        first = self.client.get('/api/integrations/hubspot/properties?objectType=deals').get_json()
        second = self.client.get('/api/integrations/hubspot/properties?objectType=deals').get_json()
        
        self.assertEqual(first['properties'], live)
        self.assertFalse(first['cached'])
        self.assertEqual(second['properties'], live)
        self.assertTrue(second['cached'])
        self.provider.fetch_properties.assert_called_once_with('deals')
    
    def test_properties_fall_back_on_api_error(self):
        self.provider.fetch_properties.side_effect = IntegrationAPIError('HubSpot API Error: 401')
        
        body = self.client.get('/api/integrations/hubspot/properties?objectType=contacts').get_json()
        
        self.assertTrue(body['success'])
        self.assertEqual(body['properties'], FALLBACK_PROPERTIES['contacts'])
        self.assertIn('fallback', body['error'])
    
    def test_properties_without_integration(self):
        self.client.delete('/api/integrations/hubspot')
        
        body = self.client.get('/api/integrations/hubspot/properties').get_json()
        
        self.assertEqual(body['properties'], FALLBACK_PROPERTIES['deals'])
        self.assertFalse(body['cached'])
        self.client_factory.assert_not_called()


class TestDashboardViews(ApiTestCase):
    """Test pillar and metric read endpoints."""
    
    def test_pillars(self):
        response = self.client.get('/api/pillars')
        
        self.assertEqual(response.status_code, 200)
        pillars = response.get_json()['pillars']
        self.assertEqual(len(pillars), 1)
        self.assertEqual(pillars[0]['name'], 'Growth')
        self.assertEqual(pillars[0]['score'], 10)
        self.assertEqual(pillars[0]['status'], 'red')
        self.assertEqual(pillars[0]['statusCounts'], {'green': 0, 'yellow': 0, 'red': 3})
        self.assertEqual(len(pillars[0]['metrics']), 3)
        self.assertEqual(pillars[0]['metrics'][0]['statusLabel'], 'Off Track')
    
    def test_metric_not_found(self):
        self.assertEqual(self.client.get('/api/metrics/9999').status_code, 404)
    
    def test_root_lists_endpoints(self):
        body = self.client.get('/').get_json()
        self.assertIn('/api/pillars', body['endpoints'])


if __name__ == '__main__':
    unittest.main()
