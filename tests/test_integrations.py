"""
Unit Tests for Remote Aggregation Clients
HTTP traffic is replaced with mocked sessions.
"""

import json
import unittest
from unittest.mock import Mock, patch

import requests

from kpi_sync.integrations import (
    GoogleSheetsClient, HubSpotClient, IntegrationAPIError, JiraClient,
    QueryConfigurationError, create_client
)
from kpi_sync.integrations.base import aggregate_values, validate_aggregation
from kpi_sync.integrations.cache import MetadataCache
from kpi_sync.integrations.hubspot import build_filter_groups, parse_crm_query
from kpi_sync.integrations.jira import extract_field
from kpi_sync.integrations.sheets import parse_sheet_query
from kpi_sync.utils.helpers import to_number


SETTINGS = {'requests_per_second': 0, 'max_retries': 0}


def make_response(payload=None, status_code=200, reason='OK'):
    response = Mock()
    response.status_code = status_code
    response.ok = status_code < 400
    response.reason = reason
    response.text = json.dumps(payload) if payload is not None else ''
    response.json.return_value = payload
    return response


class TestAggregation(unittest.TestCase):
    """Test value coercion and reduction."""
    
    def test_average_skips_non_numeric(self):
        result = aggregate_values([10, '20', 'bad', ''], 'average')
        
        self.assertEqual(result.value, 15)
        self.assertEqual(result.records_matched, 4)
        self.assertEqual(result.values_used, 2)
        self.assertEqual(result.values_discarded, 2)
    
    def test_methods(self):
        values = [3, '7.5', None, 1]
        self.assertEqual(aggregate_values(values, 'sum').value, 11.5)
        self.assertEqual(aggregate_values(values, 'max').value, 7.5)
        self.assertEqual(aggregate_values(values, 'min').value, 1)
    
    def test_no_usable_values_is_zero(self):
        for method in ('sum', 'average', 'max', 'min'):
            self.assertEqual(aggregate_values(['n/a', None], method).value, 0)
            self.assertEqual(aggregate_values([], method).value, 0)
    
    def test_to_number(self):
        self.assertEqual(to_number('12.5'), 12.5)
        self.assertEqual(to_number('42abc'), 42.0)
        self.assertEqual(to_number('$1,250.00', strip_currency=True), 1250.0)
        self.assertEqual(to_number('1,250'), 1.0)
        self.assertIsNone(to_number('abc'))
        self.assertIsNone(to_number('  '))
        self.assertIsNone(to_number(True))
        self.assertIsNone(to_number({'value': 1}))
    
    def test_validate_aggregation(self):
        validate_aggregation('count', None)
        validate_aggregation('sum', 'amount')
        with self.assertRaises(QueryConfigurationError):
            validate_aggregation('sum', None)
        with self.assertRaises(QueryConfigurationError):
            validate_aggregation('median', 'amount')


class TestHubSpotQuery(unittest.TestCase):
    """Test CRM query parsing and filter translation."""
    
    def test_parse_defaults_to_deals(self):
        self.assertEqual(parse_crm_query('{"dealstage": "closedwon"}'), ('deals', {'dealstage': 'closedwon'}))
        self.assertEqual(parse_crm_query('{"_objectType": "contacts"}'), ('contacts', {}))
    
    def test_parse_rejects_bad_json(self):
        with self.assertRaises(QueryConfigurationError):
            parse_crm_query('{not json')
        with self.assertRaises(QueryConfigurationError):
            parse_crm_query('[1]')
    
    def test_filter_groups(self):
        groups = build_filter_groups({
            'dealstage': 'closedwon',
            'amount': {'gte': '1000'},
            'pipeline': {'neq': ['a', 'b']},
        })
        
        self.assertEqual(len(groups), 1)
        self.assertEqual(groups[0]['filters'], [
            {'propertyName': 'dealstage', 'operator': 'EQ', 'value': 'closedwon'},
            {'propertyName': 'amount', 'operator': 'GTE', 'value': '1000'},
            {'propertyName': 'pipeline', 'operator': 'NEQ', 'value': 'a'},
            {'propertyName': 'pipeline', 'operator': 'NEQ', 'value': 'b'},
        ])
    
    def test_no_criteria_no_groups(self):
        self.assertEqual(build_filter_groups({}), [])


class TestHubSpotClient(unittest.TestCase):
    """Test HubSpot search, paging and aggregation."""
    
    def setUp(self):
        self.client = HubSpotClient({'accessToken': 'pat-123'}, SETTINGS)
        self.client._session = Mock()
    
    def test_bearer_auth(self):
        client = HubSpotClient({'accessToken': 'pat-123'}, SETTINGS)
        self.assertEqual(client._session.headers['Authorization'], 'Bearer pat-123')
    
    def test_api_key_sent_as_param(self):
        client = HubSpotClient({'apiKey': 'legacy'}, SETTINGS)
        client._session = Mock()
        client._session.request.return_value = make_response({'results': []})
        
        client.test_connection()
        
        self.assertEqual(client._session.request.call_args.kwargs['params'], {'limit': 1, 'hapikey': 'legacy'})
    
    def test_sum_across_pages(self):
        self.client._session.request.side_effect = [
            make_response({
                'results': [{'properties': {'amount': '100'}}, {'properties': {'amount': '250.5'}}],
                'paging': {'next': {'after': 'p2'}}
            }),
            make_response({'results': [{'properties': {'amount': None}}]}),
        ]
        
        result = self.client.aggregate('{"_objectType": "deals", "dealstage": "closedwon"}', 'sum', 'amount')
        
        self.assertEqual(result.value, 350.5)
        self.assertEqual(result.records_matched, 3)
        self.assertEqual(result.values_discarded, 1)
        
        calls = self.client._session.request.call_args_list
        self.assertEqual(len(calls), 2)
        self.assertTrue(calls[0].kwargs['url'].endswith('/crm/v3/objects/deals/search'))
        body = calls[1].kwargs['json']
        self.assertEqual(body['after'], 'p2')
        self.assertEqual(body['properties'], ['amount'])
        self.assertEqual(body['filterGroups'][0]['filters'][0]['propertyName'], 'dealstage')
    
    def test_average_with_bad_values(self):
        self.client._session.request.return_value = make_response({
            'results': [{'properties': {'amount': v}} for v in (10, '20', 'bad', '')]
        })
        
        self.assertEqual(self.client.execute_query_with_aggregation('{}', 'average', 'amount'), 15)
    
    def test_count_is_capped(self):
        client = HubSpotClient({'accessToken': 'x'}, dict(SETTINGS, max_records=3))
        client._session = Mock()
        page = {'results': [{'id': '1'}, {'id': '2'}], 'paging': {'next': {'after': 'n'}}}
        client._session.request.side_effect = [make_response(page), make_response(page), make_response(page)]
        
        result = client.aggregate('{"_objectType": "contacts"}', 'count')
        
        self.assertEqual(result.value, 3)
        self.assertEqual(client._session.request.call_count, 2)
    
    def test_api_error(self):
        self.client._session.request.return_value = make_response({'message': 'bad filter'}, 400, 'Bad Request')
        
        with self.assertRaises(IntegrationAPIError) as ctx:
            self.client.aggregate('{}', 'count')
        self.assertEqual(ctx.exception.message, 'HubSpot API Error: bad filter')
        self.assertEqual(ctx.exception.status_code, 400)
    
    def test_missing_value_field(self):
        with self.assertRaises(QueryConfigurationError):
            self.client.aggregate('{}', 'sum')
        self.client._session.request.assert_not_called()
    
    def test_connection_fails_closed(self):
        self.client._session.request.side_effect = requests.exceptions.ConnectionError('down')
        self.assertFalse(self.client.test_connection())
        
        self.client._session.request.side_effect = None
        self.client._session.request.return_value = make_response({}, 401, 'Unauthorized')
        self.assertFalse(self.client.test_connection())
    
    def test_fetch_properties_normalizes_types(self):
        self.client._session.request.return_value = make_response({'results': [
            {'name': 'amount', 'label': 'Amount', 'type': 'number', 'fieldType': 'number'},
            {'name': 'closedate', 'label': 'Close Date', 'type': 'datetime', 'fieldType': 'date'},
            {'name': 'dealstage', 'label': 'Deal Stage', 'type': 'enumeration', 'fieldType': 'select',
             'options': []},
            {'name': 'hs_is_closed', 'label': 'Is Closed', 'type': 'bool', 'fieldType': 'booleancheckbox'},
        ]})
        
        properties = self.client.fetch_properties('deals')
        
        self.assertEqual([p['type'] for p in properties], ['number', 'date', 'enumeration', 'string'])
        # Empty option lists are filled from the built-in deal stages
        self.assertIn({'label': 'Closed Won', 'value': 'closedwon'}, properties[2]['options'])


class TestJiraClient(unittest.TestCase):
    """Test JQL search, aliases and error mapping."""
    
    def setUp(self):
        self.client = JiraClient(
            {'host': 'acme.atlassian.net', 'email': 'ops@acme.com', 'apiToken': 'tok'},
            SETTINGS
        )
        self.client._session = Mock()
    
    def test_host_gets_scheme(self):
        self.assertEqual(self.client.base_url, 'https://acme.atlassian.net')
    
    def test_count_with_token_paging(self):
        self.client._session.request.side_effect = [
            make_response({'issues': [{'key': 'OPS-1'}, {'key': 'OPS-2'}], 'nextPageToken': 't2'}),
            make_response({'issues': [{'key': 'OPS-3'}]}),
        ]
        
        result = self.client.aggregate('project = OPS', 'count')
        
        self.assertEqual(result.value, 3)
        calls = self.client._session.request.call_args_list
        self.assertEqual(calls[0].kwargs['url'], 'https://acme.atlassian.net/rest/api/3/search/jql')
        self.assertEqual(calls[1].kwargs['json']['nextPageToken'], 't2')
        self.assertEqual(calls[1].kwargs['json']['fields'], ['key'])
    
    def test_story_points_alias(self):
        self.client._session.request.return_value = make_response({'issues': [
            {'fields': {'customfield_10016': 5}},
            {'fields': {'storyPoints': 3}},
            {'fields': {}},
        ]})
        
        result = self.client.aggregate('project = OPS', 'sum', 'storyPoints')
        
        self.assertEqual(result.value, 8)
        fields = self.client._session.request.call_args.kwargs['json']['fields']
        self.assertEqual(fields, ['storyPoints', 'customfield_10016', 'story_points'])
    
    def test_extract_field(self):
        self.assertEqual(extract_field({'fields': {'story_points': 2}}, 'storyPoints'), 2)
        self.assertEqual(extract_field({'fields': {}}, 'storyPoints'), 0)
        self.assertIsNone(extract_field({'fields': {}}, 'timespent'))
    
    def test_auth_errors(self):
        self.client._session.request.return_value = make_response({}, 401, 'Unauthorized')
        with self.assertRaises(IntegrationAPIError) as ctx:
            list(self.client.search_issues('project = OPS'))
        self.assertIn('Authentication failed', ctx.exception.message)
    
    def test_jql_error_message(self):
        self.client._session.request.return_value = make_response(
            {'errorMessages': ["Field 'resolved' does not exist"]}, 400, 'Bad Request'
        )
        with self.assertRaises(IntegrationAPIError) as ctx:
            self.client.aggregate('resolved >= CURRENT_DATE', 'count')
        self.assertEqual(ctx.exception.message, "Jira API Error: Field 'resolved' does not exist")
    
    def test_connection(self):
        self.client._session.request.return_value = make_response({'accountId': 'abc'})
        self.assertTrue(self.client.test_connection())
        
        self.client._session.request.return_value = make_response({}, 403, 'Forbidden')
        self.assertFalse(self.client.test_connection())


class TestSheetQuery(unittest.TestCase):
    """Test spreadsheet query parsing."""
    
    def test_defaults(self):
        parsed = parse_sheet_query('{"range": "Sheet1!A:B"}', 'default-id')
        self.assertEqual(parsed, {
            'spreadsheet_id': 'default-id',
            'range': 'Sheet1!A:B',
            'value_column_index': 0,
            'has_header_row': True,
        })
    
    def test_invalid(self):
        for query in ('nope', '{"range": "A:A"}', '{"spreadsheetId": "x"}',
                      '{"spreadsheetId": "x", "range": "A:A", "valueColumnIndex": "two"}'):
            with self.assertRaises(QueryConfigurationError):
                parse_sheet_query(query)
    
    def test_header_flag_must_be_boolean(self):
        with self.assertRaises(QueryConfigurationError):
            parse_sheet_query('{"range": "A:A", "hasHeaderRow": "false"}', 'default-id')
        
        parsed = parse_sheet_query('{"range": "A:A", "hasHeaderRow": false}', 'default-id')
        self.assertFalse(parsed['has_header_row'])


class TestGoogleSheetsClient(unittest.TestCase):
    """Test range reads and column aggregation."""
    
    def setUp(self):
        self.client = GoogleSheetsClient(
            {'serviceAccountEmail': 'svc@proj.iam.gserviceaccount.com', 'privateKey': 'key'},
            SETTINGS
        )
        self.client._credentials = Mock(valid=True, token='access-token')
        self.client._session = Mock()
    
    def test_sum_strips_currency_and_skips_header(self):
        self.client._session.get.return_value = make_response({'values': [
            ['Month', 'Revenue'],
            ['Jan', '$1,200.50'],
            ['Feb', '800'],
            ['Mar'],
            ['Apr', 'pending'],
        ]})
        
        result = self.client.aggregate(
            '{"spreadsheetId": "sheet-1", "range": "Revenue!A1:B20", "valueColumnIndex": 1}', 'sum'
        )
        
        self.assertEqual(result.value, 2000.5)
        self.assertEqual(result.records_matched, 4)
        self.assertEqual(result.values_discarded, 2)
        
        call = self.client._session.get.call_args
        self.assertEqual(
            call.args[0],
            'https://sheets.googleapis.com/v4/spreadsheets/sheet-1/values/Revenue%21A1%3AB20'
        )
        self.assertEqual(call.kwargs['headers'], {'Authorization': 'Bearer access-token'})
    
    def test_count_rows(self):
        self.client._session.get.return_value = make_response({'values': [['a'], ['b'], ['c']]})
        
        result = self.client.aggregate(
            '{"spreadsheetId": "s", "range": "A:A", "hasHeaderRow": false}', 'count'
        )
        self.assertEqual(result.value, 3)
    
    def test_empty_range(self):
        self.client._session.get.return_value = make_response({'range': 'A1:A1'})
        self.assertEqual(self.client.execute_query_with_aggregation('{"spreadsheetId": "s", "range": "A1"}', 'max'), 0)
    
    def test_find_rows(self):
        self.client._session.get.return_value = make_response({'values': [
            ['Owner', 'Value'], ['Alice', '1'], ['bob', '2'], ['BOB', '3'], []
        ]})
        rows = self.client.find_rows('s', 'A:B', 0, 'Bob')
        self.assertEqual(rows, [['bob', '2'], ['BOB', '3']])
    
    def test_cell_value_and_batch(self):
        self.client._session.get.return_value = make_response({'values': [['42']]})
        self.assertEqual(self.client.get_cell_value('s', 'KPIs', 'B2'), '42')
        
        self.client._session.get.return_value = make_response({})
        self.assertIsNone(self.client.get_cell_value('s', 'KPIs', 'B3'))
        
        self.client._session.get.return_value = make_response({'valueRanges': [
            {'range': 'A!A1:A2', 'values': [['1'], ['2']]}, {'range': 'B!A1'}
        ]})
        batches = self.client.get_batch_ranges('s', ['A!A1:A2', 'B!A1'])
        self.assertEqual(batches, [
            {'range': 'A!A1:A2', 'values': [['1'], ['2']]},
            {'range': 'B!A1', 'values': []},
        ])
        self.assertEqual(
            self.client._session.get.call_args.kwargs['params'],
            [('ranges', 'A!A1:A2'), ('ranges', 'B!A1')]
        )
    
    def test_api_error(self):
        self.client._session.get.return_value = make_response(
            {'error': {'message': 'Requested entity was not found.'}}, 404, 'Not Found'
        )
        with self.assertRaises(IntegrationAPIError) as ctx:
            self.client.get_range('missing', 'A:A')
        self.assertEqual(ctx.exception.message, 'Google Sheets API Error: Requested entity was not found.')
    
    @patch('kpi_sync.integrations.sheets.Request')
    @patch('kpi_sync.integrations.sheets.service_account.Credentials.from_service_account_info')
    def test_service_account_credentials(self, mock_from_info, mock_request):
        credentials = Mock(valid=False, token='fresh-token')
        mock_from_info.return_value = credentials
        client = GoogleSheetsClient(
            {'serviceAccountEmail': 'svc@proj.iam', 'privateKey': '-----BEGIN-----\\nabc'},
            SETTINGS
        )
        
        self.assertEqual(client._get_access_token(), 'fresh-token')
        
        info = mock_from_info.call_args.args[0]
        self.assertEqual(info['client_email'], 'svc@proj.iam')
        self.assertEqual(info['private_key'], '-----BEGIN-----\nabc')
        credentials.refresh.assert_called_once_with(mock_request.return_value)
    
    @patch('kpi_sync.integrations.sheets.Request')
    @patch('kpi_sync.integrations.sheets.oauth2_credentials.Credentials')
    def test_refresh_token_credentials(self, mock_credentials, mock_request):
        mock_credentials.return_value = Mock(valid=False, token='oauth-token')
        client = GoogleSheetsClient(
            {'clientId': 'cid', 'clientSecret': 'secret', 'refreshToken': 'rt'},
            SETTINGS
        )
        
        self.assertEqual(client._get_access_token(), 'oauth-token')
        self.assertEqual(mock_credentials.call_args.kwargs['refresh_token'], 'rt')
    
    def test_missing_credentials(self):
        client = GoogleSheetsClient({}, SETTINGS)
        with self.assertRaises(IntegrationAPIError):
            client._get_access_token()
        self.assertFalse(client.test_connection())


class TestMetadataCache(unittest.TestCase):
    """Test TTL expiry and invalidation."""
    
    def setUp(self):
        self.now = 1000.0
        self.cache = MetadataCache(ttl_seconds=900, clock=lambda: self.now)
    
    def test_expiry(self):
        self.cache.set('hubspot', 'deals', ['amount'])
        self.now += 899
        self.assertEqual(self.cache.get('hubspot', 'deals'), ['amount'])
        self.now += 1
        self.assertIsNone(self.cache.get('hubspot', 'deals'))
    
    def test_invalidate_provider(self):
        self.cache.set('hubspot', 'deals', [1])
        self.cache.set('hubspot', 'contacts', [2])
        self.cache.set('sheets', 'deals', [3])
        
        self.cache.invalidate('hubspot', 'deals')
        self.assertIsNone(self.cache.get('hubspot', 'deals'))
        self.assertEqual(self.cache.get('hubspot', 'contacts'), [2])
        
        self.cache.invalidate('hubspot')
        self.assertIsNone(self.cache.get('hubspot', 'contacts'))
        self.assertEqual(self.cache.get('sheets', 'deals'), [3])


class TestCreateClient(unittest.TestCase):
    """Test client selection by integration type."""
    
    def test_known_types(self):
        self.assertIsInstance(create_client('hubspot', {'accessToken': 'x'}, SETTINGS), HubSpotClient)
        self.assertIsInstance(create_client('jira', {'host': 'h'}, SETTINGS), JiraClient)
        self.assertIsInstance(create_client('sheets', {}, SETTINGS), GoogleSheetsClient)
    
    def test_unknown_type(self):
        with self.assertRaises(QueryConfigurationError):
            create_client('salesforce', {}, SETTINGS)
    
    def test_settings_from_config(self):
        client = create_client('hubspot', {'accessToken': 'x'})
        self.assertEqual(client.base_url, 'https://api.hubapi.com')
        self.assertEqual(client.max_records, 10000)


if __name__ == '__main__':
    unittest.main()
