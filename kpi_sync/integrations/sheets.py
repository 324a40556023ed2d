"""
Google Sheets Client Module
Reads cell ranges from Google Sheets and reduces one column to a number.

Query format (JSON):
    {"spreadsheetId": "...", "range": "Revenue!A1:D200",
     "valueColumnIndex": 2, "hasHeaderRow": true}
"""

import json
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google.oauth2 import credentials as oauth2_credentials
from google.oauth2 import service_account

from kpi_sync.integrations.base import (
    DEFAULT_MAX_RECORDS, AggregationResult, IntegrationAPIError,
    QueryConfigurationError, aggregate_values, create_session, error_message,
    validate_aggregation
)
from kpi_sync.utils.helpers import safe_get
from kpi_sync.utils.logger import get_logger

logger = get_logger(__name__)


SCOPES = ['https://www.googleapis.com/auth/spreadsheets.readonly']
TOKEN_URI = 'https://oauth2.googleapis.com/token'


def parse_sheet_query(query: str, default_spreadsheet_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Parse a resolved spreadsheet mapping query.
    
    Returns:
        Dict with spreadsheet_id, range, value_column_index, has_header_row
        
    Raises:
        QueryConfigurationError: Bad JSON, or no spreadsheet id / range
    """
    try:
        parsed = json.loads(query)
    except (TypeError, ValueError) as e:
        raise QueryConfigurationError(f"Invalid Google Sheets query JSON: {e}")
    if not isinstance(parsed, dict):
        raise QueryConfigurationError("Google Sheets query must be a JSON object")
    
    spreadsheet_id = parsed.get('spreadsheetId') or default_spreadsheet_id
    if not spreadsheet_id:
        raise QueryConfigurationError("No spreadsheetId in query and no default spreadsheet configured")
    if not parsed.get('range'):
        raise QueryConfigurationError("Google Sheets query requires a range")
    
    try:
        column = int(parsed.get('valueColumnIndex', 0))
    except (TypeError, ValueError):
        raise QueryConfigurationError(f"Invalid valueColumnIndex: {parsed.get('valueColumnIndex')}")
    
    has_header_row = parsed.get('hasHeaderRow', True)
    if not isinstance(has_header_row, bool):
        raise QueryConfigurationError(f"hasHeaderRow must be true or false, got {has_header_row!r}")
    
    return {
        'spreadsheet_id': spreadsheet_id,
        'range': parsed['range'],
        'value_column_index': column,
        'has_header_row': has_header_row,
    }


class GoogleSheetsClient:
    """
    Google Sheets v4 values client.
    
    Credentials come from either a service account (serviceAccountEmail +
    privateKey) or an OAuth2 refresh token (clientId + clientSecret +
    refreshToken). Access tokens are refreshed through google-auth and
    reused until they expire.
    """
    
    def __init__(self, config: Dict, settings: Dict = None):
        settings = settings or {}
        self.config = config
        self.default_spreadsheet_id = config.get('defaultSpreadsheetId')
        
        self.base_url = settings.get('base_url', 'https://sheets.googleapis.com/v4').rstrip('/')
        self.timeout = settings.get('timeout', 30)
        self.max_records = settings.get('max_records', DEFAULT_MAX_RECORDS)
        
        self._session = create_session(settings.get('max_retries', 3), settings.get('retry_delay', 1))
        self._credentials = None
    
    def _build_credentials(self):
        """Create google-auth credentials from the integration config."""
        config = self.config
        
        if config.get('privateKey') and config.get('serviceAccountEmail'):
            private_key = config['privateKey'].replace('\\n', '\n')
            return service_account.Credentials.from_service_account_info(
                {
                    'client_email': config['serviceAccountEmail'],
                    'private_key': private_key,
                    'token_uri': TOKEN_URI,
                },
                scopes=SCOPES
            )
        
        if config.get('refreshToken') and config.get('clientId') and config.get('clientSecret'):
            return oauth2_credentials.Credentials(
                token=None,
                refresh_token=config['refreshToken'],
                client_id=config['clientId'],
                client_secret=config['clientSecret'],
                token_uri=TOKEN_URI,
                scopes=SCOPES
            )
        
        raise IntegrationAPIError("Google Sheets API Error: No valid authentication configuration provided")
    
    def _get_access_token(self) -> str:
        """Return a valid access token, refreshing it when needed."""
        if self._credentials is None:
            try:
                self._credentials = self._build_credentials()
            except (ValueError, GoogleAuthError) as e:
                raise IntegrationAPIError(f"Google Sheets API Error: invalid credentials: {e}")
        
        if not self._credentials.valid:
            try:
                self._credentials.refresh(Request())
            except GoogleAuthError as e:
                raise IntegrationAPIError(f"Google Sheets API Error: failed to refresh token: {e}")
        
        return self._credentials.token
    
    def _make_request(self, endpoint: str, params: Any = None) -> Dict:
        """
        Make an authenticated GET request to the Sheets API.
        
        Raises:
            IntegrationAPIError: On auth failure, network failure or non-2xx
        """
        token = self._get_access_token()
        
        try:
            response = self._session.get(
                f"{self.base_url}{endpoint}",
                params=params,
                headers={'Authorization': f"Bearer {token}"},
                timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Google Sheets request failed: {e}")
            raise IntegrationAPIError(f"Google Sheets API Error: {e}")
        
        if not response.ok:
            message = error_message(response, ('error', 'message'))
            raise IntegrationAPIError(f"Google Sheets API Error: {message}", response.status_code)
        
        return response.json() if response.text else {}
    
    def test_connection(self) -> bool:
        """Validate credentials, and the default spreadsheet when one is configured."""
        try:
            self._get_access_token()
            if self.default_spreadsheet_id:
                self.get_spreadsheet_info(self.default_spreadsheet_id)
            logger.info("Google Sheets connection test successful")
            return True
        except Exception as e:
            logger.error(f"Google Sheets connection test failed: {e}")
            return False
    
    def get_spreadsheet_info(self, spreadsheet_id: str) -> Dict:
        """Get spreadsheet title and sheet list."""
        data = self._make_request(
            f"/spreadsheets/{spreadsheet_id}",
            params={'fields': 'properties.title,sheets.properties'}
        )
        return {
            'title': safe_get(data, 'properties', 'title'),
            'sheets': [
                {'title': s['properties'].get('title'), 'sheetId': s['properties'].get('sheetId')}
                for s in data.get('sheets', [])
            ],
        }
    
    def get_range(self, spreadsheet_id: str, cell_range: str) -> List[List[str]]:
        """Read the values of one A1 range."""
        data = self._make_request(
            f"/spreadsheets/{spreadsheet_id}/values/{quote(cell_range, safe='')}"
        )
        return data.get('values', [])
    
    def get_batch_ranges(self, spreadsheet_id: str, ranges: List[str]) -> List[Dict]:
        """Read several A1 ranges in one request."""
        data = self._make_request(
            f"/spreadsheets/{spreadsheet_id}/values:batchGet",
            params=[('ranges', r) for r in ranges]
        )
        return [
            {'range': vr.get('range'), 'values': vr.get('values', [])}
            for vr in data.get('valueRanges', [])
        ]
    
    def get_cell_value(self, spreadsheet_id: str, sheet_name: str, cell: str) -> Optional[str]:
        """Read a single cell, or None when it is empty."""
        values = self.get_range(spreadsheet_id, f"{sheet_name}!{cell}")
        if values and values[0]:
            return values[0][0] or None
        return None
    
    def find_rows(
        self,
        spreadsheet_id: str,
        cell_range: str,
        filter_column: int,
        filter_value: str,
        has_header_row: bool = True
    ) -> List[List[str]]:
        """Return data rows whose `filter_column` equals `filter_value`, case-insensitively."""
        rows = self.get_range(spreadsheet_id, cell_range)
        if has_header_row:
            rows = rows[1:]
        
        wanted = filter_value.lower()
        return [
            row for row in rows
            if len(row) > filter_column and str(row[filter_column]).lower() == wanted
        ]
    
    def aggregate(
        self,
        query: str,
        aggregation_method: str,
        value_field: Optional[str] = None
    ) -> AggregationResult:
        """
        Read the query's range and reduce its value column.
        
        `value_field` is not used; the column comes from `valueColumnIndex`.
        
        Raises:
            QueryConfigurationError: Bad query or aggregation method
            IntegrationAPIError: The read failed
        """
        validate_aggregation(aggregation_method, value_field or 'valueColumnIndex')
        parsed = parse_sheet_query(query, self.default_spreadsheet_id)
        
        rows = self.get_range(parsed['spreadsheet_id'], parsed['range'])
        if parsed['has_header_row']:
            rows = rows[1:]
        if len(rows) > self.max_records:
            logger.warning(f"Sheet range {parsed['range']} truncated to {self.max_records} rows")
            rows = rows[:self.max_records]
        
        if aggregation_method == 'count':
            return AggregationResult(value=len(rows), records_matched=len(rows))
        
        column = parsed['value_column_index']
        return aggregate_values(
            (row[column] if len(row) > column else None for row in rows),
            aggregation_method,
            strip_currency=True
        )
    
    def execute_query_with_aggregation(
        self,
        query: str,
        aggregation_method: str,
        value_field: Optional[str] = None
    ) -> float:
        """Run a spreadsheet mapping query and return only the aggregated value."""
        return self.aggregate(query, aggregation_method, value_field).value
