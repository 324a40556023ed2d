"""
Helper Utilities Module
Small functions shared by the clients, the orchestrator and the API.
"""

import re
from datetime import datetime
from typing import Any, Dict, Optional

import pytz


SECRET_MASK = '••••••••'

# Config keys holding credentials; masked whenever present
SECRET_FIELDS = (
    'apiKey', 'accessToken', 'apiToken', 'refreshToken',
    'clientSecret', 'privateKey',
)

_CURRENCY_PATTERN = re.compile(r'[$,]')


def to_number(value: Any, strip_currency: bool = False) -> Optional[float]:
    """
    Coerce a raw field value to a float.
    
    Args:
        value: Value from a remote record (number, string or anything else)
        strip_currency: Remove '$' and ',' before parsing (spreadsheet cells)
        
    Returns:
        Float value, or None if the value is empty or not numeric
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        return None
    
    text = value
    if strip_currency:
        text = _CURRENCY_PATTERN.sub('', text)
    text = text.strip()
    if not text:
        return None
    
    match = re.match(r'^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?', text)
    if not match:
        return None
    return float(match.group(0))


def safe_get(data: Dict, *keys, default=None) -> Any:
    """
    Safely get nested dictionary value.
    
    Args:
        data: Dictionary to traverse
        *keys: Keys to follow
        default: Default value if key not found
        
    Returns:
        Value at path or default
    """
    result = data
    for key in keys:
        if isinstance(result, dict):
            result = result.get(key)
        else:
            return default
        if result is None:
            return default
    return result


def mask_config(config: Optional[Dict]) -> Optional[Dict]:
    """Return a copy of an integration config with credential fields masked."""
    if config is None:
        return None
    masked = dict(config)
    for field in SECRET_FIELDS:
        if masked.get(field):
            masked[field] = SECRET_MASK
        else:
            masked.pop(field, None)
    return masked


def current_time(timezone: Optional[str] = None) -> datetime:
    """
    Current wall-clock time in the given timezone.
    
    Only the outer layers (API, CLI, scheduler) call this; everything below
    them takes `now` as an argument.
    """
    tz = pytz.timezone(timezone) if timezone else pytz.UTC
    return datetime.now(tz)


def sanitize_string(text: Optional[str], max_length: int = None) -> Optional[str]:
    """Strip null bytes and truncate text for database storage."""
    if text is None:
        return None
    
    text = text.replace('\x00', '')
    if max_length and len(text) > max_length:
        text = text[:max_length - 3] + '...'
    
    return text


def isoformat(value: Optional[datetime]) -> Optional[str]:
    """ISO string for an optional datetime."""
    return value.isoformat() if value else None
