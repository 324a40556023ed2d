"""
Filter Query Model
Canonical "AND of conditions" representation of a CRM mapping query and its
JSON serialization.

Canonical JSON shape:
    {"_objectType": "deals", "dealstage": "closedwon", "amount": {"gte": "1000"},
     "pipeline": {"neq": ["a", "b"]}}
"""

import json
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple


OBJECT_TYPE_KEY = '_objectType'
DEFAULT_OBJECT_TYPE = 'deals'

OPERATORS = ('eq', 'neq', 'gt', 'gte', 'lt', 'lte')

OPERATOR_LABELS = {
    'eq': 'equals',
    'neq': 'not equals',
    'gt': 'greater than',
    'gte': 'greater than or equal',
    'lt': 'less than',
    'lte': 'less than or equal',
}

# Operators permitted per property type; anything not listed gets equality only
_OPERATORS_BY_TYPE = {
    'date': OPERATORS,
    'number': OPERATORS,
    'string': ('eq', 'neq'),
    'enumeration': ('eq', 'neq'),
}


def _new_id() -> str:
    return uuid.uuid4().hex[:7]


@dataclass
class FilterCondition:
    """One property/operator/values clause of a query."""
    property: str = ''
    operator: str = 'eq'
    values: List[str] = field(default_factory=list)
    id: str = field(default_factory=_new_id, compare=False)
    
    def is_complete(self) -> bool:
        return bool(self.property) and bool(self.values)


def operators_for_type(property_type: Optional[str]) -> Tuple[str, ...]:
    """Operators available for a property type ('date', 'number', 'string', 'enumeration')."""
    return _OPERATORS_BY_TYPE.get(property_type, ('eq', 'neq'))


def change_property(
    condition: FilterCondition,
    new_property: str,
    property_type: Optional[str]
) -> FilterCondition:
    """
    Point a condition at a different property.
    
    The operator falls back to 'eq' when the new property's type does not
    allow it, and the selected values are cleared.
    """
    operator = condition.operator
    if operator not in operators_for_type(property_type):
        operator = 'eq'
    return replace(condition, property=new_property, operator=operator, values=[])


def change_operator(condition: FilterCondition, new_operator: str) -> FilterCondition:
    """
    Switch a condition's operator.
    
    Leaving 'neq' for a single-value operator keeps only the first value.
    """
    if new_operator not in OPERATORS:
        raise ValueError(f"Unknown operator: {new_operator}")
    values = list(condition.values)
    if condition.operator == 'neq' and new_operator != 'neq' and len(values) > 1:
        values = values[:1]
    return replace(condition, operator=new_operator, values=values)


def to_query_dict(filters: List[FilterCondition], object_type: str = DEFAULT_OBJECT_TYPE) -> Dict[str, Any]:
    """
    Build the canonical query mapping.
    
    Incomplete conditions (no property or no values) are dropped.
    """
    result: Dict[str, Any] = {OBJECT_TYPE_KEY: object_type}
    
    for condition in filters:
        if not condition.is_complete():
            continue
        
        if condition.operator == 'eq' and len(condition.values) == 1:
            result[condition.property] = condition.values[0]
        elif len(condition.values) == 1:
            result[condition.property] = {condition.operator: condition.values[0]}
        else:
            result[condition.property] = {condition.operator: list(condition.values)}
    
    return result


def serialize_filters(filters: List[FilterCondition], object_type: str = DEFAULT_OBJECT_TYPE) -> str:
    """Serialize conditions and object type to the canonical JSON query string."""
    return json.dumps(to_query_dict(filters, object_type))


def from_query_dict(query: Dict[str, Any]) -> Tuple[List[FilterCondition], str]:
    """
    Inverse of `to_query_dict`.
    
    A bare scalar becomes 'eq'; an operator object contributes its first
    operator with all of its values.
    """
    object_type = query.get(OBJECT_TYPE_KEY) or DEFAULT_OBJECT_TYPE
    filters: List[FilterCondition] = []
    
    for key, value in query.items():
        if key == OBJECT_TYPE_KEY:
            continue
        
        condition = FilterCondition(property=key)
        if isinstance(value, dict):
            if value:
                operator, operand = next(iter(value.items()))
                condition.operator = operator
                if isinstance(operand, list):
                    condition.values = [_stringify(v) for v in operand]
                else:
                    condition.values = [_stringify(operand)]
        elif value is not None:
            condition.values = [_stringify(value)]
        
        filters.append(condition)
    
    return filters, object_type


def parse_filters(query: str) -> Tuple[List[FilterCondition], str]:
    """
    Parse a canonical JSON query string.
    
    Empty or malformed input yields no conditions and the default object
    type, so an editor can always start from a blank query.
    """
    if not query:
        return [], DEFAULT_OBJECT_TYPE
    try:
        parsed = json.loads(query)
    except ValueError:
        return [], DEFAULT_OBJECT_TYPE
    if not isinstance(parsed, dict):
        return [], DEFAULT_OBJECT_TYPE
    return from_query_dict(parsed)


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)
