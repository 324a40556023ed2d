"""
KPI Sync
Metric scoring and integration sync core for the executive KPI dashboard.
"""

__version__ = '1.0.0'
