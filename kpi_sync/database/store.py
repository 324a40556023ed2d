"""
Metric Store Module
Data-store interface consumed by the sync orchestrator and the API.
"""

from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import desc
from sqlalchemy.orm import Session

from kpi_sync.database.models import (
    Integration, IntegrationMapping, IntegrationSyncLog, Metric,
    MetricHistory, Pillar
)
from kpi_sync.utils.helpers import sanitize_string
from kpi_sync.utils.logger import get_logger

logger = get_logger(__name__)


MAPPING_FIELDS = ('query', 'aggregation_method', 'value_field', 'transformation_rules', 'is_active')


class MetricStore:
    """
    Reads and writes dashboard records within one session.
    
    Writes are flushed, not committed; the caller owns the transaction.
    """
    
    def __init__(self, session: Session):
        """Initialize with database session."""
        self.session = session
    
    # ========================================
    # Integrations
    # ========================================
    
    def get_integration(self, integration_type: str) -> Optional[Integration]:
        """Get an integration by type, active or not."""
        return self.session.query(Integration).filter(Integration.type == integration_type).first()
    
    def get_active_integration(self, integration_type: str) -> Optional[Integration]:
        """Get an integration by type only if it is active."""
        return (
            self.session.query(Integration)
            .filter(Integration.type == integration_type, Integration.is_active.is_(True))
            .first()
        )
    
    def save_integration(self, integration_type: str, name: Optional[str], config: Dict) -> Integration:
        """Create or update the integration for a type and mark it active. A None name keeps the stored one."""
        integration = self.get_integration(integration_type)
        if integration is None:
            integration = Integration(type=integration_type)
            self.session.add(integration)
        
        if name is not None:
            integration.name = name
        integration.config = config
        integration.is_active = True
        self.session.flush()
        return integration
    
    def delete_integration(self, integration_type: str) -> bool:
        """Delete an integration with its mappings and logs. Returns False if absent."""
        integration = self.get_integration(integration_type)
        if integration is None:
            return False
        self.session.delete(integration)
        self.session.flush()
        return True
    
    def update_integration_sync_status(
        self,
        integration_id: int,
        status: str,
        error: Optional[str] = None,
        synced_at: datetime = None
    ) -> None:
        """Record the outcome of the latest sync on the integration."""
        integration = self.session.get(Integration, integration_id)
        integration.last_sync_at = synced_at or datetime.utcnow()
        integration.last_sync_status = status
        integration.last_sync_error = sanitize_string(error, 1000)
        self.session.flush()
    
    # ========================================
    # Sync Logs
    # ========================================
    
    def create_sync_log(self, integration_id: int, started_at: datetime = None) -> IntegrationSyncLog:
        """Open a sync log in the 'running' state."""
        sync_log = IntegrationSyncLog(
            integration_id=integration_id,
            status='running',
            started_at=started_at or datetime.utcnow()
        )
        self.session.add(sync_log)
        self.session.flush()
        return sync_log
    
    def complete_sync_log(
        self,
        sync_log_id: int,
        records_fetched: int,
        records_updated: int,
        completed_at: datetime = None
    ) -> None:
        """Close a running sync log as successful."""
        sync_log = self._running_log(sync_log_id)
        sync_log.status = 'success'
        sync_log.completed_at = completed_at or datetime.utcnow()
        sync_log.records_fetched = records_fetched
        sync_log.records_updated = records_updated
        self.session.flush()
    
    def fail_sync_log(self, sync_log_id: int, error: str, completed_at: datetime = None) -> None:
        """Close a running sync log as failed."""
        sync_log = self._running_log(sync_log_id)
        sync_log.status = 'failed'
        sync_log.completed_at = completed_at or datetime.utcnow()
        sync_log.error_message = sanitize_string(error, 1000)
        self.session.flush()
    
    def _running_log(self, sync_log_id: int) -> IntegrationSyncLog:
        sync_log = self.session.get(IntegrationSyncLog, sync_log_id)
        if sync_log is None:
            raise LookupError(f"Sync log {sync_log_id} not found")
        if sync_log.status != 'running':
            raise ValueError(f"Sync log {sync_log_id} is already {sync_log.status}")
        return sync_log
    
    def get_sync_logs(self, integration_id: int, limit: int = 10) -> List[IntegrationSyncLog]:
        """Most recent sync logs first."""
        return (
            self.session.query(IntegrationSyncLog)
            .filter(IntegrationSyncLog.integration_id == integration_id)
            .order_by(desc(IntegrationSyncLog.started_at), desc(IntegrationSyncLog.id))
            .limit(limit)
            .all()
        )
    
    # ========================================
    # Mappings
    # ========================================
    
    def get_active_mappings(self, integration_id: int) -> List[IntegrationMapping]:
        """Active mappings for an integration, in creation order."""
        return (
            self.session.query(IntegrationMapping)
            .filter(
                IntegrationMapping.integration_id == integration_id,
                IntegrationMapping.is_active.is_(True)
            )
            .order_by(IntegrationMapping.id)
            .all()
        )
    
    def list_mappings(self, integration_id: int, metric_id: int = None) -> List[IntegrationMapping]:
        """All mappings of an integration, optionally for one metric."""
        query = self.session.query(IntegrationMapping).filter(
            IntegrationMapping.integration_id == integration_id
        )
        if metric_id is not None:
            query = query.filter(IntegrationMapping.metric_id == metric_id)
        return query.order_by(IntegrationMapping.id).all()
    
    def get_mapping(self, mapping_id: int) -> Optional[IntegrationMapping]:
        return self.session.get(IntegrationMapping, mapping_id)
    
    def create_mapping(
        self,
        integration_id: int,
        metric_id: int,
        query: str,
        aggregation_method: str = 'sum',
        value_field: Optional[str] = None,
        transformation_rules: Optional[Dict] = None,
        is_active: bool = True
    ) -> IntegrationMapping:
        mapping = IntegrationMapping(
            integration_id=integration_id,
            metric_id=metric_id,
            query=query,
            aggregation_method=aggregation_method or 'sum',
            value_field=value_field or None,
            transformation_rules=transformation_rules or None,
            is_active=is_active
        )
        self.session.add(mapping)
        self.session.flush()
        return mapping
    
    def update_mapping(self, mapping_id: int, **changes) -> Optional[IntegrationMapping]:
        """Apply changes to the mapping fields listed in MAPPING_FIELDS."""
        mapping = self.get_mapping(mapping_id)
        if mapping is None:
            return None
        for field_name in MAPPING_FIELDS:
            if field_name in changes:
                setattr(mapping, field_name, changes[field_name])
        self.session.flush()
        return mapping
    
    def delete_mapping(self, mapping_id: int) -> bool:
        mapping = self.get_mapping(mapping_id)
        if mapping is None:
            return False
        self.session.delete(mapping)
        self.session.flush()
        return True
    
    # ========================================
    # Metrics & Pillars
    # ========================================
    
    def get_metric(self, metric_id: int) -> Optional[Metric]:
        return self.session.get(Metric, metric_id)
    
    def update_metric_value(self, metric_id: int, value: float, source: str = 'sync') -> Metric:
        """
        Overwrite a metric's current value.
        
        The old value moves to `previous_value` only when the value changes,
        so repeated syncs of an unchanged value keep the last trend. Every
        call appends a history row.
        
        Raises:
            LookupError: If the metric does not exist
        """
        metric = self.get_metric(metric_id)
        if metric is None:
            raise LookupError(f"Metric {metric_id} not found")
        
        now = datetime.utcnow()
        if metric.current_value != value:
            metric.previous_value = metric.current_value
        metric.current_value = value
        metric.last_updated = now
        self.session.add(MetricHistory(metric_id=metric_id, value=value, source=source, recorded_at=now))
        self.session.flush()
        return metric
    
    def get_pillars(self) -> List[Pillar]:
        return self.session.query(Pillar).order_by(Pillar.sort_order, Pillar.id).all()
    
    def get_metrics_for_pillar(self, pillar_id: int) -> List[Metric]:
        return (
            self.session.query(Metric)
            .filter(Metric.pillar_id == pillar_id)
            .order_by(Metric.sort_order, Metric.id)
            .all()
        )
    
    def get_metric_history(self, metric_id: int, limit: int = 52) -> List[MetricHistory]:
        return (
            self.session.query(MetricHistory)
            .filter(MetricHistory.metric_id == metric_id)
            .order_by(desc(MetricHistory.recorded_at), desc(MetricHistory.id))
            .limit(limit)
            .all()
        )
