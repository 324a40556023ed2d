"""
Sync Pipeline Module
Runs every active mapping of one integration and writes the results to metrics.

A run opens a sync log, processes mappings one at a time, and closes the log.
A failing mapping is logged and skipped; only failures outside the mapping
loop fail the run.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, ContextManager, Dict, List, Optional, Tuple

from kpi_sync.config_manager import ConfigManager
from kpi_sync.database.connection import get_session
from kpi_sync.database.store import MetricStore
from kpi_sync.dates import DateLike, resolve_date_placeholders
from kpi_sync.integrations import create_client
from kpi_sync.utils.helpers import current_time
from kpi_sync.utils.logger import get_logger

logger = get_logger(__name__)


class IntegrationNotFoundError(LookupError):
    """No active integration exists for the requested type."""


class SyncError(Exception):
    """A sync run failed outside the per-mapping loop."""
    
    def __init__(self, message: str, sync_log_id: int = None):
        self.message = message
        self.sync_log_id = sync_log_id
        super().__init__(message)


@dataclass
class MappingJob:
    """Detached copy of an IntegrationMapping row."""
    id: int
    metric_id: int
    query: str
    aggregation_method: str = 'sum'
    value_field: Optional[str] = None
    transformation_rules: Optional[Dict] = None
    
    @classmethod
    def from_mapping(cls, mapping: Any) -> 'MappingJob':
        return cls(
            id=mapping.id,
            metric_id=mapping.metric_id,
            query=mapping.query,
            aggregation_method=mapping.aggregation_method or 'sum',
            value_field=mapping.value_field,
            transformation_rules=mapping.transformation_rules
        )


@dataclass
class SyncResult:
    """Counts and per-mapping failures of a completed run."""
    sync_log_id: int
    records_fetched: int = 0
    records_updated: int = 0
    mappings_total: int = 0
    failures: List[Tuple[int, str]] = field(default_factory=list)
    
    def to_dict(self) -> Dict:
        return {
            'success': True,
            'recordsFetched': self.records_fetched,
            'recordsUpdated': self.records_updated,
            'mappingsProcessed': self.mappings_total,
            'failedMappings': [{'mappingId': m, 'error': e} for m, e in self.failures],
        }


def apply_transformation(value: float, rules: Optional[Dict]) -> float:
    """Apply `divide` then `multiply`; missing or zero factors are skipped."""
    if not rules:
        return value
    if rules.get('divide'):
        value = value / rules['divide']
    if rules.get('multiply'):
        value = value * rules['multiply']
    return value


@contextmanager
def default_store_scope():
    """One transaction per scope against the configured database."""
    with get_session() as session:
        yield MetricStore(session)


class SyncOrchestrator:
    """
    Syncs integration data into metric values.
    
    Every database step runs in its own store scope, so the running log is
    committed before any remote call and each metric write commits on its own.
    """
    
    def __init__(
        self,
        store_scope: Callable[[], ContextManager[MetricStore]] = default_store_scope,
        client_factory: Callable[[str, Dict], Any] = create_client,
        timezone: Optional[str] = None
    ):
        """
        Args:
            store_scope: Factory returning a context manager that yields a MetricStore
            client_factory: Builds a client from (integration_type, config)
            timezone: Timezone for the default 'now'; read from config when omitted
        """
        self._store_scope = store_scope
        self._client_factory = client_factory
        self._timezone = timezone
    
    def _now(self) -> datetime:
        timezone = self._timezone or ConfigManager().get_timezone()
        return current_time(timezone)
    
    def sync(self, integration_type: str, now: DateLike = None) -> SyncResult:
        """
        Run all active mappings of one integration.
        
        Args:
            integration_type: 'hubspot', 'jira' or 'sheets'
            now: Instant used to resolve date placeholders
            
        Returns:
            SyncResult, also for partial success
            
        Raises:
            IntegrationNotFoundError: No active integration of this type; nothing is logged
            SyncError: The run failed outside the mapping loop; the log is marked failed
        """
        now = now or self._now()
        logger.info(f"Starting sync for {integration_type}")
        
        with self._store_scope() as store:
            integration = store.get_active_integration(integration_type)
            if integration is None:
                raise IntegrationNotFoundError(f"Integration not found or not active: {integration_type}")
            integration_id = integration.id
            config = dict(integration.config or {})
            sync_log_id = store.create_sync_log(integration_id).id
        
        try:
            with self._store_scope() as store:
                jobs = [MappingJob.from_mapping(m) for m in store.get_active_mappings(integration_id)]
            logger.info(f"Found {len(jobs)} active mappings for {integration_type}")
            
            result = SyncResult(sync_log_id=sync_log_id, mappings_total=len(jobs))
            
            if jobs:
                client = self._client_factory(integration_type, config)
                for job in jobs:
                    self._process_mapping(integration_type, client, job, now, result)
            
            with self._store_scope() as store:
                store.complete_sync_log(sync_log_id, result.records_fetched, result.records_updated)
                store.update_integration_sync_status(integration_id, 'success')
            
        except Exception as e:
            logger.error(f"Sync for {integration_type} failed: {e}")
            self._mark_failed(integration_id, sync_log_id, str(e))
            raise SyncError(f"Sync failed: {e}", sync_log_id) from e
        
        if result.failures:
            logger.warning(
                f"Sync for {integration_type} completed with {len(result.failures)} "
                f"of {len(jobs)} mappings failing"
            )
        logger.info(
            f"Sync for {integration_type} completed - fetched: {result.records_fetched}, "
            f"updated: {result.records_updated}"
        )
        return result
    
    def _process_mapping(
        self,
        integration_type: str,
        client: Any,
        job: MappingJob,
        now: DateLike,
        result: SyncResult
    ) -> None:
        """Run one mapping; any exception is recorded on `result` and swallowed."""
        try:
            query = resolve_date_placeholders(job.query, now)
            logger.debug(f"Processing {integration_type} mapping {job.id} for metric {job.metric_id}: {query}")
            
            aggregation = client.aggregate(query, job.aggregation_method, job.value_field)
            result.records_fetched += 1
            if aggregation.values_discarded:
                logger.info(
                    f"Mapping {job.id}: ignored {aggregation.values_discarded} non-numeric "
                    f"values of {aggregation.records_matched} records"
                )
            
            value = apply_transformation(aggregation.value, job.transformation_rules)
            
            with self._store_scope() as store:
                store.update_metric_value(job.metric_id, value, source='sync')
            result.records_updated += 1
            
        except Exception as e:
            logger.error(f"Error processing {integration_type} mapping {job.id}: {e}")
            result.failures.append((job.id, str(e)))
    
    def _mark_failed(self, integration_id: int, sync_log_id: int, error: str) -> None:
        try:
            with self._store_scope() as store:
                store.fail_sync_log(sync_log_id, error)
                store.update_integration_sync_status(integration_id, 'failed', error)
        except Exception as e:
            logger.error(f"Could not record failure of sync log {sync_log_id}: {e}")


def run_sync(integration_type: str) -> SyncResult:
    """
    Convenience function to run a sync against the configured database.
    
    Args:
        integration_type: 'hubspot', 'jira' or 'sheets'
    """
    return SyncOrchestrator().sync(integration_type)
