"""
Flask Application Factory
Web service for dashboard reads, integration settings and on-demand syncs.
"""

import os

from flask import Flask, jsonify
from flask_cors import CORS
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from kpi_sync import __version__
from kpi_sync.config_manager import ConfigManager
from kpi_sync.database.connection import get_db
from kpi_sync.integrations import INTEGRATION_TYPES
from kpi_sync.integrations.cache import MetadataCache
from kpi_sync.utils.helpers import current_time
from kpi_sync.utils.logger import setup_logging, get_logger


def create_app(overrides: dict = None) -> Flask:
    """
    Build the API application with its blueprints and shared metadata cache.
    
    Args:
        overrides: Optional Flask config values applied last (tests inject
            STORE_SCOPE and CLIENT_FACTORY here)
        
    Returns:
        Flask application ready to serve
    """
    setup_logging()
    logger = get_logger(__name__)
    
    app = Flask(__name__)
    
    config = ConfigManager()
    
    app.config['SECRET_KEY'] = os.getenv('FLASK_SECRET_KEY', 'dev-secret-key-change-in-production')
    app.json.sort_keys = False
    app.config['SYNC_TIMEZONE'] = config.get_timezone()
    app.config['DEFAULT_THRESHOLDS'] = config.get_default_thresholds()
    app.config['DEFAULT_AGGREGATION'] = config.get_sync_config().get('default_aggregation', 'sum')
    app.config['PROPERTIES_CACHE_TTL'] = config.get_cache_config().get('properties_ttl_seconds', 900)
    app.config.update(overrides or {})
    
    app.extensions['metadata_cache'] = MetadataCache(app.config['PROPERTIES_CACHE_TTL'])
    
    CORS(app)
    
    from kpi_sync.api.integration_routes import integrations_bp
    from kpi_sync.api.metrics_routes import metrics_bp
    
    app.register_blueprint(integrations_bp)
    app.register_blueprint(metrics_bp)
    
    @app.get('/health')
    def health_check():
        """Database reachability and server time."""
        db_healthy = get_db().check_connection()
        
        return jsonify({
            'status': 'healthy' if db_healthy else 'degraded',
            'timestamp': current_time(app.config['SYNC_TIMEZONE']).isoformat(),
            'database': 'connected' if db_healthy else 'disconnected'
        })
    
    @app.get('/')
    def root():
        """Service name, version and endpoint index."""
        return jsonify({
            'name': 'KPI Sync API',
            'version': __version__,
            'endpoints': {
                '/health': 'Health check',
                '/api/pillars': 'Pillars with scores and metrics (GET)',
                '/api/metrics/<metric_id>': 'Metric detail with history (GET)',
                '/api/integrations/<type>': 'Integration config (GET, POST, DELETE)',
                '/api/integrations/<type>/sync': 'Trigger sync (POST)',
                '/api/integrations/<type>/sync-logs': 'Recent sync logs (GET)',
                '/api/integrations/<type>/mappings': 'Mappings (GET, POST)',
                '/api/integrations/<type>/mappings/<mapping_id>': 'Mapping (PUT, DELETE)',
                '/api/integrations/hubspot/object-types': 'CRM object types (GET)',
                '/api/integrations/hubspot/properties': 'CRM properties (GET)'
            }
        })
    
    def error_response(message, status):
        return jsonify({'success': False, 'error': message}), status
    
    app.register_error_handler(404, lambda error: error_response('Not found', 404))
    app.register_error_handler(500, lambda error: error_response('Internal server error', 500))
    
    logger.info("Flask application created")
    
    return app


def _scheduled_sync(integration_type: str) -> None:
    """Scheduled sync job; failures are logged and never reach the scheduler."""
    logger = get_logger(__name__)
    logger.info(f"Running scheduled sync for {integration_type}")
    try:
        from kpi_sync.sync_pipeline import run_sync
        result = run_sync(integration_type)
        logger.info(
            f"Scheduled sync for {integration_type} completed - "
            f"updated {result.records_updated} of {result.mappings_total} mappings"
        )
    except Exception as e:
        logger.error(f"Scheduled sync for {integration_type} failed: {e}")


def create_scheduler() -> BackgroundScheduler:
    """
    Create the background scheduler with one cron job per integration type
    listed under `scheduler.sync_schedules`.
    
    Returns:
        Configured (not started) scheduler
    """
    logger = get_logger(__name__)
    config = ConfigManager()
    scheduler_config = config.get_scheduler_config()
    
    scheduler = BackgroundScheduler(timezone=config.get_timezone() or 'UTC')
    
    if not scheduler_config.get('enabled', False):
        logger.info("Scheduler is disabled")
        return scheduler
    
    for integration_type, schedule in (scheduler_config.get('sync_schedules') or {}).items():
        if integration_type not in INTEGRATION_TYPES:
            logger.warning(f"Ignoring schedule for unsupported integration type: {integration_type}")
            continue
        scheduler.add_job(
            _scheduled_sync,
            CronTrigger.from_crontab(schedule, timezone=scheduler.timezone),
            args=[integration_type],
            id=f"sync_{integration_type}",
            max_instances=1,
            coalesce=True
        )
        logger.info(f"Scheduled {integration_type} sync: {schedule}")
    
    return scheduler


if __name__ == '__main__':
    app = create_app()
    scheduler = create_scheduler()
    scheduler.start()
    
    try:
        app.run(
            host='0.0.0.0',
            port=int(os.getenv('FLASK_PORT', 6922)),
            debug=os.getenv('FLASK_DEBUG', 'false').lower() == 'true'
        )
    except (KeyboardInterrupt, SystemExit):
        scheduler.shutdown()
