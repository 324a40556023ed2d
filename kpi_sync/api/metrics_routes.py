"""
Metrics API Blueprint
Read-only pillar and metric views with derived status, score and pace.
"""

from flask import Blueprint, current_app, jsonify, request

from kpi_sync.api.common import request_now, store_scope
from kpi_sync.pillars import summarize_pillar
from kpi_sync.scoring import (
    COMPARISON_MODE_DESCRIPTIONS, COMPARISON_MODE_LABELS, STATUS_BG_COLORS,
    STATUS_COLORS, STATUS_LABELS, evaluate_metric
)
from kpi_sync.utils.helpers import isoformat
from kpi_sync.utils.logger import get_logger

logger = get_logger(__name__)

metrics_bp = Blueprint('metrics', __name__, url_prefix='/api')


def _serialize_metric(metric, now, thresholds) -> dict:
    derived = evaluate_metric(metric, now, thresholds)
    status = derived['status']
    return {
        'id': metric.id,
        'pillarId': metric.pillar_id,
        'name': metric.name,
        'dataSource': metric.data_source,
        'metricType': metric.metric_type,
        'currentValue': metric.current_value,
        'targetValue': metric.target_value,
        'previousValue': metric.previous_value,
        'comparisonMode': metric.comparison_mode,
        'comparisonModeLabel': COMPARISON_MODE_LABELS.get(metric.comparison_mode),
        'comparisonModeDescription': COMPARISON_MODE_DESCRIPTIONS.get(metric.comparison_mode),
        'cadence': metric.cadence,
        'format': metric.format,
        'unit': metric.unit,
        'lastUpdated': isoformat(metric.last_updated),
        'statusLabel': STATUS_LABELS[status],
        'statusColor': STATUS_COLORS[status],
        'statusBackground': STATUS_BG_COLORS[status],
        **derived,
    }


@metrics_bp.route('/pillars', methods=['GET'])
def list_pillars():
    """
    All pillars with score, status and their evaluated metrics.
    
    Returns:
        JSON with pillars ordered by sort_order
    """
    now = request_now()
    thresholds = current_app.config.get('DEFAULT_THRESHOLDS')
    
    try:
        with store_scope() as store:
            pillars = []
            for pillar in store.get_pillars():
                metrics = store.get_metrics_for_pillar(pillar.id)
                summary = summarize_pillar(pillar, metrics, now, thresholds)
                summary['metrics'] = [_serialize_metric(m, now, thresholds) for m in metrics]
                pillars.append(summary)
        
        return jsonify({'success': True, 'pillars': pillars})
        
    except Exception as e:
        logger.error(f"Failed to list pillars: {e}")
        return jsonify({
            'success': False,
            'error': str(e)
        }), 500


@metrics_bp.route('/metrics/<int:metric_id>', methods=['GET'])
def get_metric(metric_id: int):
    """
    One metric with derived fields and value history.
    
    Query params:
        history: Number of history points to include (default 52)
    """
    now = request_now()
    thresholds = current_app.config.get('DEFAULT_THRESHOLDS')
    
    try:
        history_limit = int(request.args.get('history', 52))
        
        with store_scope() as store:
            metric = store.get_metric(metric_id)
            if metric is None:
                return jsonify({
                    'success': False,
                    'error': 'Metric not found'
                }), 404
            
            payload = _serialize_metric(metric, now, thresholds)
            payload['history'] = [
                {'value': h.value, 'source': h.source, 'recordedAt': isoformat(h.recorded_at)}
                for h in store.get_metric_history(metric_id, history_limit)
            ]
        
        return jsonify({'success': True, 'metric': payload})
        
    except ValueError:
        return jsonify({
            'success': False,
            'error': 'history must be an integer'
        }), 400
    except Exception as e:
        logger.error(f"Failed to get metric {metric_id}: {e}")
        return jsonify({
            'success': False,
            'error': str(e)
        }), 500
