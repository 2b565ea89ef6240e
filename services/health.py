# services/health.py
"""
System health aggregation for the health-check function and /health
"""

import logging
import time
from datetime import datetime
from typing import Any, Dict

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from core.database_models import db, Article, IntegrationLog, SecurityAuditLog, VisitorAnalytics
from services.integrations import log_integration_event

logger = logging.getLogger(__name__)

VERSION = '1.0.0'

_started_at = time.time()


def database_health() -> Dict[str, Any]:
    """Row counts over the main tables, the stand-in for a database-side health routine"""
    try:
        db.session.execute(text('SELECT 1'))
        return {
            'status': 'healthy',
            'published_articles': Article.query.filter_by(status='published').count(),
            'audit_events': SecurityAuditLog.query.count(),
            'analytics_events': VisitorAnalytics.query.count(),
        }
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Database health check failed: {str(e)}")
        return {'status': 'unhealthy', 'error': 'Database unavailable'}


def check_database_connectivity() -> str:
    try:
        IntegrationLog.query.with_entities(IntegrationLog.id).limit(1).all()
        return 'ok'
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Connectivity check failed: {str(e)}")
        return 'error'


def system_health() -> Dict[str, Any]:
    """
    Combined health report

    Returns:
        Dict with overall status, per-service checks and database health data
    """
    health_data = database_health()
    services = {
        'database': check_database_connectivity(),
        'auth': 'ok',
        'storage': 'ok',
        'timestamp': datetime.utcnow().isoformat(),
    }

    status = health_data.get('status', 'healthy')
    if services['database'] != 'ok':
        status = 'unhealthy'

    report = {
        'status': status,
        'timestamp': datetime.utcnow().isoformat(),
        'version': VERSION,
        'services': services,
        'health_data': health_data,
        'uptime': f"{int(time.time() - _started_at)}s",
    }

    log_integration_event('health_check', 'system_health_check',
                          'success' if status == 'healthy' else 'error', report)
    return report
