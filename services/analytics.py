# services/analytics.py
"""
Visitor Analytics Service
Consent-gated page-view ingestion, cookie consent tracking and the
aggregated reports behind the admin analytics dashboard
"""

import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import pandas as pd

from core.database_models import db, Article, CookieConsentTracking, VisitorAnalytics
from core.errors import ConsentRequiredError, ValidationError
from core.security_manager import hash_ip

# Configure logging
logger = logging.getLogger(__name__)

EVENT_FIELDS = ('path', 'utm_source', 'utm_medium', 'utm_campaign', 'device_type', 'browser',
                'region', 'session_id', 'user_id', 'page_load_time', 'engagement_time')

CONSENT_CATEGORIES = ('necessary', 'analytics', 'marketing')


@dataclass
class Metric:
    """Individual dashboard metric"""
    name: str
    value: float
    unit: str
    trend: Optional[str] = None  # "up", "down", "stable"
    change_percent: Optional[float] = None


def normalize_referrer(referrer: Optional[str]) -> Optional[str]:
    """Reduce a referrer URL to its hostname"""
    if not referrer:
        return None
    parsed = urlparse(referrer if '//' in referrer else f"//{referrer}")
    return parsed.hostname or None


def normalize_country(country: Optional[str]) -> Optional[str]:
    if not country:
        return None
    return str(country).strip()[:2].upper() or None


def _to_float(value) -> Optional[float]:
    if value is None or value == '':
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError('Timing values must be numeric')


class VisitorAnalyticsService:
    """
    Analytics engine for the public site
    """

    def __init__(self, trend_threshold: float = 5.0):
        # Percent change below which a trend counts as stable
        self.trend_threshold = trend_threshold

    # Cookie consent

    def record_consent(self, ip_address: str, consent: Dict[str, Any]) -> CookieConsentTracking:
        """Upsert the consent choice for a client IP"""
        if not isinstance(consent, dict):
            raise ValidationError('Consent must be an object')

        consent_data = {category: bool(consent.get(category, False)) for category in CONSENT_CATEGORIES}
        consent_data['necessary'] = True

        record = CookieConsentTracking.query.filter_by(ip_address=ip_address).first()
        if record is None:
            record = CookieConsentTracking(ip_address=ip_address)
            db.session.add(record)

        record.consent_data = consent_data
        record.last_updated = datetime.utcnow()
        db.session.commit()

        logger.info(f"Consent tracked (analytics={consent_data['analytics']})")
        return record

    def get_consent(self, ip_address: str) -> Dict[str, Any]:
        record = CookieConsentTracking.query.filter_by(ip_address=ip_address).first()
        return {
            'hasConsent': record is not None,
            'consent': record.consent_data if record else None,
            'lastUpdated': record.last_updated.isoformat() if record and record.last_updated else None,
        }

    def has_analytics_consent(self, ip_address: str) -> bool:
        record = CookieConsentTracking.query.filter_by(ip_address=ip_address).first()
        return bool(record and (record.consent_data or {}).get('analytics'))

    # Ingestion

    def ingest_event(self, payload: Dict[str, Any], ip_address: str) -> VisitorAnalytics:
        """
        Store one page-view event

        Args:
            payload: Event fields sent by the page
            ip_address: Resolved client IP; stored only as a SHA-256 hash

        Raises:
            ConsentRequiredError: the client has not granted analytics consent
        """
        if not self.has_analytics_consent(ip_address):
            logger.info("Analytics event rejected: no consent on record")
            raise ConsentRequiredError('Analytics consent required')

        fields = {key: payload.get(key) for key in EVENT_FIELDS}
        for key in ('page_load_time', 'engagement_time'):
            fields[key] = _to_float(fields[key])
        for key, value in fields.items():
            if isinstance(value, str):
                fields[key] = value[:500]

        event = VisitorAnalytics(
            referrer=normalize_referrer(payload.get('referrer')),
            country=normalize_country(payload.get('country')),
            ip_hash=hash_ip(ip_address),
            **fields
        )
        db.session.add(event)
        db.session.commit()

        logger.debug(f"Analytics event stored for {event.path}")
        return event

    # Reporting

    def _load_events(self, since: datetime) -> pd.DataFrame:
        rows = VisitorAnalytics.query.filter(VisitorAnalytics.created_at >= since).all()
        return pd.DataFrame([{
            'path': row.path,
            'referrer': row.referrer,
            'device_type': row.device_type,
            'country': row.country,
            'session_id': row.session_id,
            'ip_hash': row.ip_hash,
            'page_load_time': row.page_load_time,
            'engagement_time': row.engagement_time,
            'created_at': row.created_at,
        } for row in rows])

    def _trend(self, current: float, previous: float) -> Metric:
        if previous:
            change = (current - previous) / previous * 100
        else:
            change = 100.0 if current else 0.0

        if abs(change) < self.trend_threshold:
            trend = 'stable'
        else:
            trend = 'up' if change > 0 else 'down'
        return Metric(name='Page Views', value=current, unit='views', trend=trend,
                      change_percent=round(change, 1))

    def get_summary(self, days: int = 30, limit: int = 50, article_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Aggregate visitor analytics for the dashboard

        Args:
            days: Reporting period
            limit: Max rows in the per-article table
            article_id: Restrict the per-article table to one article

        Returns:
            Dict with metrics, per-article analytics, daily view trend and top pages
        """
        now = datetime.utcnow()
        since = now - timedelta(days=days)
        df = self._load_events(since - timedelta(days=days))

        if df.empty:
            current = df
            previous_views = 0
        else:
            df['created_at'] = pd.to_datetime(df['created_at'])
            current = df[df['created_at'] >= since]
            previous_views = len(df[df['created_at'] < since])

        metrics = {'page_views': self._trend(len(current), previous_views)}

        if not current.empty:
            metrics['unique_visitors'] = Metric(name='Unique Visitors',
                                                value=int(current['ip_hash'].nunique()), unit='visitors')
            metrics['sessions'] = Metric(name='Sessions',
                                         value=int(current['session_id'].dropna().nunique()), unit='sessions')
            load_times = current['page_load_time'].dropna()
            metrics['avg_load_time'] = Metric(name='Average Load Time',
                                              value=round(float(load_times.mean()), 2) if not load_times.empty else 0.0,
                                              unit='ms')
            engagement = current['engagement_time'].dropna()
            metrics['avg_engagement'] = Metric(name='Average Engagement',
                                               value=round(float(engagement.mean()), 2) if not engagement.empty else 0.0,
                                               unit='s')

        return {
            'metrics': {key: asdict(metric) for key, metric in metrics.items()},
            'analytics': self._article_breakdown(current, limit, article_id),
            'view_trends': self._daily_views(current),
            'top_pages': self._top_values(current, 'path'),
            'top_referrers': self._top_values(current, 'referrer'),
            'devices': self._top_values(current, 'device_type'),
            'countries': self._top_values(current, 'country'),
            'period_days': days,
        }

    @staticmethod
    def _top_values(df: pd.DataFrame, column: str, limit: int = 10) -> List[Dict[str, Any]]:
        if df.empty:
            return []
        counts = df[column].dropna().value_counts().head(limit)
        return [{'value': value, 'count': int(count)} for value, count in counts.items()]

    @staticmethod
    def _daily_views(df: pd.DataFrame) -> List[Dict[str, Any]]:
        if df.empty:
            return []
        daily = df.groupby(df['created_at'].dt.strftime('%Y-%m-%d')).size()
        return [{'date': date, 'views': int(count)} for date, count in daily.items()]

    @staticmethod
    def _article_breakdown(df: pd.DataFrame, limit: int, article_id: Optional[str]) -> List[Dict[str, Any]]:
        """Views per published article, matched on /articles/<slug or id>"""
        query = Article.query.filter_by(status='published')
        if article_id:
            query = query.filter_by(id=article_id)
        articles = query.all()

        if df.empty:
            path_counts = {}
        else:
            path_counts = df['path'].dropna().value_counts().to_dict()

        rows = []
        for article in articles:
            keys = {f"/articles/{article.slug}", f"/articles/{article.id}"}
            views = sum(int(path_counts.get(key, 0)) for key in keys)
            rows.append({
                'id': article.id,
                'title': article.title,
                'slug': article.slug,
                'category': article.category,
                'total_views': views,
            })

        rows.sort(key=lambda row: row['total_views'], reverse=True)
        return rows[:limit]


# Global analytics instance
analytics_service = VisitorAnalyticsService()
