# services/integrations.py
"""
Third-party integrations: LinkedIn and Instagram publishing, Zapier
LinkedIn webhook ingestion, FRED economic data and the Calendly
scheduling bridge.

Outbound calls go through httpx. Every call is recorded in the
integration_logs table; failures surface as UpstreamError.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, MutableMapping, Optional

import httpx
from flask import current_app

from core.database_models import db, IntegrationLog, LinkedInPost, SocialMediaPost, SocialToken
from core.errors import UpstreamError, ValidationError
from core.html_sanitizer import optional_object, optional_string
from core.security_manager import get_security_manager

logger = logging.getLogger(__name__)

# Economic indicators with their FRED series IDs
ECONOMIC_INDICATORS = {
    'GDP': 'GDP',
    'CPI': 'CPIAUCSL',
    'GSCPI': 'GSCPI',
    'yield_curve': 'T10Y2Y',
    'unemployment': 'UNRATE',
    'industrial_production': 'INDPRO',
    'consumer_sentiment': 'UMCSENT',
}

CALENDLY_EVENTS = (
    'calendly.profile_page_viewed',
    'calendly.event_type_viewed',
    'calendly.date_and_time_selected',
    'calendly.event_scheduled',
)
CALENDLY_CONVERSION_EVENT = 'calendly.event_scheduled'
CALENDLY_SESSION_KEY = 'calendly_conversion_tracked'


def http_client() -> httpx.Client:
    """httpx client configured from the application"""
    config = current_app.config
    return httpx.Client(timeout=config.get('HTTP_TIMEOUT', 10.0), transport=config.get('HTTP_TRANSPORT'))


def log_integration_event(integration_type: str, operation: str, status: str,
                          response_data: Optional[Dict[str, Any]] = None) -> None:
    """Record an integration call; a failure here never fails the caller"""
    try:
        db.session.add(IntegrationLog(
            integration_type=integration_type,
            operation=operation,
            status=status,
            response_data=response_data or {},
        ))
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Failed to log integration event {integration_type}/{operation}: {str(e)}")


def resolve_access_token(platform: str, user_id: Optional[str] = None) -> str:
    """
    Stored token for the platform (decrypted when needed), else the configured one

    Raises:
        ValidationError: no credentials configured (flag setup_required)
    """
    query = SocialToken.query.filter_by(platform=platform)
    if user_id:
        query = query.filter_by(user_id=user_id)
    stored = query.order_by(SocialToken.updated_at.desc()).first()

    if stored is not None:
        if stored.is_encrypted:
            return get_security_manager().decrypt_token(stored.access_token)
        return stored.access_token

    token = current_app.config.get(f"{platform.upper()}_ACCESS_TOKEN")
    if not token:
        raise ValidationError(
            f"{platform.capitalize()} credentials not configured. Please set up the integration first.",
            flags={'setup_required': True}
        )
    return token


def _raise_upstream(platform: str, operation: str, response: httpx.Response) -> None:
    log_integration_event(platform, operation, 'error', {
        'status_code': response.status_code,
        'body': response.text[:500],
    })
    logger.error(f"{platform} {operation} failed: {response.status_code}")
    raise UpstreamError(f"Failed to {operation.replace('_', ' ')}: {response.status_code}")


def _record_post(platform: str, content: str, external_id: Optional[str], article_id: Optional[str] = None,
                 media_url: Optional[str] = None) -> SocialMediaPost:
    post = SocialMediaPost(
        platform=platform,
        article_id=article_id,
        content=content,
        media_url=media_url,
        external_id=external_id,
        status='published',
        published_at=datetime.utcnow(),
    )
    db.session.add(post)
    db.session.commit()
    return post


def _mark_failed(platform: str, content: str, error: str, article_id: Optional[str] = None) -> None:
    db.session.add(SocialMediaPost(
        platform=platform,
        article_id=article_id,
        content=content,
        status='failed',
        error_message=error,
    ))
    db.session.commit()


# LinkedIn

def build_linkedin_commentary(title: Optional[str], content: Optional[str], message: Optional[str],
                              article_id: Optional[str], base_url: str) -> str:
    text = message or content or ''
    if title and not message:
        text = f"{title}\n\n{content}"
    if article_id:
        text += f"\n\nRead more: {base_url}/articles/{article_id}"
    return text


def publish_to_linkedin(payload: Dict[str, Any], user_id: Optional[str] = None,
                        base_url: Optional[str] = None) -> Dict[str, Any]:
    """
    Publish a text post through the LinkedIn posts API

    Args:
        payload: {'articleId', 'title', 'content', 'message'}
        user_id: Admin publishing the post (token lookup)
        base_url: Origin used in the "Read more" link
    """
    config = current_app.config
    title = optional_string(payload, 'title')
    content = optional_string(payload, 'content')
    message = optional_string(payload, 'message')
    article_id = optional_string(payload, 'articleId')
    if not content and not message:
        raise ValidationError('Content or message is required')

    access_token = resolve_access_token('linkedin', user_id)
    commentary = build_linkedin_commentary(
        title, content, message, article_id, base_url or config['SITE_BASE_URL']
    )
    share_data = {
        'author': config['LINKEDIN_AUTHOR_URN'],
        'commentary': commentary,
        'visibility': 'PUBLIC',
        'distribution': {
            'feedDistribution': 'MAIN_FEED',
            'targetEntities': [],
            'thirdPartyDistributionChannels': [],
        },
        'lifecycleState': 'PUBLISHED',
    }

    with http_client() as client:
        response = client.post(f"{config['LINKEDIN_API_URL']}/posts", json=share_data, headers={
            'Authorization': f"Bearer {access_token}",
            'LinkedIn-Version': config['LINKEDIN_API_VERSION'],
            'X-Restli-Protocol-Version': '2.0.0',
        })

    if response.status_code >= 400:
        _mark_failed('linkedin', commentary, f"HTTP {response.status_code}", article_id)
        _raise_upstream('linkedin', 'publish_post', response)

    # The post URN comes back in a header; some API versions also echo it in the body
    share_id = response.headers.get('x-restli-id')
    if not share_id and response.content:
        share_id = response.json().get('id')

    _record_post('linkedin', commentary, share_id, article_id)
    log_integration_event('linkedin', 'publish_post', 'success', {'post_id': share_id})
    logger.info(f"Published to LinkedIn: {share_id}")

    return {
        'success': True,
        'message': 'Successfully published to LinkedIn',
        'post_id': share_id,
        'post_url': f"https://www.linkedin.com/feed/update/{share_id}",
    }


# Instagram

def publish_to_instagram(payload: Dict[str, Any], user_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Two-step Instagram Graph publish: create a media container, then publish it

    Args:
        payload: {'caption', 'image_url', 'article_url'}
    """
    config = current_app.config
    caption = optional_string(payload, 'caption') or ''
    image_url = optional_string(payload, 'image_url')
    article_url = optional_string(payload, 'article_url')

    if not caption and not image_url:
        raise ValidationError('Either caption or image is required for Instagram posts')
    if not image_url:
        raise ValidationError('Instagram posts require an image')

    if article_url:
        caption += f"\n\nRead more: {article_url}"

    access_token = resolve_access_token('instagram', user_id)
    account_id = config.get('INSTAGRAM_ACCOUNT_ID')
    api_url = config['INSTAGRAM_API_URL']

    with http_client() as client:
        if not account_id:
            me = client.get(f"{api_url}/me", params={'access_token': access_token})
            if me.status_code >= 400:
                _raise_upstream('instagram', 'get_account', me)
            account_id = me.json()['id']

        container = client.post(f"{api_url}/{account_id}/media", data={
            'image_url': image_url,
            'caption': caption,
            'access_token': access_token,
        })
        if container.status_code >= 400:
            _mark_failed('instagram', caption, f"HTTP {container.status_code}")
            _raise_upstream('instagram', 'create_media_container', container)

        published = client.post(f"{api_url}/{account_id}/media_publish", data={
            'creation_id': container.json()['id'],
            'access_token': access_token,
        })
        if published.status_code >= 400:
            _mark_failed('instagram', caption, f"HTTP {published.status_code}")
            _raise_upstream('instagram', 'publish_media', published)

    media_id = published.json().get('id')
    _record_post('instagram', caption, media_id, media_url=image_url)
    log_integration_event('instagram', 'publish_media', 'success', {'media_id': media_id})
    logger.info(f"Published to Instagram: {media_id}")

    return {
        'success': True,
        'message': 'Successfully published to Instagram',
        'media_id': media_id,
        'post_url': f"https://www.instagram.com/p/{media_id}",
    }


# Zapier LinkedIn webhook

def _parse_timestamp(value: Optional[str]) -> datetime:
    if not value:
        return datetime.utcnow()
    if not isinstance(value, str):
        raise ValidationError(f'Invalid timestamp: {value}')
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except (TypeError, ValueError):
        raise ValidationError(f'Invalid timestamp: {value}')
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def ingest_linkedin_webhook(body: Dict[str, Any]) -> LinkedInPost:
    """
    Store a LinkedIn post or article pushed by Zapier

    Upserts on the LinkedIn id so a replayed webhook updates the row.
    """
    kind = body.get('type')
    data = optional_object(body, 'data')

    if kind not in ('linkedin_post', 'linkedin_article'):
        raise ValidationError(f'Unsupported webhook type: {kind}')

    external_id = data.get('id') or data.get('linkedin_id') or data.get('urn')
    if not external_id:
        raise ValidationError('LinkedIn id is required')

    post = LinkedInPost.query.filter_by(external_id=str(external_id)).first()
    if post is None:
        post = LinkedInPost(external_id=str(external_id))
        db.session.add(post)

    post.post_type = 'article' if kind == 'linkedin_article' else 'post'
    post.title = data.get('title') or ''
    post.content = data.get('content') or data.get('text') or data.get('summary') or ''
    post.url = (data.get('post_url') or data.get('article_url') or data.get('permalink_url') or '')
    post.image_url = data.get('thumbnail') or data.get('image_url')
    post.published_at = _parse_timestamp(data.get('published_at') or data.get('created_time'))
    post.raw_payload = data
    db.session.commit()

    logger.info(f"LinkedIn {post.post_type} stored: {post.external_id}")
    return post


# FRED

def fetch_fred_series(series_id: str, limit: int = 100) -> List[Dict[str, Any]]:
    """
    Observations for one FRED series, oldest first, missing values dropped
    """
    config = current_app.config
    if not config.get('FRED_API_KEY'):
        raise ValidationError('FRED_API_KEY not configured')

    started = time.time()
    with http_client() as client:
        response = client.get(f"{config['FRED_API_URL']}/series/observations", params={
            'series_id': series_id,
            'api_key': config['FRED_API_KEY'],
            'file_type': 'json',
            'limit': limit,
            'sort_order': 'desc',
        })

    if response.status_code >= 400:
        _raise_upstream('FRED', 'fetch_series', response)

    observations = response.json().get('observations', [])
    points = [
        {'date': obs['date'], 'value': float(obs['value'])}
        for obs in observations
        if obs.get('value') not in (None, '', '.')
    ]
    points.sort(key=lambda point: point['date'])

    log_integration_event('FRED', 'fetch_series', 'success', {
        'series_id': series_id,
        'points': len(points),
        'execution_time_ms': int((time.time() - started) * 1000),
    })
    return points


def fetch_indicators(indicators: Optional[List[str]] = None, limit: int = 100) -> List[Dict[str, Any]]:
    """Fetch the named indicators (all known ones by default); unknown names are skipped"""
    results = []
    for name in indicators or list(ECONOMIC_INDICATORS):
        series_id = ECONOMIC_INDICATORS.get(name)
        if not series_id:
            continue
        points = fetch_fred_series(series_id, limit)
        results.append({
            'indicator': name,
            'series_id': series_id,
            'latest': points[-1] if points else None,
            'data_points': points,
        })
    return results


# Calendly

class CalendlyEventBridge:
    """
    Validate Calendly widget postMessage events and count conversions

    Only messages from the Calendly origins are accepted, and a scheduled
    event counts as a conversion once per session.

    Args:
        store: Session-scoped mapping used for de-duplication
        allowed_origins: Exact origins accepted
    """

    def __init__(self, store: MutableMapping, allowed_origins=('https://calendly.com', 'https://www.calendly.com')):
        self.store = store
        self.allowed_origins = tuple(allowed_origins)

    def is_trusted_origin(self, origin: Optional[str]) -> bool:
        return bool(origin) and origin.rstrip('/') in self.allowed_origins

    def handle_message(self, origin: Optional[str], message: Dict[str, Any]) -> Dict[str, Any]:
        """
        Returns:
            {'accepted', 'event', 'conversion'}
        """
        if message is None:
            message = {}
        if not isinstance(message, dict):
            raise ValidationError('Calendly message data must be an object')
        event = optional_string(message, 'event')

        if not self.is_trusted_origin(origin):
            logger.warning(f"Calendly message rejected from origin {origin}")
            return {'accepted': False, 'event': event, 'conversion': False}

        if event not in CALENDLY_EVENTS:
            return {'accepted': False, 'event': event, 'conversion': False}

        conversion = False
        if event == CALENDLY_CONVERSION_EVENT and not self.store.get(CALENDLY_SESSION_KEY):
            payload = optional_object(message, 'payload')
            details = {
                'event_uri': optional_object(payload, 'event').get('uri'),
                'invitee_uri': optional_object(payload, 'invitee').get('uri'),
            }
            self.store[CALENDLY_SESSION_KEY] = True
            conversion = True
            log_integration_event('calendly', 'event_scheduled', 'success', details)
            logger.info("Calendly conversion recorded")

        return {'accepted': True, 'event': event, 'conversion': conversion}
