# api/functions.py
"""
Function endpoints mounted under /functions/<name>

Every function answers CORS preflight, a ?health=1 check and returns
{"error": message} JSON with the matching status on failure. Stack traces
are logged, never returned.
"""

from flask import Blueprint, Response, current_app, g, jsonify, make_response, request, session
from functools import wraps
import logging
from datetime import datetime

from api.auth import limiter
from core.csp import parse_violation_report
from core.database_models import db
from core.errors import AppError, MethodNotAllowedError, ValidationError, classify_error
from core.html_sanitizer import optional_object, optional_string, validate_input
from core.security_manager import get_security_manager
from middleware.security import client_ip, json_body, require_bearer_admin
from services import auth as auth_service
from services import feeds
from services import integrations
from services.analytics import analytics_service
from services.health import system_health
from services.token_migration import migrate_plaintext_tokens
from tasks.social_publisher import migrate_tokens, publish_article_to_linkedin, publish_image_to_instagram

functions_bp = Blueprint('functions', __name__, url_prefix='/functions')
logger = logging.getLogger(__name__)

FUNCTION_VERSION = '1.0.0'

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Headers': 'authorization, x-client-info, apikey, content-type, x-forwarded-for',
    'Access-Control-Allow-Methods': 'GET, POST, PUT, DELETE, OPTIONS',
}

ROUTE_METHODS = ['GET', 'POST', 'PUT', 'DELETE', 'OPTIONS']


def _function_limit() -> str:
    return current_app.config.get('FUNCTION_RATE_LIMIT', '60 per minute')


def _with_cors(response: Response) -> Response:
    for header, value in CORS_HEADERS.items():
        response.headers[header] = value
    return response


def health_payload(name: str) -> dict:
    return {
        'status': 'ok',
        'function': name,
        'timestamp': datetime.utcnow().isoformat(),
        'service': f"{name} API",
        'version': FUNCTION_VERSION,
    }


def _error_response(error: AppError) -> Response:
    response = jsonify(error.to_dict())
    response.status_code = error.status_code
    return response


def edge_function(name: str, methods=('POST',)):
    """Register a function handler with the shared preflight/health/error envelope"""
    allowed = tuple(methods)

    def decorator(f):
        @wraps(f)
        def handler():
            if request.method == 'OPTIONS':
                return _with_cors(make_response('', 204))

            if request.args.get('health') == '1':
                logger.debug(f"Health check requested for {name}")
                return _with_cors(jsonify(health_payload(name)))

            try:
                if request.method not in allowed:
                    raise MethodNotAllowedError()
                response = make_response(f())
            except AppError as e:
                logger.warning(f"[{name}] {e.kind.value}: {e.message}")
                response = _error_response(e)
            except Exception as e:
                db.session.rollback()
                error = classify_error(e)
                logger.error(f"[{name}] Error: {str(e)}", exc_info=True)
                response = _error_response(error)

            return _with_cors(response)

        view = limiter.limit(_function_limit)(handler)
        functions_bp.add_url_rule(f"/{name}", endpoint=name.replace('-', '_'),
                                  view_func=view, methods=ROUTE_METHODS)
        return f
    return decorator


# Feeds

@edge_function('generate-sitemap', methods=('GET',))
def generate_sitemap():
    xml = feeds.render_sitemap(current_app.config)
    return Response(xml, mimetype='application/xml', headers={'Cache-Control': 'public, max-age=3600'})


@edge_function('generate-rss', methods=('GET',))
def generate_rss():
    xml = feeds.render_rss(current_app.config)
    return Response(xml, mimetype='application/rss+xml', headers={'Cache-Control': 'public, max-age=1800'})


# Analytics and consent

@edge_function('ingest-analytics', methods=('POST',))
def ingest_analytics():
    analytics_service.ingest_event(json_body(), client_ip())
    return jsonify({'success': True})


@edge_function('track-cookie-consent', methods=('GET', 'POST'))
def track_cookie_consent():
    ip_address = client_ip()
    if request.method == 'GET':
        return jsonify(analytics_service.get_consent(ip_address))

    body = json_body()
    if 'consent' not in body:
        raise ValidationError('consent is required')
    analytics_service.record_consent(ip_address, body['consent'])
    return jsonify({'success': True, 'message': 'Consent tracked'})


@edge_function('article-analytics', methods=('GET',))
@require_bearer_admin
def article_analytics():
    summary = analytics_service.get_summary(
        days=request.args.get('days', 30, type=int),
        limit=request.args.get('limit', 50, type=int),
        article_id=request.args.get('article_id'),
    )
    summary['total_articles'] = len(summary['analytics'])
    return jsonify({'success': True, 'data': summary})


# Operations

@edge_function('health-check', methods=('GET', 'POST'))
def health_check():
    report = system_health()
    return jsonify(report), 200 if report['status'] == 'healthy' else 500


@edge_function('search-users', methods=('POST',))
@require_bearer_admin
def search_users():
    term = json_body().get('searchTerm')
    return jsonify({'users': auth_service.search_users(term, limit=10)})


def _queued(result) -> Response:
    logger.info(f"Queued task {result.id}")
    return make_response(jsonify({'success': True, 'queued': True, 'taskId': result.id}), 202)


@edge_function('migrate-tokens-secure', methods=('POST',))
@require_bearer_admin
def migrate_tokens_secure():
    if json_body().get('queue') is True:
        return _queued(migrate_tokens.delay(user_id=g.user.id))
    migrated = migrate_plaintext_tokens(user_id=g.user.id)
    return jsonify({
        'success': True,
        'migratedTokens': migrated,
        'message': 'Token migration completed successfully'
    })


@edge_function('csp-report', methods=('POST',))
def csp_report():
    """Browser CSP violation sink; logging problems never fail the request"""
    payload = request.get_json(silent=True, force=True)
    report = parse_violation_report(payload)
    get_security_manager().log_security_event('csp_violation', report, severity='medium',
                                              ip_address=client_ip())
    return Response(status=204)


# Social publishing

@edge_function('publish-to-linkedin', methods=('POST',))
@require_bearer_admin
def publish_to_linkedin():
    """Share now, or with {"queue": true} hand a stored article to the social worker"""
    body = json_body()
    base_url = request.headers.get('Origin')
    if body.get('queue') is True:
        article_id = optional_string(body, 'articleId')
        if not article_id:
            raise ValidationError('articleId is required to queue a post')
        return _queued(publish_article_to_linkedin.delay(article_id, user_id=g.user.id,
                                                         message=optional_string(body, 'message'),
                                                         base_url=base_url))

    result = integrations.publish_to_linkedin(body, user_id=g.user.id, base_url=base_url)
    return jsonify(result)


@edge_function('publish-to-instagram', methods=('POST',))
@require_bearer_admin
def publish_to_instagram():
    body = json_body()
    if body.get('queue') is True:
        image_url = optional_string(body, 'image_url')
        if not image_url:
            raise ValidationError('Instagram posts require an image')
        return _queued(publish_image_to_instagram.delay(image_url, caption=optional_string(body, 'caption'),
                                                        user_id=g.user.id))
    return jsonify(integrations.publish_to_instagram(body, user_id=g.user.id))


@edge_function('zapier-linkedin-webhook', methods=('POST',))
def zapier_linkedin_webhook():
    post = integrations.ingest_linkedin_webhook(json_body())
    return jsonify({'success': True, 'message': 'Data stored successfully', 'id': post.external_id})


# Economic data

@edge_function('fetch-fred-data', methods=('GET', 'POST'))
def fetch_fred_data():
    if request.method == 'GET':
        series_id = request.args.get('series_id')
        if not series_id:
            raise ValidationError('series_id is required')
        limit = request.args.get('limit', 100, type=int)
        return jsonify({'series_id': series_id,
                        'observations': integrations.fetch_fred_series(series_id, limit)})

    body = json_body()
    if body.get('operation', 'fetch_indicators') != 'fetch_indicators':
        raise ValidationError(f"Unknown operation: {body.get('operation')}")
    return jsonify({'success': True, 'data': integrations.fetch_indicators(body.get('indicators'))})


# Scheduling

@edge_function('calendly-event', methods=('POST',))
def calendly_event():
    """postMessage events forwarded from the Calendly widget"""
    body = json_body()
    origin = optional_string(body, 'origin')
    result = validate_input({'origin': origin}, required_fields=('origin',))
    if not result.is_valid:
        raise ValidationError('; '.join(result.errors))

    bridge = integrations.CalendlyEventBridge(session, current_app.config['CALENDLY_ALLOWED_ORIGINS'])
    outcome = bridge.handle_message(origin, optional_object(body, 'data'))
    if not outcome['accepted']:
        return jsonify({'error': 'Untrusted or unknown Calendly message', **outcome}), 400
    return jsonify(outcome)
