# middleware/security.py
"""
Security Middleware for Request Processing
"""

from flask import current_app, request, session, g
from functools import wraps
import logging
from datetime import datetime

from api import realtime
from core.csp import CSPNonceManager
from core.csrf import CSRFProtection, TOKEN_HEADER
from core.database_models import db, User
from core.errors import AuthenticationError, CSRFError, RateLimitedError, ValidationError
from core.security_manager import extract_client_ip, get_security_manager
from core.session_timeout import ActivityState, SessionTimeoutConfig, evaluate_activity
from services import auth as auth_service

logger = logging.getLogger(__name__)

SESSION_WARNING_HEADER = 'X-Session-Warning'


def client_ip() -> str:
    return extract_client_ip(request.headers, request.remote_addr)


def json_body() -> dict:
    """Decoded JSON object body; an absent or undecodable body is {}"""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('JSON object expected')
    return data


def prepare_csp_nonce():
    """Fresh nonce for every page load"""
    g.csp = CSPNonceManager(current_app.config.get('CSP_SOURCES'))
    g.csp_nonce = g.csp.refresh()


def _expire_session(user_id: str, reason: str) -> None:
    session.clear()
    g.session_expired = True
    get_security_manager().log_security_event('session_timeout', {'reason': reason},
                                              severity='low', user_id=user_id)
    logger.info(f"Session expired ({reason}): {user_id}")


def check_session_activity():
    """
    Sign out sessions idle past the window; flag the warning band

    Idle time counts from the later of this session's last request and the
    user's shared activity stamp, which socket activity also updates. A
    sign-out forced on the socket side revokes every session that signed in
    before it.
    """
    user_id = session.get('user_id')
    if not user_id:
        return

    config = current_app.config
    timeout_config = SessionTimeoutConfig(window=config['SESSION_TIMEOUT'],
                                          warning_lead=config['SESSION_WARNING_LEAD'])
    now = datetime.utcnow()
    user = db.session.get(User, user_id)

    login_time = session.get('login_time')
    if user is not None and user.sessions_revoked_at is not None and login_time \
            and datetime.fromisoformat(login_time) <= user.sessions_revoked_at:
        _expire_session(user_id, 'signed_out')
        return

    stamps = [datetime.fromisoformat(session['last_activity'])] if session.get('last_activity') else []
    if user is not None and user.last_activity_at is not None:
        stamps.append(user.last_activity_at)
    state = evaluate_activity(max(stamps) if stamps else None, now, timeout_config)

    if state is ActivityState.EXPIRED:
        _expire_session(user_id, 'inactivity')
        return

    if state is ActivityState.WARNING:
        g.session_warning = True

    session['last_activity'] = now.isoformat()
    realtime.reset_guards_for(user_id)


def security_headers(response):
    """Add security headers to all responses"""
    for header, value in current_app.config.get('SECURITY_HEADERS', {}).items():
        response.headers[header] = value

    csp = getattr(g, 'csp', None)
    if csp is not None:
        csp.apply_to_response(response)

    if getattr(g, 'session_warning', False):
        response.headers[SESSION_WARNING_HEADER] = '1'
    if getattr(g, 'session_expired', False):
        response.headers[SESSION_WARNING_HEADER] = 'expired'

    return response


def current_user():
    user_id = session.get('user_id')
    if not user_id:
        return None
    return db.session.get(User, user_id)


def require_auth(f):
    """Decorator to require an authenticated session"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user = current_user()
        if user is None:
            get_security_manager().log_security_event('unauthorized_access_attempt', {
                'endpoint': request.endpoint,
                'method': request.method
            }, severity='low')
            raise AuthenticationError()

        g.user = user
        return f(*args, **kwargs)
    return decorated_function


def require_admin(f):
    """Decorator to require an admin session; the role is re-checked in user_roles"""
    @require_auth
    @wraps(f)
    def decorated_function(*args, **kwargs):
        try:
            auth_service.require_admin_user(g.user)
        except Exception:
            get_security_manager().log_security_event('admin_access_denied', {
                'endpoint': request.endpoint,
            }, severity='high', user_id=g.user.id)
            raise
        return f(*args, **kwargs)
    return decorated_function


def require_bearer_admin(f):
    """Decorator for functions: bearer token of a user holding the admin role"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user = auth_service.verify_bearer_header(request.headers.get('Authorization'))
        auth_service.require_admin_user(user)
        g.user = user
        return f(*args, **kwargs)
    return decorated_function


def require_csrf(f):
    """Decorator to require the session CSRF token on state-changing requests"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if request.method in ['POST', 'PUT', 'DELETE', 'PATCH']:
            csrf_token = request.headers.get(TOKEN_HEADER)

            if not CSRFProtection(session).validate_token(csrf_token):
                get_security_manager().log_security_event('csrf_violation', {
                    'endpoint': request.endpoint,
                    'provided_token': csrf_token[:10] + '...' if csrf_token else None
                }, severity='high', user_id=session.get('user_id'))
                raise CSRFError()

        return f(*args, **kwargs)
    return decorated_function


def rate_limit(action: str):
    """Decorator for advisory per-action limits keyed by client IP"""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            limiter = current_app.action_limiter
            key = f"{action}:{client_ip()}"

            if not limiter.check(key):
                retry_after = limiter.get_remaining_time(key) / 1000
                get_security_manager().log_security_event('rate_limit_exceeded', {
                    'endpoint': request.endpoint,
                    'action': action,
                })
                raise RateLimitedError(f'Too many {action} attempts', retry_after=retry_after)

            response = f(*args, **kwargs)
            if hasattr(response, 'headers'):
                response.headers['X-RateLimit-Remaining'] = str(limiter.get_remaining_attempts(key))
            return response
        return decorated_function
    return decorator
