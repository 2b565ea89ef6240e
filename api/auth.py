# api/auth.py
"""
Authentication API with TOTP multi-factor support
"""

from flask import Blueprint, current_app, request, jsonify, session
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
import logging
from datetime import datetime

from core.csrf import CSRFProtection
from core.errors import AuthenticationError, ValidationError
from core.html_sanitizer import optional_string
from core.security_manager import get_security_manager
from middleware.security import current_user, json_body, rate_limit, require_auth, require_csrf
from services import auth as auth_service

auth_bp = Blueprint('auth', __name__)
logger = logging.getLogger(__name__)

# Authoritative server-side limiter, bound to the app in create_app()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["1000 per hour"]
)


def _user_payload(user):
    return {
        'id': user.id,
        'email': user.email,
        'display_name': user.display_name,
        'role': auth_service.primary_role(user.id),
    }


def _start_session(user) -> str:
    """Fresh session for the user; returns its CSRF token"""
    session.clear()
    session.update({
        'user_id': user.id,
        'email': user.email,
        'role': auth_service.primary_role(user.id),
        'login_time': datetime.utcnow().isoformat(),
        'last_activity': datetime.utcnow().isoformat()
    })
    return CSRFProtection(session).initialize()


@auth_bp.route('/api/auth/login', methods=['POST'])
@limiter.limit("10 per minute")
@rate_limit('login')
def login():
    """
    Password sign-in; users with a verified factor must also send totp_code
    """
    security_manager = get_security_manager()
    data = json_body()
    email = (optional_string(data, 'email') or '').strip()
    password = optional_string(data, 'password') or ''
    totp_code = (optional_string(data, 'totp_code') or '').strip()

    if not email or not password:
        security_manager.log_security_event('login_failed', {'reason': 'missing_credentials'}, severity='low')
        raise ValidationError('Email and password required')

    user = auth_service.authenticate(email, password)
    if user is None:
        security_manager.log_security_event('login_failed', {
            'reason': 'invalid_credentials',
            'email': email
        })
        raise AuthenticationError('Invalid credentials')

    if auth_service.has_mfa(user.id):
        if not totp_code:
            return jsonify({
                'requires_mfa': True,
                'factors': [f for f in auth_service.list_factors(user) if f['status'] == 'verified'],
                'message': 'Two-factor authentication required'
            })

        if not auth_service.verify_any_factor(user, totp_code):
            security_manager.log_security_event('mfa_verify_failed', {'email': email},
                                                severity='high', user_id=user.id)
            raise AuthenticationError('Invalid verification code')

    csrf_token = _start_session(user)
    auth_service.record_sign_in(user)

    security_manager.log_security_event('login_success', {'email': user.email}, severity='low', user_id=user.id)

    return jsonify({
        'success': True,
        'user': _user_payload(user),
        'csrf_token': csrf_token,
        'access_token': auth_service.issue_access_token(user),
        'session_expires': (datetime.utcnow() + current_app.config['SESSION_TIMEOUT']).isoformat()
    })


@auth_bp.route('/api/auth/logout', methods=['POST'])
def logout():
    """Sign out and forget the session (CSRF token included)"""
    user_id = session.get('user_id')
    if user_id:
        get_security_manager().log_security_event('logout', {}, severity='low', user_id=user_id)
    session.clear()
    return jsonify({'success': True, 'message': 'Logged out successfully'})


@auth_bp.route('/api/auth/session', methods=['GET'])
def get_session():
    user = current_user()
    if user is None:
        return jsonify({'authenticated': False, 'user': None})
    return jsonify({
        'authenticated': True,
        'user': _user_payload(user),
        'last_activity': session.get('last_activity'),
    })


@auth_bp.route('/api/auth/csrf-token', methods=['GET'])
def csrf_token():
    return jsonify({'csrf_token': CSRFProtection(session).initialize()})


@auth_bp.route('/api/auth/token', methods=['POST'])
@require_auth
def access_token():
    """Bearer token for calling the functions as the signed-in user"""
    user = current_user()
    return jsonify({
        'access_token': auth_service.issue_access_token(user),
        'token_type': 'bearer',
        'expires_in': current_app.config['ACCESS_TOKEN_MAX_AGE']
    })


@auth_bp.route('/api/auth/mfa/factors', methods=['GET'])
@require_auth
def list_factors():
    return jsonify({'factors': auth_service.list_factors(current_user())})


@auth_bp.route('/api/auth/mfa/enroll', methods=['POST'])
@require_auth
@require_csrf
def enroll_factor():
    """Start TOTP enrollment; returns secret, URI and QR code"""
    data = json_body()
    enrollment = auth_service.enroll_factor(current_user(), optional_string(data, 'friendly_name'))
    return jsonify(enrollment), 201


@auth_bp.route('/api/auth/mfa/challenge', methods=['POST'])
@require_auth
@require_csrf
def challenge_factor():
    factor_id = optional_string(json_body(), 'factor_id')
    if not factor_id:
        raise ValidationError('factor_id is required')
    return jsonify(auth_service.challenge_factor(current_user(), factor_id))


@auth_bp.route('/api/auth/mfa/verify', methods=['POST'])
@require_auth
@require_csrf
@rate_limit('mfa_verify')
def verify_factor():
    """Verify a TOTP code; the first success activates the factor"""
    data = json_body()
    factor_id = optional_string(data, 'factor_id')
    code = (optional_string(data, 'code') or '').strip()

    if not factor_id or not code:
        raise ValidationError('factor_id and code are required')

    factor = auth_service.verify_factor(current_user(), factor_id, code)
    return jsonify({
        'success': True,
        'factor_id': factor.id,
        'status': factor.status,
        'message': 'Verification successful'
    })


@auth_bp.route('/api/auth/mfa/factors/<factor_id>', methods=['DELETE'])
@require_auth
@require_csrf
def unenroll_factor(factor_id):
    auth_service.unenroll_factor(current_user(), factor_id)
    return jsonify({'success': True, 'message': 'Factor removed'})
