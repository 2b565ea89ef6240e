# services/auth.py
"""
Authentication service: credentials, bearer tokens, roles and TOTP factors

Credentials are always verified against stored PBKDF2 hashes; there is no
built-in admin password.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from email_validator import validate_email, EmailNotValidError
from flask import current_app
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from core.database_models import db, MFAFactor, User, UserRole
from core.errors import (
    AuthenticationError, ConflictError, NotFoundError, PermissionDeniedError, ValidationError
)
from core.security_manager import get_security_manager

logger = logging.getLogger(__name__)

TOKEN_SALT = 'corridor-web-access-token'
ACTIVITY_STAMP_INTERVAL = timedelta(seconds=60)


def _serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(current_app.config['SECRET_KEY'], salt=TOKEN_SALT)


def create_user(email: str, password: str, roles: Optional[List[str]] = None,
                display_name: Optional[str] = None) -> User:
    """
    Create an account with a hashed password

    Raises:
        ValidationError: bad email or short password
        ConflictError: email already registered
    """
    try:
        email = validate_email(email, check_deliverability=False).normalized
    except EmailNotValidError as e:
        raise ValidationError(f'Invalid email address: {e}')

    if not password or len(password) < 8:
        raise ValidationError('Password must be at least 8 characters')

    if User.query.filter_by(email=email).first():
        raise ConflictError('Email already registered')

    password_hash, salt = get_security_manager().hash_password(password)
    user = User(
        email=email,
        password_hash=password_hash,
        password_salt=salt,
        display_name=display_name or email.split('@')[0]
    )
    db.session.add(user)
    db.session.flush()

    for role in roles or ['user']:
        db.session.add(UserRole(user_id=user.id, role=role))

    db.session.commit()
    logger.info(f"User created: {user.id}")
    return user


def authenticate(email: str, password: str) -> Optional[User]:
    """Return the user for valid credentials, otherwise None"""
    if not email or not password:
        return None

    user = User.query.filter(db.func.lower(User.email) == email.strip().lower()).first()
    if user is None:
        return None

    if not get_security_manager().verify_password(password, user.password_hash, user.password_salt):
        return None

    return user


def record_sign_in(user: User) -> None:
    user.last_sign_in_at = datetime.utcnow()
    db.session.commit()


def get_user_roles(user_id: str) -> List[str]:
    return [row.role for row in UserRole.query.filter_by(user_id=user_id).all()]


def primary_role(user_id: str) -> str:
    roles = get_user_roles(user_id)
    if 'admin' in roles:
        return 'admin'
    return roles[0] if roles else 'user'


def is_admin(user_id: str) -> bool:
    return UserRole.query.filter_by(user_id=user_id, role='admin').first() is not None


def issue_access_token(user: User) -> str:
    """Signed, time-limited bearer token for function invocation"""
    return _serializer().dumps({'sub': user.id, 'email': user.email})


def verify_access_token(token: str) -> User:
    """
    Resolve a bearer token to its user

    Raises:
        AuthenticationError: missing, expired or tampered token
    """
    if not token:
        raise AuthenticationError('Missing authorization header')

    max_age = current_app.config.get('ACCESS_TOKEN_MAX_AGE', 3600)
    try:
        payload = _serializer().loads(token, max_age=max_age)
    except SignatureExpired:
        raise AuthenticationError('Token expired')
    except BadSignature:
        raise AuthenticationError('Invalid authorization')

    user = db.session.get(User, payload.get('sub'))
    if user is None:
        raise AuthenticationError('Invalid authorization')
    return user


def verify_bearer_header(header_value: Optional[str]) -> User:
    if not header_value:
        raise AuthenticationError('Missing authorization header')
    token = header_value.replace('Bearer ', '', 1).strip()
    return verify_access_token(token)


def require_admin_user(user: User) -> User:
    if not is_admin(user.id):
        raise PermissionDeniedError('Admin access required')
    return user


def search_users(term: str, limit: int = 10) -> List[Dict[str, Any]]:
    """Email substring search for the admin role manager"""
    needle = term.strip() if isinstance(term, str) else ''
    if not needle:
        raise ValidationError('Invalid search term')

    pattern = needle.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')
    matches = (User.query
               .filter(User.email.ilike(f'%{pattern}%', escape='\\'))
               .order_by(User.email)
               .limit(limit)
               .all())

    return [{
        'user_id': user.id,
        'email': user.email,
        'display_name': user.email.split('@')[0],
    } for user in matches]


def record_activity(user_id: str, now: Optional[datetime] = None) -> None:
    """
    Stamp the user's last activity, shared by HTTP and socket sessions

    Writes at most once per ACTIVITY_STAMP_INTERVAL.
    """
    user = db.session.get(User, user_id)
    if user is None:
        return
    now = now or datetime.utcnow()
    if user.last_activity_at is not None and now - user.last_activity_at < ACTIVITY_STAMP_INTERVAL:
        return
    user.last_activity_at = now
    db.session.commit()


def revoke_sessions(user_id: str, now: Optional[datetime] = None) -> None:
    """Sessions signed in before this moment are treated as signed out"""
    user = db.session.get(User, user_id)
    if user is None:
        return
    user.sessions_revoked_at = now or datetime.utcnow()
    db.session.commit()
    logger.info(f"Sessions revoked for user: {user_id}")


# Multi-factor (TOTP)

def verified_factors(user_id: str) -> List[MFAFactor]:
    return MFAFactor.query.filter_by(user_id=user_id, status='verified').all()


def has_mfa(user_id: str) -> bool:
    return bool(verified_factors(user_id))


def enroll_factor(user: User, friendly_name: Optional[str] = None) -> Dict[str, Any]:
    """
    Start TOTP enrollment; the factor stays unverified until verify_factor()

    Returns:
        {'id', 'type', 'totp': {'secret', 'uri', 'qr_code'}}
    """
    security_manager = get_security_manager()
    secret, uri = security_manager.generate_totp_secret(user.email)

    factor = MFAFactor(
        user_id=user.id,
        friendly_name=friendly_name or 'Authenticator app',
        secret=security_manager.encrypt_token(secret),
    )
    db.session.add(factor)
    db.session.commit()

    security_manager.log_security_event('mfa_enroll_started', {'factor_id': factor.id}, user_id=user.id)

    return {
        'id': factor.id,
        'type': factor.factor_type,
        'totp': {
            'secret': secret,
            'uri': uri,
            'qr_code': security_manager.render_qr_svg(uri),
        }
    }


def _get_factor(user: User, factor_id: str) -> MFAFactor:
    factor = MFAFactor.query.filter_by(id=factor_id, user_id=user.id).first()
    if factor is None:
        raise NotFoundError('MFA factor not found')
    return factor


def challenge_factor(user: User, factor_id: str) -> Dict[str, Any]:
    """TOTP challenges carry no server state beyond an id and expiry"""
    factor = _get_factor(user, factor_id)
    return {
        'id': f"{factor.id}:{int(datetime.utcnow().timestamp())}",
        'factor_id': factor.id,
        'expires_at': int(datetime.utcnow().timestamp()) + 300,
    }


def verify_factor(user: User, factor_id: str, code: str) -> MFAFactor:
    """
    Check a TOTP code; activates an unverified factor

    Raises:
        AuthenticationError: wrong code
    """
    security_manager = get_security_manager()
    factor = _get_factor(user, factor_id)
    secret = security_manager.decrypt_token(factor.secret)

    if not security_manager.verify_totp_code(secret, code):
        security_manager.log_security_event('mfa_verify_failed', {'factor_id': factor.id},
                                            severity='high', user_id=user.id)
        raise AuthenticationError('Invalid verification code')

    if factor.status != 'verified':
        factor.status = 'verified'
        db.session.commit()
        security_manager.log_security_event('mfa_activated', {'factor_id': factor.id}, user_id=user.id)

    return factor


def verify_any_factor(user: User, code: str) -> bool:
    security_manager = get_security_manager()
    for factor in verified_factors(user.id):
        if security_manager.verify_totp_code(security_manager.decrypt_token(factor.secret), code):
            return True
    return False


def unenroll_factor(user: User, factor_id: str) -> None:
    factor = _get_factor(user, factor_id)
    db.session.delete(factor)
    db.session.commit()
    get_security_manager().log_security_event('mfa_unenrolled', {'factor_id': factor_id}, user_id=user.id)


def list_factors(user: User) -> List[Dict[str, Any]]:
    return [{
        'id': factor.id,
        'type': factor.factor_type,
        'friendly_name': factor.friendly_name,
        'status': factor.status,
        'created_at': factor.created_at.isoformat() if factor.created_at else None,
    } for factor in MFAFactor.query.filter_by(user_id=user.id).order_by(MFAFactor.created_at).all()]
