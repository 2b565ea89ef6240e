# core/security_manager.py
"""
Security Manager for the Corridor Web backend
Implements the security primitives shared by the API and the functions:
- Token encryption and key derivation
- Password hashing and verification
- TOTP multi-factor secrets and QR provisioning
- Client IP hashing for analytics
- Audit logging to the security_audit_log table
"""

import base64
import hashlib
import hmac
import io
import logging
import secrets
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.backends import default_backend
from flask import current_app, has_request_context, request
import pyotp
import qrcode
import qrcode.image.svg

from core.database_models import db, SecurityAuditLog

# Configure logging
logger = logging.getLogger(__name__)


def hash_ip(ip_address: Optional[str]) -> str:
    """SHA-256 hex digest of the client IP (raw IPs are never stored)"""
    return hashlib.sha256((ip_address or '0.0.0.0').encode('utf-8')).hexdigest()


def extract_client_ip(headers, remote_addr: Optional[str] = None) -> str:
    """
    Resolve the client IP from proxy headers

    Order: cf-connecting-ip, first x-forwarded-for hop, x-real-ip, remote address.
    """
    forwarded = headers.get('X-Forwarded-For')
    candidates = [
        headers.get('CF-Connecting-IP'),
        forwarded.split(',')[0].strip() if forwarded else None,
        headers.get('X-Real-IP'),
        remote_addr,
    ]
    for candidate in candidates:
        if candidate:
            return candidate
    return '0.0.0.0'


class SecurityManager:
    """
    Security services bound to one Flask application
    """

    def __init__(self, app=None):
        """
        Initialize security manager

        Args:
            app: Flask application instance
        """
        self.app = app
        self.cipher = None
        self.totp_issuer = 'Polrydian'
        self.totp_window = 1

        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        self.app = app
        self.totp_issuer = app.config.get('TOTP_ISSUER_NAME', self.totp_issuer)
        self.totp_window = app.config.get('TOTP_VALIDITY_WINDOW', self.totp_window)
        self._init_encryption(app.config['ENCRYPTION_KEY'])
        app.security_manager = self
        logger.info("SecurityManager initialized")

    def _init_encryption(self, master_key: str):
        """Derive the Fernet key from the configured master key"""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=b'corridor_web_token_salt',
            iterations=100000,
            backend=default_backend()
        )
        key = base64.urlsafe_b64encode(kdf.derive(master_key.encode()))
        self.cipher = Fernet(key)

    def encrypt_token(self, token: str) -> str:
        """
        Encrypt a third-party access token

        Args:
            token: Plain text token

        Returns:
            Fernet token as text
        """
        return self.cipher.encrypt(token.encode('utf-8')).decode('ascii')

    def decrypt_token(self, encrypted_token: str) -> str:
        try:
            return self.cipher.decrypt(encrypted_token.encode('ascii')).decode('utf-8')
        except InvalidToken:
            logger.error("Token decryption failed: invalid token or key")
            raise

    def hash_password(self, password: str, salt: Optional[str] = None) -> Tuple[str, str]:
        """
        Hash password with secure salt

        Args:
            password: Plain text password
            salt: Optional salt (generates new if not provided)

        Returns:
            Tuple of (hashed_password, salt)
        """
        if salt is None:
            salt = secrets.token_hex(16)

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt.encode(),
            iterations=200000,
            backend=default_backend()
        )

        hashed = base64.b64encode(kdf.derive(password.encode())).decode()
        return hashed, salt

    def verify_password(self, password: str, hashed_password: str, salt: str) -> bool:
        computed_hash, _ = self.hash_password(password, salt)
        return hmac.compare_digest(hashed_password, computed_hash)

    def generate_totp_secret(self, account_name: str) -> Tuple[str, str]:
        """
        Generate TOTP secret and provisioning URI

        Returns:
            Tuple of (secret, otpauth_uri)
        """
        secret = pyotp.random_base32()
        totp_uri = pyotp.totp.TOTP(secret).provisioning_uri(
            name=account_name,
            issuer_name=self.totp_issuer
        )
        return secret, totp_uri

    def verify_totp_code(self, secret: str, code: str) -> bool:
        if not code:
            return False
        return pyotp.TOTP(secret).verify(str(code).strip(), valid_window=self.totp_window)

    @staticmethod
    def render_qr_svg(uri: str) -> str:
        """Provisioning URI as an SVG data URI for authenticator apps"""
        image = qrcode.make(uri, image_factory=qrcode.image.svg.SvgPathImage)
        buffer = io.BytesIO()
        image.save(buffer)
        encoded = base64.b64encode(buffer.getvalue()).decode('ascii')
        return f"data:image/svg+xml;base64,{encoded}"

    def log_security_event(self, event_type: str, details: Optional[Dict[str, Any]] = None,
                           severity: str = 'medium', user_id: Optional[str] = None,
                           ip_address: Optional[str] = None) -> bool:
        """
        Log security event for audit trail

        Failures are logged and swallowed so auditing never blocks the
        operation being audited.

        Args:
            event_type: Type of security event
            details: Additional event details
            severity: 'low', 'medium', 'high' or 'critical'

        Returns:
            True if the entry was persisted
        """
        if ip_address is None and has_request_context():
            ip_address = extract_client_ip(request.headers, request.remote_addr)

        try:
            entry = SecurityAuditLog(
                action=event_type,
                user_id=user_id,
                ip_address=ip_address or '0.0.0.0',
                severity=severity,
                details={**(details or {}), 'timestamp': datetime.utcnow().isoformat()}
            )
            db.session.add(entry)
            db.session.commit()
            logger.info(f"Security event logged: {event_type}")
            return True

        except Exception as e:
            db.session.rollback()
            logger.error(f"Failed to log security event {event_type}: {str(e)}")
            return False


def get_security_manager() -> SecurityManager:
    return current_app.security_manager
