"""
Configuration objects for the Corridor Web backend
Loaded through app.config.from_object() and overridden from the environment
"""

import os
import secrets
from datetime import timedelta


class BaseConfig:
    """Settings shared by every environment"""

    # Session settings
    SECRET_KEY = os.environ.get('SECRET_KEY') or secrets.token_urlsafe(32)
    SESSION_COOKIE_SECURE = True
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'
    PERMANENT_SESSION_LIFETIME = timedelta(hours=8)

    # Inactivity guard
    SESSION_TIMEOUT = timedelta(minutes=60)
    SESSION_WARNING_LEAD = timedelta(minutes=5)

    # Bearer tokens handed to function callers
    ACCESS_TOKEN_MAX_AGE = 3600

    # Database
    DATABASE_URL = os.environ.get('DATABASE_URL') or 'sqlite:///corridor_web.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Redis / rate limiting
    REDIS_URL = os.environ.get('REDIS_URL') or 'redis://localhost:6379/0'
    RATELIMIT_STORAGE_URI = os.environ.get('RATELIMIT_STORAGE_URI') or 'redis://localhost:6379/3'
    RATELIMIT_HEADERS_ENABLED = True
    FUNCTION_RATE_LIMIT = '60 per minute'
    RATE_LIMIT_BACKEND = 'redis'

    # Advisory per-action limits: (max_attempts, window_seconds)
    ACTION_RATE_LIMITS = {
        'login': (5, 60),
        'mfa_verify': (5, 60),
        'contact': (3, 300),
    }

    # Encryption master key for social tokens
    ENCRYPTION_KEY = os.environ.get('ENCRYPTION_KEY') or secrets.token_urlsafe(32)

    # Celery
    CELERY_BROKER_URL = os.environ.get('CELERY_BROKER_URL') or 'redis://localhost:6379/2'

    # CORS
    CORS_ORIGINS = ['https://polrydian.com', 'http://localhost:5173']

    # Public site
    SITE_BASE_URL = 'https://polrydian.com'
    FEED_TITLE = 'Polrydian Corridor Web - Strategic Insights'
    FEED_DESCRIPTION = ('Strategic insights on corridor economics, geopolitics, and '
                        'supply-chain flows. Transform complexity into clarity through '
                        'disciplined analysis.')
    FEED_AUTHOR = 'patrick@polrydian.com (Patrick Misiewicz)'
    FEED_ITEM_LIMIT = 20
    STATIC_PAGES = [
        {'loc': '/', 'changefreq': 'weekly', 'priority': '1.0'},
        {'loc': '/about', 'changefreq': 'monthly', 'priority': '0.8'},
        {'loc': '/services', 'changefreq': 'monthly', 'priority': '0.9'},
        {'loc': '/insights', 'changefreq': 'daily', 'priority': '0.8'},
        {'loc': '/articles', 'changefreq': 'daily', 'priority': '0.9'},
        {'loc': '/schedule', 'changefreq': 'weekly', 'priority': '0.7'},
        {'loc': '/privacy', 'changefreq': 'yearly', 'priority': '0.3'},
    ]

    # Object storage
    STORAGE_ROOT = os.environ.get('STORAGE_ROOT') or os.path.join(os.getcwd(), 'storage')
    STORAGE_PUBLIC_URL = '/storage/v1/object/public'
    MAX_CONTENT_LENGTH = 10 * 1024 * 1024  # 10MB

    # Content Security Policy allow-lists for the known integrations
    CSP_SOURCES = {
        'img-src': ["'self'", 'data:', 'https://calendly.com', 'https://*.linkedin.com',
                    'https://*.licdn.com', 'https://*.cdninstagram.com'],
        'font-src': ["'self'", 'data:'],
        'connect-src': ["'self'", 'https://api.linkedin.com', 'https://graph.instagram.com',
                        'https://api.stlouisfed.org', 'wss:'],
        'media-src': ["'self'"],
        'frame-src': ["'self'", 'https://calendly.com', 'https://www.calendly.com'],
    }

    # Third-party integrations
    CALENDLY_ALLOWED_ORIGINS = ('https://calendly.com', 'https://www.calendly.com')
    LINKEDIN_API_URL = 'https://api.linkedin.com/rest'
    LINKEDIN_API_VERSION = '202507'
    LINKEDIN_ACCESS_TOKEN = os.environ.get('LINKEDIN_ACCESS_TOKEN')
    LINKEDIN_AUTHOR_URN = os.environ.get('LINKEDIN_AUTHOR_URN')
    INSTAGRAM_API_URL = 'https://graph.instagram.com'
    INSTAGRAM_ACCESS_TOKEN = os.environ.get('INSTAGRAM_ACCESS_TOKEN')
    INSTAGRAM_ACCOUNT_ID = os.environ.get('INSTAGRAM_ACCOUNT_ID')
    FRED_API_URL = 'https://api.stlouisfed.org/fred'
    FRED_API_KEY = os.environ.get('FRED_API_KEY')
    HTTP_TIMEOUT = 10.0
    HTTP_TRANSPORT = None  # httpx transport override

    # Security headers
    SECURITY_HEADERS = {
        'X-Content-Type-Options': 'nosniff',
        'X-Frame-Options': 'DENY',
        'X-XSS-Protection': '1; mode=block',
        'Strict-Transport-Security': 'max-age=31536000; includeSubDomains',
        'Referrer-Policy': 'strict-origin-when-cross-origin',
        'Permissions-Policy': 'camera=(), microphone=(), geolocation=()'
    }

    # MFA
    TOTP_ISSUER_NAME = 'Polrydian'
    TOTP_VALIDITY_WINDOW = 1

    LOG_LEVEL = 'INFO'
    SLOW_REQUEST_THRESHOLD = 1000  # ms


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    SESSION_COOKIE_SECURE = False
    LOG_LEVEL = 'DEBUG'
    RATELIMIT_STORAGE_URI = 'memory://'
    RATE_LIMIT_BACKEND = 'memory'


class TestingConfig(BaseConfig):
    """In-memory everything so the suite never touches Redis or disk databases"""
    TESTING = True
    SECRET_KEY = 'test-secret-key'
    ENCRYPTION_KEY = 'test-encryption-key'
    SESSION_COOKIE_SECURE = False
    DATABASE_URL = 'sqlite://'
    RATELIMIT_STORAGE_URI = 'memory://'
    RATELIMIT_ENABLED = False
    RATE_LIMIT_BACKEND = 'memory'
    CELERY_TASK_ALWAYS_EAGER = True
    LINKEDIN_ACCESS_TOKEN = 'test-linkedin-token'
    LINKEDIN_AUTHOR_URN = 'urn:li:person:test'
    INSTAGRAM_ACCESS_TOKEN = 'test-instagram-token'
    INSTAGRAM_ACCOUNT_ID = '1784'
    FRED_API_KEY = 'test-fred-key'


class ProductionConfig(BaseConfig):
    LOG_LEVEL = 'INFO'
    RATE_LIMIT_BACKEND = 'redis'


CONFIGS = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
}
