# app.py
"""
Flask Application Factory for the Corridor Web backend

This application factory wires together:
- Content, authentication and MFA APIs
- Realtime change notifications via SocketIO
- Function endpoints (feeds, analytics, social publishing, integrations)
- Session inactivity guard, CSRF lifecycle and CSP nonces
- Server-side and advisory rate limiting
- Celery for background social publishing
"""

import os
import logging
import logging.handlers
import time
from datetime import datetime
from pathlib import Path
from typing import Optional

# Flask and extensions
from flask import Flask, request, jsonify, g
from flask_migrate import Migrate
from flask_cors import CORS
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.exceptions import HTTPException

# Database and caching
import redis
from sqlalchemy import event

from config.settings import CONFIGS
from core.database_models import db
from core.errors import AppError, RateLimitedError, classify_error
from core.rate_limiter import MemoryTimestampStore, RateLimiter, RedisTimestampStore, rules_from_config
from core.security_manager import SecurityManager
from api.auth import auth_bp, limiter
from api.content import content_bp
from api.functions import functions_bp
from api.realtime import init_socketio
from middleware.security import check_session_activity, prepare_csp_nonce, security_headers
from services.health import system_health
from tasks.social_publisher import init_celery


def setup_logging(app: Flask) -> None:
    """
    Configure application logging

    Console output always; a rotating file in development. Third-party
    loggers are turned down outside debug mode.
    """
    # Remove default Flask handlers to avoid duplicate logs
    app.logger.handlers.clear()

    console_formatter = logging.Formatter(
        fmt='%(asctime)s %(name)s[%(process)d]: %(levelname)s %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    detailed_formatter = logging.Formatter(
        fmt='%(asctime)s %(name)-20s %(levelname)-8s %(funcName)-15s:%(lineno)-4d %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    log_level = getattr(logging, app.config.get('LOG_LEVEL', 'INFO').upper())
    app.logger.setLevel(log_level)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(console_formatter)
    console_handler.setLevel(log_level)
    app.logger.addHandler(console_handler)

    # File handler for detailed debugging (development only)
    if app.config.get('ENV_NAME') == 'development':
        log_dir = Path(app.config.get('LOG_DIR', 'logs'))
        log_dir.mkdir(exist_ok=True, parents=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_dir / 'corridor-web.log',
            maxBytes=10*1024*1024,  # 10MB
            backupCount=5
        )
        file_handler.setFormatter(detailed_formatter)
        file_handler.setLevel(logging.DEBUG)
        app.logger.addHandler(file_handler)

    # Suppress verbose third-party logs in production
    if not app.debug:
        logging.getLogger('werkzeug').setLevel(logging.WARNING)
        logging.getLogger('socketio').setLevel(logging.WARNING)
        logging.getLogger('engineio').setLevel(logging.WARNING)


def create_redis_client(app: Flask) -> Optional[redis.Redis]:
    """Redis client for the advisory limiter, when it is configured to use one"""
    if app.config.get('RATE_LIMIT_BACKEND') != 'redis':
        return None

    client = redis.from_url(app.config['REDIS_URL'], decode_responses=True,
                            socket_connect_timeout=5, socket_timeout=5,
                            retry_on_timeout=True, health_check_interval=30)
    try:
        client.ping()
        app.logger.info("Redis client connected successfully")
    except redis.ConnectionError as e:
        app.logger.error(f"Redis connection failed: {e}")
        if app.config.get('REDIS_REQUIRED', True):
            raise
    return client


def configure_database(app: Flask) -> None:
    """
    Configure Flask-SQLAlchemy and slow query logging
    """
    database_url = app.config['DATABASE_URL']

    engine_options = {'pool_pre_ping': True}
    if not database_url.startswith('sqlite'):
        engine_options.update({
            'pool_size': app.config.get('DB_POOL_SIZE', 10),
            'max_overflow': app.config.get('DB_MAX_OVERFLOW', 20),
            'pool_recycle': 3600,   # Recycle connections every hour
        })

    # Add PostgreSQL-specific options
    if 'postgresql' in database_url:
        engine_options['connect_args'] = {
            'application_name': 'corridor_web',
            'connect_timeout': 10,
        }

    app.config['SQLALCHEMY_DATABASE_URI'] = database_url
    app.config['SQLALCHEMY_ENGINE_OPTIONS'] = engine_options
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

    db.init_app(app)

    with app.app_context():
        engine = db.engine

    @event.listens_for(engine, "before_cursor_execute")
    def receive_before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        context._query_start_time = datetime.now()

    @event.listens_for(engine, "after_cursor_execute")
    def receive_after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        """Log slow queries"""
        total = (datetime.now() - context._query_start_time).total_seconds()
        if total > app.config.get('SLOW_QUERY_THRESHOLD', 1.0):
            app.logger.warning(f"Slow query ({total:.2f}s): {statement[:100]}...")

    app.logger.info(f"Database configured: {database_url.split('@')[-1] if '@' in database_url else database_url}")


def configure_security(app: Flask, redis_client: Optional[redis.Redis]) -> SecurityManager:
    """
    Configure security services

    - SecurityManager (encryption, password hashing, TOTP, audit sink)
    - Flask-Limiter: authoritative server-side limits
    - RateLimiter: advisory per-action limits for login and MFA attempts
    - CORS for the JSON API
    """
    security_manager = SecurityManager(app)

    limiter.init_app(app)

    store = RedisTimestampStore(redis_client) if redis_client is not None else MemoryTimestampStore()
    app.action_limiter = RateLimiter(rules_from_config(app.config['ACTION_RATE_LIMITS']), store=store)

    CORS(app,
         resources={r"/api/*": {"origins": app.config.get('CORS_ORIGINS', ['http://localhost:5173'])}},
         supports_credentials=True,
         allow_headers=['Content-Type', 'Authorization', 'X-CSRF-Token'])

    app.logger.info("Security features configured")
    return security_manager


def register_blueprints(app: Flask) -> None:
    app.register_blueprint(auth_bp)
    app.register_blueprint(content_bp)
    app.register_blueprint(functions_bp)

    app.logger.info("Application blueprints registered")


def limiter_retry_after(e: HTTPException) -> Optional[float]:
    """Seconds until the Flask-Limiter window that rejected the request resets"""
    current = limiter.current_limit
    if current is not None and current.breached:
        return max(current.reset_at - time.time(), 1)
    limit = getattr(e, 'limit', None)
    if limit is not None:
        return limit.limit.get_expiry()
    return None


def configure_error_handlers(app: Flask) -> None:
    """
    Turn every failure into {"error": message} JSON with the matching status
    """
    def _error_response(error: AppError):
        response = jsonify(error.to_dict())
        response.status_code = error.status_code
        if isinstance(error, RateLimitedError):
            response.headers['Retry-After'] = str(error.flags.get('retryAfter', 60))
        return response

    @app.errorhandler(AppError)
    def handle_app_error(error):
        if error.status_code >= 500:
            app.logger.error(f"{error.kind.value}: {error.message}")
        else:
            app.logger.warning(f"{error.kind.value} from {request.remote_addr}: {error.message}")
        return _error_response(error)

    @app.errorhandler(HTTPException)
    def handle_http_exception(e):
        if e.code == 429:
            app.logger.warning(f"Rate limit exceeded for {request.remote_addr}")
            retry_after = limiter_retry_after(e)
            if retry_after is not None:
                return _error_response(RateLimitedError(retry_after=retry_after))
        return _error_response(classify_error(e))

    @app.errorhandler(Exception)
    def handle_exception(e):
        """Handle unexpected exceptions"""
        db.session.rollback()
        app.logger.error(f"Unhandled exception: {e}", exc_info=True)
        return _error_response(classify_error(e))


def configure_health_checks(app: Flask) -> None:
    @app.route('/health')
    def health_check():
        """Basic health check endpoint"""
        return jsonify({
            'status': 'healthy',
            'timestamp': datetime.utcnow().isoformat(),
            'version': app.config.get('VERSION', '1.0.0')
        })

    @app.route('/health/detailed')
    def detailed_health_check():
        """Detailed health check with component status"""
        report = system_health()
        status_code = 200 if report['status'] == 'healthy' else 503
        return jsonify(report), status_code


def configure_request_middleware(app: Flask) -> None:
    """
    Configure request/response middleware for security and monitoring
    """
    @app.before_request
    def before_request():
        # Store request start time for performance monitoring
        g.start_time = datetime.utcnow()

        prepare_csp_nonce()
        check_session_activity()

    @app.after_request
    def after_request(response):
        response = security_headers(response)

        # Log request performance
        if hasattr(g, 'start_time'):
            duration = (datetime.utcnow() - g.start_time).total_seconds() * 1000
            if duration > app.config.get('SLOW_REQUEST_THRESHOLD', 1000):
                app.logger.warning(f"Slow request ({duration:.0f}ms): {request.method} {request.path}")

        return response


def create_app(config_name: str = None, overrides: Optional[dict] = None) -> Flask:
    """
    Flask application factory

    Args:
        config_name: Configuration environment ('development', 'testing', 'production')
        overrides: Extra config values applied last

    Returns:
        Configured Flask application instance
    """
    app = Flask(__name__, instance_relative_config=True)

    config_name = config_name or os.environ.get('FLASK_ENV', 'production')
    app.config.from_object(CONFIGS.get(config_name, CONFIGS['production']))
    app.config['ENV_NAME'] = config_name

    # Override with environment variables
    if config_name != 'testing':
        for key in ('SECRET_KEY', 'DATABASE_URL', 'REDIS_URL', 'ENCRYPTION_KEY', 'CELERY_BROKER_URL'):
            if os.environ.get(key):
                app.config[key] = os.environ[key]
        app.config['VERSION'] = os.environ.get('APP_VERSION', '1.0.0')

    if overrides:
        app.config.update(overrides)

    # Configure proxy handling for production deployment behind nginx
    if config_name == 'production':
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_prefix=1)

    setup_logging(app)
    app.logger.info(f"Starting Corridor Web backend in {config_name} mode")

    redis_client = create_redis_client(app)

    configure_database(app)
    Migrate(app, db)

    init_celery(app)

    configure_security(app, redis_client)

    socketio = init_socketio(app)
    app.socketio = socketio

    register_blueprints(app)
    configure_error_handlers(app)
    configure_health_checks(app)
    configure_request_middleware(app)

    # Create database tables (in production, use migrations instead)
    if config_name in ('development', 'testing'):
        with app.app_context():
            db.create_all()
            app.logger.info(f"Database tables created ({config_name} mode)")

    app.logger.info("Flask application factory completed successfully")
    return app


if __name__ == '__main__':
    # Development server
    app = create_app('development')

    # Run with SocketIO support
    app.socketio.run(
        app,
        host='0.0.0.0',
        port=5000,
        debug=True,
        use_reloader=True
    )
