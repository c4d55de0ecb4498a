# app.py
"""
Flask application factory for the remedies shop request gateway

Wires the request-security layer around the public API:
- Sliding-window rate limiting (Redis when REDIS_URL is set, in-process otherwise)
- Session-bound CSRF tokens, honeypot, schema validation, sanitization, spam filter
- Security headers on every response and a security audit trail
- Open analytics ingestion endpoint and admin read models
"""

import logging
import logging.handlers
import os
from datetime import datetime, timezone
from typing import Optional, Tuple

import redis
from flask import Flask, jsonify, request
from flask_cors import CORS
from sqlalchemy import text
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from api.admin import admin_bp
from api.analytics import analytics_bp
from api.submissions import submissions_bp
from config.security import get_config, load_denylists
from core.csrf import CSRFTokenManager, InMemoryTokenStore, RedisTokenStore, TokenStore
from core.errors import InternalError, SecurityGuardError
from core.rate_limiter import (
    InMemoryRateLimitStore, RateLimiter, RateLimitStore, RedisRateLimitStore
)
from core.request_guard import RequestGuard, SpamFilter
from core.sanitizer import DEFAULT_SQL_KEYWORDS
from core.security_events import (
    DatabaseSecurityEventSink, MemorySecurityEventSink, RedisSecurityEventSink,
    SecurityAuditLogger, SecurityEventKind
)
from middleware.security import (
    SessionIdentityProvider, flag_suspicious_request, get_client_ip,
    get_user_agent, persist_tracker, security_headers
)
from services.analytics import EventIngestor
from services.mailer import create_mailer
from services.storage import (
    AnalyticsEventRepository, SubmissionRepository, create_session_factory
)

HANDLER_NAME = 'remedy_guard'


def setup_logging(app: Flask) -> None:
    """
    Configure logging for journald-friendly stdout plus an optional rotating file

    Handlers are attached to the root logger so module loggers and the
    ``security`` audit logger share them.
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        if handler.get_name() == HANDLER_NAME:
            root.removeHandler(handler)

    log_level = getattr(logging, str(app.config.get('LOG_LEVEL', 'INFO')).upper(), logging.INFO)
    formatter = logging.Formatter(fmt=app.config['LOG_FORMAT'], datefmt='%Y-%m-%d %H:%M:%S')

    stream_handler = logging.StreamHandler()
    stream_handler.set_name(HANDLER_NAME)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    log_file = app.config.get('LOG_FILE')
    if log_file:
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5
        )
        file_handler.set_name(HANDLER_NAME)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    root.setLevel(log_level)
    app.logger.setLevel(log_level)

    # Suppress verbose third-party logs outside debug
    if not app.debug:
        logging.getLogger('werkzeug').setLevel(logging.WARNING)


def create_redis_client(app: Flask) -> Optional[redis.Redis]:
    """Shared Redis client, or None when REDIS_URL is not configured"""
    redis_url = app.config.get('REDIS_URL')
    if not redis_url:
        return None

    client = redis.Redis.from_url(
        redis_url,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
        retry_on_timeout=True,
        health_check_interval=30
    )
    try:
        client.ping()
        app.logger.info("Redis client connected successfully")
    except redis.ConnectionError as e:
        # Rate limiting fails open and CSRF fails closed until Redis is back
        app.logger.error(f"Redis connection failed: {e}")
    return client


def create_stores(app: Flask, redis_client: Optional[redis.Redis]) -> Tuple[RateLimitStore, TokenStore]:
    if redis_client is not None:
        return RedisRateLimitStore(redis_client), RedisTokenStore(redis_client)

    if app.config.get('ENV_NAME') == 'production':
        app.logger.warning(
            "REDIS_URL is not set: rate limits and CSRF tokens are kept in process memory, "
            "so every worker process enforces its own quota"
        )
    return InMemoryRateLimitStore(), InMemoryTokenStore()


def configure_security(app: Flask, redis_client: Optional[redis.Redis], session_factory) -> None:
    """
    Build the gating services and attach them to the app
    """
    config = app.config
    rate_store, token_store = create_stores(app, redis_client)

    app.rate_limiter = RateLimiter(
        store=rate_store,
        presets=config['RATE_LIMIT_PRESETS'],
        sweep_interval_ms=config['RATE_LIMIT_SWEEP_INTERVAL_MS']
    )

    sinks = []
    if redis_client is not None:
        sinks.append(RedisSecurityEventSink(redis_client,
                                            retention_days=config['AUDIT_LOG_RETENTION_DAYS']))
    if config.get('SECURITY_EVENTS_TO_DATABASE'):
        sinks.append(DatabaseSecurityEventSink(session_factory))
    if not sinks:
        sinks.append(MemorySecurityEventSink())
    app.security_audit = SecurityAuditLogger(sinks)

    app.denylists = load_denylists(config['DENYLIST_PATH'])
    app.request_guard = RequestGuard(
        csrf=CSRFTokenManager(
            store=token_store,
            ttl_seconds=config['CSRF_TOKEN_TTL'],
            single_use=config['CSRF_SINGLE_USE'],
            token_bytes=config['CSRF_TOKEN_BYTES']
        ),
        audit=app.security_audit,
        spam_filter=SpamFilter(app.denylists.get('spam_keywords', [])),
        sql_keywords=app.denylists.get('sql_keywords') or DEFAULT_SQL_KEYWORDS,
        honeypot_field=config['HONEYPOT_FIELD'],
        csrf_field=config['CSRF_FIELD']
    )
    app.identity_provider = SessionIdentityProvider()

    # Analytics ingestion is called cross-origin from the site's pages
    CORS(app,
         resources={r'/api/analytics/events': {'origins': config.get('CORS_ORIGINS') or '*'}},
         allow_headers=['Content-Type'])

    app.logger.info("Security features configured")


def register_blueprints(app: Flask) -> None:
    app.register_blueprint(submissions_bp)
    app.register_blueprint(analytics_bp)
    app.register_blueprint(admin_bp)


def configure_error_handlers(app: Flask) -> None:
    """
    Render every failure as ``{success: false, error, type}`` JSON
    """
    @app.errorhandler(SecurityGuardError)
    def guard_rejection(error):
        response = jsonify(error.to_dict())
        response.status_code = error.status_code
        response.headers.update(error.headers)
        return response

    @app.errorhandler(400)
    def bad_request(error):
        app.logger.warning(f"Bad request from {get_client_ip()}: {error}")
        return jsonify({
            'success': False,
            'error': 'Invalid request format or parameters',
            'type': 'bad_request'
        }), 400

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({
            'success': False,
            'error': 'The requested resource was not found',
            'type': 'not_found'
        }), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({
            'success': False,
            'error': 'Method not allowed',
            'type': 'method_not_allowed'
        }), 405

    @app.errorhandler(500)
    def internal_error(error):
        app.logger.error(f"Internal server error: {error}")
        return jsonify(InternalError().to_dict()), 500

    @app.errorhandler(Exception)
    def handle_exception(e):
        """Handle unexpected exceptions"""
        if isinstance(e, HTTPException):
            return e

        app.logger.error(f"Unhandled exception on {request.path}: {e}", exc_info=True)
        app.security_audit.log(SecurityEventKind.INTERNAL_ERROR, get_client_ip(), get_user_agent(),
                               endpoint=request.endpoint, error_class=type(e).__name__)
        return jsonify(InternalError().to_dict()), 500


def configure_request_middleware(app: Flask) -> None:
    @app.before_request
    def before_request():
        flag_suspicious_request()

    @app.after_request
    def after_request(response):
        persist_tracker(response)
        return security_headers(response, app.config)


def configure_health_checks(app: Flask) -> None:
    @app.route('/health')
    def health_check():
        """Health check with component status"""
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'components': {}
        }

        try:
            with app.session_factory() as db_session:
                db_session.execute(text('SELECT 1'))
            health_status['components']['database'] = 'healthy'
        except Exception as e:
            app.logger.error(f"Database health check failed: {e}")
            health_status['components']['database'] = 'unhealthy'
            health_status['status'] = 'unhealthy'

        if app.redis_client is not None:
            try:
                app.redis_client.ping()
                health_status['components']['redis'] = 'healthy'
            except redis.RedisError as e:
                app.logger.error(f"Redis health check failed: {e}")
                health_status['components']['redis'] = 'unhealthy'
                health_status['status'] = 'degraded'

        status_code = 200 if health_status['status'] == 'healthy' else 503
        return jsonify(health_status), status_code


def create_app(config_name: str = None) -> Flask:
    """
    Flask application factory

    Args:
        config_name: Configuration environment ('development', 'testing', 'production')

    Returns:
        Configured Flask application instance
    """
    app = Flask(__name__)

    config_class = get_config(config_name)
    app.config.from_object(config_class)

    # Forwarded headers are trusted only for the configured number of proxy hops
    if app.config.get('PROXY_FIX_X_FOR'):
        hops = app.config['PROXY_FIX_X_FOR']
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=hops, x_proto=hops)

    setup_logging(app)
    app.logger.info(f"Starting application in {app.config['ENV_NAME']} mode")

    app.redis_client = create_redis_client(app)
    app.session_factory = create_session_factory(app.config['DATABASE_URL'])

    configure_security(app, app.redis_client, app.session_factory)

    app.submissions = SubmissionRepository(app.session_factory)
    app.analytics_repository = AnalyticsEventRepository(app.session_factory)
    app.event_ingestor = EventIngestor(app.analytics_repository)
    app.mailer = create_mailer(app.config)

    register_blueprints(app)
    configure_error_handlers(app)
    configure_request_middleware(app)
    configure_health_checks(app)

    app.logger.info("Flask application factory completed successfully")
    return app


if __name__ == '__main__':
    # Development server
    create_app(os.environ.get('FLASK_ENV', 'development')).run(
        host='127.0.0.1',
        port=int(os.environ.get('PORT', 5000)),
        debug=True
    )
