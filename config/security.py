# config/security.py
"""
Security configuration for the remedies shop request gateway
"""

import json
import os
import secrets
from datetime import timedelta
from pathlib import Path
from typing import Dict, List

from core.rate_limiter import RateLimitPolicy

DEFAULT_DENYLIST_PATH = Path(__file__).with_name('denylists.json')


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def load_denylists(path=None) -> Dict[str, List[str]]:
    """
    Load keyword denylists from JSON

    Args:
        path: File to read (defaults to config/denylists.json)

    Returns:
        Mapping of list name -> keywords
    """
    with open(path or DEFAULT_DENYLIST_PATH, encoding='utf-8') as fh:
        data = json.load(fh)
    return {name: [str(item) for item in items] for name, items in data.items()}


class SecurityConfig:
    """Security configuration settings"""

    ENV_NAME = 'production'

    # Session settings
    SECRET_KEY = os.environ.get('SECRET_KEY') or secrets.token_urlsafe(32)
    SESSION_COOKIE_SECURE = True
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'
    PERMANENT_SESSION_LIFETIME = timedelta(hours=8)

    # Storage
    DATABASE_URL = os.environ.get('DATABASE_URL', 'sqlite:///remedy_guard.db')
    REDIS_URL = os.environ.get('REDIS_URL')  # unset -> in-process stores

    # Rate limiting (endpoint class -> sliding window policy)
    RATE_LIMIT_PRESETS = {
        'auth': RateLimitPolicy(window_ms=15 * 60 * 1000, max_requests=5),
        'api': RateLimitPolicy(window_ms=15 * 60 * 1000, max_requests=100),
        'upload': RateLimitPolicy(window_ms=60 * 60 * 1000, max_requests=10),
        'contact': RateLimitPolicy(window_ms=60 * 60 * 1000, max_requests=3),
        'newsletter': RateLimitPolicy(window_ms=60 * 60 * 1000, max_requests=5),
    }
    RATE_LIMIT_SWEEP_INTERVAL_MS = 60 * 1000

    # CSRF protection
    CSRF_TOKEN_BYTES = 32
    CSRF_TOKEN_TTL = 3600  # 1 hour
    CSRF_SINGLE_USE = True
    CSRF_FIELD = 'csrf_token'
    HONEYPOT_FIELD = 'honeypot'

    # Content Security Policy
    CSP_POLICY = {
        'default-src': "'self'",
        'script-src': "'self' 'unsafe-inline'",
        'style-src': "'self' 'unsafe-inline'",
        'img-src': "'self' data: https:",
        'font-src': "'self'",
        'connect-src': "'self'",
        'object-src': "'none'",
        'frame-ancestors': "'none'",
        'base-uri': "'self'",
        'form-action': "'self'"
    }

    PERMISSIONS_POLICY = [
        'geolocation=()',
        'microphone=()',
        'camera=()',
        'payment=()',
        'usb=()',
        'magnetometer=()',
        'gyroscope=()',
        'accelerometer=()'
    ]

    # Security headers
    SECURITY_HEADERS = {
        'X-Frame-Options': 'DENY',
        'X-Content-Type-Options': 'nosniff',
        'X-XSS-Protection': '1; mode=block',
        'Referrer-Policy': 'strict-origin-when-cross-origin'
    }
    HSTS_ENABLED = True
    HSTS_VALUE = 'max-age=31536000; includeSubDomains; preload'

    # Reverse proxy hops trusted for X-Forwarded-For (0 = trust nothing)
    PROXY_FIX_X_FOR = int(os.environ.get('PROXY_FIX_X_FOR', 1))

    # Audit settings
    AUDIT_LOG_RETENTION_DAYS = 90
    SECURITY_EVENTS_TO_DATABASE = True

    # Denylists (spam keywords, SQL keywords, suspicious agents/queries)
    DENYLIST_PATH = os.environ.get('DENYLIST_PATH') or str(DEFAULT_DENYLIST_PATH)

    # Analytics ingestion is called from browsers on the site's own origins
    CORS_ORIGINS = [o for o in os.environ.get('CORS_ORIGINS', '').split(',') if o]

    # Mail
    CONTACT_RECIPIENT = os.environ.get('CONTACT_RECIPIENT', 'hello@localhost')
    SMTP_HOST = os.environ.get('SMTP_HOST')
    SMTP_PORT = int(os.environ.get('SMTP_PORT', 587))
    SMTP_USER = os.environ.get('SMTP_USER')
    SMTP_PASSWORD = os.environ.get('SMTP_PASS')
    SMTP_FROM = os.environ.get('SMTP_FROM')

    # Logging
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
    LOG_FILE = os.environ.get('LOG_FILE')
    LOG_FORMAT = '%(asctime)s %(name)s[%(process)d]: %(levelname)s %(message)s'


class DevelopmentConfig(SecurityConfig):
    ENV_NAME = 'development'
    DEBUG = True
    SESSION_COOKIE_SECURE = False
    HSTS_ENABLED = False
    PROXY_FIX_X_FOR = 0
    DATABASE_URL = os.environ.get('DATABASE_URL', 'sqlite:///remedy_guard_dev.db')
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'DEBUG')


class TestingConfig(SecurityConfig):
    ENV_NAME = 'testing'
    TESTING = True
    SECRET_KEY = 'testing-secret-key'
    SESSION_COOKIE_SECURE = False
    HSTS_ENABLED = False
    PROXY_FIX_X_FOR = 0
    DATABASE_URL = 'sqlite:///:memory:'
    REDIS_URL = None
    LOG_FILE = None


class ProductionConfig(SecurityConfig):
    ENV_NAME = 'production'
    SECURITY_EVENTS_TO_DATABASE = _env_bool('SECURITY_EVENTS_TO_DATABASE', True)


CONFIGS = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
}


def get_config(name: str = None):
    """Configuration class for ``name`` (falls back to FLASK_ENV, then production)"""
    name = name or os.environ.get('FLASK_ENV', 'production')
    return CONFIGS.get(name, ProductionConfig)
