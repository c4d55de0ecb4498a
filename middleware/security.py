# middleware/security.py
"""
Security Middleware for Request Processing
"""

import logging
import secrets
from dataclasses import dataclass
from functools import wraps
from typing import Any, Dict, Optional, Sequence

from flask import current_app, g, make_response, request, session

from core.errors import AuthenticationRequired, AuthorizationFailed, RateLimitExceeded
from core.security_events import SecurityEventKind
from core.validation import ValidationSchema
from services.analytics import AnalyticsTracker, TrackingSession

logger = logging.getLogger(__name__)

CSRF_SESSION_KEY = 'csrf_session'
CSRF_HEADER = 'X-CSRF-Token'
MUTATING_METHODS = ('POST', 'PUT', 'PATCH', 'DELETE')


def build_csp(policy: Dict[str, str]) -> str:
    return '; '.join(f"{directive} {value}" for directive, value in policy.items())


def security_headers(response, config):
    """Add security headers to all responses"""
    for name, value in config['SECURITY_HEADERS'].items():
        response.headers[name] = value
    response.headers['Content-Security-Policy'] = build_csp(config['CSP_POLICY'])
    response.headers['Permissions-Policy'] = ', '.join(config['PERMISSIONS_POLICY'])

    if config.get('HSTS_ENABLED'):
        response.headers['Strict-Transport-Security'] = config['HSTS_VALUE']

    return response


def get_client_ip() -> str:
    """Client address; forwarded headers are applied by ProxyFix before this runs"""
    return request.remote_addr or 'unknown'


def get_user_agent() -> Optional[str]:
    return request.headers.get('User-Agent')


def get_session_key(create: bool = False) -> Optional[str]:
    """Random id stored in the signed session cookie that CSRF tokens are bound to"""
    key = session.get(CSRF_SESSION_KEY)
    if key is None and create:
        key = secrets.token_hex(16)
        session[CSRF_SESSION_KEY] = key
    return key


def submitted_payload() -> Dict[str, Any]:
    """JSON object body or form fields; anything else counts as empty"""
    if request.is_json:
        data = request.get_json(silent=True)
        return dict(data) if isinstance(data, dict) else {}
    return request.form.to_dict()


def rate_limit(limit_class: str = 'api'):
    """Decorator applying a sliding-window preset keyed by client IP"""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            ip = get_client_ip()
            result = current_app.rate_limiter.check_preset(limit_class, ip)

            if not result.allowed:
                current_app.security_audit.log(
                    SecurityEventKind.RATE_LIMIT_EXCEEDED, ip, get_user_agent(),
                    endpoint=request.endpoint, limit_class=limit_class,
                    retry_after=result.retry_after
                )
                raise RateLimitExceeded(headers=result.headers(), retry_after=result.retry_after)

            response = make_response(f(*args, **kwargs))
            response.headers.update(result.headers())
            return response
        return decorated_function
    return decorator


def guarded_submission(schema: ValidationSchema, spam_fields: Sequence[str] = ()):
    """
    Decorator running the request guard on a mutating request

    The sanitized payload is available to the view as ``g.submission``.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            guard = current_app.request_guard
            payload = submitted_payload()

            header_token = request.headers.get(CSRF_HEADER)
            if header_token and not payload.get(guard.csrf_field):
                payload[guard.csrf_field] = header_token

            g.submission = guard.inspect(
                payload, schema,
                session_key=get_session_key(),
                ip=get_client_ip(),
                user_agent=get_user_agent(),
                spam_fields=spam_fields
            )
            return f(*args, **kwargs)
        return decorated_function
    return decorator


@dataclass(frozen=True)
class Identity:
    user_id: str
    role: str = 'user'

    @property
    def is_admin(self) -> bool:
        return self.role == 'admin'


class SessionIdentityProvider:
    """Reads the identity an upstream login flow stored in the session"""

    def current_identity(self) -> Optional[Identity]:
        user_id = session.get('user_id')
        if not user_id:
            return None
        return Identity(user_id=str(user_id), role=session.get('role', 'user'))


def require_admin(f):
    """Decorator to require an authenticated admin"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        identity = current_app.identity_provider.current_identity()

        if identity is None or not identity.is_admin:
            current_app.security_audit.log(
                SecurityEventKind.UNAUTHORIZED_ACCESS, get_client_ip(), get_user_agent(),
                endpoint=request.endpoint, method=request.method,
                user_id=identity.user_id if identity else None
            )
            if identity is None:
                raise AuthenticationRequired()
            raise AuthorizationFailed()

        g.identity = identity
        return f(*args, **kwargs)
    return decorated_function


def flag_suspicious_request():
    """before_request hook: audit bot-like agents and suspicious query strings, never block"""
    denylists = current_app.denylists
    user_agent = (get_user_agent() or '').lower()
    query = request.query_string.decode('utf-8', 'replace').lower()

    agent_match = next((t for t in denylists.get('suspicious_user_agents', []) if t in user_agent), None)
    query_match = next((t for t in denylists.get('suspicious_query_tokens', []) if t in query), None)

    if agent_match or query_match:
        current_app.security_audit.log(
            SecurityEventKind.SUSPICIOUS_REQUEST, get_client_ip(), get_user_agent(),
            path=request.path, agent_match=agent_match, query_match=query_match
        )


def get_tracker() -> AnalyticsTracker:
    """Per-session analytics client, created on first use within a request"""
    if 'analytics' not in g:
        ip, user_agent = get_client_ip(), get_user_agent()
        ingestor = current_app.event_ingestor
        tracker_session = TrackingSession.from_dict(session.get('analytics'),
                                                    current_app.rate_limiter.clock())
        g.analytics = AnalyticsTracker(
            tracker_session,
            transport=lambda payload: ingestor.ingest(payload, ip=ip, user_agent=user_agent)
        )
    return g.analytics


def persist_tracker(response):
    """after_request hook storing tracker state back in the session"""
    if 'analytics' in g:
        session['analytics'] = g.analytics.session.to_dict()
    return response
