# core/errors.py
"""
Request gating error taxonomy

Every rejection raised by the gating layer maps to one HTTP status and one
machine-readable ``type`` so clients can decide whether to back off, fix
their input or give up.
"""

from typing import Dict, List, Optional, Any


class SecurityGuardError(Exception):
    """Base class for all gating rejections"""

    status_code = 400
    error_type = 'error'
    default_message = 'Request rejected'

    def __init__(self, message: Optional[str] = None,
                 headers: Optional[Dict[str, str]] = None):
        self.message = message or self.default_message
        self.headers = dict(headers or {})
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Client-facing JSON body"""
        return {
            'success': False,
            'error': self.message,
            'type': self.error_type
        }


class RateLimitExceeded(SecurityGuardError):
    status_code = 429
    error_type = 'rate_limit'
    default_message = 'Too many requests, please try again later.'

    def __init__(self, message: Optional[str] = None,
                 headers: Optional[Dict[str, str]] = None,
                 retry_after: int = 60):
        super().__init__(message, headers)
        self.retry_after = retry_after
        self.headers.setdefault('Retry-After', str(retry_after))


class CSRFInvalid(SecurityGuardError):
    error_type = 'csrf'
    default_message = 'Invalid security token'


class HoneypotTriggered(SecurityGuardError):
    error_type = 'honeypot'
    default_message = 'Invalid submission detected'


class ValidationFailed(SecurityGuardError):
    error_type = 'validation'
    default_message = 'Invalid input format'

    def __init__(self, errors: List[str], message: Optional[str] = None):
        super().__init__(message)
        self.errors = list(errors)

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body['details'] = self.errors
        return body


class SpamDetected(SecurityGuardError):
    error_type = 'spam_filter'
    default_message = 'Message contains content that appears to be spam'


class AuthenticationRequired(SecurityGuardError):
    status_code = 401
    error_type = 'authentication'
    default_message = 'Authentication required'


class AuthorizationFailed(SecurityGuardError):
    status_code = 403
    error_type = 'authorization'
    default_message = 'Admin access required'


class InternalError(SecurityGuardError):
    """Never carries internal details; the cause is only logged server-side"""

    status_code = 500
    error_type = 'internal'
    default_message = 'An error occurred while processing your request'
