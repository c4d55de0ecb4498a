# core/request_guard.py
"""
Gate for mutating form submissions

Checks run in a fixed order and stop at the first failure:
CSRF token -> honeypot field -> schema validation -> sanitization -> spam filter.
Each failure records exactly one SecurityEvent and raises the matching
SecurityGuardError.
"""

import logging
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence

from core.csrf import CSRFTokenManager
from core.errors import CSRFInvalid, HoneypotTriggered, SpamDetected, ValidationFailed
from core.sanitizer import DEFAULT_SQL_KEYWORDS, keyword_pattern, sanitize_payload
from core.security_events import SecurityAuditLogger, SecurityEventKind
from core.validation import ValidationResult, ValidationSchema, validate

logger = logging.getLogger(__name__)


class SpamFilter:
    """Case-insensitive substring match against a keyword denylist"""

    def __init__(self, keywords: Iterable[str]):
        self.keywords = [k.lower() for k in keywords if k]

    def match(self, text: Any) -> Optional[str]:
        """Return the first denylisted keyword found in ``text``"""
        if not isinstance(text, str):
            return None
        lowered = text.lower()
        for keyword in self.keywords:
            if keyword in lowered:
                return keyword
        return None


class RequestGuard:
    """
    CSRF, honeypot, validation, sanitization and spam checks for one request
    """

    def __init__(self, csrf: CSRFTokenManager, audit: SecurityAuditLogger,
                 spam_filter: Optional[SpamFilter] = None,
                 sql_keywords: Sequence[str] = DEFAULT_SQL_KEYWORDS,
                 honeypot_field: str = 'honeypot',
                 csrf_field: str = 'csrf_token'):
        self.csrf = csrf
        self.audit = audit
        self.spam_filter = spam_filter or SpamFilter([])
        self.sql_keywords = keyword_pattern(sql_keywords)
        self.honeypot_field = honeypot_field
        self.csrf_field = csrf_field

    def validate(self, payload: Mapping[str, Any], schema: ValidationSchema) -> ValidationResult:
        return validate(payload, schema)

    def inspect(self, payload: Mapping[str, Any], schema: ValidationSchema, *,
                session_key: Optional[str], ip: Optional[str] = None,
                user_agent: Optional[str] = None,
                spam_fields: Sequence[str] = ()) -> Dict[str, Any]:
        """
        Run every check against a submitted payload

        Args:
            payload: Raw submitted fields (JSON body or form)
            schema: Endpoint schema
            session_key: Session the CSRF token must be bound to
            ip: Client address for the audit trail
            user_agent: Client user agent for the audit trail
            spam_fields: Fields passed through the spam filter

        Returns:
            Sanitized payload limited to the schema's fields

        Raises:
            CSRFInvalid, HoneypotTriggered, ValidationFailed, SpamDetected
        """
        email = payload.get('email') if isinstance(payload.get('email'), str) else None

        token = payload.get(self.csrf_field)
        if not self.csrf.validate(token, session_key):
            self.audit.log(SecurityEventKind.CSRF_INVALID, ip, user_agent,
                           email=email, provided_token=token if isinstance(token, str) else None)
            raise CSRFInvalid()

        honeypot = payload.get(self.honeypot_field)
        if honeypot is not None and honeypot != '':
            self.audit.log(SecurityEventKind.HONEYPOT_TRIGGERED, ip, user_agent,
                           email=email, honeypot=str(honeypot))
            raise HoneypotTriggered()

        fields = {name: payload.get(name) for name in schema}
        result = self.validate(fields, schema)
        if not result.is_valid:
            self.audit.log(SecurityEventKind.VALIDATION_FAILED, ip, user_agent,
                           email=email, errors=result.errors)
            raise ValidationFailed(result.errors)

        present = {name: value.strip() if isinstance(value, str) else value
                   for name, value in fields.items() if value is not None}
        cleaned = sanitize_payload(
            {name: value for name, value in present.items() if schema[name].sanitize},
            self.sql_keywords
        )
        cleaned.update({name: value for name, value in present.items()
                        if not schema[name].sanitize})

        for name in spam_fields:
            keyword = self.spam_filter.match(cleaned.get(name))
            if keyword:
                self.audit.log(SecurityEventKind.SPAM_FILTER, ip, user_agent,
                               email=cleaned.get('email'), field=name, keyword=keyword,
                               value_excerpt=cleaned.get(name))
                raise SpamDetected()

        logger.debug(f"Submission from {ip} passed guard checks")
        return cleaned

    def record_success(self, ip: Optional[str] = None, user_agent: Optional[str] = None,
                       **details) -> None:
        self.audit.log(SecurityEventKind.SUBMISSION_ACCEPTED, ip, user_agent, **details)
