# core/security_events.py
"""
Security event audit trail

Every rejection on the request path and every accepted sensitive submission
produces one immutable SecurityEvent. Writing events is best-effort: a failing
sink is logged and skipped, never allowed to replace the response the client
was going to get.
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

import redis

from core.database_models import SecurityEventRecord

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger('security')

SENSITIVE_DETAIL_KEYS = {'csrf_token', 'provided_token', 'token', 'password'}
MAX_DETAIL_LENGTH = 100


class SecurityEventKind(Enum):
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    CSRF_INVALID = "CSRF_INVALID"
    HONEYPOT_TRIGGERED = "HONEYPOT_TRIGGERED"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    SPAM_FILTER = "SPAM_FILTER"
    SUBMISSION_ACCEPTED = "SUBMISSION_ACCEPTED"
    UNAUTHORIZED_ACCESS = "UNAUTHORIZED_ACCESS"
    SUSPICIOUS_REQUEST = "SUSPICIOUS_REQUEST"
    INTERNAL_ERROR = "INTERNAL_ERROR"


REJECTION_KINDS = {
    SecurityEventKind.RATE_LIMIT_EXCEEDED,
    SecurityEventKind.CSRF_INVALID,
    SecurityEventKind.HONEYPOT_TRIGGERED,
    SecurityEventKind.VALIDATION_FAILED,
    SecurityEventKind.SPAM_FILTER,
    SecurityEventKind.UNAUTHORIZED_ACCESS,
}


@dataclass(frozen=True)
class SecurityEvent:
    """Immutable audit entry"""
    timestamp: datetime
    kind: SecurityEventKind
    ip: str
    user_agent: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp.isoformat(),
            'event': self.kind.value,
            'ip': self.ip,
            'user_agent': self.user_agent,
            'details': self.details
        }


def scrub_details(details: Dict[str, Any]) -> Dict[str, Any]:
    """Truncate secrets and long values before they reach the audit trail"""
    scrubbed = {}
    for key, value in details.items():
        if key in SENSITIVE_DETAIL_KEYS and isinstance(value, str):
            scrubbed[key] = value[:10] + '...' if value else None
        elif isinstance(value, str) and len(value) > MAX_DETAIL_LENGTH:
            scrubbed[key] = value[:MAX_DETAIL_LENGTH] + '...'
        else:
            scrubbed[key] = value
    return scrubbed


class MemorySecurityEventSink:
    """Keeps events in a list; used by tests and local development"""

    def __init__(self):
        self.events: List[SecurityEvent] = []

    def write(self, event: SecurityEvent) -> None:
        self.events.append(event)

    def recent(self, since: datetime) -> List[Dict[str, Any]]:
        return [e.to_dict() for e in self.events if e.timestamp >= since]


class RedisSecurityEventSink:
    """
    Sorted set of JSON events scored by epoch seconds

    Entries older than the retention period are trimmed on every write.
    """

    def __init__(self, redis_client: redis.Redis, key: str = 'security_events',
                 retention_days: int = 90):
        self.redis = redis_client
        self.key = key
        self.retention_days = retention_days

    def write(self, event: SecurityEvent) -> None:
        score = event.timestamp.timestamp()
        entry = dict(event.to_dict(), id=uuid.uuid4().hex)
        cutoff = score - self.retention_days * 86400

        pipe = self.redis.pipeline()
        pipe.zadd(self.key, {json.dumps(entry, default=str): score})
        pipe.zremrangebyscore(self.key, '-inf', cutoff)
        pipe.execute()

    def recent(self, since: datetime) -> List[Dict[str, Any]]:
        entries = self.redis.zrangebyscore(self.key, since.timestamp(), '+inf')
        return [json.loads(entry) for entry in entries]


class DatabaseSecurityEventSink:
    """Appends events to the security_events table"""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def write(self, event: SecurityEvent) -> None:
        with self.session_factory() as db_session:
            db_session.add(SecurityEventRecord(
                occurred_at=event.timestamp.replace(tzinfo=None),
                kind=event.kind.value,
                ip_address=event.ip,
                user_agent=event.user_agent,
                details=event.details
            ))
            db_session.commit()

    def recent(self, since: datetime) -> List[Dict[str, Any]]:
        with self.session_factory() as db_session:
            rows = (db_session.query(SecurityEventRecord)
                    .filter(SecurityEventRecord.occurred_at >= since.replace(tzinfo=None))
                    .order_by(SecurityEventRecord.occurred_at)
                    .all())
            return [row.to_dict() for row in rows]


class SecurityAuditLogger:
    """Creates SecurityEvents and fans them out to the configured sinks"""

    def __init__(self, sinks: Optional[Iterable[Any]] = None):
        self.sinks = list(sinks or [])

    def log(self, kind: SecurityEventKind, ip: Optional[str] = None,
            user_agent: Optional[str] = None, **details) -> Optional[SecurityEvent]:
        """
        Record a security event

        Args:
            kind: Event kind
            ip: Client address
            user_agent: Client user agent
            **details: Context for forensic review (scrubbed before storage)

        Returns:
            The event, or None if it could not even be built
        """
        try:
            event = SecurityEvent(
                timestamp=datetime.now(timezone.utc),
                kind=kind,
                ip=ip or 'unknown',
                user_agent=user_agent or 'unknown',
                details=scrub_details(details)
            )
            level = logging.WARNING if kind in REJECTION_KINDS else logging.INFO
            audit_logger.log(level, f"{kind.value} ip={event.ip} details={event.details}")
        except Exception as e:
            logger.error(f"Failed to build security event {kind}: {str(e)}")
            return None

        for sink in self.sinks:
            try:
                sink.write(event)
            except Exception as e:
                logger.error(f"Security event sink {type(sink).__name__} failed: {str(e)}")

        return event

    def metrics(self, hours: int = 24) -> Dict[str, Any]:
        """
        Summarise recent events for the admin dashboard

        Args:
            hours: Number of hours to analyze

        Returns:
            Totals, unique IPs and per-kind counts
        """
        since = datetime.now(timezone.utc) - timedelta(hours=hours)
        source = next((s for s in self.sinks if hasattr(s, 'recent')), None)

        try:
            events = source.recent(since) if source else []
        except Exception as e:
            logger.error(f"Failed to get security metrics: {str(e)}")
            events = []

        event_types: Dict[str, int] = {}
        source_ips = set()
        for event in events:
            event_type = event.get('event', 'unknown')
            event_types[event_type] = event_types.get(event_type, 0) + 1
            if event.get('ip'):
                source_ips.add(event['ip'])

        total_events = len(events)
        return {
            'timeframe_hours': hours,
            'total_events': total_events,
            'unique_ips': len(source_ips),
            'event_types': event_types,
            'top_event_types': sorted(event_types.items(), key=lambda x: x[1], reverse=True)[:5],
            'events_per_hour': total_events / hours if hours > 0 else 0
        }
