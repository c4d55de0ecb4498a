"""Tests for the security audit trail."""

import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import fakeredis
import pytest

from core.security_events import (
    DatabaseSecurityEventSink,
    MemorySecurityEventSink,
    RedisSecurityEventSink,
    SecurityAuditLogger,
    SecurityEventKind,
    scrub_details,
)
from services.storage import create_session_factory


class TestScrubDetails:

    def test_tokens_are_truncated(self):
        assert scrub_details({'csrf_token': 'a' * 64}) == {'csrf_token': 'aaaaaaaaaa...'}

    def test_long_values_are_truncated(self):
        scrubbed = scrub_details({'value_excerpt': 'x' * 150, 'count': 3})

        assert scrubbed['value_excerpt'] == 'x' * 100 + '...'
        assert scrubbed['count'] == 3


class TestSecurityAuditLogger:

    def test_event_shape(self):
        sink = MemorySecurityEventSink()
        audit = SecurityAuditLogger([sink])

        event = audit.log(SecurityEventKind.HONEYPOT_TRIGGERED, '203.0.113.1', 'curl/8.0',
                          email='bot@spam.example')

        data = event.to_dict()
        assert data['event'] == 'HONEYPOT_TRIGGERED'
        assert data['ip'] == '203.0.113.1'
        assert data['user_agent'] == 'curl/8.0'
        assert data['details'] == {'email': 'bot@spam.example'}
        assert sink.events == [event]

    def test_missing_client_info_defaults_to_unknown(self):
        event = SecurityAuditLogger().log(SecurityEventKind.SUSPICIOUS_REQUEST)

        assert event.ip == 'unknown'
        assert event.user_agent == 'unknown'

    def test_rejections_log_at_warning(self, caplog):
        with caplog.at_level(logging.INFO, logger='security'):
            SecurityAuditLogger().log(SecurityEventKind.CSRF_INVALID, '203.0.113.1')
            SecurityAuditLogger().log(SecurityEventKind.SUBMISSION_ACCEPTED, '203.0.113.1')

        levels = [r.levelno for r in caplog.records if r.name == 'security']
        assert levels == [logging.WARNING, logging.INFO]

    def test_failing_sink_is_swallowed(self):
        broken = MagicMock()
        broken.write.side_effect = RuntimeError('disk full')
        sink = MemorySecurityEventSink()
        audit = SecurityAuditLogger([broken, sink])

        event = audit.log(SecurityEventKind.SPAM_FILTER, '203.0.113.1')

        assert event is not None
        assert sink.events == [event]

    def test_metrics(self):
        audit = SecurityAuditLogger([MemorySecurityEventSink()])
        audit.log(SecurityEventKind.CSRF_INVALID, '203.0.113.1')
        audit.log(SecurityEventKind.CSRF_INVALID, '203.0.113.2')
        audit.log(SecurityEventKind.SPAM_FILTER, '203.0.113.1')

        metrics = audit.metrics(hours=24)

        assert metrics['total_events'] == 3
        assert metrics['unique_ips'] == 2
        assert metrics['event_types'] == {'CSRF_INVALID': 2, 'SPAM_FILTER': 1}
        assert metrics['top_event_types'][0] == ('CSRF_INVALID', 2)
        assert metrics['events_per_hour'] == pytest.approx(3 / 24)


class TestSinks:

    def test_redis_sink_round_trip(self):
        client = fakeredis.FakeRedis(decode_responses=True)
        audit = SecurityAuditLogger([RedisSecurityEventSink(client)])
        audit.log(SecurityEventKind.RATE_LIMIT_EXCEEDED, '203.0.113.1', limit_class='contact')

        recent = audit.sinks[0].recent(datetime.now(timezone.utc) - timedelta(minutes=5))

        assert len(recent) == 1
        assert recent[0]['event'] == 'RATE_LIMIT_EXCEEDED'
        assert recent[0]['details'] == {'limit_class': 'contact'}

    def test_database_sink_round_trip(self):
        sink = DatabaseSecurityEventSink(create_session_factory('sqlite:///:memory:'))
        audit = SecurityAuditLogger([sink])
        audit.log(SecurityEventKind.UNAUTHORIZED_ACCESS, '203.0.113.1', endpoint='admin.security_metrics')

        recent = sink.recent(datetime.now(timezone.utc) - timedelta(minutes=5))

        assert len(recent) == 1
        assert recent[0]['event'] == 'UNAUTHORIZED_ACCESS'
        assert recent[0]['details'] == {'endpoint': 'admin.security_metrics'}
        assert sink.recent(datetime.now(timezone.utc) + timedelta(minutes=5)) == []
