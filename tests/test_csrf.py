"""Tests for session-bound CSRF tokens."""

from unittest.mock import MagicMock

import fakeredis
import pytest
import redis

from core.csrf import (
    CSRFTokenManager,
    InMemoryTokenStore,
    RedisTokenStore,
    generate_token,
    is_well_formed,
)


class TestTokenShape:

    def test_generated_token_is_64_lowercase_hex(self):
        token = generate_token()

        assert len(token) == 64
        assert is_well_formed(token) is True

    @pytest.mark.parametrize('token', [
        '',
        None,
        'abc123',
        'g' * 64,
        'a' * 63,
        'a' * 65,
        'A' * 64,
        12345,
    ])
    def test_malformed_tokens_are_rejected(self, token):
        assert is_well_formed(token) is False


class TestCSRFTokenManager:

    @pytest.fixture
    def clock(self):
        state = {'now': 1_000.0}
        clock = lambda: state['now']
        clock.state = state
        return clock

    @pytest.fixture
    def manager(self, clock):
        return CSRFTokenManager(store=InMemoryTokenStore(clock=clock), ttl_seconds=60)

    def test_issued_token_validates_once(self, manager):
        token = manager.issue('session-a')

        assert manager.validate(token, 'session-a') is True
        assert manager.validate(token, 'session-a') is False

    def test_token_is_bound_to_its_session(self, manager):
        token = manager.issue('session-a')

        assert manager.validate(token, 'session-b') is False

    def test_missing_session_is_rejected(self, manager):
        token = manager.issue('session-a')

        assert manager.validate(token, None) is False

    def test_well_formed_but_never_issued(self, manager):
        assert manager.validate(generate_token(), 'session-a') is False

    def test_expired_token_is_rejected(self, manager, clock):
        token = manager.issue('session-a')
        clock.state['now'] += 61

        assert manager.validate(token, 'session-a') is False

    def test_reusable_tokens_when_single_use_is_off(self, clock):
        manager = CSRFTokenManager(store=InMemoryTokenStore(clock=clock), single_use=False)
        token = manager.issue('session-a')

        assert manager.validate(token, 'session-a') is True
        assert manager.validate(token, 'session-a') is True


class TestRedisTokenStore:

    def test_round_trip(self):
        client = fakeredis.FakeRedis(decode_responses=True)
        manager = CSRFTokenManager(store=RedisTokenStore(client), ttl_seconds=60)

        token = manager.issue('session-a')

        assert 0 < client.ttl(f'csrf:session-a:{token}') <= 60
        assert manager.validate(token, 'session-a') is True
        assert manager.validate(token, 'session-a') is False

    def test_fails_closed_when_redis_is_down(self):
        store = MagicMock(spec=RedisTokenStore)
        store.consume.side_effect = redis.ConnectionError('connection refused')
        manager = CSRFTokenManager(store=store)

        assert manager.validate(generate_token(), 'session-a') is False
