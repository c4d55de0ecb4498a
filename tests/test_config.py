"""Tests for configuration selection and denylist loading."""

import json

from config.security import (
    DevelopmentConfig,
    ProductionConfig,
    TestingConfig,
    get_config,
    load_denylists,
)
from core.rate_limiter import RateLimitPolicy


class TestConfig:

    def test_get_config(self):
        assert get_config('testing') is TestingConfig
        assert get_config('development') is DevelopmentConfig
        assert get_config('staging') is ProductionConfig

    def test_presets_match_endpoint_classes(self):
        presets = ProductionConfig.RATE_LIMIT_PRESETS

        assert presets['auth'] == RateLimitPolicy(window_ms=900_000, max_requests=5)
        assert presets['contact'] == RateLimitPolicy(window_ms=3_600_000, max_requests=3)

    def test_production_enables_hsts(self):
        assert ProductionConfig.HSTS_ENABLED is True
        assert TestingConfig.HSTS_ENABLED is False


class TestDenylists:

    def test_bundled_lists(self):
        lists = load_denylists()

        assert 'free money' in lists['spam_keywords']
        assert 'DROP' in lists['sql_keywords']
        assert 'curl' in lists['suspicious_user_agents']

    def test_custom_file(self, tmp_path):
        path = tmp_path / 'denylists.json'
        path.write_text(json.dumps({'spam_keywords': ['crypto giveaway']}))

        assert load_denylists(path) == {'spam_keywords': ['crypto giveaway']}

    def test_app_uses_configured_lists(self, tmp_path, monkeypatch):
        path = tmp_path / 'denylists.json'
        path.write_text(json.dumps({'spam_keywords': ['crypto giveaway'], 'sql_keywords': []}))
        monkeypatch.setattr(TestingConfig, 'DENYLIST_PATH', str(path))

        from app import create_app
        app = create_app('testing')

        assert app.request_guard.spam_filter.match('Join our CRYPTO GIVEAWAY') == 'crypto giveaway'
        assert app.request_guard.spam_filter.match('You are a winner') is None
