"""Tests for response headers, error rendering and request auditing."""

from unittest.mock import patch

import pytest
from flask import Flask, Response

from config.security import ProductionConfig, TestingConfig
from core.security_events import SecurityEventKind
from middleware.security import build_csp, security_headers


def config_dict(config_class):
    app = Flask(__name__)
    app.config.from_object(config_class)
    return app.config


class TestSecurityHeaders:

    def test_every_response_carries_headers(self, client):
        response = client.get('/health')

        assert response.headers['X-Frame-Options'] == 'DENY'
        assert response.headers['X-Content-Type-Options'] == 'nosniff'
        assert response.headers['X-XSS-Protection'] == '1; mode=block'
        assert response.headers['Referrer-Policy'] == 'strict-origin-when-cross-origin'
        assert "frame-ancestors 'none'" in response.headers['Content-Security-Policy']
        assert 'Strict-Transport-Security' not in response.headers

    def test_permissions_policy_disables_device_features(self, client):
        policy = client.get('/health').headers['Permissions-Policy']

        for feature in ('geolocation', 'microphone', 'camera', 'payment', 'usb',
                        'magnetometer', 'gyroscope', 'accelerometer'):
            assert f'{feature}=()' in policy

    def test_error_responses_carry_headers(self, client):
        response = client.get('/does-not-exist')

        assert response.status_code == 404
        assert response.get_json()['type'] == 'not_found'
        assert response.headers['X-Frame-Options'] == 'DENY'

    def test_hsts_only_in_production(self):
        production = security_headers(Response(), config_dict(ProductionConfig))
        testing = security_headers(Response(), config_dict(TestingConfig))

        assert production.headers['Strict-Transport-Security'].startswith('max-age=31536000')
        assert 'Strict-Transport-Security' not in testing.headers

    def test_build_csp(self):
        assert build_csp({'default-src': "'self'", 'object-src': "'none'"}) == \
            "default-src 'self'; object-src 'none'"


class TestErrorHandling:

    def test_method_not_allowed(self, client):
        response = client.put('/api/contact')

        assert response.status_code == 405
        assert response.get_json()['success'] is False

    def test_unexpected_errors_hide_details(self, app, client, csrf_token, contact_payload,
                                           security_events):
        with patch.object(app.submissions, 'save_contact',
                          side_effect=RuntimeError('SELECT * FROM contact_messages failed')):
            response = client.post('/api/contact', json=dict(contact_payload, csrf_token=csrf_token()))

        assert response.status_code == 500
        assert response.get_json() == {
            'success': False,
            'error': 'An error occurred while processing your request',
            'type': 'internal',
        }
        assert security_events[-1].kind is SecurityEventKind.INTERNAL_ERROR


class TestSuspiciousRequests:

    @pytest.mark.parametrize('headers,query', [
        ({'User-Agent': 'sqlmap-scanner/1.0'}, ''),
        ({'User-Agent': 'Mozilla/5.0'}, '?q=<script>alert(1)</script>'),
    ])
    def test_flagged_but_not_blocked(self, client, security_events, headers, query):
        response = client.get(f'/api/contact{query}', headers=headers)

        assert response.status_code == 200
        assert security_events[0].kind is SecurityEventKind.SUSPICIOUS_REQUEST

    def test_ordinary_browser_is_not_flagged(self, client, security_events):
        client.get('/api/contact', headers={'User-Agent': 'Mozilla/5.0 (X11; Linux x86_64)'})

        assert security_events == []


class TestHealth:

    def test_health(self, client):
        response = client.get('/health')

        assert response.status_code == 200
        assert response.get_json()['components']['database'] == 'healthy'
