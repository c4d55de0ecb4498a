"""
Pytest configuration and fixtures.

This module provides:
- Flask app built with the testing config (in-memory SQLite, in-process stores)
- Test client and CSRF token helper
- Captured security events
- Admin session helper
"""

import pytest

from app import create_app
from core.security_events import MemorySecurityEventSink


# =============================================================================
# APPLICATION FIXTURES
# =============================================================================


@pytest.fixture
def app():
    """Fresh application (and database) per test."""
    application = create_app('testing')
    yield application


@pytest.fixture
def client(app):
    with app.test_client() as test_client:
        yield test_client


@pytest.fixture
def security_events(app):
    """Every SecurityEvent the app logs during the test."""
    sink = MemorySecurityEventSink()
    app.security_audit.sinks.append(sink)
    return sink.events


@pytest.fixture
def csrf_token(client):
    """Return a callable issuing a fresh session-bound CSRF token."""
    def issue():
        response = client.get('/api/csrf-token')
        assert response.status_code == 200
        return response.get_json()['csrf_token']
    return issue


# =============================================================================
# AUTHENTICATION FIXTURES
# =============================================================================


@pytest.fixture
def login_as(client):
    """Return a callable storing an identity in the client's session."""
    def login(user_id='admin-1', role='admin'):
        with client.session_transaction() as sess:
            sess['user_id'] = user_id
            sess['role'] = role
    return login


# =============================================================================
# TEST DATA
# =============================================================================


@pytest.fixture
def contact_payload():
    return {
        'name': 'Jane Doe',
        'email': 'jane.doe@remedies-shop.org',
        'subject': 'Question about herbal teas',
        'message': 'Hello, I would like to book a consultation about chamomile blends.',
    }
