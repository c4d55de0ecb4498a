"""End-to-end tests for analytics ingestion and the admin endpoints."""

import pytest

from core.database_models import AnalyticsEventRecord
from core.security_events import SecurityEventKind


PAGE_VIEW = {
    'eventType': 'page_view',
    'eventData': {'page': '/remedies', 'title': 'Remedies', 'referrer': ''},
    'sessionId': 'session_1',
}


class TestEventIngestion:

    def test_valid_event_is_accepted_and_stored(self, app, client):
        response = client.post('/api/analytics/events', json=PAGE_VIEW)

        assert response.status_code == 202
        assert response.get_json() == {'success': True}
        events, total = app.analytics_repository.list_events()
        assert total == 1

    @pytest.mark.parametrize('body', [
        '{"eventData": {"page": "/"}}',
        '{"eventType": "unknown_kind"}',
        'this is not json',
        '[1, 2, 3]',
    ])
    def test_bad_events_still_get_success_shape(self, app, client, body):
        response = client.post('/api/analytics/events', data=body,
                               content_type='application/json')

        assert response.status_code == 202
        assert response.get_json() == {'success': True}
        assert app.analytics_repository.list_events() == ([], 0)

    def test_cross_origin_requests_are_allowed(self, client):
        response = client.post('/api/analytics/events', json=PAGE_VIEW,
                               headers={'Origin': 'https://shop.remedies.example'})

        assert response.headers['Access-Control-Allow-Origin'] in ('*', 'https://shop.remedies.example')

    def test_client_address_is_recorded(self, app, client):
        client.post('/api/analytics/events', json=PAGE_VIEW,
                    environ_base={'REMOTE_ADDR': '198.51.100.23'})

        with app.session_factory() as db_session:
            record = db_session.query(AnalyticsEventRecord).one()
        assert record.ip_address == '198.51.100.23'


class TestAdminAccess:

    def test_anonymous_is_401(self, client, security_events):
        response = client.get('/api/analytics/events')

        assert response.status_code == 401
        assert response.get_json()['type'] == 'authentication'
        assert security_events[-1].kind is SecurityEventKind.UNAUTHORIZED_ACCESS

    @pytest.mark.parametrize('path', ['/api/analytics/newsletter', '/api/analytics/appointments'])
    def test_summaries_require_login(self, client, path):
        assert client.get(path).status_code == 401

    def test_non_admin_is_403(self, client, login_as, security_events):
        login_as('customer-7', role='user')

        response = client.get('/api/analytics/registrations')

        assert response.status_code == 403
        assert response.get_json()['type'] == 'authorization'
        assert security_events[-1].details['user_id'] == 'customer-7'


class TestAdminReadModels:

    @pytest.fixture(autouse=True)
    def admin(self, login_as):
        login_as()

    def test_list_events(self, client):
        client.post('/api/analytics/events', json=PAGE_VIEW)
        client.post('/api/analytics/events', json={'eventType': 'page_leave'})

        response = client.get('/api/analytics/events?eventType=page_view&limit=10')

        body = response.get_json()
        assert response.status_code == 200
        assert body['totalCount'] == 1
        assert body['events'][0]['eventType'] == 'page_view'

    def test_unknown_event_type_filter(self, client):
        response = client.get('/api/analytics/events?eventType=purchase')

        assert response.status_code == 400
        assert response.get_json()['type'] == 'validation'

    def test_registrations_grouped_by_month(self, client):
        for day in ('2024-05-02', '2024-05-20'):
            client.post('/api/analytics/events', json={
                'eventType': 'user_registration',
                'eventData': {'userId': day, 'acquisitionChannel': 'organic',
                              'conversionTime': 3, 'timestamp': f'{day}T08:00:00Z'},
            })

        response = client.get('/api/analytics/registrations?groupBy=month')

        body = response.get_json()
        assert body['totalCount'] == 2
        assert body['registrations'][0]['date'] == '2024-05'
        assert body['registrations'][0]['registrations'] == 2

    def test_invalid_grouping_and_dates(self, client):
        assert client.get('/api/analytics/registrations?groupBy=year').status_code == 400
        assert client.get('/api/analytics/registrations?startDate=yesterday').status_code == 400

    def test_funnel(self, client):
        for session_id, step, name in [('a', 1, 'service'), ('a', 2, 'time'), ('b', 1, 'service')]:
            client.post('/api/analytics/events', json={
                'eventType': 'funnel_step',
                'sessionId': session_id,
                'eventData': {'funnelName': 'booking', 'stepName': name, 'stepNumber': step},
            })

        body = client.get('/api/analytics/funnels/booking').get_json()

        assert body['funnelName'] == 'booking'
        assert [s['sessions'] for s in body['steps']] == [2, 1]
        assert body['steps'][1]['conversionRate'] == 50.0

    def test_newsletter_summary(self, client):
        for source in ('footer', 'footer', 'popup'):
            client.post('/api/analytics/events', json={
                'eventType': 'newsletter_signup',
                'eventData': {'subscriberId': 1, 'signupSource': source, 'conversionTime': 2,
                              'timestamp': '2024-07-08T10:00:00Z'},
            })

        response = client.get('/api/analytics/newsletter?groupBy=month&signupSource=footer')

        body = response.get_json()
        assert response.status_code == 200
        assert body['totalCount'] == 2
        assert body['analytics'] == [{
            'date': '2024-07', 'signups': 2, 'signupSources': ['footer'], 'avgConversionTime': 2
        }]

    def test_appointment_summary(self, client):
        for status in ('approved', 'cancelled'):
            client.post('/api/analytics/events', json={
                'eventType': 'appointment_booking',
                'eventData': {'appointmentId': status, 'serviceType': 'consultation',
                              'status': status, 'conversionTime': None,
                              'timestamp': '2024-07-08T10:00:00Z'},
            })

        body = client.get('/api/analytics/appointments?serviceType=consultation').get_json()

        assert body['totalCount'] == 2
        assert body['analytics'][0]['date'] == '2024-07-08'
        assert body['analytics'][0]['conversionRate'] == 50.0

    def test_summaries_validate_grouping(self, client):
        assert client.get('/api/analytics/newsletter?groupBy=year').status_code == 400
        assert client.get('/api/analytics/appointments?endDate=soon').status_code == 400

    def test_security_metrics(self, client):
        client.post('/api/contact', json={})
        client.post('/api/contact', json={})

        response = client.get('/api/admin/security/metrics?hours=1')

        metrics = response.get_json()['metrics']
        assert response.status_code == 200
        assert metrics['timeframe_hours'] == 1
        assert metrics['event_types']['CSRF_INVALID'] == 2
