# api/analytics.py
"""
Analytics API endpoints: open ingestion sink plus admin read models
"""

from datetime import date

from flask import Blueprint, current_app, jsonify, request

from core.errors import ValidationFailed
from middleware.security import get_client_ip, get_user_agent, rate_limit, require_admin
from services.analytics import EventType

# Create blueprint
analytics_bp = Blueprint('analytics', __name__)

GROUPINGS = ('day', 'week', 'month')
MAX_PAGE_SIZE = 500


def _parse_date(name):
    value = request.args.get(name)
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise ValidationFailed([f"{name} must be a date (YYYY-MM-DD)"])


def _parse_grouping():
    group_by = request.args.get('groupBy', 'day')
    if group_by not in GROUPINGS:
        raise ValidationFailed([f"groupBy must be one of {', '.join(GROUPINGS)}"])
    return group_by


def _parse_int(name, default, minimum=0, maximum=None):
    value = request.args.get(name, type=int)
    if value is None:
        return default
    if value < minimum:
        return minimum
    if maximum is not None and value > maximum:
        return maximum
    return value


@analytics_bp.route('/api/analytics/events', methods=['POST'])
def ingest_event():
    """Fire-and-forget event sink; the caller always sees success"""
    payload = request.get_json(silent=True, force=True)
    current_app.event_ingestor.ingest(payload, ip=get_client_ip(), user_agent=get_user_agent())
    return jsonify({'success': True}), 202


@analytics_bp.route('/api/analytics/events', methods=['GET'])
@rate_limit('api')
@require_admin
def list_events():
    event_type = request.args.get('eventType')
    if event_type and event_type not in {t.value for t in EventType}:
        raise ValidationFailed([f"eventType {event_type} is not supported"])

    limit = _parse_int('limit', 100, minimum=1, maximum=MAX_PAGE_SIZE)
    offset = _parse_int('offset', 0)

    events, total = current_app.analytics_repository.list_events(event_type, limit, offset)
    return jsonify({'events': events, 'totalCount': total, 'limit': limit, 'offset': offset})


@analytics_bp.route('/api/analytics/registrations', methods=['GET'])
@rate_limit('api')
@require_admin
def registration_summary():
    summary = current_app.analytics_repository.registration_summary(
        start=_parse_date('startDate'),
        end=_parse_date('endDate'),
        group_by=_parse_grouping()
    )
    return jsonify(summary)


@analytics_bp.route('/api/analytics/newsletter', methods=['GET'])
@rate_limit('api')
@require_admin
def newsletter_summary():
    summary = current_app.analytics_repository.newsletter_summary(
        start=_parse_date('startDate'),
        end=_parse_date('endDate'),
        group_by=_parse_grouping(),
        signup_source=request.args.get('signupSource')
    )
    return jsonify(summary)


@analytics_bp.route('/api/analytics/appointments', methods=['GET'])
@rate_limit('api')
@require_admin
def appointment_summary():
    summary = current_app.analytics_repository.appointment_summary(
        start=_parse_date('startDate'),
        end=_parse_date('endDate'),
        group_by=_parse_grouping(),
        service_type=request.args.get('serviceType')
    )
    return jsonify(summary)


@analytics_bp.route('/api/analytics/funnels/<funnel_name>', methods=['GET'])
@rate_limit('api')
@require_admin
def funnel_summary(funnel_name):
    steps = current_app.analytics_repository.funnel_summary(funnel_name)
    return jsonify({'funnelName': funnel_name, 'steps': steps})
