# services/analytics.py
"""
Visitor analytics: event contract, ingestion sink and per-session tracker

The ingestion endpoint is an open, fire-and-forget telemetry sink. Events
that do not satisfy the contract below are dropped quietly so tracking can
never break the page that emitted them.
"""

import logging
import math
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

from core.database_models import AnalyticsEventRecord

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Tracked interaction types"""
    PAGE_VIEW = "page_view"
    USER_REGISTRATION = "user_registration"
    APPOINTMENT_BOOKING = "appointment_booking"
    NEWSLETTER_SIGNUP = "newsletter_signup"
    FUNNEL_STEP = "funnel_step"
    SCROLL_DEPTH = "scroll_depth"
    TIME_ON_PAGE = "time_on_page"
    EXTERNAL_LINK_CLICK = "external_link_click"
    PAGE_LEAVE = "page_leave"


# Companion fields that must be present in eventData (values may be null)
REQUIRED_FIELDS = {
    EventType.PAGE_VIEW: ('page', 'title', 'referrer'),
    EventType.USER_REGISTRATION: ('userId', 'acquisitionChannel', 'conversionTime'),
    EventType.APPOINTMENT_BOOKING: ('appointmentId', 'serviceType', 'status', 'conversionTime'),
    EventType.NEWSLETTER_SIGNUP: ('subscriberId', 'signupSource', 'conversionTime'),
    EventType.FUNNEL_STEP: ('funnelName', 'stepName', 'stepNumber'),
}

UTM_PARAMETERS = ('utm_source', 'utm_medium', 'utm_campaign', 'utm_term', 'utm_content')

# Longest string accepted for a top-level attribute
MAX_ATTRIBUTE_LENGTH = 255


class EventRejected(ValueError):
    """Raised internally when a payload does not satisfy the event contract"""


def _optional_str(value: Any, max_length: int = MAX_ATTRIBUTE_LENGTH) -> Optional[str]:
    if value is None or value == '':
        return None
    return str(value)[:max_length]


def _parse_timestamp(value: Any) -> datetime:
    """Client timestamp as naive UTC, falling back to now"""
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
        except ValueError:
            parsed = None
        if parsed is not None:
            if parsed.tzinfo is not None:
                parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
            return parsed
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class AnalyticsEvent:
    """One tracked interaction"""
    event_type: EventType
    event_data: Dict[str, Any] = field(default_factory=dict)
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    referrer: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_term: Optional[str] = None
    utm_content: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc).replace(tzinfo=None))

    @classmethod
    def from_payload(cls, payload: Any, ip: Optional[str] = None,
                     user_agent: Optional[str] = None) -> 'AnalyticsEvent':
        """
        Build an event from the camelCase wire shape

        Raises:
            EventRejected: payload is not an object, eventType is missing or
                unknown, or a required companion field is absent
        """
        if not isinstance(payload, Mapping):
            raise EventRejected('payload is not an object')

        raw_type = payload.get('eventType')
        if not raw_type:
            raise EventRejected('eventType is missing')
        try:
            event_type = EventType(raw_type)
        except ValueError:
            raise EventRejected(f'unknown eventType {raw_type!r}')

        event_data = payload.get('eventData') or {}
        if not isinstance(event_data, Mapping):
            raise EventRejected('eventData is not an object')
        event_data = dict(event_data)

        missing = [name for name in REQUIRED_FIELDS.get(event_type, ()) if name not in event_data]
        if missing:
            raise EventRejected(f"{event_type.value} is missing {', '.join(missing)}")

        if event_type is EventType.FUNNEL_STEP:
            step = event_data['stepNumber']
            if isinstance(step, bool) or not isinstance(step, int) or step < 1:
                raise EventRejected('stepNumber must be a positive integer')

        return cls(
            event_type=event_type,
            event_data=event_data,
            session_id=_optional_str(payload.get('sessionId') or event_data.get('sessionId'), 100),
            user_id=_optional_str(payload.get('userId'), 100),
            referrer=_optional_str(payload.get('referrer'), 2048),
            utm_source=_optional_str(payload.get('utmSource')),
            utm_medium=_optional_str(payload.get('utmMedium')),
            utm_campaign=_optional_str(payload.get('utmCampaign')),
            utm_term=_optional_str(payload.get('utmTerm')),
            utm_content=_optional_str(payload.get('utmContent')),
            ip_address=ip,
            user_agent=_optional_str(user_agent, 512),
            timestamp=_parse_timestamp(event_data.get('timestamp') or payload.get('timestamp'))
        )

    def to_record(self) -> AnalyticsEventRecord:
        return AnalyticsEventRecord(
            event_type=self.event_type.value,
            event_data=self.event_data,
            user_id=self.user_id,
            session_id=self.session_id,
            ip_address=self.ip_address,
            user_agent=self.user_agent,
            referrer=self.referrer,
            utm_source=self.utm_source,
            utm_medium=self.utm_medium,
            utm_campaign=self.utm_campaign,
            utm_term=self.utm_term,
            utm_content=self.utm_content,
            occurred_at=self.timestamp
        )


class EventIngestor:
    """Accepts well-formed events and persists them as fact rows"""

    def __init__(self, repository):
        self.repository = repository

    def ingest(self, payload: Any, ip: Optional[str] = None,
               user_agent: Optional[str] = None) -> bool:
        """
        Store one event

        Args:
            payload: Decoded JSON body
            ip: Client address
            user_agent: Client user agent

        Returns:
            True when the event was stored, False when it was dropped
        """
        try:
            event = AnalyticsEvent.from_payload(payload, ip=ip, user_agent=user_agent)
        except EventRejected as e:
            logger.debug(f"Dropped analytics event from {ip}: {e}")
            return False

        try:
            self.repository.add(event.to_record())
        except Exception as e:
            logger.error(f"Failed to store {event.event_type.value} event: {e}")
            return False

        return True


def _generate_session_id(now_ms: float) -> str:
    return f"session_{int(now_ms)}_{secrets.token_hex(5)}"


@dataclass
class TrackingSession:
    """Browsing-session state the tracker needs between requests"""
    session_id: str
    first_visit_ms: Optional[float] = None
    user_id: Optional[str] = None
    utm: Dict[str, str] = field(default_factory=dict)
    funnel_steps: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'session_id': self.session_id,
            'first_visit_ms': self.first_visit_ms,
            'user_id': self.user_id,
            'utm': dict(self.utm),
            'funnel_steps': dict(self.funnel_steps)
        }

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]], now_ms: float) -> 'TrackingSession':
        if not data or not data.get('session_id'):
            return cls(session_id=_generate_session_id(now_ms))
        return cls(
            session_id=data['session_id'],
            first_visit_ms=data.get('first_visit_ms'),
            user_id=data.get('user_id'),
            utm=dict(data.get('utm') or {}),
            funnel_steps={k: int(v) for k, v in (data.get('funnel_steps') or {}).items()}
        )


def _wall_clock_ms() -> float:
    return time.time() * 1000


class AnalyticsTracker:
    """
    Client for one browsing session

    Builds wire-shaped events and hands them to ``transport``. The transport
    is typically ``EventIngestor.ingest`` for server-side tracking.
    """

    def __init__(self, session: TrackingSession,
                 transport: Callable[[Dict[str, Any]], Any],
                 clock: Optional[Callable[[], float]] = None):
        self.session = session
        self.transport = transport
        self.clock = clock or _wall_clock_ms

    def capture_utm(self, params: Mapping[str, Any]) -> Dict[str, str]:
        """Remember UTM parameters (and referrer) for the rest of the session"""
        for name in UTM_PARAMETERS + ('referrer',):
            value = params.get(name)
            if value:
                self.session.utm[name] = str(value)[:MAX_ATTRIBUTE_LENGTH]
        return dict(self.session.utm)

    def calculate_conversion_time(self) -> Optional[int]:
        """
        Minutes since the first recorded visit

        The first call marks the visit and returns None.
        """
        now = self.clock()
        if self.session.first_visit_ms is None:
            self.session.first_visit_ms = now
            return None
        return math.floor((now - self.session.first_visit_ms) / 60000)

    def track_event(self, event_type: str, event_data: Optional[Dict[str, Any]] = None) -> bool:
        now = self.clock()
        payload = {
            'eventType': event_type,
            'eventData': {
                **(event_data or {}),
                'timestamp': datetime.fromtimestamp(now / 1000, tz=timezone.utc).isoformat(),
                'sessionId': self.session.session_id
            },
            'userId': self.session.user_id,
            'sessionId': self.session.session_id,
            'referrer': self.session.utm.get('referrer'),
            'utmSource': self.session.utm.get('utm_source'),
            'utmMedium': self.session.utm.get('utm_medium'),
            'utmCampaign': self.session.utm.get('utm_campaign'),
            'utmTerm': self.session.utm.get('utm_term'),
            'utmContent': self.session.utm.get('utm_content')
        }

        try:
            return bool(self.transport(payload))
        except Exception as e:
            logger.warning(f"Analytics tracking error for {event_type}: {e}")
            return False

    def track_page_view(self, page: str, title: Optional[str] = None,
                        referrer: Optional[str] = None) -> bool:
        if self.session.first_visit_ms is None:
            self.session.first_visit_ms = self.clock()
        return self.track_event(EventType.PAGE_VIEW.value, {
            'page': page,
            'title': title,
            'referrer': referrer
        })

    def track_user_registration(self, user_id: str, channel: str = 'organic', **acquisition) -> bool:
        self.session.user_id = str(user_id)
        return self.track_event(EventType.USER_REGISTRATION.value, {
            **acquisition,
            'userId': str(user_id),
            'acquisitionChannel': channel,
            'conversionTime': self.calculate_conversion_time()
        })

    def track_appointment_booking(self, appointment_id: str, service_type: str,
                                  status: str = 'pending') -> bool:
        return self.track_event(EventType.APPOINTMENT_BOOKING.value, {
            'appointmentId': appointment_id,
            'serviceType': service_type,
            'status': status,
            'conversionTime': self.calculate_conversion_time()
        })

    def track_newsletter_signup(self, subscriber_id, source: str = 'unknown') -> bool:
        return self.track_event(EventType.NEWSLETTER_SIGNUP.value, {
            'subscriberId': subscriber_id,
            'signupSource': source,
            'conversionTime': self.calculate_conversion_time()
        })

    def track_funnel_step(self, funnel_name: str, step_name: str, step_number: int) -> bool:
        """
        Record progress through a funnel

        Step numbers strictly increase per funnel within a session; a repeated
        or earlier step is skipped.
        """
        last = self.session.funnel_steps.get(funnel_name, 0)
        if step_number <= last:
            logger.debug(f"Skipping funnel step {funnel_name}#{step_number} (already at {last})")
            return False

        self.session.funnel_steps[funnel_name] = step_number
        return self.track_event(EventType.FUNNEL_STEP.value, {
            'funnelName': funnel_name,
            'stepName': step_name,
            'stepNumber': step_number
        })
