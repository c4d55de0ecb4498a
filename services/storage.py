# services/storage.py
"""
SQLAlchemy persistence for submissions and analytics facts

All queries go through the ORM, so user input is always sent as bound
parameters regardless of what the sanitizer did upstream.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import create_engine, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from core.database_models import (
    AnalyticsEventRecord, Base, ContactMessage, NewsletterSubscriber
)

logger = logging.getLogger(__name__)


def create_session_factory(database_url: str, create_tables: bool = True) -> sessionmaker:
    """
    Build a session factory for ``database_url``

    Args:
        database_url: SQLAlchemy URL
        create_tables: Create missing tables (tests and development)

    Returns:
        sessionmaker bound to a new engine
    """
    engine_options: Dict[str, Any] = {'pool_pre_ping': True}

    if database_url.startswith('sqlite'):
        engine_options['connect_args'] = {'check_same_thread': False}
        if ':memory:' in database_url or database_url == 'sqlite://':
            # One shared connection, otherwise each session sees an empty database
            engine_options['poolclass'] = StaticPool
    else:
        engine_options.update({'pool_size': 10, 'max_overflow': 20, 'pool_recycle': 3600})

    engine = create_engine(database_url, **engine_options)
    if create_tables:
        Base.metadata.create_all(engine)

    logger.info(f"Database configured: {database_url.split('@')[-1]}")
    return sessionmaker(bind=engine, expire_on_commit=False)


class SubmissionRepository:
    """Contact messages and newsletter subscriptions"""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def save_contact(self, data: Dict[str, Any]) -> ContactMessage:
        with self.session_factory() as db_session:
            contact = ContactMessage(
                name=data['name'],
                email=data['email'],
                subject=data['subject'],
                message=data['message'],
                ip_address=data.get('ip_address'),
                user_agent=data.get('user_agent')
            )
            db_session.add(contact)
            db_session.commit()
            return contact

    def subscribe(self, email: str, signup_source: Optional[str] = None) -> Tuple[NewsletterSubscriber, bool]:
        """
        Add a subscriber

        Returns:
            Tuple of (subscriber, created); created is False for an existing address
        """
        with self.session_factory() as db_session:
            existing = db_session.query(NewsletterSubscriber).filter_by(email=email).one_or_none()
            if existing is not None:
                return existing, False

            subscriber = NewsletterSubscriber(email=email, signup_source=signup_source)
            db_session.add(subscriber)
            try:
                db_session.commit()
            except IntegrityError:
                # Lost a race with a concurrent signup for the same address
                db_session.rollback()
                return db_session.query(NewsletterSubscriber).filter_by(email=email).one(), False
            return subscriber, True

    def unsubscribe(self, email: str) -> bool:
        with self.session_factory() as db_session:
            deleted = db_session.query(NewsletterSubscriber).filter_by(email=email).delete()
            db_session.commit()
            return deleted > 0


class AnalyticsEventRepository:
    """Append-only analytics facts plus the read models behind the admin dashboard"""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def add(self, record: AnalyticsEventRecord) -> AnalyticsEventRecord:
        with self.session_factory() as db_session:
            db_session.add(record)
            db_session.commit()
            return record

    def list_events(self, event_type: Optional[str] = None, limit: int = 100,
                    offset: int = 0) -> Tuple[List[Dict[str, Any]], int]:
        """Newest first, with the total count before pagination"""
        with self.session_factory() as db_session:
            query = db_session.query(AnalyticsEventRecord)
            if event_type:
                query = query.filter(AnalyticsEventRecord.event_type == event_type)

            total = query.count()
            rows = (query.order_by(AnalyticsEventRecord.occurred_at.desc(),
                                   AnalyticsEventRecord.id.desc())
                    .offset(offset)
                    .limit(limit)
                    .all())
            return [row.to_dict() for row in rows], total

    def _events_between(self, db_session, event_type: str, start: Optional[date],
                        end: Optional[date]):
        query = db_session.query(AnalyticsEventRecord).filter(
            AnalyticsEventRecord.event_type == event_type
        )
        if start:
            query = query.filter(AnalyticsEventRecord.occurred_at >= datetime.combine(start, datetime.min.time()))
        if end:
            query = query.filter(AnalyticsEventRecord.occurred_at < datetime.combine(end + timedelta(days=1), datetime.min.time()))
        return query

    def registration_summary(self, start: Optional[date] = None, end: Optional[date] = None,
                             group_by: str = 'day') -> Dict[str, Any]:
        """
        Group user_registration events by day, week (starting Sunday) or month

        Returns:
            Dict with registrations (newest bucket first) and totalCount
        """
        with self.session_factory() as db_session:
            rows = self._events_between(db_session, 'user_registration', start, end).all()

        buckets: Dict[str, Dict[str, Any]] = {}
        for row in rows:
            key = _bucket_key(row.occurred_at.date(), group_by)
            bucket = buckets.setdefault(key, {
                'date': key,
                'registrations': 0,
                'referrers': [],
                'utmSources': [],
                'acquisitionChannels': []
            })
            bucket['registrations'] += 1
            if row.referrer:
                bucket['referrers'].append(row.referrer)
            if row.utm_source:
                bucket['utmSources'].append(row.utm_source)
            channel = (row.event_data or {}).get('acquisitionChannel')
            if channel:
                bucket['acquisitionChannels'].append(channel)

        return {
            'registrations': sorted(buckets.values(), key=lambda b: b['date'], reverse=True),
            'totalCount': len(rows)
        }

    def newsletter_summary(self, start: Optional[date] = None, end: Optional[date] = None,
                           group_by: str = 'day',
                           signup_source: Optional[str] = None) -> Dict[str, Any]:
        """
        Group newsletter_signup events by day, week or month

        Returns:
            Dict with analytics (newest bucket first) and totalCount
        """
        with self.session_factory() as db_session:
            query = self._events_between(db_session, 'newsletter_signup', start, end)
            if signup_source:
                query = query.filter(
                    AnalyticsEventRecord.event_data['signupSource'].as_string() == signup_source
                )
            rows = query.all()

        buckets: Dict[str, Dict[str, Any]] = {}
        for row in rows:
            data = row.event_data or {}
            key = _bucket_key(row.occurred_at.date(), group_by)
            bucket = buckets.setdefault(key, {
                'date': key,
                'signups': 0,
                'signupSources': [],
                'totalConversionTime': 0,
                'conversionCount': 0
            })
            bucket['signups'] += 1
            source = data.get('signupSource')
            if source and source not in bucket['signupSources']:
                bucket['signupSources'].append(source)
            _add_conversion_time(bucket, data.get('conversionTime'))

        return {
            'analytics': _finish_buckets(buckets),
            'totalCount': len(rows)
        }

    def appointment_summary(self, start: Optional[date] = None, end: Optional[date] = None,
                            group_by: str = 'day',
                            service_type: Optional[str] = None) -> Dict[str, Any]:
        """
        Group appointment_booking events by day, week or month

        A booking counts as a conversion once its status is 'approved';
        average conversion time is taken over conversions only.
        """
        with self.session_factory() as db_session:
            query = self._events_between(db_session, 'appointment_booking', start, end)
            if service_type:
                query = query.filter(
                    AnalyticsEventRecord.event_data['serviceType'].as_string() == service_type
                )
            rows = query.all()

        buckets: Dict[str, Dict[str, Any]] = {}
        for row in rows:
            data = row.event_data or {}
            key = _bucket_key(row.occurred_at.date(), group_by)
            bucket = buckets.setdefault(key, {
                'date': key,
                'bookings': 0,
                'conversions': 0,
                'serviceTypes': [],
                'totalConversionTime': 0,
                'conversionCount': 0
            })
            bucket['bookings'] += 1
            service = data.get('serviceType')
            if service and service not in bucket['serviceTypes']:
                bucket['serviceTypes'].append(service)
            if data.get('status') == 'approved':
                bucket['conversions'] += 1
                _add_conversion_time(bucket, data.get('conversionTime'))

        for bucket in buckets.values():
            bucket['conversionRate'] = round(bucket['conversions'] / bucket['bookings'] * 100, 2)

        return {
            'analytics': _finish_buckets(buckets),
            'totalCount': len(rows)
        }

    def funnel_summary(self, funnel_name: str) -> List[Dict[str, Any]]:
        """Distinct sessions reaching each step of a funnel, in step order"""
        step_number = AnalyticsEventRecord.event_data['stepNumber'].as_integer()
        step_name = AnalyticsEventRecord.event_data['stepName'].as_string()

        with self.session_factory() as db_session:
            rows = (db_session.query(step_number, step_name,
                                     func.count(func.distinct(AnalyticsEventRecord.session_id)))
                    .filter(AnalyticsEventRecord.event_type == 'funnel_step')
                    .filter(AnalyticsEventRecord.event_data['funnelName'].as_string() == funnel_name)
                    .group_by(step_number, step_name)
                    .order_by(step_number)
                    .all())

        summary = []
        first = None
        for number, name, sessions in rows:
            first = first or sessions
            summary.append({
                'stepNumber': number,
                'stepName': name,
                'sessions': sessions,
                'conversionRate': round(sessions / first * 100, 2) if first else 0.0
            })
        return summary


def _add_conversion_time(bucket: Dict[str, Any], conversion_time: Any) -> None:
    if isinstance(conversion_time, (int, float)) and not isinstance(conversion_time, bool):
        bucket['totalConversionTime'] += conversion_time
        bucket['conversionCount'] += 1


def _finish_buckets(buckets: Dict[str, Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Replace running totals with averages and sort newest bucket first"""
    for bucket in buckets.values():
        total = bucket.pop('totalConversionTime')
        count = bucket.pop('conversionCount')
        bucket['avgConversionTime'] = round(total / count) if count else 0
    return sorted(buckets.values(), key=lambda b: b['date'], reverse=True)


def _bucket_key(day: date, group_by: str) -> str:
    if group_by == 'week':
        # Weeks start on Sunday
        week_start = day - timedelta(days=(day.weekday() + 1) % 7)
        return week_start.isoformat()
    if group_by == 'month':
        return f"{day.year}-{day.month:02d}"
    return day.isoformat()
