from datetime import datetime

from sqlalchemy import (
    Column, Integer, String, DateTime, JSON, Text
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _isoformat(value):
    return value.isoformat() if value else None


class ContactMessage(Base):
    __tablename__ = 'contact_messages'

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    email = Column(String(254), nullable=False, index=True)
    subject = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    status = Column(String(20), default='new')  # new, read, answered
    ip_address = Column(String(45))
    user_agent = Column(String(512))
    created_at = Column(DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'email': self.email,
            'subject': self.subject,
            'status': self.status,
            'created_at': _isoformat(self.created_at)
        }


class NewsletterSubscriber(Base):
    __tablename__ = 'newsletter_subscribers'

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(254), nullable=False, unique=True, index=True)
    signup_source = Column(String(100))
    subscribed_at = Column(DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'email': self.email,
            'subscribedAt': _isoformat(self.subscribed_at)
        }


class AnalyticsEventRecord(Base):
    """Append-only fact row for one tracked interaction"""
    __tablename__ = 'analytics_events'

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String(50), nullable=False, index=True)
    event_data = Column(JSON, default=dict)
    user_id = Column(String(100), index=True)
    session_id = Column(String(100), index=True)
    ip_address = Column(String(45))
    user_agent = Column(String(512))
    referrer = Column(String(2048))
    utm_source = Column(String(255))
    utm_medium = Column(String(255))
    utm_campaign = Column(String(255))
    utm_term = Column(String(255))
    utm_content = Column(String(255))
    occurred_at = Column(DateTime, nullable=False, index=True)  # client timestamp (UTC)
    created_at = Column(DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'eventType': self.event_type,
            'eventData': self.event_data or {},
            'userId': self.user_id,
            'sessionId': self.session_id,
            'referrer': self.referrer,
            'utmSource': self.utm_source,
            'utmMedium': self.utm_medium,
            'utmCampaign': self.utm_campaign,
            'utmTerm': self.utm_term,
            'utmContent': self.utm_content,
            'timestamp': _isoformat(self.occurred_at),
            'createdAt': _isoformat(self.created_at)
        }


class SecurityEventRecord(Base):
    __tablename__ = 'security_events'

    id = Column(Integer, primary_key=True, autoincrement=True)
    occurred_at = Column(DateTime, nullable=False, index=True)  # UTC
    kind = Column(String(50), nullable=False, index=True)
    ip_address = Column(String(45))
    user_agent = Column(String(512))
    details = Column(JSON)

    def to_dict(self):
        return {
            'timestamp': _isoformat(self.occurred_at),
            'event': self.kind,
            'ip': self.ip_address,
            'user_agent': self.user_agent,
            'details': self.details or {}
        }
