# api/submissions.py
"""
Public form endpoints: contact form and newsletter signup
"""

import logging

from flask import Blueprint, current_app, g, jsonify, request

from core.errors import ValidationFailed
from core.sanitizer import strip_markup
from core.validation import CONTACT_SCHEMA, NEWSLETTER_SCHEMA, email_address
from middleware.security import (
    get_client_ip, get_session_key, get_tracker, get_user_agent,
    guarded_submission, rate_limit
)

submissions_bp = Blueprint('submissions', __name__)
logger = logging.getLogger(__name__)


@submissions_bp.route('/api/csrf-token', methods=['GET'])
def issue_csrf_token():
    """Issue a CSRF token bound to the caller's session"""
    token = current_app.request_guard.csrf.issue(get_session_key(create=True))
    response = jsonify({'csrf_token': token})
    response.headers['Cache-Control'] = 'no-store'
    return response


@submissions_bp.route('/api/contact', methods=['POST'])
@rate_limit('contact')
@guarded_submission(CONTACT_SCHEMA, spam_fields=('message',))
def submit_contact():
    """Store a contact message and notify the site owner"""
    data = dict(g.submission)
    ip, user_agent = get_client_ip(), get_user_agent()

    contact = current_app.submissions.save_contact({
        **data,
        'email': data['email'].lower(),
        'ip_address': ip,
        'user_agent': user_agent
    })

    email_sent = current_app.mailer.send(
        current_app.config['CONTACT_RECIPIENT'],
        'contact_notification',
        {
            'name': strip_markup(contact.name),
            'email': contact.email,
            'subject': strip_markup(contact.subject),
            'message': strip_markup(contact.message),
            'ip': ip,
            'submitted_at': contact.created_at.isoformat() if contact.created_at else None
        }
    )

    current_app.request_guard.record_success(ip, user_agent, form='contact',
                                             email=contact.email, email_sent=email_sent)

    return jsonify({
        'success': True,
        'message': 'Thank you for contacting us! We will respond as soon as possible.',
        'contact': contact.to_dict(),
        'emailSent': email_sent
    }), 201


@submissions_bp.route('/api/contact', methods=['GET'])
def contact_status():
    """Describe the protections applied to the contact form"""
    config = current_app.config
    policy = current_app.rate_limiter.policy('contact')
    window_minutes = policy.window_ms // 60000
    smtp_configured = bool(config.get('SMTP_HOST'))

    return jsonify({
        'success': True,
        'smtp_configured': smtp_configured,
        'message': 'Contact system is ready with enhanced security',
        'protection': {
            'rate_limit': f"{policy.max_requests} requests per {window_minutes} minutes per IP",
            'csrf_protection': 'Session-bound single-use token',
            'input_validation': 'Schema validation',
            'spam_filter': 'Keyword-based spam detection',
            'honeypot': 'Hidden field spam detection',
            'security_headers': 'Secure headers applied'
        }
    })


@submissions_bp.route('/api/newsletter', methods=['POST'])
@rate_limit('newsletter')
@guarded_submission(NEWSLETTER_SCHEMA)
def subscribe_newsletter():
    email = g.submission['email'].lower()
    source = request.args.get('source') or 'website'

    subscriber, created = current_app.submissions.subscribe(email, signup_source=source)
    if not created:
        return jsonify({
            'success': False,
            'error': 'Email is already subscribed to the newsletter',
            'type': 'conflict'
        }), 409

    current_app.request_guard.record_success(get_client_ip(), get_user_agent(),
                                             form='newsletter', email=email)
    get_tracker().track_newsletter_signup(subscriber.id, source=source)

    current_app.mailer.send(email, 'newsletter_welcome', {'email': email})

    return jsonify({
        'success': True,
        'message': 'Successfully subscribed to the newsletter!',
        'subscriber': subscriber.to_dict()
    }), 201


@submissions_bp.route('/api/newsletter', methods=['DELETE'])
@rate_limit('newsletter')
def unsubscribe_newsletter():
    email = (request.args.get('email') or '').strip().lower()

    error = 'email is required' if not email else email_address(email)
    if error:
        raise ValidationFailed([error])

    if not current_app.submissions.unsubscribe(email):
        return jsonify({
            'success': False,
            'error': 'Email not found in newsletter subscribers',
            'type': 'not_found'
        }), 404

    logger.info(f"Newsletter unsubscribe from {get_client_ip()}")
    return jsonify({'success': True, 'message': 'Successfully unsubscribed from the newsletter'})
