# services/mailer.py
"""
Outbound notifications after accepted submissions

A mailer is told who to notify, which template and with what data.
Delivery is best-effort: failures are logged and reported as False,
never raised into the request that triggered them.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from email.errors import MessageError
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formatdate, make_msgid
from typing import Any, Dict, List, Mapping, Optional

import aiosmtplib

logger = logging.getLogger(__name__)

# template name -> subject line
TEMPLATE_SUBJECTS = {
    'contact_notification': 'New contact form submission: {subject}',
    'newsletter_welcome': 'Welcome to our newsletter',
}


def compose_text(template: str, data: Mapping[str, Any]) -> str:
    """Plain-text body listing the template data"""
    lines = [f"{key}: {value}" for key, value in data.items() if value is not None]
    return f"[{template}]\n\n" + "\n".join(lines) + "\n"


def compose_subject(template: str, data: Mapping[str, Any]) -> str:
    pattern = TEMPLATE_SUBJECTS.get(template, template.replace('_', ' ').capitalize())
    try:
        return pattern.format(**data)
    except (KeyError, IndexError):
        return pattern


class Mailer(ABC):
    """Notification sink"""

    @abstractmethod
    def send(self, recipient: str, template: str, data: Mapping[str, Any]) -> bool:
        """Deliver one notification; returns False on failure"""


class LoggingMailer(Mailer):
    """Writes notifications to the log instead of sending them (development, tests)"""

    def __init__(self):
        self.outbox: List[Dict[str, Any]] = []

    def send(self, recipient: str, template: str, data: Mapping[str, Any]) -> bool:
        self.outbox.append({'recipient': recipient, 'template': template, 'data': dict(data)})
        logger.info(f"Mail to {recipient} using {template} (not sent, logging mailer)")
        return True


class SMTPMailer(Mailer):
    """SMTP delivery, STARTTLS on 587 and implicit TLS on 465"""

    def __init__(self, host: str, port: int = 587, username: Optional[str] = None,
                 password: Optional[str] = None, sender: Optional[str] = None,
                 timeout: int = 30):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender or username
        self.timeout = timeout

    def build_message(self, recipient: str, template: str, data: Mapping[str, Any]) -> MIMEMultipart:
        msg = MIMEMultipart('alternative')
        msg['Subject'] = compose_subject(template, data)
        msg['From'] = self.sender
        msg['To'] = recipient
        msg['Date'] = formatdate(localtime=False)
        msg['Message-ID'] = make_msgid()
        if data.get('email'):
            msg['Reply-To'] = str(data['email'])
        msg.attach(MIMEText(compose_text(template, data), 'plain', 'utf-8'))
        return msg

    def send(self, recipient: str, template: str, data: Mapping[str, Any]) -> bool:
        try:
            msg = self.build_message(recipient, template, data)
            asyncio.run(self._send_async(msg))
        except MessageError as e:
            logger.error(f"Could not build {template} message for {recipient}: {e}")
            return False
        except aiosmtplib.SMTPException as e:
            logger.error(f"SMTP delivery to {recipient} failed: {e}")
            return False
        except (OSError, asyncio.TimeoutError) as e:
            logger.error(f"SMTP connection to {self.host}:{self.port} failed: {e}")
            return False

        logger.info(f"Sent {template} to {recipient}")
        return True

    async def _send_async(self, msg: MIMEMultipart) -> None:
        smtp = aiosmtplib.SMTP(
            hostname=self.host,
            port=self.port,
            timeout=self.timeout,
            use_tls=self.port == 465,
            start_tls=self.port == 587
        )
        await smtp.connect()
        try:
            if self.username and self.password:
                await smtp.login(self.username, self.password)
            await smtp.send_message(msg)
        finally:
            await smtp.quit()


def create_mailer(config) -> Mailer:
    """SMTP mailer when SMTP_HOST is configured, logging mailer otherwise"""
    host = config.get('SMTP_HOST')
    if not host:
        return LoggingMailer()
    return SMTPMailer(
        host=host,
        port=config.get('SMTP_PORT', 587),
        username=config.get('SMTP_USER'),
        password=config.get('SMTP_PASSWORD'),
        sender=config.get('SMTP_FROM')
    )
