import logging
import re
import time
from dataclasses import dataclass, field
from typing import List

from flask import current_app, render_template
from flask_mail import Message

from attendance_portal import mail

logger = logging.getLogger(__name__)

CREDENTIALS_SUBJECT = "Your University Attendance System Credentials"
PASSWORD_RESET_SUBJECT = "Reset your University Attendance System password"


@dataclass
class BulkEmailResult:
    total_emails: int = 0
    success_count: int = 0
    failed_count: int = 0
    successful_emails: List[str] = field(default_factory=list)
    failed_emails: List[str] = field(default_factory=list)


def strip_html(html):
    return re.sub(r"<.*?>", "", html or "")


def send_email(to_email, subject, html_body, text_body=None, to_name=None):
    """Send one message over the configured SMTP server. Returns False on any failure."""
    try:
        recipient = (to_name, to_email) if to_name else to_email
        msg = Message(subject, recipients=[recipient])
        msg.html = html_body
        msg.body = text_body or strip_html(html_body)
        mail.send(msg)
        return True
    except Exception as e:
        logger.error(f"Email sending to {to_email} failed: {e}")
        return False


def send_credentials_email(to_email, full_name, password, role, login_url=None, section_name=None):
    login_url = login_url or current_app.config.get('LOGIN_URL')
    context = dict(email=to_email, full_name=full_name, password=password, role=role,
                   section_name=section_name, login_url=login_url)
    html = render_template('email/credentials.html', **context)
    text = render_template('email/credentials.txt', **context)
    return send_email(to_email, CREDENTIALS_SUBJECT, html, text, to_name=full_name)


def send_bulk_credentials(credentials, login_url=None, delay_seconds=None):
    """Email each credential in turn, pausing between messages to stay under provider limits."""
    if delay_seconds is None:
        delay_seconds = current_app.config.get('MAIL_SEND_DELAY_SECONDS', 0.5)
    result = BulkEmailResult(total_emails=len(credentials))
    for i, cred in enumerate(credentials):
        ok = send_credentials_email(cred.email, cred.full_name, cred.password, cred.role,
                                    login_url, cred.section_name)
        if ok:
            result.success_count += 1
            result.successful_emails.append(cred.email)
        else:
            result.failed_count += 1
            result.failed_emails.append(cred.email)
        if delay_seconds and i < len(credentials) - 1:
            time.sleep(delay_seconds)
    logger.info(f"Credential emails sent: {result.success_count}/{result.total_emails}")
    return result


def send_password_reset_email(user, reset_url):
    context = dict(full_name=user.full_name, reset_url=reset_url)
    html = render_template('email/password_reset.html', **context)
    text = render_template('email/password_reset.txt', **context)
    return send_email(user.email, PASSWORD_RESET_SUBJECT, html, text, to_name=user.full_name)
