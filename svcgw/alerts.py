from __future__ import annotations

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from .db import log_event
from .settings import settings


def send_email(subject: str, body: str) -> bool:
    """Send an email if SMTP settings are configured.

    Environment variables:
      - SVCGW_ENABLE_EMAIL=true
      - SVCGW_SMTP_HOST / SVCGW_SMTP_PORT
      - SVCGW_SMTP_USER / SVCGW_SMTP_PASSWORD
      - SVCGW_EMAIL_FROM / SVCGW_EMAIL_TO
    """
    if not settings.enable_email:
        return False
    if not all(
        [
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_user,
            settings.smtp_password,
            settings.email_from,
            settings.email_to,
        ]
    ):
        return False

    msg = MIMEMultipart()
    msg["From"] = settings.email_from
    msg["To"] = settings.email_to
    msg["Subject"] = subject
    msg.attach(MIMEText(body, "plain"))

    try:
        server = smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10)
        server.starttls()
        server.login(settings.smtp_user, settings.smtp_password)
        server.sendmail(settings.email_from, [settings.email_to], msg.as_string())
        server.quit()
        return True
    except (smtplib.SMTPException, OSError) as e:
        log_event("WARN", f"Alert email failed: {type(e).__name__}: {e}")
        return False


def report_failure(service: str, detail: str) -> None:
    """Report a service that was left Failed and will not be retried."""
    log_event("ERROR", f"Service left failed: {detail}", service_name=service)
    if settings.enable_email:
        send_email(f"DOWN: {service}", f"Service: {service}\nStatus: FAILED (not retried)\nDetail: {detail}")
