from __future__ import annotations

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from .events import ROLLOUT_STALLED, UNIT_FAILED, Event
from .settings import Settings, settings as default_settings


def send_email(subject: str, body: str, cfg: Settings = default_settings) -> bool:
    """Send an email if SMTP settings are configured.

    Environment variables:
      - FLEET_ENABLE_EMAIL=true
      - FLEET_SMTP_HOST / FLEET_SMTP_PORT
      - FLEET_SMTP_USER / FLEET_SMTP_PASSWORD
      - FLEET_EMAIL_FROM / FLEET_EMAIL_TO
    """
    if not cfg.enable_email:
        return False
    if not all(
        [
            cfg.smtp_host,
            cfg.smtp_port,
            cfg.smtp_user,
            cfg.smtp_password,
            cfg.email_from,
            cfg.email_to,
        ]
    ):
        return False

    try:
        msg = MIMEMultipart()
        msg["From"] = cfg.email_from
        msg["To"] = cfg.email_to
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "plain"))

        server = smtplib.SMTP(cfg.smtp_host, cfg.smtp_port)
        server.starttls()
        server.login(cfg.smtp_user, cfg.smtp_password)
        server.sendmail(cfg.email_from, [cfg.email_to], msg.as_string())
        server.quit()
        return True
    except (smtplib.SMTPException, OSError):
        return False


class EmailAlertSink:
    """Mails stalled rollouts and failed units; ignores every other event."""

    kinds = frozenset({ROLLOUT_STALLED, UNIT_FAILED})

    def __init__(self, cfg: Settings = default_settings) -> None:
        self.cfg = cfg

    def emit(self, event: Event) -> None:
        if event.kind not in self.kinds or not self.cfg.enable_email:
            return
        title = "STALLED" if event.kind == ROLLOUT_STALLED else "UNIT FAILED"
        subject = f"{title}: {event.lineage} {event.version or ''}".rstrip()
        body = (
            f"Lineage: {event.lineage}\n"
            f"Version: {event.version or '-'}\n"
            f"Unit: {event.unit or '-'}\n"
            f"Time: {event.ts}\n"
            f"Detail: {event.message}"
        )
        send_email(subject, body, self.cfg)
