from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from html import escape
from typing import Optional, Protocol

from backend.followups.errors import DispatchError
from backend.followups.models import DocumentRecord, LeadRecord
from backend.followups.settings import Settings

logger = logging.getLogger("followup_engine.notifications")


@dataclass(frozen=True)
class FollowupMessage:
    to_address: str
    subject: str
    text_body: str
    html_body: str


class NotificationDispatcher(Protocol):
    def send(self, message: FollowupMessage) -> None: ...


class _KeepUnknown(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def render_subject(template: str, *, lead: LeadRecord, document: DocumentRecord) -> str:
    try:
        return template.format_map(
            _KeepUnknown(lead_name=lead.name, document_title=document.title)
        )
    except (ValueError, IndexError):
        # malformed braces
        return template


def build_followup_message(
    *,
    lead: LeadRecord,
    document: DocumentRecord,
    subject_template: str,
) -> FollowupMessage:
    to_address = (lead.contact_email or "").strip()
    if not to_address:
        raise DispatchError("lead has no contact email")

    lines = [
        f"Hello {lead.name},",
        "",
        f'Thank you for taking the time to review "{document.title}".',
        "If you have any questions, we would be glad to walk you through it.",
    ]
    if lead.booking_link:
        lines += ["", f"Book a meeting: {lead.booking_link}"]
    text_body = "\n".join(lines) + "\n"

    booking_html = ""
    if lead.booking_link:
        link = escape(lead.booking_link, quote=True)
        booking_html = f'<p><a href="{link}">Book a meeting</a></p>'
    html_body = (
        f"<p>Hello {escape(lead.name)},</p>"
        f"<p>Thank you for taking the time to review <strong>{escape(document.title)}</strong>.</p>"
        "<p>If you have any questions, we would be glad to walk you through it.</p>"
        f"{booking_html}"
    )
    return FollowupMessage(
        to_address=to_address,
        subject=render_subject(subject_template, lead=lead, document=document),
        text_body=text_body,
        html_body=html_body,
    )


class SmtpDispatcher:
    def __init__(
        self,
        *,
        host: str,
        port: int,
        from_address: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        timeout_seconds: float = 15.0,
    ) -> None:
        self.host = host
        self.port = port
        self.from_address = from_address
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout_seconds = timeout_seconds

    def send(self, message: FollowupMessage) -> None:
        email = EmailMessage()
        email["Subject"] = message.subject
        email["From"] = self.from_address
        email["To"] = message.to_address
        email.set_content(message.text_body)
        email.add_alternative(message.html_body, subtype="html")
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout_seconds) as server:
                if self.use_tls:
                    server.starttls()
                if self.username:
                    server.login(self.username, self.password or "")
                server.send_message(email)
        except (smtplib.SMTPException, OSError) as exc:
            raise DispatchError(f"smtp delivery failed: {exc}") from exc


class LogDispatcher:
    def send(self, message: FollowupMessage) -> None:
        logger.info(
            "followup_email_logged to=%s subject=%s",
            message.to_address,
            message.subject,
        )


def build_dispatcher(settings: Settings) -> NotificationDispatcher:
    if not settings.smtp_host:
        logger.warning("smtp_not_configured followup emails will only be logged")
        return LogDispatcher()
    return SmtpDispatcher(
        host=settings.smtp_host,
        port=settings.smtp_port,
        from_address=settings.mail_from_address,
        username=settings.smtp_username or None,
        password=settings.smtp_password or None,
        use_tls=settings.smtp_use_tls,
    )
