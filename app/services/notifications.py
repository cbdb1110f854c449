"""
Notifications: domain event sink and transactional email.

Services emit DomainEvents only after their transaction commits, so a
delivery failure here can never roll back a signature or a ledger write.
"""
import logging
import smtplib
from dataclasses import dataclass, field
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, List

from app.core.config import settings
from app.db.base import utcnow

logger = logging.getLogger(__name__)


@dataclass
class DomainEvent:
    name: str
    payload: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)


class EventSink:
    """Receives domain events after commit. Subclasses must not raise."""

    def emit(self, event: DomainEvent) -> None:
        raise NotImplementedError

    def emit_all(self, events: List[DomainEvent]) -> None:
        for event in events:
            self.emit(event)


# ─────────────────────── Email ───────────────────────

def send_email(to: str, subject: str, body_html: str, body_text: str = "") -> bool:
    """
    Dispatch a transactional email via SMTP.
    Returns True on success, False if SMTP is not configured or sending failed.
    """
    if not settings.email_configured:
        logger.warning(f"[NOTIFY][EMAIL] SMTP not configured. Would send to '{to}': {subject}")
        return False

    try:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = settings.EMAIL_FROM
        msg["To"] = to
        if body_text:
            msg.attach(MIMEText(body_text, "plain"))
        msg.attach(MIMEText(body_html, "html"))

        with smtplib.SMTP(settings.SMTP_SERVER, settings.SMTP_PORT, timeout=10) as srv:
            srv.ehlo()
            srv.starttls()
            srv.login(settings.SMTP_USER, settings.SMTP_PASSWORD)
            srv.sendmail(settings.EMAIL_FROM, to, msg.as_string())

        logger.info(f"[NOTIFY][EMAIL] Sent to '{to}': {subject}")
        return True
    except (smtplib.SMTPException, OSError) as exc:
        logger.error(f"[NOTIFY][EMAIL] Failed sending to '{to}': {exc}")
        return False


def signing_url(token: str) -> str:
    return f"{settings.PORTAL_URL.rstrip('/')}/sign/{token}"


def send_signing_link_email(
    to_email: str,
    signer_name: str,
    document_label: str,
    url: str,
    expires_at: datetime,
) -> bool:
    subject = f"Please sign: {document_label}"
    expiry = expires_at.strftime("%b %d, %Y %H:%M UTC")
    html = f"""
<!DOCTYPE html>
<html>
<body style="font-family:Arial,sans-serif;max-width:600px;margin:0 auto;padding:20px;color:#333">
  <p>Hi <strong>{signer_name}</strong>,</p>
  <p>You have a document waiting for your signature:</p>
  <p style="font-weight:600">{document_label}</p>
  <p>This link can be used once and expires on <strong>{expiry}</strong>.</p>
  <p><a href="{url}" style="color:#2563eb">Review &amp; Sign</a></p>
</body>
</html>"""
    text = (
        f"Hi {signer_name},\n\n"
        f"You have a document waiting for your signature: {document_label}\n\n"
        f"Review and sign at:\n{url}\n\n"
        f"This link expires on {expiry}."
    )
    return send_email(to_email, subject, html, text)


def send_activation_email(to_email: str, recipient_name: str, document_label: str) -> bool:
    subject = f"Fully signed: {document_label}"
    html = f"""
<!DOCTYPE html>
<html>
<body style="font-family:Arial,sans-serif;max-width:600px;margin:0 auto;padding:20px;color:#333">
  <p>Hi <strong>{recipient_name}</strong>,</p>
  <p>All parties have signed <strong>{document_label}</strong>. It is now active.</p>
</body>
</html>"""
    text = f"Hi {recipient_name},\n\nAll parties have signed {document_label}. It is now active."
    return send_email(to_email, subject, html, text)


# ─────────────────────── Dispatcher ───────────────────────

class NotificationDispatcher(EventSink):
    """Default sink: logs every event, emails signing links and activations."""

    def emit(self, event: DomainEvent) -> None:
        logger.info(f"[EVENT] {event.name} {_loggable(event.payload)}")
        if not settings.SEND_EMAILS:
            return

        p = event.payload
        if event.name == "signing.link_issued" and p.get("email"):
            send_signing_link_email(
                to_email=p["email"],
                signer_name=p.get("name") or "there",
                document_label=p.get("label") or "Lease agreement",
                url=signing_url(p["token"]),
                expires_at=p["expires_at"],
            )
        elif event.name in ("lease.activated", "addendum.activated"):
            for recipient in p.get("recipients", []):
                if recipient.get("email"):
                    send_activation_email(
                        recipient["email"],
                        recipient.get("name") or "there",
                        p.get("label") or "Lease agreement",
                    )


_dispatcher = NotificationDispatcher()


def get_event_sink() -> EventSink:
    """FastAPI dependency; tests override it with a recording sink."""
    return _dispatcher


def _loggable(payload: Dict[str, Any]) -> Dict[str, Any]:
    # Signing tokens are bearer credentials
    return {k: v for k, v in payload.items() if k not in ("token", "recipients")}
