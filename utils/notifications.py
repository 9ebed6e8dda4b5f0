"""SMTP-backed email notifications for complaint lifecycle events and daily digests."""
import smtplib
import ssl
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from typing import Dict, List, Optional, Tuple

from flask import current_app, render_template

from models import Complaint
from utils.markdown_formatter import (
    format_assignment_markdown,
    format_confirmation_markdown,
    format_daily_summary_markdown,
    format_status_update_markdown,
    html_to_plaintext,
    markdown_to_email_html,
    markdown_to_plaintext,
)


class EmailDeliveryError(Exception):
    """Raised when email dispatch fails."""


@dataclass(frozen=True)
class NotificationResult:
    """Outcome of one best-effort notification attempt."""

    kind: str
    recipient: Optional[str]
    delivered: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


def _render_email_content(template: str, subject: str, markdown_body: str, context: Dict) -> Tuple[str, str]:
    """Return plaintext and HTML bodies using a shared markdown source."""
    text_body = markdown_to_plaintext(markdown_body)
    ctx = dict(context or {})
    preheader = ctx.pop("preheader", "")
    html_body = render_template(
        template,
        subject=subject,
        content_html=markdown_to_email_html(markdown_body),
        preheader=preheader,
        base_url=current_app.config.get("APP_BASE_URL", ""),
        **ctx,
    )
    return text_body, html_body


def _resolve_sender() -> str:
    return current_app.config.get("MAIL_DEFAULT_SENDER") or current_app.config.get("MAIL_USERNAME") or ""


def _complaint_snapshot(complaint: Complaint) -> Dict:
    return {
        "id": complaint.id,
        "title": complaint.title,
        "description": complaint.description,
        "category": complaint.category,
        "priority": complaint.priority,
        "status": complaint.status,
        "location": complaint.location,
    }


def _dispatch_email(subject: str, text_body: str, html_body: str, sender: str, recipients: List[str]) -> str:
    if not recipients:
        raise EmailDeliveryError("No recipients resolved for email dispatch")
    if not sender:
        raise EmailDeliveryError("Sender address is not configured")

    message_id = make_msgid(domain=sender.split("@", 1)[-1] if "@" in sender else None)
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = f"Metronix <{sender}>"
    msg["To"] = ", ".join(recipients)
    msg["Date"] = formatdate(localtime=True)
    msg["Message-ID"] = message_id
    msg.set_content(text_body or html_to_plaintext(html_body))
    msg.add_alternative(html_body, subtype="html")

    host = current_app.config.get("MAIL_SERVER")
    port = int(current_app.config.get("MAIL_PORT", 587))
    username = current_app.config.get("MAIL_USERNAME")
    password = current_app.config.get("MAIL_PASSWORD")
    use_tls = bool(current_app.config.get("MAIL_USE_TLS"))
    use_ssl = bool(current_app.config.get("MAIL_USE_SSL"))

    if not host:
        raise EmailDeliveryError("MAIL_SERVER is not configured")

    try:
        if use_ssl:
            with smtplib.SMTP_SSL(host, port, context=ssl.create_default_context()) as server:
                if username and password:
                    server.login(username, password)
                server.send_message(msg)
        else:
            with smtplib.SMTP(host, port) as server:
                server.ehlo()
                if use_tls:
                    server.starttls(context=ssl.create_default_context())
                if username and password:
                    server.login(username, password)
                server.send_message(msg)
    except (smtplib.SMTPException, OSError) as exc:  # pragma: no cover - external I/O
        raise EmailDeliveryError(str(exc)) from exc
    return message_id


def deliver(kind: str, recipient: Optional[str], subject: str, markdown_body: str, template: str, context: Dict) -> NotificationResult:
    """Attempt one email and log on failure; never raises."""
    if not recipient:
        current_app.logger.info("notification_skipped", extra={"kind": kind, "reason": "no recipient"})
        return NotificationResult(kind=kind, recipient=None, delivered=False, error="Recipient address missing")
    try:
        text_body, html_body = _render_email_content(template, subject, markdown_body, context)
        message_id = _dispatch_email(subject, text_body, html_body, _resolve_sender(), [recipient])
    except EmailDeliveryError as exc:
        current_app.logger.warning(
            "notification_failed",
            extra={"kind": kind, "recipient": recipient, "error": str(exc)},
        )
        return NotificationResult(kind=kind, recipient=recipient, delivered=False, error=str(exc))
    except Exception as exc:
        current_app.logger.exception("notification_error", extra={"kind": kind, "recipient": recipient})
        return NotificationResult(kind=kind, recipient=recipient, delivered=False, error=str(exc))
    current_app.logger.info("notification_sent", extra={"kind": kind, "recipient": recipient, "message_id": message_id})
    return NotificationResult(kind=kind, recipient=recipient, delivered=True, message_id=message_id)


def send_complaint_confirmation(complaint: Complaint) -> NotificationResult:
    citizen = complaint.citizen
    snapshot = _complaint_snapshot(complaint)
    name = citizen.name if citizen and citizen.name else "User"
    return deliver(
        "confirmation",
        citizen.email if citizen else None,
        f"Complaint Submitted - {complaint.title}",
        format_confirmation_markdown(snapshot, name),
        "email/complaint_submitted.html",
        {"preheader": "Your complaint has been logged.", "dashboard_path": "/citizen/dashboard"},
    )


def send_complaint_assignment(complaint: Complaint) -> NotificationResult:
    solver = complaint.solver
    snapshot = _complaint_snapshot(complaint)
    name = solver.name if solver and solver.name else "Solver"
    return deliver(
        "assignment",
        solver.email if solver else None,
        f"New Complaint Assigned - {complaint.title}",
        format_assignment_markdown(snapshot, name),
        "email/complaint_assigned.html",
        {"preheader": "A complaint needs your attention.", "dashboard_path": "/solver/dashboard"},
    )


def send_status_update(complaint: Complaint, previous_status: str, new_status: str, note: Optional[str] = None) -> NotificationResult:
    citizen = complaint.citizen
    snapshot = _complaint_snapshot(complaint)
    name = citizen.name if citizen and citizen.name else "User"
    return deliver(
        "status_update",
        citizen.email if citizen else None,
        f"Complaint Status Updated - {complaint.title}",
        format_status_update_markdown(snapshot, name, previous_status, new_status, note),
        "email/status_update.html",
        {"preheader": f"Your complaint is now {new_status}.", "dashboard_path": "/citizen/dashboard"},
    )


def send_daily_summary(recipient: str, complaints: List[Complaint], admin_name: str, date_label: str, stats: Dict[str, int]) -> NotificationResult:
    snapshots = [_complaint_snapshot(c) for c in complaints]
    return deliver(
        "daily_summary",
        recipient,
        f"Daily Complaint Summary - {date_label}",
        format_daily_summary_markdown(snapshots, admin_name or "Admin", date_label, stats),
        "email/daily_summary.html",
        {"preheader": f"Complaint activity for {date_label}.", "dashboard_path": "/admin/dashboard"},
    )


def send_email(to: str, subject: str, html_body: str) -> NotificationResult:
    """Send a pre-rendered HTML email; same best-effort contract as `deliver`."""
    if not to:
        return NotificationResult(kind="adhoc", recipient=None, delivered=False, error="Recipient address missing")
    try:
        message_id = _dispatch_email(subject, html_to_plaintext(html_body), html_body, _resolve_sender(), [to])
    except EmailDeliveryError as exc:
        current_app.logger.warning("notification_failed", extra={"kind": "adhoc", "recipient": to, "error": str(exc)})
        return NotificationResult(kind="adhoc", recipient=to, delivered=False, error=str(exc))
    current_app.logger.info("notification_sent", extra={"kind": "adhoc", "recipient": to, "message_id": message_id})
    return NotificationResult(kind="adhoc", recipient=to, delivered=True, message_id=message_id)
