from __future__ import annotations

import html
import math
import re
from dataclasses import dataclass
from datetime import datetime, timezone

from .models import ReminderChannel

PLACEHOLDER_PATTERN = re.compile(r"\{([a-zA-Z_][a-zA-Z0-9_]*)\}")
URGENT_DAYS_THRESHOLD = 1
COUNTDOWN_DAYS_THRESHOLD = 3
EMAIL_SUBJECT_PREFIX = "Reminder: Document awaiting your signature - "

DEFAULT_EMAIL_TEMPLATE = """<html>
<body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
<h2>{urgency_prefix}Document Awaiting Your Signature</h2>
<p>Hello {signer_name},</p>
<p>This is a reminder that you have a document from <strong>{org_name}</strong> pending your signature:</p>
<div style="background: #f5f5f5; padding: 15px; border-radius: 8px; margin: 20px 0;">
    <p><strong>Document:</strong> {doc_title}</p>
    <p><strong>Expires:</strong> {expiry_date}</p>
    {remaining_notice}
</div>
<p>Please sign this document as soon as possible to avoid any delays.</p>
<p>If you have already signed this document, please disregard this reminder.</p>
<br>
<p>Best regards,<br>{org_name}</p>
</body>
</html>
"""

DEFAULT_SMS_TEMPLATE = (
    "Reminder: You have a document '{doc_title}' from {org_name} pending your signature. "
    "Expires on {expiry_date}."
)
DEFAULT_SMS_URGENT_TEMPLATE = "URGENT: Your signature on '{doc_title}' from {org_name} is due tomorrow. Please sign now."

DEFAULT_WHATSAPP_TEMPLATE = (
    "\U0001F4DD *Signature Reminder*\n\n"
    "Hi {signer_name},\n\n"
    "You have a document '{doc_title}' from {org_name} awaiting your signature.\n\n"
    "*Expires:* {expiry_date}\n\n"
    "Please sign at your earliest convenience."
)
DEFAULT_WHATSAPP_URGENT_TEMPLATE = (
    "\U0001F534 *URGENT REMINDER*\n\n"
    "Hi {signer_name},\n\n"
    "Your signature on '{doc_title}' from {org_name} expires tomorrow.\n\n"
    "Please sign the document as soon as possible."
)


@dataclass(frozen=True)
class RenderedMessage:
    channel: ReminderChannel
    body: str
    urgent: bool
    subject: str | None = None


def format_expiry_date(expires_at: datetime | None) -> str:
    if expires_at is None:
        return "N/A"
    value = expires_at.astimezone(timezone.utc) if expires_at.tzinfo else expires_at
    return f"{value:%B} {value.day}, {value.year}"


def compute_days_remaining(expires_at: datetime | None, now: datetime) -> int | None:
    """Whole days until expiry, rounded up and never negative."""
    if expires_at is None:
        return None
    seconds = (expires_at - now).total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / 86400)


def build_template_context(
    *,
    signer_name: str,
    org_name: str,
    doc_title: str,
    expires_at: datetime | None,
    now: datetime,
) -> dict[str, str]:
    context = {
        "signer_name": signer_name,
        "org_name": org_name,
        "doc_title": doc_title,
        "expiry_date": format_expiry_date(expires_at),
    }
    days_remaining = compute_days_remaining(expires_at, now)
    if days_remaining is not None:
        context["days_remaining"] = str(days_remaining)
    return context


def render_template(template: str, context: dict[str, str]) -> str:
    return PLACEHOLDER_PATTERN.sub(lambda match: context.get(match.group(1), ""), template)


def _days_remaining(context: dict[str, str]) -> int:
    return int(context.get("days_remaining", "0"))


def _default_text_template(channel: ReminderChannel, urgent: bool) -> str:
    if channel == "sms":
        return DEFAULT_SMS_URGENT_TEMPLATE if urgent else DEFAULT_SMS_TEMPLATE
    return DEFAULT_WHATSAPP_URGENT_TEMPLATE if urgent else DEFAULT_WHATSAPP_TEMPLATE


def render_reminder_message(
    channel: ReminderChannel,
    context: dict[str, str],
    *,
    custom_template: str | None = None,
) -> RenderedMessage:
    days_remaining = _days_remaining(context)
    urgent = days_remaining <= URGENT_DAYS_THRESHOLD

    if custom_template is not None and custom_template.strip():
        if channel == "email":
            body = render_template(custom_template, {key: html.escape(value) for key, value in context.items()})
        else:
            body = render_template(custom_template, context)
    elif channel == "email":
        escaped = {key: html.escape(value) for key, value in context.items()}
        escaped["urgency_prefix"] = "URGENT: " if urgent else ""
        escaped["remaining_notice"] = (
            f'<p style="color: red;"><strong>Only {days_remaining} day(s) remaining!</strong></p>'
            if days_remaining <= COUNTDOWN_DAYS_THRESHOLD
            else ""
        )
        body = render_template(DEFAULT_EMAIL_TEMPLATE, escaped)
    else:
        body = render_template(_default_text_template(channel, urgent), context)

    subject = None
    if channel == "email":
        subject = f"{'URGENT: ' if urgent else ''}{EMAIL_SUBJECT_PREFIX}{context.get('doc_title', '')}"
    return RenderedMessage(channel=channel, body=body, urgent=urgent, subject=subject)
