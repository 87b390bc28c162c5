from __future__ import annotations

import logging

from django.conf import settings
from django.core.mail import EmailMultiAlternatives
from django.utils import timezone
from django.utils.html import escape

logger = logging.getLogger(__name__)

TRANSFER_APPROVAL_REQUIRED = "transfer_approval_required"

SUBJECTS = {
    TRANSFER_APPROVAL_REQUIRED: "Weight Transfer Approval Required",
}


def _from_email():
    return getattr(settings, "ORDERFLOW_NOTIFY_FROM_EMAIL", None) or settings.DEFAULT_FROM_EMAIL


def _render(event_type, payload):
    lines = [f"{key.replace('_', ' ').title()}: {value}" for key, value in payload.items()]
    text = "\n".join(lines)
    rows = "".join(
        f"<p><strong>{escape(key.replace('_', ' ').title())}:</strong> {escape(str(value))}</p>"
        for key, value in payload.items()
    )
    html = f"""
    <html>
      <body>
        <div class="container">
          <h2>{escape(SUBJECTS.get(event_type, event_type))}</h2>
          <div class="detail">{rows}</div>
        </div>
        <div class="footer">
          <p>&copy; {timezone.now().year} Production Management System</p>
        </div>
      </body>
    </html>
    """
    return text, html


def notify(actor, event_type, payload) -> bool:
    """Send one notification to ``actor``. Returns False when nothing was sent.

    Delivery failures are logged, never raised.
    """
    email_address = getattr(actor, "email", "")
    if not email_address:
        logger.info("No e-mail address for %s; %s notification skipped", actor, event_type)
        return False
    subject = SUBJECTS.get(event_type, event_type.replace("_", " ").title())
    if payload.get("order_number"):
        subject = f"{subject} - {payload['order_number']}"
    text, html = _render(event_type, payload)
    email = EmailMultiAlternatives(
        subject=subject,
        body=text,
        from_email=_from_email(),
        to=[email_address],
    )
    email.attach_alternative(html, "text/html")
    try:
        email.send()
    except Exception:
        logger.exception("Failed to send %s notification to %s", event_type, email_address)
        return False
    return True
