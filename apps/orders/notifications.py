import logging

import requests
import resend
from django.conf import settings
from django.template.loader import render_to_string
from resend.exceptions import ResendError

from apps.orders.models import ActivityType, OrderStatus
from apps.orders.services import record_activity_safely

logger = logging.getLogger(__name__)


def _scheduled_subject(order):
    install_date = order.scheduled_install_date
    if install_date is None:
        return "Installation Confirmed"
    return f"Installation Confirmed for {install_date:%A} {install_date.day} {install_date:%B}"


EMAIL_TEMPLATES = {
    "quote_accepted": ("Your ProSpaces order {number} has been created", "orders/emails/quote_accepted.html"),
    "payment_received": ("Payment received - Order {number}", "orders/emails/payment_received.html"),
    "agreement_signed": ("Installation agreement signed - Order {number}", "orders/emails/agreement_signed.html"),
    "scheduled": (_scheduled_subject, "orders/emails/scheduled.html"),
    "in_progress": ("Your installation has started - Order {number}", "orders/emails/in_progress.html"),
    "completed": ("Installation complete - Order {number}", "orders/emails/completed.html"),
    "revisit_required": ("We'll be back - Order {number}", "orders/emails/revisit_required.html"),
}

STATUS_TEMPLATES = {
    OrderStatus.PENDING: "quote_accepted",
    OrderStatus.CONFIRMED: "payment_received",
    OrderStatus.SCHEDULED: "scheduled",
    OrderStatus.IN_PROGRESS: "in_progress",
    OrderStatus.COMPLETED: "completed",
    OrderStatus.REVISIT_REQUIRED: "revisit_required",
}


def build_email(order, template_key):
    subject, template_name = EMAIL_TEMPLATES[template_key]
    if callable(subject):
        subject = subject(order)
    else:
        subject = subject.format(number=order.order_number)

    context = {
        "client_name": order.client.full_name,
        "order_number": order.order_number,
        "install_date": order.scheduled_install_date,
        "time_window": order.time_window,
        "engineer_name": order.engineer.name if order.engineer_id else "",
        "amount_paid": order.amount_paid,
        "total_amount": order.total_amount,
        "portal_url": settings.CLIENT_PORTAL_URL,
        "support_email": settings.SUPPORT_EMAIL,
        "support_phone": settings.SUPPORT_PHONE,
    }
    return subject, render_to_string(template_name, context)


def send_order_email(order, template_key):
    """Send one templated email to the order's client and log the attempt.

    Provider failures are recorded as an order activity instead of raised.
    """
    recipient = order.client.email
    if not settings.RESEND_API_KEY or not recipient:
        reason = "email provider not configured" if recipient else "client has no email address"
        logger.info("Skipping %s email for order %s: %s", template_key, order.order_number, reason)
        return record_activity_safely(
            order,
            ActivityType.EMAIL_SKIPPED,
            f"{template_key} email skipped",
            details={"template": template_key, "reason": reason},
        )

    subject, html = build_email(order, template_key)
    try:
        resend.api_key = settings.RESEND_API_KEY
        response = resend.Emails.send(
            {
                "from": settings.ORDER_EMAIL_FROM,
                "to": [recipient],
                "subject": subject,
                "html": html,
            }
        )
    except (ResendError, requests.RequestException) as exc:
        logger.error("Failed to send %s email for order %s: %s", template_key, order.order_number, exc)
        return record_activity_safely(
            order,
            ActivityType.EMAIL_FAILED,
            f"{template_key} email failed",
            details={"template": template_key, "recipient": recipient, "error": str(exc)},
        )

    message_id = response.get("id") if isinstance(response, dict) else None
    logger.info("Sent %s email for order %s to %s", template_key, order.order_number, recipient)
    return record_activity_safely(
        order,
        ActivityType.EMAIL_SENT,
        f"{template_key} email sent to {recipient}",
        details={"template": template_key, "recipient": recipient, "subject": subject, "message_id": message_id},
    )
