import logging
from decimal import ROUND_HALF_UP, Decimal

import stripe
from django.conf import settings
from django.db import transaction
from django.utils import timezone

from apps.orders.exceptions import PaymentError, PaymentProviderError
from apps.orders.models import ActivityType, OrderPayment, OrderStatus, PaymentStatus
from apps.orders.services import record_activity
from apps.orders.workflow import request_transition

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


def _api_key():
    if not settings.STRIPE_SECRET_KEY:
        raise PaymentProviderError("Online payments are not available.", code="payments_unavailable")
    return settings.STRIPE_SECRET_KEY


def _cents_to_amount(cents):
    return (Decimal(int(cents)) / Decimal(100)).quantize(CENTS, rounding=ROUND_HALF_UP)


def _validate_amount(order, amount):
    amount = Decimal(amount).quantize(CENTS)
    if amount <= 0:
        raise PaymentError("Payment amount must be greater than zero.", code="invalid_payment")
    if amount > order.balance_due:
        raise PaymentError(
            f"Payment of {amount} exceeds the outstanding balance of {order.balance_due}.",
            code="invalid_payment",
        )
    return amount


def _credit(order, amount, payment_type, actor=None, payment=None):
    order.amount_paid = (order.amount_paid + amount).quantize(CENTS)
    update_fields = ["amount_paid", "updated_at"]
    if order.is_fully_paid and order.paid_at is None:
        order.paid_at = timezone.now()
        update_fields.append("paid_at")
    order.save(update_fields=update_fields)

    record_activity(
        order,
        ActivityType.PAYMENT_RECEIVED,
        f"Payment of £{amount} received",
        details={
            "amount": str(amount),
            "payment_type": payment_type,
            "payment_id": str(payment.pk) if payment else None,
            "amount_paid": str(order.amount_paid),
            "balance_due": str(order.balance_due),
        },
        actor=actor,
    )
    logger.info("Applied payment of %s to order %s (balance %s)", amount, order.order_number, order.balance_due)

    if order.status == OrderStatus.PENDING and order.is_fully_paid:
        request_transition(order, OrderStatus.CONFIRMED, None, notes="Payment received in full")
    return order


def apply_payment(order, amount, payment_type, actor=None, payment=None):
    amount = _validate_amount(order, amount)
    return _credit(order, amount, payment_type, actor=actor, payment=payment)


def _settle_captured(order, amount, payment, actor):
    """Apply money the provider already captured; any excess is logged for refund, never dropped."""
    credited = min(amount, order.balance_due)
    if credited > 0:
        _credit(order, credited, payment.payment_type, actor=actor, payment=payment)

    excess = amount - credited
    if excess > 0:
        logger.warning("Checkout %s overpaid order %s by %s", payment.stripe_session_id, order.order_number, excess)
        record_activity(
            order,
            ActivityType.PAYMENT_OVERPAID,
            f"£{excess} received above the order total",
            details={
                "session_id": payment.stripe_session_id,
                "payment_id": str(payment.pk),
                "amount": str(amount),
                "credited": str(credited),
                "excess": str(excess),
            },
            actor=actor,
        )


def record_payment(order, amount, payment_type, actor):
    """Record an offline payment taken by staff."""
    with transaction.atomic():
        amount = _validate_amount(order, amount)
        payment = OrderPayment.objects.create(
            order=order,
            payment_type=payment_type,
            amount=amount,
            status=PaymentStatus.PAID,
            paid_at=timezone.now(),
            created_by=actor,
        )
        apply_payment(order, amount, payment_type, actor=actor, payment=payment)
    return payment


def _find_or_create_customer(client, api_key):
    customers = stripe.Customer.list(email=client.email, limit=1, api_key=api_key)
    if customers.data:
        return customers.data[0].id
    customer = stripe.Customer.create(email=client.email, name=client.full_name, api_key=api_key)
    return customer.id


def _retire_open_sessions(order, api_key, actor):
    """Expire checkouts still open for the order; sessions that already closed are settled instead."""
    open_payments = order.payments.filter(status=PaymentStatus.PENDING).exclude(stripe_session_id="")
    for payment in open_payments:
        try:
            stripe.checkout.Session.expire(payment.stripe_session_id, api_key=api_key)
        except stripe.InvalidRequestError:
            verify_checkout_session(order, payment.stripe_session_id, actor)
            continue
        except stripe.StripeError as exc:
            logger.error("Could not expire checkout %s: %s", payment.stripe_session_id, exc)
            raise PaymentProviderError(str(exc))

        payment.status = PaymentStatus.EXPIRED
        payment.save(update_fields=["status", "updated_at"])
        record_activity(
            order,
            ActivityType.PAYMENT_SESSION_EXPIRED,
            "Checkout replaced by a new session",
            details={"session_id": payment.stripe_session_id, "amount": str(payment.amount)},
            actor=actor,
        )


def create_checkout_session(order, amount, payment_type, actor, origin):
    api_key = _api_key()
    _retire_open_sessions(order, api_key, actor)
    amount = _validate_amount(order, amount)
    origin = (origin or settings.CLIENT_PORTAL_URL).rstrip("/")

    try:
        customer_id = None
        if order.client.email:
            customer_id = _find_or_create_customer(order.client, api_key)
        session = stripe.checkout.Session.create(
            api_key=api_key,
            customer=customer_id,
            mode="payment",
            line_items=[
                {
                    "price_data": {
                        "currency": settings.STRIPE_CURRENCY,
                        "product_data": {
                            "name": f"Order {order.order_number} - {payment_type} payment",
                        },
                        "unit_amount": int(amount * 100),
                    },
                    "quantity": 1,
                }
            ],
            success_url=f"{origin}/orders/{order.pk}?payment=success&session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{origin}/orders/{order.pk}?payment=cancelled",
            metadata={
                "order_id": str(order.pk),
                "order_number": order.order_number,
                "payment_type": payment_type,
            },
        )
    except stripe.StripeError as exc:
        logger.error("Stripe checkout session failed for order %s: %s", order.order_number, exc)
        raise PaymentProviderError(str(exc))

    payment = OrderPayment.objects.create(
        order=order,
        payment_type=payment_type,
        amount=amount,
        status=PaymentStatus.PENDING,
        stripe_session_id=session.id,
        created_by=actor,
    )
    record_activity(
        order,
        ActivityType.PAYMENT_SESSION_CREATED,
        f"Checkout started for £{amount}",
        details={"session_id": session.id, "amount": str(amount), "payment_type": payment_type},
        actor=actor,
    )
    logger.info("Created checkout session %s for order %s", session.id, order.order_number)
    return payment, session.url


def verify_checkout_session(order, session_id, actor):
    payment = order.payments.filter(stripe_session_id=session_id).first()
    if payment is None:
        raise PaymentError("No checkout session with that id belongs to this order.", code="unknown_session")
    if payment.status == PaymentStatus.PAID:
        return payment

    api_key = _api_key()
    try:
        session = stripe.checkout.Session.retrieve(session_id, api_key=api_key)
    except stripe.StripeError as exc:
        logger.error("Stripe session lookup %s failed: %s", session_id, exc)
        raise PaymentProviderError(str(exc))

    metadata = session.metadata or {}
    if metadata.get("order_id") != str(order.pk):
        logger.warning("Session %s does not belong to order %s", session_id, order.order_number)
        raise PaymentError("This checkout session belongs to a different order.", code="session_mismatch")

    if session.payment_status == "paid":
        amount = _cents_to_amount(session.amount_total)
        with transaction.atomic():
            payment.status = PaymentStatus.PAID
            payment.amount = amount
            payment.paid_at = timezone.now()
            payment.stripe_payment_intent_id = session.payment_intent or ""
            payment.save(update_fields=["status", "amount", "paid_at", "stripe_payment_intent_id", "updated_at"])
            _settle_captured(order, amount, payment, actor)
    elif session.payment_status == "unpaid" and payment.status == PaymentStatus.PENDING:
        payment.status = PaymentStatus.FAILED
        payment.save(update_fields=["status", "updated_at"])
        record_activity(
            order,
            ActivityType.PAYMENT_FAILED,
            "Checkout payment was not completed",
            details={"session_id": session_id},
            actor=actor,
        )
    return payment
