"""
Checkout for outstanding payments: create a Stripe Checkout Session and record it.

Only the webhook settles a payment; this module never mutates Payment or Invoice.
"""
import logging
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

import stripe
from django.conf import settings

from billing import config
from billing.models import CheckoutSession, Payment
from billing.services.stripe_service import get_client, is_configured

logger = logging.getLogger(__name__)


class CheckoutError(Exception):
    """Base for checkout failures; message is safe to show to the caller."""

    code = "internal"
    http_status = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class Unauthenticated(CheckoutError):
    code = "unauthenticated"
    http_status = 401


class InvalidArgument(CheckoutError):
    code = "invalid-argument"
    http_status = 400


class NotFound(CheckoutError):
    code = "not-found"
    http_status = 404


class FailedPrecondition(CheckoutError):
    code = "failed-precondition"
    http_status = 400


class ProviderUnavailable(CheckoutError):
    code = "unavailable"
    http_status = 503


def amount_to_minor_units(amount) -> int:
    """
    Convert a stored major-unit amount (49.99) to Stripe minor units (4999),
    rounding half up to the nearest unit.

    Raises ValueError for anything that is not a finite amount worth at least
    one minor unit. Stored amounts are never interpreted as cents.
    """
    if amount is None or isinstance(amount, bool):
        raise ValueError("amount is missing")
    try:
        value = Decimal(str(amount).strip())
    except (InvalidOperation, ValueError):
        raise ValueError(f"amount {amount!r} is not numeric")
    if not value.is_finite():
        raise ValueError(f"amount {amount!r} is not finite")
    minor = (value * config.MINOR_UNITS_PER_MAJOR).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    if minor <= 0:
        raise ValueError(f"amount {amount!r} is not positive")
    return int(minor)


def resolve_currency(payment) -> str:
    currency = (payment.currency or "").strip().lower()
    return currency or settings.BILLING_DEFAULT_CURRENCY


def _product_name(payment) -> str:
    if payment.description:
        return payment.description
    if payment.invoice_id:
        return f"Invoice {payment.invoice_id}"
    return f"Payment {payment.pk}"


def _caller_id(caller):
    if caller is None or not getattr(caller, "is_authenticated", False):
        return None
    return getattr(caller, "pk", None)


def initiate_checkout(caller, payment_id, attempt_id: str | None = None) -> dict:
    """
    Create a Stripe Checkout Session for an unpaid Payment.

    The session is scoped to the payment's exact amount and currency and carries
    payment_id / invoice_id / student_id in its metadata so the webhook can
    settle it later. The ledger row is created or merged, so retries are safe.

    Returns:
        {"checkout_url": str, "session_id": str}

    Raises:
        Unauthenticated, InvalidArgument, NotFound, FailedPrecondition,
        ProviderUnavailable
    """
    caller_id = _caller_id(caller)
    if caller_id is None:
        raise Unauthenticated("Sign-in required.")

    payment_id = str(payment_id or "").strip()
    if not payment_id:
        raise InvalidArgument("payment_id is required.")

    payment = Payment.objects.select_related("invoice").filter(pk=payment_id).first()
    if payment is None:
        raise NotFound("Payment not found.")

    if payment.is_paid:
        raise FailedPrecondition("Payment already paid.")

    try:
        unit_amount = amount_to_minor_units(payment.amount)
    except ValueError as e:
        logger.warning("checkout: payment=%s rejected amount: %s", payment_id, e)
        raise FailedPrecondition("Invalid payment amount.")

    currency = resolve_currency(payment)
    invoice_id = payment.invoice_id or ""
    student_id = payment.student_id or caller_id

    if not is_configured():
        raise ProviderUnavailable("Payment is not configured. Please try again later.")

    metadata = {
        "payment_id": payment_id,
        "invoice_id": invoice_id,
        "student_id": str(student_id),
    }
    create_kwargs = dict(
        mode=config.CHECKOUT_MODE,
        success_url=settings.APP_SUCCESS_URL,
        cancel_url=settings.APP_CANCEL_URL,
        line_items=[
            {
                "quantity": 1,
                "price_data": {
                    "currency": currency,
                    "unit_amount": unit_amount,
                    "product_data": {
                        "name": _product_name(payment),
                    },
                },
            }
        ],
        metadata=metadata,
    )
    # Same attempt -> same Stripe session; a new attempt gets a fresh one.
    safe_attempt = (attempt_id or "").strip()[:config.ATTEMPT_ID_MAX_LENGTH]
    if safe_attempt:
        create_kwargs["idempotency_key"] = f"checkout:{payment_id}:{safe_attempt}"

    client = get_client()
    try:
        session = client.checkout.Session.create(**create_kwargs)
    except stripe.StripeError as e:
        logger.warning("checkout: Stripe session create failed payment=%s: %s", payment_id, e)
        err = getattr(e, "error", None)
        msg = getattr(err, "message", None) or getattr(e, "user_message", None)
        if not msg or "api" in msg.lower():
            msg = "Checkout could not be started. Please try again."
        raise ProviderUnavailable(msg)

    # Merge into an existing row (idempotent retry) without touching its status.
    ledger, created = CheckoutSession.objects.get_or_create(
        session_id=session.id,
        defaults={
            "payment": payment,
            "invoice_id": invoice_id or None,
            "student_id": student_id,
            "status": CheckoutSession.STATUS_CREATED,
            "checkout_url": session.url,
        },
    )
    if not created:
        ledger.invoice_id = invoice_id or None
        ledger.student_id = student_id
        ledger.checkout_url = session.url
        ledger.save(update_fields=["invoice_id", "student_id", "checkout_url"])
    logger.info(
        "checkout: session=%s payment=%s amount=%s %s",
        session.id, payment_id, unit_amount, currency,
    )
    return {"checkout_url": session.url, "session_id": session.id}
