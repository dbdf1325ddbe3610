"""
Settlement of completed Stripe Checkout Sessions.

Stripe delivers webhooks at least once, possibly concurrently. Payment status is
re-read under a row lock inside the same transaction that writes it, so a
duplicate delivery either waits and then sees "paid", or sees it right away.
"""
import logging

from django.db import transaction
from django.utils import timezone

from billing.models import CheckoutSession, Invoice, Payment

logger = logging.getLogger(__name__)

SETTLED = "settled"
ALREADY_PAID = "already_paid"
PAYMENT_MISSING = "payment_missing"
IGNORED = "ignored"


def _object_id(value):
    """Stripe references arrive either as an id string or as an expanded object."""
    if isinstance(value, dict):
        value = value.get("id")
    return str(value) if value else None


def settle_checkout_session(session_obj: dict, now=None) -> str:
    """
    Apply a checkout.session.completed payload to Payment, Invoice and ledger.

    Returns one of SETTLED, ALREADY_PAID, PAYMENT_MISSING, IGNORED. Every outcome
    is final for the delivery; unexpected errors propagate so the caller can ask
    Stripe to retry.
    """
    metadata = session_obj.get("metadata") or {}
    payment_id = str(metadata.get("payment_id") or metadata.get("paymentId") or "").strip()
    session_id = _object_id(session_obj.get("id"))
    if not payment_id:
        logger.warning("stripe_webhook: session=%s has no metadata.payment_id; ignored", session_id)
        return IGNORED

    invoice_id = str(metadata.get("invoice_id") or metadata.get("invoiceId") or "").strip() or None
    payment_intent_id = _object_id(session_obj.get("payment_intent"))
    customer_id = _object_id(session_obj.get("customer"))
    now = now or timezone.now()

    with transaction.atomic():
        payment = Payment.objects.select_for_update().filter(pk=payment_id).first()
        if payment is None:
            logger.warning("stripe_webhook: payment=%s not found session=%s", payment_id, session_id)
            return PAYMENT_MISSING
        if payment.is_paid:
            logger.info("stripe_webhook: payment=%s already paid session=%s", payment_id, session_id)
            return ALREADY_PAID

        invoice_id = invoice_id or payment.invoice_id

        if session_id:
            _complete_ledger_entry(
                session_id,
                payment=payment,
                invoice_id=invoice_id,
                payment_intent_id=payment_intent_id,
                customer_id=customer_id,
                now=now,
            )
        else:
            logger.warning("stripe_webhook: completed session without id payment=%s", payment_id)

        payment.status = Payment.STATUS_PAID
        payment.paid_at = now
        payment.stripe_checkout_session_id = session_id
        payment.stripe_payment_intent_id = payment_intent_id
        payment.save(update_fields=[
            "status", "paid_at", "stripe_checkout_session_id", "stripe_payment_intent_id", "updated_at",
        ])

        if invoice_id:
            Invoice.objects.update_or_create(
                pk=invoice_id,
                defaults={
                    "status": Invoice.STATUS_PAID,
                    "paid_at": now,
                    "stripe_checkout_session_id": session_id,
                    "stripe_payment_intent_id": payment_intent_id,
                },
            )

    logger.info(
        "stripe_webhook: payment=%s paid session=%s invoice=%s pi=%s",
        payment_id, session_id, invoice_id, payment_intent_id,
    )
    return SETTLED


def _complete_ledger_entry(session_id, *, payment, invoice_id, payment_intent_id, customer_id, now):
    ledger = CheckoutSession.objects.select_for_update().filter(pk=session_id).first()
    if ledger is None:
        # Session created outside initiate_checkout (or its ledger write was lost).
        CheckoutSession.objects.create(
            session_id=session_id,
            payment=payment,
            invoice_id=invoice_id,
            student_id=payment.student_id,
            status=CheckoutSession.STATUS_COMPLETED,
            stripe_payment_intent_id=payment_intent_id,
            stripe_customer_id=customer_id,
            completed_at=now,
        )
        return
    if ledger.payment_id != payment.pk:
        logger.warning(
            "stripe_webhook: ledger session=%s belongs to payment=%s, event says payment=%s",
            session_id, ledger.payment_id, payment.pk,
        )
    ledger.status = CheckoutSession.STATUS_COMPLETED
    ledger.stripe_payment_intent_id = payment_intent_id
    ledger.stripe_customer_id = customer_id
    ledger.completed_at = now
    ledger.save(update_fields=["status", "stripe_payment_intent_id", "stripe_customer_id", "completed_at"])
