"""
Billing models. Payments and invoices are settled by the Stripe webhook only;
CheckoutSession is the append-only ledger mapping Stripe sessions to payments.
"""
import uuid

from django.conf import settings
from django.db import models


def new_document_id() -> str:
    return uuid.uuid4().hex


class Invoice(models.Model):
    """Optional invoice behind a Payment; status moves in lockstep with it."""

    STATUS_UNPAID = "unpaid"
    STATUS_PAID = "paid"
    STATUS_CHOICES = [
        (STATUS_UNPAID, "Unpaid"),
        (STATUS_PAID, "Paid"),
    ]

    id = models.CharField(primary_key=True, max_length=64, default=new_document_id)
    reference = models.CharField(max_length=100, blank=True, default="")
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_UNPAID)

    stripe_checkout_session_id = models.CharField(max_length=255, blank=True, null=True)
    stripe_payment_intent_id = models.CharField(max_length=255, blank=True, null=True)
    paid_at = models.DateTimeField(blank=True, null=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return f"Invoice {self.id} ({self.status})"


class Payment(models.Model):
    """
    Outstanding amount owed by a student. Amount is in major currency units
    (e.g. 49.99 dollars); checkout converts it to cents.
    Status only ever moves unpaid -> paid.
    """

    STATUS_UNPAID = "unpaid"
    STATUS_PAID = "paid"
    STATUS_CHOICES = [
        (STATUS_UNPAID, "Unpaid"),
        (STATUS_PAID, "Paid"),
    ]

    id = models.CharField(primary_key=True, max_length=64, default=new_document_id)

    student = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="payments",
    )
    invoice = models.ForeignKey(
        "billing.Invoice",
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="payments",
    )

    amount = models.DecimalField(max_digits=10, decimal_places=2)
    currency = models.CharField(max_length=10, blank=True, default="")
    description = models.CharField(max_length=255, blank=True, default="")

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_UNPAID)

    stripe_checkout_session_id = models.CharField(max_length=255, blank=True, null=True)
    stripe_payment_intent_id = models.CharField(max_length=255, blank=True, null=True)
    paid_at = models.DateTimeField(blank=True, null=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Payment"
        verbose_name_plural = "Payments"
        ordering = ["-created_at"]

    def __str__(self):
        return f"Payment {self.id} ({self.status})"

    @property
    def is_paid(self) -> bool:
        return self.status == self.STATUS_PAID


class CheckoutSession(models.Model):
    """One row per Stripe Checkout Session. Never deleted; completed only by the webhook."""

    STATUS_CREATED = "created"
    STATUS_COMPLETED = "completed"
    STATUS_CHOICES = [
        (STATUS_CREATED, "Created"),
        (STATUS_COMPLETED, "Completed"),
    ]

    session_id = models.CharField(primary_key=True, max_length=255)
    payment = models.ForeignKey(
        "billing.Payment",
        on_delete=models.PROTECT,
        related_name="checkout_sessions",
    )
    invoice_id = models.CharField(max_length=64, blank=True, null=True)
    student = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="checkout_sessions",
    )

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_CREATED)
    checkout_url = models.URLField(max_length=2000, blank=True, null=True)

    stripe_payment_intent_id = models.CharField(max_length=255, blank=True, null=True)
    stripe_customer_id = models.CharField(max_length=255, blank=True, null=True)

    created_at = models.DateTimeField(auto_now_add=True)
    completed_at = models.DateTimeField(blank=True, null=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return f"CheckoutSession {self.session_id} ({self.status})"
