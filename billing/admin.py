from django.contrib import admin
from .models import CheckoutSession, Invoice, Payment


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = ("id", "student", "invoice", "description", "amount", "currency", "status", "paid_at", "created_at")
    list_filter = ("status", "currency")
    search_fields = ("id", "description", "stripe_checkout_session_id", "stripe_payment_intent_id")
    readonly_fields = ("stripe_checkout_session_id", "stripe_payment_intent_id", "paid_at", "created_at", "updated_at")


@admin.register(Invoice)
class InvoiceAdmin(admin.ModelAdmin):
    list_display = ("id", "reference", "status", "paid_at", "created_at")
    list_filter = ("status",)
    search_fields = ("id", "reference")
    readonly_fields = ("stripe_checkout_session_id", "stripe_payment_intent_id", "paid_at", "created_at", "updated_at")


@admin.register(CheckoutSession)
class CheckoutSessionAdmin(admin.ModelAdmin):
    """Ledger is written by checkout and the webhook only."""

    list_display = ("session_id", "payment", "invoice_id", "student", "status", "created_at", "completed_at")
    list_filter = ("status",)
    search_fields = ("session_id", "payment__id", "stripe_payment_intent_id")
    readonly_fields = [f.name for f in CheckoutSession._meta.fields]

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
