import hashlib
import hmac
import json
import time
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import patch

import stripe
from django.contrib.auth.models import AnonymousUser
from django.db import DatabaseError
from django.test import Client, SimpleTestCase, TestCase, override_settings
from django.urls import reverse

from accounts.models import CustomUser
from billing.models import CheckoutSession, Invoice, Payment
from billing.services.checkout_service import (
    FailedPrecondition,
    InvalidArgument,
    NotFound,
    ProviderUnavailable,
    Unauthenticated,
    amount_to_minor_units,
    initiate_checkout,
)
from billing.services.settlement_service import (
    ALREADY_PAID,
    IGNORED,
    PAYMENT_MISSING,
    SETTLED,
    settle_checkout_session,
)

WEBHOOK_SECRET = "whsec_test_secret"


def _sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def _completed_event(payment_id="p1", invoice_id="", session_id="cs_test_1", event_id="evt_1"):
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": session_id,
                "object": "checkout.session",
                "payment_intent": "pi_test_1",
                "customer": "cus_test_1",
                "payment_status": "paid",
                "metadata": {"payment_id": payment_id, "invoice_id": invoice_id, "student_id": "1"},
            }
        },
    })


class AmountConversionTests(SimpleTestCase):
    def test_major_units_become_cents(self):
        self.assertEqual(amount_to_minor_units(Decimal("49.99")), 4999)
        self.assertEqual(amount_to_minor_units(49.99), 4999)
        self.assertEqual(amount_to_minor_units("10"), 1000)
        self.assertEqual(amount_to_minor_units(Decimal("0.01")), 1)

    def test_rounds_half_up(self):
        self.assertEqual(amount_to_minor_units(Decimal("0.005")), 1)
        self.assertEqual(amount_to_minor_units(Decimal("12.345")), 1235)

    def test_rejects_non_positive_and_non_finite(self):
        for bad in (0, Decimal("0.004"), -5, float("nan"), float("inf"), "abc", None, "", True):
            with self.subTest(amount=bad):
                with self.assertRaises(ValueError):
                    amount_to_minor_units(bad)


@override_settings(
    STRIPE_SECRET_KEY="sk_test_123",
    BILLING_DEFAULT_CURRENCY="usd",
    APP_SUCCESS_URL="https://app.test/success?session_id={CHECKOUT_SESSION_ID}",
    APP_CANCEL_URL="https://app.test/cancel",
)
class InitiateCheckoutTests(TestCase):
    def setUp(self):
        self.student = CustomUser.objects.create_user(email="student@local.test", password="password123")
        self.caller = CustomUser.objects.create_user(email="caller@local.test", password="password123")
        self.payment = Payment.objects.create(id="p1", amount=Decimal("49.99"), currency="USD")

        patcher = patch("billing.services.checkout_service.get_client")
        self.get_client = patcher.start()
        self.addCleanup(patcher.stop)
        self.create_session = self.get_client.return_value.checkout.Session.create
        self.create_session.return_value = SimpleNamespace(
            id="cs_test_1",
            url="https://checkout.stripe.com/c/pay/cs_test_1",
        )

    def test_requires_authenticated_caller(self):
        with self.assertRaises(Unauthenticated):
            initiate_checkout(None, "p1")
        with self.assertRaises(Unauthenticated):
            initiate_checkout(AnonymousUser(), "p1")
        self.create_session.assert_not_called()

    def test_requires_payment_id(self):
        for empty in ("", "   ", None):
            with self.subTest(payment_id=empty):
                with self.assertRaises(InvalidArgument):
                    initiate_checkout(self.caller, empty)

    def test_unknown_payment(self):
        with self.assertRaises(NotFound):
            initiate_checkout(self.caller, "missing")

    def test_paid_payment_is_rejected(self):
        self.payment.status = Payment.STATUS_PAID
        self.payment.save(update_fields=["status"])
        with self.assertRaises(FailedPrecondition):
            initiate_checkout(self.caller, "p1")
        self.create_session.assert_not_called()
        self.assertFalse(CheckoutSession.objects.exists())

    def test_zero_amount_is_rejected(self):
        Payment.objects.create(id="p0", amount=Decimal("0.00"))
        with self.assertRaises(FailedPrecondition):
            initiate_checkout(self.caller, "p0")
        self.create_session.assert_not_called()

    def test_creates_session_for_exact_amount(self):
        result = initiate_checkout(self.caller, "p1")

        self.assertEqual(result, {
            "checkout_url": "https://checkout.stripe.com/c/pay/cs_test_1",
            "session_id": "cs_test_1",
        })
        self.create_session.assert_called_once()
        kwargs = self.create_session.call_args.kwargs
        self.assertEqual(kwargs["mode"], "payment")
        self.assertEqual(kwargs["success_url"], "https://app.test/success?session_id={CHECKOUT_SESSION_ID}")
        price_data = kwargs["line_items"][0]["price_data"]
        self.assertEqual(price_data["unit_amount"], 4999)
        self.assertEqual(price_data["currency"], "usd")
        self.assertEqual(price_data["product_data"]["name"], "Payment p1")
        self.assertEqual(kwargs["metadata"], {
            "payment_id": "p1",
            "invoice_id": "",
            "student_id": str(self.caller.pk),
        })
        self.assertNotIn("idempotency_key", kwargs)

        ledger = CheckoutSession.objects.get(session_id="cs_test_1")
        self.assertEqual(ledger.status, CheckoutSession.STATUS_CREATED)
        self.assertEqual(ledger.payment_id, "p1")
        self.assertEqual(ledger.checkout_url, "https://checkout.stripe.com/c/pay/cs_test_1")

        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.STATUS_UNPAID)
        self.assertIsNone(self.payment.paid_at)

    def test_metadata_uses_owner_and_invoice(self):
        invoice = Invoice.objects.create(id="inv1")
        Payment.objects.create(id="p2", amount=Decimal("20"), currency="", invoice=invoice, student=self.student)

        initiate_checkout(self.caller, "p2", attempt_id="attempt-1")

        kwargs = self.create_session.call_args.kwargs
        self.assertEqual(kwargs["metadata"]["student_id"], str(self.student.pk))
        self.assertEqual(kwargs["metadata"]["invoice_id"], "inv1")
        self.assertEqual(kwargs["line_items"][0]["price_data"]["currency"], "usd")
        self.assertEqual(kwargs["line_items"][0]["price_data"]["product_data"]["name"], "Invoice inv1")
        self.assertEqual(kwargs["idempotency_key"], "checkout:p2:attempt-1")
        ledger = CheckoutSession.objects.get(session_id="cs_test_1")
        self.assertEqual(ledger.invoice_id, "inv1")
        self.assertEqual(ledger.student_id, self.student.pk)

    def test_description_names_the_line_item(self):
        Payment.objects.create(id="p3", amount=Decimal("15"), currency="usd", description="Drop-in class, 10 Oct")
        initiate_checkout(self.caller, "p3")
        name = self.create_session.call_args.kwargs["line_items"][0]["price_data"]["product_data"]["name"]
        self.assertEqual(name, "Drop-in class, 10 Oct")

    def test_retry_merges_ledger_entry(self):
        initiate_checkout(self.caller, "p1", attempt_id="a1")
        initiate_checkout(self.caller, "p1", attempt_id="a1")

        self.assertEqual(CheckoutSession.objects.count(), 1)
        amounts = [c.kwargs["line_items"][0]["price_data"]["unit_amount"] for c in self.create_session.call_args_list]
        self.assertEqual(amounts, [4999, 4999])

    def test_retry_does_not_reopen_completed_session(self):
        CheckoutSession.objects.create(
            session_id="cs_test_1",
            payment=self.payment,
            status=CheckoutSession.STATUS_COMPLETED,
        )
        initiate_checkout(self.caller, "p1")
        self.assertEqual(CheckoutSession.objects.get().status, CheckoutSession.STATUS_COMPLETED)

    def test_stripe_failure_writes_nothing(self):
        self.create_session.side_effect = stripe.StripeError("card processor down")
        with self.assertRaises(ProviderUnavailable):
            initiate_checkout(self.caller, "p1")
        self.assertFalse(CheckoutSession.objects.exists())

    @override_settings(STRIPE_SECRET_KEY="")
    def test_unconfigured_stripe(self):
        with self.assertRaises(ProviderUnavailable):
            initiate_checkout(self.caller, "p1")
        self.create_session.assert_not_called()


@override_settings(STRIPE_SECRET_KEY="sk_test_123")
class CreateCheckoutViewTests(TestCase):
    def setUp(self):
        self.user = CustomUser.objects.create_user(email="student@local.test", password="password123")
        Payment.objects.create(id="p1", amount=Decimal("49.99"), currency="usd")
        self.url = reverse("billing:create_checkout")

    def test_anonymous_is_401(self):
        response = self.client.post(self.url, data=json.dumps({"payment_id": "p1"}), content_type="application/json")
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error"]["code"], "unauthenticated")

    def test_anonymous_is_401_with_csrf_checks(self):
        client = Client(enforce_csrf_checks=True)
        response = client.post(self.url, data=json.dumps({"paymentId": "p1"}), content_type="application/json")
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error"]["code"], "unauthenticated")

    @patch("billing.services.checkout_service.get_client")
    def test_signed_in_client_without_csrf_token(self, get_client):
        get_client.return_value.checkout.Session.create.return_value = SimpleNamespace(
            id="cs_test_8",
            url="https://checkout.stripe.com/c/pay/cs_test_8",
        )
        client = Client(enforce_csrf_checks=True)
        client.force_login(self.user)
        response = client.post(self.url, data=json.dumps({"paymentId": "p1"}), content_type="application/json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["session_id"], "cs_test_8")

    def test_invalid_json_is_400(self):
        self.client.force_login(self.user)
        response = self.client.post(self.url, data="{not json", content_type="application/json")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "invalid-argument")

    def test_unknown_payment_is_404(self):
        self.client.force_login(self.user)
        response = self.client.post(self.url, data=json.dumps({"paymentId": "nope"}), content_type="application/json")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"]["code"], "not-found")

    @patch("billing.services.checkout_service.get_client")
    def test_returns_checkout_url(self, get_client):
        get_client.return_value.checkout.Session.create.return_value = SimpleNamespace(
            id="cs_test_9",
            url="https://checkout.stripe.com/c/pay/cs_test_9",
        )
        self.client.force_login(self.user)
        response = self.client.post(self.url, data=json.dumps({"paymentId": "p1"}), content_type="application/json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {
            "checkout_url": "https://checkout.stripe.com/c/pay/cs_test_9",
            "session_id": "cs_test_9",
        })

    def test_get_not_allowed(self):
        self.client.force_login(self.user)
        self.assertEqual(self.client.get(self.url).status_code, 405)


class SettleCheckoutSessionTests(TestCase):
    def setUp(self):
        self.invoice = Invoice.objects.create(id="inv1")
        self.payment = Payment.objects.create(id="p1", amount=Decimal("49.99"), currency="usd", invoice=self.invoice)
        CheckoutSession.objects.create(session_id="cs_test_1", payment=self.payment, invoice_id="inv1")

    def _session(self, **overrides):
        obj = {
            "id": "cs_test_1",
            "payment_intent": "pi_test_1",
            "customer": "cus_test_1",
            "metadata": {"payment_id": "p1", "invoice_id": "inv1"},
        }
        obj.update(overrides)
        return obj

    def test_settles_payment_invoice_and_ledger(self):
        self.assertEqual(settle_checkout_session(self._session()), SETTLED)

        self.payment.refresh_from_db()
        self.invoice.refresh_from_db()
        ledger = CheckoutSession.objects.get(session_id="cs_test_1")
        self.assertEqual(self.payment.status, Payment.STATUS_PAID)
        self.assertIsNotNone(self.payment.paid_at)
        self.assertEqual(self.payment.stripe_checkout_session_id, "cs_test_1")
        self.assertEqual(self.payment.stripe_payment_intent_id, "pi_test_1")
        self.assertEqual(self.invoice.status, Invoice.STATUS_PAID)
        self.assertEqual(self.invoice.stripe_payment_intent_id, "pi_test_1")
        self.assertEqual(ledger.status, CheckoutSession.STATUS_COMPLETED)
        self.assertEqual(ledger.stripe_customer_id, "cus_test_1")
        self.assertIsNotNone(ledger.completed_at)

    def test_second_delivery_is_a_no_op(self):
        settle_checkout_session(self._session())
        self.payment.refresh_from_db()
        first_paid_at = self.payment.paid_at

        self.assertEqual(settle_checkout_session(self._session(payment_intent="pi_other")), ALREADY_PAID)

        self.payment.refresh_from_db()
        self.assertEqual(self.payment.paid_at, first_paid_at)
        self.assertEqual(self.payment.stripe_payment_intent_id, "pi_test_1")

    def test_missing_payment_writes_nothing(self):
        outcome = settle_checkout_session(self._session(id="cs_other", metadata={"payment_id": "ghost"}))
        self.assertEqual(outcome, PAYMENT_MISSING)
        self.assertFalse(CheckoutSession.objects.filter(session_id="cs_other").exists())

    def test_missing_metadata_is_ignored(self):
        self.assertEqual(settle_checkout_session(self._session(metadata={})), IGNORED)
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.STATUS_UNPAID)

    def test_camel_case_metadata_settles(self):
        # Sessions created by the earlier mobile backend carry paymentId/invoiceId.
        session = {"id": "cs_test_1", "metadata": {"paymentId": "p1"}}
        self.assertEqual(settle_checkout_session(session), SETTLED)
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.STATUS_PAID)
        self.assertEqual(self.payment.amount, Decimal("49.99"))
        self.assertEqual(settle_checkout_session(session), ALREADY_PAID)

    def test_camel_case_invoice_id_is_marked_paid(self):
        settle_checkout_session({"id": "cs_test_1", "metadata": {"paymentId": "p1", "invoiceId": "inv2"}})
        self.assertEqual(Invoice.objects.get(pk="inv2").status, Invoice.STATUS_PAID)

    def test_expanded_references_and_invoice_from_payment(self):
        outcome = settle_checkout_session(self._session(
            payment_intent={"id": "pi_expanded", "object": "payment_intent"},
            customer=None,
            metadata={"payment_id": "p1", "invoice_id": ""},
        ))
        self.assertEqual(outcome, SETTLED)
        self.invoice.refresh_from_db()
        self.assertEqual(self.invoice.status, Invoice.STATUS_PAID)
        self.assertEqual(self.invoice.stripe_payment_intent_id, "pi_expanded")

    def test_creates_ledger_entry_when_absent(self):
        CheckoutSession.objects.all().delete()
        settle_checkout_session(self._session())
        ledger = CheckoutSession.objects.get(session_id="cs_test_1")
        self.assertEqual(ledger.status, CheckoutSession.STATUS_COMPLETED)
        self.assertEqual(ledger.payment_id, "p1")

    def test_failure_rolls_back_every_write(self):
        with patch("billing.services.settlement_service.Invoice") as invoice_model:
            invoice_model.STATUS_PAID = "paid"
            invoice_model.objects.update_or_create.side_effect = DatabaseError("connection lost")
            with self.assertRaises(DatabaseError):
                settle_checkout_session(self._session())

        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.STATUS_UNPAID)
        self.assertEqual(CheckoutSession.objects.get().status, CheckoutSession.STATUS_CREATED)

        self.assertEqual(settle_checkout_session(self._session()), SETTLED)


@override_settings(STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET)
class StripeWebhookViewTests(TestCase):
    def setUp(self):
        self.payment = Payment.objects.create(id="p1", amount=Decimal("49.99"), currency="usd")
        CheckoutSession.objects.create(session_id="cs_test_1", payment=self.payment)
        self.url = reverse("billing:stripe_webhook")

    def _post(self, payload, signature=None):
        extra = {}
        if signature is not None:
            extra["HTTP_STRIPE_SIGNATURE"] = signature
        return self.client.post(self.url, data=payload, content_type="application/json", **extra)

    def test_missing_signature_is_400(self):
        response = self._post(_completed_event())
        self.assertEqual(response.status_code, 400)
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.STATUS_UNPAID)

    @override_settings(STRIPE_WEBHOOK_SECRET="")
    def test_missing_secret_is_400(self):
        payload = _completed_event()
        response = self._post(payload, _sign(payload))
        self.assertEqual(response.status_code, 400)
        self.assertIn(b"not configured", response.content)

    def test_bad_signature_is_400(self):
        payload = _completed_event()
        response = self._post(payload, _sign(payload, secret="whsec_wrong"))
        self.assertEqual(response.status_code, 400)
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.STATUS_UNPAID)

    def test_stale_signature_is_400(self):
        payload = _completed_event()
        response = self._post(payload, _sign(payload, timestamp=int(time.time()) - 3600))
        self.assertEqual(response.status_code, 400)

    def test_other_event_types_are_acknowledged(self):
        payload = json.dumps({"id": "evt_2", "type": "payment_intent.created", "data": {"object": {}}})
        response = self._post(payload, _sign(payload))
        self.assertEqual(response.status_code, 200)
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.STATUS_UNPAID)

    def test_completed_event_settles_once(self):
        payload = _completed_event()
        signature = _sign(payload)

        first = self._post(payload, signature)
        self.assertEqual(first.status_code, 200)
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.STATUS_PAID)
        paid_at = self.payment.paid_at

        second = self._post(payload, signature)
        self.assertEqual(second.status_code, 200)
        self.assertEqual(second.content, ALREADY_PAID.encode())
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.paid_at, paid_at)
        self.assertEqual(CheckoutSession.objects.count(), 1)

    def test_unknown_payment_is_acknowledged(self):
        payload = _completed_event(payment_id="ghost", session_id="cs_ghost")
        response = self._post(payload, _sign(payload))
        self.assertEqual(response.status_code, 200)
        self.assertFalse(CheckoutSession.objects.filter(session_id="cs_ghost").exists())

    def test_internal_failure_is_500(self):
        payload = _completed_event()
        with patch("billing.views.settle_checkout_session", side_effect=DatabaseError("deadlock")):
            response = self._post(payload, _sign(payload))
        self.assertEqual(response.status_code, 500)


class StripeStatusViewTests(TestCase):
    def test_staff_sees_configuration(self):
        staff = CustomUser.objects.create_user(email="staff@local.test", password="password123", is_staff=True)
        self.client.force_login(staff)
        with override_settings(STRIPE_SECRET_KEY="", STRIPE_WEBHOOK_SECRET="whsec_x"):
            response = self.client.get(reverse("billing:stripe_status"))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"stripe_configured": False, "webhook_configured": True, "api_ok": False})

    def test_non_staff_is_redirected(self):
        user = CustomUser.objects.create_user(email="student@local.test", password="password123")
        self.client.force_login(user)
        response = self.client.get(reverse("billing:stripe_status"))
        self.assertEqual(response.status_code, 302)


class StripeServiceTests(SimpleTestCase):
    @override_settings(STRIPE_SECRET_KEY="sk_test_123", STRIPE_API_VERSION="")
    def test_get_client_sets_key(self):
        from billing.services.stripe_service import get_client
        client = get_client()
        self.assertIs(client, stripe)
        self.assertEqual(stripe.api_key, "sk_test_123")

    @override_settings(STRIPE_SECRET_KEY=" sk_test_456\n", STRIPE_WEBHOOK_SECRET="  whsec_x ")
    def test_settings_are_read_trimmed(self):
        from billing.services.stripe_service import get_client, is_configured, webhook_secret
        self.assertTrue(is_configured())
        self.assertEqual(webhook_secret(), "whsec_x")
        get_client()
        self.assertEqual(stripe.api_key, "sk_test_456")

    @override_settings(STRIPE_SECRET_KEY="  ")
    def test_get_client_requires_key(self):
        from billing.services.stripe_service import get_client
        with self.assertRaises(RuntimeError):
            get_client()

    def test_verify_webhook_returns_event_dict(self):
        from billing.services.stripe_service import verify_webhook
        payload = _completed_event()
        event = verify_webhook(payload.encode("utf-8"), _sign(payload), WEBHOOK_SECRET)
        self.assertEqual(event["type"], "checkout.session.completed")
        self.assertEqual(event["data"]["object"]["metadata"]["payment_id"], "p1")

    def test_verify_webhook_rejects_tampered_payload(self):
        from billing.services.stripe_service import verify_webhook
        payload = _completed_event()
        signature = _sign(payload)
        with self.assertRaises(stripe.SignatureVerificationError):
            verify_webhook(payload.replace("p1", "p2"), signature, WEBHOOK_SECRET)
