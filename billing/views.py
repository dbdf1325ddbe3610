"""
Billing views: checkout creation for the mobile app, Stripe webhook, Stripe status.
"""
import json
import logging

import stripe
from django.http import JsonResponse, HttpResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods
from django.contrib.admin.views.decorators import staff_member_required

from billing import config
from billing.services.checkout_service import CheckoutError, InvalidArgument, initiate_checkout
from billing.services.settlement_service import settle_checkout_session
from billing.services.stripe_service import check_api_ok, is_configured, verify_webhook, webhook_secret

logger = logging.getLogger(__name__)


@staff_member_required
def stripe_status(request):
    """
    GET /api/billing/stripe-status/
    Staff-only. Returns JSON: stripe_configured, webhook_configured, api_ok.
    """
    return JsonResponse({
        "stripe_configured": is_configured(),
        "webhook_configured": bool(webhook_secret()),
        "api_ok": check_api_ok() if is_configured() else False,
    })


def _error_response(exc: CheckoutError):
    return JsonResponse({"error": {"code": exc.code, "message": exc.message}}, status=exc.http_status)


@csrf_exempt
@require_http_methods(["POST"])
def create_checkout(request):
    """
    POST /api/billing/checkout/
    Body: {"payment_id": "..."} (paymentId accepted too), optional "attempt_id".
    Token-less JSON clients call this, so CSRF is not enforced; the caller must
    still hold an authenticated session.
    Returns {"checkout_url", "session_id"} or {"error": {"code", "message"}}.
    """
    try:
        try:
            data = json.loads(request.body or b"{}")
        except ValueError:
            raise InvalidArgument("Invalid JSON.")
        if not isinstance(data, dict):
            raise InvalidArgument("Request body must be a JSON object.")
        payment_id = data.get("payment_id", data.get("paymentId"))
        attempt_id = data.get("attempt_id", data.get("attemptId"))
        result = initiate_checkout(request.user, payment_id, attempt_id=attempt_id)
    except CheckoutError as e:
        if e.http_status >= 500:
            logger.error("create_checkout: %s %s", e.code, e.message)
        return _error_response(e)
    return JsonResponse(result)


@csrf_exempt
@require_http_methods(["POST"])
def stripe_webhook(request):
    """
    POST /api/billing/stripe-webhook/
    Stripe webhook endpoint. Verifies signature, settles checkout.session.completed.
    200 = handled or nothing to do, 400 = unverifiable (no retry), 500 = retry.
    """
    payload = request.body
    sig_header = request.META.get("HTTP_STRIPE_SIGNATURE", "")

    if not sig_header:
        logger.warning("stripe_webhook: missing Stripe-Signature header")
        return HttpResponse("Missing Stripe-Signature header", status=400)

    secret = webhook_secret()
    if not secret:
        logger.error("stripe_webhook: STRIPE_WEBHOOK_SECRET is not configured")
        return HttpResponse("Webhook secret not configured", status=400)

    try:
        event = verify_webhook(payload, sig_header, secret)
    except stripe.SignatureVerificationError as e:
        logger.warning("stripe_webhook: signature verification failed %s", e)
        return HttpResponse("Invalid signature", status=400)
    except ValueError as e:
        logger.warning("stripe_webhook: invalid payload %s", e)
        return HttpResponse("Invalid payload", status=400)

    event_type = event.get("type") if isinstance(event, dict) else None
    if event_type != config.CHECKOUT_COMPLETED_EVENT:
        logger.debug("stripe_webhook: ignoring event type=%s", event_type)
        return HttpResponse("ok", status=200)

    session_obj = (event.get("data") or {}).get("object") or {}
    try:
        outcome = settle_checkout_session(session_obj)
    except Exception as e:
        # 500 so Stripe retries; settlement is safe to re-run from scratch.
        logger.exception("stripe_webhook: settlement failed event=%s", event.get("id"))
        return HttpResponse(f"Handler Error: {e}", status=500)

    logger.info("stripe_webhook: event=%s outcome=%s", event.get("id"), outcome)
    return HttpResponse(outcome, status=200)
