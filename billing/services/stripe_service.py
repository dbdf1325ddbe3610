"""
Stripe access for the billing app.

Checkout and the webhook view go through here; views never touch the SDK
directly. Keys are read from Django settings on every call so tests can
override them.
"""
import json

import stripe
from django.conf import settings


def _setting(name) -> str:
    return (getattr(settings, name, None) or "").strip()


def is_configured() -> bool:
    """True when STRIPE_SECRET_KEY holds a non-blank value."""
    return bool(_setting("STRIPE_SECRET_KEY"))


def webhook_secret() -> str:
    return _setting("STRIPE_WEBHOOK_SECRET")


def get_client():
    """
    Point the stripe module at our secret key (and pinned API version, if any)
    and return it, e.g. get_client().checkout.Session.create(...).
    """
    secret_key = _setting("STRIPE_SECRET_KEY")
    if not secret_key:
        raise RuntimeError("STRIPE_SECRET_KEY is not set; Stripe calls are disabled.")
    stripe.api_key = secret_key
    api_version = _setting("STRIPE_API_VERSION")
    if api_version:
        stripe.api_version = api_version
    return stripe


def check_api_ok() -> bool:
    """Cheap authenticated call (balance lookup); False on any Stripe error."""
    if not is_configured():
        return False
    try:
        get_client().Balance.retrieve()
    except stripe.StripeError:
        return False
    return True


def verify_webhook(payload, sig_header: str, secret: str) -> dict:
    """
    Verify a webhook delivery against its Stripe-Signature header and return the
    event as a plain dict.

    Raises:
        stripe.SignatureVerificationError: signature missing, mismatched or stale.
        ValueError: payload is not valid JSON.
    """
    if isinstance(payload, bytes):
        payload = payload.decode("utf-8")
    stripe.WebhookSignature.verify_header(payload, sig_header, secret, tolerance=stripe.Webhook.DEFAULT_TOLERANCE)
    return json.loads(payload)
