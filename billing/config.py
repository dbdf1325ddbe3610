"""
Billing configuration: single source of truth for checkout and settlement constants.

Amounts stored on Payment are decimal major units (49.99); everything sent to
Stripe is integer minor units (4999). The conversion factor lives here.
"""

# Minor units per major unit for every supported currency (no zero-decimal currencies)
MINOR_UNITS_PER_MAJOR = 100

# Stripe Checkout mode for one-off outstanding payments
CHECKOUT_MODE = "payment"

# The only webhook event that settles a payment; everything else is acknowledged and ignored
CHECKOUT_COMPLETED_EVENT = "checkout.session.completed"

# Max length of the client-supplied attempt id folded into the Stripe idempotency key
ATTEMPT_ID_MAX_LENGTH = 64
