"""
Shared constants for MemberHub billing.
"""

# Membership tiers, lowest first. Unmapped Stripe prices fall back to LOWEST_TIER.
TIER_ORDER = {
    "Bronze": 1,
    "Silver": 2,
    "Gold": 3,
    "Founding Member": 4,
}

TIER_NAMES = list(TIER_ORDER.keys())

LOWEST_TIER = min(TIER_ORDER, key=TIER_ORDER.get)

# Environment variable holding the Stripe price id for each tier
TIER_PRICE_ENV_KEYS = {
    "Bronze": "STRIPE_PRICE_BRONZE",
    "Silver": "STRIPE_PRICE_SILVER",
    "Gold": "STRIPE_PRICE_GOLD",
    "Founding Member": "STRIPE_PRICE_FOUNDING_MEMBER",
}

# Default table names (overridable via environment)
DEFAULT_TABLES = {
    "accounts": "memberhub-accounts",
    "memberships": "memberhub-memberships",
    "subscriptions": "memberhub-subscriptions",
    "invoices": "memberhub-invoices",
    "identities": "memberhub-identities",
    "assessments": "memberhub-assessments",
    "billing_events": "memberhub-billing-events",
}

# Billing event ledger
BILLING_EVENT_TTL_DAYS = 90
DEFAULT_CLAIM_LEASE_SECONDS = 300

# Request bounds
DEFAULT_REQUEST_TIMEOUT_SECONDS = 20.0
LAMBDA_SAFETY_MARGIN_MS = 1500

# Stripe signature timestamp tolerance (seconds)
DEFAULT_SIGNATURE_TOLERANCE_SECONDS = 300

# Secrets cache TTL (seconds)
STRIPE_SECRETS_CACHE_TTL = 300

# Stripe API HTTP timeout (seconds), matching the boto3 read timeout
DEFAULT_STRIPE_TIMEOUT_SECONDS = 5.0
