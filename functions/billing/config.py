"""
Billing webhook configuration.

Everything the reconciler needs from the environment is read once into a
frozen BillingConfig at container start and handed to collaborators by
reference. Stripe credentials are the exception: they live in Secrets Manager
and are cached with a TTL so rotations are picked up without a redeploy.
"""

import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Mapping, Optional

from botocore.exceptions import ClientError

from shared.aws_clients import get_secretsmanager
from shared.constants import (
    DEFAULT_CLAIM_LEASE_SECONDS,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    DEFAULT_SIGNATURE_TOLERANCE_SECONDS,
    DEFAULT_STRIPE_TIMEOUT_SECONDS,
    DEFAULT_TABLES,
    LOWEST_TIER,
    STRIPE_SECRETS_CACHE_TTL,
    TIER_NAMES,
    TIER_PRICE_ENV_KEYS,
)

logger = logging.getLogger(__name__)


class PlanTierMap:
    """Static mapping from Stripe price ids to membership tiers."""

    def __init__(self, price_to_tier: Mapping[str, str], default_tier: str = LOWEST_TIER):
        self._price_to_tier = dict(price_to_tier)
        self.default_tier = default_tier

    @classmethod
    def from_environment(cls, environ: Optional[Mapping[str, str]] = None) -> "PlanTierMap":
        environ = os.environ if environ is None else environ
        price_to_tier = {}
        for tier, env_key in TIER_PRICE_ENV_KEYS.items():
            # `or` skips empty strings left behind by unset deploy parameters
            price_id = environ.get(env_key) or None
            if price_id:
                price_to_tier[price_id] = tier
            else:
                logger.warning(f"{env_key} not configured; {tier} prices will resolve to {LOWEST_TIER}")
        return cls(price_to_tier)

    def tier_for_price(self, price_id: Optional[str]) -> str:
        """Resolve a price id to a tier. Unknown ids fall back to the lowest tier."""
        tier = self._price_to_tier.get(price_id) if price_id else None
        if tier is None:
            logger.warning(
                f"Unmapped Stripe price id {price_id!r}, defaulting to {self.default_tier}",
                extra={"price_id": price_id},
            )
            return self.default_tier
        return tier

    def __contains__(self, price_id: str) -> bool:
        return price_id in self._price_to_tier

    def __len__(self) -> int:
        return len(self._price_to_tier)


def normalize_tier(value: Optional[str]) -> Optional[str]:
    """Match a free-form tier name (e.g. from checkout metadata) to a known tier."""
    if not value:
        return None
    wanted = value.strip().replace("-", " ").replace("_", " ").lower()
    for tier in TIER_NAMES:
        if tier.lower() == wanted:
            return tier
    return None


@dataclass(frozen=True)
class TableNames:
    accounts: str = DEFAULT_TABLES["accounts"]
    memberships: str = DEFAULT_TABLES["memberships"]
    subscriptions: str = DEFAULT_TABLES["subscriptions"]
    invoices: str = DEFAULT_TABLES["invoices"]
    identities: str = DEFAULT_TABLES["identities"]
    assessments: str = DEFAULT_TABLES["assessments"]
    billing_events: str = DEFAULT_TABLES["billing_events"]

    @classmethod
    def from_environment(cls, environ: Mapping[str, str]) -> "TableNames":
        return cls(
            accounts=environ.get("ACCOUNTS_TABLE") or DEFAULT_TABLES["accounts"],
            memberships=environ.get("MEMBERSHIPS_TABLE") or DEFAULT_TABLES["memberships"],
            subscriptions=environ.get("SUBSCRIPTIONS_TABLE") or DEFAULT_TABLES["subscriptions"],
            invoices=environ.get("INVOICES_TABLE") or DEFAULT_TABLES["invoices"],
            identities=environ.get("IDENTITIES_TABLE") or DEFAULT_TABLES["identities"],
            assessments=environ.get("ASSESSMENTS_TABLE") or DEFAULT_TABLES["assessments"],
            billing_events=environ.get("BILLING_EVENTS_TABLE") or DEFAULT_TABLES["billing_events"],
        )


@dataclass(frozen=True)
class BillingConfig:
    """Process-wide configuration, built once and passed by reference."""

    plan_tiers: PlanTierMap
    tables: TableNames = field(default_factory=TableNames)
    stripe_secret_arn: Optional[str] = None
    stripe_webhook_secret_arn: Optional[str] = None
    request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS
    stripe_timeout_seconds: float = DEFAULT_STRIPE_TIMEOUT_SECONDS
    signature_tolerance_seconds: int = DEFAULT_SIGNATURE_TOLERANCE_SECONDS
    claim_lease_seconds: int = DEFAULT_CLAIM_LEASE_SECONDS

    @classmethod
    def from_environment(cls, environ: Optional[Mapping[str, str]] = None) -> "BillingConfig":
        environ = os.environ if environ is None else environ
        return cls(
            plan_tiers=PlanTierMap.from_environment(environ),
            tables=TableNames.from_environment(environ),
            stripe_secret_arn=environ.get("STRIPE_SECRET_ARN") or None,
            stripe_webhook_secret_arn=environ.get("STRIPE_WEBHOOK_SECRET_ARN") or None,
            request_timeout_seconds=float(
                environ.get("REQUEST_TIMEOUT_SECONDS") or DEFAULT_REQUEST_TIMEOUT_SECONDS
            ),
            stripe_timeout_seconds=float(
                environ.get("STRIPE_TIMEOUT_SECONDS") or DEFAULT_STRIPE_TIMEOUT_SECONDS
            ),
            signature_tolerance_seconds=int(
                environ.get("STRIPE_SIGNATURE_TOLERANCE_SECONDS") or DEFAULT_SIGNATURE_TOLERANCE_SECONDS
            ),
            claim_lease_seconds=int(environ.get("CLAIM_LEASE_SECONDS") or DEFAULT_CLAIM_LEASE_SECONDS),
        )


# ===========================================
# Stripe secrets (Secrets Manager, TTL cache)
# ===========================================

_stripe_secrets_cache: tuple[Optional[str], Optional[str]] = (None, None)
_stripe_secrets_cache_time = 0.0


def _read_secret(secret_arn: str, json_field: str, label: str) -> Optional[str]:
    try:
        response = get_secretsmanager().get_secret_value(SecretId=secret_arn)
    except ClientError as e:
        logger.error(f"Failed to retrieve {label}: {e}")
        return None

    secret_value = response.get("SecretString", "")
    try:
        secret_json = json.loads(secret_value)
    except json.JSONDecodeError:
        return secret_value or None
    if isinstance(secret_json, dict):
        return secret_json.get(json_field) or None
    return secret_value or None


def get_stripe_secrets(config: BillingConfig) -> tuple[Optional[str], Optional[str]]:
    """Retrieve Stripe API key and webhook secret from Secrets Manager (cached with TTL)."""
    global _stripe_secrets_cache, _stripe_secrets_cache_time

    if all(_stripe_secrets_cache) and (time.time() - _stripe_secrets_cache_time) < STRIPE_SECRETS_CACHE_TTL:
        return _stripe_secrets_cache

    api_key = None
    webhook_secret = None

    if config.stripe_secret_arn:
        api_key = _read_secret(config.stripe_secret_arn, "key", "Stripe API key")
    if config.stripe_webhook_secret_arn:
        webhook_secret = _read_secret(config.stripe_webhook_secret_arn, "secret", "Stripe webhook secret")

    _stripe_secrets_cache = (api_key, webhook_secret)
    _stripe_secrets_cache_time = time.time()
    return api_key, webhook_secret


def reset_secrets_cache() -> None:
    """Drop cached Stripe secrets. Used in tests."""
    global _stripe_secrets_cache, _stripe_secrets_cache_time
    _stripe_secrets_cache = (None, None)
    _stripe_secrets_cache_time = 0.0
