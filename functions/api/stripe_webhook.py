"""
Stripe Webhook Endpoint - POST /webhooks/stripe

Reconciles Stripe billing events into accounts, memberships, subscriptions
and invoices. Uses Stripe signature verification instead of API key auth.
"""

import logging
import time
from typing import Optional

import stripe

from billing.config import BillingConfig, get_stripe_secrets
from billing.deadline import Deadline
from billing.processor import build_processor
from billing.verification import get_signature_header, raw_body, verify_and_decode
from shared.errors import WebhookError
from shared.logging_utils import configure_structured_logging, set_event_id, set_request_id
from shared.metrics import emit_webhook_metric
from shared.response_utils import error_response

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

# Built once per container
_config: Optional[BillingConfig] = None


def get_config() -> BillingConfig:
    global _config
    if _config is None:
        _config = BillingConfig.from_environment()
        logger.info(f"Loaded billing config with {len(_config.plan_tiers)} mapped prices")
    return _config


def reset_config() -> None:
    """Drop the cached config. Used in tests."""
    global _config
    _config = None


def configure_stripe(api_key: str, timeout_seconds: float) -> None:
    stripe.api_key = api_key
    # Stripe redelivers on 5xx; client-side retries would only eat the request deadline
    stripe.max_network_retries = 0
    if not isinstance(stripe.default_http_client, stripe.RequestsClient):
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout_seconds)


def _http_method(event: dict) -> Optional[str]:
    method = event.get("httpMethod")
    if not method:
        # HTTP API (payload v2) puts the method under requestContext.http
        method = ((event.get("requestContext") or {}).get("http") or {}).get("method")
    return method.upper() if method else None


def handler(event, context):
    """
    Lambda handler for Stripe webhooks.

    Handles:
    - checkout.session.completed: Provision account and activate membership
    - customer.subscription.created/updated: Mirror subscription state
    - customer.subscription.deleted: Mark subscription canceled
    - invoice.paid / invoice.payment_succeeded: Subscription active, record invoice
    - invoice.payment_failed: Subscription past_due, record invoice
    - payment_method.attached: Store card summary on the account
    """
    configure_structured_logging()
    set_request_id(event)
    set_event_id(None)
    started = time.monotonic()

    method = _http_method(event)
    if method and method != "POST":
        return error_response(405, "method_not_allowed", "Method not allowed", headers={"Allow": "POST"})

    if not event.get("body"):
        logger.warning("Webhook request without body")
        return error_response(400, "missing_body", "Missing request body")

    config = get_config()
    stripe_api_key, webhook_secret = get_stripe_secrets(config)

    if not stripe_api_key or not webhook_secret:
        logger.error("Stripe secrets not configured")
        return error_response(500, "stripe_not_configured", "Stripe not configured")

    configure_stripe(stripe_api_key, config.stripe_timeout_seconds)

    try:
        envelope = verify_and_decode(
            raw_body(event),
            get_signature_header(event.get("headers")),
            webhook_secret,
            config.signature_tolerance_seconds,
        )
    except WebhookError as e:
        emit_webhook_metric("unverified", e.code)
        return error_response(e.status_code, e.code, e.message)

    set_event_id(envelope.event_id)
    deadline = Deadline.for_invocation(context, config.request_timeout_seconds)

    result = build_processor(config, deadline).process(envelope)

    latency_ms = (time.monotonic() - started) * 1000
    logger.info(
        f"Stripe event {envelope.event_id} ({envelope.kind}): {result.label}",
        extra={"event_type": envelope.kind, "outcome": result.label, "latency_ms": round(latency_ms, 1)},
    )
    emit_webhook_metric(envelope.kind, result.label, latency_ms)
    return result.to_response()
