"""
Duplicate-delivery protection.

Two layers:

- EventLedger claims each Stripe event id with a conditional write before it
  is processed, and records the final status for the audit trail.
- IdempotencyGuard answers "has the effect of this event already been
  applied?" from a natural key (e.g. the subscription id of a checkout),
  which also catches distinct event ids that describe the same change.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from botocore.exceptions import ClientError

from billing.models import WebhookEnvelope, stripe_id
from shared.aws_clients import get_dynamodb
from shared.constants import BILLING_EVENT_TTL_DAYS, DEFAULT_CLAIM_LEASE_SECONDS

logger = logging.getLogger(__name__)


# ===========================================
# Natural-key guard
# ===========================================


@dataclass(frozen=True)
class GuardRule:
    natural_key: Callable[[WebhookEnvelope], Optional[str]]
    already_applied: Callable[[str], bool]


class IdempotencyGuard:
    """Keyed by (event kind, natural key); one rule per kind with non-upsert side effects."""

    def __init__(self):
        self._rules: dict[str, GuardRule] = {}

    def register(
        self,
        kind: str,
        natural_key: Callable[[WebhookEnvelope], Optional[str]],
        already_applied: Callable[[str], bool],
    ) -> None:
        self._rules[kind] = GuardRule(natural_key, already_applied)

    def guards(self, kind: str) -> bool:
        return kind in self._rules

    def already_applied(self, envelope: WebhookEnvelope) -> bool:
        """True when the event's natural key shows it was applied before.

        Events without a natural key are never treated as duplicates here;
        their handler decides whether they are processable.
        """
        rule = self._rules.get(envelope.kind)
        if rule is None:
            return False

        key = rule.natural_key(envelope)
        if not key:
            return False

        if rule.already_applied(key):
            logger.info(f"Skipping {envelope.kind} {envelope.event_id}: already applied for {key}")
            return True
        return False


def checkout_subscription_key(envelope: WebhookEnvelope) -> Optional[str]:
    return stripe_id(envelope.payload.get("subscription"))


def checkout_provisioned(table_name: str) -> Callable[[str], bool]:
    """Lookup used by the checkout guard: was this subscription provisioned by a checkout?

    Subscription created/updated events also write the Subscription row, so
    the row alone does not prove the checkout ran. Only the checkout
    transaction sets ``provisioned_by_checkout``.
    """

    def lookup(subscription_id: str) -> bool:
        response = get_dynamodb().Table(table_name).get_item(
            Key={"stripe_subscription_id": subscription_id},
            ProjectionExpression="provisioned_by_checkout",
            ConsistentRead=True,
        )
        return bool(response.get("Item", {}).get("provisioned_by_checkout"))

    return lookup


# ===========================================
# Billing event ledger
# ===========================================


class EventLedger:
    """Audit trail and per-event-id claim in the billing events table."""

    def __init__(self, table_name: str, lease_seconds: int = DEFAULT_CLAIM_LEASE_SECONDS):
        self.table_name = table_name
        self.lease_seconds = lease_seconds

    def _table(self):
        return get_dynamodb().Table(self.table_name)

    def claim(self, envelope: WebhookEnvelope) -> bool:
        """Atomically claim the event for processing.

        The claim is a lease: a claim left behind by an invocation that died
        mid-flight can be taken over once the lease expires.

        Returns:
            True if claimed (should process)
            False if already processed or being processed (duplicate)
        """
        now = datetime.now(timezone.utc)
        try:
            self._table().put_item(
                Item={
                    "pk": envelope.event_id,
                    "sk": envelope.kind,
                    "status": "processing",
                    "customer_id": envelope.customer_id or "unknown",
                    "processed_at": now.isoformat(),
                    "lease_expires_at": int(now.timestamp()) + self.lease_seconds,
                    "ttl": int((now + timedelta(days=BILLING_EVENT_TTL_DAYS)).timestamp()),
                },
                ConditionExpression="attribute_not_exists(pk) OR (#status = :processing AND lease_expires_at < :now)",
                ExpressionAttributeNames={"#status": "status"},
                ExpressionAttributeValues={":processing": "processing", ":now": int(now.timestamp())},
            )
            return True
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                return False
            raise

    def release(self, envelope: WebhookEnvelope) -> None:
        """Release the claim so Stripe's next retry can process the event."""
        try:
            self._table().delete_item(Key={"pk": envelope.event_id, "sk": envelope.kind})
            logger.info(f"Released event claim for {envelope.event_id} to allow retry")
        except Exception as e:
            # The lease expiry still frees the claim eventually
            logger.error(f"Failed to release event claim {envelope.event_id}: {e}")

    def record(self, envelope: WebhookEnvelope, status: str, error: Optional[str] = None) -> None:
        """Record the final processing status (best-effort)."""
        try:
            self._table().update_item(
                Key={"pk": envelope.event_id, "sk": envelope.kind},
                UpdateExpression=(
                    "SET #status = :status, #error = :error, completed_at = :now, "
                    "event_created_at = :created, livemode = :livemode, customer_id = :customer"
                ),
                ExpressionAttributeNames={"#status": "status", "#error": "error"},
                ExpressionAttributeValues={
                    ":status": status,
                    ":error": error,
                    ":now": datetime.now(timezone.utc).isoformat(),
                    ":created": envelope.created,
                    ":livemode": envelope.livemode,
                    ":customer": envelope.customer_id or "unknown",
                },
            )
        except Exception as e:
            logger.error(f"Failed to record billing event {envelope.event_id}: {e}")
