"""
Entity reconciliation for Stripe billing events.

Turns verified events into account, membership, subscription and invoice
rows. Writes fall into two tiers:

- required: account, membership and subscription. These go through one
  UnitOfWork (or a single conditional UpdateItem) and any failure propagates
  so Stripe retries the delivery.
- best-effort: invoice history, assessment linkage, profile back-fill and
  payment-method summary. These run through best_effort() and can never fail
  the event.

Period and amount data always come from the subscription as re-fetched from
Stripe, never from the event payload, which may be older than the
authoritative object when deliveries arrive out of order.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import stripe
from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

from billing.accounts import AccountResolver, extract_checkout_email
from billing.config import BillingConfig, normalize_tier
from billing.deadline import Deadline
from billing.models import InvoiceStatus, MembershipStatus, Outcome, WebhookEnvelope, stripe_id
from billing.unit_of_work import TransactionConflict, UnitOfWork
from shared.aws_clients import get_dynamodb
from shared.errors import UnprocessableEventError
from shared.logging_utils import mask_email

logger = logging.getLogger(__name__)

# Stripe invoice.status -> stored invoice status
_INVOICE_STATUS_MAP = {
    "paid": InvoiceStatus.PAID,
    "open": InvoiceStatus.PENDING,
    "draft": InvoiceStatus.PENDING,
    "uncollectible": InvoiceStatus.FAILED,
    "void": InvoiceStatus.FAILED,
}


def best_effort(step: str, fn: Callable[..., Any], *args, **kwargs) -> bool:
    """Run a non-critical write; log and swallow any failure.

    Returns:
        True if the step succeeded
    """
    try:
        fn(*args, **kwargs)
        return True
    except Exception as e:
        logger.error(f"Best-effort step {step} failed: {e}", extra={"best_effort_step": step})
        return False


def as_plain_dict(obj: Any) -> dict:
    """Normalize a Stripe API object (or an already-plain dict) to a dict."""
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if to_dict is not None:
        return to_dict()
    return dict(obj)


def iso_timestamp(unix_seconds: Optional[int]) -> Optional[str]:
    if not unix_seconds:
        return None
    return datetime.fromtimestamp(int(unix_seconds), tz=timezone.utc).isoformat()


def primary_item(subscription: dict) -> dict:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def invoice_subscription_id(invoice: dict) -> Optional[str]:
    """Subscription id of an invoice (top-level on older API versions, under parent on newer)."""
    subscription_id = stripe_id(invoice.get("subscription"))
    if subscription_id:
        return subscription_id
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return stripe_id(details.get("subscription"))


def metadata_assessment_id(metadata: Optional[dict]) -> Optional[str]:
    metadata = metadata or {}
    value = metadata.get("assessment_id") or metadata.get("assessmentId")
    return value.strip() if isinstance(value, str) and value.strip() else None


class Reconciler:
    """One handler per billing event kind; built per request."""

    def __init__(self, config: BillingConfig, accounts: AccountResolver, deadline: Deadline):
        self.config = config
        self.tables = config.tables
        self.accounts = accounts
        self.deadline = deadline
        self._customers: dict[str, dict] = {}

    # ===========================================
    # Stripe reads
    # ===========================================

    def retrieve_subscription(self, subscription_id: str) -> dict:
        """Fetch the authoritative subscription object."""
        self.deadline.check("retrieve_subscription")
        subscription = stripe.Subscription.retrieve(
            subscription_id,
            expand=["latest_invoice", "default_payment_method"],
        )
        return as_plain_dict(subscription)

    def _customer(self, customer_id: str) -> dict:
        if customer_id not in self._customers:
            self.deadline.check("retrieve_customer")
            self._customers[customer_id] = as_plain_dict(stripe.Customer.retrieve(customer_id))
        return self._customers[customer_id]

    def _email_from_customer(self, customer_id: Optional[str]) -> Optional[str]:
        if not customer_id:
            return None
        try:
            return self._customer(customer_id).get("email")
        except stripe.StripeError as e:
            logger.warning(f"Could not retrieve customer email for {customer_id}: {e}")
            return None

    # ===========================================
    # Tier resolution
    # ===========================================

    def resolve_tier(self, price_id: Optional[str], metadata: Optional[dict] = None) -> str:
        """Explicit metadata tier wins; otherwise map the price id (unknown -> lowest tier)."""
        requested = (metadata or {}).get("tier")
        override = normalize_tier(requested)
        if override:
            return override
        if requested:
            logger.warning(f"Ignoring unknown metadata tier {requested!r}; using price mapping")
        return self.config.plan_tiers.tier_for_price(price_id)

    def _subscription_fields(self, subscription: dict, tier: Optional[str] = None) -> dict:
        item = primary_item(subscription)
        price = item.get("price") or {}
        recurring = price.get("recurring") or {}
        price_id = price.get("id")

        # current_period_* live on the item in newer API versions
        period_start = item.get("current_period_start") or subscription.get("current_period_start")
        period_end = item.get("current_period_end") or subscription.get("current_period_end")

        return {
            "stripe_customer_id": stripe_id(subscription.get("customer")),
            "status": subscription.get("status"),
            "tier": tier or self.config.plan_tiers.tier_for_price(price_id),
            "price_id": price_id,
            "billing_cycle": recurring.get("interval") or "month",
            "unit_amount_cents": int(price.get("unit_amount") or 0),
            "currency": price.get("currency") or subscription.get("currency") or "usd",
            "current_period_start": iso_timestamp(period_start),
            "current_period_end": iso_timestamp(period_end),
            "cancel_at_period_end": bool(subscription.get("cancel_at_period_end", False)),
            "canceled_at": iso_timestamp(subscription.get("canceled_at")),
            "trial_start": iso_timestamp(subscription.get("trial_start")),
            "trial_end": iso_timestamp(subscription.get("trial_end")),
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }

    # ===========================================
    # checkout.session.completed
    # ===========================================

    def handle_checkout_completed(self, envelope: WebhookEnvelope) -> Outcome:
        session = envelope.payload
        customer_id = stripe_id(session.get("customer"))
        subscription_id = stripe_id(session.get("subscription"))
        metadata = session.get("metadata") or {}

        email = extract_checkout_email(session) or self._email_from_customer(customer_id)
        if not subscription_id:
            logger.warning(f"No subscription ID in checkout session for {mask_email(email)}")
            raise UnprocessableEventError("missing_subscription_id")

        self.deadline.check("resolve_identity")
        account_id = self.accounts.resolve_identity(email)

        subscription = self.retrieve_subscription(subscription_id)
        price_id = (primary_item(subscription).get("price") or {}).get("id")
        tier = self.resolve_tier(price_id, metadata)
        assessment_id = metadata_assessment_id(metadata)
        sub_fields = self._subscription_fields(subscription, tier)
        sub_fields["account_id"] = account_id
        sub_fields["provisioned_by_checkout"] = True
        customer_id = customer_id or sub_fields["stripe_customer_id"]

        logger.info(f"Checkout for {mask_email(email)}: price {price_id} -> tier {tier}")

        uow = UnitOfWork()
        self.accounts.queue_account_upsert(
            uow,
            account_id,
            email,
            stripe_customer_id=customer_id,
            stripe_subscription_id=subscription_id,
            next_billing_at=sub_fields["current_period_end"],
        )
        self._queue_membership_activation(uow, account_id, tier, subscription_id, assessment_id)
        uow.update(
            self.tables.subscriptions,
            {"stripe_subscription_id": subscription_id},
            sub_fields,
            tag="subscription",
        )

        self.deadline.check("commit_checkout")
        try:
            uow.commit()
        except TransactionConflict as e:
            if "membership" in e.failed_tags:
                # A concurrent delivery of this checkout activated the membership first
                logger.info(f"Membership for subscription {subscription_id} already activated concurrently")
                return Outcome.DUPLICATE
            raise

        logger.info(f"Provisioned account {account_id} with {tier} membership and subscription {subscription_id}")

        if assessment_id:
            self._best_effort("link_assessment", self.accounts.link_assessment, account_id, assessment_id)
        if customer_id:
            self._best_effort("backfill_profile", self._backfill_profile, account_id, customer_id)

        latest_invoice = subscription.get("latest_invoice")
        if isinstance(latest_invoice, dict) and latest_invoice.get("id"):
            status = _INVOICE_STATUS_MAP.get(latest_invoice.get("status"), InvoiceStatus.PENDING)
            self._best_effort("record_invoice", self.record_invoice, account_id, latest_invoice, status)

        payment_method = subscription.get("default_payment_method")
        if isinstance(payment_method, dict) and payment_method.get("card"):
            self._best_effort(
                "payment_method", self.accounts.update_payment_method, account_id, payment_method["card"]
            )

        return Outcome.PROCESSED

    def _queue_membership_activation(
        self,
        uow: UnitOfWork,
        account_id: str,
        tier: str,
        subscription_id: str,
        assessment_id: Optional[str],
    ) -> None:
        """Activate the pending membership in place, or insert a new active one.

        Either write is conditional so two concurrent deliveries cannot both
        activate; any other active row is superseded in the same transaction.
        """

        table = get_dynamodb().Table(self.tables.memberships)
        rows = table.query(
            KeyConditionExpression=Key("account_id").eq(account_id),
            ConsistentRead=True,
        ).get("Items", [])

        now = datetime.now(timezone.utc).isoformat()
        pending = sorted(
            (r for r in rows if r.get("status") == MembershipStatus.PENDING.value),
            key=lambda r: r.get("created_at") or "",
        )
        status_name = {"#st": "status"}

        if pending:
            target_id = pending[-1]["membership_id"]
            fields = {
                "status": MembershipStatus.ACTIVE.value,
                "tier": tier,
                "activated_at": now,
                "stripe_subscription_id": subscription_id,
                "verification_status": "pending",
                "updated_at": now,
            }
            if assessment_id:
                fields["assessment_id"] = assessment_id
            uow.update(
                self.tables.memberships,
                {"account_id": account_id, "membership_id": target_id},
                fields,
                if_not_exists=("verification_status",),
                condition="#st = :pending",
                condition_names=status_name,
                condition_values={":pending": MembershipStatus.PENDING.value},
                tag="membership",
            )
            logger.info(f"Activating pending membership {target_id} for {account_id}")
        else:
            target_id = f"sub#{subscription_id}"
            item = {
                "account_id": account_id,
                "membership_id": target_id,
                "tier": tier,
                "status": MembershipStatus.ACTIVE.value,
                "verification_status": "pending",
                "activated_at": now,
                "stripe_subscription_id": subscription_id,
                "created_at": now,
                "updated_at": now,
            }
            if assessment_id:
                item["assessment_id"] = assessment_id
            uow.put(
                self.tables.memberships,
                item,
                condition="attribute_not_exists(membership_id)",
                tag="membership",
            )
            logger.info(f"Creating active membership {target_id} for {account_id}")

        for row in rows:
            if row.get("status") != MembershipStatus.ACTIVE.value or row["membership_id"] == target_id:
                continue
            uow.update(
                self.tables.memberships,
                {"account_id": account_id, "membership_id": row["membership_id"]},
                {
                    "status": MembershipStatus.SUPERSEDED.value,
                    "superseded_by": target_id,
                    "superseded_at": now,
                    "updated_at": now,
                },
                condition="#st = :active",
                condition_names=status_name,
                condition_values={":active": MembershipStatus.ACTIVE.value},
                tag="supersede",
            )

    def _backfill_profile(self, account_id: str, customer_id: str) -> None:
        self.accounts.backfill_profile(account_id, self._customer(customer_id))

    # ===========================================
    # customer.subscription.created / updated
    # ===========================================

    def handle_subscription_changed(self, envelope: WebhookEnvelope) -> Outcome:
        """Mirror the latest subscription state. Membership is left to checkout."""
        subscription_id = envelope.payload.get("id")
        customer_id = stripe_id(envelope.payload.get("customer"))
        if not subscription_id:
            raise UnprocessableEventError("missing_subscription_id")

        account = self.accounts.find_by_customer_id(customer_id)
        if not account:
            # Checkout has not provisioned this customer yet; a later delivery converges
            logger.warning(f"No account found for Stripe customer {customer_id} ({envelope.kind})")
            raise UnprocessableEventError("account_not_found")

        account_id = account["account_id"]
        subscription = self.retrieve_subscription(subscription_id)
        fields = self._subscription_fields(subscription)
        fields["account_id"] = account_id

        uow = UnitOfWork()
        uow.update(
            self.tables.subscriptions,
            {"stripe_subscription_id": subscription_id},
            fields,
            tag="subscription",
        )
        account_fields = {"updated_at": fields["updated_at"], "stripe_subscription_id": subscription_id}
        if fields["current_period_end"]:
            account_fields["next_billing_at"] = fields["current_period_end"]
        uow.update(
            self.tables.accounts,
            {"account_id": account_id},
            account_fields,
            condition="attribute_exists(account_id)",
            tag="account",
        )

        self.deadline.check("commit_subscription")
        try:
            uow.commit()
        except TransactionConflict:
            raise UnprocessableEventError("account_not_found")

        logger.info(
            f"Subscription {subscription_id} for {account_id}: status={fields['status']}, tier={fields['tier']}"
        )
        return Outcome.PROCESSED

    # ===========================================
    # customer.subscription.deleted
    # ===========================================

    def handle_subscription_deleted(self, envelope: WebhookEnvelope) -> Outcome:
        subscription_id = envelope.payload.get("id")
        if not subscription_id:
            raise UnprocessableEventError("missing_subscription_id")

        now = datetime.now(timezone.utc).isoformat()
        self.deadline.check("cancel_subscription")
        try:
            get_dynamodb().Table(self.tables.subscriptions).update_item(
                Key={"stripe_subscription_id": subscription_id},
                UpdateExpression="SET #status = :canceled, canceled_at = :now, updated_at = :now",
                ConditionExpression="attribute_exists(stripe_subscription_id)",
                ExpressionAttributeNames={"#status": "status"},
                ExpressionAttributeValues={":canceled": "canceled", ":now": now},
            )
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                logger.warning(f"Subscription {subscription_id} deleted before it was recorded")
                raise UnprocessableEventError("subscription_not_found")
            raise

        logger.info(f"Subscription {subscription_id} canceled")
        return Outcome.PROCESSED

    # ===========================================
    # invoice.paid / invoice.payment_failed
    # ===========================================

    def handle_invoice_paid(self, envelope: WebhookEnvelope) -> Outcome:
        # Payment success ends any grace period
        return self._apply_invoice(envelope, "active", InvoiceStatus.PAID)

    def handle_invoice_failed(self, envelope: WebhookEnvelope) -> Outcome:
        return self._apply_invoice(envelope, "past_due", InvoiceStatus.FAILED)

    def _apply_invoice(self, envelope: WebhookEnvelope, subscription_status: str, invoice_status: InvoiceStatus) -> Outcome:
        invoice = envelope.payload
        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            logger.info(f"Invoice {invoice.get('id')} has no subscription, skipping")
            raise UnprocessableEventError("missing_subscription_id")

        self.deadline.check("update_subscription_status")
        try:
            response = get_dynamodb().Table(self.tables.subscriptions).update_item(
                Key={"stripe_subscription_id": subscription_id},
                UpdateExpression="SET #status = :status, updated_at = :now",
                # canceled is terminal: a late invoice event must not resurrect it
                ConditionExpression="attribute_exists(stripe_subscription_id) AND #status <> :canceled",
                ExpressionAttributeNames={"#status": "status"},
                ExpressionAttributeValues={
                    ":status": subscription_status,
                    ":canceled": "canceled",
                    ":now": datetime.now(timezone.utc).isoformat(),
                },
                ReturnValues="ALL_NEW",
            )
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                logger.warning(f"Subscription {subscription_id} missing or canceled; not applying {envelope.kind}")
                raise UnprocessableEventError("subscription_not_active")
            raise

        account_id = response.get("Attributes", {}).get("account_id")
        logger.info(f"Subscription {subscription_id} set to {subscription_status} by {envelope.kind}")

        if account_id and invoice.get("id"):
            self._best_effort("record_invoice", self.record_invoice, account_id, invoice, invoice_status)
        return Outcome.PROCESSED

    def record_invoice(self, account_id: str, invoice: dict, status: InvoiceStatus) -> None:
        """Upsert the invoice row keyed by the Stripe invoice id."""
        transitions = invoice.get("status_transitions") or {}
        get_dynamodb().Table(self.tables.invoices).put_item(
            Item={
                "stripe_invoice_id": invoice["id"],
                "account_id": account_id,
                "stripe_subscription_id": invoice_subscription_id(invoice),
                "amount_cents": int(invoice.get("amount_paid") or 0),
                "amount_due_cents": int(invoice.get("amount_due") or 0),
                "currency": invoice.get("currency") or "usd",
                "status": status.value,
                "hosted_invoice_url": invoice.get("hosted_invoice_url"),
                "invoice_pdf_url": invoice.get("invoice_pdf"),
                "invoice_date": iso_timestamp(invoice.get("created")),
                "due_date": iso_timestamp(invoice.get("due_date")),
                "paid_at": iso_timestamp(transitions.get("paid_at")),
                "recorded_at": datetime.now(timezone.utc).isoformat(),
            }
        )
        logger.info(f"Recorded invoice {invoice['id']} ({status.value}) for {account_id}")

    # ===========================================
    # payment_method.attached
    # ===========================================

    def handle_payment_method_attached(self, envelope: WebhookEnvelope) -> Outcome:
        payment_method = envelope.payload
        if payment_method.get("type") != "card" or not payment_method.get("card"):
            logger.info(f"Payment method {payment_method.get('id')} is not a card, nothing to record")
            return Outcome.IGNORED

        account = self.accounts.find_by_customer_id(envelope.customer_id)
        if not account:
            logger.warning(f"No account found for Stripe customer {envelope.customer_id}")
            raise UnprocessableEventError("account_not_found")

        self.deadline.check("update_payment_method")
        self.accounts.update_payment_method(account["account_id"], payment_method["card"])
        return Outcome.PROCESSED

    def _best_effort(self, step: str, fn: Callable[..., Any], *args) -> bool:
        if self.deadline.expired():
            logger.warning(f"Skipping best-effort step {step}: request deadline reached")
            return False
        return best_effort(step, fn, *args)
