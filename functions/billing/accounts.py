"""
Account resolution and provisioning.

An account is created lazily the first time a checkout completes for an
email. The identity comes first because the account primary key must equal
the identity id for session-based access control to line up later.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from boto3.dynamodb.conditions import Key

from billing.identity import IdentityService, normalize_email
from billing.unit_of_work import UnitOfWork, build_update_expression
from shared.aws_clients import get_dynamodb
from shared.errors import UnprocessableEventError
from shared.logging_utils import mask_email

logger = logging.getLogger(__name__)


def extract_checkout_email(session: dict) -> Optional[str]:
    """Email from a checkout session: customer_details, then customer_email, then metadata."""
    details = session.get("customer_details") or {}
    metadata = session.get("metadata") or {}
    email = details.get("email") or session.get("customer_email") or metadata.get("email")
    if email and email.strip():
        return email.strip()
    return None


class AccountResolver:
    """Finds or provisions accounts and applies account-level side writes."""

    def __init__(self, identities: IdentityService, accounts_table: str, assessments_table: str):
        self.identities = identities
        self.accounts_table = accounts_table
        self.assessments_table = assessments_table

    def _table(self):
        return get_dynamodb().Table(self.accounts_table)

    def resolve_identity(self, email: Optional[str]) -> str:
        """Return the identity id for the email, creating the identity if needed.

        Raises:
            UnprocessableEventError: no email, so there is nobody to provision
        """
        if not email:
            logger.warning("No email found in checkout session or customer")
            raise UnprocessableEventError("missing_email")

        identity_id = self.identities.find_or_create(email)
        logger.info(f"Identity resolved for {mask_email(email)}: {identity_id}")
        return identity_id

    def queue_account_upsert(
        self,
        uow: UnitOfWork,
        account_id: str,
        email: str,
        *,
        stripe_customer_id: Optional[str] = None,
        stripe_subscription_id: Optional[str] = None,
        next_billing_at: Optional[str] = None,
    ) -> None:
        """Queue the account upsert, keyed on the identity id (never the email)."""
        now = datetime.now(timezone.utc).isoformat()
        fields = {
            "email": email,
            "email_lower": normalize_email(email),
            "updated_at": now,
            "created_at": now,
        }
        if stripe_customer_id:
            fields["stripe_customer_id"] = stripe_customer_id
        if stripe_subscription_id:
            fields["stripe_subscription_id"] = stripe_subscription_id
        if next_billing_at:
            fields["next_billing_at"] = next_billing_at

        uow.update(
            self.accounts_table,
            {"account_id": account_id},
            fields,
            if_not_exists=("created_at",),
            tag="account",
        )

    def find_by_customer_id(self, customer_id: Optional[str]) -> Optional[dict]:
        """Look up an account by Stripe customer ID using GSI."""
        if not customer_id:
            return None
        response = self._table().query(
            IndexName="stripe-customer-index",
            KeyConditionExpression=Key("stripe_customer_id").eq(customer_id),
            Limit=1,
        )
        items = response.get("Items", [])
        return items[0] if items else None

    def _update_existing(self, account_id: str, fields: dict) -> None:
        expression, names, values = build_update_expression(fields)
        self._table().update_item(
            Key={"account_id": account_id},
            UpdateExpression=expression,
            ConditionExpression="attribute_exists(account_id)",
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=values,
        )

    def link_assessment(self, account_id: str, assessment_id: str) -> None:
        """Point the account at its lead-funnel assessment and mark the assessment claimed."""
        now = datetime.now(timezone.utc).isoformat()
        self._update_existing(account_id, {"last_assessment_id": assessment_id, "updated_at": now})
        get_dynamodb().Table(self.assessments_table).update_item(
            Key={"assessment_id": assessment_id},
            UpdateExpression="SET claimed_by = :account, claimed_at = :now",
            ConditionExpression="attribute_exists(assessment_id)",
            ExpressionAttributeValues={":account": account_id, ":now": now},
        )
        logger.info(f"Linked assessment {assessment_id} to account {account_id}")

    def backfill_profile(self, account_id: str, customer: dict) -> None:
        """Copy name/phone/address from the Stripe customer onto the account."""
        address = customer.get("address") or {}
        fields = {
            "full_name": customer.get("name"),
            "phone": customer.get("phone"),
            "city": address.get("city"),
            "state": address.get("state"),
        }
        fields = {k: v for k, v in fields.items() if v}
        if not fields:
            return
        fields["updated_at"] = datetime.now(timezone.utc).isoformat()
        self._update_existing(account_id, fields)
        logger.info(f"Back-filled profile fields {sorted(fields)} for account {account_id}")

    def update_payment_method(self, account_id: str, card: dict) -> None:
        self._update_existing(
            account_id,
            {
                "payment_method_brand": card.get("brand"),
                "payment_method_last4": card.get("last4"),
                "payment_method_exp_month": card.get("exp_month"),
                "payment_method_exp_year": card.get("exp_year"),
                "updated_at": datetime.now(timezone.utc).isoformat(),
            },
        )
        logger.info(f"Updated payment method for account {account_id}")
