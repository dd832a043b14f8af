"""
Domain types for billing-event reconciliation.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class Outcome(Enum):
    """How a verified event was handled. Every outcome is acknowledged with 200."""

    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


class MembershipStatus(Enum):
    PENDING = "pending"
    ACTIVE = "active"
    CANCELED = "canceled"
    SUPERSEDED = "superseded"


class InvoiceStatus(Enum):
    PAID = "paid"
    FAILED = "failed"
    PENDING = "pending"


class EventKind:
    """Stripe event type strings handled by the dispatcher."""

    CHECKOUT_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    PAYMENT_METHOD_ATTACHED = "payment_method.attached"


@dataclass(frozen=True)
class WebhookEnvelope:
    """A verified, decoded Stripe event."""

    event_id: str
    kind: str
    payload: dict = field(repr=False)
    created: Optional[int] = None
    livemode: bool = False

    @property
    def customer_id(self) -> Optional[str]:
        return stripe_id(self.payload.get("customer"))


def stripe_id(value: Any) -> Optional[str]:
    """Return the id of a Stripe reference that may be an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        return value.get("id")
    return getattr(value, "id", None)
