"""
Webhook processing pipeline: claim -> guard -> dispatch -> record.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from billing.accounts import AccountResolver
from billing.config import BillingConfig
from billing.deadline import Deadline
from billing.dispatcher import EventDispatcher
from billing.idempotency import (
    EventLedger,
    IdempotencyGuard,
    checkout_subscription_key,
    checkout_provisioned,
)
from billing.identity import IdentityService
from billing.models import EventKind, Outcome, WebhookEnvelope
from billing.reconciler import Reconciler
from billing.response_policy import Failure, classify_error, failure_response, outcome_response

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessingResult:
    outcome: Optional[Outcome] = None
    failure: Optional[Failure] = None

    @property
    def label(self) -> str:
        """Short outcome name for metrics and the ledger."""
        if self.outcome is not None:
            return self.outcome.value
        if self.failure.retryable:
            return "retry"
        return "unprocessable" if self.failure.unprocessable else "failed"

    def to_response(self) -> dict:
        if self.outcome is not None:
            return outcome_response(self.outcome)
        return failure_response(self.failure)


class WebhookProcessor:
    """Runs one verified envelope through the idempotency layers and its handler.

    Retryable failures release the event claim so Stripe's next delivery can
    process it; everything else is recorded and acknowledged.
    """

    def __init__(self, ledger: EventLedger, guard: IdempotencyGuard, dispatcher: EventDispatcher):
        self.ledger = ledger
        self.guard = guard
        self.dispatcher = dispatcher

    def process(self, envelope: WebhookEnvelope) -> ProcessingResult:
        try:
            claimed = self.ledger.claim(envelope)
        except Exception as e:
            failure = classify_error(e)
            logger.error(f"Could not claim event {envelope.event_id}: {e}")
            return ProcessingResult(failure=failure)

        if not claimed:
            logger.info(f"Skipping duplicate event {envelope.event_id}")
            return ProcessingResult(outcome=Outcome.DUPLICATE)

        try:
            if self.guard.already_applied(envelope):
                outcome = Outcome.DUPLICATE
            else:
                outcome = self.dispatcher.dispatch(envelope)
        except Exception as e:
            failure = classify_error(e)
            result = ProcessingResult(failure=failure)
            if failure.retryable:
                logger.error(
                    f"Retryable error handling {envelope.kind}: {e}",
                    exc_info=failure.code == "processing_failed",
                )
                # Recording after release would re-create the row and block the retry
                self.ledger.release(envelope)
            else:
                log = logger.warning if failure.unprocessable else logger.error
                log(f"Permanent error handling {envelope.kind}: {failure.code}: {e}")
                self.ledger.record(envelope, result.label, failure.code)
            return result

        self.ledger.record(envelope, outcome.value)
        return ProcessingResult(outcome=outcome)


def build_dispatcher(reconciler: Reconciler) -> EventDispatcher:
    dispatcher = EventDispatcher()
    dispatcher.register(EventKind.CHECKOUT_COMPLETED, reconciler.handle_checkout_completed)
    dispatcher.register(EventKind.SUBSCRIPTION_CREATED, reconciler.handle_subscription_changed)
    dispatcher.register(EventKind.SUBSCRIPTION_UPDATED, reconciler.handle_subscription_changed)
    dispatcher.register(EventKind.SUBSCRIPTION_DELETED, reconciler.handle_subscription_deleted)
    dispatcher.register(EventKind.INVOICE_PAID, reconciler.handle_invoice_paid)
    dispatcher.register(EventKind.INVOICE_PAYMENT_SUCCEEDED, reconciler.handle_invoice_paid)
    dispatcher.register(EventKind.INVOICE_PAYMENT_FAILED, reconciler.handle_invoice_failed)
    dispatcher.register(EventKind.PAYMENT_METHOD_ATTACHED, reconciler.handle_payment_method_attached)
    return dispatcher


def build_guard(config: BillingConfig) -> IdempotencyGuard:
    guard = IdempotencyGuard()
    guard.register(
        EventKind.CHECKOUT_COMPLETED,
        checkout_subscription_key,
        checkout_provisioned(config.tables.subscriptions),
    )
    return guard


def build_processor(config: BillingConfig, deadline: Deadline) -> WebhookProcessor:
    """Wire the pipeline for one request."""
    tables = config.tables
    accounts = AccountResolver(IdentityService(tables.identities), tables.accounts, tables.assessments)
    reconciler = Reconciler(config, accounts, deadline)
    return WebhookProcessor(
        ledger=EventLedger(tables.billing_events, config.claim_lease_seconds),
        guard=build_guard(config),
        dispatcher=build_dispatcher(reconciler),
    )
