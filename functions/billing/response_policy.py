"""
Maps processing outcomes and errors onto webhook responses.

Stripe retries any non-2xx delivery, so the status code is the only lever we
have: 200 for anything a retry cannot fix, 500 for anything it can.
"""

from dataclasses import dataclass

import stripe
from botocore.exceptions import BotoCoreError, ClientError

from billing.models import Outcome
from billing.unit_of_work import TransactionConflict
from shared.errors import UnprocessableEventError, WebhookError
from shared.response_utils import error_response, success_response

TRANSIENT_STRIPE_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)

DATA_ERRORS = (ValueError, KeyError, TypeError, AttributeError)


@dataclass(frozen=True)
class Failure:
    """Classified processing failure."""

    code: str
    message: str
    retryable: bool
    unprocessable: bool = False

    @property
    def status_code(self) -> int:
        return 500 if self.retryable else 200


def classify_error(exc: Exception) -> Failure:
    """Decide whether Stripe should retry the event that raised ``exc``."""
    if isinstance(exc, UnprocessableEventError):
        return Failure(exc.reason, exc.message, retryable=False, unprocessable=True)
    if isinstance(exc, WebhookError):
        return Failure(exc.code, exc.message, retryable=exc.retryable)
    if isinstance(exc, TRANSIENT_STRIPE_ERRORS):
        return Failure("stripe_error", "Stripe error, please retry", retryable=True)
    if isinstance(exc, stripe.StripeError):
        # InvalidRequestError, AuthenticationError, etc. fail the same way every time
        return Failure("stripe_validation_error", "Stripe validation error", retryable=False)
    if isinstance(exc, (ClientError, BotoCoreError, TransactionConflict)):
        return Failure("temporary_error", "Temporary error, please retry", retryable=True)
    if isinstance(exc, DATA_ERRORS):
        # Don't leak internal field names in the response
        return Failure("invalid_event_data", "Invalid event data", retryable=False)
    return Failure("processing_failed", "Processing failed", retryable=True)


def is_retryable(exc: Exception) -> bool:
    return classify_error(exc).retryable


def outcome_response(outcome: Outcome) -> dict:
    body = {"received": True}
    if outcome is Outcome.DUPLICATE:
        body["duplicate"] = True
    elif outcome is Outcome.IGNORED:
        body["ignored"] = True
    return success_response(body)


def failure_response(failure: Failure) -> dict:
    if failure.retryable:
        return error_response(500, failure.code, failure.message)
    if failure.unprocessable:
        return success_response({"received": True, "processed": False, "reason": failure.code})
    return error_response(
        200,
        failure.code,
        failure.message,
        extra_body={"received": True, "processed": False},
    )
