"""
Error taxonomy for the billing webhook.

Every error the webhook deliberately raises carries the response it should
map to, so the response policy never has to guess whether Stripe ought to
retry the delivery.
"""

from typing import Optional


class WebhookError(Exception):
    """Base class for webhook errors."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 400,
        retryable: bool = False,
        details: Optional[dict] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.retryable = retryable
        self.details = details or {}
        super().__init__(message)


class WebhookAuthenticationError(WebhookError):
    """Raised when the Stripe signature is missing, malformed or wrong.

    The payload is untrusted, so it is rejected and never retried.
    """

    def __init__(self, code: str = "invalid_signature", message: str = "Invalid signature"):
        super().__init__(code=code, message=message, status_code=400)


class InvalidPayloadError(WebhookError):
    """Raised when a correctly signed body is not a usable event envelope."""

    def __init__(self, message: str = "Invalid webhook payload"):
        super().__init__(code="invalid_webhook_payload", message=message, status_code=400)


class UnprocessableEventError(WebhookError):
    """Raised when an event lacks what is needed to act on it.

    Acknowledged with 200: retrying a structurally unfixable event never helps,
    and races (e.g. account not provisioned yet) converge via later events.
    """

    def __init__(self, reason: str, message: Optional[str] = None):
        super().__init__(
            code=reason,
            message=message or reason.replace("_", " "),
            status_code=200,
        )
        self.reason = reason


class TransientDependencyError(WebhookError):
    """Raised when a required dependency fails in a way a retry may fix."""

    def __init__(self, message: str = "Temporary error, please retry", code: str = "temporary_error"):
        super().__init__(code=code, message=message, status_code=500, retryable=True)


class RequestTimeoutError(TransientDependencyError):
    """Raised when the per-request deadline expires before the work finished."""

    def __init__(self, step: str):
        super().__init__(
            message="Request deadline exceeded, please retry",
            code="deadline_exceeded",
        )
        self.step = step
