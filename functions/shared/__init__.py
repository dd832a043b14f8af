# Shared utilities package
from .constants import LOWEST_TIER, TIER_NAMES, TIER_ORDER
from .errors import (
    InvalidPayloadError,
    TransientDependencyError,
    UnprocessableEventError,
    WebhookAuthenticationError,
    WebhookError,
)
from .response_utils import error_response, json_response, success_response

__all__ = [
    "TIER_ORDER",
    "TIER_NAMES",
    "LOWEST_TIER",
    "WebhookError",
    "WebhookAuthenticationError",
    "InvalidPayloadError",
    "UnprocessableEventError",
    "TransientDependencyError",
    "error_response",
    "json_response",
    "success_response",
]
