"""
Stripe signature verification and envelope decoding.

The signature is checked over the raw request bytes before anything in the
body is parsed, so nothing downstream ever sees unauthenticated content.
"""

import base64
import binascii
import json
import logging
from typing import Optional, Union

import stripe

from billing.models import WebhookEnvelope
from shared.constants import DEFAULT_SIGNATURE_TOLERANCE_SECONDS
from shared.errors import InvalidPayloadError, WebhookAuthenticationError

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "stripe-signature"


def get_signature_header(headers: Optional[dict]) -> Optional[str]:
    """Find the Stripe-Signature header regardless of how API Gateway cased it."""
    for name, value in (headers or {}).items():
        if name.lower() == SIGNATURE_HEADER:
            return value
    return None


def raw_body(event: dict) -> bytes:
    """Return the exact bytes Stripe signed, undoing API Gateway base64 wrapping."""
    body = event.get("body") or ""
    if event.get("isBase64Encoded"):
        try:
            return base64.b64decode(body, validate=True)
        except (binascii.Error, ValueError):
            raise InvalidPayloadError("Body is not valid base64")
    if isinstance(body, bytes):
        return body
    return body.encode("utf-8")


def verify_signature(
    payload: Union[bytes, str],
    sig_header: Optional[str],
    secret: str,
    tolerance: int = DEFAULT_SIGNATURE_TOLERANCE_SECONDS,
) -> str:
    """Verify the HMAC signature over the raw payload.

    Returns the payload as text, ready for parsing.

    Raises:
        WebhookAuthenticationError: header missing, malformed, stale or not matching
    """
    if not sig_header:
        raise WebhookAuthenticationError("missing_signature", "Missing Stripe signature")

    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError:
            raise WebhookAuthenticationError()

    try:
        stripe.WebhookSignature.verify_header(payload, sig_header, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        logger.warning(f"Invalid Stripe signature: {e}", extra={"security_event": "invalid_signature"})
        raise WebhookAuthenticationError()

    return payload


def decode_envelope(payload: str) -> WebhookEnvelope:
    """Decode a verified payload into a WebhookEnvelope."""
    try:
        body = json.loads(payload)
    except json.JSONDecodeError:
        raise InvalidPayloadError()

    if not isinstance(body, dict):
        raise InvalidPayloadError()

    event_id = body.get("id")
    kind = body.get("type")
    data = body.get("data")
    obj = data.get("object") if isinstance(data, dict) else None

    if not event_id or not kind or not isinstance(obj, dict):
        raise InvalidPayloadError("Event envelope is missing id, type or data.object")

    return WebhookEnvelope(
        event_id=event_id,
        kind=kind,
        payload=obj,
        created=body.get("created"),
        livemode=bool(body.get("livemode", False)),
    )


def verify_and_decode(
    payload: Union[bytes, str],
    sig_header: Optional[str],
    secret: str,
    tolerance: int = DEFAULT_SIGNATURE_TOLERANCE_SECONDS,
) -> WebhookEnvelope:
    """Authenticate a Stripe notification and decode it into a typed envelope."""
    text = verify_signature(payload, sig_header, secret, tolerance)
    return decode_envelope(text)
