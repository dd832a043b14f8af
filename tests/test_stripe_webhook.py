"""
Tests for the Stripe webhook Lambda handler.
"""

import base64
import json
import time
from unittest.mock import MagicMock, patch

import pytest
import stripe


@pytest.fixture
def checkout_request(stripe_event, signed_request, checkout_session):
    def _make(event_id="evt_checkout", **session_kwargs):
        return signed_request(
            stripe_event("checkout.session.completed", checkout_session(**session_kwargs), event_id=event_id)
        )

    return _make


class TestRequestValidation:
    def test_rejects_non_post(self, api_gateway_event):
        from api.stripe_webhook import handler

        api_gateway_event["httpMethod"] = "GET"
        result = handler(api_gateway_event, None)

        assert result["statusCode"] == 405
        assert result["headers"]["Allow"] == "POST"
        assert json.loads(result["body"])["error"]["code"] == "method_not_allowed"

    def test_rejects_non_post_http_api_v2(self, api_gateway_event):
        from api.stripe_webhook import handler

        del api_gateway_event["httpMethod"]
        api_gateway_event["requestContext"] = {"http": {"method": "PUT"}}

        assert handler(api_gateway_event, None)["statusCode"] == 405

    def test_missing_body(self, api_gateway_event):
        from api.stripe_webhook import handler

        result = handler(api_gateway_event, None)

        assert result["statusCode"] == 400
        assert json.loads(result["body"])["error"]["code"] == "missing_body"

    def test_returns_500_without_stripe_secrets(self, mock_dynamodb, api_gateway_event, monkeypatch):
        """Should return 500 when Stripe secrets are not configured."""
        from api.stripe_webhook import handler

        monkeypatch.setenv("STRIPE_SECRET_ARN", "")
        monkeypatch.setenv("STRIPE_WEBHOOK_SECRET_ARN", "")
        api_gateway_event["body"] = "{}"

        result = handler(api_gateway_event, None)

        assert result["statusCode"] == 500
        body = json.loads(result["body"])
        assert body["error"]["code"] == "stripe_not_configured"
        assert body["error"]["message"] == "Stripe not configured"


class TestSignatureValidation:
    """Tests for handler-level Stripe signature validation."""

    def test_missing_stripe_signature_returns_400(self, stripe_secrets, api_gateway_event):
        from api.stripe_webhook import handler

        api_gateway_event["body"] = json.dumps({"id": "evt_1", "type": "invoice.paid"})

        result = handler(api_gateway_event, None)

        assert result["statusCode"] == 400
        body = json.loads(result["body"])
        assert body["error"]["code"] == "missing_signature"
        assert body["error"]["message"] == "Missing Stripe signature"

    def test_tampered_payload_rejected(self, stripe_secrets, signed_request, stripe_event):
        from api.stripe_webhook import handler

        request = signed_request(stripe_event("invoice.paid", {"id": "in_1", "subscription": "sub_1"}))
        request["body"] = request["body"].replace("in_1", "in_2")

        result = handler(request, None)

        assert result["statusCode"] == 400
        body = json.loads(result["body"])
        assert body["error"]["code"] == "invalid_signature"
        assert body["error"]["message"] == "Invalid signature"

    def test_expired_signature_rejected(self, stripe_secrets, signed_request, stripe_event):
        from api.stripe_webhook import handler

        request = signed_request(
            stripe_event("invoice.paid", {"id": "in_1"}),
            timestamp=int(time.time()) - 360,
        )

        result = handler(request, None)

        assert result["statusCode"] == 400
        assert json.loads(result["body"])["error"]["code"] == "invalid_signature"

    def test_invalid_payload_after_valid_signature(self, stripe_secrets, signed_request):
        from api.stripe_webhook import handler

        result = handler(signed_request("not json at all"), None)

        assert result["statusCode"] == 400
        assert json.loads(result["body"])["error"]["code"] == "invalid_webhook_payload"

    def test_nothing_written_for_rejected_signature(self, mock_dynamodb, stripe_secrets, checkout_request):
        from api.stripe_webhook import handler

        request = checkout_request()
        request["headers"] = {"Stripe-Signature": "t=1,v1=deadbeef"}

        handler(request, None)

        assert mock_dynamodb.Table("memberhub-billing-events").scan()["Count"] == 0
        assert mock_dynamodb.Table("memberhub-identities").scan()["Count"] == 0


class TestEventHandling:
    def test_checkout_end_to_end(
        self, mock_dynamodb, stripe_secrets, mock_stripe, make_subscription, checkout_request
    ):
        from api.stripe_webhook import handler

        mock_stripe.subscriptions["sub_123"] = make_subscription(price_id="price_gold")

        result = handler(checkout_request(), None)

        assert result["statusCode"] == 200
        assert json.loads(result["body"]) == {"received": True}
        assert stripe.api_key == "sk_test_123"
        assert stripe.max_network_retries == 0
        assert isinstance(stripe.default_http_client, stripe.RequestsClient)
        assert stripe.default_http_client._timeout == 5.0
        subscription = mock_dynamodb.Table("memberhub-subscriptions").get_item(
            Key={"stripe_subscription_id": "sub_123"}
        )["Item"]
        assert subscription["tier"] == "Gold"

    def test_duplicate_delivery(self, mock_dynamodb, stripe_secrets, mock_stripe, make_subscription, checkout_request):
        from api.stripe_webhook import handler

        mock_stripe.subscriptions["sub_123"] = make_subscription()

        handler(checkout_request(), None)
        result = handler(checkout_request(), None)

        assert result["statusCode"] == 200
        assert json.loads(result["body"]) == {"received": True, "duplicate": True}

    def test_base64_encoded_body(self, mock_dynamodb, stripe_secrets, mock_stripe, make_subscription, checkout_request):
        from api.stripe_webhook import handler

        mock_stripe.subscriptions["sub_123"] = make_subscription()
        request = checkout_request()
        request["body"] = base64.b64encode(request["body"].encode("utf-8")).decode("ascii")
        request["isBase64Encoded"] = True

        result = handler(request, None)

        assert result["statusCode"] == 200
        assert json.loads(result["body"]) == {"received": True}

    def test_unknown_event_ignored(self, mock_dynamodb, stripe_secrets, signed_request, stripe_event):
        from api.stripe_webhook import handler

        result = handler(signed_request(stripe_event("customer.tax_id.created", {"id": "txi_1"})), None)

        assert result["statusCode"] == 200
        assert json.loads(result["body"]) == {"received": True, "ignored": True}

    def test_unprocessable_event_acknowledged(self, mock_dynamodb, stripe_secrets, signed_request, stripe_event):
        from api.stripe_webhook import handler

        request = signed_request(stripe_event("customer.subscription.updated", {"id": "sub_1", "customer": "cus_x"}))

        result = handler(request, None)

        assert result["statusCode"] == 200
        assert json.loads(result["body"]) == {
            "received": True,
            "processed": False,
            "reason": "account_not_found",
        }

    def test_permanent_stripe_error_acknowledged(self, mock_dynamodb, stripe_secrets, mock_stripe, checkout_request):
        from api.stripe_webhook import handler

        # No subscription registered: retrieve raises InvalidRequestError
        result = handler(checkout_request(), None)

        assert result["statusCode"] == 200
        body = json.loads(result["body"])
        assert body["received"] is True
        assert body["processed"] is False
        assert body["error"]["code"] == "stripe_validation_error"

    def test_transient_stripe_error_returns_500(self, mock_dynamodb, stripe_secrets, mock_stripe, checkout_request):
        from api.stripe_webhook import handler

        mock_stripe.subscription_retrieve.side_effect = stripe.RateLimitError("Too many requests")

        result = handler(checkout_request(), None)

        assert result["statusCode"] == 500
        assert json.loads(result["body"])["error"]["code"] == "stripe_error"

    def test_unexpected_error_returns_500(self, mock_dynamodb, stripe_secrets, mock_stripe, make_subscription, checkout_request):
        from api.stripe_webhook import handler

        mock_stripe.subscriptions["sub_123"] = make_subscription()
        with patch("billing.reconciler.Reconciler.handle_checkout_completed", side_effect=RuntimeError("boom")):
            # Patch is applied before wiring so the dispatcher picks it up
            result = handler(checkout_request(), None)

        assert result["statusCode"] == 500
        assert json.loads(result["body"])["error"]["code"] == "processing_failed"

    def test_lambda_time_budget_bounds_request(
        self, mock_dynamodb, stripe_secrets, mock_stripe, make_subscription, checkout_request
    ):
        """Too little Lambda time left: fail fast with a retryable 500 instead of timing out."""
        from api.stripe_webhook import handler

        mock_stripe.subscriptions["sub_123"] = make_subscription()
        context = MagicMock()
        context.get_remaining_time_in_millis.return_value = 1000

        result = handler(checkout_request(), context)

        assert result["statusCode"] == 500
        assert json.loads(result["body"])["error"]["code"] == "deadline_exceeded"
        mock_stripe.subscription_retrieve.assert_not_called()

    def test_emits_outcome_metric(self, mock_dynamodb, stripe_secrets, signed_request, stripe_event):
        from api.stripe_webhook import handler

        with patch("api.stripe_webhook.emit_webhook_metric") as emit:
            handler(signed_request(stripe_event("customer.tax_id.created", {"id": "txi_1"})), None)

        args = emit.call_args[0]
        assert args[0] == "customer.tax_id.created"
        assert args[1] == "ignored"

    def test_config_cached_per_container(self, mock_dynamodb, stripe_secrets, signed_request, stripe_event):
        import api.stripe_webhook as webhook_module

        webhook_module.handler(signed_request(stripe_event("customer.tax_id.created", {"id": "txi_1"})), None)
        first = webhook_module.get_config()
        webhook_module.handler(
            signed_request(stripe_event("customer.tax_id.created", {"id": "txi_2"}, event_id="evt_2")), None
        )

        assert webhook_module.get_config() is first


class TestConfigureStripe:
    def test_http_client_uses_configured_timeout(self, monkeypatch):
        from api.stripe_webhook import configure_stripe

        monkeypatch.setattr(stripe, "default_http_client", None)
        monkeypatch.setattr(stripe, "max_network_retries", 2)
        monkeypatch.setattr(stripe, "api_key", None)

        configure_stripe("sk_test_456", 2.5)

        assert stripe.api_key == "sk_test_456"
        assert stripe.max_network_retries == 0
        assert isinstance(stripe.default_http_client, stripe.RequestsClient)
        assert stripe.default_http_client._timeout == 2.5
