"""
Shared pytest fixtures for MemberHub billing tests.
"""

import hashlib
import hmac
import json
import os
import sys
import time
from types import SimpleNamespace
from unittest.mock import patch

import boto3
import pytest
from moto import mock_aws

# Add functions directory to Python path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "functions"))

WEBHOOK_SECRET = "whsec_test_secret"
STRIPE_API_KEY = "sk_test_123"

PRICE_IDS = {
    "STRIPE_PRICE_BRONZE": "price_bronze",
    "STRIPE_PRICE_SILVER": "price_silver",
    "STRIPE_PRICE_GOLD": "price_gold",
    "STRIPE_PRICE_FOUNDING_MEMBER": "price_founding",
}

# 2026-01-01T00:00:00Z and 2026-02-01T00:00:00Z
PERIOD_START = 1767225600
PERIOD_END = 1769904000


def pytest_configure(config):
    """Set AWS credentials before test collection.

    This runs before test collection starts, ensuring boto3 resource
    creation during imports doesn't fail with NoRegionError.
    """
    os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
    os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
    os.environ.setdefault("AWS_REGION", "us-east-1")


@pytest.fixture(autouse=True)
def aws_credentials():
    """Set fake AWS credentials for all tests."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-east-1"
    os.environ["AWS_REGION"] = "us-east-1"


@pytest.fixture(autouse=True)
def price_env(monkeypatch):
    """Configure one Stripe price per tier."""
    for key, price_id in PRICE_IDS.items():
        monkeypatch.setenv(key, price_id)


@pytest.fixture(autouse=True)
def reset_aws_clients():
    """Reset shared AWS client singletons between tests."""
    from shared.aws_clients import reset_clients

    reset_clients()
    yield
    reset_clients()


@pytest.fixture(autouse=True)
def reset_billing_caches():
    """Drop cached secrets and config so each test reads its own environment."""
    from api.stripe_webhook import reset_config
    from billing.config import reset_secrets_cache

    reset_secrets_cache()
    reset_config()
    yield
    reset_secrets_cache()
    reset_config()


def create_dynamodb_tables(dynamodb):
    """Create every billing table with its GSIs."""
    dynamodb.create_table(
        TableName="memberhub-accounts",
        KeySchema=[{"AttributeName": "account_id", "KeyType": "HASH"}],
        AttributeDefinitions=[
            {"AttributeName": "account_id", "AttributeType": "S"},
            {"AttributeName": "email_lower", "AttributeType": "S"},
            {"AttributeName": "stripe_customer_id", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "email-index",
                "KeySchema": [{"AttributeName": "email_lower", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "ALL"},
            },
            {
                "IndexName": "stripe-customer-index",
                "KeySchema": [{"AttributeName": "stripe_customer_id", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "ALL"},
            },
        ],
        BillingMode="PAY_PER_REQUEST",
    )

    dynamodb.create_table(
        TableName="memberhub-memberships",
        KeySchema=[
            {"AttributeName": "account_id", "KeyType": "HASH"},
            {"AttributeName": "membership_id", "KeyType": "RANGE"},
        ],
        AttributeDefinitions=[
            {"AttributeName": "account_id", "AttributeType": "S"},
            {"AttributeName": "membership_id", "AttributeType": "S"},
        ],
        BillingMode="PAY_PER_REQUEST",
    )

    dynamodb.create_table(
        TableName="memberhub-subscriptions",
        KeySchema=[{"AttributeName": "stripe_subscription_id", "KeyType": "HASH"}],
        AttributeDefinitions=[{"AttributeName": "stripe_subscription_id", "AttributeType": "S"}],
        BillingMode="PAY_PER_REQUEST",
    )

    dynamodb.create_table(
        TableName="memberhub-invoices",
        KeySchema=[{"AttributeName": "stripe_invoice_id", "KeyType": "HASH"}],
        AttributeDefinitions=[
            {"AttributeName": "stripe_invoice_id", "AttributeType": "S"},
            {"AttributeName": "account_id", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "account-index",
                "KeySchema": [{"AttributeName": "account_id", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "ALL"},
            },
        ],
        BillingMode="PAY_PER_REQUEST",
    )

    dynamodb.create_table(
        TableName="memberhub-identities",
        KeySchema=[{"AttributeName": "email_lower", "KeyType": "HASH"}],
        AttributeDefinitions=[{"AttributeName": "email_lower", "AttributeType": "S"}],
        BillingMode="PAY_PER_REQUEST",
    )

    dynamodb.create_table(
        TableName="memberhub-assessments",
        KeySchema=[{"AttributeName": "assessment_id", "KeyType": "HASH"}],
        AttributeDefinitions=[{"AttributeName": "assessment_id", "AttributeType": "S"}],
        BillingMode="PAY_PER_REQUEST",
    )

    dynamodb.create_table(
        TableName="memberhub-billing-events",
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},
            {"AttributeName": "sk", "KeyType": "RANGE"},
        ],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
        ],
        BillingMode="PAY_PER_REQUEST",
    )


@pytest.fixture
def mock_dynamodb():
    """Provide mocked DynamoDB with tables."""
    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name="us-east-1")
        create_dynamodb_tables(dynamodb)
        yield dynamodb


@pytest.fixture
def stripe_secrets(mock_dynamodb, monkeypatch):
    """Store Stripe credentials in mocked Secrets Manager and point the env at them."""
    sm = boto3.client("secretsmanager", region_name="us-east-1")
    api_key_arn = sm.create_secret(
        Name="memberhub/stripe-api-key",
        SecretString=json.dumps({"key": STRIPE_API_KEY}),
    )["ARN"]
    webhook_arn = sm.create_secret(
        Name="memberhub/stripe-webhook-secret",
        SecretString=json.dumps({"secret": WEBHOOK_SECRET}),
    )["ARN"]
    monkeypatch.setenv("STRIPE_SECRET_ARN", api_key_arn)
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET_ARN", webhook_arn)
    return SimpleNamespace(api_key=STRIPE_API_KEY, webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
def billing_config():
    """BillingConfig built from the test environment."""
    from billing.config import BillingConfig

    return BillingConfig.from_environment()


@pytest.fixture
def make_subscription():
    """Factory for retrieved Stripe subscription objects."""

    def _make(
        subscription_id="sub_123",
        customer_id="cus_123",
        price_id="price_gold",
        status="active",
        latest_invoice=None,
        default_payment_method=None,
        **extra,
    ):
        subscription = {
            "id": subscription_id,
            "object": "subscription",
            "customer": customer_id,
            "status": status,
            "currency": "usd",
            "cancel_at_period_end": False,
            "canceled_at": None,
            "trial_start": None,
            "trial_end": None,
            "items": {
                "data": [
                    {
                        "id": "si_123",
                        "current_period_start": PERIOD_START,
                        "current_period_end": PERIOD_END,
                        "price": {
                            "id": price_id,
                            "unit_amount": 4900,
                            "currency": "usd",
                            "recurring": {"interval": "month"},
                        },
                    }
                ]
            },
            "latest_invoice": latest_invoice,
            "default_payment_method": default_payment_method,
        }
        subscription.update(extra)
        return subscription

    return _make


@pytest.fixture
def mock_stripe():
    """Patch the Stripe retrieve calls with in-memory objects.

    Register objects in ``subscriptions``/``customers`` keyed by id; unknown
    subscriptions raise InvalidRequestError like the real API.
    """
    import stripe

    subscriptions = {}
    customers = {}

    def retrieve_subscription(subscription_id, **kwargs):
        if subscription_id not in subscriptions:
            raise stripe.InvalidRequestError(f"No such subscription: '{subscription_id}'", "id")
        return subscriptions[subscription_id]

    def retrieve_customer(customer_id, **kwargs):
        return customers.get(customer_id, {"id": customer_id, "email": None})

    with patch("stripe.Subscription.retrieve", side_effect=retrieve_subscription) as sub_mock, patch(
        "stripe.Customer.retrieve", side_effect=retrieve_customer
    ) as customer_mock:
        yield SimpleNamespace(
            subscriptions=subscriptions,
            customers=customers,
            subscription_retrieve=sub_mock,
            customer_retrieve=customer_mock,
        )


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    """Build a Stripe-Signature header the way Stripe does."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture
def api_gateway_event():
    """Base API Gateway event for Lambda handler tests."""
    return {
        "httpMethod": "POST",
        "path": "/webhooks/stripe",
        "headers": {},
        "queryStringParameters": None,
        "body": None,
        "isBase64Encoded": False,
        "requestContext": {"requestId": "test-request-id"},
    }


@pytest.fixture
def stripe_event():
    """Factory for Stripe event envelopes."""

    def _make(kind, obj, event_id="evt_123", created=1767225600, livemode=False):
        return {
            "id": event_id,
            "object": "event",
            "type": kind,
            "created": created,
            "livemode": livemode,
            "data": {"object": obj},
        }

    return _make


@pytest.fixture
def signed_request(api_gateway_event):
    """Factory for API Gateway events carrying a correctly signed Stripe payload."""

    def _make(event_body, secret=WEBHOOK_SECRET, timestamp=None):
        payload = event_body if isinstance(event_body, str) else json.dumps(event_body)
        request = dict(api_gateway_event)
        request["body"] = payload
        request["headers"] = {"Stripe-Signature": sign_payload(payload, secret, timestamp)}
        return request

    return _make


@pytest.fixture
def checkout_session():
    """Factory for checkout.session.completed objects."""

    def _make(
        email="member@example.com",
        customer_id="cus_123",
        subscription_id="sub_123",
        metadata=None,
    ):
        return {
            "id": "cs_test_123",
            "object": "checkout.session",
            "mode": "subscription",
            "customer": customer_id,
            "subscription": subscription_id,
            "customer_details": {"email": email} if email else {},
            "customer_email": None,
            "metadata": metadata or {},
            "payment_status": "paid",
        }

    return _make
