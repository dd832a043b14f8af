"""
Centralized AWS client factory with lazy initialization.

Defers boto3 client/resource creation until first use so cold starts stay
cheap and tests can swap in moto before anything connects. Every client is
created with bounded timeouts so a slow dependency surfaces as a retryable
failure instead of holding the webhook connection open.
"""

import os

_dynamodb = None
_dynamodb_client = None
_secretsmanager = None
_cloudwatch = None


def _client_config():
    from botocore.config import Config

    return Config(
        connect_timeout=float(os.environ.get("AWS_CONNECT_TIMEOUT_SECONDS", "3")),
        read_timeout=float(os.environ.get("AWS_READ_TIMEOUT_SECONDS", "5")),
    )


def get_dynamodb():
    """Get DynamoDB resource, creating it lazily on first use."""
    global _dynamodb
    if _dynamodb is None:
        import boto3
        _dynamodb = boto3.resource("dynamodb", config=_client_config())
    return _dynamodb


def get_dynamodb_client():
    """Get low-level DynamoDB client (needed for TransactWriteItems)."""
    global _dynamodb_client
    if _dynamodb_client is None:
        import boto3
        _dynamodb_client = boto3.client("dynamodb", config=_client_config())
    return _dynamodb_client


def get_secretsmanager():
    """Get Secrets Manager client, creating it lazily on first use."""
    global _secretsmanager
    if _secretsmanager is None:
        import boto3
        _secretsmanager = boto3.client("secretsmanager", config=_client_config())
    return _secretsmanager


def get_cloudwatch():
    """Get CloudWatch client, creating it lazily on first use."""
    global _cloudwatch
    if _cloudwatch is None:
        import boto3
        _cloudwatch = boto3.client("cloudwatch", config=_client_config())
    return _cloudwatch


def reset_clients():
    """Reset all cached clients. Used in tests for clean state."""
    global _dynamodb, _dynamodb_client, _secretsmanager, _cloudwatch
    _dynamodb = None
    _dynamodb_client = None
    _secretsmanager = None
    _cloudwatch = None
