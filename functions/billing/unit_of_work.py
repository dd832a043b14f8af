"""
Atomic multi-table writes.

The required writes of a billing event (account, membership, subscription)
are collected into one DynamoDB TransactWriteItems call so readers never see
an account whose membership or subscription write failed halfway.
"""

import logging
from typing import Any, Iterable, Optional

from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import ClientError

from shared.aws_clients import get_dynamodb_client

logger = logging.getLogger(__name__)

_serializer = TypeSerializer()

# DynamoDB rejects transactions with more actions than this
MAX_TRANSACTION_ITEMS = 100


class TransactionConflict(Exception):
    """A condition inside the transaction failed; nothing was written."""

    def __init__(self, failed_tags: list[str], message: str = ""):
        self.failed_tags = failed_tags
        super().__init__(message or f"Transaction condition failed for {failed_tags}")


def build_update_expression(
    set_fields: dict,
    if_not_exists: Iterable[str] = (),
) -> tuple[str, dict, dict]:
    """Build a SET expression with placeholder names/values.

    Fields listed in if_not_exists only take the new value when the attribute
    is absent, so first-write-wins attributes (created_at, verification_status)
    survive later upserts.

    Returns:
        (UpdateExpression, ExpressionAttributeNames, ExpressionAttributeValues)
    """
    keep_existing = set(if_not_exists)
    parts = []
    names = {}
    values = {}
    for i, (field_name, value) in enumerate(set_fields.items()):
        name_ph = f"#f{i}"
        value_ph = f":v{i}"
        names[name_ph] = field_name
        values[value_ph] = value
        if field_name in keep_existing:
            parts.append(f"{name_ph} = if_not_exists({name_ph}, {value_ph})")
        else:
            parts.append(f"{name_ph} = {value_ph}")
    return "SET " + ", ".join(parts), names, values


def _serialize(values: dict) -> dict:
    return {k: _serializer.serialize(v) for k, v in values.items()}


class UnitOfWork:
    """Collects writes and commits them as one all-or-nothing transaction."""

    def __init__(self, client=None):
        self._client = client
        self._items: list[dict] = []
        self._tags: list[str] = []

    def __len__(self) -> int:
        return len(self._items)

    def update(
        self,
        table: str,
        key: dict,
        set_fields: dict,
        *,
        if_not_exists: Iterable[str] = (),
        condition: Optional[str] = None,
        condition_names: Optional[dict] = None,
        condition_values: Optional[dict] = None,
        tag: Optional[str] = None,
    ) -> "UnitOfWork":
        """Queue an upsert (UpdateItem creates the row when it is missing)."""
        expression, names, values = build_update_expression(set_fields, if_not_exists)
        names.update(condition_names or {})
        values.update(condition_values or {})

        update: dict[str, Any] = {
            "TableName": table,
            "Key": _serialize(key),
            "UpdateExpression": expression,
            "ExpressionAttributeNames": names,
            "ExpressionAttributeValues": _serialize(values),
        }
        if condition:
            update["ConditionExpression"] = condition
        return self._add({"Update": update}, tag or table)

    def put(
        self,
        table: str,
        item: dict,
        *,
        condition: Optional[str] = None,
        condition_names: Optional[dict] = None,
        condition_values: Optional[dict] = None,
        tag: Optional[str] = None,
    ) -> "UnitOfWork":
        put: dict[str, Any] = {"TableName": table, "Item": _serialize(item)}
        if condition:
            put["ConditionExpression"] = condition
            if condition_names:
                put["ExpressionAttributeNames"] = condition_names
            if condition_values:
                put["ExpressionAttributeValues"] = _serialize(condition_values)
        return self._add({"Put": put}, tag or table)

    def _add(self, item: dict, tag: str) -> "UnitOfWork":
        if len(self._items) >= MAX_TRANSACTION_ITEMS:
            raise ValueError(f"Transaction cannot exceed {MAX_TRANSACTION_ITEMS} items")
        self._items.append(item)
        self._tags.append(tag)
        return self

    def commit(self) -> None:
        """Apply all queued writes atomically.

        Raises:
            TransactionConflict: a ConditionExpression failed (nothing written)
            ClientError: any other DynamoDB failure (transient; nothing written)
        """
        if not self._items:
            return

        client = self._client or get_dynamodb_client()
        try:
            client.transact_write_items(TransactItems=self._items)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") != "TransactionCanceledException":
                raise
            failed = self._conditional_failures(e)
            if failed is None:
                # Cancelled for another reason (conflict with a concurrent transaction, throttling)
                raise
            raise TransactionConflict(failed, str(e)) from e

        logger.debug(f"Committed transaction with {len(self._items)} writes: {self._tags}")

    def _conditional_failures(self, error: ClientError) -> Optional[list[str]]:
        """Tags of the writes whose condition failed, or None if the cause was something else."""
        reasons = error.response.get("CancellationReasons")
        if reasons:
            failed = [
                tag
                for tag, reason in zip(self._tags, reasons)
                if reason.get("Code") == "ConditionalCheckFailed"
            ]
            return failed or None

        # Some clients only report the reasons inside the message: "... reasons [None, ConditionalCheckFailed]"
        message = error.response.get("Error", {}).get("Message", "")
        if "ConditionalCheckFailed" not in message:
            return None
        codes = message[message.rfind("[") + 1 : message.rfind("]")].split(",")
        if len(codes) != len(self._tags):
            return list(self._tags)
        return [tag for tag, code in zip(self._tags, codes) if code.strip() == "ConditionalCheckFailed"]
