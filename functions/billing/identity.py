"""
Authentication identity store.

The identity id issued here becomes the account primary key, which the
dashboard's session layer later matches against. Identities are keyed by
normalized email so that a lookup and a create can never produce two ids for
the same person, even when two deliveries race.
"""

import logging
import secrets
from datetime import datetime, timezone
from typing import Optional

from botocore.exceptions import ClientError

from shared.aws_clients import get_dynamodb
from shared.logging_utils import mask_email

logger = logging.getLogger(__name__)


def normalize_email(email: str) -> str:
    return email.strip().lower()


class IdentityService:
    """find/create identity by email, backed by the identities table."""

    def __init__(self, table_name: str):
        self.table_name = table_name

    def _table(self):
        return get_dynamodb().Table(self.table_name)

    def find_identity_by_email(self, email: str) -> Optional[str]:
        response = self._table().get_item(
            Key={"email_lower": normalize_email(email)},
            ConsistentRead=True,
        )
        item = response.get("Item")
        return item["identity_id"] if item else None

    def create_identity(self, email: str, source: str = "stripe") -> str:
        """Create an identity for the email and return its id.

        If another invocation created it first, that identity's id is returned.
        """
        identity_id = f"user_{secrets.token_hex(16)}"
        try:
            self._table().put_item(
                Item={
                    "email_lower": normalize_email(email),
                    "identity_id": identity_id,
                    "email": email.strip(),
                    # Payment through Stripe proves control of the address
                    "email_confirmed": True,
                    "source": source,
                    "created_at": datetime.now(timezone.utc).isoformat(),
                },
                ConditionExpression="attribute_not_exists(email_lower)",
            )
        except ClientError as e:
            if e.response["Error"]["Code"] != "ConditionalCheckFailedException":
                raise
            existing = self.find_identity_by_email(email)
            if existing is None:
                raise
            logger.info(f"Identity for {mask_email(email)} created concurrently; using {existing}")
            return existing

        logger.info(f"Created identity {identity_id} for {mask_email(email)}")
        return identity_id

    def find_or_create(self, email: str) -> str:
        identity_id = self.find_identity_by_email(email)
        if identity_id:
            logger.info(f"Found existing identity {identity_id}")
            return identity_id
        return self.create_identity(email)
