"""Append-only audit log for operator-visible booking changes."""

import datetime as dt
import logging
import uuid
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from .dynamodb import DynamoDBService, get_dynamodb_service

logger = logging.getLogger(__name__)

AUDIT_LOGS_TABLE = "audit-logs"


class AuditLogService:
    """Writes audit rows. Failures are logged and never surface to callers."""

    def __init__(self, db: DynamoDBService | None = None) -> None:
        self._db = db or get_dynamodb_service()

    def record(
        self,
        action: str,
        entity_id: str,
        *,
        entity_type: str = "booking",
        user_id: str | None = None,
        old_data: dict[str, Any] | None = None,
        new_data: dict[str, Any] | None = None,
    ) -> str | None:
        """Record an audit entry.

        Args:
            action: What happened (e.g., "deposit_hold_created", "booking_voided")
            entity_id: ID of the changed entity
            entity_type: Kind of entity (default "booking")
            user_id: Acting user, or None for system actions
            old_data: State before the change
            new_data: State after the change

        Returns:
            The log ID, or None if the write failed.
        """
        log_id = f"AUD-{uuid.uuid4().hex[:16].upper()}"
        item: dict[str, Any] = {
            "log_id": log_id,
            "action": action,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "user_id": user_id or "system",
            "created_at": dt.datetime.now(dt.UTC).isoformat(),
        }
        if old_data is not None:
            item["old_data"] = old_data
        if new_data is not None:
            item["new_data"] = new_data

        try:
            self._db.put_item(AUDIT_LOGS_TABLE, item)
        except (ClientError, BotoCoreError, TypeError) as e:
            logger.warning("Audit log write failed for %s %s: %s", action, entity_id, e)
            return None
        return log_id
