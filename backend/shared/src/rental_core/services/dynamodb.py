"""Thin boto3 wrapper over the rental tables.

Every table lives under an environment prefix (``rentals-dev-bookings``).
Conditional writes report a failed condition through their return value
instead of raising, so callers can treat "someone else got there first"
as an ordinary outcome.
"""

import os
from collections.abc import Callable
from typing import Any, TypeVar

import boto3
from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

T = TypeVar("T")

# Reused across warm Lambda invocations
_service: "DynamoDBService | None" = None


def get_dynamodb_service(environment: str | None = None) -> "DynamoDBService":
    """Shared DynamoDBService; ``environment`` only applies to the first call."""
    global _service
    if _service is None:
        _service = DynamoDBService(environment)
    return _service


def reset_dynamodb_service() -> None:
    """Drop the shared instance so tests get one bound to their mock_aws context."""
    global _service
    _service = None


def is_conditional_check_failure(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


def _unless_condition_failed(call: Callable[[], T], on_failure: T) -> T:
    try:
        return call()
    except ClientError as e:
        if is_conditional_check_failure(e):
            return on_failure
        raise


class DynamoDBService:
    """Table access with environment-prefixed names."""

    def __init__(self, environment: str | None = None) -> None:
        self.environment = environment or os.getenv("ENVIRONMENT", "dev")
        # DYNAMODB_TABLE_PREFIX wins so tests and stacks can share one account
        self.name_prefix = os.getenv("DYNAMODB_TABLE_PREFIX", f"rentals-{self.environment}")
        self._resource = boto3.resource("dynamodb")

    def table_name(self, table: str) -> str:
        return f"{self.name_prefix}-{table}"

    def _table(self, table: str) -> Any:
        return self._resource.Table(self.table_name(table))

    def get_item(
        self, table: str, key: dict[str, Any], consistent_read: bool = False
    ) -> dict[str, Any] | None:
        """Item for ``key``, or None.

        Use ``consistent_read`` before a conditional write that depends on
        what was just read (webhook dedup, booking state changes).
        """
        response = self._table(table).get_item(Key=key, ConsistentRead=consistent_read)
        return response.get("Item")

    def put_item(
        self,
        table: str,
        item: dict[str, Any],
        condition_expression: str | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
    ) -> bool:
        """Write ``item``. Returns False when ``condition_expression`` fails."""
        kwargs: dict[str, Any] = {"Item": item}
        if condition_expression:
            kwargs["ConditionExpression"] = condition_expression
        if expression_attribute_values:
            kwargs["ExpressionAttributeValues"] = expression_attribute_values

        def write() -> bool:
            self._table(table).put_item(**kwargs)
            return True

        return _unless_condition_failed(write, False)

    def update_item(
        self,
        table: str,
        key: dict[str, Any],
        update_expression: str,
        expression_attribute_values: dict[str, Any] | None = None,
        expression_attribute_names: dict[str, str] | None = None,
        condition_expression: str | None = None,
    ) -> dict[str, Any] | None:
        """Apply ``update_expression`` and return the item as written.

        Returns:
            All attributes after the update, or None if the condition failed.
        """
        kwargs: dict[str, Any] = {
            "Key": key,
            "UpdateExpression": update_expression,
            "ReturnValues": "ALL_NEW",
        }
        if expression_attribute_values:
            kwargs["ExpressionAttributeValues"] = expression_attribute_values
        if expression_attribute_names:
            kwargs["ExpressionAttributeNames"] = expression_attribute_names
        if condition_expression:
            kwargs["ConditionExpression"] = condition_expression

        def write() -> dict[str, Any] | None:
            return self._table(table).update_item(**kwargs).get("Attributes")

        return _unless_condition_failed(write, None)

    def delete_item(self, table: str, key: dict[str, Any]) -> None:
        """Delete ``key``. Deleting a missing item is not an error."""
        self._table(table).delete_item(Key=key)

    def query(
        self,
        table: str,
        key_condition: Any,
        index_name: str | None = None,
        filter_expression: Any | None = None,
        limit: int | None = None,
        scan_index_forward: bool = True,
    ) -> list[dict[str, Any]]:
        """Query a table or index, following LastEvaluatedKey.

        ``limit`` caps the matching items returned, counted after the filter
        (DynamoDB's own Limit counts items read before filtering).
        """
        kwargs: dict[str, Any] = {
            "KeyConditionExpression": key_condition,
            "ScanIndexForward": scan_index_forward,
        }
        if index_name:
            kwargs["IndexName"] = index_name
        if filter_expression is not None:
            kwargs["FilterExpression"] = filter_expression
        return self._collect(self._table(table).query, kwargs, limit)

    def query_index(
        self,
        table: str,
        index_name: str,
        key_name: str,
        key_value: str,
        sort_key_condition: Any | None = None,
        filter_expression: Any | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Items in ``index_name`` whose ``key_name`` equals ``key_value``."""
        key_condition = Key(key_name).eq(key_value)
        if sort_key_condition is not None:
            key_condition = key_condition & sort_key_condition
        return self.query(
            table,
            key_condition,
            index_name=index_name,
            filter_expression=filter_expression,
            limit=limit,
        )

    def scan(self, table: str, filter_expression: Any | None = None) -> list[dict[str, Any]]:
        """Every item in ``table``. For admin tooling and tests, not request paths."""
        kwargs: dict[str, Any] = {}
        if filter_expression is not None:
            kwargs["FilterExpression"] = filter_expression
        return self._collect(self._table(table).scan, kwargs, None)

    @staticmethod
    def _collect(
        operation: Callable[..., dict[str, Any]], kwargs: dict[str, Any], limit: int | None
    ) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        while True:
            page = operation(**kwargs)
            items.extend(page.get("Items", []))
            if limit and len(items) >= limit:
                return items[:limit]
            if "LastEvaluatedKey" not in page:
                return items
            kwargs["ExclusiveStartKey"] = page["LastEvaluatedKey"]
