"""Pytest configuration and fixtures for the rental payments backend tests.

This module provides reusable fixtures for testing:
- DynamoDB tables mocked with moto
- Seed helpers for bookings, profiles, roles and payments
- A MagicMock StripeService for service-level tests
- A FastAPI TestClient and Stripe signature helper for contract tests
"""

import hashlib
import hmac
import os
import time
from decimal import Decimal
from typing import Any, Callable, Generator
from unittest.mock import MagicMock, patch

import boto3
import pytest
from moto import mock_aws

# === Environment Setup ===

# Set environment variables for testing before imports
os.environ.setdefault("AWS_DEFAULT_REGION", "eu-west-1")
os.environ.setdefault("DYNAMODB_TABLE_PREFIX", "test-rentals")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret_for_testing")
os.environ.setdefault("RATE_LIMIT_BACKEND", "memory")
os.environ.setdefault("SES_FROM_EMAIL", "bookings@example.com")

# Only set fake credentials for moto if no real credentials are present
if not os.environ.get("AWS_PROFILE") and not os.environ.get("AWS_ACCESS_KEY_ID"):
    os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")

from rental_core.services.bookings import BookingRepository  # noqa: E402
from rental_core.services.dynamodb import DynamoDBService  # noqa: E402
from rental_core.services.stripe_service import StripeService  # noqa: E402

TABLE_PREFIX = os.environ["DYNAMODB_TABLE_PREFIX"]

TEST_USER_ID = "user-123"
TEST_STAFF_ID = "staff-456"
TEST_ADMIN_ID = "admin-789"
TEST_BOOKING_ID = "BK-TEST01"


def _gsi(name: str, hash_key: str, range_key: str | None = None) -> dict[str, Any]:
    key_schema = [{"AttributeName": hash_key, "KeyType": "HASH"}]
    if range_key:
        key_schema.append({"AttributeName": range_key, "KeyType": "RANGE"})
    return {
        "IndexName": name,
        "KeySchema": key_schema,
        "Projection": {"ProjectionType": "ALL"},
    }


# Table name -> (hash key, extra string attributes, GSIs)
TABLE_DEFINITIONS: dict[str, tuple[str, list[str], list[dict[str, Any]]]] = {
    "bookings": (
        "booking_id",
        ["stripe_deposit_pi_id"],
        [_gsi("deposit-pi-index", "stripe_deposit_pi_id")],
    ),
    "payments": (
        "payment_id",
        ["booking_id", "transaction_id"],
        [_gsi("booking-index", "booking_id"), _gsi("transaction-index", "transaction_id")],
    ),
    "deposit-ledger": ("entry_id", ["booking_id"], [_gsi("booking-index", "booking_id")]),
    "deposit-jobs": (
        "job_id",
        ["status", "created_at"],
        [_gsi("status-index", "status", "created_at")],
    ),
    "stripe-webhook-events": ("event_id", [], []),
    "rate-limits": ("rate_key", [], []),
    "audit-logs": ("log_id", [], []),
    "profiles": ("user_id", [], []),
    "user-roles": ("user_id", [], []),
    "admin-alerts": ("alert_id", ["booking_id"], [_gsi("booking-index", "booking_id")]),
    "notification-outbox": (
        "notification_id",
        ["status", "created_at"],
        [_gsi("status-index", "status", "created_at")],
    ),
}


def create_all_tables(client: Any) -> None:
    """Create every table with its GSIs."""
    for name, (hash_key, attributes, indexes) in TABLE_DEFINITIONS.items():
        definition: dict[str, Any] = {
            "TableName": f"{TABLE_PREFIX}-{name}",
            "KeySchema": [{"AttributeName": hash_key, "KeyType": "HASH"}],
            "AttributeDefinitions": [
                {"AttributeName": attr, "AttributeType": "S"}
                for attr in [hash_key, *attributes]
            ],
            "BillingMode": "PAY_PER_REQUEST",
        }
        if indexes:
            definition["GlobalSecondaryIndexes"] = indexes
        client.create_table(**definition)


# === Singleton resets ===


@pytest.fixture(autouse=True)
def reset_singletons() -> Generator[None, None, None]:
    """Reset cached services before and after each test.

    Tests using mock_aws then get fresh boto3 resources inside the mock
    context rather than a singleton from a previous test.
    """
    from rental_api.dependencies import reset_services
    from rental_core.services.ssm_service import get_ssm_service

    reset_services()
    get_ssm_service.cache_clear()
    yield
    reset_services()
    get_ssm_service.cache_clear()


# === DynamoDB Fixtures ===


@pytest.fixture
def aws_tables() -> Generator[Any, None, None]:
    """moto-backed DynamoDB with every table created."""
    with mock_aws():
        client = boto3.client("dynamodb", region_name="eu-west-1")
        create_all_tables(client)
        yield boto3.resource("dynamodb", region_name="eu-west-1")


@pytest.fixture
def db(aws_tables: Any) -> DynamoDBService:
    return DynamoDBService()


@pytest.fixture
def repository(db: DynamoDBService) -> BookingRepository:
    return BookingRepository(db)


# === Stripe ===


@pytest.fixture
def mock_stripe() -> MagicMock:
    """StripeService stand-in. Every call returns a MagicMock unless configured."""
    stripe_service = MagicMock(spec=StripeService)
    stripe_service.currency = "cad"
    stripe_service.find_or_create_customer.return_value = "cus_test123"
    stripe_service.get_card_details.return_value = {
        "brand": "visa",
        "last4": "4242",
        "holder": "Jane Driver",
    }
    stripe_service.list_charges.return_value = []
    return stripe_service


# === Seed helpers ===


@pytest.fixture
def seed_booking(db: DynamoDBService) -> Callable[..., dict[str, Any]]:
    """Insert a booking; keyword arguments override the defaults."""

    def _seed(**overrides: Any) -> dict[str, Any]:
        item: dict[str, Any] = {
            "booking_id": TEST_BOOKING_ID,
            "booking_code": "RC-1001",
            "user_id": TEST_USER_ID,
            "status": "pending",
            "total_amount": Decimal("300.00"),
            "deposit_amount": Decimal("350.00"),
            "deposit_status": "none",
            "location_id": "YVR-01",
            "created_at": "2026-10-01T10:00:00+00:00",
        }
        item.update(overrides)
        item = {k: v for k, v in item.items() if v is not None}
        db.put_item("bookings", item)
        return item

    return _seed


@pytest.fixture
def seed_payment(db: DynamoDBService) -> Callable[..., dict[str, Any]]:
    """Insert a payment row."""
    counter = {"n": 0}

    def _seed(**overrides: Any) -> dict[str, Any]:
        counter["n"] += 1
        item: dict[str, Any] = {
            "payment_id": f"PAY-SEED{counter['n']:04d}",
            "booking_id": TEST_BOOKING_ID,
            "user_id": TEST_USER_ID,
            "amount": Decimal("100.00"),
            "payment_type": "rental",
            "payment_method": "card",
            "status": "completed",
            "transaction_id": f"pi_seed_{counter['n']}",
            "created_at": f"2026-10-0{counter['n'] % 9 + 1}T12:00:00+00:00",
        }
        item.update(overrides)
        db.put_item("payments", item)
        return item

    return _seed


@pytest.fixture
def seed_profile(db: DynamoDBService) -> Callable[..., dict[str, Any]]:
    def _seed(user_id: str = TEST_USER_ID, **overrides: Any) -> dict[str, Any]:
        item: dict[str, Any] = {
            "user_id": user_id,
            "email": "jane@example.com",
            "full_name": "Jane Driver",
            "phone": "+16045550100",
        }
        item.update(overrides)
        db.put_item("profiles", item)
        return item

    return _seed


@pytest.fixture
def seed_roles(db: DynamoDBService) -> Callable[[str, list[str]], None]:
    def _seed(user_id: str, roles: list[str]) -> None:
        db.put_item("user-roles", {"user_id": user_id, "roles": set(roles)})

    return _seed


def scan_table(db: DynamoDBService, table: str) -> list[dict[str, Any]]:
    """All items in a table (tests only)."""
    return db.scan(table)


# === API client ===

TEST_WEBHOOK_SECRET = "whsec_test_secret_for_testing"


@pytest.fixture
def api_client(aws_tables: Any, mock_stripe: MagicMock) -> Generator[Any, None, None]:
    """TestClient for the FastAPI app with Stripe replaced by ``mock_stripe``.

    Webhook signatures are still checked for real against
    STRIPE_WEBHOOK_SECRET.
    """
    from fastapi.testclient import TestClient

    from rental_api.main import app

    mock_stripe.verify_webhook_signature.side_effect = StripeService().verify_webhook_signature
    with patch("rental_api.dependencies.get_stripe_service", return_value=mock_stripe):
        with TestClient(app) as client:
            yield client


def auth_headers(user_id: str = TEST_USER_ID) -> dict[str, str]:
    return {"x-user-sub": user_id}


def sign_stripe_payload(
    payload: bytes, secret: str = TEST_WEBHOOK_SECRET, timestamp: int | None = None
) -> str:
    """Build a Stripe-Signature header: t={timestamp},v1={hmac_sha256}."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed_payload = f"{timestamp}.{payload.decode('utf-8')}"
    signature = hmac.new(
        secret.encode("utf-8"), signed_payload.encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={signature}"
