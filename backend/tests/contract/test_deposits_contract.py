"""Contract tests for the deposit hold endpoints.

Test categories:
- POST /api/deposits/holds: owner or staff, 404 for other callers
- POST /api/deposits/{booking_id}/release: staff only, state guards
- POST /api/deposits/{booking_id}/sync: staff only
"""

import pytest
from starlette.status import (
    HTTP_200_OK,
    HTTP_401_UNAUTHORIZED,
    HTTP_403_FORBIDDEN,
    HTTP_404_NOT_FOUND,
    HTTP_409_CONFLICT,
)

from conftest import TEST_BOOKING_ID, TEST_STAFF_ID, auth_headers, scan_table

HOLDS_URL = "/api/deposits/holds"


@pytest.fixture(autouse=True)
def stripe_hold(mock_stripe):
    mock_stripe.create_payment_intent.return_value = {
        "id": "pi_hold_contract",
        "client_secret": "pi_hold_contract_secret",
        "status": "requires_payment_method",
        "amount": 35000,
    }
    return mock_stripe


@pytest.fixture
def staff(seed_roles):
    seed_roles(TEST_STAFF_ID, ["staff"])
    return auth_headers(TEST_STAFF_ID)


class TestCreateHold:
    def test_owner_creates_hold(self, api_client, mock_stripe, repository, seed_booking):
        seed_booking()

        response = api_client.post(
            HOLDS_URL, json={"bookingId": TEST_BOOKING_ID}, headers=auth_headers()
        )

        assert response.status_code == HTTP_200_OK
        body = response.json()
        assert body["paymentIntentId"] == "pi_hold_contract"
        assert body["clientSecret"] == "pi_hold_contract_secret"
        assert body["amountCents"] == 35000
        assert body["depositStatus"] == "requires_payment"
        assert body["alreadyAuthorized"] is False
        assert mock_stripe.create_payment_intent.call_args.kwargs["capture_method"] == "manual"

        booking = repository.get_booking(TEST_BOOKING_ID)
        assert booking.stripe_deposit_pi_id == "pi_hold_contract"

    def test_staff_can_hold_any_booking(self, api_client, staff, seed_booking):
        seed_booking(user_id="someone-else")

        response = api_client.post(HOLDS_URL, json={"bookingId": TEST_BOOKING_ID}, headers=staff)

        assert response.status_code == HTTP_200_OK

    def test_other_customer_gets_404(self, api_client, mock_stripe, seed_booking):
        seed_booking(user_id="someone-else")

        response = api_client.post(
            HOLDS_URL, json={"bookingId": TEST_BOOKING_ID}, headers=auth_headers()
        )

        assert response.status_code == HTTP_404_NOT_FOUND
        mock_stripe.create_payment_intent.assert_not_called()

    def test_unauthenticated_is_401(self, api_client):
        response = api_client.post(HOLDS_URL, json={"bookingId": TEST_BOOKING_ID})
        assert response.status_code == HTTP_401_UNAUTHORIZED

    def test_terminal_booking_is_409(self, api_client, seed_booking):
        seed_booking(status="completed")

        response = api_client.post(
            HOLDS_URL, json={"bookingId": TEST_BOOKING_ID}, headers=auth_headers()
        )

        assert response.status_code == HTTP_409_CONFLICT


class TestReleaseHold:
    def url(self) -> str:
        return f"/api/deposits/{TEST_BOOKING_ID}/release"

    def test_customer_is_forbidden(self, api_client, seed_booking):
        seed_booking(status="completed", deposit_status="authorized", stripe_deposit_pi_id="pi_h")

        response = api_client.post(self.url(), headers=auth_headers())

        assert response.status_code == HTTP_403_FORBIDDEN
        body = response.json()
        assert body["errorCode"] == "FORBIDDEN"
        assert body["details"] == {"requiredRole": "staff"}

    def test_staff_releases_completed_booking(self, api_client, staff, mock_stripe, db, seed_booking):
        seed_booking(status="completed", deposit_status="authorized", stripe_deposit_pi_id="pi_h")

        response = api_client.post(self.url(), headers=staff)

        assert response.status_code == HTTP_200_OK
        body = response.json()
        assert body["depositStatus"] == "released"
        assert body["alreadyReleased"] is False
        mock_stripe.cancel_payment_intent.assert_called_once()
        assert [e["action"] for e in scan_table(db, "deposit-ledger")] == ["release"]

    def test_active_booking_needs_bypass(self, api_client, staff, seed_booking):
        seed_booking(status="active", deposit_status="authorized", stripe_deposit_pi_id="pi_h")

        blocked = api_client.post(self.url(), headers=staff)
        bypassed = api_client.post(
            self.url(), json={"reason": "Damage cleared", "bypassStatusCheck": True}, headers=staff
        )

        assert blocked.status_code == HTTP_409_CONFLICT
        assert blocked.json()["errorCode"] == "INVALID_STATE_TRANSITION"
        assert bypassed.status_code == HTTP_200_OK

    def test_not_authorized_is_409(self, api_client, staff, seed_booking):
        seed_booking(status="completed", deposit_status="requires_payment", stripe_deposit_pi_id="pi_h")

        response = api_client.post(self.url(), headers=staff)

        assert response.status_code == HTTP_409_CONFLICT
        assert response.json()["errorCode"] == "DEPOSIT_NOT_AUTHORIZED"


class TestSyncHold:
    def url(self) -> str:
        return f"/api/deposits/{TEST_BOOKING_ID}/sync"

    def test_staff_syncs_from_stripe(self, api_client, staff, mock_stripe, seed_booking):
        seed_booking(deposit_status="requires_payment", stripe_deposit_pi_id="pi_h")
        mock_stripe.retrieve_payment_intent.return_value = {
            "id": "pi_h",
            "status": "requires_capture",
            "amount": 35000,
            "amount_received": 0,
            "payment_method": None,
            "latest_charge": None,
        }

        response = api_client.post(self.url(), headers=staff)

        assert response.status_code == HTTP_200_OK
        body = response.json()
        assert body["stripeStatus"] == "requires_capture"
        assert body["previousStatus"] == "requires_payment"
        assert body["depositStatus"] == "authorized"
        assert body["changed"] is True

    def test_no_hold_is_409(self, api_client, staff, seed_booking):
        seed_booking()

        response = api_client.post(self.url(), headers=staff)

        assert response.status_code == HTTP_409_CONFLICT
        assert response.json()["errorCode"] == "DEPOSIT_HOLD_MISSING"

    def test_unknown_booking_is_404(self, api_client, staff):
        response = api_client.post("/api/deposits/BK-NOPE/sync", headers=staff)
        assert response.status_code == HTTP_404_NOT_FOUND
