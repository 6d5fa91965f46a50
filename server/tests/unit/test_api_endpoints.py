"""Integration tests for API endpoints."""

from decimal import Decimal
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from sqlalchemy import func, select

from tour_payments.core.config import PESAPAL_SANDBOX_URL, STRIPE_API_URL, settings
from tour_payments.models import Booking, BookingStatus, PaymentMethod, PaymentStatus
from tour_payments.services.booking_store import BookingStore


def mock_pesapal(gateway_mock, tracking_id="trk-api-1", **status):
    gateway_mock.post(f"{PESAPAL_SANDBOX_URL}/api/Auth/RequestToken").mock(
        return_value=httpx.Response(200, json={"token": "pp-token"})
    )
    gateway_mock.post(f"{PESAPAL_SANDBOX_URL}/api/Transactions/SubmitOrderRequest").mock(
        return_value=httpx.Response(200, json={
            "order_tracking_id": tracking_id,
            "redirect_url": f"https://cybqa.pesapal.com/iframe?OrderTrackingId={tracking_id}",
            "error": None,
        })
    )
    return gateway_mock.get(
        url__startswith=f"{PESAPAL_SANDBOX_URL}/api/Transactions/GetTransactionStatus"
    ).mock(return_value=httpx.Response(200, json={
        "payment_status_description": "Completed",
        "status_code": 1,
        "amount": 2000,
        "currency": "KES",
        "confirmation_code": "CONF-API",
        **status,
    }))


async def count_bookings(session) -> int:
    result = await session.execute(select(func.count()).select_from(Booking))
    return result.scalar_one()


# Initiation

@pytest.mark.asyncio
async def test_initiate_requires_auth(test_client, initiate_payload):
    response = await test_client.post("/v1/payments/initiate", json=initiate_payload)

    assert response.status_code == 401
    data = response.json()
    assert data["status"] == 401
    assert response.headers["content-type"].startswith("application/problem+json")


@pytest.mark.asyncio
async def test_initiate_pesapal(test_client, test_session, auth_headers, initiate_payload, gateway_mock):
    mock_pesapal(gateway_mock)

    response = await test_client.post("/v1/payments/initiate", json=initiate_payload, headers=auth_headers)

    assert response.status_code == 201
    data = response.json()
    assert data["success"] is True
    assert data["payment_method"] == "pesapal"
    assert data["payment_status"] == "pending"
    assert data["tracking_id"] == "trk-api-1"
    assert data["redirect_url"].endswith("trk-api-1")
    assert Decimal(data["amount"]) == Decimal("2000.00")
    assert data["currency"] == "KES"
    assert data["rate_class"] == "citizen"

    booking = await BookingStore(test_session).get(data["booking_id"])
    assert booking.gateway_tracking_id == "trk-api-1"


@pytest.mark.asyncio
async def test_initiate_accepts_legacy_field_names(test_client, auth_headers, destination):
    payload = {
        "tour_id": destination.id,
        "participants": 1,
        "customer_name": "Jane Wanjiru",
        "customer_email": "jane@example.com",
        "customer_phone": "0712345678",
        "residency": "Resident",
        "payment_method": "bank_transfer",
    }

    response = await test_client.post("/v1/payments/initiate", json=payload, headers=auth_headers)

    assert response.status_code == 201
    data = response.json()
    assert data["rate_class"] == "resident"
    assert data["currency"] == "USD"
    assert data["bank_details"]["reference"].startswith("BANK-")


@pytest.mark.asyncio
async def test_initiate_requires_declared_amount_for_hosted_checkout(test_client, auth_headers, initiate_payload):
    payload = {k: v for k, v in initiate_payload.items() if k != "client_declared_amount"}

    response = await test_client.post("/v1/payments/initiate", json=payload, headers=auth_headers)

    assert response.status_code == 422
    data = response.json()
    assert data["status"] == 422
    assert "violations" in data


@pytest.mark.asyncio
async def test_initiate_amount_mismatch(test_client, test_session, auth_headers, initiate_payload, gateway_mock):
    mock_pesapal(gateway_mock)
    payload = {**initiate_payload, "client_declared_amount": "1999.00"}

    response = await test_client.post("/v1/payments/initiate", json=payload, headers=auth_headers)

    assert response.status_code == 422
    data = response.json()
    assert data["code"] == "AMOUNT_MISMATCH"
    assert data["detail"] == "Payment amount mismatch. Please refresh the page and try again."
    assert await count_bookings(test_session) == 0


@pytest.mark.asyncio
async def test_initiate_gateway_failure_is_generic(test_client, auth_headers, initiate_payload, gateway_mock):
    gateway_mock.post(f"{PESAPAL_SANDBOX_URL}/api/Auth/RequestToken").mock(
        return_value=httpx.Response(500, text="Internal error: db01 connection pool exhausted")
    )

    response = await test_client.post("/v1/payments/initiate", json=initiate_payload, headers=auth_headers)

    assert response.status_code == 502
    data = response.json()
    assert data["code"] == "GATEWAY_AUTH_FAILED"
    assert data["detail"] == "Payment could not be completed, please try again"
    assert "booking_id" in data
    assert "db01" not in response.text


@pytest.mark.asyncio
async def test_initiate_unknown_destination(test_client, auth_headers, initiate_payload):
    payload = {**initiate_payload, "destination_id": "nope", "payment_method": "bank_transfer"}

    response = await test_client.post("/v1/payments/initiate", json=payload, headers=auth_headers)

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_initiate_idempotent_replay(test_client, test_session, auth_headers, initiate_payload):
    payload = {**initiate_payload, "payment_method": "bank_transfer"}
    headers = {**auth_headers, "Idempotency-Key": "checkout-42"}

    first = await test_client.post("/v1/payments/initiate", json=payload, headers=headers)
    second = await test_client.post("/v1/payments/initiate", json=payload, headers=headers)

    assert first.status_code == 201
    assert second.status_code == 201
    assert second.headers["Idempotent-Replayed"] == "true"
    assert second.json()["booking_id"] == first.json()["booking_id"]
    assert await count_bookings(test_session) == 1


@pytest.mark.asyncio
async def test_idempotency_key_reused_with_different_body(test_client, auth_headers, initiate_payload):
    payload = {**initiate_payload, "payment_method": "bank_transfer"}
    headers = {**auth_headers, "Idempotency-Key": "checkout-43"}

    await test_client.post("/v1/payments/initiate", json=payload, headers=headers)
    response = await test_client.post(
        "/v1/payments/initiate", json={**payload, "participants": 3}, headers=headers
    )

    assert response.status_code == 422
    assert response.json()["code"] == "IDEMPOTENCY_KEY_MISMATCH"


@pytest.mark.asyncio
async def test_idempotency_keys_are_per_user(
    test_client, test_session, auth_headers, other_user_headers, initiate_payload
):
    payload = {**initiate_payload, "payment_method": "bank_transfer"}

    first = await test_client.post(
        "/v1/payments/initiate", json=payload, headers={**auth_headers, "Idempotency-Key": "shared"}
    )
    second = await test_client.post(
        "/v1/payments/initiate", json=payload, headers={**other_user_headers, "Idempotency-Key": "shared"}
    )

    assert first.json()["booking_id"] != second.json()["booking_id"]
    assert "Idempotent-Replayed" not in second.headers
    assert await count_bookings(test_session) == 2


@pytest.mark.asyncio
async def test_rejected_request_is_replayed(test_client, auth_headers, initiate_payload, gateway_mock):
    mock_pesapal(gateway_mock)
    payload = {**initiate_payload, "client_declared_amount": "1.00"}
    headers = {**auth_headers, "Idempotency-Key": "checkout-44"}

    first = await test_client.post("/v1/payments/initiate", json=payload, headers=headers)
    second = await test_client.post("/v1/payments/initiate", json=payload, headers=headers)

    assert first.status_code == 422
    assert second.status_code == 422
    assert second.headers["Idempotent-Replayed"] == "true"
    assert second.json()["code"] == "AMOUNT_MISMATCH"


# Status and bank details

@pytest.mark.asyncio
async def test_payment_status(test_client, auth_headers, other_user_headers, make_booking):
    booking = await make_booking(tracking_id="trk-1")

    response = await test_client.get(f"/v1/payments/{booking.id}/status", headers=auth_headers)

    assert response.status_code == 200
    data = response.json()
    assert data["booking_id"] == booking.id
    assert data["payment_status"] == "pending"
    assert data["status"] == "pending"
    assert data["tracking_id"] == "trk-1"
    assert data["review_required"] is False

    response = await test_client.get(f"/v1/payments/{booking.id}/status", headers=other_user_headers)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_bank_details(test_client):
    response = await test_client.get("/v1/payments/bank-details")

    assert response.status_code == 200
    data = response.json()
    assert data["bank_name"] == settings.bank_name
    assert data["account_number"] == settings.bank_account_number
    assert data["reference"] is None


# Callbacks

@pytest.mark.asyncio
async def test_mpesa_callback_confirms_booking(test_client, test_session, make_booking, stk_callback):
    booking = await make_booking(
        payment_method=PaymentMethod.MPESA, tracking_id="ws_CO_api", payer_msisdn="254712345678"
    )

    response = await test_client.post("/v1/callbacks/mpesa", json=stk_callback("ws_CO_api"))

    assert response.status_code == 200
    assert response.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}
    stored = await BookingStore(test_session).get(booking.id)
    assert stored.payment_status == PaymentStatus.PAID.value
    assert stored.status == BookingStatus.CONFIRMED.value


@pytest.mark.asyncio
async def test_mpesa_callback_always_acknowledges(test_client):
    for body in ({}, {"Body": {"stkCallback": {}}}, ["not", "an", "object"]):
        response = await test_client.post("/v1/callbacks/mpesa", json=body)
        assert response.status_code == 200
        assert response.json()["ResultCode"] == 0

    response = await test_client.post(
        "/v1/callbacks/mpesa", content=b"not json", headers={"Content-Type": "application/json"}
    )
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_pesapal_ipn_get(test_client, test_session, make_booking, gateway_mock):
    booking = await make_booking(tracking_id="trk-ipn")
    mock_pesapal(gateway_mock, merchant_reference=booking.id)

    response = await test_client.get(
        "/v1/callbacks/pesapal/ipn",
        params={
            "OrderTrackingId": "trk-ipn",
            "OrderMerchantReference": booking.id,
            "OrderNotificationType": "IPNCHANGE",
        },
    )

    assert response.status_code == 200
    assert response.json() == {
        "orderNotificationType": "IPNCHANGE",
        "orderTrackingId": "trk-ipn",
        "orderMerchantReference": booking.id,
        "status": 200,
    }
    stored = await BookingStore(test_session).get(booking.id)
    assert stored.payment_status == PaymentStatus.PAID.value


@pytest.mark.asyncio
async def test_pesapal_ipn_post(test_client, test_session, make_booking, gateway_mock):
    booking = await make_booking(tracking_id="trk-ipn")
    mock_pesapal(gateway_mock, merchant_reference=booking.id)

    response = await test_client.post(
        "/v1/callbacks/pesapal/ipn",
        json={
            "OrderTrackingId": "trk-ipn",
            "OrderMerchantReference": booking.id,
            "OrderNotificationType": "IPNCHANGE",
        },
    )

    assert response.status_code == 200
    assert response.json()["status"] == 200
    stored = await BookingStore(test_session).get(booking.id)
    assert stored.status == BookingStatus.CONFIRMED.value


@pytest.mark.asyncio
async def test_pesapal_ipn_reports_verification_failure(test_client, make_booking, gateway_mock):
    booking = await make_booking(tracking_id="trk-ipn")
    gateway_mock.post(f"{PESAPAL_SANDBOX_URL}/api/Auth/RequestToken").mock(
        return_value=httpx.Response(503, text="down")
    )

    response = await test_client.get(
        "/v1/callbacks/pesapal/ipn",
        params={"OrderTrackingId": "trk-ipn", "OrderMerchantReference": booking.id},
    )

    assert response.status_code == 200
    assert response.json()["status"] == 500


@pytest.mark.asyncio
async def test_pesapal_return_redirects_to_site(test_client, make_booking, gateway_mock):
    booking = await make_booking(tracking_id="trk-ret")
    mock_pesapal(gateway_mock, merchant_reference=booking.id)

    response = await test_client.get(
        "/v1/callbacks/pesapal/return",
        params={"OrderTrackingId": "trk-ret", "OrderMerchantReference": booking.id},
    )

    assert response.status_code == 303
    location = urlparse(response.headers["location"])
    assert location.path == "/booking-success"
    query = parse_qs(location.query)
    assert query["bookingId"] == [booking.id]
    assert query["trackingId"] == ["trk-ret"]


@pytest.mark.asyncio
async def test_pesapal_return_redirects_even_when_verification_fails(test_client, make_booking, gateway_mock):
    booking = await make_booking(tracking_id="trk-ret")
    gateway_mock.post(f"{PESAPAL_SANDBOX_URL}/api/Auth/RequestToken").mock(
        side_effect=httpx.ConnectError("refused")
    )

    response = await test_client.get(
        "/v1/callbacks/pesapal/return",
        params={"OrderTrackingId": "trk-ret", "OrderMerchantReference": booking.id},
    )

    assert response.status_code == 303
    assert booking.id in response.headers["location"]


@pytest.mark.asyncio
async def test_card_webhook(test_client, test_session, make_booking, gateway_mock):
    booking = await make_booking(payment_method=PaymentMethod.CARD, tracking_id="cs_test_hook")
    gateway_mock.get(f"{STRIPE_API_URL}/v1/checkout/sessions/cs_test_hook").mock(
        return_value=httpx.Response(200, json={
            "id": "cs_test_hook",
            "status": "complete",
            "payment_status": "paid",
            "amount_total": 200000,
            "currency": "kes",
            "client_reference_id": booking.id,
        })
    )
    event = {
        "id": "evt_1",
        "type": "checkout.session.completed",
        # The event claims more than was paid; only the retrieved session counts
        "data": {"object": {"id": "cs_test_hook", "client_reference_id": booking.id, "amount_total": 1}},
    }

    response = await test_client.post("/v1/callbacks/card", json=event)

    assert response.status_code == 200
    assert response.json() == {"received": True}
    stored = await BookingStore(test_session).get(booking.id)
    assert stored.payment_status == PaymentStatus.PAID.value


@pytest.mark.asyncio
async def test_card_webhook_ignores_other_events(test_client, gateway_mock):
    response = await test_client.post(
        "/v1/callbacks/card",
        json={"id": "evt_2", "type": "charge.refunded", "data": {"object": {"id": "ch_1"}}},
    )

    assert response.status_code == 200
    assert response.json() == {"received": True}
    assert len(gateway_mock.calls) == 0


@pytest.mark.asyncio
async def test_card_return_redirects(test_client, make_booking, gateway_mock):
    booking = await make_booking(payment_method=PaymentMethod.CARD, tracking_id="cs_test_ret")
    gateway_mock.get(f"{STRIPE_API_URL}/v1/checkout/sessions/cs_test_ret").mock(
        return_value=httpx.Response(200, json={
            "id": "cs_test_ret",
            "status": "open",
            "payment_status": "unpaid",
            "client_reference_id": booking.id,
        })
    )

    response = await test_client.get("/v1/callbacks/card/return", params={"session_id": "cs_test_ret"})

    assert response.status_code == 303
    query = parse_qs(urlparse(response.headers["location"]).query)
    assert query["bookingId"] == [booking.id]
    assert query["trackingId"] == ["cs_test_ret"]


# Admin

@pytest.mark.asyncio
async def test_admin_endpoints_require_admin_role(test_client, auth_headers, make_booking):
    booking = await make_booking(payment_method=PaymentMethod.BANK_TRANSFER, tracking_id="BANK-1")

    response = await test_client.post(
        f"/v1/admin/bookings/{booking.id}/confirm-bank-transfer",
        json={"reference": "FT1"},
        headers=auth_headers,
    )
    assert response.status_code == 403

    response = await test_client.post(f"/v1/admin/bookings/{booking.id}/verify")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_admin_confirm_bank_transfer(test_client, test_session, admin_headers, make_booking):
    booking = await make_booking(payment_method=PaymentMethod.BANK_TRANSFER, tracking_id="BANK-1")

    response = await test_client.post(
        f"/v1/admin/bookings/{booking.id}/confirm-bank-transfer",
        json={"reference": "FT2508021234"},
        headers=admin_headers,
    )

    assert response.status_code == 200
    data = response.json()
    assert data["outcome"] == "applied"
    assert data["payment_status"] == "paid"
    assert data["booking_status"] == "confirmed"


@pytest.mark.asyncio
async def test_admin_verify_booking(test_client, admin_headers, make_booking, gateway_mock):
    booking = await make_booking()
    mock_pesapal(gateway_mock, merchant_reference=booking.id)

    response = await test_client.post(
        f"/v1/admin/bookings/{booking.id}/verify",
        json={"tracking_id": "trk-recovered"},
        headers=admin_headers,
    )

    assert response.status_code == 200
    data = response.json()
    assert data["outcome"] == "applied"
    assert data["tracking_id"] == "trk-recovered"


@pytest.mark.asyncio
async def test_admin_verify_bank_transfer_is_rejected(test_client, admin_headers, make_booking):
    booking = await make_booking(payment_method=PaymentMethod.BANK_TRANSFER, tracking_id="BANK-1")

    response = await test_client.post(f"/v1/admin/bookings/{booking.id}/verify", headers=admin_headers)

    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_openapi_documents_problem_responses(test_client):
    response = await test_client.get("/openapi.json")

    assert response.status_code == 200
    document = response.json()
    assert "Problem" in document["components"]["schemas"]
    initiate = document["paths"]["/v1/payments/initiate"]["post"]
    assert "502" in initiate["responses"]
    assert "application/problem+json" in initiate["responses"]["502"]["content"]
