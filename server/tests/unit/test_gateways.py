"""Unit tests for the gateway adapters against mocked provider APIs."""

import base64
import json
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from urllib.parse import parse_qs

import httpx
import pytest

from tour_payments.core.config import MPESA_SANDBOX_URL, PESAPAL_SANDBOX_URL, STRIPE_API_URL
from tour_payments.core.exceptions import (
    GatewayAuthError,
    GatewayRejectedError,
    GatewayTimeoutError,
    GatewayUnavailableError,
)
from tour_payments.gateways import (
    GatewayOrder,
    MpesaGateway,
    NormalizedStatus,
    PesapalGateway,
    StripeCheckoutGateway,
)
from tour_payments.gateways.mpesa import (
    normalize_msisdn,
    parse_stk_callback,
    stk_password,
    stk_timestamp,
)
from tour_payments.gateways.pesapal import normalize_pesapal_status
from tour_payments.gateways.stripe import from_minor_units, to_minor_units

PESAPAL_TOKEN_URL = f"{PESAPAL_SANDBOX_URL}/api/Auth/RequestToken"
PESAPAL_SUBMIT_URL = f"{PESAPAL_SANDBOX_URL}/api/Transactions/SubmitOrderRequest"
PESAPAL_STATUS_URL = f"{PESAPAL_SANDBOX_URL}/api/Transactions/GetTransactionStatus"
PESAPAL_IPN_URL = f"{PESAPAL_SANDBOX_URL}/api/URLSetup/RegisterIPN"
MPESA_OAUTH_URL = f"{MPESA_SANDBOX_URL}/oauth/v1/generate"
MPESA_STK_URL = f"{MPESA_SANDBOX_URL}/mpesa/stkpush/v1/processrequest"
MPESA_QUERY_URL = f"{MPESA_SANDBOX_URL}/mpesa/stkpushquery/v1/query"
STRIPE_SESSIONS_URL = f"{STRIPE_API_URL}/v1/checkout/sessions"


@pytest.fixture
def order():
    return GatewayOrder(
        merchant_reference="3f6c1a2e-0000-4000-8000-000000000001",
        amount=Decimal("2000.00"),
        currency="KES",
        description="Payment for Maasai Mara Safari",
        customer_name="Jane Wanjiru Kamau",
        customer_email="jane@example.com",
        customer_phone="0712345678",
        payer_msisdn="254712345678",
    )


# PesaPal

@pytest.mark.parametrize("description,status_code,expected", [
    ("Completed", 1, NormalizedStatus.COMPLETED),
    ("FAILED", 2, NormalizedStatus.FAILED),
    ("Invalid", 0, NormalizedStatus.FAILED),
    ("Reversed", 3, NormalizedStatus.REVERSED),
    ("Pending", 0, NormalizedStatus.PENDING),
    (None, 0, NormalizedStatus.PENDING),
    (None, 1, NormalizedStatus.COMPLETED),
    ("", "2", NormalizedStatus.FAILED),
    (None, None, NormalizedStatus.PENDING),
])
def test_normalize_pesapal_status(description, status_code, expected):
    assert normalize_pesapal_status(description, status_code) == expected


@pytest.mark.asyncio
async def test_pesapal_authenticate(pesapal_config, gateway_mock):
    route = gateway_mock.post(PESAPAL_TOKEN_URL).mock(
        return_value=httpx.Response(200, json={"token": "pp-token", "status": "200", "error": None})
    )

    token = await PesapalGateway(pesapal_config).authenticate()

    assert token == "pp-token"
    body = json.loads(route.calls.last.request.content)
    assert body == {"consumer_key": "pesapal-key", "consumer_secret": "pesapal-secret"}


@pytest.mark.asyncio
async def test_pesapal_authenticate_without_token(pesapal_config, gateway_mock):
    gateway_mock.post(PESAPAL_TOKEN_URL).mock(
        return_value=httpx.Response(200, json={"token": None, "error": {"code": "invalid_consumer_key_or_secret_provided"}})
    )

    with pytest.raises(GatewayAuthError) as exc_info:
        await PesapalGateway(pesapal_config).authenticate()

    assert exc_info.value.problem_details["retryable"] is False


@pytest.mark.asyncio
async def test_pesapal_authenticate_http_error(pesapal_config, gateway_mock):
    gateway_mock.post(PESAPAL_TOKEN_URL).mock(return_value=httpx.Response(401, text="Unauthorized"))

    with pytest.raises(GatewayAuthError) as exc_info:
        await PesapalGateway(pesapal_config).authenticate()

    assert exc_info.value.provider_status == 401
    # Raw provider text stays server-side
    assert "Unauthorized" not in json.dumps(exc_info.value.problem_details)


@pytest.mark.asyncio
async def test_pesapal_missing_credentials_never_calls_out(pesapal_config, gateway_mock):
    route = gateway_mock.post(PESAPAL_TOKEN_URL)
    gateway = PesapalGateway(replace(pesapal_config, consumer_key=None))

    with pytest.raises(GatewayAuthError):
        await gateway.authenticate()

    assert not route.called


@pytest.mark.asyncio
async def test_pesapal_prepare_uses_configured_ipn(pesapal_config, gateway_mock):
    route = gateway_mock.post(PESAPAL_IPN_URL)

    assert await PesapalGateway(pesapal_config).prepare("pp-token") == "ipn-registered"
    assert not route.called


@pytest.mark.asyncio
async def test_pesapal_prepare_registers_ipn(pesapal_config, gateway_mock):
    route = gateway_mock.post(PESAPAL_IPN_URL).mock(
        return_value=httpx.Response(200, json={"ipn_id": "ipn-new", "url": pesapal_config.ipn_url})
    )
    gateway = PesapalGateway(replace(pesapal_config, ipn_id=None))

    assert await gateway.prepare("pp-token") == "ipn-new"
    body = json.loads(route.calls.last.request.content)
    assert body == {"url": pesapal_config.ipn_url, "ipn_notification_type": "POST"}


@pytest.mark.asyncio
async def test_pesapal_prepare_failure_is_not_fatal(pesapal_config, gateway_mock):
    gateway_mock.post(PESAPAL_IPN_URL).mock(return_value=httpx.Response(500, text="oops"))
    gateway = PesapalGateway(replace(pesapal_config, ipn_id=None))

    assert await gateway.prepare("pp-token") is None


@pytest.mark.asyncio
async def test_pesapal_submit(pesapal_config, gateway_mock, order):
    route = gateway_mock.post(PESAPAL_SUBMIT_URL).mock(
        return_value=httpx.Response(200, json={
            "order_tracking_id": "b945e4af-80a5-4ec1-8706-e03f8332fb04",
            "merchant_reference": order.merchant_reference,
            "redirect_url": "https://cybqa.pesapal.com/pesapaliframe/PesapalIframe3/Index?OrderTrackingId=b945e4af",
            "error": None,
            "status": "200",
        })
    )

    result = await PesapalGateway(pesapal_config).submit(order, "pp-token", "ipn-registered")

    assert result.tracking_id == "b945e4af-80a5-4ec1-8706-e03f8332fb04"
    assert result.redirect_url.startswith("https://")

    request = route.calls.last.request
    assert request.headers["Authorization"] == "Bearer pp-token"
    body = json.loads(request.content)
    assert body["id"] == order.merchant_reference
    assert body["amount"] == 2000.0
    assert body["currency"] == "KES"
    assert body["notification_id"] == "ipn-registered"
    assert body["callback_url"] == pesapal_config.callback_url
    assert body["billing_address"]["first_name"] == "Jane"
    assert body["billing_address"]["last_name"] == "Wanjiru Kamau"


@pytest.mark.asyncio
async def test_pesapal_submit_error_body_is_rejected(pesapal_config, gateway_mock, order):
    gateway_mock.post(PESAPAL_SUBMIT_URL).mock(
        return_value=httpx.Response(200, json={
            "error": {"error_type": "api_error", "code": "invalid_currency", "message": "Currency not supported"},
            "status": "500",
        })
    )

    with pytest.raises(GatewayRejectedError) as exc_info:
        await PesapalGateway(pesapal_config).submit(order, "pp-token")

    assert "Currency not supported" in exc_info.value.internal_detail
    assert exc_info.value.problem_details["retryable"] is False


@pytest.mark.asyncio
async def test_pesapal_submit_server_error_is_retryable(pesapal_config, gateway_mock, order):
    gateway_mock.post(PESAPAL_SUBMIT_URL).mock(return_value=httpx.Response(503, text="maintenance"))

    with pytest.raises(GatewayUnavailableError) as exc_info:
        await PesapalGateway(pesapal_config).submit(order, "pp-token")

    assert exc_info.value.status_code == 502
    assert exc_info.value.problem_details["retryable"] is True


@pytest.mark.asyncio
async def test_pesapal_submit_timeout(pesapal_config, gateway_mock, order):
    gateway_mock.post(PESAPAL_SUBMIT_URL).mock(side_effect=httpx.ReadTimeout("timed out"))

    with pytest.raises(GatewayTimeoutError) as exc_info:
        await PesapalGateway(pesapal_config).submit(order, "pp-token")

    assert exc_info.value.status_code == 504


@pytest.mark.asyncio
async def test_pesapal_verify_status(pesapal_config, gateway_mock):
    route = gateway_mock.get(url__startswith=PESAPAL_STATUS_URL).mock(
        return_value=httpx.Response(200, json={
            "payment_method": "Visa",
            "amount": 2000.0,
            "confirmation_code": "6513008693186320103009",
            "payment_status_description": "Completed",
            "status_code": 1,
            "merchant_reference": "booking-1",
            "currency": "KES",
            "error": {"error_type": None, "code": None, "message": None},
            "status": "200",
        })
    )

    result = await PesapalGateway(pesapal_config).verify_status("trk-1", "pp-token")

    assert result.status == NormalizedStatus.COMPLETED
    assert result.provider_status == "COMPLETED"
    assert result.amount == Decimal("2000")
    assert result.merchant_reference == "booking-1"
    assert result.confirmation_code == "6513008693186320103009"
    assert route.calls.last.request.url.params["orderTrackingId"] == "trk-1"


@pytest.mark.asyncio
async def test_pesapal_verify_authenticates_when_no_token(pesapal_config, gateway_mock):
    token_route = gateway_mock.post(PESAPAL_TOKEN_URL).mock(
        return_value=httpx.Response(200, json={"token": "pp-token"})
    )
    gateway_mock.get(url__startswith=PESAPAL_STATUS_URL).mock(
        return_value=httpx.Response(200, json={"status_code": 0, "payment_status_description": None})
    )

    result = await PesapalGateway(pesapal_config).verify_status("trk-1")

    assert token_route.called
    assert result.status == NormalizedStatus.PENDING


# M-Pesa

@pytest.mark.parametrize("phone,expected", [
    ("0712345678", "254712345678"),
    ("+254712345678", "254712345678"),
    ("254712345678", "254712345678"),
    ("712345678", "254712345678"),
    ("0712 345 678", "254712345678"),
    ("0112-345-678", "254112345678"),
])
def test_normalize_msisdn(phone, expected):
    assert normalize_msisdn(phone) == expected


@pytest.mark.parametrize("phone", ["", "12345", "+447911123456", "0812345678", "25471234567"])
def test_normalize_msisdn_rejects(phone):
    with pytest.raises(ValueError):
        normalize_msisdn(phone)


def test_stk_password_and_timestamp():
    timestamp = stk_timestamp(datetime(2025, 8, 2, 9, 30, 0, tzinfo=timezone.utc))

    # Daraja expects East Africa Time
    assert timestamp == "20250802123000"
    password = stk_password("174379", "mpesa-passkey", timestamp)
    assert base64.b64decode(password).decode() == "174379mpesa-passkey20250802123000"


def test_parse_stk_callback(stk_callback):
    callback = parse_stk_callback(stk_callback("ws_CO_1", amount=2000))

    assert callback.checkout_request_id == "ws_CO_1"
    assert callback.status == NormalizedStatus.COMPLETED
    assert callback.amount == Decimal("2000")
    assert callback.receipt_number == "QK12ABC345"
    assert callback.phone_number == "254712345678"


def test_parse_failed_stk_callback(stk_callback):
    callback = parse_stk_callback(stk_callback("ws_CO_1", result_code=1032))

    assert callback.status == NormalizedStatus.FAILED
    assert callback.amount is None


@pytest.mark.parametrize("payload", [{}, {"Body": {}}, {"Body": {"stkCallback": {"ResultCode": "x"}}}])
def test_parse_stk_callback_rejects_malformed(payload):
    with pytest.raises(ValueError):
        parse_stk_callback(payload)


@pytest.mark.asyncio
async def test_mpesa_authenticate(mpesa_config, gateway_mock):
    route = gateway_mock.get(url__startswith=MPESA_OAUTH_URL).mock(
        return_value=httpx.Response(200, json={"access_token": "mp-token", "expires_in": "3599"})
    )

    assert await MpesaGateway(mpesa_config).authenticate() == "mp-token"

    request = route.calls.last.request
    expected = base64.b64encode(b"mpesa-key:mpesa-secret").decode()
    assert request.headers["Authorization"] == f"Basic {expected}"
    assert request.url.params["grant_type"] == "client_credentials"


@pytest.mark.asyncio
async def test_mpesa_authenticate_requires_passkey(mpesa_config):
    with pytest.raises(GatewayAuthError):
        await MpesaGateway(replace(mpesa_config, passkey=None)).authenticate()


@pytest.mark.asyncio
async def test_mpesa_stk_push(mpesa_config, gateway_mock, order):
    route = gateway_mock.post(MPESA_STK_URL).mock(
        return_value=httpx.Response(200, json={
            "MerchantRequestID": "29115-34620561-1",
            "CheckoutRequestID": "ws_CO_191220191020363925",
            "ResponseCode": "0",
            "ResponseDescription": "Success. Request accepted for processing",
            "CustomerMessage": "Success. Request accepted for processing",
        })
    )

    result = await MpesaGateway(mpesa_config).submit(order, "mp-token")

    assert result.tracking_id == "ws_CO_191220191020363925"
    assert result.provider_request_id == "ws_CO_191220191020363925"
    assert result.secondary_reference == "29115-34620561-1"
    assert result.redirect_url is None

    body = json.loads(route.calls.last.request.content)
    assert body["Amount"] == 2000
    assert body["PartyA"] == "254712345678"
    assert body["PhoneNumber"] == "254712345678"
    assert body["PartyB"] == "174379"
    assert body["AccountReference"] == order.merchant_reference
    assert len(body["TransactionDesc"]) <= 13
    assert body["CallBackURL"] == mpesa_config.callback_url
    assert body["TransactionType"] == "CustomerPayBillOnline"


@pytest.mark.asyncio
async def test_mpesa_stk_push_rejected(mpesa_config, gateway_mock, order):
    gateway_mock.post(MPESA_STK_URL).mock(
        return_value=httpx.Response(200, json={"ResponseCode": "1", "ResponseDescription": "Rejected"})
    )

    with pytest.raises(GatewayRejectedError):
        await MpesaGateway(mpesa_config).submit(order, "mp-token")


@pytest.mark.asyncio
async def test_mpesa_rejects_fractional_amount(mpesa_config, gateway_mock, order):
    route = gateway_mock.post(MPESA_STK_URL)

    with pytest.raises(GatewayRejectedError):
        await MpesaGateway(mpesa_config).submit(replace(order, amount=Decimal("2000.50")), "mp-token")

    assert not route.called


@pytest.mark.asyncio
async def test_mpesa_query_still_processing(mpesa_config, gateway_mock):
    gateway_mock.post(MPESA_QUERY_URL).mock(
        return_value=httpx.Response(500, json={
            "requestId": "1234-5678",
            "errorCode": "500.001.1001",
            "errorMessage": "The transaction is being processed",
        })
    )

    result = await MpesaGateway(mpesa_config).verify_status("ws_CO_1", "mp-token")

    assert result.status == NormalizedStatus.PENDING
    assert result.provider_status == "PROCESSING"


@pytest.mark.asyncio
async def test_mpesa_query_server_error(mpesa_config, gateway_mock):
    gateway_mock.post(MPESA_QUERY_URL).mock(
        return_value=httpx.Response(500, json={"errorCode": "500.003.02", "errorMessage": "System busy"})
    )

    with pytest.raises(GatewayUnavailableError):
        await MpesaGateway(mpesa_config).verify_status("ws_CO_1", "mp-token")


@pytest.mark.asyncio
@pytest.mark.parametrize("result_code,expected", [
    ("0", NormalizedStatus.COMPLETED),
    ("1032", NormalizedStatus.FAILED),
    ("1", NormalizedStatus.FAILED),
])
async def test_mpesa_query_result(mpesa_config, gateway_mock, result_code, expected):
    route = gateway_mock.post(MPESA_QUERY_URL).mock(
        return_value=httpx.Response(200, json={
            "ResponseCode": "0",
            "MerchantRequestID": "29115-34620561-1",
            "CheckoutRequestID": "ws_CO_1",
            "ResultCode": result_code,
            "ResultDesc": "done",
        })
    )

    result = await MpesaGateway(mpesa_config).verify_status("ws_CO_1", "mp-token")

    assert result.status == expected
    assert json.loads(route.calls.last.request.content)["CheckoutRequestID"] == "ws_CO_1"


# Stripe

def test_minor_units():
    assert to_minor_units(Decimal("12.34"), "USD") == 1234
    assert to_minor_units(Decimal("2000.00"), "KES") == 200000
    assert to_minor_units(Decimal("500"), "jpy") == 500
    assert from_minor_units(1234, "USD") == Decimal("12.34")
    assert from_minor_units(500, "JPY") == Decimal("500")
    assert from_minor_units(None, "USD") is None


@pytest.mark.asyncio
async def test_stripe_requires_secret_key(stripe_config):
    with pytest.raises(GatewayAuthError):
        await StripeCheckoutGateway(replace(stripe_config, secret_key=None)).authenticate()


@pytest.mark.asyncio
async def test_stripe_create_checkout_session(stripe_config, gateway_mock, order):
    route = gateway_mock.post(STRIPE_SESSIONS_URL).mock(
        return_value=httpx.Response(200, json={
            "id": "cs_test_a1",
            "object": "checkout.session",
            "url": "https://checkout.stripe.com/c/pay/cs_test_a1",
            "status": "open",
            "payment_status": "unpaid",
            "amount_total": 200000,
            "currency": "kes",
            "payment_intent": None,
        })
    )
    gateway = StripeCheckoutGateway(stripe_config)

    result = await gateway.submit(order, await gateway.authenticate())

    assert result.tracking_id == "cs_test_a1"
    assert result.redirect_url == "https://checkout.stripe.com/c/pay/cs_test_a1"

    request = route.calls.last.request
    assert request.headers["Authorization"] == "Bearer sk_test_123"
    form = {key: values[0] for key, values in parse_qs(request.content.decode()).items()}
    assert form["client_reference_id"] == order.merchant_reference
    assert form["metadata[booking_id]"] == order.merchant_reference
    assert form["line_items[0][price_data][unit_amount]"] == "200000"
    assert form["line_items[0][price_data][currency]"] == "kes"
    assert form["mode"] == "payment"


@pytest.mark.asyncio
async def test_stripe_card_error_is_rejected(stripe_config, gateway_mock, order):
    gateway_mock.post(STRIPE_SESSIONS_URL).mock(
        return_value=httpx.Response(400, json={"error": {"type": "invalid_request_error", "message": "bad"}})
    )

    with pytest.raises(GatewayRejectedError):
        await StripeCheckoutGateway(stripe_config).submit(order, "sk_test_123")


@pytest.mark.asyncio
@pytest.mark.parametrize("session,expected", [
    ({"status": "complete", "payment_status": "paid"}, NormalizedStatus.COMPLETED),
    ({"status": "open", "payment_status": "unpaid"}, NormalizedStatus.PENDING),
    ({"status": "expired", "payment_status": "unpaid"}, NormalizedStatus.FAILED),
])
async def test_stripe_verify_session(stripe_config, gateway_mock, session, expected):
    gateway_mock.get(f"{STRIPE_SESSIONS_URL}/cs_test_a1").mock(
        return_value=httpx.Response(200, json={
            "id": "cs_test_a1",
            "amount_total": 200000,
            "currency": "kes",
            "client_reference_id": "booking-1",
            "payment_intent": "pi_123",
            **session,
        })
    )

    result = await StripeCheckoutGateway(stripe_config).verify_status("cs_test_a1")

    assert result.status == expected
    assert result.amount == Decimal("2000")
    assert result.currency == "KES"
    assert result.merchant_reference == "booking-1"
    assert result.confirmation_code == "pi_123"


@pytest.mark.asyncio
async def test_stripe_session_id_is_path_encoded(stripe_config, gateway_mock):
    # Session ids come from an unauthenticated return URL
    route = gateway_mock.get(url__startswith=STRIPE_SESSIONS_URL).mock(
        return_value=httpx.Response(200, json={"id": "x", "status": "open", "payment_status": "unpaid"})
    )

    await StripeCheckoutGateway(stripe_config).verify_status("cs_test/../customers?limit=1")

    assert route.calls.last.request.url.raw_path == b"/v1/checkout/sessions/cs_test%2F..%2Fcustomers%3Flimit%3D1"
