"""Gateway callback router: M-Pesa results, PesaPal IPN, Stripe webhooks and browser redirects.

These endpoints are called by payment providers and customer browsers, not by
our client. They never fail: every outcome, including internal errors, is
logged and acknowledged in the shape the provider expects.
"""

import logging
from typing import Any, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..core.database import get_db
from ..core.dependencies import Gateways
from ..core.exceptions import GatewayError
from ..core.observability import metrics_collector
from ..gateways.mpesa import parse_stk_callback
from ..gateways.registry import GatewayRegistry
from ..models.booking import PaymentMethod
from ..schemas.callback import CardWebhookAck, MpesaCallbackAck, PesapalIpnAck
from ..services.reconciliation_service import (
    CallbackReconciler,
    GatewayNotification,
    ReconciliationResult,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/callbacks", tags=["callbacks"])

DB_DEPENDENCY = Depends(get_db)


def _success_redirect(booking_id: Optional[str], tracking_id: Optional[str]) -> RedirectResponse:
    params = {
        key: value
        for key, value in (("bookingId", booking_id), ("trackingId", tracking_id))
        if value
    }
    url = f"{settings.site_base_url}/booking-success"
    if params:
        url = f"{url}?{urlencode(params)}"
    return RedirectResponse(url=url, status_code=303)


async def _json_body(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


async def _reconcile_quietly(
    reconciler: CallbackReconciler, notification: GatewayNotification
) -> Optional[ReconciliationResult]:
    """Reconcile for a browser redirect; the customer is redirected whatever happens."""
    try:
        return await reconciler.reconcile(notification)
    except Exception:
        logger.exception(
            "Reconciliation on redirect failed",
            extra={
                "provider": notification.provider.value,
                "tracking_id": notification.tracking_id,
            }
        )
        return None


@router.post("/mpesa", response_model=MpesaCallbackAck)
async def mpesa_callback(
    request: Request,
    db: AsyncSession = DB_DEPENDENCY,
    gateways: GatewayRegistry = Gateways
) -> JSONResponse:
    """
    STK push result posted by Safaricom.

    Always answers ResultCode 0 so that Safaricom stops retrying.
    """
    metrics_collector.record_callback(PaymentMethod.MPESA.value)
    body = await _json_body(request)

    try:
        callback = parse_stk_callback(body)
        notification = GatewayNotification.from_stk_callback(callback, raw=body)
        result = await CallbackReconciler(db, gateways, settings).reconcile(notification)
        logger.info(
            "M-Pesa callback processed",
            extra={
                "checkout_request_id": callback.checkout_request_id,
                "result_code": callback.result_code,
                "outcome": result.outcome.value,
                "booking_id": result.booking_id,
            }
        )
    except ValueError as e:
        logger.warning("Malformed M-Pesa callback", extra={"error": str(e)})
    except Exception:
        logger.exception("M-Pesa callback processing failed")

    return JSONResponse(status_code=200, content=MpesaCallbackAck().model_dump())


@router.api_route("/pesapal/ipn", methods=["GET", "POST"], response_model=PesapalIpnAck)
async def pesapal_ipn(
    request: Request,
    db: AsyncSession = DB_DEPENDENCY,
    gateways: GatewayRegistry = Gateways
) -> JSONResponse:
    """
    PesaPal instant payment notification.

    The notification only says that something changed; the status is always
    fetched from PesaPal before the booking is touched.
    """
    metrics_collector.record_callback(PaymentMethod.PESAPAL.value)
    params: dict[str, Any] = dict(request.query_params)
    if request.method == "POST":
        params = {**params, **await _json_body(request)}

    tracking_id = params.get("OrderTrackingId")
    merchant_reference = params.get("OrderMerchantReference")
    ack = PesapalIpnAck(
        order_notification_type=params.get("OrderNotificationType"),
        order_tracking_id=tracking_id,
        order_merchant_reference=merchant_reference,
    )

    try:
        result = await CallbackReconciler(db, gateways, settings).reconcile(
            GatewayNotification(
                provider=PaymentMethod.PESAPAL,
                tracking_id=tracking_id,
                merchant_reference=merchant_reference,
                raw=params,
            )
        )
        logger.info(
            "PesaPal IPN processed",
            extra={
                "order_tracking_id": tracking_id,
                "outcome": result.outcome.value,
                "booking_id": result.booking_id,
            }
        )
    except GatewayError as e:
        logger.error(
            "PesaPal IPN could not be verified",
            extra={"order_tracking_id": tracking_id, "error_code": e.code, "internal_detail": e.internal_detail}
        )
        ack.status = 500
    except Exception:
        logger.exception("PesaPal IPN processing failed", extra={"order_tracking_id": tracking_id})
        ack.status = 500

    return JSONResponse(status_code=200, content=ack.model_dump(by_alias=True))


@router.get("/pesapal/return")
async def pesapal_return(
    request: Request,
    db: AsyncSession = DB_DEPENDENCY,
    gateways: GatewayRegistry = Gateways
) -> RedirectResponse:
    """Browser redirect after the PesaPal checkout page; verifies, then sends the customer on."""
    metrics_collector.record_callback(PaymentMethod.PESAPAL.value)
    tracking_id = request.query_params.get("OrderTrackingId")
    merchant_reference = request.query_params.get("OrderMerchantReference")

    result = None
    if tracking_id:
        result = await _reconcile_quietly(
            CallbackReconciler(db, gateways, settings),
            GatewayNotification(
                provider=PaymentMethod.PESAPAL,
                tracking_id=tracking_id,
                merchant_reference=merchant_reference,
            ),
        )

    booking_id = (result.booking_id if result else None) or merchant_reference
    return _success_redirect(booking_id, tracking_id)


@router.get("/card/return")
async def card_return(
    request: Request,
    db: AsyncSession = DB_DEPENDENCY,
    gateways: GatewayRegistry = Gateways
) -> RedirectResponse:
    """Stripe Checkout success redirect."""
    metrics_collector.record_callback(PaymentMethod.CARD.value)
    session_id = request.query_params.get("session_id")

    result = None
    if session_id:
        result = await _reconcile_quietly(
            CallbackReconciler(db, gateways, settings),
            GatewayNotification(provider=PaymentMethod.CARD, tracking_id=session_id),
        )

    return _success_redirect(result.booking_id if result else None, session_id)


@router.post("/card", response_model=CardWebhookAck)
async def card_webhook(
    request: Request,
    db: AsyncSession = DB_DEPENDENCY,
    gateways: GatewayRegistry = Gateways
) -> JSONResponse:
    """
    Stripe webhook for Checkout session events.

    The event payload is never trusted; the session is retrieved from Stripe
    before anything is written.
    """
    metrics_collector.record_callback(PaymentMethod.CARD.value)
    event = await _json_body(request)
    event_type = str(event.get("type", ""))
    session = (event.get("data") or {}).get("object") or {}

    if not event_type.startswith("checkout.session.") or not isinstance(session, dict):
        logger.info("Ignoring card webhook event", extra={"event_type": event_type})
        return JSONResponse(status_code=200, content=CardWebhookAck().model_dump())

    try:
        result = await CallbackReconciler(db, gateways, settings).reconcile(
            GatewayNotification(
                provider=PaymentMethod.CARD,
                tracking_id=session.get("id"),
                merchant_reference=session.get("client_reference_id"),
                raw={"event_id": event.get("id"), "type": event_type},
            )
        )
        logger.info(
            "Card webhook processed",
            extra={
                "event_type": event_type,
                "session_id": session.get("id"),
                "outcome": result.outcome.value,
                "booking_id": result.booking_id,
            }
        )
    except Exception:
        logger.exception("Card webhook processing failed", extra={"event_type": event_type})

    return JSONResponse(status_code=200, content=CardWebhookAck().model_dump())
