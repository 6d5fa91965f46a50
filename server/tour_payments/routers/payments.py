"""Payment router: initiation, status and bank transfer details."""

import logging
from typing import Any, Awaitable, Callable, Optional

from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..core.database import get_db
from ..core.dependencies import CurrentUser, Gateways, RequiredAuth
from ..core.exceptions import ProblemDetailsException
from ..gateways.registry import GatewayRegistry
from ..schemas.common import problem_responses
from ..schemas.payment import (
    BankDetails,
    InitiatePaymentRequest,
    InitiatePaymentResponse,
    PaymentStatusResponse,
)
from ..services.idempotency_service import IdempotencyService
from ..services.payment_service import InitiationResult, PaymentInitiationService, bank_details

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/payments", tags=["payments"])

# Define dependencies to avoid B008 linting errors
DB_DEPENDENCY = Depends(get_db)
IDEMPOTENCY_KEY_DEPENDENCY = Header(None, alias="Idempotency-Key")


def _convert_result_to_schema(result: InitiationResult) -> InitiatePaymentResponse:
    """Convert an initiation result to the response schema."""
    return InitiatePaymentResponse(
        success=result.success,
        booking_id=result.booking_id,
        payment_method=result.payment_method,
        amount=result.quote.total_amount,
        currency=result.quote.currency,
        rate_class=result.quote.rate_class.value,
        rate_class_fallback=result.quote.fallback_applied,
        tracking_id=result.tracking_id,
        redirect_url=result.redirect_url,
        provider_request_id=result.provider_request_id,
        bank_details=result.bank_details,
    )


async def _handle_idempotent_operation(
    method: str,
    idempotency_key: str,
    request_body: dict[str, Any],
    operation_func: Callable[[], Awaitable[dict[str, Any]]],
    db: AsyncSession
) -> JSONResponse:
    """
    Replay a stored response for a reused key, or run and store the operation.

    Retryable failures are not stored so that the client can retry with the
    same key once the gateway recovers.
    """
    idempotency_service = IdempotencyService(db)

    cached_response = await idempotency_service.check_idempotency(
        idempotency_key=idempotency_key,
        method=method,
        request_body=request_body
    )
    if cached_response:
        status_code, response_body = cached_response
        return JSONResponse(
            status_code=status_code,
            content=response_body,
            headers={"Idempotent-Replayed": "true"},
            media_type="application/problem+json" if status_code >= 400 else None
        )

    try:
        response_dict = await operation_func()
    except ProblemDetailsException as e:
        if not e.problem_details.get("retryable", False):
            await idempotency_service.store_response(
                idempotency_key=idempotency_key,
                method=method,
                request_body=request_body,
                status_code=e.status_code,
                response_body=e.problem_details,
                ttl_hours=settings.idempotency_ttl_hours
            )
        raise

    await idempotency_service.store_response(
        idempotency_key=idempotency_key,
        method=method,
        request_body=request_body,
        status_code=201,
        response_body=response_dict,
        ttl_hours=settings.idempotency_ttl_hours
    )
    return JSONResponse(status_code=201, content=response_dict)


@router.post(
    "/initiate",
    response_model=InitiatePaymentResponse,
    status_code=201,
    responses=problem_responses(400, 401, 404, 409, 422, 502, 503, 504),
)
async def initiate_payment(
    request: InitiatePaymentRequest,
    db: AsyncSession = DB_DEPENDENCY,
    user: CurrentUser = RequiredAuth,
    gateways: GatewayRegistry = Gateways,
    idempotency_key: Optional[str] = IDEMPOTENCY_KEY_DEPENDENCY
) -> JSONResponse:
    """
    Create a pending booking and start payment with the selected gateway.

    Card and PesaPal answers carry a redirect URL, M-Pesa answers the STK
    push request id and bank transfer answers the account details. A reused
    Idempotency-Key with the same body replays the first response.
    """
    service = PaymentInitiationService(db, gateways, settings)

    async def operation() -> dict[str, Any]:
        result = await service.initiate(request, request.payment_method, user)
        return _convert_result_to_schema(result).model_dump(mode="json")

    if idempotency_key:
        return await _handle_idempotent_operation(
            method=f"initiate_payment:{user.user_id}",
            idempotency_key=idempotency_key,
            request_body=request.model_dump(mode="json"),
            operation_func=operation,
            db=db
        )

    return JSONResponse(status_code=201, content=await operation())


@router.get("/bank-details", response_model=BankDetails)
async def get_bank_details(gateways: GatewayRegistry = Gateways) -> BankDetails:
    """Account details customers use to pay by bank transfer."""
    return bank_details(gateways.bank or settings.bank_config())


@router.get("/{booking_id}/status", response_model=PaymentStatusResponse, responses=problem_responses(401, 404))
async def get_payment_status(
    booking_id: str,
    db: AsyncSession = DB_DEPENDENCY,
    user: CurrentUser = RequiredAuth,
    gateways: GatewayRegistry = Gateways
) -> PaymentStatusResponse:
    """Current payment and booking status for one of the caller's bookings."""
    service = PaymentInitiationService(db, gateways, settings)
    booking = await service.get_booking_for_user(booking_id, user)

    return PaymentStatusResponse(
        booking_id=booking.id,
        payment_method=booking.payment_method,
        payment_status=booking.payment_status,
        status=booking.status,
        total_amount=booking.total_amount,
        currency=booking.currency,
        tracking_id=booking.gateway_tracking_id,
        review_required=booking.review_reason is not None,
        updated_at=booking.updated_at,
    )
