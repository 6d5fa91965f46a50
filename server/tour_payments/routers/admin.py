"""Administrative payment operations."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..core.database import get_db
from ..core.dependencies import AdminAuth, CurrentUser, Gateways
from ..gateways.registry import GatewayRegistry
from ..schemas.common import problem_responses
from ..schemas.payment import (
    ConfirmBankTransferRequest,
    ReconciliationResponse,
    VerifyBookingRequest,
)
from ..services.reconciliation_service import CallbackReconciler, ReconciliationResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/admin", tags=["admin"])

DB_DEPENDENCY = Depends(get_db)


def _convert_result_to_schema(result: ReconciliationResult) -> ReconciliationResponse:
    return ReconciliationResponse(
        outcome=result.outcome.value,
        booking_id=result.booking_id,
        tracking_id=result.tracking_id,
        payment_status=result.payment_status,
        booking_status=result.booking_status,
    )


@router.post(
    "/bookings/{booking_id}/verify",
    response_model=ReconciliationResponse,
    responses=problem_responses(400, 401, 403, 404, 409, 502, 503, 504),
)
async def verify_booking(
    booking_id: str,
    request: VerifyBookingRequest | None = None,
    db: AsyncSession = DB_DEPENDENCY,
    admin: CurrentUser = AdminAuth,
    gateways: GatewayRegistry = Gateways
) -> ReconciliationResponse:
    """
    Ask the booking's gateway for its current status and apply it.

    A tracking id recovered out of band (for example after a submission
    timeout) can be supplied for bookings that have none.
    """
    logger.info(
        "Manual booking verification requested",
        extra={"booking_id": booking_id, "admin_id": admin.user_id}
    )
    reconciler = CallbackReconciler(db, gateways, settings)
    result = await reconciler.verify_booking(booking_id, request.tracking_id if request else None)
    return _convert_result_to_schema(result)


@router.post(
    "/bookings/{booking_id}/confirm-bank-transfer",
    response_model=ReconciliationResponse,
    responses=problem_responses(400, 401, 403, 404),
)
async def confirm_bank_transfer(
    booking_id: str,
    request: ConfirmBankTransferRequest,
    db: AsyncSession = DB_DEPENDENCY,
    admin: CurrentUser = AdminAuth,
    gateways: GatewayRegistry = Gateways
) -> ReconciliationResponse:
    """Mark a bank transfer booking as paid once the money has arrived."""
    logger.info(
        "Bank transfer confirmation requested",
        extra={"booking_id": booking_id, "admin_id": admin.user_id, "reference": request.reference}
    )
    reconciler = CallbackReconciler(db, gateways, settings)
    result = await reconciler.confirm_bank_transfer(booking_id, request.reference, admin)
    return _convert_result_to_schema(result)
