"""Acknowledgement bodies returned to payment gateways."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class MpesaCallbackAck(BaseModel):
    """Safaricom stops retrying once it receives ResultCode 0."""

    ResultCode: int = 0
    ResultDesc: str = "Accepted"


class PesapalIpnAck(BaseModel):
    """IPN acknowledgement; ``status`` is 500 only when verification could not run."""

    model_config = ConfigDict(populate_by_name=True)

    order_notification_type: Optional[str] = Field(None, alias="orderNotificationType")
    order_tracking_id: Optional[str] = Field(None, alias="orderTrackingId")
    order_merchant_reference: Optional[str] = Field(None, alias="orderMerchantReference")
    status: int = 200


class CardWebhookAck(BaseModel):
    received: bool = True
