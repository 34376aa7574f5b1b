"""M-Pesa schemas - Request/Response DTOs for Daraja operations."""

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field

from mpesa_recon.models.transaction import SapSyncStatus, TransactionStatus

# =============================================================================
# Initiation
# =============================================================================


class StkPushRequest(BaseModel):
    """STK Push initiation request.

    Bounds are checked by PaymentService so violations share the service
    error envelope.
    """

    amount: Decimal
    phone_number: str
    account_reference: str
    transaction_desc: str
    callback_url: str | None = None


class StkPushResponse(BaseModel):
    success: bool = True
    message: str = "STK push initiated successfully"
    transaction_id: int
    checkout_request_id: str
    merchant_request_id: str | None = None
    response_description: str | None = None
    customer_message: str | None = None


class B2CRequest(BaseModel):
    """Business-to-customer payout request."""

    amount: Decimal
    phone_number: str
    remarks: str
    occasion: str | None = None


class B2CResponse(BaseModel):
    success: bool = True
    message: str = "B2C payment initiated successfully"
    transaction_id: int
    conversation_id: str
    originator_conversation_id: str | None = None
    response_description: str | None = None


class StkQueryRequest(BaseModel):
    checkout_request_id: str = Field(min_length=1)


class StkQueryResponse(BaseModel):
    success: bool = True
    result: dict[str, Any]


# =============================================================================
# Callbacks
# =============================================================================


class CallbackAck(BaseModel):
    """Acknowledgment body returned to Daraja.

    ResultCode 0 tells the gateway the callback was accepted; 1 that it was
    rejected. Both are returned with HTTP 200 so the gateway stops resending.
    """

    ResultCode: int
    ResultDesc: str


class TransactionStatusResponse(BaseModel):
    """Stored status of an STK Push, looked up by checkout id."""

    success: bool = True
    transaction_id: int
    checkout_request_id: str | None
    status: TransactionStatus
    amount: Decimal
    phone_number: str
    mpesa_receipt: str | None = None
    result_code: int | None = None
    result_desc: str | None = None
    transaction_date: datetime | None = None
    sap_sync_status: SapSyncStatus
    created_at: datetime
