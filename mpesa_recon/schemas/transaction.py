"""Transaction schemas - Request/Response DTOs for stored payments."""

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field

from mpesa_recon.models.transaction import SapSyncStatus, TransactionStatus, TransactionType


class TransactionDraft(BaseModel):
    """Fields supplied when a payment is first recorded."""

    amount: Decimal
    phone_number: str
    transaction_type: TransactionType
    account_reference: str | None = None
    checkout_request_id: str | None = None
    merchant_request_id: str | None = None
    conversation_id: str | None = None
    originator_conversation_id: str | None = None
    request_payload: dict[str, Any] | None = None
    response_payload: dict[str, Any] | None = None


class TransactionFilters(BaseModel):
    """Listing filters. phone_number matches as a substring."""

    status: TransactionStatus | None = None
    transaction_type: TransactionType | None = None
    phone_number: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None


class TransactionResponse(BaseModel):
    """Transaction response without raw payloads."""

    id: int
    checkout_request_id: str | None = None
    merchant_request_id: str | None = None
    conversation_id: str | None = None
    mpesa_receipt: str | None = None

    amount: Decimal
    phone_number: str
    account_reference: str | None = None
    transaction_type: TransactionType

    status: TransactionStatus
    result_code: int | None = None
    result_desc: str | None = None
    transaction_date: datetime | None = None

    sap_reference: str | None = None
    sap_sync_status: SapSyncStatus
    sap_sync_date: datetime | None = None
    retry_count: int = 0
    error_message: str | None = None

    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class TransactionDetailResponse(TransactionResponse):
    """Single transaction including raw gateway payloads."""

    request_payload: dict[str, Any] | None = None
    response_payload: dict[str, Any] | None = None
    callback_payload: dict[str, Any] | None = None


class TransactionListResponse(BaseModel):
    """Paginated transaction list response."""

    items: list[TransactionResponse]
    total: int
    page: int
    page_size: int
    total_pages: int


class StatusBreakdown(BaseModel):
    count: int
    total_amount: Decimal


class TransactionStats(BaseModel):
    """Dashboard statistics."""

    total_transactions: int
    total_amount: Decimal
    successful_transactions: int
    pending_transactions: int
    failed_transactions: int
    cancelled_transactions: int
    today_transactions: int
    by_status: dict[str, StatusBreakdown] = Field(default_factory=dict)
    by_sap_sync_status: dict[str, int] = Field(default_factory=dict)
