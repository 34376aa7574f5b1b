"""SAP schemas - Ledger sync requests and results."""

from datetime import date

from pydantic import BaseModel


class SapSyncRequest(BaseModel):
    """Ledger sync with optional document overrides.

    Unset fields fall back to the configured company code and document type,
    and to the local date the payment was made.
    """

    transaction_id: int
    company_code: str | None = None
    document_type: str | None = None
    posting_date: date | None = None


class SapSyncResponse(BaseModel):
    success: bool = True
    message: str = "Transaction synced with SAP successfully"
    transaction_id: int
    sap_reference: str
    mpesa_receipt: str | None = None


class SapHealthResponse(BaseModel):
    success: bool
    status: str
    message: str
