"""Request/response schemas."""

from mpesa_recon.schemas.mpesa import (
    B2CRequest,
    B2CResponse,
    CallbackAck,
    StkPushRequest,
    StkPushResponse,
    StkQueryRequest,
    StkQueryResponse,
    TransactionStatusResponse,
)
from mpesa_recon.schemas.reconciliation import (
    Discrepancy,
    DiscrepancyType,
    LedgerEntry,
    LedgerStatus,
    MissingFrom,
    ReconciliationReport,
    ReconciliationRequest,
)
from mpesa_recon.schemas.sap import SapHealthResponse, SapSyncRequest, SapSyncResponse
from mpesa_recon.schemas.transaction import (
    TransactionDetailResponse,
    TransactionDraft,
    TransactionFilters,
    TransactionListResponse,
    TransactionResponse,
    TransactionStats,
)

__all__ = [
    "B2CRequest",
    "B2CResponse",
    "CallbackAck",
    "Discrepancy",
    "DiscrepancyType",
    "LedgerEntry",
    "LedgerStatus",
    "MissingFrom",
    "ReconciliationReport",
    "ReconciliationRequest",
    "SapHealthResponse",
    "SapSyncRequest",
    "SapSyncResponse",
    "StkPushRequest",
    "StkPushResponse",
    "StkQueryRequest",
    "StkQueryResponse",
    "TransactionDetailResponse",
    "TransactionDraft",
    "TransactionFilters",
    "TransactionListResponse",
    "TransactionResponse",
    "TransactionStats",
    "TransactionStatusResponse",
]
