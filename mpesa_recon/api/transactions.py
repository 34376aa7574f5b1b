"""M-Pesa Reconciliation Service - Transaction listing, reports and reconciliation."""

import csv
import io
from datetime import date
from typing import Annotated

from fastapi import APIRouter, Query, Response

from mpesa_recon.api.deps import LedgerSync, Reconciliation, Store
from mpesa_recon.core.config import get_settings
from mpesa_recon.core.exceptions import ValidationError
from mpesa_recon.models.transaction import TransactionStatus, TransactionType
from mpesa_recon.schemas.reconciliation import ReconciliationReport, ReconciliationRequest
from mpesa_recon.schemas.sap import SapSyncResponse
from mpesa_recon.schemas.transaction import (
    TransactionDetailResponse,
    TransactionFilters,
    TransactionListResponse,
    TransactionResponse,
    TransactionStats,
)
from mpesa_recon.utils.helpers import format_utc_datetime, local_day_bounds, local_today

router = APIRouter(prefix="/transactions", tags=["Transactions"])

EXPORT_LIMIT = 10000
EXPORT_COLUMNS = [
    "ID",
    "Checkout Request ID",
    "Amount",
    "Phone",
    "Status",
    "MPesa Receipt",
    "SAP Reference",
    "Created At",
]


def _build_filters(
    status: TransactionStatus | None,
    transaction_type: TransactionType | None,
    phone_number: str | None,
    start_date: date | None,
    end_date: date | None,
) -> TransactionFilters:
    """Turn query parameters into store filters.

    Dates are local calendar days; start_date covers from its first
    millisecond and end_date through its last.
    """
    if start_date and end_date and start_date > end_date:
        raise ValidationError("start_date must not be after end_date")
    tz = get_settings().timezone
    return TransactionFilters(
        status=status,
        transaction_type=transaction_type,
        phone_number=phone_number,
        start_date=local_day_bounds(start_date, tz)[0] if start_date else None,
        end_date=local_day_bounds(end_date, tz)[1] if end_date else None,
    )


@router.get("", response_model=TransactionListResponse)
async def list_transactions(
    store: Store,
    status: TransactionStatus | None = None,
    transaction_type: TransactionType | None = None,
    phone_number: str | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=100)] = 20,
) -> TransactionListResponse:
    """List transactions, newest first."""
    filters = _build_filters(status, transaction_type, phone_number, start_date, end_date)
    result = await store.list_transactions(filters, page=page, page_size=page_size)
    return TransactionListResponse(
        items=[TransactionResponse.model_validate(t) for t in result.items],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
        total_pages=result.total_pages,
    )


@router.get("/stats", response_model=TransactionStats)
async def transaction_stats(
    store: Store,
    start_date: date | None = None,
    end_date: date | None = None,
) -> TransactionStats:
    """Dashboard statistics, optionally limited to a date range."""
    filters = _build_filters(None, None, None, start_date, end_date)
    return await store.get_stats(filters.start_date, filters.end_date)


@router.get("/export")
async def export_transactions(
    store: Store,
    status: TransactionStatus | None = None,
    transaction_type: TransactionType | None = None,
    phone_number: str | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
) -> Response:
    """Download matching transactions as CSV."""
    filters = _build_filters(status, transaction_type, phone_number, start_date, end_date)
    transactions = await store.find_transactions(filters, limit=EXPORT_LIMIT)

    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(EXPORT_COLUMNS)
    for t in transactions:
        writer.writerow(
            [
                t.id,
                t.checkout_request_id or "",
                str(t.amount),
                t.phone_number,
                t.status.value,
                t.mpesa_receipt or "",
                t.sap_reference or "",
                format_utc_datetime(t.created_at),
            ]
        )

    filename = f"transactions-{local_today(get_settings().timezone).isoformat()}.csv"
    return Response(
        content=buffer.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/reconciliation", response_model=ReconciliationReport)
async def daily_reconciliation(
    service: Reconciliation,
    day: Annotated[date | None, Query(alias="date")] = None,
) -> ReconciliationReport:
    """Reconcile a day against the SAP ledger (defaults to today)."""
    return await service.reconcile(day or local_today(get_settings().timezone))


@router.post("/reconciliation", response_model=ReconciliationReport)
async def reconcile_with_ledger(
    data: ReconciliationRequest,
    service: Reconciliation,
) -> ReconciliationReport:
    """Reconcile a day against ledger entries supplied in the request."""
    return await service.reconcile(data.date, ledger_entries=data.ledger_entries)


@router.get("/checkout/{checkout_request_id}", response_model=TransactionDetailResponse)
async def get_by_checkout_id(checkout_request_id: str, store: Store) -> TransactionDetailResponse:
    transaction = await store.get_by_checkout_id(checkout_request_id)
    return TransactionDetailResponse.model_validate(transaction)


@router.get("/{transaction_id}", response_model=TransactionDetailResponse)
async def get_transaction(transaction_id: int, store: Store) -> TransactionDetailResponse:
    transaction = await store.get_by_id(transaction_id)
    return TransactionDetailResponse.model_validate(transaction)


@router.post("/{transaction_id}/sap-sync", response_model=SapSyncResponse)
async def retry_sap_sync(transaction_id: int, service: LedgerSync) -> SapSyncResponse:
    """Post (or re-post after a failure) a transaction to SAP."""
    return await service.sync_transaction(transaction_id, performed_by="api")
