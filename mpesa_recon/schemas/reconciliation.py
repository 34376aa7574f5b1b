"""Reconciliation schemas - ledger entries, discrepancies and daily reports."""

import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field

from mpesa_recon.schemas.transaction import TransactionResponse


class DiscrepancyType(str, Enum):
    MISSING = "MISSING"
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"


class MissingFrom(str, Enum):
    """Which side lacks the entry."""

    LEDGER = "LEDGER"
    MPESA = "MPESA"


class LedgerStatus(str, Enum):
    """Where the ledger side of a report came from."""

    PROVIDED = "PROVIDED"  # Supplied by the caller
    FETCHED = "FETCHED"  # Queried from SAP
    UNAVAILABLE = "UNAVAILABLE"  # SAP could not be queried


class LedgerEntry(BaseModel):
    """One ledger-side record, keyed by the M-Pesa receipt."""

    reference: str = Field(min_length=1)
    amount: Decimal


class Discrepancy(BaseModel):
    type: DiscrepancyType
    reference: str
    description: str | None = None

    # MISSING
    missing_from: MissingFrom | None = None
    amount: Decimal | None = None

    # AMOUNT_MISMATCH
    sap_amount: Decimal | None = None
    mpesa_amount: Decimal | None = None
    difference: Decimal | None = None


class ReconciliationRequest(BaseModel):
    """Reconcile a day against a caller-supplied ledger."""

    date: datetime.date
    ledger_entries: list[LedgerEntry] = Field(default_factory=list)


class ReconciliationReport(BaseModel):
    date: datetime.date
    ledger_status: LedgerStatus
    ledger_error: str | None = None
    total_transactions: int
    total_amount: Decimal
    by_type: dict[str, int] = Field(default_factory=dict)
    discrepancies: list[Discrepancy] = Field(default_factory=list)
    transactions: list[TransactionResponse] = Field(default_factory=list)
