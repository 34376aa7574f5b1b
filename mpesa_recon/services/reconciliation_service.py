"""Reconciliation Service - Daily M-Pesa totals matched against the SAP ledger."""

import logging
from collections import Counter
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from mpesa_recon.core.config import Settings, get_settings
from mpesa_recon.gateways.sap import SapClient
from mpesa_recon.models.transaction import Transaction, TransactionStatus
from mpesa_recon.schemas.reconciliation import (
    Discrepancy,
    DiscrepancyType,
    LedgerEntry,
    LedgerStatus,
    MissingFrom,
    ReconciliationReport,
)
from mpesa_recon.schemas.transaction import TransactionFilters, TransactionResponse
from mpesa_recon.services.transaction_store import TransactionStore
from mpesa_recon.utils.helpers import local_day_bounds

logger = logging.getLogger(__name__)

# Differences at or below one cent are rounding, not discrepancies
AMOUNT_TOLERANCE = Decimal("0.01")


def find_discrepancies(
    ledger: list[LedgerEntry], mpesa: list[LedgerEntry]
) -> list[Discrepancy]:
    """Compare ledger and M-Pesa entries by reference.

    Ledger entries are walked first (ledger-only -> MISSING from MPESA,
    amount off by more than 0.01 -> AMOUNT_MISMATCH), then M-Pesa entries
    (M-Pesa-only -> MISSING from LEDGER).

    Args:
        ledger: Entries from SAP (or supplied by the caller)
        mpesa: Successful M-Pesa transactions as entries

    Returns:
        Discrepancies in detection order
    """
    discrepancies: list[Discrepancy] = []
    mpesa_by_ref = {entry.reference: entry for entry in mpesa}
    ledger_refs = {entry.reference for entry in ledger}

    for entry in ledger:
        match = mpesa_by_ref.get(entry.reference)
        if match is None:
            discrepancies.append(
                Discrepancy(
                    type=DiscrepancyType.MISSING,
                    reference=entry.reference,
                    missing_from=MissingFrom.MPESA,
                    amount=entry.amount,
                    description="Transaction found in SAP but not in M-Pesa",
                )
            )
            continue

        difference = abs(entry.amount - match.amount)
        if difference > AMOUNT_TOLERANCE:
            discrepancies.append(
                Discrepancy(
                    type=DiscrepancyType.AMOUNT_MISMATCH,
                    reference=entry.reference,
                    sap_amount=entry.amount,
                    mpesa_amount=match.amount,
                    difference=difference,
                    description="Amount in SAP differs from M-Pesa",
                )
            )

    for entry in mpesa:
        if entry.reference not in ledger_refs:
            discrepancies.append(
                Discrepancy(
                    type=DiscrepancyType.MISSING,
                    reference=entry.reference,
                    missing_from=MissingFrom.LEDGER,
                    amount=entry.amount,
                    description="Transaction found in M-Pesa but not in SAP",
                )
            )

    return discrepancies


def ledger_entry_from_document(document: dict[str, Any]) -> LedgerEntry | None:
    """Map a SAP accounting document to a ledger entry.

    The reference is DocumentReferenceID (the M-Pesa receipt). The amount is
    the header amount when present, otherwise the sum of the debit lines.
    """
    reference = document.get("DocumentReferenceID")
    if not reference:
        return None
    amount = document.get("AmountInTransactionCurrency")
    try:
        if amount is None:
            items = document.get("items") or document.get("to_Item") or []
            if isinstance(items, dict):
                items = items.get("results", [])
            amount = sum(
                (
                    Decimal(str(item.get("AmountInTransactionCurrency", 0)))
                    for item in items
                    if item.get("DebitCreditCode") == "S"
                ),
                Decimal("0"),
            )
        return LedgerEntry(reference=str(reference), amount=Decimal(str(amount)))
    except (InvalidOperation, ValueError, AttributeError):
        logger.warning(f"Skipping SAP document with unreadable amount: {reference}")
        return None


class ReconciliationService:
    """Builds the daily reconciliation report. Read-only."""

    def __init__(
        self,
        db: AsyncSession,
        sap: SapClient | None = None,
        settings: Settings | None = None,
    ):
        self.db = db
        self.sap = sap
        self.settings = settings or get_settings()
        self.store = TransactionStore(db, timezone=self.settings.timezone)

    async def reconcile(
        self,
        day: date,
        ledger_entries: list[LedgerEntry] | None = None,
    ) -> ReconciliationReport:
        """Reconcile one local calendar day.

        Args:
            day: Date in the configured timezone
            ledger_entries: Ledger side; fetched from SAP when None

        Returns:
            ReconciliationReport. If SAP cannot be queried, ledger_status is
            UNAVAILABLE and every transaction is reported missing from the ledger.
        """
        start, end = local_day_bounds(day, self.settings.timezone)
        transactions = await self.store.query_by_date_range(
            start,
            end,
            TransactionFilters(status=TransactionStatus.SUCCESS),
            ascending=True,
        )

        total_amount = sum((t.amount for t in transactions), Decimal("0"))
        by_type = Counter(t.transaction_type.value for t in transactions)

        ledger_error = None
        if ledger_entries is not None:
            ledger_status = LedgerStatus.PROVIDED
            ledger = ledger_entries
        else:
            ledger, ledger_error = await self._fetch_ledger(day)
            ledger_status = LedgerStatus.UNAVAILABLE if ledger_error else LedgerStatus.FETCHED

        discrepancies = find_discrepancies(ledger, self._as_entries(transactions))

        logger.info(
            f"Reconciliation {day}: {len(transactions)} transactions totalling {total_amount}, "
            f"{len(discrepancies)} discrepancies (ledger {ledger_status.value})"
        )
        return ReconciliationReport(
            date=day,
            ledger_status=ledger_status,
            ledger_error=ledger_error,
            total_transactions=len(transactions),
            total_amount=total_amount,
            by_type=dict(by_type),
            discrepancies=discrepancies,
            transactions=[TransactionResponse.model_validate(t) for t in transactions],
        )

    @staticmethod
    def _as_entries(transactions: list[Transaction]) -> list[LedgerEntry]:
        # Successful rows always carry a receipt; the id fallback keeps
        # legacy rows visible instead of silently dropping them
        return [
            LedgerEntry(reference=t.mpesa_receipt or f"TXN-{t.id}", amount=t.amount)
            for t in transactions
        ]

    async def _fetch_ledger(self, day: date) -> tuple[list[LedgerEntry], str | None]:
        if self.sap is None or not self.sap.base_url:
            return [], "SAP is not configured"

        result = await self.sap.query_documents(
            self.settings.sap_company_code, self.settings.sap_document_type, day
        )
        if not result.ok:
            logger.error(f"SAP ledger query failed for {day}: {result.detail}")
            return [], result.detail or "SAP ledger query failed"

        entries = []
        for document in result.value.get("value", []):
            entry = ledger_entry_from_document(document)
            if entry is not None:
                entries.append(entry)
        return entries, None
