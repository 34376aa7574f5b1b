"""Ledger Sync Service - Posts successful payments to SAP as journal entries."""

import logging
from datetime import date
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from mpesa_recon.core.config import Settings, get_settings
from mpesa_recon.core.exceptions import (
    AlreadySyncedError,
    InvalidStateError,
    LedgerError,
)
from mpesa_recon.gateways.sap import SapClient
from mpesa_recon.models.audit_log import AuditAction
from mpesa_recon.models.transaction import SapSyncStatus, Transaction, TransactionStatus
from mpesa_recon.schemas.sap import SapSyncResponse
from mpesa_recon.services.transaction_store import TransactionStore
from mpesa_recon.utils.helpers import local_date, utcnow

logger = logging.getLogger(__name__)


class LedgerSyncService:
    """Service for SAP journal entries.

    Each successful payment becomes one balanced two-line document: debit
    the cash account, credit the revenue account, both for the full amount.
    DocumentReferenceID carries the M-Pesa receipt, which is what
    reconciliation matches on.
    """

    def __init__(self, db: AsyncSession, sap: SapClient, settings: Settings | None = None):
        self.db = db
        self.sap = sap
        self.settings = settings or get_settings()
        self.store = TransactionStore(db, timezone=self.settings.timezone)

    def build_document(
        self,
        transaction: Transaction,
        company_code: str | None = None,
        document_type: str | None = None,
        posting_date: date | None = None,
    ) -> dict[str, Any]:
        """Build the accounting document for a transaction.

        Args:
            transaction: SUCCESS transaction with a receipt
            company_code: Defaults to settings.sap_company_code
            document_type: Defaults to settings.sap_document_type
            posting_date: Defaults to the local business day the payment was
                made, so reconciliation of that day finds the document

        Returns:
            Document body for API_ACCOUNTINGDOCUMENT
        """
        business_day = local_date(transaction.created_at, self.settings.timezone)
        posting = (posting_date or business_day).isoformat()
        amount = str(transaction.amount)
        assignment = transaction.account_reference or transaction.phone_number

        def line(account: str, debit_credit: str) -> dict[str, Any]:
            return {
                "Account": account,
                "AmountInTransactionCurrency": amount,
                "DebitCreditCode": debit_credit,
                "BusinessArea": self.settings.sap_business_area,
                "CostCenter": self.settings.sap_cost_center,
                "Assignment": assignment,
            }

        return {
            "CompanyCode": company_code or self.settings.sap_company_code,
            "DocumentType": document_type or self.settings.sap_document_type,
            "PostingDate": posting,
            "DocumentDate": posting,
            "Currency": self.settings.sap_currency,
            "DocumentReferenceID": transaction.mpesa_receipt,
            "DocumentHeaderText": f"M-Pesa Payment - {transaction.mpesa_receipt}",
            "items": [
                line(self.settings.sap_cash_account, "S"),  # Debit
                line(self.settings.sap_revenue_account, "H"),  # Credit
            ],
        }

    async def sync_transaction(
        self,
        transaction_id: int,
        company_code: str | None = None,
        document_type: str | None = None,
        posting_date: date | None = None,
        performed_by: str = "system",
    ) -> SapSyncResponse:
        """Post a transaction to SAP.

        Preconditions are checked in order: the row exists, it is SUCCESS,
        and it is not yet SYNCED. None of them call SAP.

        Raises:
            TransactionNotFound: No such transaction
            InvalidStateError: Transaction is not SUCCESS
            AlreadySyncedError: Transaction already posted
            LedgerError: SAP rejected the document or could not be reached.
                The row is left SUCCESS with sap_sync_status FAILED.
        """
        transaction = await self.store.get_by_id(transaction_id)
        if transaction.status != TransactionStatus.SUCCESS:
            raise InvalidStateError(
                "Only successful transactions can be synced",
                {"transaction_id": transaction_id, "status": transaction.status.value},
            )
        if transaction.sap_sync_status == SapSyncStatus.SYNCED:
            raise AlreadySyncedError(transaction_id, transaction.sap_reference)

        document = self.build_document(transaction, company_code, document_type, posting_date)
        result = await self.sap.create_accounting_document(document)

        if not result.ok:
            error = result.detail or "SAP document creation failed"
            await self.store.update(
                transaction_id,
                {
                    "sap_sync_status": SapSyncStatus.FAILED,
                    "error_message": error,
                    "retry_count": transaction.retry_count + 1,
                },
                action=AuditAction.SAP_SYNC_FAILED,
                description=f"SAP sync failed: {error}",
                performed_by=performed_by,
            )
            await self.db.commit()
            logger.error(f"SAP sync failed for transaction {transaction_id}: {error}")
            raise LedgerError(
                error,
                kind=result.kind.value if result.kind else None,
                details={"transaction_id": transaction_id, "status_code": result.status_code},
            )

        sap_reference = str(result.value["documentId"])
        await self.store.update(
            transaction_id,
            {
                "sap_reference": sap_reference,
                "sap_sync_status": SapSyncStatus.SYNCED,
                "sap_sync_date": utcnow(),
                "error_message": None,
            },
            action=AuditAction.SAP_SYNCED,
            description=f"Posted to SAP as {sap_reference}",
            performed_by=performed_by,
        )
        await self.db.commit()

        logger.info(f"Transaction {transaction_id} synced to SAP: {sap_reference}")
        return SapSyncResponse(
            transaction_id=transaction_id,
            sap_reference=sap_reference,
            mpesa_receipt=transaction.mpesa_receipt,
        )

    async def get_retry_candidates(self, max_retries: int | None = None) -> list[int]:
        """Ids of SUCCESS transactions whose last sync failed, under the retry cap."""
        limit = self.settings.sap_max_sync_retries if max_retries is None else max_retries
        result = await self.db.execute(
            select(Transaction.id)
            .where(Transaction.status == TransactionStatus.SUCCESS)
            .where(Transaction.sap_sync_status == SapSyncStatus.FAILED)
            .where(Transaction.retry_count < limit)
            .order_by(Transaction.created_at)
        )
        return list(result.scalars().all())
