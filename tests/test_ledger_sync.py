"""
SAP ledger sync tests: document shape, preconditions and failure bookkeeping.
"""

import json
from datetime import date, datetime
from decimal import Decimal

import pytest

from mpesa_recon.core.exceptions import (
    AlreadySyncedError,
    InvalidStateError,
    LedgerError,
    TransactionNotFound,
)
from mpesa_recon.models.transaction import SapSyncStatus, TransactionStatus
from mpesa_recon.services.ledger_sync_service import LedgerSyncService
from mpesa_recon.services.transaction_store import TransactionStore

from .conftest import SAP_DOCUMENT_PATH, SAP_TOKEN_PATH


@pytest.fixture
def successful(db, make_transaction):
    async def _successful(amount: str = "1000", receipt: str = "QAX123"):
        transaction = await make_transaction(amount=amount)
        await TransactionStore(db).transition_from_pending(
            transaction.id, TransactionStatus.SUCCESS, {"mpesa_receipt": receipt}
        )
        await db.commit()
        return transaction

    return _successful


class TestBuildDocument:
    async def test_balanced_two_line_entry(self, db, successful, sap_client, settings) -> None:
        transaction = await successful("1500.00", "QAX777")
        service = LedgerSyncService(db, sap_client, settings)

        document = service.build_document(transaction, posting_date=date(2026, 3, 1))

        assert document["CompanyCode"] == "1000"
        assert document["DocumentType"] == "SA"
        assert document["PostingDate"] == document["DocumentDate"] == "2026-03-01"
        assert document["Currency"] == "KES"
        assert document["DocumentReferenceID"] == "QAX777"
        assert document["DocumentHeaderText"] == "M-Pesa Payment - QAX777"

        debit, credit = document["items"]
        assert (debit["Account"], debit["DebitCreditCode"]) == ("100000", "S")
        assert (credit["Account"], credit["DebitCreditCode"]) == ("400000", "H")
        assert Decimal(debit["AmountInTransactionCurrency"]) == Decimal("1500")
        assert debit["AmountInTransactionCurrency"] == credit["AmountInTransactionCurrency"]
        for line in (debit, credit):
            assert line["BusinessArea"] == "BA01"
            assert line["CostCenter"] == "CC100"
            assert line["Assignment"] == "INV001"

    @pytest.mark.parametrize(
        ("created_at", "posting_date"),
        [
            # 23:30 and 01:00 Nairobi time
            (datetime(2026, 2, 28, 20, 30, 0), "2026-02-28"),
            (datetime(2026, 3, 1, 22, 0, 0), "2026-03-02"),
        ],
    )
    async def test_posting_date_is_local_payment_day(
        self, db, successful, sap_client, settings, created_at, posting_date
    ) -> None:
        transaction = await successful()
        transaction.created_at = created_at
        await db.commit()

        document = LedgerSyncService(db, sap_client, settings).build_document(transaction)

        assert document["PostingDate"] == document["DocumentDate"] == posting_date

    async def test_overrides(self, db, successful, sap_client, settings) -> None:
        transaction = await successful()
        service = LedgerSyncService(db, sap_client, settings)

        document = service.build_document(transaction, company_code="2000", document_type="DZ")

        assert document["CompanyCode"] == "2000"
        assert document["DocumentType"] == "DZ"


class TestSyncTransaction:
    async def test_sync_marks_synced(self, db, successful, sap, sap_client, settings) -> None:
        transaction = await successful()
        service = LedgerSyncService(db, sap_client, settings)

        response = await service.sync_transaction(transaction.id)

        assert response.sap_reference == "1900000001"
        assert response.mpesa_receipt == "QAX123"
        stored = await TransactionStore(db).get_by_id(transaction.id)
        assert stored.sap_sync_status == SapSyncStatus.SYNCED
        assert stored.sap_reference == "1900000001"
        assert stored.sap_sync_date is not None

        [request] = sap.calls(SAP_DOCUMENT_PATH)
        assert request.headers["Authorization"] == "Bearer sap-token"
        assert json.loads(request.content)["DocumentReferenceID"] == "QAX123"

    async def test_second_sync_rejected_without_calling_sap(
        self, db, successful, sap, sap_client, settings
    ) -> None:
        transaction = await successful()
        service = LedgerSyncService(db, sap_client, settings)
        await service.sync_transaction(transaction.id)

        with pytest.raises(AlreadySyncedError) as exc_info:
            await service.sync_transaction(transaction.id)

        assert exc_info.value.details["sap_reference"] == "1900000001"
        assert len(sap.calls(SAP_DOCUMENT_PATH)) == 1

    async def test_unknown_transaction(self, db, sap, sap_client, settings) -> None:
        with pytest.raises(TransactionNotFound):
            await LedgerSyncService(db, sap_client, settings).sync_transaction(404)
        assert sap.requests == []

    @pytest.mark.parametrize("status", [None, TransactionStatus.FAILED])
    async def test_non_successful_rejected(
        self, db, make_transaction, sap, sap_client, settings, status
    ) -> None:
        transaction = await make_transaction()
        if status is not None:
            await TransactionStore(db).transition_from_pending(transaction.id, status)
            await db.commit()

        with pytest.raises(InvalidStateError) as exc_info:
            await LedgerSyncService(db, sap_client, settings).sync_transaction(transaction.id)

        assert exc_info.value.message == "Only successful transactions can be synced"
        assert sap.requests == []

    async def test_sap_rejection_records_failure(
        self, db, successful, sap, sap_client, settings
    ) -> None:
        transaction = await successful()
        sap.routes[SAP_DOCUMENT_PATH] = (
            400,
            {"error": {"code": "F5/702", "message": {"value": "Balance in transaction currency"}}},
        )
        service = LedgerSyncService(db, sap_client, settings)

        with pytest.raises(LedgerError) as exc_info:
            await service.sync_transaction(transaction.id)

        assert exc_info.value.message == "Balance in transaction currency"
        assert exc_info.value.kind == "http"
        stored = await TransactionStore(db).get_by_id(transaction.id)
        assert stored.status == TransactionStatus.SUCCESS
        assert stored.sap_sync_status == SapSyncStatus.FAILED
        assert stored.error_message == "Balance in transaction currency"
        assert stored.retry_count == 1
        assert stored.sap_reference is None

    async def test_failed_sync_can_be_retried(
        self, db, successful, sap, sap_client, settings
    ) -> None:
        transaction = await successful()
        sap.routes[SAP_DOCUMENT_PATH] = (201, {})
        service = LedgerSyncService(db, sap_client, settings)

        with pytest.raises(LedgerError):
            await service.sync_transaction(transaction.id)

        sap.routes[SAP_DOCUMENT_PATH] = (201, {"documentId": "1900000002"})
        response = await service.sync_transaction(transaction.id)

        assert response.sap_reference == "1900000002"
        stored = await TransactionStore(db).get_by_id(transaction.id)
        assert stored.sap_sync_status == SapSyncStatus.SYNCED
        assert stored.error_message is None
        assert stored.retry_count == 1

    async def test_token_reused_across_syncs(
        self, db, successful, sap, sap_client, settings
    ) -> None:
        service = LedgerSyncService(db, sap_client, settings)
        for receipt in ("QAX1", "QAX2"):
            transaction = await successful(receipt=receipt)
            await service.sync_transaction(transaction.id)

        assert len(sap.calls(SAP_TOKEN_PATH)) == 1
        assert len(sap.calls(SAP_DOCUMENT_PATH)) == 2


class TestRetryCandidates:
    async def test_only_failed_under_cap(self, db, successful, sap, sap_client, settings) -> None:
        store = TransactionStore(db)
        synced = await successful(receipt="QAX1")
        failed = await successful(receipt="QAX2")
        exhausted = await successful(receipt="QAX3")
        await store.update(
            failed.id, {"sap_sync_status": SapSyncStatus.FAILED, "retry_count": 1}
        )
        await store.update(
            exhausted.id, {"sap_sync_status": SapSyncStatus.FAILED, "retry_count": 5}
        )
        await db.commit()
        await LedgerSyncService(db, sap_client, settings).sync_transaction(synced.id)

        candidates = await LedgerSyncService(db, sap_client, settings).get_retry_candidates()

        assert candidates == [failed.id]
