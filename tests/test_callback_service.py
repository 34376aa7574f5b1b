"""
Callback handling tests: state changes, idempotency and rejected payloads.
"""

from datetime import datetime
from decimal import Decimal

import pytest
from sqlmodel import select

from mpesa_recon.core.exceptions import MalformedCallback, TransactionNotFound
from mpesa_recon.models.audit_log import AuditAction, TransactionAuditLog
from mpesa_recon.models.transaction import SapSyncStatus, TransactionStatus, TransactionType
from mpesa_recon.schemas.transaction import TransactionDraft
from mpesa_recon.services.callback_service import (
    CallbackMetadata,
    CallbackOutcome,
    CallbackService,
    describe_result,
)
from mpesa_recon.services.transaction_store import TransactionStore

from .conftest import stk_callback


def b2c_result(conversation_id: str, result_code: int = 0, receipt: str | None = "NLJ41HAY6Q"):
    result = {
        "ResultType": 0,
        "ResultCode": result_code,
        "ResultDesc": "The service request is processed successfully."
        if result_code == 0
        else "The initiator information is invalid.",
        "OriginatorConversationID": "10571-7910404-1",
        "ConversationID": conversation_id,
        "TransactionID": "NLJ41HAY6Q",
    }
    if result_code == 0:
        parameters = [
            {"Key": "TransactionAmount", "Value": 500},
            {"Key": "TransactionCompletedDateTime", "Value": "19.12.2019 11:45:50"},
            {"Key": "ReceiverPartyPublicName", "Value": "254712345678 - John Doe"},
        ]
        if receipt is not None:
            parameters.insert(0, {"Key": "TransactionReceipt", "Value": receipt})
        result["ResultParameters"] = {"ResultParameter": parameters}
    return {"Result": result}


async def audit_actions(db, transaction_id=None) -> list[AuditAction]:
    query = select(TransactionAuditLog.action).order_by(TransactionAuditLog.id)
    if transaction_id is not None:
        query = query.where(TransactionAuditLog.transaction_id == transaction_id)
    return list((await db.execute(query)).scalars().all())


class TestStkCallback:
    async def test_success_sets_receipt_and_queues_sync(
        self, db, make_transaction, settings, enqueue_sync
    ) -> None:
        transaction = await make_transaction(checkout_request_id="ws_CO_A")
        service = CallbackService(db, settings, enqueue_sync=enqueue_sync)

        outcome = await service.handle_stk_callback(stk_callback("ws_CO_A", receipt="QAX123"))

        assert outcome == CallbackOutcome.APPLIED_SUCCESS
        stored = await TransactionStore(db).get_by_id(transaction.id)
        assert stored.status == TransactionStatus.SUCCESS
        assert stored.mpesa_receipt == "QAX123"
        assert stored.result_code == 0
        assert stored.callback_payload["Body"]["stkCallback"]["CheckoutRequestID"] == "ws_CO_A"
        # 2019-12-19 10:21:15 in Nairobi (UTC+3)
        assert stored.transaction_date == datetime(2019, 12, 19, 7, 21, 15)
        assert stored.sap_sync_status == SapSyncStatus.PENDING
        enqueue_sync.assert_called_once_with(transaction.id)

    async def test_failure_result_marks_failed_without_receipt(
        self, db, make_transaction, settings, enqueue_sync
    ) -> None:
        transaction = await make_transaction(checkout_request_id="ws_CO_B")
        service = CallbackService(db, settings, enqueue_sync=enqueue_sync)

        outcome = await service.handle_stk_callback(stk_callback("ws_CO_B", result_code=1032))

        assert outcome == CallbackOutcome.APPLIED_FAILED
        stored = await TransactionStore(db).get_by_id(transaction.id)
        assert stored.status == TransactionStatus.FAILED
        assert stored.result_code == 1032
        assert stored.result_desc == "Request cancelled by user"
        assert stored.mpesa_receipt is None
        enqueue_sync.assert_not_called()

    async def test_duplicate_callback_changes_nothing(
        self, db, make_transaction, settings, enqueue_sync
    ) -> None:
        transaction = await make_transaction(checkout_request_id="ws_CO_C")
        service = CallbackService(db, settings, enqueue_sync=enqueue_sync)

        first = await service.handle_stk_callback(stk_callback("ws_CO_C", receipt="QAX123"))
        second = await service.handle_stk_callback(stk_callback("ws_CO_C", receipt="QAX999"))
        late_failure = await service.handle_stk_callback(stk_callback("ws_CO_C", result_code=1))

        assert first == CallbackOutcome.APPLIED_SUCCESS
        assert second == CallbackOutcome.DUPLICATE
        assert late_failure == CallbackOutcome.DUPLICATE
        stored = await TransactionStore(db).get_by_id(transaction.id)
        assert stored.status == TransactionStatus.SUCCESS
        assert stored.mpesa_receipt == "QAX123"
        enqueue_sync.assert_called_once()
        assert await audit_actions(db, transaction.id) == [
            AuditAction.CREATED,
            AuditAction.STATUS_CHANGED,
        ]

    async def test_result_code_as_string(self, db, make_transaction, settings, enqueue_sync) -> None:
        await make_transaction(checkout_request_id="ws_CO_D")
        service = CallbackService(db, settings, enqueue_sync=enqueue_sync)
        envelope = stk_callback("ws_CO_D")
        envelope["Body"]["stkCallback"]["ResultCode"] = "0"

        assert await service.handle_stk_callback(envelope) == CallbackOutcome.APPLIED_SUCCESS

    @pytest.mark.parametrize(
        "envelope",
        [
            None,
            {},
            {"Body": {}},
            {"Body": {"stkCallback": {"ResultCode": 0}}},
            {"Body": {"stkCallback": {"CheckoutRequestID": "ws_CO_X", "ResultCode": "abc"}}},
            {"Body": {"stkCallback": {"CheckoutRequestID": "ws_CO_X", "ResultCode": True}}},
        ],
    )
    async def test_malformed_envelope_rejected(self, db, settings, enqueue_sync, envelope) -> None:
        service = CallbackService(db, settings, enqueue_sync=enqueue_sync)

        with pytest.raises(MalformedCallback):
            await service.handle_stk_callback(envelope)

        assert await audit_actions(db) == [AuditAction.CALLBACK_REJECTED]

    async def test_unknown_checkout_id_creates_nothing(self, db, settings, enqueue_sync) -> None:
        service = CallbackService(db, settings, enqueue_sync=enqueue_sync)

        with pytest.raises(TransactionNotFound):
            await service.handle_stk_callback(stk_callback("ws_CO_unknown"))

        [entry] = (await db.execute(select(TransactionAuditLog))).scalars().all()
        assert entry.action == AuditAction.CALLBACK_REJECTED
        assert entry.transaction_id is None
        assert entry.new_values["payload"]["Body"]["stkCallback"]["CheckoutRequestID"] == (
            "ws_CO_unknown"
        )

    async def test_success_without_receipt_leaves_pending(
        self, db, make_transaction, settings, enqueue_sync
    ) -> None:
        transaction = await make_transaction(checkout_request_id="ws_CO_E")
        service = CallbackService(db, settings, enqueue_sync=enqueue_sync)

        with pytest.raises(MalformedCallback):
            await service.handle_stk_callback(stk_callback("ws_CO_E", receipt=None))

        stored = await TransactionStore(db).get_by_id(transaction.id)
        assert stored.status == TransactionStatus.PENDING
        assert await audit_actions(db, transaction.id) == [
            AuditAction.CREATED,
            AuditAction.CALLBACK_REJECTED,
        ]
        enqueue_sync.assert_not_called()

    async def test_receipt_already_used_is_rejected(
        self, db, make_transaction, settings, enqueue_sync
    ) -> None:
        await make_transaction(checkout_request_id="ws_CO_H1")
        second_id = (await make_transaction(checkout_request_id="ws_CO_H2")).id
        service = CallbackService(db, settings, enqueue_sync=enqueue_sync)
        await service.handle_stk_callback(stk_callback("ws_CO_H1", receipt="QAX123"))

        with pytest.raises(MalformedCallback) as exc_info:
            await service.handle_stk_callback(stk_callback("ws_CO_H2", receipt="QAX123"))

        assert exc_info.value.details["mpesa_receipt"] == "QAX123"
        stored = await TransactionStore(db).get_by_id(second_id)
        assert stored.status == TransactionStatus.PENDING
        assert await audit_actions(db, second_id) == [
            AuditAction.CREATED,
            AuditAction.CALLBACK_REJECTED,
        ]
        enqueue_sync.assert_called_once()

    async def test_missing_description_falls_back_to_code_table(
        self, db, make_transaction, settings, enqueue_sync
    ) -> None:
        transaction = await make_transaction(checkout_request_id="ws_CO_F")
        service = CallbackService(db, settings, enqueue_sync=enqueue_sync)
        envelope = stk_callback("ws_CO_F", result_code=1)
        del envelope["Body"]["stkCallback"]["ResultDesc"]

        await service.handle_stk_callback(envelope)

        stored = await TransactionStore(db).get_by_id(transaction.id)
        assert stored.result_desc == "Insufficient Funds"

    async def test_unparseable_transaction_date_ignored(
        self, db, make_transaction, settings, enqueue_sync
    ) -> None:
        transaction = await make_transaction(checkout_request_id="ws_CO_G")
        service = CallbackService(db, settings, enqueue_sync=enqueue_sync)
        envelope = stk_callback("ws_CO_G")
        for item in envelope["Body"]["stkCallback"]["CallbackMetadata"]["Item"]:
            if item["Name"] == "TransactionDate":
                item["Value"] = "yesterday"

        assert await service.handle_stk_callback(envelope) == CallbackOutcome.APPLIED_SUCCESS

        stored = await TransactionStore(db).get_by_id(transaction.id)
        assert stored.transaction_date is None

    async def test_enqueue_failure_does_not_fail_callback(
        self, db, make_transaction, settings, enqueue_sync
    ) -> None:
        transaction = await make_transaction(checkout_request_id="ws_CO_H")
        enqueue_sync.side_effect = ConnectionError("broker down")
        service = CallbackService(db, settings, enqueue_sync=enqueue_sync)

        outcome = await service.handle_stk_callback(stk_callback("ws_CO_H"))

        assert outcome == CallbackOutcome.APPLIED_SUCCESS
        stored = await TransactionStore(db).get_by_id(transaction.id)
        assert stored.status == TransactionStatus.SUCCESS

    async def test_auto_sync_disabled(self, db, make_transaction, settings, enqueue_sync) -> None:
        await make_transaction(checkout_request_id="ws_CO_I")
        manual = settings.model_copy(update={"sap_auto_sync": False})
        service = CallbackService(db, manual, enqueue_sync=enqueue_sync)

        await service.handle_stk_callback(stk_callback("ws_CO_I"))

        enqueue_sync.assert_not_called()


class TestB2CResult:
    @pytest.fixture
    async def payout(self, db):
        store = TransactionStore(db)
        transaction = await store.create(
            TransactionDraft(
                amount=Decimal("500"),
                phone_number="254712345678",
                transaction_type=TransactionType.B2C,
                conversation_id="AG_20191219_0001",
            )
        )
        await db.commit()
        return transaction

    async def test_success_sets_receipt_without_ledger_sync(
        self, db, payout, settings, enqueue_sync
    ) -> None:
        service = CallbackService(db, settings, enqueue_sync=enqueue_sync)

        outcome = await service.handle_b2c_result(b2c_result("AG_20191219_0001"))

        assert outcome == CallbackOutcome.APPLIED_SUCCESS
        stored = await TransactionStore(db).get_by_id(payout.id)
        assert stored.status == TransactionStatus.SUCCESS
        assert stored.mpesa_receipt == "NLJ41HAY6Q"
        assert stored.transaction_date == datetime(2019, 12, 19, 8, 45, 50)
        enqueue_sync.assert_not_called()

    async def test_failure_result(self, db, payout, settings, enqueue_sync) -> None:
        service = CallbackService(db, settings, enqueue_sync=enqueue_sync)

        outcome = await service.handle_b2c_result(b2c_result("AG_20191219_0001", result_code=2001))

        assert outcome == CallbackOutcome.APPLIED_FAILED
        stored = await TransactionStore(db).get_by_id(payout.id)
        assert stored.status == TransactionStatus.FAILED
        assert stored.result_desc == "The initiator information is invalid."

    async def test_duplicate_result(self, db, payout, settings, enqueue_sync) -> None:
        service = CallbackService(db, settings, enqueue_sync=enqueue_sync)

        await service.handle_b2c_result(b2c_result("AG_20191219_0001"))
        outcome = await service.handle_b2c_result(b2c_result("AG_20191219_0001", result_code=1))

        assert outcome == CallbackOutcome.DUPLICATE

    async def test_unknown_conversation(self, db, settings, enqueue_sync) -> None:
        service = CallbackService(db, settings, enqueue_sync=enqueue_sync)

        with pytest.raises(TransactionNotFound):
            await service.handle_b2c_result(b2c_result("AG_missing"))

    async def test_missing_receipt(self, db, payout, settings, enqueue_sync) -> None:
        service = CallbackService(db, settings, enqueue_sync=enqueue_sync)

        with pytest.raises(MalformedCallback):
            await service.handle_b2c_result(b2c_result("AG_20191219_0001", receipt=None))


class TestHelpers:
    def test_metadata_folds_name_and_key_items(self) -> None:
        stk = CallbackMetadata.from_items([{"Name": "Amount", "Value": 10}, {"Name": "Balance"}])
        b2c = CallbackMetadata.from_items({"Key": "TransactionReceipt", "Value": "X"}, "Key")

        assert stk.get("Amount") == 10
        assert "Balance" in stk
        assert stk.get("Balance") is None
        assert b2c.require("TransactionReceipt") == "X"
        with pytest.raises(MalformedCallback):
            stk.require("MpesaReceiptNumber")

    def test_metadata_rejects_non_list(self) -> None:
        with pytest.raises(MalformedCallback):
            CallbackMetadata.from_items(None)

    async def test_amount_check_is_exact_to_the_cent(self, make_transaction) -> None:
        transaction = await make_transaction(amount="100")

        assert not CallbackService._differs("100.01", transaction)
        assert not CallbackService._differs(100, transaction)
        assert CallbackService._differs("100.02", transaction)
        assert CallbackService._differs("abc", transaction)
        assert CallbackService._differs(None, transaction)

    def test_describe_result(self) -> None:
        assert describe_result(0) == "Success"
        assert describe_result(17) == "Internal Failure"
        assert describe_result(9999) == "Unknown result code 9999"
        assert describe_result(1, "Custom text") == "Custom text"
