"""Callback Service - Applies Daraja result callbacks to stored transactions."""

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any
from zoneinfo import ZoneInfo

from sqlalchemy.ext.asyncio import AsyncSession

from mpesa_recon.core.config import Settings, get_settings
from mpesa_recon.core.exceptions import (
    DuplicateReceiptError,
    MalformedCallback,
    TransactionNotFound,
)
from mpesa_recon.models.audit_log import AuditAction
from mpesa_recon.models.transaction import Transaction, TransactionStatus, TransactionType
from mpesa_recon.services.reconciliation_service import AMOUNT_TOLERANCE
from mpesa_recon.services.transaction_store import TransactionStore

logger = logging.getLogger(__name__)

# Daraja result codes
MPESA_ERROR_CODES: dict[int, str] = {
    0: "Success",
    1: "Insufficient Funds",
    2: "Less Than Minimum Transaction Value",
    3: "More Than Maximum Transaction Value",
    4: "Would Exceed Daily Transfer Limit",
    5: "Would Exceed Minimum Balance",
    6: "Unresolved Primary Party",
    7: "Unresolved Receiver Party",
    8: "Would Exceed Maximum Balance",
    11: "Debit Account Invalid",
    12: "Credit Account Invalid",
    13: "Unresolved Debit Account",
    14: "Unresolved Credit Account",
    15: "Duplicate Detected",
    17: "Internal Failure",
    20: "Unresolved Initiator",
    26: "Traffic blocking condition in place",
}


def describe_result(code: int, desc: str | None = None) -> str:
    """Gateway description, or the documented meaning of the code."""
    if desc:
        return desc
    return MPESA_ERROR_CODES.get(code, f"Unknown result code {code}")


class CallbackOutcome(str, Enum):
    APPLIED_SUCCESS = "APPLIED_SUCCESS"
    APPLIED_FAILED = "APPLIED_FAILED"
    DUPLICATE = "DUPLICATE"


class CallbackMetadata:
    """Name -> value view over a callback's item list.

    STK callbacks send [{"Name": ..., "Value": ...}], B2C results send
    [{"Key": ..., "Value": ...}]; both fold into one mapping.
    """

    def __init__(self, items: dict[str, Any]):
        self._items = items

    @classmethod
    def from_items(cls, items: Any, key_field: str = "Name") -> "CallbackMetadata":
        if isinstance(items, dict):
            # Single-item lists sometimes arrive unwrapped
            items = [items]
        if not isinstance(items, list):
            raise MalformedCallback("Callback metadata items must be a list")
        folded: dict[str, Any] = {}
        for item in items:
            if isinstance(item, dict) and key_field in item:
                folded[item[key_field]] = item.get("Value")
        return cls(folded)

    def get(self, name: str, default: Any = None) -> Any:
        return self._items.get(name, default)

    def require(self, name: str) -> Any:
        value = self._items.get(name)
        if value is None or value == "":
            raise MalformedCallback(f"Callback metadata is missing {name}", {"field": name})
        return value

    def __contains__(self, name: str) -> bool:
        return name in self._items


def _enqueue_ledger_sync(transaction_id: int) -> None:
    from mpesa_recon.tasks.ledger import sync_transaction_to_sap

    sync_transaction_to_sap.delay(transaction_id)


class CallbackService:
    """Service for Daraja webhooks.

    The state change is a compare-and-swap on status = PENDING, so a resent
    or concurrent callback for the same transaction is reported as DUPLICATE
    and changes nothing. Follow-up work (ledger sync) is queued only after
    the change is committed and never affects the returned outcome.
    """

    def __init__(
        self,
        db: AsyncSession,
        settings: Settings | None = None,
        enqueue_sync: Callable[[int], Any] | None = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.store = TransactionStore(db, timezone=self.settings.timezone)
        self.enqueue_sync = enqueue_sync or _enqueue_ledger_sync

    # =========================================================================
    # STK Push
    # =========================================================================

    async def handle_stk_callback(self, envelope: Any) -> CallbackOutcome:
        """Apply an STK Push callback.

        Args:
            envelope: Raw JSON body ({"Body": {"stkCallback": {...}}})

        Returns:
            APPLIED_SUCCESS, APPLIED_FAILED, or DUPLICATE for a transaction
            that already left PENDING

        Raises:
            MalformedCallback: Envelope or required metadata missing
            TransactionNotFound: Unknown CheckoutRequestID (nothing created)
        """
        callback, result_code = await self._unwrap_stk(envelope)
        checkout_request_id = callback["CheckoutRequestID"]
        result_desc = describe_result(result_code, callback.get("ResultDesc"))

        transaction = await self._find(
            self.store.get_by_checkout_id, checkout_request_id, envelope
        )
        if transaction.status.is_terminal:
            return self._duplicate(transaction, result_code)

        if result_code == 0:
            try:
                metadata = CallbackMetadata.from_items(
                    (callback.get("CallbackMetadata") or {}).get("Item")
                )
                receipt = str(metadata.require("MpesaReceiptNumber"))
                paid_amount = metadata.require("Amount")
            except MalformedCallback as e:
                await self._reject(envelope, e.message, transaction.id)
                raise

            if self._differs(paid_amount, transaction):
                logger.warning(
                    f"Callback amount {paid_amount} differs from stored amount "
                    f"{transaction.amount} for transaction {transaction.id}"
                )
            patch = {
                "mpesa_receipt": receipt,
                "transaction_date": self._parse_stk_date(metadata.get("TransactionDate")),
                "result_code": result_code,
                "result_desc": result_desc,
                "callback_payload": envelope,
            }
            new_status = TransactionStatus.SUCCESS
        else:
            patch = {
                "result_code": result_code,
                "result_desc": result_desc,
                "callback_payload": envelope,
            }
            new_status = TransactionStatus.FAILED

        return await self._apply(transaction, new_status, patch)

    async def _unwrap_stk(self, envelope: Any) -> tuple[dict[str, Any], int]:
        body = envelope.get("Body") if isinstance(envelope, dict) else None
        callback = body.get("stkCallback") if isinstance(body, dict) else None
        if not isinstance(callback, dict):
            await self._reject(envelope, "Invalid callback format")
            raise MalformedCallback("Invalid callback format")
        if not callback.get("CheckoutRequestID"):
            await self._reject(envelope, "Callback is missing CheckoutRequestID")
            raise MalformedCallback("Callback is missing CheckoutRequestID")
        return callback, await self._result_code(envelope, callback.get("ResultCode"))

    # =========================================================================
    # B2C
    # =========================================================================

    async def handle_b2c_result(self, envelope: Any) -> CallbackOutcome:
        """Apply a B2C result.

        Args:
            envelope: Raw JSON body ({"Result": {...}})

        Raises:
            MalformedCallback: Envelope or TransactionReceipt missing
            TransactionNotFound: Unknown ConversationID
        """
        result = envelope.get("Result") if isinstance(envelope, dict) else None
        if not isinstance(result, dict) or not result.get("ConversationID"):
            await self._reject(envelope, "Invalid B2C result format")
            raise MalformedCallback("Invalid B2C result format")

        conversation_id = result["ConversationID"]
        result_code = await self._result_code(envelope, result.get("ResultCode"))
        result_desc = describe_result(result_code, result.get("ResultDesc"))

        transaction = await self._find(
            self.store.get_by_conversation_id, conversation_id, envelope
        )
        if transaction.status.is_terminal:
            return self._duplicate(transaction, result_code)

        if result_code == 0:
            try:
                parameters = CallbackMetadata.from_items(
                    (result.get("ResultParameters") or {}).get("ResultParameter"),
                    key_field="Key",
                )
                receipt = str(parameters.require("TransactionReceipt"))
            except MalformedCallback as e:
                await self._reject(envelope, e.message, transaction.id)
                raise
            patch = {
                "mpesa_receipt": receipt,
                "transaction_date": self._parse_b2c_date(
                    parameters.get("TransactionCompletedDateTime")
                ),
                "result_code": result_code,
                "result_desc": result_desc,
                "callback_payload": envelope,
            }
            new_status = TransactionStatus.SUCCESS
        else:
            patch = {
                "result_code": result_code,
                "result_desc": result_desc,
                "callback_payload": envelope,
            }
            new_status = TransactionStatus.FAILED

        return await self._apply(transaction, new_status, patch)

    # =========================================================================
    # Shared steps
    # =========================================================================

    async def _apply(
        self,
        transaction: Transaction,
        new_status: TransactionStatus,
        patch: dict[str, Any],
    ) -> CallbackOutcome:
        transaction_id = transaction.id
        try:
            updated = await self.store.transition_from_pending(
                transaction_id, new_status, patch, performed_by="mpesa-callback"
            )
        except DuplicateReceiptError as e:
            await self._reject(patch["callback_payload"], e.message, transaction_id)
            raise MalformedCallback(e.message, e.details) from e
        if updated is None:
            # Lost the race to a concurrent callback
            logger.info(f"Transaction {transaction_id} already processed by another callback")
            return CallbackOutcome.DUPLICATE
        await self.db.commit()

        logger.info(
            f"Transaction {updated.id} {new_status.value}: "
            f"result_code={updated.result_code} receipt={updated.mpesa_receipt}"
        )
        if new_status == TransactionStatus.SUCCESS:
            self._after_success(updated)
            return CallbackOutcome.APPLIED_SUCCESS
        return CallbackOutcome.APPLIED_FAILED

    def _after_success(self, transaction: Transaction) -> None:
        # B2C payouts are not revenue; only collections are posted
        if not self.settings.sap_auto_sync:
            return
        if transaction.transaction_type == TransactionType.B2C:
            return
        try:
            self.enqueue_sync(transaction.id)
        except Exception as e:
            logger.error(f"Failed to queue SAP sync for transaction {transaction.id}: {e}")

    def _duplicate(self, transaction: Transaction, result_code: int) -> CallbackOutcome:
        logger.warning(
            f"Ignoring callback for transaction {transaction.id}: already "
            f"{transaction.status.value} (incoming result_code={result_code})"
        )
        return CallbackOutcome.DUPLICATE

    async def _find(self, lookup, tracking_id: str, envelope: Any) -> Transaction:
        try:
            return await lookup(tracking_id)
        except TransactionNotFound:
            logger.warning(f"Callback for unknown transaction {tracking_id}")
            await self._reject(envelope, f"Transaction not found: {tracking_id}")
            raise

    async def _result_code(self, envelope: Any, raw: Any) -> int:
        # bool is an int subclass; a JSON true/false is not a result code
        if isinstance(raw, bool):
            raw = None
        if isinstance(raw, int):
            return raw
        if isinstance(raw, str) and raw.strip().lstrip("-").isdigit():
            return int(raw)
        await self._reject(envelope, "Callback ResultCode must be an integer")
        raise MalformedCallback("Callback ResultCode must be an integer", {"ResultCode": raw})

    async def _reject(
        self, envelope: Any, reason: str, transaction_id: int | None = None
    ) -> None:
        logger.warning(f"Rejected callback: {reason}")
        await self.store.record_event(
            AuditAction.CALLBACK_REJECTED,
            reason,
            values={"payload": envelope if isinstance(envelope, dict) else str(envelope)},
            transaction_id=transaction_id,
            performed_by="mpesa-callback",
        )
        await self.db.commit()

    @staticmethod
    def _differs(paid_amount: Any, transaction: Transaction) -> bool:
        try:
            return abs(Decimal(str(paid_amount)) - transaction.amount) > AMOUNT_TOLERANCE
        except (InvalidOperation, TypeError, ValueError):
            return True

    def _to_utc(self, local: datetime) -> datetime:
        aware = local.replace(tzinfo=ZoneInfo(self.settings.timezone))
        return aware.astimezone(UTC).replace(tzinfo=None)

    def _parse_stk_date(self, value: Any) -> datetime | None:
        """TransactionDate arrives as a YYYYMMDDHHMMSS number in local time."""
        if value is None:
            return None
        try:
            return self._to_utc(datetime.strptime(str(value), "%Y%m%d%H%M%S"))
        except ValueError:
            logger.warning(f"Unparseable callback TransactionDate: {value}")
            return None

    def _parse_b2c_date(self, value: Any) -> datetime | None:
        """TransactionCompletedDateTime arrives as 'DD.MM.YYYY HH:MM:SS' local time."""
        if value is None:
            return None
        try:
            return self._to_utc(datetime.strptime(str(value), "%d.%m.%Y %H:%M:%S"))
        except ValueError:
            logger.warning(f"Unparseable B2C TransactionCompletedDateTime: {value}")
            return None
