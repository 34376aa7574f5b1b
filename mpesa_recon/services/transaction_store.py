"""Transaction Store - Persistence and lifecycle guards for payment records."""

import logging
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from mpesa_recon.core.config import get_settings
from mpesa_recon.core.exceptions import (
    DuplicateReceiptError,
    InvalidStateTransition,
    TransactionNotFound,
    ValidationError,
)
from mpesa_recon.models.audit_log import AuditAction, TransactionAuditLog
from mpesa_recon.models.transaction import (
    SapSyncStatus,
    Transaction,
    TransactionStatus,
)
from mpesa_recon.schemas.transaction import (
    StatusBreakdown,
    TransactionDraft,
    TransactionFilters,
    TransactionStats,
)
from mpesa_recon.utils.helpers import local_day_bounds, local_today, utcnow
from mpesa_recon.utils.pagination import PaginatedResult, PaginationParams, paginate_query
from mpesa_recon.utils.phone import is_valid_phone

logger = logging.getLogger(__name__)

# Fields a caller may patch. Everything else is fixed at creation.
MUTABLE_FIELDS = frozenset(
    {
        "status",
        "result_code",
        "result_desc",
        "transaction_date",
        "mpesa_receipt",
        "callback_payload",
        "sap_reference",
        "sap_sync_status",
        "sap_sync_date",
        "retry_count",
        "error_message",
    }
)


def to_jsonable(values: dict[str, Any]) -> dict[str, Any]:
    """Convert Decimal/datetime/Enum values for JSON audit columns."""
    out: dict[str, Any] = {}
    for key, value in values.items():
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, Decimal):
            value = str(value)
        elif isinstance(value, datetime):
            value = value.isoformat()
        out[key] = value
    return out


class TransactionStore:
    """Storage for Transaction rows.

    Every mutation appends a TransactionAuditLog entry to the same session, so
    the row change and its audit entry commit or roll back together. Commits
    are left to the caller (get_db / get_session).
    """

    def __init__(self, db: AsyncSession, timezone: str | None = None):
        self.db = db
        self.timezone = timezone or get_settings().timezone

    # =========================================================================
    # Creation & lookup
    # =========================================================================

    async def create(self, draft: TransactionDraft, performed_by: str = "system") -> Transaction:
        """Insert a PENDING transaction.

        Raises:
            ValidationError: Bad amount, phone or account reference, or a
                tracking id that is already stored
        """
        if draft.amount <= 0:
            raise ValidationError("Amount must be greater than 0", {"amount": str(draft.amount)})
        if not is_valid_phone(draft.phone_number):
            raise ValidationError(
                "Invalid phone number format. Use 2547XXXXXXXX",
                {"phone_number": draft.phone_number},
            )
        if draft.account_reference is not None and not 1 <= len(draft.account_reference) <= 12:
            raise ValidationError("Account reference must be between 1 and 12 characters")

        if draft.checkout_request_id:
            await self._ensure_unique("checkout_request_id", draft.checkout_request_id)
        if draft.conversation_id:
            await self._ensure_unique("conversation_id", draft.conversation_id)

        transaction = Transaction(
            **draft.model_dump(),
            status=TransactionStatus.PENDING,
            sap_sync_status=SapSyncStatus.PENDING,
        )
        self.db.add(transaction)
        try:
            await self.db.flush()
        except IntegrityError as e:
            await self.db.rollback()
            raise ValidationError("Transaction tracking id already exists") from e

        self._audit(
            transaction.id,
            AuditAction.CREATED,
            f"{transaction.transaction_type.value} transaction created",
            new_values={
                "amount": transaction.amount,
                "phone_number": transaction.phone_number,
                "status": transaction.status,
                "checkout_request_id": transaction.checkout_request_id,
                "conversation_id": transaction.conversation_id,
            },
            performed_by=performed_by,
        )
        logger.info(
            f"Transaction {transaction.id} created: "
            f"{transaction.transaction_type.value} {transaction.amount} {transaction.phone_number}"
        )
        return transaction

    async def _ensure_unique(self, field: str, value: str) -> None:
        column = getattr(Transaction, field)
        result = await self.db.execute(select(Transaction.id).where(column == value))
        if result.first() is not None:
            raise ValidationError(f"Transaction with {field} {value} already exists")

    async def get_by_id(self, transaction_id: int) -> Transaction:
        transaction = await self.db.get(Transaction, transaction_id)
        if not transaction:
            raise TransactionNotFound(
                "Transaction not found", {"transaction_id": transaction_id}
            )
        return transaction

    async def get_by_checkout_id(self, checkout_request_id: str) -> Transaction:
        result = await self.db.execute(
            select(Transaction).where(Transaction.checkout_request_id == checkout_request_id)
        )
        transaction = result.scalar_one_or_none()
        if not transaction:
            raise TransactionNotFound(
                "Transaction not found", {"checkout_request_id": checkout_request_id}
            )
        return transaction

    async def get_by_conversation_id(self, conversation_id: str) -> Transaction:
        result = await self.db.execute(
            select(Transaction).where(Transaction.conversation_id == conversation_id)
        )
        transaction = result.scalar_one_or_none()
        if not transaction:
            raise TransactionNotFound(
                "Transaction not found", {"conversation_id": conversation_id}
            )
        return transaction

    # =========================================================================
    # Guarded writes
    # =========================================================================

    async def transition_from_pending(
        self,
        transaction_id: int,
        new_status: TransactionStatus,
        patch: dict[str, Any] | None = None,
        performed_by: str = "system",
    ) -> Transaction | None:
        """Move a PENDING row to a terminal status in one conditional UPDATE.

        Two callbacks racing for the same row both issue the UPDATE; only one
        matches status = PENDING.

        Args:
            transaction_id: Row to update
            new_status: SUCCESS, FAILED or CANCELLED
            patch: Extra callback fields (result_code, mpesa_receipt, ...)
            performed_by: Audit actor

        Returns:
            The refreshed row, or None if it was no longer PENDING

        Raises:
            ValidationError: Non-terminal target or a forbidden patch field
            InvalidStateTransition: Receipt missing on SUCCESS or present otherwise
            DuplicateReceiptError: Receipt already stored on another row
        """
        new_status = TransactionStatus(new_status)
        if not new_status.is_terminal:
            raise ValidationError("Target status must be terminal", {"status": new_status.value})

        values = dict(patch or {})
        self._check_fields(values)
        values.pop("status", None)
        self._check_receipt(new_status, values.get("mpesa_receipt"))

        values["status"] = new_status
        values["updated_at"] = utcnow()

        try:
            result = await self.db.execute(
                update(Transaction)
                .where(Transaction.id == transaction_id)
                .where(Transaction.status == TransactionStatus.PENDING)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
        except IntegrityError as e:
            await self.db.rollback()
            raise DuplicateReceiptError(
                "M-Pesa receipt already recorded on another transaction",
                {"transaction_id": transaction_id, "mpesa_receipt": values.get("mpesa_receipt")},
            ) from e
        if result.rowcount == 0:
            return None

        transaction = await self.db.get(Transaction, transaction_id, populate_existing=True)
        self._audit(
            transaction_id,
            AuditAction.STATUS_CHANGED,
            f"Status changed from PENDING to {new_status.value}",
            old_values={"status": TransactionStatus.PENDING},
            new_values=values,
            performed_by=performed_by,
        )
        return transaction

    async def update(
        self,
        transaction_id: int,
        patch: dict[str, Any],
        action: AuditAction | None = None,
        description: str | None = None,
        performed_by: str = "system",
    ) -> Transaction:
        """Partial update guarded on the row's current status and sync state.

        Raises:
            TransactionNotFound: No such row
            ValidationError: Unknown or immutable field in patch
            InvalidStateTransition: Terminal status change, SYNCED on a
                non-SUCCESS or already SYNCED row, receipt on a non-SUCCESS row,
                or the row changed underneath us
        """
        values = dict(patch)
        self._check_fields(values)
        if not values:
            raise ValidationError("Nothing to update")

        transaction = await self.get_by_id(transaction_id)
        current_status = transaction.status
        current_sync = transaction.sap_sync_status

        if "status" in values:
            values["status"] = TransactionStatus(values["status"])
            if values["status"] != current_status and current_status.is_terminal:
                raise InvalidStateTransition(
                    f"Transaction is {current_status.value}; status cannot change",
                    {"transaction_id": transaction_id, "status": current_status.value},
                )
        new_status = values.get("status", current_status)

        receipt = values.get("mpesa_receipt", transaction.mpesa_receipt)
        self._check_receipt(new_status, receipt)

        if "sap_sync_status" in values:
            values["sap_sync_status"] = SapSyncStatus(values["sap_sync_status"])
            new_sync = values["sap_sync_status"]
            if current_sync == SapSyncStatus.SYNCED:
                raise InvalidStateTransition(
                    "Transaction already synced with SAP",
                    {"transaction_id": transaction_id},
                )
            if new_sync == SapSyncStatus.SYNCED and new_status != TransactionStatus.SUCCESS:
                raise InvalidStateTransition(
                    "Only successful transactions can be synced",
                    {"transaction_id": transaction_id, "status": new_status.value},
                )

        old_values = {key: getattr(transaction, key) for key in values}
        values["updated_at"] = utcnow()

        result = await self.db.execute(
            update(Transaction)
            .where(Transaction.id == transaction_id)
            .where(Transaction.status == current_status)
            .where(Transaction.sap_sync_status == current_sync)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise InvalidStateTransition(
                "Transaction was modified concurrently", {"transaction_id": transaction_id}
            )

        transaction = await self.db.get(Transaction, transaction_id, populate_existing=True)
        self._audit(
            transaction_id,
            action or self._infer_action(values),
            description,
            old_values=old_values,
            new_values=values,
            performed_by=performed_by,
        )
        return transaction

    @staticmethod
    def _check_fields(values: dict[str, Any]) -> None:
        invalid = sorted(set(values) - MUTABLE_FIELDS)
        if invalid:
            raise ValidationError(
                f"Fields cannot be updated: {', '.join(invalid)}", {"fields": invalid}
            )

    @staticmethod
    def _check_receipt(status: TransactionStatus, receipt: str | None) -> None:
        # mpesa_receipt is set exactly when the payment succeeded
        if status == TransactionStatus.SUCCESS and not receipt:
            raise InvalidStateTransition("Successful transactions require an M-Pesa receipt")
        if status != TransactionStatus.SUCCESS and receipt:
            raise InvalidStateTransition(
                f"M-Pesa receipt is only allowed on successful transactions, not {status.value}"
            )

    @staticmethod
    def _infer_action(values: dict[str, Any]) -> AuditAction:
        sync = values.get("sap_sync_status")
        if sync == SapSyncStatus.SYNCED:
            return AuditAction.SAP_SYNCED
        if sync == SapSyncStatus.FAILED:
            return AuditAction.SAP_SYNC_FAILED
        return AuditAction.STATUS_CHANGED

    # =========================================================================
    # Audit
    # =========================================================================

    def _audit(
        self,
        transaction_id: int | None,
        action: AuditAction,
        description: str | None = None,
        old_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
        performed_by: str = "system",
    ) -> TransactionAuditLog:
        entry = TransactionAuditLog(
            transaction_id=transaction_id,
            action=action,
            description=description,
            performed_by=performed_by,
            old_values=to_jsonable(old_values) if old_values else None,
            new_values=to_jsonable(new_values) if new_values else None,
        )
        self.db.add(entry)
        return entry

    async def record_event(
        self,
        action: AuditAction,
        description: str,
        values: dict[str, Any] | None = None,
        transaction_id: int | None = None,
        performed_by: str = "system",
    ) -> TransactionAuditLog:
        """Append an audit entry that is not tied to a row change.

        Used for rejected initiations and callbacks, which never create a row.
        """
        entry = self._audit(
            transaction_id, action, description, new_values=values, performed_by=performed_by
        )
        await self.db.flush()
        return entry

    # =========================================================================
    # Queries
    # =========================================================================

    def _filtered_query(self, filters: TransactionFilters | None):
        query = select(Transaction)
        if not filters:
            return query
        if filters.status:
            query = query.where(Transaction.status == filters.status)
        if filters.transaction_type:
            query = query.where(Transaction.transaction_type == filters.transaction_type)
        if filters.phone_number:
            query = query.where(Transaction.phone_number.contains(filters.phone_number))  # type: ignore
        if filters.start_date:
            query = query.where(Transaction.created_at >= filters.start_date)
        if filters.end_date:
            query = query.where(Transaction.created_at <= filters.end_date)
        return query

    async def query_by_date_range(
        self,
        start: datetime,
        end: datetime,
        filters: TransactionFilters | None = None,
        ascending: bool = False,
    ) -> list[Transaction]:
        """Transactions with start <= created_at <= end.

        Args:
            start: Inclusive lower bound (naive UTC)
            end: Inclusive upper bound (naive UTC)
            filters: Optional status/type/phone filters
            ascending: Oldest first (reconciliation) instead of newest first
        """
        query = self._filtered_query(filters).where(
            Transaction.created_at >= start, Transaction.created_at <= end
        )
        order = Transaction.created_at.asc() if ascending else Transaction.created_at.desc()
        result = await self.db.execute(query.order_by(order, Transaction.id))
        return list(result.scalars().all())

    async def list_transactions(
        self,
        filters: TransactionFilters | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> PaginatedResult[Transaction]:
        query = self._filtered_query(filters).order_by(
            Transaction.created_at.desc(), Transaction.id.desc()
        )
        return await paginate_query(db=self.db, query=query, params=PaginationParams(page, page_size))

    async def find_transactions(
        self, filters: TransactionFilters | None = None, limit: int | None = None
    ) -> list[Transaction]:
        """Newest-first listing without pagination (CSV export)."""
        query = self._filtered_query(filters).order_by(
            Transaction.created_at.desc(), Transaction.id.desc()
        )
        if limit:
            query = query.limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_stats(
        self, start: datetime | None = None, end: datetime | None = None
    ) -> TransactionStats:
        """Counts and sums by status, optionally limited to a created_at range."""
        query = select(
            Transaction.status,
            func.count(Transaction.id),
            func.coalesce(func.sum(Transaction.amount), 0),
        )
        if start:
            query = query.where(Transaction.created_at >= start)
        if end:
            query = query.where(Transaction.created_at <= end)
        result = await self.db.execute(query.group_by(Transaction.status))

        by_status: dict[str, StatusBreakdown] = {}
        for status, count, total in result.all():
            by_status[TransactionStatus(status).value] = StatusBreakdown(
                count=count, total_amount=Decimal(str(total))
            )

        sync_query = select(Transaction.sap_sync_status, func.count(Transaction.id))
        if start:
            sync_query = sync_query.where(Transaction.created_at >= start)
        if end:
            sync_query = sync_query.where(Transaction.created_at <= end)
        sync_result = await self.db.execute(sync_query.group_by(Transaction.sap_sync_status))
        by_sync = {SapSyncStatus(s).value: count for s, count in sync_result.all()}

        today_start, today_end = local_day_bounds(local_today(self.timezone), self.timezone)
        today_result = await self.db.execute(
            select(func.count(Transaction.id)).where(
                Transaction.created_at >= today_start, Transaction.created_at <= today_end
            )
        )

        def count_of(status: TransactionStatus) -> int:
            breakdown = by_status.get(status.value)
            return breakdown.count if breakdown else 0

        return TransactionStats(
            total_transactions=sum(b.count for b in by_status.values()),
            total_amount=sum((b.total_amount for b in by_status.values()), Decimal("0")),
            successful_transactions=count_of(TransactionStatus.SUCCESS),
            pending_transactions=count_of(TransactionStatus.PENDING),
            failed_transactions=count_of(TransactionStatus.FAILED),
            cancelled_transactions=count_of(TransactionStatus.CANCELLED),
            today_transactions=today_result.scalar() or 0,
            by_status=by_status,
            by_sap_sync_status=by_sync,
        )
