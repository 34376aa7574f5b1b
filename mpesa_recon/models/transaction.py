"""M-Pesa Reconciliation Service - Transaction model."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from mpesa_recon.utils.helpers import utcnow


class TransactionType(str, Enum):
    """Payment direction."""

    STK_PUSH = "STK_PUSH"  # Customer prompted on phone (Lipa na M-Pesa online)
    B2C = "B2C"  # Business pays customer
    C2B = "C2B"  # Customer pays business
    B2B = "B2B"  # Business pays business
    REVERSAL = "REVERSAL"


class TransactionStatus(str, Enum):
    """Transaction status.

    State transitions:
    - pending -> success (ResultCode 0) / failed (any other code) / cancelled

    SUCCESS, FAILED and CANCELLED are terminal.
    """

    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class SapSyncStatus(str, Enum):
    """Ledger sync status."""

    PENDING = "PENDING"
    SYNCED = "SYNCED"
    FAILED = "FAILED"


TERMINAL_STATUSES = frozenset(
    {TransactionStatus.SUCCESS, TransactionStatus.FAILED, TransactionStatus.CANCELLED}
)


class Transaction(SQLModel, table=True):
    """One row per payment attempt.

    Created PENDING at initiation, moved to a terminal status by the gateway
    callback, and optionally posted to SAP afterwards. Rows are never deleted.

    Attributes:
        id: Auto-increment primary key
        checkout_request_id: STK Push tracking id (unique once assigned)
        merchant_request_id: STK Push merchant tracking id
        conversation_id: B2C tracking id
        originator_conversation_id: B2C originator tracking id
        mpesa_receipt: Receipt number, present only on SUCCESS

        # Payment details
        amount: Amount in KES
        phone_number: Payer/payee MSISDN, 2547XXXXXXXX
        account_reference: Free-text tag shown to the customer
        transaction_type: Payment direction

        # Lifecycle
        status: Lifecycle status
        result_code: Gateway result code (0 = success)
        result_desc: Gateway result description
        transaction_date: Gateway completion time

        # Ledger sync
        sap_reference: SAP accounting document id
        sap_sync_status: Ledger sync status
        sap_sync_date: Time the document was posted

        # Audit
        request_payload / response_payload / callback_payload: Raw payloads
        retry_count: Failed ledger sync attempts
        error_message: Last ledger sync error
    """

    __tablename__ = "mpesa_transactions"

    id: int | None = Field(default=None, primary_key=True)
    checkout_request_id: str | None = Field(
        default=None, max_length=100, unique=True, index=True
    )
    merchant_request_id: str | None = Field(default=None, max_length=100)
    conversation_id: str | None = Field(default=None, max_length=100, unique=True, index=True)
    originator_conversation_id: str | None = Field(default=None, max_length=100)
    mpesa_receipt: str | None = Field(default=None, max_length=50, unique=True, index=True)

    # Payment details
    amount: Decimal = Field(
        sa_column=sa.Column(sa.DECIMAL(12, 2), nullable=False),
        description="Amount in KES",
    )
    phone_number: str = Field(max_length=20, index=True)
    account_reference: str | None = Field(default=None, max_length=12)
    transaction_type: TransactionType = Field(index=True)

    # Lifecycle
    status: TransactionStatus = Field(default=TransactionStatus.PENDING, index=True)
    result_code: int | None = Field(default=None)
    result_desc: str | None = Field(default=None, sa_column=sa.Column(sa.Text, nullable=True))
    transaction_date: datetime | None = Field(default=None)

    # Ledger sync
    sap_reference: str | None = Field(default=None, max_length=100, index=True)
    sap_sync_status: SapSyncStatus = Field(default=SapSyncStatus.PENDING, index=True)
    sap_sync_date: datetime | None = Field(default=None)

    # Raw payloads
    request_payload: dict[str, Any] | None = Field(
        default=None, sa_column=sa.Column(sa.JSON, nullable=True)
    )
    response_payload: dict[str, Any] | None = Field(
        default=None, sa_column=sa.Column(sa.JSON, nullable=True)
    )
    callback_payload: dict[str, Any] | None = Field(
        default=None, sa_column=sa.Column(sa.JSON, nullable=True)
    )

    retry_count: int = Field(default=0)
    error_message: str | None = Field(default=None, sa_column=sa.Column(sa.Text, nullable=True))

    # Timestamps
    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)
