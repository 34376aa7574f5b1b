"""M-Pesa Reconciliation Service - Transaction audit log model."""

from datetime import datetime
from enum import Enum
from typing import Any

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from mpesa_recon.utils.helpers import utcnow


class AuditAction(str, Enum):
    """Audit log actions."""

    CREATED = "CREATED"
    STATUS_CHANGED = "STATUS_CHANGED"
    SAP_SYNCED = "SAP_SYNCED"
    SAP_SYNC_FAILED = "SAP_SYNC_FAILED"
    INITIATION_FAILED = "INITIATION_FAILED"
    CALLBACK_REJECTED = "CALLBACK_REJECTED"


class TransactionAuditLog(SQLModel, table=True):
    """Append-only audit trail.

    transaction_id is empty for entries with no row behind them, such as a
    rejected initiation or a callback for an unknown checkout id.
    """

    __tablename__ = "transaction_audit_log"

    id: int | None = Field(default=None, primary_key=True)
    transaction_id: int | None = Field(
        default=None, foreign_key="mpesa_transactions.id", index=True
    )
    action: AuditAction = Field(index=True)
    description: str | None = Field(default=None, sa_column=sa.Column(sa.Text, nullable=True))
    performed_by: str = Field(default="system", max_length=100)
    old_values: dict[str, Any] | None = Field(
        default=None, sa_column=sa.Column(sa.JSON, nullable=True)
    )
    new_values: dict[str, Any] | None = Field(
        default=None, sa_column=sa.Column(sa.JSON, nullable=True)
    )
    performed_at: datetime = Field(default_factory=utcnow, index=True)
