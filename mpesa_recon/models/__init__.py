"""Database models."""

from mpesa_recon.models.audit_log import AuditAction, TransactionAuditLog
from mpesa_recon.models.transaction import (
    TERMINAL_STATUSES,
    SapSyncStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
)

__all__ = [
    "TERMINAL_STATUSES",
    "AuditAction",
    "SapSyncStatus",
    "Transaction",
    "TransactionAuditLog",
    "TransactionStatus",
    "TransactionType",
]
