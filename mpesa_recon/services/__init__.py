"""Business logic services."""

from mpesa_recon.services.callback_service import CallbackOutcome, CallbackService
from mpesa_recon.services.ledger_sync_service import LedgerSyncService
from mpesa_recon.services.payment_service import PaymentService
from mpesa_recon.services.reconciliation_service import (
    ReconciliationService,
    find_discrepancies,
)
from mpesa_recon.services.transaction_store import TransactionStore

__all__ = [
    "CallbackOutcome",
    "CallbackService",
    "LedgerSyncService",
    "PaymentService",
    "ReconciliationService",
    "TransactionStore",
    "find_discrepancies",
]
