"""Background tasks (Celery)."""

from mpesa_recon.tasks.celery_app import celery_app
from mpesa_recon.tasks.ledger import retry_failed_sap_syncs, sync_transaction_to_sap

__all__ = [
    "celery_app",
    "retry_failed_sap_syncs",
    "sync_transaction_to_sap",
]
