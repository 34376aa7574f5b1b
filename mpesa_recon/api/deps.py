"""Common FastAPI dependencies for API endpoints."""

from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from mpesa_recon.db import get_db
from mpesa_recon.gateways import MpesaClient, SapClient, get_mpesa_client, get_sap_client
from mpesa_recon.services.callback_service import CallbackService
from mpesa_recon.services.ledger_sync_service import LedgerSyncService
from mpesa_recon.services.payment_service import PaymentService
from mpesa_recon.services.reconciliation_service import ReconciliationService
from mpesa_recon.services.transaction_store import TransactionStore

DbSession = Annotated[AsyncSession, Depends(get_db)]
Mpesa = Annotated[MpesaClient, Depends(get_mpesa_client)]
Sap = Annotated[SapClient, Depends(get_sap_client)]


def get_transaction_store(db: DbSession) -> TransactionStore:
    return TransactionStore(db)


def get_payment_service(db: DbSession, mpesa: Mpesa) -> PaymentService:
    return PaymentService(db, mpesa)


def get_callback_service(db: DbSession) -> CallbackService:
    return CallbackService(db)


def get_reconciliation_service(db: DbSession, sap: Sap) -> ReconciliationService:
    return ReconciliationService(db, sap)


def get_ledger_sync_service(db: DbSession, sap: Sap) -> LedgerSyncService:
    return LedgerSyncService(db, sap)


Store = Annotated[TransactionStore, Depends(get_transaction_store)]
Payments = Annotated[PaymentService, Depends(get_payment_service)]
Callbacks = Annotated[CallbackService, Depends(get_callback_service)]
Reconciliation = Annotated[ReconciliationService, Depends(get_reconciliation_service)]
LedgerSync = Annotated[LedgerSyncService, Depends(get_ledger_sync_service)]
