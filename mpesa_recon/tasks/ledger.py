"""Ledger sync tasks.

- sync_transaction_to_sap: queued after a successful callback
- retry_failed_sap_syncs: periodic retry of failed postings
"""

import asyncio
import logging

from mpesa_recon.core.exceptions import InvalidStateError, LedgerError, TransactionNotFound
from mpesa_recon.db.engine import close_db, get_session
from mpesa_recon.gateways import get_sap_client
from mpesa_recon.services.ledger_sync_service import LedgerSyncService
from mpesa_recon.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="ledger.sync_transaction_to_sap")
def sync_transaction_to_sap(transaction_id: int) -> dict:
    """Post one transaction to SAP.

    A failed posting is recorded on the row (sap_sync_status FAILED) and left
    to retry_failed_sap_syncs rather than retried here.
    """
    return asyncio.run(_sync_transaction(transaction_id))


async def _sync_transaction(transaction_id: int) -> dict:
    try:
        async with get_session() as db:
            service = LedgerSyncService(db, get_sap_client())
            try:
                result = await service.sync_transaction(transaction_id)
            except (TransactionNotFound, InvalidStateError) as e:
                # AlreadySyncedError is an InvalidStateError
                logger.info(f"Skipping SAP sync for transaction {transaction_id}: {e.message}")
                return {"success": False, "message": e.message}
            except LedgerError as e:
                return {"success": False, "message": e.message}
            return {"success": True, "sap_reference": result.sap_reference}
    except Exception as e:
        logger.exception(f"SAP sync task error for transaction {transaction_id}: {e}")
        raise
    finally:
        await close_db()


@celery_app.task(name="ledger.retry_failed_sap_syncs", ignore_result=True)
def retry_failed_sap_syncs() -> dict:
    """Retry FAILED postings whose retry_count is below sap_max_sync_retries."""
    return asyncio.run(_retry_failed())


async def _retry_failed() -> dict:
    synced = 0
    failed = 0
    try:
        async with get_session() as db:
            service = LedgerSyncService(db, get_sap_client())
            candidates = await service.get_retry_candidates()
            if not candidates:
                return {"synced": 0, "failed": 0}

            logger.info(f"Retrying SAP sync for {len(candidates)} transactions")
            for transaction_id in candidates:
                try:
                    await service.sync_transaction(transaction_id)
                    synced += 1
                except LedgerError:
                    failed += 1
                except InvalidStateError as e:
                    # Synced by another worker since the candidate query
                    logger.info(f"Skipping transaction {transaction_id}: {e.message}")
    except Exception as e:
        logger.exception(f"SAP retry task error: {e}")
        raise
    finally:
        await close_db()

    logger.info(f"SAP retry finished: {synced} synced, {failed} failed")
    return {"synced": synced, "failed": failed}
