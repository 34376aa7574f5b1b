"""M-Pesa Reconciliation Service - Daraja endpoints and webhooks."""

import logging
from typing import Any

from fastapi import APIRouter, Request

from mpesa_recon.api.deps import Callbacks, Payments, Store
from mpesa_recon.core.exceptions import MalformedCallback, TransactionNotFound
from mpesa_recon.schemas.mpesa import (
    B2CRequest,
    B2CResponse,
    CallbackAck,
    StkPushRequest,
    StkPushResponse,
    StkQueryRequest,
    StkQueryResponse,
    TransactionStatusResponse,
)
from mpesa_recon.services.callback_service import CallbackOutcome

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/mpesa", tags=["M-Pesa"])


async def _read_envelope(request: Request) -> Any:
    # Webhooks must be acknowledged even when the body is not JSON
    try:
        return await request.json()
    except ValueError:
        return None


def _ack(outcome: CallbackOutcome) -> CallbackAck:
    if outcome == CallbackOutcome.DUPLICATE:
        return CallbackAck(ResultCode=0, ResultDesc="Callback already processed")
    return CallbackAck(ResultCode=0, ResultDesc="Callback processed successfully")


@router.post("/stk-push", response_model=StkPushResponse)
async def stk_push(data: StkPushRequest, service: Payments) -> StkPushResponse:
    """Initiate an STK Push payment prompt on the customer's phone."""
    return await service.initiate_stk_push(
        amount=data.amount,
        phone_number=data.phone_number,
        account_reference=data.account_reference,
        transaction_desc=data.transaction_desc,
        callback_url=data.callback_url,
    )


@router.post("/b2c", response_model=B2CResponse)
async def b2c_payment(data: B2CRequest, service: Payments) -> B2CResponse:
    """Pay out to a customer's M-Pesa account."""
    return await service.initiate_b2c(
        amount=data.amount,
        phone_number=data.phone_number,
        remarks=data.remarks,
        occasion=data.occasion,
    )


@router.post("/stk-query", response_model=StkQueryResponse)
async def stk_query(data: StkQueryRequest, service: Payments) -> StkQueryResponse:
    """Ask Daraja for the live status of an STK Push."""
    result = await service.query_stk_status(data.checkout_request_id)
    return StkQueryResponse(result=result)


@router.post("/callback", response_model=CallbackAck)
async def stk_callback(request: Request, service: Callbacks) -> CallbackAck:
    """STK Push result webhook.

    Always answers HTTP 200. ResultCode 1 marks a rejected callback
    (malformed or unknown checkout id).
    """
    envelope = await _read_envelope(request)
    logger.info(f"M-Pesa callback received: {envelope}")
    try:
        outcome = await service.handle_stk_callback(envelope)
    except MalformedCallback as e:
        return CallbackAck(ResultCode=1, ResultDesc=e.message)
    except TransactionNotFound:
        return CallbackAck(ResultCode=1, ResultDesc="Transaction not found")
    return _ack(outcome)


@router.post("/b2c/result", response_model=CallbackAck)
async def b2c_result(request: Request, service: Callbacks) -> CallbackAck:
    """B2C result webhook."""
    envelope = await _read_envelope(request)
    logger.info(f"M-Pesa B2C result received: {envelope}")
    try:
        outcome = await service.handle_b2c_result(envelope)
    except MalformedCallback as e:
        return CallbackAck(ResultCode=1, ResultDesc=e.message)
    except TransactionNotFound:
        return CallbackAck(ResultCode=1, ResultDesc="Transaction not found")
    return _ack(outcome)


@router.post("/b2c/timeout", response_model=CallbackAck)
async def b2c_timeout(request: Request) -> CallbackAck:
    """B2C queue timeout webhook.

    The request timed out in Daraja's queue; the final result still arrives
    on the result URL, so the transaction stays PENDING.
    """
    envelope = await _read_envelope(request)
    logger.warning(f"M-Pesa B2C queue timeout received: {envelope}")
    return CallbackAck(ResultCode=0, ResultDesc="Timeout notification received")


@router.get("/transaction-status/{checkout_request_id}", response_model=TransactionStatusResponse)
async def transaction_status(checkout_request_id: str, store: Store) -> TransactionStatusResponse:
    """Stored status of an STK Push."""
    transaction = await store.get_by_checkout_id(checkout_request_id)
    return TransactionStatusResponse(
        transaction_id=transaction.id,
        checkout_request_id=transaction.checkout_request_id,
        status=transaction.status,
        amount=transaction.amount,
        phone_number=transaction.phone_number,
        mpesa_receipt=transaction.mpesa_receipt,
        result_code=transaction.result_code,
        result_desc=transaction.result_desc,
        transaction_date=transaction.transaction_date,
        sap_sync_status=transaction.sap_sync_status,
        created_at=transaction.created_at,
    )
