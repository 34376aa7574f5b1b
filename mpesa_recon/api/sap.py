"""M-Pesa Reconciliation Service - SAP integration endpoints."""

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from mpesa_recon.api.deps import LedgerSync, Sap
from mpesa_recon.schemas.sap import SapHealthResponse, SapSyncRequest, SapSyncResponse

router = APIRouter(prefix="/sap", tags=["SAP"])


@router.post("/sync", response_model=SapSyncResponse)
async def sync_transaction(data: SapSyncRequest, service: LedgerSync) -> SapSyncResponse:
    """Post a transaction to SAP with optional document overrides."""
    return await service.sync_transaction(
        data.transaction_id,
        company_code=data.company_code,
        document_type=data.document_type,
        posting_date=data.posting_date,
        performed_by="api",
    )


@router.get("/health", response_model=SapHealthResponse)
async def sap_health(sap: Sap) -> SapHealthResponse | JSONResponse:
    """Check SAP connectivity by requesting a token. 503 when unreachable."""
    result = await sap.health()
    if result.ok:
        return SapHealthResponse(
            success=True, status="HEALTHY", message="SAP connectivity is healthy"
        )
    body = SapHealthResponse(
        success=False, status="UNHEALTHY", message=result.detail or "SAP connectivity issue"
    )
    return JSONResponse(status_code=503, content=body.model_dump())
