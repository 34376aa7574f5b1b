"""API module - route handlers and common dependencies."""

from fastapi import FastAPI

__all__ = ["register_routers"]


def register_routers(app: FastAPI) -> None:
    """Register all API routers to the application.

    Args:
        app: FastAPI application instance
    """
    # Daraja initiation & webhooks
    from mpesa_recon.api.mpesa import router as mpesa_router

    app.include_router(mpesa_router, prefix="/api")

    # Transactions, reports & reconciliation
    from mpesa_recon.api.transactions import router as transactions_router

    app.include_router(transactions_router, prefix="/api")

    # SAP ledger
    from mpesa_recon.api.sap import router as sap_router

    app.include_router(sap_router, prefix="/api")
