"""Outbound gateway clients (Daraja and SAP)."""

from functools import lru_cache

from mpesa_recon.core.config import get_settings
from mpesa_recon.gateways.base import AccessToken, FailureKind, GatewayClient, GatewayResult
from mpesa_recon.gateways.mpesa import MpesaClient
from mpesa_recon.gateways.sap import SapClient

__all__ = [
    "AccessToken",
    "FailureKind",
    "GatewayClient",
    "GatewayResult",
    "MpesaClient",
    "SapClient",
    "get_mpesa_client",
    "get_sap_client",
]


@lru_cache
def get_mpesa_client() -> MpesaClient:
    """Process-wide Daraja client so the access token is shared."""
    return MpesaClient.from_settings(get_settings())


@lru_cache
def get_sap_client() -> SapClient:
    """Process-wide SAP client so the access token is shared."""
    return SapClient.from_settings(get_settings())
