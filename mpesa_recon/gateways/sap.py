"""M-Pesa Reconciliation Service - SAP accounting document client."""

import logging
from datetime import date
from typing import Any

import httpx

from mpesa_recon.core.config import Settings
from mpesa_recon.gateways.base import FailureKind, GatewayClient, GatewayResult

logger = logging.getLogger(__name__)


class SapClient(GatewayClient):
    """SAP OData client for journal entries.

    Endpoints:
        - POST /sap/bc/sec/oauth2/token                 (form-encoded client credentials)
        - POST /sap/opu/odata/sap/API_ACCOUNTINGDOCUMENT (create document)
        - GET  /sap/opu/odata/sap/API_ACCOUNTINGDOCUMENT (query with $filter)
    """

    NAME = "SAP"

    TOKEN_PATH = "/sap/bc/sec/oauth2/token"
    DOCUMENT_PATH = "/sap/opu/odata/sap/API_ACCOUNTINGDOCUMENT"

    def __init__(
        self,
        base_url: str,
        client_id: str,
        client_secret: str,
        timeout: float = 30.0,
        token_buffer_seconds: int = 60,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            base_url,
            timeout=timeout,
            token_buffer_seconds=token_buffer_seconds,
            transport=transport,
        )
        self.client_id = client_id
        self.client_secret = client_secret

    @classmethod
    def from_settings(
        cls, settings: Settings, transport: httpx.AsyncBaseTransport | None = None
    ) -> "SapClient":
        return cls(
            base_url=settings.sap_base_url,
            client_id=settings.sap_client_id,
            client_secret=settings.sap_client_secret,
            timeout=settings.http_timeout_seconds,
            token_buffer_seconds=settings.token_expiry_buffer_seconds,
            transport=transport,
        )

    async def _fetch_token(self, client: httpx.AsyncClient) -> httpx.Response:
        return await client.post(
            self.TOKEN_PATH,
            data={
                "grant_type": "client_credentials",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
        )

    def _extract_error(self, body: Any) -> str | None:
        # OData error shape: {"error": {"message": {"value": "..."}}}
        if not isinstance(body, dict):
            return None
        error = body.get("error")
        if isinstance(error, dict):
            message = error.get("message")
            if isinstance(message, dict):
                return message.get("value")
            if isinstance(message, str):
                return message
        return body.get("message")

    async def create_accounting_document(self, document: dict[str, Any]) -> GatewayResult:
        """Post a journal entry.

        Returns:
            GatewayResult whose value carries documentId on success
        """
        result = await self._request("POST", self.DOCUMENT_PATH, json=document)
        if result.ok and not result.value.get("documentId"):
            logger.error(f"SAP accepted document without documentId: {result.value}")
            return GatewayResult.failure(
                FailureKind.BUSINESS,
                "SAP response did not include a document id",
                status_code=result.status_code,
                value=result.value,
            )
        return result

    async def query_documents(
        self, company_code: str, document_type: str, posting_date: date
    ) -> GatewayResult:
        """List documents posted on a date.

        Returns:
            GatewayResult whose value["value"] is the document list
        """
        odata_filter = (
            f"CompanyCode eq '{company_code}' and DocumentType eq '{document_type}' "
            f"and PostingDate eq {posting_date.isoformat()}"
        )
        result = await self._request("GET", self.DOCUMENT_PATH, params={"$filter": odata_filter})
        if result.ok and not isinstance(result.value.get("value"), list):
            return GatewayResult.failure(
                FailureKind.BUSINESS,
                "SAP query response did not include a value list",
                status_code=result.status_code,
                value=result.value,
            )
        return result

    async def health(self) -> GatewayResult:
        """Check connectivity by requesting a fresh token."""
        self.clear_token()
        return await self.get_token()
