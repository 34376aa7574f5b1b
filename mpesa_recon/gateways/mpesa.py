"""M-Pesa Reconciliation Service - Safaricom Daraja client."""

import base64
import logging
from decimal import Decimal
from typing import Any

import httpx

from mpesa_recon.core.config import Settings
from mpesa_recon.gateways.base import FailureKind, GatewayClient, GatewayResult
from mpesa_recon.utils.helpers import local_timestamp

logger = logging.getLogger(__name__)


class MpesaClient(GatewayClient):
    """Daraja API client.

    Endpoints:
        - GET  /oauth/v1/generate                 (Basic auth, client credentials)
        - POST /mpesa/stkpush/v1/processrequest   (Lipa na M-Pesa online)
        - POST /mpesa/stkpushquery/v1/query       (STK Push status)
        - POST /mpesa/b2c/v1/paymentrequest       (Business to customer)
    """

    NAME = "M-Pesa"

    BASE_URLS = {
        "production": "https://api.safaricom.co.ke",
        "sandbox": "https://sandbox.safaricom.co.ke",
    }

    STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
    STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"
    B2C_PATH = "/mpesa/b2c/v1/paymentrequest"

    def __init__(
        self,
        consumer_key: str,
        consumer_secret: str,
        shortcode: str,
        passkey: str,
        environment: str = "sandbox",
        timezone: str = "Africa/Nairobi",
        initiator_name: str = "",
        security_credential: str = "",
        timeout: float = 30.0,
        token_buffer_seconds: int = 60,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            self.BASE_URLS.get(environment, self.BASE_URLS["sandbox"]),
            timeout=timeout,
            token_buffer_seconds=token_buffer_seconds,
            transport=transport,
        )
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.shortcode = shortcode
        self.passkey = passkey
        self.timezone = timezone
        self.initiator_name = initiator_name
        self.security_credential = security_credential

    @classmethod
    def from_settings(
        cls, settings: Settings, transport: httpx.AsyncBaseTransport | None = None
    ) -> "MpesaClient":
        return cls(
            consumer_key=settings.mpesa_consumer_key,
            consumer_secret=settings.mpesa_consumer_secret,
            shortcode=settings.mpesa_shortcode,
            passkey=settings.mpesa_passkey,
            environment=settings.mpesa_environment,
            timezone=settings.timezone,
            initiator_name=settings.mpesa_initiator_name,
            security_credential=settings.mpesa_security_credential,
            timeout=settings.http_timeout_seconds,
            token_buffer_seconds=settings.token_expiry_buffer_seconds,
            transport=transport,
        )

    async def _fetch_token(self, client: httpx.AsyncClient) -> httpx.Response:
        return await client.get(
            "/oauth/v1/generate",
            params={"grant_type": "client_credentials"},
            auth=(self.consumer_key, self.consumer_secret),
        )

    def _extract_error(self, body: Any) -> str | None:
        if isinstance(body, dict):
            return body.get("errorMessage") or body.get("ResponseDescription")
        return None

    def build_password(self, timestamp: str) -> str:
        """base64(shortcode + passkey + timestamp)."""
        raw = f"{self.shortcode}{self.passkey}{timestamp}"
        return base64.b64encode(raw.encode("ascii")).decode("ascii")

    def build_stk_push_request(
        self,
        amount: Decimal,
        phone_number: str,
        account_reference: str,
        transaction_desc: str,
        callback_url: str,
    ) -> dict[str, Any]:
        """Build the processrequest body.

        Args:
            amount: Whole-shilling amount
            phone_number: Normalized MSISDN (254XXXXXXXXX)
            account_reference: Shown to the customer on the prompt
            transaction_desc: Short description
            callback_url: Where Daraja posts the result

        Returns:
            Request body ready to send
        """
        timestamp = local_timestamp(self.timezone)
        return {
            "BusinessShortCode": self.shortcode,
            "Password": self.build_password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": int(amount),
            "PartyA": phone_number,
            "PartyB": self.shortcode,
            "PhoneNumber": phone_number,
            "CallBackURL": callback_url,
            "AccountReference": account_reference,
            "TransactionDesc": transaction_desc,
        }

    def build_b2c_request(
        self,
        amount: Decimal,
        phone_number: str,
        remarks: str,
        occasion: str,
        result_url: str,
        queue_timeout_url: str,
    ) -> dict[str, Any]:
        return {
            "InitiatorName": self.initiator_name,
            "SecurityCredential": self.security_credential,
            "CommandID": "BusinessPayment",
            "Amount": int(amount),
            "PartyA": self.shortcode,
            "PartyB": phone_number,
            "Remarks": remarks,
            "QueueTimeOutURL": queue_timeout_url,
            "ResultURL": result_url,
            "Occasion": occasion,
        }

    async def stk_push(self, request: dict[str, Any]) -> GatewayResult:
        """Send an STK Push request.

        A 2xx response with ResponseCode other than "0" is a business failure.
        """
        result = await self._request("POST", self.STK_PUSH_PATH, json=request)
        return self._check_response_code(result)

    async def query_stk_status(self, checkout_request_id: str) -> GatewayResult:
        timestamp = local_timestamp(self.timezone)
        request = {
            "BusinessShortCode": self.shortcode,
            "Password": self.build_password(timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }
        return await self._request("POST", self.STK_QUERY_PATH, json=request)

    async def b2c_payment(self, request: dict[str, Any]) -> GatewayResult:
        result = await self._request("POST", self.B2C_PATH, json=request)
        return self._check_response_code(result)

    def _check_response_code(self, result: GatewayResult) -> GatewayResult:
        if not result.ok:
            return result
        code = str(result.value.get("ResponseCode", ""))
        if code != "0":
            detail = self._extract_error(result.value) or "M-Pesa request was not accepted"
            logger.warning(f"M-Pesa rejected request: ResponseCode={code} {detail}")
            return GatewayResult.failure(
                FailureKind.BUSINESS, detail, status_code=result.status_code, value=result.value
            )
        return result
