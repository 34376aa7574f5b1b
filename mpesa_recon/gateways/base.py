"""M-Pesa Reconciliation Service - Outbound gateway abstraction."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class FailureKind(str, Enum):
    """Why a gateway call failed."""

    AUTH = "auth"  # Token request rejected
    HTTP = "http"  # Non-2xx response
    NETWORK = "network"  # Connection error or timeout
    BUSINESS = "business"  # 2xx response carrying an error body


@dataclass
class GatewayResult:
    """Outcome of one gateway call.

    Exactly one branch is populated: value when ok, otherwise kind/detail.
    HTTP errors, network errors and business-level error bodies all end up
    in the failure branch so callers check a single flag.

    Usage:
        result = await client.stk_push(...)
        if not result.ok:
            raise GatewayError(result.detail, kind=result.kind)
    """

    ok: bool
    value: dict[str, Any] = field(default_factory=dict)
    kind: FailureKind | None = None
    detail: str | None = None
    status_code: int | None = None

    @classmethod
    def success(cls, value: dict[str, Any], status_code: int | None = 200) -> "GatewayResult":
        return cls(ok=True, value=value, status_code=status_code)

    @classmethod
    def failure(
        cls,
        kind: FailureKind,
        detail: str,
        status_code: int | None = None,
        value: dict[str, Any] | None = None,
    ) -> "GatewayResult":
        # value keeps the raw error body for auditing
        return cls(ok=False, value=value or {}, kind=kind, detail=detail, status_code=status_code)


@dataclass(frozen=True)
class AccessToken:
    """Cached OAuth bearer token."""

    value: str
    expires_at: datetime

    @classmethod
    def from_response(cls, payload: dict[str, Any], buffer_seconds: int) -> "AccessToken":
        """Build from an OAuth response, expiring buffer_seconds early.

        Both gateways return expires_in in seconds, sometimes as a string.
        """
        expires_in = int(payload.get("expires_in") or 0)
        lifetime = max(expires_in - buffer_seconds, 0)
        return cls(
            value=payload["access_token"],
            expires_at=datetime.now(UTC) + timedelta(seconds=lifetime),
        )

    def is_valid(self, now: datetime | None = None) -> bool:
        return (now or datetime.now(UTC)) < self.expires_at


class GatewayClient(ABC):
    """Base class for OAuth-protected JSON gateways.

    Subclasses implement _fetch_token and _extract_error; this class owns
    the token cache and turns every exception into a GatewayResult.
    """

    NAME: str = ""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        token_buffer_seconds: int = 60,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.token_buffer_seconds = token_buffer_seconds
        self._transport = transport
        self._token: AccessToken | None = None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url, timeout=self.timeout, transport=self._transport
        )

    @abstractmethod
    async def _fetch_token(self, client: httpx.AsyncClient) -> httpx.Response:
        """Send the token request."""

    @abstractmethod
    def _extract_error(self, body: Any) -> str | None:
        """Pull a human-readable message out of an error body."""

    def clear_token(self) -> None:
        self._token = None

    async def get_token(self) -> GatewayResult:
        """Return a cached token, fetching a new one when expired.

        Returns:
            GatewayResult whose value is {"access_token": ...} on success
        """
        if self._token and self._token.is_valid():
            return GatewayResult.success({"access_token": self._token.value})

        try:
            async with self._client() as client:
                response = await self._fetch_token(client)
        except httpx.HTTPError as e:
            logger.error(f"{self.NAME} token request failed: {e}")
            return GatewayResult.failure(FailureKind.NETWORK, f"{self.NAME} unreachable: {e}")

        body = self._json(response)
        if response.status_code != 200 or not body.get("access_token"):
            detail = self._extract_error(body) or f"{self.NAME} authentication failed"
            logger.error(f"{self.NAME} token request rejected: HTTP {response.status_code}")
            return GatewayResult.failure(
                FailureKind.AUTH, detail, status_code=response.status_code, value=body
            )

        self._token = AccessToken.from_response(body, self.token_buffer_seconds)
        return GatewayResult.success({"access_token": self._token.value})

    async def _request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> GatewayResult:
        token = await self.get_token()
        if not token.ok:
            return token

        headers = {
            "Authorization": f"Bearer {token.value['access_token']}",
            "Content-Type": "application/json",
        }
        try:
            async with self._client() as client:
                response = await client.request(
                    method, path, json=json, params=params, headers=headers
                )
        except httpx.TimeoutException:
            logger.error(f"{self.NAME} request timed out: {method} {path}")
            return GatewayResult.failure(FailureKind.NETWORK, f"No response received from {self.NAME}")
        except httpx.HTTPError as e:
            logger.error(f"{self.NAME} request failed: {method} {path}: {e}")
            return GatewayResult.failure(FailureKind.NETWORK, f"{self.NAME} unreachable: {e}")

        body = self._json(response)
        if response.status_code == 401:
            # Token revoked early; next call fetches a fresh one
            self.clear_token()

        if not response.is_success:
            detail = self._extract_error(body) or f"{self.NAME} request failed"
            logger.error(f"{self.NAME} {method} {path} returned HTTP {response.status_code}: {detail}")
            return GatewayResult.failure(
                FailureKind.HTTP, detail, status_code=response.status_code, value=body
            )

        return GatewayResult.success(body, status_code=response.status_code)

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {"raw": response.text}
        return body if isinstance(body, dict) else {"raw": body}
