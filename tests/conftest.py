"""
Pytest configuration and fixtures.

The service reads settings at import time, so the environment is prepared
before anything from mpesa_recon is imported.
"""

import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["TIMEZONE"] = "Africa/Nairobi"
os.environ["MPESA_ENVIRONMENT"] = "sandbox"
os.environ["MPESA_CONSUMER_KEY"] = "test-consumer-key"
os.environ["MPESA_CONSUMER_SECRET"] = "test-consumer-secret"
os.environ["MPESA_SHORTCODE"] = "174379"
os.environ["MPESA_PASSKEY"] = "test-passkey"
os.environ["MPESA_INITIATOR_NAME"] = "testapi"
os.environ["MPESA_SECURITY_CREDENTIAL"] = "encrypted-credential"
os.environ["SAP_BASE_URL"] = "https://sap.test"
os.environ["SAP_CLIENT_ID"] = "sap-client"
os.environ["SAP_CLIENT_SECRET"] = "sap-secret"
os.environ["SAP_CASH_ACCOUNT"] = "100000"
os.environ["SAP_REVENUE_ACCOUNT"] = "400000"
os.environ["SAP_BUSINESS_AREA"] = "BA01"
os.environ["SAP_COST_CENTER"] = "CC100"

from collections.abc import AsyncGenerator, Callable  # noqa: E402
from decimal import Decimal  # noqa: E402
from typing import Any  # noqa: E402
from unittest.mock import MagicMock  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402

import mpesa_recon.models  # noqa: E402, F401
from mpesa_recon.core.config import Settings, get_settings  # noqa: E402
from mpesa_recon.gateways.mpesa import MpesaClient  # noqa: E402
from mpesa_recon.gateways.sap import SapClient  # noqa: E402
from mpesa_recon.models.transaction import Transaction, TransactionType  # noqa: E402
from mpesa_recon.schemas.transaction import TransactionDraft  # noqa: E402
from mpesa_recon.services.transaction_store import TransactionStore  # noqa: E402

MPESA_BASE = "https://sandbox.safaricom.co.ke"
SAP_BASE = "https://sap.test"

DARAJA_TOKEN_PATH = "/oauth/v1/generate"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"
B2C_PATH = "/mpesa/b2c/v1/paymentrequest"
SAP_TOKEN_PATH = "/sap/bc/sec/oauth2/token"
SAP_DOCUMENT_PATH = "/sap/opu/odata/sap/API_ACCOUNTINGDOCUMENT"

Route = Callable[[httpx.Request], httpx.Response] | tuple[int, dict[str, Any]]


class GatewayStub:
    """httpx MockTransport handler that routes by URL path and records calls.

    Routes map a path to either a (status, json) pair or a callable taking
    the request. Unknown paths answer 404.
    """

    def __init__(self, routes: dict[str, Route] | None = None):
        self.routes: dict[str, Route] = dict(routes or {})
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(request.url.path)
        if route is None:
            return httpx.Response(404, json={"errorMessage": f"No route for {request.url.path}"})
        if callable(route):
            return route(request)
        status, body = route
        return httpx.Response(status, json=body)

    def calls(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


def stk_accepted(checkout_request_id: str = "ws_CO_191220191020363925") -> dict[str, Any]:
    return {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_request_id,
        "ResponseCode": "0",
        "ResponseDescription": "Success. Request accepted for processing",
        "CustomerMessage": "Success. Request accepted for processing",
    }


def stk_callback(
    checkout_request_id: str,
    result_code: int = 0,
    receipt: str | None = "QAX123",
    amount: Any = 1000,
    result_desc: str | None = None,
) -> dict[str, Any]:
    """Build an STK callback envelope as Daraja posts it."""
    callback: dict[str, Any] = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": result_desc
        if result_desc is not None
        else (
            "The service request is processed successfully."
            if result_code == 0
            else "Request cancelled by user"
        ),
    }
    if result_code == 0:
        items: list[dict[str, Any]] = [
            {"Name": "Amount", "Value": amount},
            {"Name": "Balance"},
            {"Name": "TransactionDate", "Value": 20191219102115},
            {"Name": "PhoneNumber", "Value": 254708374149},
        ]
        if receipt is not None:
            items.insert(1, {"Name": "MpesaReceiptNumber", "Value": receipt})
        callback["CallbackMetadata"] = {"Item": items}
    return {"Body": {"stkCallback": callback}}


@pytest.fixture
def settings() -> Settings:
    return get_settings().model_copy(update={"sap_auto_sync": True})


@pytest.fixture
def daraja() -> GatewayStub:
    """Daraja stub with a valid token and an accepting STK endpoint."""
    return GatewayStub(
        {
            DARAJA_TOKEN_PATH: (200, {"access_token": "daraja-token", "expires_in": "3599"}),
            STK_PUSH_PATH: (200, stk_accepted()),
        }
    )


@pytest.fixture
def sap() -> GatewayStub:
    """SAP stub with a valid token and an accepting document endpoint."""
    return GatewayStub(
        {
            SAP_TOKEN_PATH: (200, {"access_token": "sap-token", "expires_in": 3600}),
            SAP_DOCUMENT_PATH: (201, {"documentId": "1900000001"}),
        }
    )


@pytest.fixture
def mpesa_client(daraja: GatewayStub, settings: Settings) -> MpesaClient:
    return MpesaClient.from_settings(settings, transport=daraja.transport)


@pytest.fixture
def sap_client(sap: GatewayStub, settings: Settings) -> SapClient:
    return SapClient.from_settings(settings, transport=sap.transport)


@pytest.fixture
def enqueue_sync() -> MagicMock:
    """Stands in for the Celery dispatch of ledger syncs."""
    return MagicMock()


@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], Any]:
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_transaction(db: AsyncSession):
    """Insert a PENDING STK Push transaction through the store."""
    counter = {"n": 0}

    async def _make(
        amount: Decimal | str = "1000",
        checkout_request_id: str | None = None,
        phone_number: str = "254712345678",
        account_reference: str | None = "INV001",
    ) -> Transaction:
        counter["n"] += 1
        store = TransactionStore(db)
        transaction = await store.create(
            TransactionDraft(
                amount=Decimal(str(amount)),
                phone_number=phone_number,
                transaction_type=TransactionType.STK_PUSH,
                account_reference=account_reference,
                checkout_request_id=checkout_request_id or f"ws_CO_{counter['n']:06d}",
                merchant_request_id=f"MR-{counter['n']}",
            )
        )
        await db.commit()
        return transaction

    return _make
