"""
Shared fixtures: on-disk SQLite database, fake processor and notification
service behind httpx.MockTransport
"""
import json
import os
import tempfile
import time

# Settings are cached on first use, so the environment is prepared before
# any application module is imported
_TEST_DIR = tempfile.mkdtemp(prefix="donation-gateway-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DIR}/app.db"
os.environ["TRACING_ENABLED"] = "false"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["ENVIRONMENT"] = "test"
os.environ["PROCESSOR_BASE_URL"] = "https://processor.test"
os.environ["PROCESSOR_USER_ID"] = "merchant-user"
os.environ["PROCESSOR_CLIENT_ID"] = "merchant-client"
os.environ["PROCESSOR_PASSWORD"] = "merchant-secret"
os.environ["PROCESSOR_CUST_CODE"] = "CUST01"
os.environ["NOTIFICATION_SERVICE_URL"] = "http://notifications.test"

import httpx
import pytest
import pytest_asyncio
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from donation_gateway.core.config import get_settings
from donation_gateway.models.donation import Base
from donation_gateway.services.notification import NotificationClient
from donation_gateway.services.orchestrator import PaymentOrchestrator
from donation_gateway.services.payment_client import (
    PAYMENT_LINK_PATH,
    TOKEN_PATH,
    TRANSACTION_STATUS_PATH,
    PaymentGatewayClient,
)
from donation_gateway.services.token_cache import TokenCache


def make_token(lifetime_seconds: int = 48 * 3600) -> str:
    return jwt.encode({"sub": "merchant-user", "exp": int(time.time()) + lifetime_seconds}, "test-secret", algorithm="HS256")


def donation_payload(**overrides):
    payload = {
        "fullName": "Asha Rao",
        "email": "Asha@Example.com",
        "phoneNumber": "9876543210",
        "amount": 100,
        "state": "Maharashtra",
        "city": "Vasai",
        "pinCode": "401202",
        "address": "12 Temple Road",
        "seek80G": "no",
        "reasonForDonation": "General Donation",
    }
    payload.update(overrides)
    return payload


def callback_payload(order_id, status="approved", amount="100.00", **overrides):
    payload = {
        "ME_InvNo": order_id,
        "IPG_ID": "IPG-CB-1",
        "TRAN_STATUS": status,
        "TranAmount": amount,
        "RRN": "RRN-0001",
        "CardType": "VISA",
        "CardNumber": "XXXX1111",
        "RC": "00",
        "RC_DESC": "Approved",
    }
    payload.update(overrides)
    return payload


class FakeProcessor:
    """Scriptable stand-in for the pay-by-link API"""

    def __init__(self):
        self.requests = []
        self.token_response = {"status": "True", "token": make_token(), "msg": "ok"}
        self.link_response = {
            "status": "True",
            "smslink": "https://pay.processor.test/pbl?TransID=TX-1001&x=1",
            "txn_id": "IPG-1001",
            "responsecode": "00",
            "responsemessage": "Link created",
        }
        self.payment_status_code = 1
        self.status_gate = None

    def calls(self, path):
        return [r for r in self.requests if r.url.path == path]

    def status_response(self):
        return {
            "Status": "True",
            "ResponseMessage": "ok",
            "Data": [{
                "Payment_Status": self.payment_status_code,
                "Payment_Desc": "desc",
                "IPG_ID": "IPG-1001",
                "Payment_Id": "RRN-POLL-1",
                "Amount": "100.00",
                "Order_Id": "ORD-1",
            }],
        }

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == TOKEN_PATH:
            return httpx.Response(200, json=self.token_response)
        if path == PAYMENT_LINK_PATH:
            return httpx.Response(200, json=self.link_response)
        if path == TRANSACTION_STATUS_PATH:
            if self.status_gate is not None:
                await self.status_gate.wait()
            return httpx.Response(200, json=self.status_response())
        return httpx.Response(404, json={"msg": "unknown"})

    @property
    def transport(self):
        return httpx.MockTransport(self.handler)


class FakeNotificationService:
    """Records receipt emails posted to the notification service"""

    def __init__(self, status_code: int = 202):
        self.status_code = status_code
        self.emails = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.emails.append(json.loads(request.content))
        return httpx.Response(self.status_code, json={"queued": self.status_code < 400})

    @property
    def transport(self):
        return httpx.MockTransport(self.handler)


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def settings():
    """Application settings built from the test environment"""
    return get_settings()


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """On-disk SQLite engine so separate sessions behave like separate connections"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path}/donations.db",
        poolclass=NullPool,
        echo=False
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def notification_service():
    return FakeNotificationService()


@pytest.fixture
def payment_client(settings, processor):
    return PaymentGatewayClient(settings, transport=processor.transport)


@pytest.fixture
def token_cache(payment_client):
    return TokenCache(payment_client.request_token)


@pytest.fixture
def notifier(settings, notification_service):
    return NotificationClient(settings, transport=notification_service.transport)


@pytest.fixture
def make_orchestrator(payment_client, token_cache, notifier, settings):
    """Build an orchestrator bound to the given session"""

    def factory(session, **kwargs):
        return PaymentOrchestrator(session, payment_client, token_cache, notifier, settings, **kwargs)

    return factory
