"""Test fixtures for the booking engine."""

from datetime import date, timedelta
from typing import Dict, Optional

import fakeredis
import pytest
import pytest_asyncio
from fakeredis import FakeAsyncRedis
from httpx import ASGITransport, AsyncClient

from rinkbook.db.connection import redis_connection
from rinkbook.main import app
from rinkbook.models.schemas import (
    BookingRequest,
    CheckoutSession,
    CreditPackageType,
    CreditPurchaseLot,
    PaymentStatus,
    RegistrationForm,
    RegistrationRecord,
    SessionType,
    utcnow,
)
from rinkbook.services.gateway import payment_gateway, PaymentGatewayError
from rinkbook.services.ledger import credit_ledger
from rinkbook.services.registrations import registration_repository

# A Wednesday
TODAY = date(2031, 1, 1)
NEXT_MONDAY = date(2031, 1, 6)


@pytest_asyncio.fixture()
async def redis_client():
    """Fresh in-memory Redis (with Lua) swapped into the shared connection."""
    client = FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    redis_connection.use(client)
    yield client
    await redis_connection.close()


@pytest_asyncio.fixture()
async def client(redis_client):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http


class GatewayStub:
    """Stands in for Stripe; tests register the sessions it should return."""

    def __init__(self):
        self.sessions: Dict[str, CheckoutSession] = {}
        self.calls = 0

    def add(self, session_id: str, **fields) -> CheckoutSession:
        values = {"status": "complete", "payment_status": "paid"}
        values.update(fields)
        session = CheckoutSession(id=session_id, **values)
        self.sessions[session_id] = session
        return session

    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSession:
        self.calls += 1
        if session_id not in self.sessions:
            raise PaymentGatewayError(f"No such checkout.session: {session_id}")
        return self.sessions[session_id]


@pytest.fixture()
def gateway(monkeypatch):
    stub = GatewayStub()
    monkeypatch.setattr(payment_gateway, "retrieve_checkout_session", stub.retrieve_checkout_session)
    return stub


@pytest.fixture()
def add_credits(redis_client):
    """Give an owner a purchased lot directly through the ledger."""

    async def _add(owner_id: str, credits: int, expires_in_days: int = 365) -> CreditPurchaseLot:
        now = utcnow()
        lot = CreditPurchaseLot(
            owner_id=owner_id,
            package_type=CreditPackageType.TEN_PACK,
            credits_purchased=credits,
            credits_remaining=credits,
            price_paid=350.0,
            purchased_at=now,
            expires_at=now + timedelta(days=expires_in_days),
        )
        await credit_ledger.ensure_account(owner_id)
        await credit_ledger.insert_lot(lot)
        await credit_ledger.increment_balance(owner_id, credits)
        return lot

    return _add


@pytest.fixture()
def make_registration(redis_client):
    async def _make(
        owner_id: str = "parent-1",
        form: Optional[dict] = None,
        status: PaymentStatus = PaymentStatus.SUCCEEDED,
        registration_id: Optional[str] = None
    ) -> RegistrationRecord:
        registration = RegistrationRecord(
            owner_id=owner_id,
            payment_status=status,
            form_data=RegistrationForm.model_validate(form or {"programType": "group"}),
        )
        if registration_id:
            registration.id = registration_id
        return await registration_repository.save(registration)

    return _make


def booking_request(
    registration: RegistrationRecord,
    session_date: date = NEXT_MONDAY,
    time_slot: str = "5:45 PM",
    session_type: SessionType = SessionType.GROUP
) -> BookingRequest:
    return BookingRequest(
        owner_id=registration.owner_id,
        registration_id=registration.id,
        session_type=session_type,
        session_date=session_date,
        time_slot=time_slot,
    )
