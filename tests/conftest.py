import os
from datetime import datetime, timezone

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_app.db")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("APP_URL", "https://creators.test")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from creatorpay.database import Base
from creatorpay.errors import GatewayUnavailable
from creatorpay.gateway import GatewayClient, GatewaySession, GatewayVerification
from creatorpay.models import COMPLETED, PENDING, MembershipTier

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_creatorpay.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
CREATOR = "creator-1"
FAN = "fan-1"


class FakeGateway(GatewayClient):
    """In-memory gateway: orders succeed unless told otherwise, callbacks
    stay pending until ``settle`` is called."""

    def __init__(self):
        self.orders = {}
        self.verdicts = {}
        self.scheduled = []
        self.verify_calls = 0
        self.fail_create = False
        self.fail_verify = False
        self.fail_schedule = False

    def create_order(self, order_id, amount_minor, currency, kind, description):
        if self.fail_create:
            raise GatewayUnavailable(order_id=order_id)
        session_id = f"cs_{order_id}"
        self.orders[order_id] = {
            "session_id": session_id,
            "amount_minor": amount_minor,
            "currency": currency,
            "kind": kind,
            "description": description,
        }
        return GatewaySession(session_id=session_id, redirect_url=f"https://checkout.test/{session_id}")

    def verify_callback(self, order_id, gateway_transaction_id):
        self.verify_calls += 1
        if self.fail_verify:
            raise GatewayUnavailable(order_id=order_id)
        order = self.orders.get(order_id)
        if order is None or order["session_id"] != gateway_transaction_id:
            return GatewayVerification(authentic=False)
        return self.verdicts.get(order_id, GatewayVerification(authentic=True, status=PENDING))

    def schedule_next_charge(self, supporter_id, date):
        if self.fail_schedule:
            raise GatewayUnavailable(supporter_id=supporter_id)
        self.scheduled.append((supporter_id, date))

    def settle(self, order_id, status=COMPLETED, payment_method="upi"):
        self.verdicts[order_id] = GatewayVerification(authentic=True, status=status, payment_method=payment_method)
        return self.orders[order_id]["session_id"]


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def make_tier(db):
    def _make(creator_id=CREATOR, price_minor=49900, max_supporters=None, is_active=True, name="Gold"):
        tier = MembershipTier(
            creator_id=creator_id,
            name=name,
            price_minor=price_minor,
            currency="INR",
            tier_level=1,
            benefits=["Early access", "Monthly shout-out"],
            max_supporters=max_supporters,
            is_active=is_active,
        )
        db.add(tier)
        db.commit()
        db.refresh(tier)
        return tier
    return _make


@pytest.fixture
def client(monkeypatch, gateway):
    import creatorpay.auth
    from creatorpay.main import app as fastapi_app
    from creatorpay.routes import get_gateway

    # Mock SessionLocal in routes and main
    monkeypatch.setattr("creatorpay.routes.SessionLocal", TestingSessionLocal)
    monkeypatch.setattr("creatorpay.main.SessionLocal", TestingSessionLocal)
    # Mock auth verification and the gateway
    fastapi_app.dependency_overrides[creatorpay.auth.verify_token] = lambda: {"sub": FAN}
    fastapi_app.dependency_overrides[get_gateway] = lambda: gateway
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()
