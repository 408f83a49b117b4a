"""Pytest fixtures for testing"""

import pytest
from types import SimpleNamespace
from typing import Generator, List

import httpx
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from paysick_gateway.api.main import create_app
from paysick_gateway.api.dependencies import get_lender_notifier
from paysick_gateway.domain.models import LenderType
from paysick_gateway.infrastructure.clients.lender import LenderNotifier
from paysick_gateway.infrastructure.database.models import Base, Lender, Provider
from paysick_gateway.infrastructure.database.session import get_db


# Test database
TEST_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

BANK_SECRET = "bankx-webhook-secret"


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Create test database and session"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def webhook_requests() -> List[httpx.Request]:
    """Requests captured by the fake lender endpoints"""
    return []


@pytest.fixture
def notifier(webhook_requests: List[httpx.Request]) -> LenderNotifier:
    """Lender notifier whose endpoints always answer 200"""

    def handler(request: httpx.Request) -> httpx.Response:
        webhook_requests.append(request)
        return httpx.Response(200, json={"received": True})

    return LenderNotifier(transport=httpx.MockTransport(handler), max_retries=1, backoff_base=0)


@pytest.fixture
def client(db: Session, notifier: LenderNotifier) -> TestClient:
    """Create FastAPI test client with test database"""
    app = create_app()

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_lender_notifier] = lambda: notifier
    return TestClient(app)


@pytest.fixture
def lenders(db: Session) -> SimpleNamespace:
    """
    Two lenders:
    - PAYSICK: balance sheet, 18% base, funds any risk score
    - BANKX: webhook bank, 16% base, only risk scores >= 60
    """
    paysick = Lender(
        name="PaySick Capital",
        code="PAYSICK",
        type=LenderType.PAYSICK_BALANCE_SHEET,
        active=True,
        min_loan_amount=1000,
        max_loan_amount=500000,
        min_risk_score=0,
        max_risk_score=100,
        base_rate=0.18,
        risk_premium_low=0.02,
        risk_premium_mid=0.05,
        risk_premium_high=0.10,
    )
    bank = Lender(
        name="Bank X Health Finance",
        code="BANKX",
        type=LenderType.BANK,
        active=True,
        min_loan_amount=5000,
        max_loan_amount=250000,
        min_risk_score=60,
        max_risk_score=100,
        base_rate=0.16,
        risk_premium_low=0.015,
        risk_premium_mid=0.04,
        risk_premium_high=0.09,
        webhook_url="https://lenders.bankx.test/paysick/loans",
        api_key=BANK_SECRET,
    )
    db.add_all([paysick, bank])
    db.commit()
    return SimpleNamespace(paysick=paysick, bank=bank)


@pytest.fixture
def partner_provider(db: Session) -> Provider:
    provider = Provider(
        id="prov-netcare-01",
        provider_name="Netcare Sunninghill",
        network_partner=True,
        partnership_tier="gold",
    )
    db.add(provider)
    db.commit()
    return provider
