"""Pytest fixtures for testing"""

import pytest
from typing import Generator
from unittest.mock import AsyncMock
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from receivables_engine.api.dependencies import get_dispatcher, get_processor_client
from receivables_engine.api.main import create_app
from receivables_engine.domain.models import AmountTier
from receivables_engine.infrastructure.database.models import Base
from receivables_engine.infrastructure.database.session import get_db
from receivables_engine.services.dispatcher import EventDispatcher, build_dispatcher
from receivables_engine.services.registry_service import RegistryService


# Test database
TEST_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

PAYOR_ID = "payor_acme"
PAYOR_ACCOUNT = "acct_acme_primary"

# Scenario rule: single approval below $100, Alice and Bob both from $100
ACME_TIERS = [
    AmountTier(lower_cents=0, upper_cents=10000, required_approvals=1, slot_approvers=(("alice",),)),
    AmountTier(
        lower_cents=10000,
        upper_cents=None,
        required_approvals=2,
        slot_approvers=(("alice", "bob"), ("alice", "bob")),
    ),
]


@pytest.fixture
def session_factory() -> Generator[sessionmaker, None, None]:
    """Create test database; yields the session factory bound to it"""
    Base.metadata.create_all(bind=engine)
    try:
        yield TestingSessionLocal
    finally:
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """Session for service-level tests"""
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def processor() -> AsyncMock:
    """Payment processor that accepts every batch"""
    mock = AsyncMock()
    mock.submit_batch.return_value = "ach_ref_0001"
    return mock


@pytest.fixture
def invoicing() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def notifications() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def dispatcher(
    session_factory: sessionmaker,
    processor: AsyncMock,
    invoicing: AsyncMock,
    notifications: AsyncMock,
) -> EventDispatcher:
    return build_dispatcher(session_factory, processor=processor, invoicing=invoicing, notifications=notifications)


@pytest.fixture
def acme(db: Session) -> str:
    """Payor with the two-tier rule and a verified bank account"""
    registry = RegistryService(db)
    registry.publish_rule(PAYOR_ID, ACME_TIERS)
    registry.set_payor_account(PAYOR_ID, PAYOR_ACCOUNT)
    return PAYOR_ID


@pytest.fixture
def client(session_factory: sessionmaker, dispatcher: EventDispatcher, processor: AsyncMock) -> TestClient:
    """Create FastAPI test client with test database and mocked integrations"""
    app = create_app()

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_processor_client] = lambda: processor
    return TestClient(app)
