"""Pytest configuration for engine integration tests

WHAT: Provides shared fixtures for service, router and worker-level tests
WHY: Ensures consistent test setup, database isolation, and auth headers
REFERENCES:
    - donorlink/main.py: FastAPI application
    - donorlink/database.py: Database configuration
    - donorlink/deps.py: Dependency injection (get_db, get_rate_limiter)
"""

import os
import uuid
from datetime import datetime
from typing import Generator

import pytest

# Set test environment before any donorlink import
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
# Must be URL-safe base64-encoded 32-byte string (donorlink.security validates at import time)
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")

from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

CRON_SECRET = os.environ["CRON_SECRET"]


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """In-memory SQLite shared across threads (TestClient runs sync routes in a pool)."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite defers BEGIN, which breaks SAVEPOINT; emit it ourselves
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    from donorlink.models import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def test_db_session(test_db_engine) -> Generator[Session, None, None]:
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_db_engine)
    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def app(test_db_session):
    """FastAPI app wired to the test session with rate limiting disabled."""
    from donorlink.database import get_db
    from donorlink.deps import get_rate_limiter
    from donorlink.main import create_app
    from donorlink.services.rate_limiter import OrganizationRateLimiter

    test_app = create_app()

    def override_get_db():
        yield test_db_session

    test_app.dependency_overrides[get_db] = override_get_db
    test_app.dependency_overrides[get_rate_limiter] = lambda: OrganizationRateLimiter(None)
    return test_app


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture
def cron_headers():
    return {"x-cron-secret": CRON_SECRET}


# ============================================================================
# Model Fixtures
# ============================================================================

@pytest.fixture
def organization(test_db_session):
    from donorlink.models import Organization

    org = Organization(id=uuid.uuid4(), name="Friends of Ada", created_at=datetime.utcnow())
    test_db_session.add(org)
    test_db_session.commit()
    return org


@pytest.fixture
def other_organization(test_db_session):
    from donorlink.models import Organization

    org = Organization(id=uuid.uuid4(), name="Committee B", created_at=datetime.utcnow())
    test_db_session.add(org)
    test_db_session.commit()
    return org


@pytest.fixture
def member_user(test_db_session, organization):
    """Viewer-level member of `organization` only."""
    from donorlink.models import OrganizationMember, RoleEnum, User

    user = User(id=uuid.uuid4(), email="member@example.com", name="Member", is_superuser=False)
    test_db_session.add(user)
    test_db_session.flush()
    test_db_session.add(OrganizationMember(
        organization_id=organization.id,
        user_id=user.id,
        role=RoleEnum.viewer,
        status="active",
    ))
    test_db_session.commit()
    return user


@pytest.fixture
def member_headers(member_user):
    from donorlink.security import create_access_token

    return {"Authorization": f"Bearer {create_access_token(member_user.email)}"}


# ============================================================================
# Helpers
# ============================================================================

@pytest.fixture
def add_transaction(test_db_session):
    """Factory: add_transaction(org_id, "T1", amount=25, refcode=...)."""
    from decimal import Decimal

    from donorlink.models import Transaction

    def _add(organization_id, transaction_id, amount="25.00", transaction_date=None, **fields):
        txn = Transaction(
            organization_id=organization_id,
            transaction_id=transaction_id,
            transaction_date=transaction_date or datetime(2025, 3, 1, 12, 0),
            amount=Decimal(str(amount)),
            **fields,
        )
        test_db_session.add(txn)
        test_db_session.commit()
        return txn

    return _add


@pytest.fixture
def add_touchpoint(test_db_session):
    """Factory: add_touchpoint(org_id, occurred_at, donor_email=..., metadata={...})."""
    from donorlink.models import Touchpoint

    def _add(organization_id, occurred_at, metadata=None, **fields):
        tp = Touchpoint(
            organization_id=organization_id,
            occurred_at=occurred_at,
            touchpoint_metadata=metadata,
            **fields,
        )
        test_db_session.add(tp)
        test_db_session.commit()
        return tp

    return _add
