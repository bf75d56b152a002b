"""Pytest configuration for salesmetrics integration tests

WHAT: Provides shared fixtures for service-level and HTTP endpoint tests
WHY: Every test gets an isolated in-memory database and a consistent account/team setup
REFERENCES:
    - salesmetrics/main.py: FastAPI application
    - salesmetrics/database.py: Database configuration
    - salesmetrics/deps.py: Dependency injection
"""

import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure backend is in path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Set test environment
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")
os.environ.pop("SENTRY_DSN", None)


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """Create in-memory test database engine."""
    # StaticPool: every connection (including TestClient worker threads) sees the same database
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from salesmetrics.database import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def test_db_session(test_db_engine) -> Generator[Session, None, None]:
    """Create test database session with rollback."""
    SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=test_db_engine,
    )

    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def app(test_db_session):
    """Create FastAPI test application."""
    from salesmetrics.main import create_app
    from salesmetrics.database import get_db

    test_app = create_app()

    def override_get_db():
        yield test_db_session

    test_app.dependency_overrides[get_db] = override_get_db
    return test_app


@pytest.fixture
def client(app) -> TestClient:
    """Create TestClient for HTTP testing."""
    return TestClient(app)


@pytest.fixture
def login(client):
    """Authenticate the test client as a given user through the access_token cookie."""
    from salesmetrics.security import create_access_token

    def _login(user) -> TestClient:
        client.cookies.set("access_token", create_access_token(user.email))
        return client

    return _login


# ============================================================================
# Model Fixtures
# ============================================================================

def add_member(db: Session, account, full_name: str, role, email: str = None, is_active: bool = True):
    """Create a user with AccountAccess on `account`."""
    from salesmetrics.models import AccountAccess, User

    user = User(
        email=email or f"{full_name.lower().replace(' ', '.')}@example.com",
        full_name=full_name,
        created_at=datetime.utcnow(),
    )
    db.add(user)
    db.flush()
    db.add(AccountAccess(user_id=user.id, account_id=account.id, role=role, is_active=is_active))
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def member_factory(test_db_session):
    """Create extra team members: member_factory(account, "Full Name", role, ...)."""

    def _create(account, full_name, role, **kwargs):
        return add_member(test_db_session, account, full_name, role, **kwargs)

    return _create


@pytest.fixture
def test_account(test_db_session):
    """Create test account in New York time."""
    from salesmetrics.models import Account

    account = Account(name="Acme Sales", business_timezone="America/New_York")
    test_db_session.add(account)
    test_db_session.commit()
    test_db_session.refresh(account)
    return account


@pytest.fixture
def test_account_b(test_db_session):
    """Create second test account (for isolation tests)."""
    from salesmetrics.models import Account

    account = Account(name="Other Co", business_timezone="UTC")
    test_db_session.add(account)
    test_db_session.commit()
    test_db_session.refresh(account)
    return account


@pytest.fixture
def admin_user(test_db_session, test_account):
    from salesmetrics.models import AccessRoleEnum

    return add_member(test_db_session, test_account, "Alice Admin", AccessRoleEnum.admin)


@pytest.fixture
def setter_user(test_db_session, test_account):
    from salesmetrics.models import AccessRoleEnum

    return add_member(test_db_session, test_account, "Sam Setter", AccessRoleEnum.setter)


@pytest.fixture
def rep_user(test_db_session, test_account):
    from salesmetrics.models import AccessRoleEnum

    return add_member(test_db_session, test_account, "Jane Doe", AccessRoleEnum.sales_rep)


@pytest.fixture
def outsider(test_db_session, test_account_b):
    """User with access to account B only."""
    from salesmetrics.models import AccessRoleEnum

    return add_member(test_db_session, test_account_b, "Olivia Outsider", AccessRoleEnum.admin)
