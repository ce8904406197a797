"""
Pytest configuration and fixtures for integration tests.
"""
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from typing import Generator

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

# Add the parent directory to the path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Keep the app's default SQLite file out of the working tree
os.environ.setdefault("SCANSHARE_DATA_DIR", tempfile.mkdtemp(prefix="scanshare-test-"))

from scanshare.client import ScanShareClient
from scanshare.config import Settings
from scanshare.database import Base, get_db
from scanshare.db_models import Scan, ScanSession
from scanshare.main import app
from scanshare.storage import LocalSessionStore, MemoryStorage


# Create in-memory SQLite database for testing
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def override_get_db():
    """Override database dependency for testing."""
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh database session for each test."""
    # Create all tables
    Base.metadata.create_all(bind=engine)

    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        # Drop all tables after test
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def client(db_session: Session) -> Generator[TestClient, None, None]:
    """Create a test client with database override."""
    # Override the database dependency
    app.dependency_overrides[get_db] = override_get_db

    # Create tables for this test
    Base.metadata.create_all(bind=engine)

    with TestClient(app) as test_client:
        yield test_client

    # Clean up
    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def settings() -> Settings:
    return Settings(server_url="http://testserver", http_timeout=5.0)


@pytest.fixture
def api_client(db_session: Session, settings: Settings) -> Generator[ScanShareClient, None, None]:
    """Scanner-side HTTP client wired straight into the app, no network."""
    app.dependency_overrides[get_db] = override_get_db
    yield ScanShareClient(settings, transport=httpx.ASGITransport(app=app))
    app.dependency_overrides.clear()


class FakeClock:
    """Settable clock for expiry tests."""

    def __init__(self, now: datetime = None):
        self.now = now or datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def store(storage: MemoryStorage, clock: FakeClock) -> LocalSessionStore:
    return LocalSessionStore(storage, clock=clock)


@pytest.fixture
def sample_session(db_session: Session) -> ScanSession:
    """Create a synced session with two scan rows."""
    session = ScanSession(
        short_code="a1b2c3",
        access_code="4821",
        name="Warehouse A",
        type="stock",
        ask_internal_code=True,
    )
    db_session.add(session)
    db_session.flush()

    rows = [
        Scan(
            session_id=session.id,
            code="0123456789012",
            quantity=2,
            scanned_at=datetime(2024, 3, 1, 9, 0, 0),
        ),
        Scan(
            session_id=session.id,
            code="7501234567893",
            quantity=1,
            internal_code="INT-7",
            product_name="Olive oil 1L",
            price=4.5,
            scanned_at=datetime(2024, 3, 1, 9, 5, 0),
        ),
    ]
    for row in rows:
        db_session.add(row)

    db_session.commit()
    db_session.refresh(session)
    return session
