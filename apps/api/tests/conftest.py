"""
Pytest configuration and fixtures

Every test gets its own in-memory SQLite database (StaticPool, one shared
connection) with the schema created from the models, so nothing leaks
between tests. The app under test is built with ``create_app`` and a fixed
clock.
"""
import pytest
import sys
import os
from uuid import uuid4
from datetime import datetime, timezone

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Settings are read at import time; these must be set before any app import.
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-pytest-only-0123456789")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("ENVIRONMENT", "test")

from fastapi.testclient import TestClient  # noqa: E402

from core.clock import FixedClock  # noqa: E402
from core.config import Settings  # noqa: E402
from core.database import Base, build_engine, build_session_factory  # noqa: E402
from core.security import create_access_token  # noqa: E402
from main import create_app  # noqa: E402
from models import Profile  # noqa: E402
from services.scheduler import CadencePolicy  # noqa: E402
from services.scoring import BaselineScorer  # noqa: E402

# Friday before the 2024 US DST change (Sunday 2024-03-10).
DEFAULT_NOW = datetime(2024, 3, 8, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def settings():
    return Settings(DATABASE_URL="sqlite:///:memory:", REVENUECAT_WEBHOOK_SECRET="rc_test_secret")


@pytest.fixture
def engine(settings):
    engine = build_engine(settings)
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def db_session(session_factory):
    """Session on the test database. Call ``expire_all()`` to see writes made by the app."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FixedClock(DEFAULT_NOW)


@pytest.fixture
def policy():
    return CadencePolicy()


@pytest.fixture
def scorer():
    return BaselineScorer()


@pytest.fixture
def stripe_service():
    """Replaced per test when a Stripe fake is needed."""
    return None


@pytest.fixture
def app(settings, session_factory, clock, scorer, stripe_service):
    return create_app(
        settings,
        session_factory=session_factory,
        clock=clock,
        scorer=scorer,
        stripe_service=stripe_service,
    )


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def user_id():
    return uuid4()


def auth_headers(user_id) -> dict:
    token = create_access_token({"sub": str(user_id)})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def headers(user_id):
    return auth_headers(user_id)


@pytest.fixture
def make_profile(db_session):
    """Insert a profile directly (no API call)."""

    def _make(user_id=None, **fields):
        profile = Profile(user_id=user_id or uuid4(), **fields)
        db_session.add(profile)
        db_session.commit()
        return profile

    return _make
