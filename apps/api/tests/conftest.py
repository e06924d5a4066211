"""
Test configuration and fixtures.

Provides:
- Fresh in-memory SQLite schema per test (app code commits freely)
- Test organization, lead and student
- HTTPX AsyncClient bound to the same session
- Fake outbound senders that record what they were asked to send
"""
import contextlib
import os
import uuid
from typing import AsyncGenerator, Generator

# Must be set before dojoflow.core.config is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["TESTING"] = "1"
os.environ.setdefault("TWILIO_ACCOUNT_SID", "")
os.environ.setdefault("SENDGRID_API_KEY", "")

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.orm import Session

from dojoflow.core.deps import get_db
from dojoflow.db.base import Base
from dojoflow.db.models import Lead, Organization, Student
from dojoflow.db.session import SessionLocal, engine
from dojoflow.main import app


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """
    Creates the schema, yields a session, then drops everything.

    The in-memory database lives on one shared connection (StaticPool), so
    every session and the API client see the same data.
    """
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def session_factory(db: Session):
    """Scheduler session factory that hands out the test session."""
    return lambda: contextlib.nullcontext(db)


@pytest.fixture(scope="function")
def test_org(db: Session) -> Organization:
    """Create a test organization."""
    org = Organization(
        id=uuid.uuid4(),
        name="Test Dojo",
        slug=f"test-dojo-{uuid.uuid4().hex[:8]}",
        business_name="Tiger Martial Arts",
        operator_name="Sensei Ana",
        business_phone="555-010-2000",
        business_email="front@tiger.test",
        billing_email="billing@tiger.test",
        ai_assistant_name="Kai",
    )
    db.add(org)
    db.commit()
    return org


@pytest.fixture(scope="function")
def other_org(db: Session) -> Organization:
    org = Organization(
        id=uuid.uuid4(),
        name="Other Dojo",
        slug=f"other-dojo-{uuid.uuid4().hex[:8]}",
    )
    db.add(org)
    db.commit()
    return org


@pytest.fixture(scope="function")
def test_lead(db: Session, test_org: Organization) -> Lead:
    lead = Lead(
        id=uuid.uuid4(),
        organization_id=test_org.id,
        first_name="Maya",
        last_name="Chen",
        email="maya@example.com",
        phone="(555) 123-4567",
    )
    db.add(lead)
    db.commit()
    return lead


@pytest.fixture(scope="function")
def test_student(db: Session, test_org: Organization) -> Student:
    student = Student(
        id=uuid.uuid4(),
        organization_id=test_org.id,
        first_name="Leo",
        last_name="Park",
        email="leo@example.com",
        phone="+15559876543",
    )
    db.add(student)
    db.commit()
    return student


# =============================================================================
# Fake senders
# =============================================================================

class FakeSender:
    """Records sends; raises ``error`` instead when set."""

    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.sent: list[dict] = []

    async def _record(self, **kwargs) -> str:
        if self.error is not None:
            raise self.error
        self.sent.append(kwargs)
        return f"fake-{len(self.sent)}"

    async def send_sms(self, to: str, body: str) -> str:
        return await self._record(channel="sms", to=to, body=body)

    async def send_email(self, to: str, subject: str, text: str, html_body: str | None = None) -> str:
        return await self._record(channel="email", to=to, subject=subject, text=text)

    async def place_call(self, to: str, script: str) -> str:
        return await self._record(channel="voice", to=to, script=script)


class RecordingNotifier:
    def __init__(self) -> None:
        self.calls: list[tuple] = []

    async def notify(self, db, org_id, balance) -> bool:
        self.calls.append((org_id, balance))
        return True


@pytest.fixture
def fake_sender() -> FakeSender:
    return FakeSender()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


# =============================================================================
# Client Fixtures
# =============================================================================

@pytest.fixture(scope="function")
async def client(db: Session) -> AsyncGenerator[AsyncClient, None]:
    """AsyncClient bound to the test session."""
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
async def org_client(
    client: AsyncClient, test_org: Organization
) -> AsyncGenerator[AsyncClient, None]:
    """Client that identifies as test_org."""
    client.headers["X-Organization-Id"] = str(test_org.id)
    yield client
