"""Shared test fixtures for the Zone Meet API tests."""

import os

# Settings are read at import time
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-pytest-only")
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.pop("REDIS_URL", None)
os.environ.pop("RESEND_API_KEY", None)

from datetime import date, datetime, timedelta, timezone  # noqa: E402
from typing import Generator  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from app import email_service  # noqa: E402
from app.auth import create_token_pair  # noqa: E402
from app.database import Base, enable_sqlite_foreign_keys, get_db  # noqa: E402
from app.main import app as api  # noqa: E402
from app.models import (  # noqa: E402
    AvailabilityTemplate,
    Booking,
    BookingStatus,
    Customer,
    Provider,
    TemplateTimeSlot,
)
from app.routes import auth as auth_routes  # noqa: E402
from app.security_store import InMemoryStore, set_store  # noqa: E402
from app.security_utils import hash_password_bcrypt  # noqa: E402

PROVIDER_PASSWORD = "correct-horse-battery"  # noqa: S105

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
enable_sqlite_foreign_keys(engine)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def tomorrow_utc() -> date:
    return datetime.now(timezone.utc).date() + timedelta(days=1)


def at_utc(day: date, hhmm: str) -> datetime:
    """Naive UTC instant for a wall-clock time on ``day``"""
    hour, minute = (int(p) for p in hhmm.split(":"))
    return datetime(day.year, day.month, day.day, hour, minute)


def iso_z(instant: datetime) -> str:
    return instant.isoformat() + "Z"


@pytest.fixture(autouse=True)
def store() -> Generator[InMemoryStore, None, None]:
    """Fresh in-memory security store (rate limits, lockout, used links) per test."""
    memory_store = InMemoryStore()
    set_store(memory_store)
    yield memory_store
    set_store(None)


@pytest.fixture(autouse=True)
def outbox(monkeypatch) -> list[dict]:
    """Captures e-mails instead of sending them through Resend."""
    sent: list[dict] = []

    async def fake_send_email(to, subject, mjml_content, from_address=None):
        sent.append({"to": to, "subject": subject, "body": mjml_content})
        return {"id": f"email-{len(sent)}"}

    monkeypatch.setattr(email_service, "send_email", fake_send_email)
    return sent


@pytest.fixture
def db_session() -> Generator[Session, None, None]:
    """Session on a fresh in-memory database."""
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client(db_session, monkeypatch) -> TestClient:
    """TestClient whose requests share ``db_session``."""

    def override_get_db():
        yield db_session

    api.dependency_overrides[get_db] = override_get_db
    # Post-login calendar sync opens its own session
    monkeypatch.setattr(auth_routes, "SessionLocal", TestingSessionLocal)
    yield TestClient(api)
    api.dependency_overrides.clear()


def add_provider(session: Session) -> Provider:
    """Provider open 09:00-17:00 UTC every day, offering 30 and 60 minute slots."""
    provider = Provider(
        name="Dr. Ada Lovelace",
        email="ada@example.com",
        password_hash=hash_password_bcrypt(PROVIDER_PASSWORD),
        allowed_durations=[30, 60],
        advance_booking_days=30,
        default_duration=60,
        buffer_minutes=0,
        is_active=True,
    )
    session.add(provider)
    session.flush()

    template = AvailabilityTemplate(
        provider_id=provider.id,
        name="Office hours",
        timezone="UTC",
        is_default=True,
        is_active=True,
    )
    template.time_slots = [
        TemplateTimeSlot(day_of_week=day, start_time="09:00", end_time="17:00", is_enabled=True)
        for day in range(7)
    ]
    session.add(template)
    session.commit()
    session.refresh(provider)
    return provider


@pytest.fixture
def provider(db_session) -> Provider:
    return add_provider(db_session)


@pytest.fixture
def template(db_session, provider) -> AvailabilityTemplate:
    return db_session.query(AvailabilityTemplate).filter_by(provider_id=provider.id).one()


@pytest.fixture
def access_token(provider) -> str:
    return create_token_pair(provider)["accessToken"]


@pytest.fixture
def csrf_token(client) -> str:
    """Fetches /csrf-token so the client carries the matching cookie."""
    response = client.get("/csrf-token")
    assert response.status_code == 200
    return response.json()["csrf_token"]


@pytest.fixture
def provider_headers(access_token, csrf_token) -> dict:
    return {"Authorization": f"Bearer {access_token}", "X-CSRF-Token": csrf_token}


@pytest.fixture
def make_booking(db_session, provider):
    """Insert a booking directly, bypassing availability checks."""

    def _make(
        start: datetime,
        duration: int = 60,
        status: str = BookingStatus.PENDING,
        email: str = "grace@example.com",
    ) -> Booking:
        customer = db_session.query(Customer).filter_by(email=email).first()
        if not customer:
            customer = Customer(email=email, first_name="Grace", last_name="Hopper")
            db_session.add(customer)
            db_session.flush()
        booking = Booking(
            provider_id=provider.id,
            customer_id=customer.id,
            scheduled_at=start,
            duration=duration,
            status=status,
        )
        db_session.add(booking)
        db_session.commit()
        db_session.refresh(booking)
        return booking

    return _make
