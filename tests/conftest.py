from __future__ import annotations

import os
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.settings import Settings
from app.db.base import Base
from app.db.models import Batch, Institute, Student, Teacher
from app.notification.channels import ChannelKind, SendResult
from app.notification.orchestrator import DeliveryOrchestrator
from app.notification.renderer import MessageRenderer

FIXED_NOW = datetime(2024, 6, 15, 10, 30, tzinfo=timezone.utc)


class FakeChannel:
    """In-memory provider channel recording every send."""

    def __init__(self, name: str, kind: ChannelKind, *, succeed: bool = True, error: str = "provider down"):
        self.name = name
        self.kind = kind
        self.succeed = succeed
        self.error = error
        self.calls: list[tuple[str, object]] = []
        self.raise_next: Exception | None = None

    async def send(self, to, message):
        self.calls.append((to, message))
        if self.raise_next is not None:
            exc, self.raise_next = self.raise_next, None
            raise exc
        if self.succeed:
            return SendResult(
                success=True,
                channel=self.kind,
                provider=self.name,
                provider_message_id=f"{self.name}-{len(self.calls)}",
            )
        return SendResult(success=False, channel=self.kind, provider=self.name, error=self.error)


class RecordingSleep:
    def __init__(self, on_sleep=None):
        self.delays: list[float] = []
        self.on_sleep = on_sleep

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.on_sleep is not None:
            self.on_sleep(delay)


@pytest.fixture()
def db_session():
    """In-memory SQLite session with all tables created."""
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        _env_file=None,
        jwt_secret="test-jwt-secret-with-enough-length",
        trigger_secret="trigger-secret",
        whatsapp_absent_template_sid="HXabsent",
        whatsapp_late_template_sid="HXlate",
    )


@pytest.fixture()
def channels():
    return SimpleNamespace(
        rich=FakeChannel("twilio", ChannelKind.RICH),
        sms=FakeChannel("msg91", ChannelKind.SMS),
    )


@pytest.fixture()
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
def orchestrator(settings: Settings, channels, sleep: RecordingSleep) -> DeliveryOrchestrator:
    return DeliveryOrchestrator(
        [channels.rich, channels.sms],
        MessageRenderer.from_settings(settings),
        sleep=sleep,
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture()
def world(db_session):
    """One institute with a batch, a teacher and two students."""
    institute = Institute(name="Sunrise Tuitions", notifications_enabled=True, notify_for_present=True)
    db_session.add(institute)
    db_session.flush()
    batch = Batch(institute_id=institute.id, name="Class 10 Maths")
    db_session.add(batch)
    db_session.flush()
    teacher = Teacher(institute_id=institute.id, name="Meera", role="admin")
    aarav = Student(institute_id=institute.id, batch_id=batch.id, name="Aarav Mehta", parent_phone="9876543210")
    diya = Student(institute_id=institute.id, batch_id=batch.id, name="Diya Nair", parent_phone="+91 98765 43211")
    db_session.add_all([teacher, aarav, diya])
    db_session.flush()
    return SimpleNamespace(institute=institute, batch=batch, teacher=teacher, students=[aarav, diya])


@pytest.fixture
def client(monkeypatch: pytest.MonkeyPatch) -> TestClient:
    monkeypatch.setenv("DATABASE_URL", "sqlite+pysqlite:///:memory:")

    from app.core.settings import get_settings

    get_settings.cache_clear()

    from app.main import app

    with TestClient(app) as test_client:
        yield test_client

    get_settings.cache_clear()
    os.environ.pop("DATABASE_URL", None)
