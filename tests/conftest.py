import os

os.environ.setdefault("SQLALCHEMY_DATABASE_URL", "sqlite:///:memory:")

import uuid
from datetime import datetime, timedelta
from typing import Generator
import pytest
from sqlalchemy.orm import sessionmaker, Session
from faker import Faker

from db.session import build_engine
from models.base import Base
from models import SecretVersion
from repositories.secret_version_repository import SecretVersionRepository
from services.audit_emitter import AuditEvent
from services.cipher import generate_key
from services.expiry_sweeper import ExpirySweeper
from services.key_registry import EncryptionKey, KeyRegistry
from services.secret_lifecycle_service import SecretLifecycleService

fake = Faker()

# Test database setup
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = build_engine(SQLALCHEMY_DATABASE_URL)

TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingAuditEmitter:
    def __init__(self):
        self.events: list[AuditEvent] = []

    def record(self, event: AuditEvent) -> None:
        self.events.append(event)

    def actions(self) -> list[str]:
        return [event.action for event in self.events]


class FailingAuditEmitter:
    def record(self, event: AuditEvent) -> None:
        raise ConnectionError("audit store unavailable")


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a test database session."""
    Base.metadata.create_all(bind=engine)

    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def session_factory(db_session: Session) -> sessionmaker:
    """Session factory bound to the same in-memory database as ``db_session``."""
    return TestingSessionLocal


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 1, 12, 0, 0))


@pytest.fixture
def master_key_hex() -> str:
    return generate_key()


@pytest.fixture
def key_registry(master_key_hex: str) -> KeyRegistry:
    return KeyRegistry(EncryptionKey.from_hex(master_key_hex, 1))


@pytest.fixture
def audit_emitter() -> RecordingAuditEmitter:
    return RecordingAuditEmitter()


@pytest.fixture
def failing_audit_emitter() -> FailingAuditEmitter:
    return FailingAuditEmitter()


@pytest.fixture
def repository(db_session: Session) -> SecretVersionRepository:
    return SecretVersionRepository(db_session, retry_attempts=3, retry_min_wait=0, retry_max_wait=0)


@pytest.fixture
def lifecycle_service(
    repository: SecretVersionRepository,
    key_registry: KeyRegistry,
    audit_emitter: RecordingAuditEmitter,
    clock: FrozenClock,
) -> SecretLifecycleService:
    return SecretLifecycleService(
        repository=repository,
        key_registry=key_registry,
        audit_emitter=audit_emitter,
        clock=clock,
        grace_period=timedelta(hours=24),
        hard_delete_after_days=30,
    )


@pytest.fixture
def sweeper(session_factory: sessionmaker, audit_emitter: RecordingAuditEmitter, clock: FrozenClock) -> ExpirySweeper:
    return ExpirySweeper(
        session_factory,
        audit_emitter=audit_emitter,
        clock=clock,
        interval_minutes=5,
        warning_window=timedelta(hours=1),
    )


@pytest.fixture
def project_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def secret_name() -> str:
    return fake.slug().replace("-", "_")[:40] or "api_key"


@pytest.fixture
def sample_secret(lifecycle_service: SecretLifecycleService, project_id: uuid.UUID) -> SecretVersion:
    """Create a sample secret for testing."""
    return lifecycle_service.create(project_id, "db-pass", "hunter2", created_by="user-1")
