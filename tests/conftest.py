"""Shared fixtures: in-memory Redis, a throwaway SQLite user store, recording email provider."""

import os
from collections.abc import AsyncGenerator

os.environ.setdefault("SECRET_KEY", "test-secret-key-that-is-at-least-32-chars")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key-that-is-at-least-32-chars")
os.environ.setdefault("POSTGRES_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("MONGODB_URL", "mongodb://localhost:27017")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("MFA_KEY", "test-mfa-key-material")
os.environ.setdefault("MFA_SALT", "test-mfa-salt")
os.environ.setdefault("BASE_URL", "http://localhost:8000")
os.environ.setdefault("EMAIL_PROVIDER", "console")

import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from mfa_engine.core.postgres import Base  # noqa: E402
from mfa_engine.core.security import SecurityUtils  # noqa: E402
from mfa_engine.external_services.email import EmailNotifier  # noqa: E402
from mfa_engine.models import MFAMethodORM, UserORM  # noqa: E402, F401
from mfa_engine.repositories.user_repo import UserRepository  # noqa: E402
from mfa_engine.schemas.user import UserRecord  # noqa: E402
from mfa_engine.services.login_service import LoginElevationService  # noqa: E402
from mfa_engine.services.mfa_service import MFAMethodService  # noqa: E402
from tests.helpers.email import RecordingEmailProvider  # noqa: E402
from tests.helpers.factories import TEST_PASSWORD  # noqa: E402
from tests.helpers.fake_redis import FakeRedis  # noqa: E402


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def email_provider() -> RecordingEmailProvider:
    return RecordingEmailProvider()


@pytest.fixture
def notifier(email_provider: RecordingEmailProvider) -> EmailNotifier:
    return EmailNotifier(email_provider)


@pytest.fixture
async def db_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'mfa.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def user_repo(db_session: AsyncSession) -> UserRepository:
    return UserRepository(db_session)


@pytest.fixture
async def user(user_repo: UserRepository) -> UserRecord:
    return await user_repo.create_user(
        "alice@example.com", SecurityUtils.hash_password(TEST_PASSWORD)
    )


@pytest.fixture
def mfa_service(
    db_session: AsyncSession, fake_redis: FakeRedis, notifier: EmailNotifier
) -> MFAMethodService:
    return MFAMethodService(db_session, fake_redis, notifier=notifier)  # type: ignore[arg-type]


@pytest.fixture
def login_service(
    db_session: AsyncSession, fake_redis: FakeRedis, notifier: EmailNotifier
) -> LoginElevationService:
    return LoginElevationService(db_session, fake_redis, notifier=notifier)  # type: ignore[arg-type]
