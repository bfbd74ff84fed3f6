from collections.abc import AsyncGenerator

from fastapi import Depends
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from mfa_engine.core.mongodb import mongodb
from mfa_engine.core.postgres import AsyncSessionLocal
from mfa_engine.core.redis import redis_client
from mfa_engine.external_services.email import EmailNotifier, EmailServiceFactory
from mfa_engine.services.audit_service import AuditService
from mfa_engine.services.login_service import LoginElevationService
from mfa_engine.services.mfa_service import MFAMethodService


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        yield session


async def get_audit_service() -> AuditService:
    if mongodb.db is None:
        raise RuntimeError("MongoDB is not initialized")
    return AuditService(mongodb.db)


async def get_redis() -> Redis:
    if redis_client.client is None:
        raise RuntimeError("Redis client is not initialized")
    return redis_client.client


async def get_email_notifier() -> EmailNotifier:
    return EmailNotifier(EmailServiceFactory.create())


async def get_mfa_service(
    db: AsyncSession = Depends(get_db),
    redis_conn: Redis = Depends(get_redis),
    notifier: EmailNotifier = Depends(get_email_notifier),
    audit_service: AuditService = Depends(get_audit_service),
) -> MFAMethodService:
    return MFAMethodService(db, redis_conn, notifier=notifier, audit_service=audit_service)


async def get_login_service(
    db: AsyncSession = Depends(get_db),
    redis_conn: Redis = Depends(get_redis),
    notifier: EmailNotifier = Depends(get_email_notifier),
    audit_service: AuditService = Depends(get_audit_service),
) -> LoginElevationService:
    return LoginElevationService(db, redis_conn, notifier=notifier, audit_service=audit_service)
