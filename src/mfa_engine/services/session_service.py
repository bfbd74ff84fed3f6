import uuid
from datetime import UTC, datetime, timedelta

import redis.asyncio as redis

from mfa_engine.core.config import settings
from mfa_engine.core.security import token_manager
from mfa_engine.schemas.user import SessionTokens, UserRecord, UserSession


class SessionService:
    """Mints the full session once login is complete: a Redis session plus a JWT pair."""

    def __init__(self, redis_client: redis.Redis):
        self.redis = redis_client

    async def create_session(
        self,
        user: UserRecord,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> SessionTokens:
        session_id = str(uuid.uuid4())
        session_key = f"session:{user.id}:{session_id}"

        expires_in_seconds = settings.REFRESH_TOKEN_EXPIRE_DAYS * 24 * 60 * 60
        now = datetime.now(UTC)

        session_data = UserSession(
            session_id=session_id,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=now,
            expires_at=now + timedelta(seconds=expires_in_seconds),
        )
        await self.redis.setex(session_key, expires_in_seconds, session_data.model_dump_json())

        user_data = {"sub": user.id, "email": user.email, "sid": session_id}
        return SessionTokens(
            access_token=token_manager.create_access_token(data=user_data),
            refresh_token=token_manager.create_refresh_token(data=user_data),
            expires_in=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
            session_id=session_id,
        )

    async def is_session_active(self, user_id: str, session_id: str) -> bool:
        session_key = f"session:{user_id}:{session_id}"
        return await self.redis.exists(session_key) > 0
