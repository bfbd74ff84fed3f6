from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from mfa_engine.api.dependencies.deps import get_db, get_redis
from mfa_engine.core.security import token_manager
from mfa_engine.repositories.user_repo import UserRepository
from mfa_engine.schemas.user import UserRecord, UserStatus
from mfa_engine.services.session_service import SessionService

security = HTTPBearer()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db),
    redis_conn: Redis = Depends(get_redis),
) -> UserRecord:
    """
    Dependency to get the current authenticated user from JWT token.
    Only full sessions count; an MFA-pending token is rejected here.
    """
    token = credentials.credentials

    try:
        payload = token_manager.verify_access_token(token)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        ) from e

    user_id: str | None = payload.get("sub")
    session_id: str | None = payload.get("sid")
    if user_id is None or session_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not await SessionService(redis_conn).is_session_active(user_id, session_id):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Session has been revoked or expired",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = await UserRepository(db).get_record(user_id)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return user


async def get_current_active_user(current_user: UserRecord = Depends(get_current_user)) -> UserRecord:
    if current_user.status != UserStatus.ACTIVE:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"User account is {current_user.status.value}",
        )

    return current_user
