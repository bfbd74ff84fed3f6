from typing import Any

from fastapi import APIRouter, Depends
from pymongo.errors import PyMongoError
from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from mfa_engine.api.dependencies.deps import get_db, get_redis
from mfa_engine.api.v1.me import mfa as me_mfa
from mfa_engine.api.v1.public import auth
from mfa_engine.core.mongodb import mongodb

api_router = APIRouter()

api_router.include_router(auth.router, prefix="/auth", tags=["auth"])
api_router.include_router(me_mfa.router, prefix="/me/mfa", tags=["mfa"])


@api_router.get("/health")
async def health_check(
    db: AsyncSession = Depends(get_db),
    redis_conn: Redis = Depends(get_redis),
) -> dict[str, Any]:
    """
    Postgres and Redis back every login step. MongoDB only holds the audit
    trail, so losing it degrades the service instead of stopping it.
    """
    checks: dict[str, str] = {}

    try:
        await db.execute(text("SELECT 1"))
        checks["postgres"] = "ok"
    except SQLAlchemyError as e:
        checks["postgres"] = f"error: {e}"

    try:
        await redis_conn.ping()
        checks["redis"] = "ok"
    except RedisError as e:
        checks["redis"] = f"error: {e}"

    if mongodb.client is None:
        checks["mongodb"] = "not connected"
    else:
        try:
            await mongodb.client.admin.command("ping")
            checks["mongodb"] = "ok"
        except PyMongoError as e:
            checks["mongodb"] = f"error: {e}"

    if checks["postgres"] != "ok" or checks["redis"] != "ok":
        status = "unhealthy"
    elif checks["mongodb"] != "ok":
        status = "degraded"
    else:
        status = "healthy"
    return {"status": status, "checks": checks}
