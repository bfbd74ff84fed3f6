import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from mfa_engine.api.v1.router import api_router
from mfa_engine.auth_strategies.passkey import rp_id_from_base_url
from mfa_engine.core.config import settings
from mfa_engine.core.mongodb import mongodb
from mfa_engine.core.redis import redis_client
from mfa_engine.core.security import secret_codec

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
)

logger = logging.getLogger(__name__)

# Silence noisy libraries
logging.getLogger("pymongo").setLevel(logging.WARNING)
logging.getLogger("motor").setLevel(logging.WARNING)
logging.getLogger("sendgrid").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    logger.info(f"Starting up {settings.APP_NAME} MFA engine...")
    if settings.MFA_ENABLED:
        # Unusable MFA_KEY or MFA_SALT fails startup instead of the first login
        secret_codec.decrypt(secret_codec.encrypt("startup-check"))
        logger.info(
            f"Passkeys use rp_id={rp_id_from_base_url(settings.BASE_URL)} origin={settings.BASE_URL}"
        )
    else:
        logger.warning("MFA_ENABLED is false: logins will not ask for a second factor")

    await mongodb.connect_to_storage()
    await redis_client.connect()

    yield

    logger.info(f"Shutting down {settings.APP_NAME} MFA engine...")
    await mongodb.close_storage_connection()
    await redis_client.disconnect()


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=settings.APP_DESCRIPTION,
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    lifespan=lifespan,
)


origins = (
    settings.CORS_ORIGINS if isinstance(settings.CORS_ORIGINS, list) else [settings.CORS_ORIGINS]
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
    allow_methods=settings.CORS_ALLOW_METHODS,
    allow_headers=settings.CORS_ALLOW_HEADERS,
)


app.include_router(api_router, prefix=settings.API_V1_PREFIX)

if __name__ == "__main__":
    uvicorn.run(
        "mfa_engine.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
