from typing import Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="", case_sensitive=True, extra="ignore"
    )

    # Application
    APP_NAME: str = "bewCloud"
    APP_VERSION: str = "1.0.0"
    APP_DESCRIPTION: str = "Multi-factor and passkey authentication core"
    DEBUG: bool = False
    API_V1_PREFIX: str = "/api/v1"

    # Public base URL, also the WebAuthn origin and relying party hostname
    BASE_URL: str = "http://localhost:8000"

    # Security
    SECRET_KEY: str = Field(..., min_length=32)
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7

    # Database URLs
    POSTGRES_URL: str = Field(..., description="PostgreSQL connection URL")
    MONGODB_URL: str = Field(..., description="MongoDB connection URL")
    REDIS_URL: str = Field(..., description="Redis connection URL")

    # PostgreSQL specific
    POSTGRES_POOL_SIZE: int = 20
    POSTGRES_MAX_OVERFLOW: int = 10

    # MongoDB specific
    MONGODB_DB_NAME: str = "mfaengine"

    # Redis specific
    REDIS_MAX_CONNECTIONS: int = 50

    # JWT Settings
    JWT_SECRET_KEY: str = Field(..., min_length=32)
    JWT_ALGORITHM: str = "HS256"
    JWT_ISSUER: str = "mfaengine"
    JWT_AUDIENCE: str = "mfaengine-api"

    # Multi-factor authentication
    MFA_ENABLED: bool = True
    MFA_KEY: str = Field(..., min_length=16, description="Key material for at-rest TOTP secrets")
    MFA_SALT: str = Field(..., min_length=8)
    MFA_KDF_ITERATIONS: int = 100_000
    MFA_BACKUP_CODE_COUNT: int = 8
    MFA_TOTP_VALID_WINDOW: int = 1
    MFA_PENDING_TTL_SECONDS: int = 30 * 60
    MFA_CHALLENGE_TTL_SECONDS: int = 5 * 60
    EMAIL_CODE_TTL_SECONDS: int = 30 * 60

    # Email
    EMAIL_PROVIDER: str = "console"
    EMAIL_PROVIDER_API_KEY: str = ""
    EMAIL_SENDER: str = "no-reply@localhost"

    # CORS
    CORS_ORIGINS: str | list[str] = ["http://localhost:3000", "http://localhost:8000"]
    CORS_ALLOW_CREDENTIALS: bool = True
    CORS_ALLOW_METHODS: str | list[str] = ["*"]
    CORS_ALLOW_HEADERS: str | list[str] = ["*"]

    @field_validator("BASE_URL", mode="after")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> Any:
        if isinstance(v, str):
            if v.startswith("[") and v.endswith("]"):
                import json

                try:
                    return json.loads(v)
                except ValueError:
                    pass
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("CORS_ALLOW_METHODS", "CORS_ALLOW_HEADERS", mode="before")
    @classmethod
    def parse_lists(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v


# Global settings instance
settings = Settings()
