from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from .mfa import ElevationState, MFAMethod, MFAMethodType


class UserStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class UserRecord(BaseModel):
    """The durable user record as seen by the MFA core: identity plus enrolled methods."""

    id: str
    email: str
    password_hash: str | None = None
    status: UserStatus = UserStatus.ACTIVE
    revision: int = 0
    mfa_methods: list[MFAMethod] = Field(default_factory=list)


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    status: UserStatus


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class SessionTokens(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    session_id: str


class UserSession(BaseModel):
    session_id: str
    user_id: str
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: datetime
    expires_at: datetime


class LoginResponse(BaseModel):
    state: ElevationState
    tokens: SessionTokens | None = None
    mfa_pending_token: str | None = None
    available_methods: list[MFAMethodType] = Field(default_factory=list)
    user: UserResponse | None = None
