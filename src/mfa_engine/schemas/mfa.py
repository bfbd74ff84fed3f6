from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Annotated, Any, Literal

from pydantic import BaseModel, Field, model_validator

if TYPE_CHECKING:
    from mfa_engine.schemas.user import UserRecord

UINT32_MAX = 2**32 - 1


class MFAMethodType(str, Enum):
    TOTP = "totp"
    PASSKEY = "passkey"
    EMAIL = "email"


class TOTPMetadata(BaseModel):
    type: Literal["totp"] = "totp"
    encrypted_secret: str
    hashed_backup_codes: list[str] = Field(default_factory=list)


class PasskeyMetadata(BaseModel):
    type: Literal["passkey"] = "passkey"
    credential_id: str
    public_key: str
    sign_counter: int = Field(default=0, ge=0, le=UINT32_MAX)
    device_type: str = "unknown"
    backed_up: bool = False
    transports: list[str] = Field(default_factory=list)


class EmailMetadata(BaseModel):
    type: Literal["email"] = "email"
    address: str


MFAMethodMetadata = Annotated[
    TOTPMetadata | PasskeyMetadata | EmailMetadata, Field(discriminator="type")
]


class MFAMethod(BaseModel):
    id: str
    type: MFAMethodType
    name: str
    enabled: bool = False
    created_at: datetime
    metadata: MFAMethodMetadata

    @model_validator(mode="after")
    def metadata_matches_type(self) -> "MFAMethod":
        if self.metadata.type != self.type.value:
            raise ValueError(f"{self.metadata.type} metadata on a {self.type.value} method")
        return self

    @property
    def credential_id(self) -> str | None:
        if isinstance(self.metadata, PasskeyMetadata):
            return self.metadata.credential_id
        return None


class ChallengeCeremony(str, Enum):
    REGISTRATION = "registration"
    AUTHENTICATION = "authentication"


class PendingChallenge(BaseModel):
    """Ephemeral passkey ceremony state, stored with a TTL and consumed on first use."""

    challenge: str
    ceremony: ChallengeCeremony
    user_id: str | None = None
    method_id: str | None = None
    name: str | None = None


class PendingElevation(BaseModel):
    user_id: str
    ip_address: str | None = None
    user_agent: str | None = None


class ElevationState(str, Enum):
    """
    PASSWORD_VERIFIED only exists inside ``login``, between the password check
    and the decision whether a second factor is needed. Callers always receive
    AWAITING_SECOND_FACTOR or VERIFIED.
    """

    PASSWORD_VERIFIED = "password_verified"
    AWAITING_SECOND_FACTOR = "awaiting_second_factor"
    VERIFIED = "verified"


@dataclass
class MFASetup:
    """Setup material returned once at creation time. Never persisted in plaintext."""

    method: MFAMethod | None
    method_id: str
    type: MFAMethodType
    secret: str | None = None
    provisioning_uri: str | None = None
    qr_code_url: str | None = None
    backup_codes: list[str] = field(default_factory=list)
    challenge: str | None = None
    options: dict[str, Any] | None = None


@dataclass
class VerificationResult:
    verified: bool
    metadata: TOTPMetadata | PasskeyMetadata | EmailMetadata | None = None


# Registry query helpers


def get_mfa_methods(user: "UserRecord") -> list[MFAMethod]:
    return list(user.mfa_methods)


def get_enabled_mfa_methods(user: "UserRecord") -> list[MFAMethod]:
    return [method for method in user.mfa_methods if method.enabled]


def is_mfa_enabled_for_user(user: "UserRecord") -> bool:
    return any(method.enabled for method in user.mfa_methods)


def get_mfa_method_by_id(user: "UserRecord", method_id: str) -> MFAMethod | None:
    return next((method for method in user.mfa_methods if method.id == method_id), None)


def get_passkey_method_by_credential_id(
    user: "UserRecord", credential_id: str, enabled_only: bool = True
) -> MFAMethod | None:
    for method in user.mfa_methods:
        if method.credential_id == credential_id and (method.enabled or not enabled_only):
            return method
    return None


def get_passkey_credentials(user: "UserRecord", enabled_only: bool = True) -> list[PasskeyMetadata]:
    return [
        method.metadata
        for method in user.mfa_methods
        if isinstance(method.metadata, PasskeyMetadata) and (method.enabled or not enabled_only)
    ]


def order_for_code_verification(methods: Iterable[MFAMethod]) -> list[MFAMethod]:
    """TOTP-capable methods first, then email, each group in enrollment order."""
    rank = {MFAMethodType.TOTP: 0, MFAMethodType.EMAIL: 1}
    candidates = [method for method in methods if method.type in rank]
    return sorted(candidates, key=lambda method: rank[method.type])


# Request / response bodies


class MFAMethodResponse(BaseModel):
    id: str
    type: MFAMethodType
    name: str
    enabled: bool
    created_at: datetime
    backup_codes_remaining: int | None = None
    device_type: str | None = None
    backed_up: bool | None = None
    transports: list[str] | None = None

    @classmethod
    def from_method(cls, method: MFAMethod) -> "MFAMethodResponse":
        response = cls(
            id=method.id,
            type=method.type,
            name=method.name,
            enabled=method.enabled,
            created_at=method.created_at,
        )
        if isinstance(method.metadata, TOTPMetadata):
            response.backup_codes_remaining = len(method.metadata.hashed_backup_codes)
        elif isinstance(method.metadata, PasskeyMetadata):
            response.device_type = method.metadata.device_type
            response.backed_up = method.metadata.backed_up
            response.transports = method.metadata.transports
        return response


class MFASetupRequest(BaseModel):
    type: MFAMethodType
    name: str = Field(..., min_length=1, max_length=100)


class MFASetupResponse(BaseModel):
    method_id: str
    type: MFAMethodType
    secret: str | None = None
    provisioning_uri: str | None = None
    qr_code_url: str | None = None
    backup_codes: list[str] | None = None
    challenge: str | None = None
    options: dict[str, Any] | None = None


class PasskeySetupCompleteRequest(BaseModel):
    method_id: str
    challenge: str
    response: dict[str, Any]


class MFAEnableRequest(BaseModel):
    method_id: str
    code: str | None = Field(default=None, max_length=64)


class MFADisableRequest(BaseModel):
    method_id: str
    password: str


class MFADisableAllRequest(BaseModel):
    password: str


class MFAMessageResponse(BaseModel):
    message: str


class MFAVerifyRequest(BaseModel):
    mfa_pending_token: str
    code: str = Field(..., min_length=1, max_length=64)


class MFAPendingRequest(BaseModel):
    mfa_pending_token: str


class PasskeyOptionsResponse(BaseModel):
    challenge: str
    options: dict[str, Any]


class PasskeyVerifyRequest(BaseModel):
    mfa_pending_token: str
    challenge: str
    response: dict[str, Any]


class PasswordlessVerifyRequest(BaseModel):
    challenge: str
    response: dict[str, Any]
