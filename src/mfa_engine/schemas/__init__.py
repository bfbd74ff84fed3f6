from .mfa import (
    EmailMetadata,
    MFAMethod,
    MFAMethodType,
    PasskeyMetadata,
    TOTPMetadata,
)
from .user import SessionTokens, UserRecord, UserStatus

__all__ = [
    "EmailMetadata",
    "MFAMethod",
    "MFAMethodType",
    "PasskeyMetadata",
    "TOTPMetadata",
    "SessionTokens",
    "UserRecord",
    "UserStatus",
]
