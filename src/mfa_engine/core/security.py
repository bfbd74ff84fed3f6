# core/security.py

import base64
import binascii
import hashlib
import hmac
import os
import secrets
import string
import uuid
from datetime import UTC, datetime, timedelta
from functools import lru_cache
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from jose import JWTError, jwt
from passlib.context import CryptContext

from mfa_engine.core.config import settings
from mfa_engine.core.exceptions import DecryptionFailedError

pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")

NONCE_SIZE = 12
TAG_SIZE = 16


class SecurityUtils:
    @staticmethod
    def hash_password(password: str) -> str:
        return pwd_context.hash(password)

    @staticmethod
    def verify_password(plain_password: str, hashed_password: str) -> bool:
        return pwd_context.verify(plain_password, hashed_password)

    @staticmethod
    def generate_otp(length: int = 6) -> str:
        return "".join(secrets.choice(string.digits) for _ in range(length))


@lru_cache(maxsize=8)
def _derive_key(key_material: str, salt: str, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt.encode(),
        iterations=iterations,
    )
    return kdf.derive(key_material.encode())


class SecretCodec:
    """
    Encrypts TOTP secrets at rest and hashes consumable codes.

    Ciphertext layout is base64(nonce || AES-256-GCM ciphertext || tag), with the
    key derived from the server-wide MFA key and salt through PBKDF2-SHA256.
    Codes (backup and emailed) are only ever hashed; there is no way back.
    """

    def __init__(
        self,
        key_material: str | None = None,
        salt: str | None = None,
        iterations: int | None = None,
    ) -> None:
        self.key_material = key_material if key_material is not None else settings.MFA_KEY
        self.salt = salt if salt is not None else settings.MFA_SALT
        self.iterations = iterations or settings.MFA_KDF_ITERATIONS

    def _cipher(self) -> AESGCM:
        return AESGCM(_derive_key(self.key_material, self.salt, self.iterations))

    def encrypt(self, secret: str) -> str:
        nonce = os.urandom(NONCE_SIZE)
        encrypted = self._cipher().encrypt(nonce, secret.encode(), None)
        return base64.b64encode(nonce + encrypted).decode()

    def decrypt(self, encrypted_secret: str) -> str:
        try:
            combined = base64.b64decode(encrypted_secret, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecryptionFailedError() from exc

        if len(combined) < NONCE_SIZE + TAG_SIZE:
            raise DecryptionFailedError()

        nonce, encrypted = combined[:NONCE_SIZE], combined[NONCE_SIZE:]
        try:
            return self._cipher().decrypt(nonce, encrypted, None).decode()
        except (InvalidTag, UnicodeDecodeError) as exc:
            raise DecryptionFailedError() from exc

    def hash_code(self, code: str) -> str:
        return hashlib.sha256(f"{code}:{self.salt}".encode()).hexdigest()

    def find_hashed_code(self, code: str, hashed_codes: list[str]) -> int:
        """Index of the matching hash in hashed_codes, or -1."""
        hashed_input = self.hash_code(code)
        for index, hashed_code in enumerate(hashed_codes):
            if hmac.compare_digest(hashed_code, hashed_input):
                return index
        return -1


class TokenManager:
    @staticmethod
    def _encode(data: dict[str, Any], expires_delta: timedelta, default_type: str) -> str:
        to_encode = data.copy()
        now = datetime.now(UTC)

        to_encode.update(
            {
                "exp": now + expires_delta,
                "iat": now,
                "iss": settings.JWT_ISSUER,
                "aud": settings.JWT_AUDIENCE,
            }
        )
        if "type" not in to_encode:
            to_encode["type"] = default_type
        if "jti" not in to_encode:
            to_encode["jti"] = str(uuid.uuid4())

        return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)

    @staticmethod
    def create_access_token(data: dict[str, Any], expires_delta: timedelta | None = None) -> str:
        return TokenManager._encode(
            data,
            expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
            "access",
        )

    @staticmethod
    def create_refresh_token(data: dict[str, Any], expires_delta: timedelta | None = None) -> str:
        return TokenManager._encode(
            data,
            expires_delta or timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS),
            "refresh",
        )

    @staticmethod
    def create_mfa_pending_token(user_id: str) -> str:
        return TokenManager._encode(
            {"sub": user_id},
            timedelta(seconds=settings.MFA_PENDING_TTL_SECONDS),
            "mfa_pending",
        )

    @staticmethod
    def decode_token(token: str) -> dict[str, Any]:
        try:
            payload = jwt.decode(
                token,
                settings.JWT_SECRET_KEY,
                algorithms=[settings.JWT_ALGORITHM],
                audience=settings.JWT_AUDIENCE,
                issuer=settings.JWT_ISSUER,
            )
            return payload
        except JWTError as e:
            raise ValueError(f"Invalid token: {str(e)}") from e

    @staticmethod
    def verify_access_token(token: str) -> dict[str, Any]:
        payload = TokenManager.decode_token(token)

        if payload.get("type") != "access":
            raise ValueError("Invalid token type")

        return payload

    @staticmethod
    def verify_mfa_pending_token(token: str) -> dict[str, Any]:
        payload = TokenManager.decode_token(token)

        if payload.get("type") != "mfa_pending":
            raise ValueError("Invalid token type")

        return payload


# Export instances
security = SecurityUtils()
token_manager = TokenManager()
secret_codec = SecretCodec()
