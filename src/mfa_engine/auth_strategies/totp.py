import base64
import binascii
import hashlib
import io
import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

import pyotp
import qrcode

from mfa_engine.auth_strategies.base import BaseMFAStrategy
from mfa_engine.auth_strategies.constants import (
    BACKUP_CODE_BYTES,
    TOTP_DIGITS,
    TOTP_INTERVAL_SECONDS,
    TOTP_SECRET_LENGTH,
)
from mfa_engine.core.config import settings
from mfa_engine.core.exceptions import DecryptionFailedError, InvalidFormatError
from mfa_engine.core.security import SecretCodec, secret_codec
from mfa_engine.schemas.mfa import MFAMethod, MFAMethodType, TOTPMetadata, VerificationResult
from mfa_engine.schemas.user import UserRecord

logger = logging.getLogger(__name__)

TOTP_CODE_PATTERN = re.compile(r"^\d{6}$")
BACKUP_CODE_PATTERN = re.compile(r"^[a-fA-F0-9]{8}$")


class TokenKind(str, Enum):
    TOTP_CODE = "totp_code"
    BACKUP_CODE = "backup_code"


@dataclass
class BackupCodeVerification:
    valid: bool
    remaining_codes: list[str]


@dataclass
class TOTPEnrollment:
    metadata: TOTPMetadata
    secret: str
    provisioning_uri: str
    qr_code_url: str
    backup_codes: list[str]


class TOTPStrategy(BaseMFAStrategy):
    def __init__(self, codec: SecretCodec | None = None) -> None:
        super().__init__(MFAMethodType.TOTP)
        self.codec = codec or secret_codec

    @staticmethod
    def generate_secret() -> str:
        return pyotp.random_base32(length=TOTP_SECRET_LENGTH)

    @staticmethod
    def generate_backup_codes(count: int | None = None) -> list[str]:
        count = settings.MFA_BACKUP_CODE_COUNT if count is None else count
        return [secrets.token_hex(BACKUP_CODE_BYTES) for _ in range(count)]

    @staticmethod
    def _totp(secret: str, issuer: str | None = None) -> pyotp.TOTP:
        return pyotp.TOTP(
            secret,
            digits=TOTP_DIGITS,
            digest=hashlib.sha1,
            interval=TOTP_INTERVAL_SECONDS,
            issuer=issuer,
        )

    @staticmethod
    def get_provisioning_uri(secret: str, account: str, issuer: str) -> str:
        return TOTPStrategy._totp(secret, issuer).provisioning_uri(name=account, issuer_name=issuer)

    @staticmethod
    def get_qr_code_data_url(provisioning_uri: str) -> str:
        qr = qrcode.QRCode(version=1, box_size=10, border=4)
        qr.add_data(provisioning_uri)
        qr.make(fit=True)
        img = qr.make_image(fill_color="black", back_color="white")
        buf = io.BytesIO()
        img.save(buf)
        return f"data:image/png;base64,{base64.b64encode(buf.getvalue()).decode()}"

    @staticmethod
    def verify_code(
        secret: str,
        code: str,
        valid_window: int | None = None,
        for_time: datetime | int | None = None,
    ) -> bool:
        """
        Current time step plus ``valid_window`` steps each side. Absorbs clock
        drift only; a code stays replayable while inside the window.
        """
        window = settings.MFA_TOTP_VALID_WINDOW if valid_window is None else valid_window
        try:
            return TOTPStrategy._totp(secret).verify(code, for_time=for_time, valid_window=window)
        except (binascii.Error, ValueError):
            logger.error("[TOTP] Stored secret is not valid base32")
            return False

    def hash_backup_codes(self, codes: list[str]) -> list[str]:
        return [self.codec.hash_code(code) for code in codes]

    def verify_backup_code(self, hashed_codes: list[str], code: str) -> BackupCodeVerification:
        index = self.codec.find_hashed_code(code.lower(), hashed_codes)
        if index == -1:
            return BackupCodeVerification(valid=False, remaining_codes=list(hashed_codes))

        remaining = list(hashed_codes)
        del remaining[index]
        return BackupCodeVerification(valid=True, remaining_codes=remaining)

    @staticmethod
    def classify_token(token: str) -> TokenKind:
        token = token.strip()
        if TOTP_CODE_PATTERN.match(token):
            return TokenKind.TOTP_CODE
        if BACKUP_CODE_PATTERN.match(token):
            return TokenKind.BACKUP_CODE
        raise InvalidFormatError("Codes are 6 digits, backup codes 8 hexadecimal characters")

    def enroll(self, account: str, issuer: str) -> TOTPEnrollment:
        secret = self.generate_secret()
        backup_codes = self.generate_backup_codes()
        provisioning_uri = self.get_provisioning_uri(secret, account, issuer)

        metadata = TOTPMetadata(
            encrypted_secret=self.codec.encrypt(secret),
            hashed_backup_codes=self.hash_backup_codes(backup_codes),
        )
        return TOTPEnrollment(
            metadata=metadata,
            secret=secret,
            provisioning_uri=provisioning_uri,
            qr_code_url=self.get_qr_code_data_url(provisioning_uri),
            backup_codes=backup_codes,
        )

    def verify_setup_code(self, method: MFAMethod, code: str) -> bool:
        """
        Proof of possession for enabling a fresh method. Only a current
        authenticator code counts; an undecryptable secret is surfaced.
        """
        metadata = method.metadata
        if not isinstance(metadata, TOTPMetadata):
            return False
        if self.classify_token(code) is not TokenKind.TOTP_CODE:
            raise InvalidFormatError("Confirm with a 6-digit code from your authenticator app")

        secret = self.codec.decrypt(metadata.encrypted_secret)
        return self.verify_code(secret, code.strip())

    async def verify(
        self, method: MFAMethod, proof: Any, user: UserRecord | None = None
    ) -> VerificationResult:
        metadata = method.metadata
        if not isinstance(metadata, TOTPMetadata) or not isinstance(proof, str):
            return VerificationResult(verified=False)

        token = proof.strip()
        kind = self.classify_token(token)

        if kind is TokenKind.TOTP_CODE:
            try:
                secret = self.codec.decrypt(metadata.encrypted_secret)
            except DecryptionFailedError:
                logger.error(f"[TOTP] Secret of method {method.id} could not be decrypted")
                return VerificationResult(verified=False)
            return VerificationResult(verified=self.verify_code(secret, token))

        backup = self.verify_backup_code(metadata.hashed_backup_codes, token)
        if not backup.valid:
            return VerificationResult(verified=False)

        logger.info(
            f"[TOTP] Backup code consumed. method_id={method.id} "
            f"remaining={len(backup.remaining_codes)}"
        )
        return VerificationResult(
            verified=True,
            metadata=metadata.model_copy(update={"hashed_backup_codes": backup.remaining_codes}),
        )

    def get_strategy_metadata(self) -> dict[str, Any]:
        base = super().get_strategy_metadata()
        base.update(
            {
                "digits": TOTP_DIGITS,
                "period": TOTP_INTERVAL_SECONDS,
                "algorithm": "SHA1",
                "valid_window": settings.MFA_TOTP_VALID_WINDOW,
            }
        )
        return base
