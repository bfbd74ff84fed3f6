import logging
import secrets
from datetime import UTC, datetime
from typing import Any

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession

from mfa_engine.auth_strategies.email_otp import EmailOTPStrategy
from mfa_engine.auth_strategies.passkey import PasskeyStrategy, rp_id_from_base_url
from mfa_engine.auth_strategies.totp import TokenKind, TOTPStrategy
from mfa_engine.core.config import settings
from mfa_engine.core.exceptions import (
    AlreadyEnabledError,
    ChallengeExpiredError,
    CredentialConflictError,
    InvalidCredentialsError,
    InvalidFormatError,
    InvalidSecondFactorError,
    MethodNotFoundError,
    PasskeyRejectedError,
    ServiceDisabledError,
    UserNotFoundError,
)
from mfa_engine.core.security import SecretCodec, SecurityUtils
from mfa_engine.external_services.email import EmailNotifier, EmailServiceFactory
from mfa_engine.repositories.redis_repo import RedisRepository
from mfa_engine.repositories.user_repo import UserRepository
from mfa_engine.schemas.mfa import (
    ChallengeCeremony,
    EmailMetadata,
    MFAMethod,
    MFAMethodType,
    MFASetup,
    PendingChallenge,
    get_mfa_method_by_id,
    get_mfa_methods,
    get_passkey_credentials,
)
from mfa_engine.schemas.user import UserRecord
from mfa_engine.services.audit_service import AuditService

logger = logging.getLogger(__name__)


class MFAMethodService:
    """
    Lifecycle of a user's second factors: setup, proof-of-possession, enable,
    disable and listing. Every change to the method list is written back as a
    single compare-and-swap on the user record.
    """

    def __init__(
        self,
        db: AsyncSession,
        redis_client: aioredis.Redis,
        notifier: EmailNotifier | None = None,
        audit_service: AuditService | None = None,
        codec: SecretCodec | None = None,
    ) -> None:
        self.user_repo = UserRepository(db)
        self.cache = RedisRepository(redis_client)
        self.audit_service = audit_service
        self.totp = TOTPStrategy(codec)
        self.passkey = PasskeyStrategy(self.cache)
        self.email = EmailOTPStrategy(
            self.cache, notifier or EmailNotifier(EmailServiceFactory.create()), codec
        )

    @staticmethod
    def _ensure_enabled() -> None:
        if not settings.MFA_ENABLED:
            raise ServiceDisabledError()

    @staticmethod
    def generate_method_id() -> str:
        return secrets.token_hex(16)

    async def _load_user(self, user_id: str) -> UserRecord:
        user = await self.user_repo.get_record(user_id)
        if user is None:
            raise UserNotFoundError()
        return user

    async def _save_methods(self, user: UserRecord, methods: list[MFAMethod]) -> UserRecord:
        return await self.user_repo.update(user.model_copy(update={"mfa_methods": methods}))

    async def _audit(self, user_id: str, action: str, method: MFAMethod | None, **kwargs: Any) -> None:
        if self.audit_service is None:
            return
        await self.audit_service.log(
            actor_id=user_id,
            action=action,
            resource="mfa_method",
            resource_id=method.id if method else None,
            metadata={"type": method.type.value} if method else None,
            **kwargs,
        )

    @staticmethod
    def _check_password(user: UserRecord, password: str) -> None:
        try:
            valid = bool(user.password_hash) and SecurityUtils.verify_password(
                password, user.password_hash or ""
            )
        except ValueError:
            valid = False
        if not valid:
            raise InvalidCredentialsError("Invalid password")

    async def list_methods(self, user_id: str) -> list[MFAMethod]:
        self._ensure_enabled()
        user = await self._load_user(user_id)
        return get_mfa_methods(user)

    def list_strategies(self) -> list[dict[str, Any]]:
        self._ensure_enabled()
        return [
            self.totp.get_strategy_metadata(),
            self.passkey.get_strategy_metadata(),
            self.email.get_strategy_metadata(),
        ]

    async def create_method(self, user_id: str, method_type: MFAMethodType, name: str) -> MFASetup:
        self._ensure_enabled()
        user = await self._load_user(user_id)
        method_id = self.generate_method_id()
        now = datetime.now(UTC)

        if method_type is MFAMethodType.TOTP:
            enrollment = self.totp.enroll(user.email, rp_id_from_base_url(settings.BASE_URL))
            method = MFAMethod(
                id=method_id,
                type=method_type,
                name=name,
                enabled=False,
                created_at=now,
                metadata=enrollment.metadata,
            )
            await self._save_methods(user, [*user.mfa_methods, method])
            logger.info(f"TOTP method created. user_id={user.id} method_id={method_id}")
            return MFASetup(
                method=method,
                method_id=method_id,
                type=method_type,
                secret=enrollment.secret,
                provisioning_uri=enrollment.provisioning_uri,
                qr_code_url=enrollment.qr_code_url,
                backup_codes=enrollment.backup_codes,
            )

        if method_type is MFAMethodType.EMAIL:
            method = MFAMethod(
                id=method_id,
                type=method_type,
                name=name,
                enabled=False,
                created_at=now,
                metadata=EmailMetadata(address=user.email),
            )
            user = await self._save_methods(user, [*user.mfa_methods, method])
            logger.info(f"Email method created. user_id={user.id} method_id={method_id}")
            await self.email.issue(method, user)
            return MFASetup(method=method, method_id=method_id, type=method_type)

        # Passkeys are only persisted once the attestation has been verified
        challenge, options = self.passkey.generate_registration_options(
            user.id, user.email, get_passkey_credentials(user, enabled_only=False)
        )
        await self.passkey.store_challenge(
            PendingChallenge(
                challenge=challenge,
                ceremony=ChallengeCeremony.REGISTRATION,
                user_id=user.id,
                method_id=method_id,
                name=name,
            )
        )
        return MFASetup(
            method=None,
            method_id=method_id,
            type=method_type,
            challenge=challenge,
            options=options,
        )

    async def complete_passkey_registration(
        self, user_id: str, method_id: str, challenge: str, response: dict[str, Any]
    ) -> MFAMethod:
        self._ensure_enabled()
        pending = await self.passkey.consume_challenge(challenge)
        if (
            pending is None
            or pending.ceremony is not ChallengeCeremony.REGISTRATION
            or pending.user_id != user_id
            or pending.method_id != method_id
        ):
            raise ChallengeExpiredError()

        user = await self._load_user(user_id)
        try:
            verified = self.passkey.verify_registration(response, pending.challenge)
        except PasskeyRejectedError as exc:
            await self._audit(user.id, "mfa.passkey.registration_rejected", None, status="failure")
            raise InvalidSecondFactorError() from exc

        method = MFAMethod(
            id=method_id,
            type=MFAMethodType.PASSKEY,
            name=pending.name or "Passkey",
            enabled=False,
            created_at=datetime.now(UTC),
            metadata=verified.to_metadata(),
        )
        try:
            await self._save_methods(user, [*user.mfa_methods, method])
        except CredentialConflictError as exc:
            logger.warning(f"Passkey credential already registered. user_id={user.id}")
            raise InvalidSecondFactorError() from exc

        await self.passkey.store_registration_receipt(user.id, method_id)
        logger.info(f"Passkey registered. user_id={user.id} method_id={method_id}")
        return method

    async def resend_email_code(self, user_id: str, method_id: str) -> None:
        self._ensure_enabled()
        user = await self._load_user(user_id)
        method = get_mfa_method_by_id(user, method_id)
        if method is None or method.type is not MFAMethodType.EMAIL:
            raise MethodNotFoundError()
        await self.email.issue(method, user)

    async def enable_method(self, user_id: str, method_id: str, proof: str | None = None) -> MFAMethod:
        self._ensure_enabled()
        user = await self._load_user(user_id)
        method = get_mfa_method_by_id(user, method_id)
        if method is None:
            raise MethodNotFoundError()
        if method.enabled:
            raise AlreadyEnabledError()

        if method.type is MFAMethodType.PASSKEY:
            verified = await self.passkey.consume_registration_receipt(user.id, method.id)
        else:
            if not proof or not proof.strip():
                raise InvalidFormatError("A verification code is required")
            if method.type is MFAMethodType.TOTP:
                verified = self.totp.verify_setup_code(method, proof)
            else:
                # Same shape the login step accepts, so an enabled method is always usable
                if TOTPStrategy.classify_token(proof) is not TokenKind.TOTP_CODE:
                    raise InvalidFormatError("Confirm with the 6-digit code from the email")
                verified = (await self.email.verify(method, proof, user)).verified

        if not verified:
            await self._audit(user.id, "mfa.method.enable_failed", method, status="failure")
            raise InvalidSecondFactorError()

        enabled = method.model_copy(update={"enabled": True})
        await self._save_methods(
            user, [enabled if m.id == method.id else m for m in user.mfa_methods]
        )
        await self._audit(user.id, "mfa.method.enabled", enabled)
        logger.info(f"MFA method enabled. user_id={user.id} method_id={method.id}")
        return enabled

    async def disable_method(self, user_id: str, method_id: str, password: str) -> None:
        self._ensure_enabled()
        user = await self._load_user(user_id)
        self._check_password(user, password)

        method = get_mfa_method_by_id(user, method_id)
        if method is None:
            raise MethodNotFoundError()

        await self._save_methods(user, [m for m in user.mfa_methods if m.id != method_id])
        await self._audit(user.id, "mfa.method.disabled", method)
        logger.info(f"MFA method removed. user_id={user.id} method_id={method_id}")

    async def disable_all(self, user_id: str, password: str) -> None:
        self._ensure_enabled()
        user = await self._load_user(user_id)
        self._check_password(user, password)

        await self._save_methods(user, [])
        await self._audit(user.id, "mfa.method.disabled_all", None)
        logger.info(f"All MFA methods removed. user_id={user.id}")
