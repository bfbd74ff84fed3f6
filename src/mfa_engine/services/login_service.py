import logging
from typing import Any

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession

from mfa_engine.auth_strategies.base import BaseMFAStrategy
from mfa_engine.auth_strategies.constants import MFA_PENDING_PREFIX
from mfa_engine.auth_strategies.email_otp import EmailOTPStrategy
from mfa_engine.auth_strategies.passkey import PasskeyAssertion, PasskeyStrategy
from mfa_engine.auth_strategies.totp import TokenKind, TOTPStrategy
from mfa_engine.core.config import settings
from mfa_engine.core.exceptions import (
    ChallengeExpiredError,
    InvalidCredentialsError,
    InvalidSecondFactorError,
    InvalidTokenError,
    MethodNotFoundError,
    NotifierUnavailableError,
    ReplayDetectedError,
    ServiceDisabledError,
)
from mfa_engine.core.security import SecretCodec, SecurityUtils, token_manager
from mfa_engine.external_services.email import EmailNotifier, EmailServiceFactory
from mfa_engine.repositories.redis_repo import RedisRepository
from mfa_engine.repositories.user_repo import UserRepository
from mfa_engine.schemas.mfa import (
    ChallengeCeremony,
    ElevationState,
    MFAMethod,
    MFAMethodType,
    PendingChallenge,
    PendingElevation,
    VerificationResult,
    get_enabled_mfa_methods,
    get_passkey_credentials,
    get_passkey_method_by_credential_id,
    order_for_code_verification,
)
from mfa_engine.schemas.user import LoginResponse, UserRecord, UserResponse, UserStatus
from mfa_engine.services.audit_service import AuditService
from mfa_engine.services.session_service import SessionService

logger = logging.getLogger(__name__)


class LoginElevationService:
    """
    Gates the full session behind a second factor.

    ``login`` checks the password. A user with enabled methods is parked in
    AWAITING_SECOND_FACTOR: a pending elevation is stored in Redis under the
    ``jti`` of a short-lived MFA-pending token. Failed attempts leave it in
    place; the first success consumes it, persists whatever the verifying
    engine changed and mints the session.
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
        self.session_service = SessionService(redis_client)
        self.audit_service = audit_service
        self.totp = TOTPStrategy(codec)
        self.passkey = PasskeyStrategy(self.cache)
        self.email = EmailOTPStrategy(
            self.cache, notifier or EmailNotifier(EmailServiceFactory.create()), codec
        )
        self.strategies: dict[MFAMethodType, BaseMFAStrategy] = {
            MFAMethodType.TOTP: self.totp,
            MFAMethodType.PASSKEY: self.passkey,
            MFAMethodType.EMAIL: self.email,
        }

    @staticmethod
    def _ensure_enabled() -> None:
        if not settings.MFA_ENABLED:
            raise ServiceDisabledError()

    async def _audit(
        self,
        user_id: str | None,
        action: str,
        status: str = "success",
        metadata: dict[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        if self.audit_service is None:
            return
        await self.audit_service.log(
            actor_id=user_id,
            action=action,
            resource="session",
            metadata=metadata,
            ip_address=ip_address,
            user_agent=user_agent,
            status=status,
        )

    async def login(
        self,
        email: str,
        password: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> LoginResponse:
        user = await self.user_repo.get_by_email(email)
        if not user or not user.password_hash:
            raise InvalidCredentialsError("Invalid email or password")

        try:
            password_ok = SecurityUtils.verify_password(password, user.password_hash)
        except ValueError:
            password_ok = False
        if not password_ok:
            await self._audit(user.id, "auth.login_failed", "failure", ip_address=ip_address)
            raise InvalidCredentialsError("Invalid email or password")

        if user.status != UserStatus.ACTIVE:
            raise InvalidCredentialsError(f"User account is {user.status.value}")

        enabled_methods = get_enabled_mfa_methods(user)
        if not settings.MFA_ENABLED or not enabled_methods:
            tokens = await self.session_service.create_session(user, ip_address, user_agent)
            await self._audit(user.id, "auth.login", ip_address=ip_address, user_agent=user_agent)
            return LoginResponse(
                state=ElevationState.VERIFIED,
                tokens=tokens,
                user=UserResponse.model_validate(user.model_dump()),
            )

        mfa_pending_token = token_manager.create_mfa_pending_token(user.id)
        jti = token_manager.decode_token(mfa_pending_token)["jti"]
        pending = PendingElevation(user_id=user.id, ip_address=ip_address, user_agent=user_agent)
        await self.cache.set(
            f"{MFA_PENDING_PREFIX}{jti}",
            pending.model_dump_json(),
            expire=settings.MFA_PENDING_TTL_SECONDS,
        )

        for method in enabled_methods:
            if method.type is not MFAMethodType.EMAIL:
                continue
            try:
                await self.email.issue(method, user)
            except NotifierUnavailableError:
                logger.warning(
                    f"Login code could not be sent. user_id={user.id} method_id={method.id}"
                )

        available: list[MFAMethodType] = []
        for method in enabled_methods:
            if method.type not in available:
                available.append(method.type)

        logger.info(f"Password verified, awaiting second factor. user_id={user.id}")
        return LoginResponse(
            state=ElevationState.AWAITING_SECOND_FACTOR,
            mfa_pending_token=mfa_pending_token,
            available_methods=available,
        )

    async def _load_pending(self, mfa_pending_token: str) -> tuple[str, PendingElevation, UserRecord]:
        self._ensure_enabled()
        try:
            payload = token_manager.verify_mfa_pending_token(mfa_pending_token)
        except ValueError as exc:
            raise InvalidTokenError("MFA session expired or invalid") from exc

        jti = payload.get("jti")
        user_id = payload.get("sub")
        if not jti or not user_id:
            raise InvalidTokenError("MFA token missing user identity")

        raw = await self.cache.get(f"{MFA_PENDING_PREFIX}{jti}")
        if not raw:
            raise InvalidTokenError("MFA session expired. Please log in again.")

        pending = PendingElevation.model_validate_json(raw)
        if pending.user_id != user_id:
            raise InvalidTokenError("MFA session expired or invalid")

        user = await self.user_repo.get_record(user_id)
        if user is None or user.status != UserStatus.ACTIVE:
            raise InvalidTokenError("MFA session expired or invalid")

        return jti, pending, user

    async def _complete(
        self,
        user: UserRecord,
        method: MFAMethod,
        result: VerificationResult,
        jti: str | None,
        pending: PendingElevation | None,
        ip_address: str | None,
        user_agent: str | None,
    ) -> LoginResponse:
        if result.metadata is not None:
            methods = [
                m.model_copy(update={"metadata": result.metadata}) if m.id == method.id else m
                for m in user.mfa_methods
            ]
            user = await self.user_repo.update(user.model_copy(update={"mfa_methods": methods}))

        if jti is not None:
            # Two racing successes cannot both elevate the same login
            if await self.cache.consume(f"{MFA_PENDING_PREFIX}{jti}") is None:
                raise InvalidTokenError("MFA session expired. Please log in again.")

        ip_address = ip_address or (pending.ip_address if pending else None)
        user_agent = user_agent or (pending.user_agent if pending else None)
        tokens = await self.session_service.create_session(user, ip_address, user_agent)

        await self._audit(
            user.id,
            "auth.mfa_verified",
            metadata={"method_id": method.id, "type": method.type.value},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        logger.info(f"Second factor verified. user_id={user.id} method_type={method.type.value}")
        return LoginResponse(
            state=ElevationState.VERIFIED,
            tokens=tokens,
            user=UserResponse.model_validate(user.model_dump()),
        )

    async def send_email_code(self, mfa_pending_token: str) -> None:
        _, _, user = await self._load_pending(mfa_pending_token)
        email_methods = [
            m for m in get_enabled_mfa_methods(user) if m.type is MFAMethodType.EMAIL
        ]
        if not email_methods:
            raise MethodNotFoundError("No email verification method is enabled")

        for method in email_methods:
            await self.email.issue(method, user)

    async def verify_code(
        self,
        mfa_pending_token: str,
        code: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> LoginResponse:
        jti, pending, user = await self._load_pending(mfa_pending_token)

        kind = TOTPStrategy.classify_token(code)
        token = code.strip()

        candidates = order_for_code_verification(get_enabled_mfa_methods(user))
        if kind is TokenKind.BACKUP_CODE:
            candidates = [m for m in candidates if m.type is MFAMethodType.TOTP]

        for method in candidates:
            result = await self.strategies[method.type].verify(method, token, user)
            if result.verified:
                return await self._complete(
                    user, method, result, jti, pending, ip_address, user_agent
                )

        await self._audit(user.id, "auth.mfa_failed", "failure", ip_address=ip_address)
        raise InvalidSecondFactorError()

    async def begin_passkey(self, mfa_pending_token: str) -> tuple[str, dict[str, Any]]:
        _, _, user = await self._load_pending(mfa_pending_token)

        credentials = get_passkey_credentials(user)
        if not credentials:
            raise MethodNotFoundError("No passkeys registered for this account")

        challenge, options = self.passkey.generate_authentication_options(credentials)
        await self.passkey.store_challenge(
            PendingChallenge(
                challenge=challenge,
                ceremony=ChallengeCeremony.AUTHENTICATION,
                user_id=user.id,
            )
        )
        return challenge, options

    async def verify_passkey(
        self,
        mfa_pending_token: str,
        challenge: str,
        response: dict[str, Any],
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> LoginResponse:
        jti, pending, user = await self._load_pending(mfa_pending_token)

        state = await self.passkey.consume_challenge(challenge)
        if (
            state is None
            or state.ceremony is not ChallengeCeremony.AUTHENTICATION
            or state.user_id != user.id
        ):
            raise ChallengeExpiredError()

        return await self._verify_assertion(
            user, state, response, jti, pending, ip_address, user_agent
        )

    async def begin_passwordless(self) -> tuple[str, dict[str, Any]]:
        self._ensure_enabled()
        challenge, options = self.passkey.generate_authentication_options([])
        await self.passkey.store_challenge(
            PendingChallenge(challenge=challenge, ceremony=ChallengeCeremony.AUTHENTICATION)
        )
        return challenge, options

    async def verify_passwordless(
        self,
        challenge: str,
        response: dict[str, Any],
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> LoginResponse:
        self._ensure_enabled()
        state = await self.passkey.consume_challenge(challenge)
        if (
            state is None
            or state.ceremony is not ChallengeCeremony.AUTHENTICATION
            or state.user_id is not None
        ):
            raise ChallengeExpiredError()

        credential_id = self.passkey.credential_id_from_response(response)
        user = await self.user_repo.get_by_passkey_credential_id(credential_id)
        if user is None or user.status != UserStatus.ACTIVE:
            await self._audit(None, "auth.passkey_login_failed", "failure", ip_address=ip_address)
            raise InvalidSecondFactorError()

        return await self._verify_assertion(
            user, state, response, None, None, ip_address, user_agent
        )

    async def _verify_assertion(
        self,
        user: UserRecord,
        state: PendingChallenge,
        response: dict[str, Any],
        jti: str | None,
        pending: PendingElevation | None,
        ip_address: str | None,
        user_agent: str | None,
    ) -> LoginResponse:
        credential_id = self.passkey.credential_id_from_response(response)
        method = get_passkey_method_by_credential_id(user, credential_id)
        if method is None:
            await self._audit(user.id, "auth.mfa_failed", "failure", ip_address=ip_address)
            raise InvalidSecondFactorError()

        try:
            result = await self.passkey.verify(
                method, PasskeyAssertion(response=response, challenge=state.challenge), user
            )
        except ReplayDetectedError:
            await self._audit(
                user.id,
                "mfa.passkey.replay_detected",
                "failure",
                metadata={"method_id": method.id},
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise

        if not result.verified:
            await self._audit(user.id, "auth.mfa_failed", "failure", ip_address=ip_address)
            raise InvalidSecondFactorError()

        return await self._complete(user, method, result, jti, pending, ip_address, user_agent)
