import logging
from typing import Any

from mfa_engine.auth_strategies.base import BaseMFAStrategy
from mfa_engine.auth_strategies.constants import EMAIL_CODE_DIGITS, EMAIL_CODE_PREFIX
from mfa_engine.core.config import settings
from mfa_engine.core.exceptions import NotifierUnavailableError
from mfa_engine.core.security import SecretCodec, SecurityUtils, secret_codec
from mfa_engine.external_services.email.notifier import EmailNotifier
from mfa_engine.repositories.redis_repo import RedisRepository
from mfa_engine.schemas.mfa import EmailMetadata, MFAMethod, MFAMethodType, VerificationResult
from mfa_engine.schemas.user import UserRecord

logger = logging.getLogger(__name__)


class EmailOTPStrategy(BaseMFAStrategy):
    """
    Short-lived numeric codes sent by email.

    Only the hash of the current code is kept, in Redis under
    ``mfa:email_code:<user_id>:<method_id>``. Issuing a new code overwrites the
    previous one, so at most one code per method is live at any time.
    """

    def __init__(
        self,
        cache: RedisRepository,
        notifier: EmailNotifier,
        codec: SecretCodec | None = None,
    ) -> None:
        super().__init__(MFAMethodType.EMAIL)
        self.cache = cache
        self.notifier = notifier
        self.codec = codec or secret_codec

    @staticmethod
    def _key(method_id: str, user_id: str) -> str:
        return f"{EMAIL_CODE_PREFIX}{user_id}:{method_id}"

    @staticmethod
    def address_for(method: MFAMethod, user: UserRecord) -> str:
        if isinstance(method.metadata, EmailMetadata):
            return method.metadata.address
        return user.email

    async def issue(self, method: MFAMethod, user: UserRecord) -> None:
        code = SecurityUtils.generate_otp(EMAIL_CODE_DIGITS)
        key = self._key(method.id, user.id)

        # Stored before sending so the code is valid the moment it arrives
        await self.cache.set(key, self.codec.hash_code(code), expire=settings.EMAIL_CODE_TTL_SECONDS)

        try:
            await self.notifier.send_email_code(self.address_for(method, user), code)
        except NotifierUnavailableError:
            await self.cache.delete(key)
            raise

        logger.info(f"[EmailCode] Code issued. user_id={user.id} method_id={method.id}")

    async def verify(self, method: MFAMethod, proof: Any, user: UserRecord) -> VerificationResult:
        if not isinstance(proof, str) or not proof.strip():
            return VerificationResult(verified=False)

        # Compare and delete run as one server-side step, so a re-issued code
        # can never be consumed by its predecessor
        key = self._key(method.id, user.id)
        if not await self.cache.consume_if_equals(key, self.codec.hash_code(proof.strip())):
            return VerificationResult(verified=False)

        logger.info(f"[EmailCode] Code consumed. user_id={user.id} method_id={method.id}")
        return VerificationResult(verified=True)

    def get_strategy_metadata(self) -> dict[str, Any]:
        base = super().get_strategy_metadata()
        base.update(
            {
                "ttl_seconds": settings.EMAIL_CODE_TTL_SECONDS,
                "code_length": EMAIL_CODE_DIGITS,
                "one_time_use": True,
                "delivery": "email",
            }
        )
        return base
