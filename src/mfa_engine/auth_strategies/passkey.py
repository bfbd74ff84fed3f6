# auth_strategies/passkey.py
"""
Passkey (WebAuthn) Strategy
===========================
Two ceremonies, each begin -> complete:

  Registration
    1. generate_registration_options()  -> challenge stored in Redis (TTL)
    2. authenticator signs an attestation
    3. verify_registration()             -> credential id, public key, counter

  Authentication (second factor or passwordless)
    1. generate_authentication_options() -> challenge stored in Redis (TTL)
    2. authenticator signs an assertion
    3. verify_authentication()           -> signature checked, then the sign
                                            counter must strictly increase

Challenges are consumed with GETDEL on the first verification attempt, so a
second use of the same challenge fails even while the first is still running.
Library and parsing errors never leave this module: they become
PasskeyRejectedError (or ReplayDetectedError for a counter regression).
"""

import json
import logging
import secrets
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse

from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url
from webauthn.helpers.cose import COSEAlgorithmIdentifier
from webauthn.helpers.exceptions import WebAuthnException
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorAttachment,
    AuthenticatorSelectionCriteria,
    AuthenticatorTransport,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from mfa_engine.auth_strategies.base import BaseMFAStrategy
from mfa_engine.auth_strategies.constants import (
    MFA_CHALLENGE_PREFIX,
    PASSKEY_CHALLENGE_BYTES,
    PASSKEY_RECEIPT_PREFIX,
    PASSKEY_RECEIPT_TTL_SECONDS,
    PASSKEY_TIMEOUT_MS,
    SUPPORTED_ALGORITHM_IDS,
)
from mfa_engine.core.config import settings
from mfa_engine.core.exceptions import (
    InvalidFormatError,
    PasskeyRejectedError,
    ReplayDetectedError,
)
from mfa_engine.repositories.redis_repo import RedisRepository
from mfa_engine.schemas.mfa import (
    MFAMethod,
    MFAMethodType,
    PasskeyMetadata,
    PendingChallenge,
    VerificationResult,
)
from mfa_engine.schemas.user import UserRecord

logger = logging.getLogger(__name__)

# Exceptions py_webauthn and its parsers can raise on hostile input
_CEREMONY_ERRORS = (WebAuthnException, ValueError, KeyError, TypeError)


def rp_id_from_base_url(base_url: str) -> str:
    try:
        return urlparse(base_url).hostname or "localhost"
    except ValueError:
        return "localhost"


@dataclass
class VerifiedPasskey:
    credential_id: str
    public_key: str
    sign_counter: int
    device_type: str
    backed_up: bool
    transports: list[str]

    def to_metadata(self) -> PasskeyMetadata:
        return PasskeyMetadata(
            credential_id=self.credential_id,
            public_key=self.public_key,
            sign_counter=self.sign_counter,
            device_type=self.device_type,
            backed_up=self.backed_up,
            transports=self.transports,
        )


@dataclass
class PasskeyAssertion:
    """Proof handed to ``PasskeyStrategy.verify``: a signed assertion and its challenge."""

    response: dict[str, Any]
    challenge: str


class PasskeyStrategy(BaseMFAStrategy):
    def __init__(self, cache: RedisRepository, base_url: str | None = None) -> None:
        super().__init__(MFAMethodType.PASSKEY)
        self.cache = cache
        self.base_url = (base_url or settings.BASE_URL).rstrip("/")
        self.rp_id = rp_id_from_base_url(self.base_url)
        self.rp_name = settings.APP_NAME

    @property
    def expected_origin(self) -> str:
        return self.base_url

    @staticmethod
    def _descriptors(credentials: list[PasskeyMetadata]) -> list[PublicKeyCredentialDescriptor]:
        descriptors = []
        for credential in credentials:
            transports = []
            for transport in credential.transports:
                try:
                    transports.append(AuthenticatorTransport(transport))
                except ValueError:
                    continue
            descriptors.append(
                PublicKeyCredentialDescriptor(
                    id=base64url_to_bytes(credential.credential_id),
                    transports=transports or None,
                )
            )
        return descriptors

    def generate_registration_options(
        self,
        user_id: str,
        email: str,
        existing_credentials: list[PasskeyMetadata] | None = None,
    ) -> tuple[str, dict[str, Any]]:
        options = generate_registration_options(
            rp_id=self.rp_id,
            rp_name=self.rp_name,
            user_id=user_id.encode(),
            user_name=email,
            user_display_name=email,
            challenge=secrets.token_bytes(PASSKEY_CHALLENGE_BYTES),
            timeout=PASSKEY_TIMEOUT_MS,
            attestation=AttestationConveyancePreference.NONE,
            exclude_credentials=self._descriptors(existing_credentials or []),
            authenticator_selection=AuthenticatorSelectionCriteria(
                authenticator_attachment=AuthenticatorAttachment.PLATFORM,
                resident_key=ResidentKeyRequirement.PREFERRED,
                user_verification=UserVerificationRequirement.PREFERRED,
            ),
            supported_pub_key_algs=[
                COSEAlgorithmIdentifier(alg) for alg in SUPPORTED_ALGORITHM_IDS
            ],
        )
        return bytes_to_base64url(options.challenge), json.loads(options_to_json(options))

    def generate_authentication_options(
        self, allowed_credentials: list[PasskeyMetadata] | None = None
    ) -> tuple[str, dict[str, Any]]:
        """An empty allow list lets any discoverable credential answer (passwordless)."""
        options = generate_authentication_options(
            rp_id=self.rp_id,
            challenge=secrets.token_bytes(PASSKEY_CHALLENGE_BYTES),
            timeout=PASSKEY_TIMEOUT_MS,
            allow_credentials=self._descriptors(allowed_credentials or []),
            user_verification=UserVerificationRequirement.PREFERRED,
        )
        return bytes_to_base64url(options.challenge), json.loads(options_to_json(options))

    def verify_registration(
        self,
        response: dict[str, Any],
        expected_challenge: str,
        expected_origin: str | None = None,
        expected_rp_id: str | None = None,
    ) -> VerifiedPasskey:
        try:
            verification = verify_registration_response(
                credential=response,
                expected_challenge=base64url_to_bytes(expected_challenge),
                expected_origin=expected_origin or self.expected_origin,
                expected_rp_id=expected_rp_id or self.rp_id,
                supported_pub_key_algs=[
                    COSEAlgorithmIdentifier(alg) for alg in SUPPORTED_ALGORITHM_IDS
                ],
            )
        except _CEREMONY_ERRORS as exc:
            logger.info(f"[Passkey] Registration rejected: {exc}")
            raise PasskeyRejectedError() from exc

        raw_transports = response.get("response", {}).get("transports") or []
        transports = [t for t in raw_transports if isinstance(t, str)]

        return VerifiedPasskey(
            credential_id=bytes_to_base64url(verification.credential_id),
            public_key=bytes_to_base64url(verification.credential_public_key),
            sign_counter=verification.sign_count,
            device_type=verification.credential_device_type.value,
            backed_up=verification.credential_backed_up,
            transports=transports,
        )

    def verify_authentication(
        self,
        response: dict[str, Any],
        expected_challenge: str,
        stored: PasskeyMetadata,
        expected_origin: str | None = None,
        expected_rp_id: str | None = None,
    ) -> int:
        """
        Validate an assertion against the stored public key and return the new
        sign counter. Nothing is written here; the caller must persist the
        counter before the resulting session counts as valid.
        """
        try:
            verification = verify_authentication_response(
                credential=response,
                expected_challenge=base64url_to_bytes(expected_challenge),
                expected_origin=expected_origin or self.expected_origin,
                expected_rp_id=expected_rp_id or self.rp_id,
                credential_public_key=base64url_to_bytes(stored.public_key),
                # Counter comparison is done below so replays can be told apart
                credential_current_sign_count=0,
            )
        except _CEREMONY_ERRORS as exc:
            logger.info(f"[Passkey] Assertion rejected: {exc}")
            raise PasskeyRejectedError() from exc

        new_counter = verification.new_sign_count
        if (new_counter > 0 or stored.sign_counter > 0) and new_counter <= stored.sign_counter:
            logger.warning(
                f"[Passkey] Sign counter regression for credential {stored.credential_id}: "
                f"stored={stored.sign_counter} received={new_counter}"
            )
            raise ReplayDetectedError()

        return new_counter

    @staticmethod
    def credential_id_from_response(response: dict[str, Any]) -> str:
        credential_id = response.get("id") or response.get("rawId")
        if not isinstance(credential_id, str) or not credential_id:
            raise InvalidFormatError("Passkey response is missing the credential id")
        return credential_id

    async def verify(self, method: MFAMethod, proof: Any, user: UserRecord) -> VerificationResult:
        """
        Returns verified=False for any rejected assertion. A counter
        regression raises ReplayDetectedError so it can be recorded apart.
        """
        metadata = method.metadata
        if not isinstance(metadata, PasskeyMetadata) or not isinstance(proof, PasskeyAssertion):
            return VerificationResult(verified=False)

        try:
            new_counter = self.verify_authentication(proof.response, proof.challenge, metadata)
        except PasskeyRejectedError:
            return VerificationResult(verified=False)

        return VerificationResult(
            verified=True,
            metadata=metadata.model_copy(update={"sign_counter": new_counter}),
        )

    # Ephemeral ceremony state

    async def store_challenge(self, pending: PendingChallenge) -> None:
        await self.cache.set(
            f"{MFA_CHALLENGE_PREFIX}{pending.challenge}",
            pending.model_dump_json(),
            expire=settings.MFA_CHALLENGE_TTL_SECONDS,
        )

    async def consume_challenge(self, challenge: str) -> PendingChallenge | None:
        raw = await self.cache.consume(f"{MFA_CHALLENGE_PREFIX}{challenge}")
        if raw is None:
            return None
        return PendingChallenge.model_validate_json(raw)

    async def store_registration_receipt(self, user_id: str, method_id: str) -> None:
        await self.cache.set(
            f"{PASSKEY_RECEIPT_PREFIX}{user_id}:{method_id}",
            "verified",
            expire=PASSKEY_RECEIPT_TTL_SECONDS,
        )

    async def consume_registration_receipt(self, user_id: str, method_id: str) -> bool:
        raw = await self.cache.consume(f"{PASSKEY_RECEIPT_PREFIX}{user_id}:{method_id}")
        return raw is not None

    def get_strategy_metadata(self) -> dict[str, Any]:
        base = super().get_strategy_metadata()
        base.update(
            {
                "rp_id": self.rp_id,
                "rp_name": self.rp_name,
                "algorithms": SUPPORTED_ALGORITHM_IDS,
            }
        )
        return base
