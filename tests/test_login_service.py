"""Tests for the password -> second factor -> session state machine."""

from datetime import datetime, timedelta

import pyotp
import pytest

from mfa_engine.core.config import settings
from mfa_engine.core.exceptions import (
    ChallengeExpiredError,
    InvalidCredentialsError,
    InvalidFormatError,
    InvalidSecondFactorError,
    InvalidTokenError,
    MethodNotFoundError,
    ReplayDetectedError,
    ServiceDisabledError,
)
from mfa_engine.repositories.user_repo import UserRepository
from mfa_engine.schemas.mfa import (
    ElevationState,
    MFAMethodType,
    PasskeyMetadata,
    TOTPMetadata,
    get_mfa_method_by_id,
)
from mfa_engine.schemas.user import LoginResponse, UserRecord
from mfa_engine.services.login_service import LoginElevationService
from mfa_engine.services.mfa_service import MFAMethodService
from tests.helpers.email import RecordingEmailProvider
from tests.helpers.factories import TEST_PASSWORD, enroll_passkey, enroll_totp
from tests.helpers.fake_redis import FakeRedis
from tests.helpers.webauthn import SoftAuthenticator


async def password_step(login_service: LoginElevationService) -> LoginResponse:
    response = await login_service.login("alice@example.com", TEST_PASSWORD, "127.0.0.1", "pytest")
    assert response.state is ElevationState.AWAITING_SECOND_FACTOR
    assert response.mfa_pending_token
    return response


class TestPasswordStep:
    @pytest.mark.asyncio
    async def test_without_methods_a_session_is_minted_directly(
        self, login_service: LoginElevationService, user: UserRecord, fake_redis: FakeRedis
    ) -> None:
        response = await login_service.login("alice@example.com", TEST_PASSWORD)

        assert response.state is ElevationState.VERIFIED
        assert response.tokens is not None
        assert response.mfa_pending_token is None
        assert fake_redis.keys_with_prefix(f"session:{user.id}:") == [
            f"session:{user.id}:{response.tokens.session_id}"
        ]
        assert fake_redis.keys_with_prefix("mfa:pending:") == []

    @pytest.mark.asyncio
    async def test_password_step_is_never_the_final_state(
        self, login_service: LoginElevationService, mfa_service: MFAMethodService, user: UserRecord
    ) -> None:
        direct = await login_service.login("alice@example.com", TEST_PASSWORD)
        await enroll_totp(mfa_service, user.id)
        parked = await login_service.login("alice@example.com", TEST_PASSWORD)

        assert direct.state is ElevationState.VERIFIED
        assert parked.state is ElevationState.AWAITING_SECOND_FACTOR
        assert ElevationState.PASSWORD_VERIFIED not in (direct.state, parked.state)

    @pytest.mark.asyncio
    async def test_wrong_password_and_unknown_user_look_the_same(
        self, login_service: LoginElevationService, user: UserRecord
    ) -> None:
        with pytest.raises(InvalidCredentialsError) as wrong_password:
            await login_service.login("alice@example.com", "nope")
        with pytest.raises(InvalidCredentialsError) as unknown_user:
            await login_service.login("nobody@example.com", TEST_PASSWORD)

        assert wrong_password.value.message == unknown_user.value.message

    @pytest.mark.asyncio
    async def test_enabled_method_parks_the_login(
        self,
        login_service: LoginElevationService,
        mfa_service: MFAMethodService,
        user: UserRecord,
        fake_redis: FakeRedis,
    ) -> None:
        await enroll_totp(mfa_service, user.id)

        response = await password_step(login_service)

        assert response.tokens is None
        assert response.available_methods == [MFAMethodType.TOTP]
        assert len(fake_redis.keys_with_prefix("mfa:pending:")) == 1
        assert fake_redis.keys_with_prefix("session:") == []

    @pytest.mark.asyncio
    async def test_pending_methods_do_not_count(
        self, login_service: LoginElevationService, mfa_service: MFAMethodService, user: UserRecord
    ) -> None:
        await mfa_service.create_method(user.id, MFAMethodType.TOTP, "Phone")

        response = await login_service.login("alice@example.com", TEST_PASSWORD)

        assert response.state is ElevationState.VERIFIED

    @pytest.mark.asyncio
    async def test_server_wide_switch_skips_the_second_factor(
        self,
        login_service: LoginElevationService,
        mfa_service: MFAMethodService,
        user: UserRecord,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        await enroll_totp(mfa_service, user.id)
        monkeypatch.setattr(settings, "MFA_ENABLED", False)

        response = await login_service.login("alice@example.com", TEST_PASSWORD)

        assert response.state is ElevationState.VERIFIED
        assert response.tokens is not None
        with pytest.raises(ServiceDisabledError):
            await login_service.begin_passwordless()


class TestCodeVerification:
    @pytest.mark.asyncio
    async def test_totp_code_completes_login_once(
        self, login_service: LoginElevationService, mfa_service: MFAMethodService, user: UserRecord
    ) -> None:
        _, secret, _ = await enroll_totp(mfa_service, user.id)
        pending = await password_step(login_service)
        assert pending.mfa_pending_token

        response = await login_service.verify_code(
            pending.mfa_pending_token, pyotp.TOTP(secret).now()
        )

        assert response.state is ElevationState.VERIFIED
        assert response.tokens is not None
        with pytest.raises(InvalidTokenError):
            await login_service.verify_code(pending.mfa_pending_token, pyotp.TOTP(secret).now())

    @pytest.mark.asyncio
    async def test_failure_keeps_the_pending_login(
        self,
        login_service: LoginElevationService,
        mfa_service: MFAMethodService,
        user: UserRecord,
        fake_redis: FakeRedis,
    ) -> None:
        _, secret, _ = await enroll_totp(mfa_service, user.id)
        pending = await password_step(login_service)
        assert pending.mfa_pending_token
        totp = pyotp.TOTP(secret)
        valid = totp.now()
        live = {totp.at(datetime.now() + timedelta(seconds=offset)) for offset in (-30, 0, 30)}
        wrong = next(c for c in ("000000", "111111", "222222", "333333") if c not in live)

        with pytest.raises(InvalidSecondFactorError) as exc_info:
            await login_service.verify_code(pending.mfa_pending_token, wrong)

        assert exc_info.value.message == "Invalid verification code"
        assert len(fake_redis.keys_with_prefix("mfa:pending:")) == 1
        response = await login_service.verify_code(pending.mfa_pending_token, valid)
        assert response.state is ElevationState.VERIFIED

    @pytest.mark.asyncio
    async def test_malformed_code_is_a_format_error(
        self, login_service: LoginElevationService, mfa_service: MFAMethodService, user: UserRecord
    ) -> None:
        await enroll_totp(mfa_service, user.id)
        pending = await password_step(login_service)
        assert pending.mfa_pending_token

        with pytest.raises(InvalidFormatError):
            await login_service.verify_code(pending.mfa_pending_token, "12345")

    @pytest.mark.asyncio
    async def test_backup_code_is_consumed(
        self,
        login_service: LoginElevationService,
        mfa_service: MFAMethodService,
        user_repo: UserRepository,
        user: UserRecord,
    ) -> None:
        method, _, backup_codes = await enroll_totp(mfa_service, user.id)

        pending = await password_step(login_service)
        assert pending.mfa_pending_token
        response = await login_service.verify_code(pending.mfa_pending_token, backup_codes[0])
        assert response.state is ElevationState.VERIFIED

        stored = await user_repo.get_record(user.id)
        assert stored is not None
        stored_method = get_mfa_method_by_id(stored, method.id)
        assert stored_method is not None
        assert isinstance(stored_method.metadata, TOTPMetadata)
        assert len(stored_method.metadata.hashed_backup_codes) == 7

        again = await password_step(login_service)
        assert again.mfa_pending_token
        with pytest.raises(InvalidSecondFactorError):
            await login_service.verify_code(again.mfa_pending_token, backup_codes[0])

    @pytest.mark.asyncio
    async def test_emailed_code(
        self,
        login_service: LoginElevationService,
        mfa_service: MFAMethodService,
        email_provider: RecordingEmailProvider,
        user: UserRecord,
    ) -> None:
        setup = await mfa_service.create_method(user.id, MFAMethodType.EMAIL, "Inbox")
        await mfa_service.enable_method(user.id, setup.method_id, email_provider.last_code)
        sent_before = len(email_provider.sent)

        pending = await password_step(login_service)
        assert pending.mfa_pending_token
        assert pending.available_methods == [MFAMethodType.EMAIL]
        assert len(email_provider.sent) == sent_before + 1

        response = await login_service.verify_code(
            pending.mfa_pending_token, email_provider.last_code
        )
        assert response.state is ElevationState.VERIFIED

    @pytest.mark.asyncio
    async def test_email_outage_does_not_block_other_methods(
        self,
        login_service: LoginElevationService,
        mfa_service: MFAMethodService,
        email_provider: RecordingEmailProvider,
        user: UserRecord,
    ) -> None:
        _, secret, _ = await enroll_totp(mfa_service, user.id)
        setup = await mfa_service.create_method(user.id, MFAMethodType.EMAIL, "Inbox")
        await mfa_service.enable_method(user.id, setup.method_id, email_provider.last_code)
        email_provider.fail = True

        pending = await password_step(login_service)
        assert pending.mfa_pending_token
        assert pending.available_methods == [MFAMethodType.TOTP, MFAMethodType.EMAIL]

        response = await login_service.verify_code(
            pending.mfa_pending_token, pyotp.TOTP(secret).now()
        )
        assert response.state is ElevationState.VERIFIED

    @pytest.mark.asyncio
    async def test_send_email_code_needs_an_email_method(
        self, login_service: LoginElevationService, mfa_service: MFAMethodService, user: UserRecord
    ) -> None:
        await enroll_totp(mfa_service, user.id)
        pending = await password_step(login_service)
        assert pending.mfa_pending_token

        with pytest.raises(MethodNotFoundError):
            await login_service.send_email_code(pending.mfa_pending_token)

    @pytest.mark.asyncio
    async def test_expired_pending_login(
        self,
        login_service: LoginElevationService,
        mfa_service: MFAMethodService,
        user: UserRecord,
        fake_redis: FakeRedis,
    ) -> None:
        _, secret, _ = await enroll_totp(mfa_service, user.id)
        pending = await password_step(login_service)
        assert pending.mfa_pending_token
        for key in fake_redis.keys_with_prefix("mfa:pending:"):
            fake_redis.expire_now(key)

        with pytest.raises(InvalidTokenError):
            await login_service.verify_code(pending.mfa_pending_token, pyotp.TOTP(secret).now())

    @pytest.mark.asyncio
    async def test_session_token_is_not_a_pending_token(
        self, login_service: LoginElevationService, user: UserRecord
    ) -> None:
        response = await login_service.login("alice@example.com", TEST_PASSWORD)
        assert response.tokens is not None

        with pytest.raises(InvalidTokenError):
            await login_service.verify_code(response.tokens.access_token, "123456")


class TestPasskeySecondFactor:
    @pytest.mark.asyncio
    async def test_assertion_completes_login_and_advances_counter(
        self,
        login_service: LoginElevationService,
        mfa_service: MFAMethodService,
        user_repo: UserRepository,
        user: UserRecord,
    ) -> None:
        authenticator = SoftAuthenticator()
        method = await enroll_passkey(mfa_service, user.id, authenticator)
        pending = await password_step(login_service)
        assert pending.mfa_pending_token

        challenge, options = await login_service.begin_passkey(pending.mfa_pending_token)
        assert [c["id"] for c in options["allowCredentials"]] == [authenticator.credential_id_b64]
        response = await login_service.verify_passkey(
            pending.mfa_pending_token, challenge, authenticator.assert_(challenge)
        )

        assert response.state is ElevationState.VERIFIED
        stored = await user_repo.get_record(user.id)
        assert stored is not None
        stored_method = get_mfa_method_by_id(stored, method.id)
        assert stored_method is not None
        assert isinstance(stored_method.metadata, PasskeyMetadata)
        assert stored_method.metadata.sign_counter == 1

    @pytest.mark.asyncio
    async def test_replayed_counter_is_rejected_and_not_stored(
        self,
        login_service: LoginElevationService,
        mfa_service: MFAMethodService,
        user_repo: UserRepository,
        user: UserRecord,
    ) -> None:
        authenticator = SoftAuthenticator()
        method = await enroll_passkey(mfa_service, user.id, authenticator)
        stored = await user_repo.get_record(user.id)
        assert stored is not None
        bumped = [
            m.model_copy(update={"metadata": m.metadata.model_copy(update={"sign_counter": 5})})
            for m in stored.mfa_methods
        ]
        await user_repo.update(stored.model_copy(update={"mfa_methods": bumped}))

        pending = await password_step(login_service)
        assert pending.mfa_pending_token
        challenge, _ = await login_service.begin_passkey(pending.mfa_pending_token)

        with pytest.raises(InvalidSecondFactorError) as exc_info:
            await login_service.verify_passkey(
                pending.mfa_pending_token, challenge, authenticator.assert_(challenge, sign_count=5)
            )

        assert isinstance(exc_info.value, ReplayDetectedError)
        stored = await user_repo.get_record(user.id)
        assert stored is not None
        stored_method = get_mfa_method_by_id(stored, method.id)
        assert stored_method is not None
        assert isinstance(stored_method.metadata, PasskeyMetadata)
        assert stored_method.metadata.sign_counter == 5

    @pytest.mark.asyncio
    async def test_challenge_cannot_be_reused(
        self, login_service: LoginElevationService, mfa_service: MFAMethodService, user: UserRecord
    ) -> None:
        authenticator = SoftAuthenticator()
        await enroll_passkey(mfa_service, user.id, authenticator)
        pending = await password_step(login_service)
        assert pending.mfa_pending_token
        challenge, _ = await login_service.begin_passkey(pending.mfa_pending_token)
        other = SoftAuthenticator()

        with pytest.raises(InvalidSecondFactorError):
            await login_service.verify_passkey(
                pending.mfa_pending_token, challenge, other.assert_(challenge)
            )
        with pytest.raises(ChallengeExpiredError):
            await login_service.verify_passkey(
                pending.mfa_pending_token, challenge, authenticator.assert_(challenge)
            )

    @pytest.mark.asyncio
    async def test_no_passkeys(
        self, login_service: LoginElevationService, mfa_service: MFAMethodService, user: UserRecord
    ) -> None:
        await enroll_totp(mfa_service, user.id)
        pending = await password_step(login_service)
        assert pending.mfa_pending_token

        with pytest.raises(MethodNotFoundError):
            await login_service.begin_passkey(pending.mfa_pending_token)


class TestPasswordless:
    @pytest.mark.asyncio
    async def test_discoverable_credential_logs_in(
        self, login_service: LoginElevationService, mfa_service: MFAMethodService, user: UserRecord
    ) -> None:
        authenticator = SoftAuthenticator()
        await enroll_passkey(mfa_service, user.id, authenticator)

        challenge, options = await login_service.begin_passwordless()
        assert options.get("allowCredentials", []) == []
        response = await login_service.verify_passwordless(challenge, authenticator.assert_(challenge))

        assert response.state is ElevationState.VERIFIED
        assert response.user is not None and response.user.id == user.id

    @pytest.mark.asyncio
    async def test_unknown_credential(
        self, login_service: LoginElevationService, user: UserRecord
    ) -> None:
        challenge, _ = await login_service.begin_passwordless()

        with pytest.raises(InvalidSecondFactorError):
            await login_service.verify_passwordless(challenge, SoftAuthenticator().assert_(challenge))

    @pytest.mark.asyncio
    async def test_second_factor_challenge_is_not_accepted(
        self, login_service: LoginElevationService, mfa_service: MFAMethodService, user: UserRecord
    ) -> None:
        authenticator = SoftAuthenticator()
        await enroll_passkey(mfa_service, user.id, authenticator)
        pending = await password_step(login_service)
        assert pending.mfa_pending_token
        challenge, _ = await login_service.begin_passkey(pending.mfa_pending_token)

        with pytest.raises(ChallengeExpiredError):
            await login_service.verify_passwordless(challenge, authenticator.assert_(challenge))
