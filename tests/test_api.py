"""End-to-end flows through the HTTP routes with storage swapped for test doubles."""

from collections.abc import AsyncGenerator

import httpx
import pyotp
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mfa_engine.api.dependencies.deps import (
    get_audit_service,
    get_db,
    get_email_notifier,
    get_redis,
)
from mfa_engine.external_services.email import EmailNotifier
from mfa_engine.main import app
from mfa_engine.schemas.user import UserRecord
from tests.helpers.factories import TEST_PASSWORD
from tests.helpers.fake_redis import FakeRedis

API = "/api/v1"


@pytest.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    fake_redis: FakeRedis,
    notifier: EmailNotifier,
    user: UserRecord,
) -> AsyncGenerator[httpx.AsyncClient, None]:
    async def override_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    async def override_redis() -> FakeRedis:
        return fake_redis

    async def override_audit() -> None:
        return None

    async def override_notifier() -> EmailNotifier:
        return notifier

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_redis] = override_redis
    app.dependency_overrides[get_audit_service] = override_audit
    app.dependency_overrides[get_email_notifier] = override_notifier

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


async def login(client: httpx.AsyncClient) -> dict:
    response = await client.post(
        f"{API}/auth/login", json={"email": "alice@example.com", "password": TEST_PASSWORD}
    )
    assert response.status_code == 200
    return response.json()


def bearer(body: dict) -> dict[str, str]:
    return {"Authorization": f"Bearer {body['tokens']['access_token']}"}


class TestAuthRoutes:
    @pytest.mark.asyncio
    async def test_wrong_password(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            f"{API}/auth/login", json={"email": "alice@example.com", "password": "nope"}
        )

        assert response.status_code == 401
        assert response.json()["detail"]["error_code"] == "INVALID_CREDENTIALS"

    @pytest.mark.asyncio
    async def test_me_routes_need_a_session(self, client: httpx.AsyncClient) -> None:
        response = await client.get(f"{API}/me/mfa", headers={"Authorization": "Bearer junk"})

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_totp_enrollment_then_elevated_login(self, client: httpx.AsyncClient) -> None:
        session = await login(client)
        assert session["state"] == "verified"

        listed = await client.get(f"{API}/me/mfa", headers=bearer(session))
        assert listed.status_code == 200
        assert listed.json() == []

        setup = await client.post(
            f"{API}/me/mfa/setup", json={"type": "totp", "name": "Phone"}, headers=bearer(session)
        )
        assert setup.status_code == 201
        setup_body = setup.json()
        assert len(setup_body["backup_codes"]) == 8
        totp = pyotp.TOTP(setup_body["secret"])

        enabled = await client.post(
            f"{API}/me/mfa/enable",
            json={"method_id": setup_body["method_id"], "code": totp.now()},
            headers=bearer(session),
        )
        assert enabled.status_code == 200
        assert enabled.json()["enabled"] is True
        assert enabled.json()["backup_codes_remaining"] == 8

        pending = await login(client)
        assert pending["state"] == "awaiting_second_factor"
        assert pending["tokens"] is None
        assert pending["available_methods"] == ["totp"]

        # An MFA-pending token is not a session
        denied = await client.get(
            f"{API}/me/mfa", headers={"Authorization": f"Bearer {pending['mfa_pending_token']}"}
        )
        assert denied.status_code == 401

        wrong = await client.post(
            f"{API}/auth/mfa/verify",
            json={"mfa_pending_token": pending["mfa_pending_token"], "code": "zzzzzzzz"},
        )
        assert wrong.status_code == 400

        verified = await client.post(
            f"{API}/auth/mfa/verify",
            json={
                "mfa_pending_token": pending["mfa_pending_token"],
                "code": setup_body["backup_codes"][0],
            },
        )
        assert verified.status_code == 200
        assert verified.json()["state"] == "verified"

        methods = await client.get(f"{API}/me/mfa", headers=bearer(verified.json()))
        assert methods.json()[0]["backup_codes_remaining"] == 7

    @pytest.mark.asyncio
    async def test_failed_second_factor_detail_is_generic(self, client: httpx.AsyncClient) -> None:
        session = await login(client)
        setup = (
            await client.post(
                f"{API}/me/mfa/setup",
                json={"type": "totp", "name": "Phone"},
                headers=bearer(session),
            )
        ).json()
        await client.post(
            f"{API}/me/mfa/enable",
            json={"method_id": setup["method_id"], "code": pyotp.TOTP(setup["secret"]).now()},
            headers=bearer(session),
        )
        pending = await login(client)

        response = await client.post(
            f"{API}/auth/mfa/verify",
            json={"mfa_pending_token": pending["mfa_pending_token"], "code": "deadbeef"},
        )

        assert response.status_code == 401
        assert response.json()["detail"] == {
            "message": "Invalid verification code",
            "error_code": "INVALID_SECOND_FACTOR",
            "details": {},
        }

    @pytest.mark.asyncio
    async def test_disable_needs_the_password(self, client: httpx.AsyncClient) -> None:
        session = await login(client)
        setup = (
            await client.post(
                f"{API}/me/mfa/setup",
                json={"type": "totp", "name": "Phone"},
                headers=bearer(session),
            )
        ).json()

        refused = await client.post(
            f"{API}/me/mfa/disable",
            json={"method_id": setup["method_id"], "password": "nope"},
            headers=bearer(session),
        )
        removed = await client.post(
            f"{API}/me/mfa/disable-all", json={"password": TEST_PASSWORD}, headers=bearer(session)
        )

        assert refused.status_code == 401
        assert removed.status_code == 200
        assert (await client.get(f"{API}/me/mfa", headers=bearer(session))).json() == []

    @pytest.mark.asyncio
    async def test_strategies(self, client: httpx.AsyncClient) -> None:
        session = await login(client)

        response = await client.get(f"{API}/me/mfa/strategies", headers=bearer(session))

        assert response.status_code == 200
        assert [s["name"] for s in response.json()] == ["totp", "passkey", "email"]

    @pytest.mark.asyncio
    async def test_passwordless_begin(self, client: httpx.AsyncClient) -> None:
        response = await client.post(f"{API}/auth/passkey-login/begin")

        assert response.status_code == 200
        body = response.json()
        assert body["challenge"] == body["options"]["challenge"]
        assert body["options"]["rpId"] == "localhost"


class TestHealth:
    @pytest.mark.asyncio
    async def test_missing_audit_store_only_degrades(self, client: httpx.AsyncClient) -> None:
        response = await client.get(f"{API}/health")

        assert response.status_code == 200
        body = response.json()
        assert body["checks"] == {"postgres": "ok", "redis": "ok", "mongodb": "not connected"}
        assert body["status"] == "degraded"

    @pytest.mark.asyncio
    async def test_redis_failure_is_unhealthy(
        self, client: httpx.AsyncClient, fake_redis: FakeRedis, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        async def refuse() -> bool:
            raise RedisConnectionError("connection refused")

        monkeypatch.setattr(fake_redis, "ping", refuse)

        body = (await client.get(f"{API}/health")).json()

        assert body["status"] == "unhealthy"
        assert body["checks"]["redis"].startswith("error:")
