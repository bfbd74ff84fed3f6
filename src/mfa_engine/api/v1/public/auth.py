from fastapi import APIRouter, Depends, Request

from mfa_engine.api.dependencies.deps import get_login_service
from mfa_engine.core.exceptions import MFAEngineException, convert_to_http_exception
from mfa_engine.schemas.mfa import (
    MFAMessageResponse,
    MFAPendingRequest,
    MFAVerifyRequest,
    PasskeyOptionsResponse,
    PasskeyVerifyRequest,
    PasswordlessVerifyRequest,
)
from mfa_engine.schemas.user import LoginResponse, UserLogin
from mfa_engine.services.login_service import LoginElevationService
from mfa_engine.services.retry import retry_on_conflict

router = APIRouter()


def _client(request: Request) -> tuple[str | None, str | None]:
    return (
        request.client.host if request.client else None,
        request.headers.get("user-agent"),
    )


@router.post("/login", response_model=LoginResponse)
async def login(
    request: Request,
    login_data: UserLogin,
    svc: LoginElevationService = Depends(get_login_service),
) -> LoginResponse:
    """
    Primary factor. Returns a full session, or an MFA-pending token when the
    account has second factors enabled.
    """
    ip, ua = _client(request)
    try:
        return await svc.login(login_data.email, login_data.password, ip, ua)
    except MFAEngineException as exc:
        raise convert_to_http_exception(exc) from exc


@router.post("/mfa/verify", response_model=LoginResponse)
async def verify_mfa_code(
    request: Request,
    body: MFAVerifyRequest,
    svc: LoginElevationService = Depends(get_login_service),
) -> LoginResponse:
    ip, ua = _client(request)
    try:
        return await retry_on_conflict(
            lambda: svc.verify_code(body.mfa_pending_token, body.code, ip, ua)
        )
    except MFAEngineException as exc:
        raise convert_to_http_exception(exc) from exc


@router.post("/mfa/email/send", response_model=MFAMessageResponse)
async def send_mfa_email_code(
    body: MFAPendingRequest,
    svc: LoginElevationService = Depends(get_login_service),
) -> MFAMessageResponse:
    try:
        await svc.send_email_code(body.mfa_pending_token)
    except MFAEngineException as exc:
        raise convert_to_http_exception(exc) from exc
    return MFAMessageResponse(message="Verification code sent")


@router.post("/mfa/passkey/begin", response_model=PasskeyOptionsResponse)
async def begin_mfa_passkey(
    body: MFAPendingRequest,
    svc: LoginElevationService = Depends(get_login_service),
) -> PasskeyOptionsResponse:
    try:
        challenge, options = await svc.begin_passkey(body.mfa_pending_token)
    except MFAEngineException as exc:
        raise convert_to_http_exception(exc) from exc
    return PasskeyOptionsResponse(challenge=challenge, options=options)


@router.post("/mfa/passkey/verify", response_model=LoginResponse)
async def verify_mfa_passkey(
    request: Request,
    body: PasskeyVerifyRequest,
    svc: LoginElevationService = Depends(get_login_service),
) -> LoginResponse:
    ip, ua = _client(request)
    try:
        return await svc.verify_passkey(
            body.mfa_pending_token, body.challenge, body.response, ip, ua
        )
    except MFAEngineException as exc:
        raise convert_to_http_exception(exc) from exc


@router.post("/passkey-login/begin", response_model=PasskeyOptionsResponse)
async def begin_passkey_login(
    svc: LoginElevationService = Depends(get_login_service),
) -> PasskeyOptionsResponse:
    try:
        challenge, options = await svc.begin_passwordless()
    except MFAEngineException as exc:
        raise convert_to_http_exception(exc) from exc
    return PasskeyOptionsResponse(challenge=challenge, options=options)


@router.post("/passkey-login/verify", response_model=LoginResponse)
async def verify_passkey_login(
    request: Request,
    body: PasswordlessVerifyRequest,
    svc: LoginElevationService = Depends(get_login_service),
) -> LoginResponse:
    ip, ua = _client(request)
    try:
        return await svc.verify_passwordless(body.challenge, body.response, ip, ua)
    except MFAEngineException as exc:
        raise convert_to_http_exception(exc) from exc
