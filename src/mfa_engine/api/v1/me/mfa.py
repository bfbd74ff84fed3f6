from typing import Any

from fastapi import APIRouter, Depends, status

from mfa_engine.api.dependencies.auth_deps import get_current_active_user
from mfa_engine.api.dependencies.deps import get_mfa_service
from mfa_engine.core.exceptions import MFAEngineException, convert_to_http_exception
from mfa_engine.schemas.mfa import (
    MFADisableAllRequest,
    MFADisableRequest,
    MFAEnableRequest,
    MFAMessageResponse,
    MFAMethodResponse,
    MFASetupRequest,
    MFASetupResponse,
    PasskeySetupCompleteRequest,
)
from mfa_engine.schemas.user import UserRecord
from mfa_engine.services.mfa_service import MFAMethodService
from mfa_engine.services.retry import retry_on_conflict

router = APIRouter()


@router.get("", response_model=list[MFAMethodResponse])
async def list_mfa_methods(
    current_user: UserRecord = Depends(get_current_active_user),
    svc: MFAMethodService = Depends(get_mfa_service),
) -> list[MFAMethodResponse]:
    try:
        methods = await svc.list_methods(current_user.id)
    except MFAEngineException as exc:
        raise convert_to_http_exception(exc) from exc
    return [MFAMethodResponse.from_method(method) for method in methods]


@router.get("/strategies")
async def list_mfa_strategies(
    current_user: UserRecord = Depends(get_current_active_user),
    svc: MFAMethodService = Depends(get_mfa_service),
) -> list[dict[str, Any]]:
    try:
        return svc.list_strategies()
    except MFAEngineException as exc:
        raise convert_to_http_exception(exc) from exc


@router.post("/setup", response_model=MFASetupResponse, status_code=status.HTTP_201_CREATED)
async def setup_mfa_method(
    body: MFASetupRequest,
    current_user: UserRecord = Depends(get_current_active_user),
    svc: MFAMethodService = Depends(get_mfa_service),
) -> MFASetupResponse:
    """
    Start enrolling a method. TOTP secrets and backup codes appear in this
    response only; passkeys get registration options to pass to the browser.
    """
    try:
        setup = await retry_on_conflict(
            lambda: svc.create_method(current_user.id, body.type, body.name)
        )
    except MFAEngineException as exc:
        raise convert_to_http_exception(exc) from exc

    return MFASetupResponse(
        method_id=setup.method_id,
        type=setup.type,
        secret=setup.secret,
        provisioning_uri=setup.provisioning_uri,
        qr_code_url=setup.qr_code_url,
        backup_codes=setup.backup_codes or None,
        challenge=setup.challenge,
        options=setup.options,
    )


@router.post("/passkey/setup-complete", response_model=MFAMethodResponse)
async def complete_passkey_setup(
    body: PasskeySetupCompleteRequest,
    current_user: UserRecord = Depends(get_current_active_user),
    svc: MFAMethodService = Depends(get_mfa_service),
) -> MFAMethodResponse:
    try:
        method = await svc.complete_passkey_registration(
            current_user.id, body.method_id, body.challenge, body.response
        )
    except MFAEngineException as exc:
        raise convert_to_http_exception(exc) from exc
    return MFAMethodResponse.from_method(method)


@router.post("/{method_id}/resend", response_model=MFAMessageResponse)
async def resend_mfa_email_code(
    method_id: str,
    current_user: UserRecord = Depends(get_current_active_user),
    svc: MFAMethodService = Depends(get_mfa_service),
) -> MFAMessageResponse:
    try:
        await svc.resend_email_code(current_user.id, method_id)
    except MFAEngineException as exc:
        raise convert_to_http_exception(exc) from exc
    return MFAMessageResponse(message="Verification code sent")


@router.post("/enable", response_model=MFAMethodResponse)
async def enable_mfa_method(
    body: MFAEnableRequest,
    current_user: UserRecord = Depends(get_current_active_user),
    svc: MFAMethodService = Depends(get_mfa_service),
) -> MFAMethodResponse:
    try:
        method = await retry_on_conflict(
            lambda: svc.enable_method(current_user.id, body.method_id, body.code)
        )
    except MFAEngineException as exc:
        raise convert_to_http_exception(exc) from exc
    return MFAMethodResponse.from_method(method)


@router.post("/disable", response_model=MFAMessageResponse)
async def disable_mfa_method(
    body: MFADisableRequest,
    current_user: UserRecord = Depends(get_current_active_user),
    svc: MFAMethodService = Depends(get_mfa_service),
) -> MFAMessageResponse:
    try:
        await retry_on_conflict(
            lambda: svc.disable_method(current_user.id, body.method_id, body.password)
        )
    except MFAEngineException as exc:
        raise convert_to_http_exception(exc) from exc
    return MFAMessageResponse(message="Multi-factor authentication method removed")


@router.post("/disable-all", response_model=MFAMessageResponse)
async def disable_all_mfa_methods(
    body: MFADisableAllRequest,
    current_user: UserRecord = Depends(get_current_active_user),
    svc: MFAMethodService = Depends(get_mfa_service),
) -> MFAMessageResponse:
    try:
        await retry_on_conflict(lambda: svc.disable_all(current_user.id, body.password))
    except MFAEngineException as exc:
        raise convert_to_http_exception(exc) from exc
    return MFAMessageResponse(message="Multi-factor authentication disabled")
