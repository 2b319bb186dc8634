from __future__ import annotations

from typing import Any, Optional, Type, TypeVar

from fastapi import APIRouter, Body, Depends, Header, Path, Query, Request, Response
from pydantic import BaseModel

from vaultsync.api.schemas import (
    ChangePasswordRequest,
    DeleteAccountRequest,
    DeviceIn,
    DeviceRenameRequest,
    Envelope,
    InitialVaultIn,
    LoginRequest,
    PreloginQuery,
    RegisterRequest,
    SetMasterPasswordRequest,
    TokenRefreshRequest,
    VaultUpdateRequest,
    parse_request,
)
from vaultsync.logging import get_logger
from vaultsync.service.audit import AuditContext
from vaultsync.service.auth import AuthContext, DeviceInfo, InitialVault
from vaultsync.service.errors import RateLimitedError, ValidationError
from vaultsync.service.runtime import Runtime, check_rate_limit
from vaultsync.service.vault import vault_payload

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

M = TypeVar("M", bound=BaseModel)


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _audit_context(request: Request, principal: Optional[AuthContext] = None) -> AuditContext:
    return AuditContext(
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        session_id=principal.session_id if principal else None,
        device_id=principal.device_id if principal else None,
    )


def _parse(model: Type[M], payload: Any) -> M:
    parsed, errors = parse_request(model, payload)
    if parsed is None:
        raise ValidationError("invalid request", detail=errors)
    return parsed


async def _enforce_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    response: Optional[Response] = None,
) -> None:
    """Consume one request from ``key``'s bucket or raise 429."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if response is not None and limit > 0:
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, remaining))
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key.split(":", 1)[0], limit=limit)
        raise RateLimitedError(
            "Too many requests, please try again later",
            detail={"retry_after": max(1, reset_seconds)},
        )


async def _auth_rate_limit(runtime: Runtime, request: Request) -> None:
    s = runtime.settings
    await _enforce_rate_limit(
        runtime,
        f"auth:{_client_ip(request)}",
        s.rate_limit_auth_per_window,
        s.rate_limit_window_seconds,
    )


async def _password_rate_limit(runtime: Runtime, user_id: str) -> None:
    await _enforce_rate_limit(
        runtime, f"password:{user_id}", runtime.settings.rate_limit_password_per_hour, 3600
    )


async def get_auth_context(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> AuthContext:
    principal = await runtime.auth.authenticate(authorization)
    s = runtime.settings
    await _enforce_rate_limit(
        runtime,
        f"api:{principal.user_id}",
        s.rate_limit_general_per_window,
        s.rate_limit_window_seconds,
        response=response,
    )
    return principal


def _device_info(device: DeviceIn) -> DeviceInfo:
    return DeviceInfo(
        name=device.name, platform=device.platform, device_identifier=device.device_identifier
    )


def _initial_vault(body: Optional[InitialVaultIn]) -> Optional[InitialVault]:
    if body is None:
        return None
    return InitialVault(
        blob=body.blob,
        encryption=body.encryption.to_model(),
        checksum=body.checksum,
        blob_format_version=body.blob_format_version,
    )


# auth


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(
    request: Request,
    payload: Any = Body(...),
    runtime: Runtime = Depends(get_runtime),
):
    """Create an account from a client-derived verifier and KDF parameters.

    A wrapped vault key and initial vault may be supplied together to set the
    master password at registration time.
    """
    await _auth_rate_limit(runtime, request)
    body = _parse(RegisterRequest, payload)
    result = await runtime.auth.register(
        body.email,
        body.auth_verifier,
        body.kdf.to_model(),
        _device_info(body.device),
        wrapped_vault_key=body.wrapped_vault_key,
        initial_vault=_initial_vault(body.initial_vault),
        context=_audit_context(request),
    )
    return Envelope(status="ok", data=result)


@router.get("/auth/prelogin", response_model=Envelope, tags=["auth"])
async def prelogin(
    request: Request,
    email: str = Query(..., max_length=254),
    runtime: Runtime = Depends(get_runtime),
):
    await _auth_rate_limit(runtime, request)
    query = _parse(PreloginQuery, {"email": email})
    return Envelope(status="ok", data=await runtime.auth.prelogin(query.email))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    request: Request,
    payload: Any = Body(...),
    runtime: Runtime = Depends(get_runtime),
):
    await _auth_rate_limit(runtime, request)
    body = _parse(LoginRequest, payload)
    result = await runtime.auth.login(
        body.email,
        body.auth_verifier,
        _device_info(body.device),
        context=_audit_context(request),
    )
    return Envelope(status="ok", data=result)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    request: Request,
    payload: Any = Body(...),
    runtime: Runtime = Depends(get_runtime),
):
    await _auth_rate_limit(runtime, request)
    body = _parse(TokenRefreshRequest, payload)
    result = await runtime.auth.refresh(body.refresh_token, context=_audit_context(request))
    return Envelope(status="ok", data=result)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    principal: AuthContext = Depends(get_auth_context),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.auth.logout(principal, context=_audit_context(request))
    return Envelope(status="ok", data={"message": "Logged out successfully"})


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    request: Request,
    payload: Any = Body(...),
    principal: AuthContext = Depends(get_auth_context),
    runtime: Runtime = Depends(get_runtime),
):
    """Replace the verifier and wrapped key; every other session is revoked."""
    await _password_rate_limit(runtime, principal.user_id)
    body = _parse(ChangePasswordRequest, payload)
    result = await runtime.auth.change_password(
        principal,
        body.current_auth_verifier,
        body.new_auth_verifier,
        body.new_wrapped_vault_key,
        new_kdf=body.new_kdf.to_model() if body.new_kdf else None,
        context=_audit_context(request, principal),
    )
    return Envelope(status="ok", data=result)


@router.post("/auth/set-master-password", response_model=Envelope, tags=["auth"])
async def set_master_password(
    request: Request,
    payload: Any = Body(...),
    principal: AuthContext = Depends(get_auth_context),
    runtime: Runtime = Depends(get_runtime),
):
    body = _parse(SetMasterPasswordRequest, payload)
    result = await runtime.auth.set_master_password(
        principal,
        body.wrapped_vault_key,
        _initial_vault(body.initial_vault),
        context=_audit_context(request, principal),
    )
    return Envelope(status="ok", data=result)


# vault


@router.get("/vault", response_model=Envelope, tags=["vault"])
async def get_vault(
    request: Request,
    version: Optional[int] = Query(None, ge=0),
    principal: AuthContext = Depends(get_auth_context),
    runtime: Runtime = Depends(get_runtime),
):
    vault = runtime.vault.get(
        principal.user_id, version, context=_audit_context(request, principal)
    )
    if vault is None:
        return Response(status_code=304)
    return Envelope(status="ok", data={"vault": vault_payload(vault)})


@router.put("/vault", response_model=Envelope, tags=["vault"])
async def update_vault(
    request: Request,
    payload: Any = Body(...),
    principal: AuthContext = Depends(get_auth_context),
    runtime: Runtime = Depends(get_runtime),
):
    body = _parse(VaultUpdateRequest, payload)
    result = runtime.vault.update(
        principal.user_id,
        body.blob,
        body.encryption.to_model(),
        body.expected_version,
        body.checksum,
        blob_format_version=body.blob_format_version,
        context=_audit_context(request, principal),
    )
    return Envelope(status="ok", data=result)


@router.get("/vault/sync", response_model=Envelope, tags=["vault"])
async def vault_sync_status(
    principal: AuthContext = Depends(get_auth_context),
    runtime: Runtime = Depends(get_runtime),
):
    return Envelope(status="ok", data=runtime.vault.sync_status(principal.user_id))


# sessions


@router.get("/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(
    principal: AuthContext = Depends(get_auth_context),
    runtime: Runtime = Depends(get_runtime),
):
    sessions = runtime.sessions.list(principal.user_id, principal.session_id)
    return Envelope(status="ok", data={"sessions": sessions})


@router.delete("/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def revoke_session(
    request: Request,
    session_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_auth_context),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.sessions.revoke_other(
        principal.user_id,
        session_id,
        principal.session_id,
        context=_audit_context(request, principal),
    )
    return Envelope(status="ok", data={"message": "Session revoked"})


@router.delete("/sessions", response_model=Envelope, tags=["sessions"])
async def revoke_all_sessions(
    request: Request,
    principal: AuthContext = Depends(get_auth_context),
    runtime: Runtime = Depends(get_runtime),
):
    revoked = await runtime.sessions.revoke_all_except(
        principal.user_id, principal.session_id, "Revoked all sessions"
    )
    runtime.audit.log(
        "session.revoke",
        user_id=principal.user_id,
        context=_audit_context(request, principal),
        metadata={"action": "revoke_all", "revoked_count": revoked},
    )
    return Envelope(status="ok", data={"revoked_count": revoked})


# devices


@router.get("/devices", response_model=Envelope, tags=["devices"])
async def list_devices(
    principal: AuthContext = Depends(get_auth_context),
    runtime: Runtime = Depends(get_runtime),
):
    devices = runtime.devices.list(principal.user_id, principal.device_id)
    return Envelope(status="ok", data={"devices": devices})


@router.post("/devices/cleanup", response_model=Envelope, tags=["devices"])
async def cleanup_devices(
    request: Request,
    principal: AuthContext = Depends(get_auth_context),
    runtime: Runtime = Depends(get_runtime),
):
    result = await runtime.devices.cleanup_duplicates(
        principal.user_id, context=_audit_context(request, principal)
    )
    return Envelope(status="ok", data=result)


@router.patch("/devices/{device_id}", response_model=Envelope, tags=["devices"])
async def rename_device(
    device_id: str = Path(..., max_length=64),
    payload: Any = Body(...),
    principal: AuthContext = Depends(get_auth_context),
    runtime: Runtime = Depends(get_runtime),
):
    body = _parse(DeviceRenameRequest, payload)
    device = runtime.devices.rename(principal.user_id, device_id, body.name)
    return Envelope(status="ok", data={"id": device.id, "name": device.name})


@router.delete("/devices/{device_id}", response_model=Envelope, tags=["devices"])
async def delete_device(
    request: Request,
    device_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_auth_context),
    runtime: Runtime = Depends(get_runtime),
):
    revoked = await runtime.devices.delete(
        principal.user_id,
        device_id,
        principal.device_id,
        context=_audit_context(request, principal),
    )
    return Envelope(status="ok", data={"message": "Device removed", "revoked_sessions": revoked})


@router.post("/devices/{device_id}/trust", response_model=Envelope, tags=["devices"])
async def trust_device(
    request: Request,
    device_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_auth_context),
    runtime: Runtime = Depends(get_runtime),
):
    device = runtime.devices.trust(
        principal.user_id, device_id, context=_audit_context(request, principal)
    )
    return Envelope(status="ok", data={"id": device.id, "trusted": device.trusted})


# users


@router.get("/users/me", response_model=Envelope, tags=["users"])
async def get_profile(
    principal: AuthContext = Depends(get_auth_context),
    runtime: Runtime = Depends(get_runtime),
):
    return Envelope(status="ok", data=runtime.accounts.profile(principal.user_id))


@router.get("/users/me/audit-logs", response_model=Envelope, tags=["users"])
async def list_audit_logs(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    action: Optional[str] = Query(None, max_length=64),
    principal: AuthContext = Depends(get_auth_context),
    runtime: Runtime = Depends(get_runtime),
):
    result = runtime.accounts.audit_logs(
        principal.user_id, page=page, limit=limit, action=action
    )
    return Envelope(status="ok", data=result)


@router.delete("/users/me", response_model=Envelope, tags=["users"])
async def delete_account(
    request: Request,
    payload: Any = Body(...),
    principal: AuthContext = Depends(get_auth_context),
    runtime: Runtime = Depends(get_runtime),
):
    await _password_rate_limit(runtime, principal.user_id)
    body = _parse(DeleteAccountRequest, payload)
    await runtime.accounts.delete_account(
        principal.user_id, body.auth_verifier, context=_audit_context(request, principal)
    )
    return Envelope(status="ok", data={"message": "Account deleted"})
