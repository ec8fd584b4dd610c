"""
api/routes/v1/account.py -- Self-service account endpoints (all require a session).

Routes:
  GET    /api/v1/account/sessions                       -- list own active sessions
  DELETE /api/v1/account/sessions/{id}                  -- revoke one own session
  POST   /api/v1/account/password                       -- change password
  GET    /api/v1/account/2fa                            -- 2FA status
  POST   /api/v1/account/2fa/setup                      -- begin TOTP enrollment
  POST   /api/v1/account/2fa/confirm                    -- confirm enrollment with a code
  POST   /api/v1/account/2fa/disable                    -- disable 2FA (password required)
  POST   /api/v1/account/2fa/backup-codes               -- regenerate codes (password required)
  GET    /api/v1/account/linked-accounts                -- list linked OAuth identities
  DELETE /api/v1/account/linked-accounts/{provider}     -- unlink a provider
  GET    /api/v1/account/linked-accounts/{provider}/connect   -- start provider redirect
  GET    /api/v1/account/linked-accounts/{provider}/callback  -- provider callback

Security:
  IDOR guard: DELETE /sessions/{id} passes the caller's user_id to the store;
  the WHERE clause requires both to match.
  [H2] OAuth link state is minted per (user, provider) and checked in the
  callback by LinkedAccountService before anything is written.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from api.models import (
    BackupCodesResponse,
    ChangePasswordRequest,
    CodeRequest,
    CountResponse,
    LinkedAccountResponse,
    MessageResponse,
    PasswordConfirmRequest,
    SessionResponse,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
)
from api.responses import client_ip, error_response, no_store, user_agent
from auth.dependencies import get_current_session, get_session_token
from auth.errors import AuthError, ErrorKind
from auth.models import SessionContext
from auth.oauth import SUPPORTED_PROVIDERS, get_oauth_identity
from auth.service import AuthOrchestrator

logger = logging.getLogger("gatekeeper.api.account")

router = APIRouter()


def _orchestrator(request: Request) -> AuthOrchestrator:
    return request.app.state.orchestrator


def _check_provider(provider: str) -> None:
    if provider not in SUPPORTED_PROVIDERS:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Unknown provider."},
        )


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@router.get("/account/sessions", response_model=list[SessionResponse])
def list_sessions(request: Request, ctx: SessionContext = Depends(get_current_session)):
    result = _orchestrator(request).list_sessions(ctx.user.id, current_token=get_session_token(request))
    if not result.ok:
        return error_response(result)
    return [SessionResponse.from_info(s) for s in result.value]


@router.delete("/account/sessions/{session_id}", status_code=204)
def revoke_session(request: Request, session_id: int, ctx: SessionContext = Depends(get_current_session)):
    """Revoke one of the caller's sessions. Another user's session id yields 404."""
    result = _orchestrator(request).revoke_session(ctx.user.id, session_id, ip_address=client_ip(request))
    if not result.ok:
        return error_response(result)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Password
# ---------------------------------------------------------------------------


@router.post("/account/password", response_model=CountResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    ctx: SessionContext = Depends(get_current_session),
):
    """Change password. Every other session of the user is revoked; this one survives."""
    result = _orchestrator(request).change_password(
        get_session_token(request), body.current_password, body.new_password, ip_address=client_ip(request)
    )
    if not result.ok:
        return error_response(result)
    return no_store(JSONResponse(content=CountResponse(message=result.message, count=result.value).model_dump()))


# ---------------------------------------------------------------------------
# Two-factor
# ---------------------------------------------------------------------------


@router.get("/account/2fa", response_model=TwoFactorStatusResponse)
def two_factor_status(request: Request, ctx: SessionContext = Depends(get_current_session)):
    status = _orchestrator(request).two_factor.status(ctx.user.id)
    return TwoFactorStatusResponse(
        state=status.state.value,
        enabled=status.enabled,
        backup_codes_remaining=status.backup_codes_remaining,
    )


@router.post("/account/2fa/setup", response_model=TwoFactorSetupResponse)
def setup_two_factor(request: Request, ctx: SessionContext = Depends(get_current_session)):
    """Begin enrollment. The secret and backup codes are shown exactly once."""
    result = _orchestrator(request).setup_two_factor(get_session_token(request))
    if not result.ok:
        return error_response(result)
    setup = result.value
    return no_store(
        JSONResponse(
            content=TwoFactorSetupResponse(
                secret=setup.secret,
                provisioning_uri=setup.provisioning_uri,
                backup_codes=setup.backup_codes,
            ).model_dump()
        )
    )


@router.post("/account/2fa/confirm", response_model=MessageResponse)
def confirm_two_factor(request: Request, body: CodeRequest, ctx: SessionContext = Depends(get_current_session)):
    result = _orchestrator(request).confirm_two_factor(get_session_token(request), body.code)
    if not result.ok:
        return error_response(result)
    return MessageResponse(message=result.message)


@router.post("/account/2fa/disable", response_model=MessageResponse)
def disable_two_factor(
    request: Request,
    body: PasswordConfirmRequest,
    ctx: SessionContext = Depends(get_current_session),
):
    result = _orchestrator(request).disable_two_factor(get_session_token(request), body.password)
    if not result.ok:
        return error_response(result)
    return MessageResponse(message=result.message)


@router.post("/account/2fa/backup-codes", response_model=BackupCodesResponse)
def regenerate_backup_codes(
    request: Request,
    body: PasswordConfirmRequest,
    ctx: SessionContext = Depends(get_current_session),
):
    result = _orchestrator(request).regenerate_backup_codes(get_session_token(request), body.password)
    if not result.ok:
        return error_response(result)
    return no_store(JSONResponse(content=BackupCodesResponse(backup_codes=result.value).model_dump()))


# ---------------------------------------------------------------------------
# Linked OAuth accounts
# ---------------------------------------------------------------------------


@router.get("/account/linked-accounts", response_model=list[LinkedAccountResponse])
def list_linked_accounts(request: Request, ctx: SessionContext = Depends(get_current_session)):
    accounts = request.app.state.linked_accounts.list_accounts(ctx.user.id)
    return [LinkedAccountResponse.from_account(a) for a in accounts]


@router.delete("/account/linked-accounts/{provider}", status_code=204)
def unlink_account(request: Request, provider: str, ctx: SessionContext = Depends(get_current_session)):
    _check_provider(provider)
    if not request.app.state.linked_accounts.unlink(ctx.user.id, provider, ip_address=client_ip(request)):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "No linked account for that provider."},
        )
    return Response(status_code=204)


@router.get("/account/linked-accounts/{provider}/connect")
async def connect_provider(request: Request, provider: str, ctx: SessionContext = Depends(get_current_session)):
    """Redirect to the provider with a state bound to (caller, provider)."""
    _check_provider(provider)
    client = request.app.state.oauth.create_client(provider)
    if client is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "provider_not_configured", "message": "Provider is not configured."},
        )
    state = request.app.state.linked_accounts.create_link_state(ctx.user.id, provider)
    redirect_uri = str(request.url_for("provider_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri, state=state)


@router.get("/account/linked-accounts/{provider}/callback", name="provider_callback")
async def provider_callback(request: Request, provider: str, ctx: SessionContext = Depends(get_current_session)):
    """Exchange the code, extract a verified identity, and link it to the caller."""
    _check_provider(provider)
    client = request.app.state.oauth.create_client(provider)
    if client is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "provider_not_configured", "message": "Provider is not configured."},
        )
    try:
        token = await client.authorize_access_token(request)
        identity = await get_oauth_identity(client, provider, token)
    except ValueError as exc:
        logger.warning("OAuth %s identity rejected: %s", provider, exc)
        raise HTTPException(
            status_code=400,
            detail={"code": "oauth_identity_rejected", "message": "The provider did not confirm a verified email."},
        ) from exc

    links = request.app.state.linked_accounts
    try:
        account = links.link(
            ctx.user.id,
            provider,
            request.query_params.get("state", ""),
            identity,
            token,
            ip_address=client_ip(request),
            user_agent=user_agent(request),
        )
    except AuthError as exc:
        raise HTTPException(
            status_code=409 if exc.kind is ErrorKind.ALREADY_EXISTS else 400,
            detail={"code": exc.kind.value, "message": exc.message},
        ) from exc
    except SQLAlchemyError as exc:
        logger.exception("Storage failure while linking %s account", provider)
        raise HTTPException(
            status_code=503,
            detail={"code": "storage_unavailable", "message": "Service temporarily unavailable."},
        ) from exc
    return LinkedAccountResponse.from_account(account)
