"""
api/routes/v1/auth.py -- Authentication and user management REST endpoints.

Routes:
  POST  /api/v1/auth/register                  -- create account (public)
  POST  /api/v1/auth/login                     -- password login; sets session cookie
  POST  /api/v1/auth/login/2fa                 -- second factor; sets session cookie
  POST  /api/v1/auth/logout                    -- revoke current session; clears cookie
  POST  /api/v1/auth/logout-all                -- revoke every session of the caller
  POST  /api/v1/auth/password-reset/request    -- email a reset link (enumeration-safe)
  POST  /api/v1/auth/password-reset/validate   -- check a reset link is still live
  POST  /api/v1/auth/password-reset/confirm    -- consume reset token, set new password
  POST  /api/v1/auth/verify-email              -- consume verification token
  POST  /api/v1/auth/verify-email/resend       -- re-send verification link
  POST  /api/v1/auth/password-strength         -- advisory strength score (public)
  GET   /api/v1/auth/me                        -- current user info (requires auth)
  GET   /api/v1/auth/providers                 -- list enabled OAuth providers (public)
  GET   /api/v1/auth/users                     -- list all users (admin only)
  PATCH /api/v1/auth/users/{id}                -- update role/is_active (admin only)

Security:
  [H2] POST /login is additionally rate-limited per IP by slowapi.
  [C1] Login goes through AuthOrchestrator.login(), which equalizes timing for
       unknown users and wrong passwords -- never inline the lookup here.
  [M4] PATCH /users/{id} blocks self-deactivation and last-admin-deactivation.
  [M5] Cache-Control: no-store on every response that carries a credential.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import LOGIN_RATE_LIMIT, limiter
from api.models import (
    EmailRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    OAuthProviderInfo,
    PasswordResetConfirm,
    PasswordStrengthRequest,
    PasswordStrengthResponse,
    RegisterRequest,
    TokenRequest,
    TwoFactorLoginRequest,
    UserPatch,
    UserResponse,
)
from api.responses import client_ip, error_response, no_store, user_agent
from auth.credentials import password_strength
from auth.dependencies import get_current_user, get_session_token, require_admin
from auth.errors import ErrorKind
from auth.models import User
from auth.oauth import get_enabled_providers
from auth.service import AuthOrchestrator, SessionGrant
from auth.tokens import clear_session_cookie, set_session_cookie

# Auth policy:
# - POST  /auth/register, /auth/login, /auth/login/2fa:      public
# - POST  /auth/password-reset/*, /auth/verify-email*:       public (token-bearing)
# - POST  /auth/password-strength:                         public
# - GET   /auth/providers:                                    public
# - POST  /auth/logout, /auth/logout-all:                     session token required
# - GET   /auth/me:                                           requires auth (get_current_user)
# - GET   /auth/users, PATCH /auth/users/{id}:                requires admin (require_admin)
router = APIRouter()


def _orchestrator(request: Request) -> AuthOrchestrator:
    return request.app.state.orchestrator


def _grant_response(grant: SessionGrant) -> JSONResponse:
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            token=grant.token,
            expires_at=grant.expires_at,
            user=UserResponse.from_user(grant.user),
        ).model_dump(mode="json"),
    )
    set_session_cookie(resp, grant.token)
    return no_store(resp)


def _message(text: str, status_code: int = 200) -> JSONResponse:
    return no_store(JSONResponse(status_code=status_code, content=MessageResponse(message=text).model_dump()))


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=UserResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create an account. A verification email is sent when verification is required."""
    result = _orchestrator(request).register(
        body.email, body.password, body.name, ip_address=client_ip(request), user_agent=user_agent(request)
    )
    if not result.ok:
        return error_response(result)
    return JSONResponse(status_code=201, content=UserResponse.from_user(result.value).model_dump(mode="json"))


@limiter.limit(LOGIN_RATE_LIMIT)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    Returns the same generic error for unknown email and wrong password
    ("invalid_credentials") to avoid leaking account existence. With 2FA
    enabled the response carries two_factor_required and a challenge_token
    instead of a session.
    """
    result = _orchestrator(request).login(
        body.email, body.password, ip_address=client_ip(request), user_agent=user_agent(request)
    )
    if result.ok:
        return _grant_response(result.value)
    if result.error is ErrorKind.TWO_FACTOR_REQUIRED:
        return no_store(
            JSONResponse(
                status_code=200,
                content=LoginResponse(two_factor_required=True, challenge_token=result.value).model_dump(
                    mode="json"
                ),
            )
        )
    return error_response(result)


@limiter.limit(LOGIN_RATE_LIMIT)
@router.post("/auth/login/2fa", response_model=LoginResponse)
def login_two_factor(request: Request, body: TwoFactorLoginRequest) -> JSONResponse:
    """Complete a login that returned two_factor_required."""
    result = _orchestrator(request).complete_two_factor(
        body.challenge_token, body.code, ip_address=client_ip(request), user_agent=user_agent(request)
    )
    if not result.ok:
        return error_response(result)
    return _grant_response(result.value)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request) -> JSONResponse:
    """Revoke the current session and clear the cookie. Idempotent for the client."""
    token = get_session_token(request)
    result = _orchestrator(request).logout(token, ip_address=client_ip(request))
    if not result.ok and result.error is ErrorKind.STORAGE_UNAVAILABLE:
        return error_response(result)
    resp = _message("Logged out.")
    clear_session_cookie(resp)
    return resp


@router.post("/auth/logout-all")
def logout_all(request: Request) -> JSONResponse:
    """Revoke every session belonging to the caller, including this one."""
    result = _orchestrator(request).logout_all(get_session_token(request), ip_address=client_ip(request))
    if not result.ok:
        return error_response(result)
    resp = no_store(JSONResponse(content={"message": result.message, "count": result.value}))
    clear_session_cookie(resp)
    return resp


@router.post("/auth/password-reset/request", response_model=MessageResponse, status_code=202)
def request_password_reset(request: Request, body: EmailRequest) -> JSONResponse:
    """Always 202 with the same message, whether or not the account exists."""
    result = _orchestrator(request).request_password_reset(
        body.email, ip_address=client_ip(request), user_agent=user_agent(request)
    )
    if not result.ok:
        return error_response(result)
    return _message(result.message, status_code=202)


@router.post("/auth/password-reset/validate", response_model=MessageResponse)
def validate_password_reset(request: Request, body: TokenRequest) -> JSONResponse:
    """Let the reset page reject a dead link before the user picks a new password."""
    result = _orchestrator(request).check_reset_token(body.token, ip_address=client_ip(request))
    if not result.ok:
        return error_response(result)
    return _message(result.message)


@router.post("/auth/password-reset/confirm", response_model=MessageResponse)
def confirm_password_reset(request: Request, body: PasswordResetConfirm) -> JSONResponse:
    result = _orchestrator(request).reset_password(
        body.token, body.new_password, ip_address=client_ip(request), user_agent=user_agent(request)
    )
    if not result.ok:
        return error_response(result)
    resp = _message(result.message)
    clear_session_cookie(resp)
    return resp


@router.post("/auth/verify-email", response_model=MessageResponse)
def verify_email(request: Request, body: TokenRequest) -> JSONResponse:
    result = _orchestrator(request).verify_email(body.token, ip_address=client_ip(request))
    if not result.ok:
        return error_response(result)
    return _message(result.message)


@router.post("/auth/verify-email/resend", response_model=MessageResponse, status_code=202)
def resend_verification(request: Request, body: EmailRequest) -> JSONResponse:
    result = _orchestrator(request).resend_verification(body.email, ip_address=client_ip(request))
    if not result.ok:
        return error_response(result)
    return _message(result.message, status_code=202)


@router.post("/auth/password-strength", response_model=PasswordStrengthResponse)
def check_password_strength(body: PasswordStrengthRequest) -> JSONResponse:
    """Score a candidate password for the registration and reset forms. Nothing is stored or logged."""
    strength = PasswordStrengthResponse.from_strength(password_strength(body.password))
    return no_store(JSONResponse(content=strength.model_dump()))


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers() -> list[OAuthProviderInfo]:
    """Return the list of configured OAuth providers.

    Public endpoint -- clients call this to decide which "link account"
    buttons to render. Returns an empty list if no OAuth env vars are set.
    """
    return [OAuthProviderInfo(**p) for p in get_enabled_providers()]


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=UserResponse)
def me(current_user: User = Depends(get_current_user)) -> UserResponse:
    """Return identity information for the currently authenticated user."""
    return UserResponse.from_user(current_user)


# ---------------------------------------------------------------------------
# User management (admin only)
# ---------------------------------------------------------------------------


@router.get("/auth/users", response_model=list[UserResponse])
def list_users(request: Request, current_user: User = Depends(require_admin)) -> list[UserResponse]:
    """List all user accounts. Admin only."""
    return [UserResponse.from_user(u) for u in _orchestrator(request).users.list_users()]


@router.patch("/auth/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: int,
    body: UserPatch,
    current_user: User = Depends(require_admin),
):
    """Update a user's role or active status. Admin only.

    Deactivation goes through AuthOrchestrator.deactivate_user(), which
    revokes every session of the target and enforces [M4]:
      - Self-deactivation (admin accidentally locking themselves out).
      - Deactivating the last active admin (no recovery path without DB access).
    """
    orchestrator = _orchestrator(request)
    users = orchestrator.users
    target = users.get_by_id(user_id)
    if target is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )
    if body.role is None and body.is_active is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )

    if body.is_active is False and target.is_active:
        result = orchestrator.deactivate_user(user_id, actor_id=current_user.id)
    elif body.is_active is True and not target.is_active:
        result = orchestrator.activate_user(user_id, actor_id=current_user.id)
    else:
        result = None
    if result is not None and not result.ok:
        return error_response(result)
    if body.role is not None and body.role != target.role:
        result = orchestrator.set_role(user_id, body.role, actor_id=current_user.id)
        if not result.ok:
            return error_response(result)
    return UserResponse.from_user(users.get_by_id(user_id))
