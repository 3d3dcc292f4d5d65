from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Path, Request, Response

from notekeep.api.schemas import (
    AdminSettingsResponse,
    AdminSettingsUpdateRequest,
    AuthResponse,
    DisableTwoFactorRequest,
    EnableTwoFactorRequest,
    Envelope,
    LoginRequest,
    PasswordChangeRequest,
    PasswordResetConfirmRequest,
    PasswordResetRequest,
    RecoveryCodesResponse,
    RecoveryCodeStatusResponse,
    RegenerateCodesRequest,
    RegisterRequest,
    SecondFactorVerifyRequest,
    SendCodeRequest,
    SendCodeResponse,
    SendLoginCodeRequest,
    SendVerificationRequest,
    SessionListResponse,
    SessionResponse,
    TokenRefreshRequest,
    TokenResponse,
    TrustedDeviceListResponse,
    TrustedDeviceResponse,
    TwoFactorStatusResponse,
    UserResponse,
    VerificationSentResponse,
    VerifyEmailRequest,
)
from notekeep.logging import get_logger
from notekeep.service.auth import LoginResult
from notekeep.service.errors import (
    ForbiddenError,
    NotFoundError,
    ResendTooSoonError,
    ValidationError,
)
from notekeep.service.otp import OtpDispatch
from notekeep.service.runtime import Runtime, check_rate_limit, get_runtime
from notekeep.service.sessions import TokenPair
from notekeep.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

REFRESH_COOKIE = "refresh_token"
DEVICE_COOKIE = "trusted_device"

# (limit, window_seconds)
LOGIN_RATE_LIMIT = (10, 15 * 60)
REGISTER_RATE_LIMIT = (5, 60 * 60)
LOGIN_CODE_ORIGIN_RATE_LIMIT = (5, 15 * 60)
LOGIN_CODE_USER_RATE_LIMIT = (3, 15 * 60)
SECOND_FACTOR_RATE_LIMIT = (10, 15 * 60)
PASSWORD_RESET_RATE_LIMIT = (5, 15 * 60)
EMAIL_VERIFICATION_RATE_LIMIT = (3, 15 * 60)


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def _enforce_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    response: Optional[Response] = None,
) -> None:
    """Apply an endpoint throttle; raises 429 with ``retry_after`` when exhausted."""
    allowed, remaining, retry_after = await check_rate_limit(
        runtime, key, limit, window_seconds
    )
    if response is not None:
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, remaining))
    if not allowed:
        logger.warning("endpoint_rate_limited", key=key.split(":", 1)[0], retry_after=retry_after)
        raise _http_error(
            "rate_limited",
            "Too many requests, please try again later",
            status_code=429,
            details={"retry_after": retry_after},
        )


def _client_address(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_user(authorization: Optional[str] = Header(None)) -> User:
    runtime = get_runtime()
    return await runtime.auth.authenticate(_bearer_token(authorization))


async def get_admin_user(user: User = Depends(get_user)) -> User:
    if not user.is_admin:
        raise ForbiddenError("Admin access required")
    return user


def _user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        username=user.username,
        email=user.email,
        email_verified=user.email_verified,
        role=user.role,
        two_factor_enabled=user.two_factor_enabled,
        is_disabled=user.is_disabled,
        created_at=user.created_at,
        last_login_at=user.last_login_at,
    )


def _set_refresh_cookie(response: Response, tokens: TokenPair) -> None:
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        httponly=True,
        secure=get_runtime().settings.cookie_secure,
        samesite="strict",
        expires=tokens.refresh_expires_at,
        path="/",
    )


def _set_device_cookie(response: Response, device_token: str) -> None:
    settings = get_runtime().settings
    response.set_cookie(
        DEVICE_COOKIE,
        device_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=settings.trusted_device_ttl_days * 24 * 60 * 60,
        path="/",
    )


def _clear_refresh_cookie(response: Response) -> None:
    response.delete_cookie(
        REFRESH_COOKIE, path="/", secure=get_runtime().settings.cookie_secure, samesite="strict"
    )


def _clear_device_cookie(response: Response) -> None:
    response.delete_cookie(
        DEVICE_COOKIE, path="/", secure=get_runtime().settings.cookie_secure, samesite="strict"
    )


def _login_payload(result: LoginResult, response: Response) -> AuthResponse:
    if result.requires_second_factor:
        return AuthResponse(status="second_factor_required", user_id=result.user_id)
    tokens = result.tokens
    _set_refresh_cookie(response, tokens)
    if result.trusted_device_token:
        _set_device_cookie(response, result.trusted_device_token)
    return AuthResponse(
        status="authenticated",
        user_id=result.user_id,
        user=_user_to_response(result.user) if result.user else None,
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        expires_in=tokens.expires_in,
        refresh_expires_at=tokens.refresh_expires_at,
        trusted_device_token=result.trusted_device_token,
    )


def _dispatch_payload(dispatch: OtpDispatch) -> SendCodeResponse:
    if dispatch.wait_seconds > 0:
        raise ResendTooSoonError(dispatch.wait_seconds)
    return SendCodeResponse(sent=dispatch.sent)


# -- sign in -----------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an account and sign it in.

    The first account ever created becomes an admin.

    Raises:
        403: If registration is closed
        409: If the username or email is taken
        429: If this origin registered too often
    """
    runtime = get_runtime()
    origin = _client_address(request)
    limit, window = REGISTER_RATE_LIMIT
    await _enforce_rate_limit(runtime, f"register:{origin}", limit, window, response=response)
    result = await runtime.auth.register(
        body.username,
        body.password,
        body.email,
        origin_address=origin,
        user_agent=request.headers.get("user-agent"),
    )
    return Envelope(status="ok", data=_login_payload(result, response))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    trusted_device: Optional[str] = Cookie(None, alias=DEVICE_COOKIE),
):
    """Password login by username or email.

    Accounts with two-factor auth return ``second_factor_required`` and only
    the user id, unless a valid trusted-device token is presented.
    """
    runtime = get_runtime()
    origin = _client_address(request)
    limit, window = LOGIN_RATE_LIMIT
    await _enforce_rate_limit(runtime, f"login:{origin}", limit, window, response=response)
    result = await runtime.auth.login(
        body.username,
        body.password,
        body.remember_me,
        origin_address=origin,
        user_agent=request.headers.get("user-agent"),
        device_token=body.trusted_device_token or trusted_device,
    )
    return Envelope(status="ok", data=_login_payload(result, response))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    token = (body.refresh_token if body else None) or refresh_cookie
    tokens = await runtime.auth.refresh(
        token or "",
        origin_address=_client_address(request),
        user_agent=request.headers.get("user-agent"),
    )
    _set_refresh_cookie(response, tokens)
    return Envelope(
        status="ok",
        data=TokenResponse(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_type=tokens.token_type,
            expires_in=tokens.expires_in,
            refresh_expires_at=tokens.refresh_expires_at,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    await runtime.auth.logout((body.refresh_token if body else None) or refresh_cookie)
    _clear_refresh_cookie(response)
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(response: Response, user: User = Depends(get_user)):
    """Revoke every session and trusted device of the caller."""
    runtime = get_runtime()
    revoked = await runtime.auth.logout_all(user.id)
    _clear_refresh_cookie(response)
    _clear_device_cookie(response)
    return Envelope(status="ok", data={"revoked": revoked})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(user: User = Depends(get_user)):
    return Envelope(status="ok", data=_user_to_response(user))


# -- email ownership ---------------------------------------------------------


@router.post("/auth/email/send-verification", response_model=Envelope, tags=["auth"])
async def send_email_verification(
    response: Response,
    body: Optional[SendVerificationRequest] = None,
    user: User = Depends(get_user),
):
    """Email a verification link.

    Without ``email`` the link confirms the current address. With ``email``
    the new address replaces the current one once the link is followed.

    Raises:
        400: If there is nothing to verify
        409: If the new address belongs to another account
        429: If the caller asked too often
    """
    runtime = get_runtime()
    limit, window = EMAIL_VERIFICATION_RATE_LIMIT
    await _enforce_rate_limit(runtime, f"email_verify:{user.id}", limit, window, response=response)
    dispatch = await runtime.auth.send_email_verification(user.id, body.email if body else None)
    return Envelope(
        status="ok", data=VerificationSentResponse(sent=dispatch.sent, email=dispatch.email)
    )


@router.post("/auth/email/verify", response_model=Envelope, tags=["auth"])
async def verify_email(body: VerifyEmailRequest):
    runtime = get_runtime()
    user = await runtime.auth.verify_email(body.token)
    return Envelope(status="ok", data=_user_to_response(user))


# -- password reset ----------------------------------------------------------


@router.post("/auth/password-reset/request", response_model=Envelope, tags=["auth"])
async def request_password_reset(body: PasswordResetRequest, request: Request, response: Response):
    """Email a reset link; the answer is the same whether or not the account exists."""
    runtime = get_runtime()
    limit, window = PASSWORD_RESET_RATE_LIMIT
    await _enforce_rate_limit(
        runtime, f"password_reset:{_client_address(request)}", limit, window, response=response
    )
    await runtime.auth.request_password_reset(body.identifier)
    return Envelope(
        status="ok",
        data={"message": "If the account exists, a reset link has been sent"},
    )


@router.post("/auth/password-reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_password_reset(body: PasswordResetConfirmRequest, response: Response):
    """Set a new password from a reset link; every session and trusted device is revoked."""
    runtime = get_runtime()
    await runtime.auth.confirm_password_reset(body.token, body.new_password)
    _clear_refresh_cookie(response)
    _clear_device_cookie(response)
    return Envelope(status="ok", data={"status": "reset"})


# -- sessions ----------------------------------------------------------------


@router.get("/auth/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(
    user: User = Depends(get_user),
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    sessions = await runtime.auth.list_sessions(user.id, refresh_cookie)
    return Envelope(
        status="ok",
        data=SessionListResponse(
            items=[
                SessionResponse(
                    id=s.id,
                    origin_address=s.origin_address,
                    user_agent=s.user_agent,
                    created_at=s.created_at,
                    expires_at=s.expires_at,
                    is_current=s.is_current,
                )
                for s in sessions
            ]
        ),
    )


@router.post("/auth/sessions/revoke-others", response_model=Envelope, tags=["sessions"])
async def revoke_other_sessions(
    body: Optional[TokenRefreshRequest] = None,
    user: User = Depends(get_user),
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    current = (body.refresh_token if body else None) or refresh_cookie
    revoked = await runtime.auth.revoke_other_sessions(user.id, current)
    return Envelope(status="ok", data={"revoked": revoked})


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def revoke_session(
    session_id: str = Path(..., max_length=64),
    user: User = Depends(get_user),
):
    runtime = get_runtime()
    if not await runtime.auth.revoke_session(session_id, user.id):
        raise NotFoundError("Session not found")
    return Envelope(status="ok", data={"revoked": 1})


# -- second factor -----------------------------------------------------------


@router.post("/auth/2fa/send-code", response_model=Envelope, tags=["2fa"])
async def send_code(body: SendCodeRequest, user: User = Depends(get_user)):
    """Email a code confirming 2FA activation or deactivation."""
    runtime = get_runtime()
    dispatch = await runtime.auth.send_otp(user.id, body.purpose)
    return Envelope(status="ok", data=_dispatch_payload(dispatch))


@router.post("/auth/2fa/send-login-code", response_model=Envelope, tags=["2fa"])
async def send_login_code(body: SendLoginCodeRequest, request: Request, response: Response):
    """Email a login code after a ``second_factor_required`` password step."""
    runtime = get_runtime()
    origin = _client_address(request)
    limit, window = LOGIN_CODE_ORIGIN_RATE_LIMIT
    await _enforce_rate_limit(runtime, f"login_code:{origin}", limit, window, response=response)
    limit, window = LOGIN_CODE_USER_RATE_LIMIT
    await _enforce_rate_limit(runtime, f"login_code_user:{body.user_id}", limit, window)
    dispatch = await runtime.auth.send_otp(body.user_id, "login")
    return Envelope(status="ok", data=_dispatch_payload(dispatch))


@router.post("/auth/2fa/verify", response_model=Envelope, tags=["2fa"])
async def verify_second_factor(
    body: SecondFactorVerifyRequest, request: Request, response: Response
):
    runtime = get_runtime()
    origin = _client_address(request)
    limit, window = SECOND_FACTOR_RATE_LIMIT
    await _enforce_rate_limit(runtime, f"2fa_verify:{origin}", limit, window, response=response)
    result = await runtime.auth.verify_second_factor(
        body.user_id,
        body.code,
        body.is_recovery_code,
        body.trust_device,
        body.remember_me,
        origin_address=origin,
        user_agent=request.headers.get("user-agent"),
    )
    return Envelope(status="ok", data=_login_payload(result, response))


@router.post("/auth/2fa/enable", response_model=Envelope, tags=["2fa"])
async def enable_two_factor(body: EnableTwoFactorRequest, user: User = Depends(get_user)):
    """Confirm activation; the response carries the recovery codes exactly once."""
    runtime = get_runtime()
    codes = await runtime.auth.enable_two_factor(user.id, body.code)
    return Envelope(status="ok", data=RecoveryCodesResponse(recovery_codes=codes))


@router.post("/auth/2fa/disable", response_model=Envelope, tags=["2fa"])
async def disable_two_factor(
    body: DisableTwoFactorRequest,
    response: Response,
    user: User = Depends(get_user),
):
    runtime = get_runtime()
    await runtime.auth.disable_two_factor(user.id, body.password, body.code)
    _clear_device_cookie(response)
    return Envelope(status="ok", data={"enabled": False})


@router.get("/auth/2fa/status", response_model=Envelope, tags=["2fa"])
async def two_factor_status(user: User = Depends(get_user)):
    runtime = get_runtime()
    status = await runtime.auth.two_factor_status(user.id)
    return Envelope(
        status="ok",
        data=TwoFactorStatusResponse(
            enabled=status.enabled,
            has_verified_email=status.has_verified_email,
            recovery_codes_remaining=status.recovery_codes_remaining,
        ),
    )


@router.post("/auth/2fa/regenerate-codes", response_model=Envelope, tags=["2fa"])
async def regenerate_recovery_codes(
    body: RegenerateCodesRequest, user: User = Depends(get_user)
):
    runtime = get_runtime()
    codes = await runtime.auth.regenerate_recovery_codes(user.id, body.password)
    return Envelope(status="ok", data=RecoveryCodesResponse(recovery_codes=codes))


@router.get("/auth/2fa/recovery-codes/status", response_model=Envelope, tags=["2fa"])
async def recovery_code_status(user: User = Depends(get_user)):
    runtime = get_runtime()
    status = await runtime.auth.recovery_code_status(user.id)
    return Envelope(
        status="ok",
        data=RecoveryCodeStatusResponse(
            total=status.total, remaining=status.remaining, created_at=status.created_at
        ),
    )


# -- trusted devices ---------------------------------------------------------


@router.get("/auth/trusted-devices", response_model=Envelope, tags=["2fa"])
async def list_trusted_devices(user: User = Depends(get_user)):
    runtime = get_runtime()
    devices = await runtime.auth.list_trusted_devices(user.id)
    return Envelope(
        status="ok",
        data=TrustedDeviceListResponse(
            items=[
                TrustedDeviceResponse(
                    id=d.id,
                    label=d.label,
                    origin_address=d.origin_address,
                    created_at=d.created_at,
                    expires_at=d.expires_at,
                )
                for d in devices
            ]
        ),
    )


@router.delete("/auth/trusted-devices/{device_id}", response_model=Envelope, tags=["2fa"])
async def revoke_trusted_device(
    device_id: str = Path(..., max_length=64),
    user: User = Depends(get_user),
):
    runtime = get_runtime()
    if not await runtime.auth.revoke_trusted_device(device_id, user.id):
        raise NotFoundError("Trusted device not found")
    return Envelope(status="ok", data={"revoked": 1})


@router.delete("/auth/trusted-devices", response_model=Envelope, tags=["2fa"])
async def revoke_all_trusted_devices(response: Response, user: User = Depends(get_user)):
    runtime = get_runtime()
    revoked = await runtime.auth.revoke_all_trusted_devices(user.id)
    _clear_device_cookie(response)
    return Envelope(status="ok", data={"revoked": revoked})


# -- account -----------------------------------------------------------------


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    response: Response,
    user: User = Depends(get_user),
):
    """Change the caller's password; every session and trusted device is revoked."""
    runtime = get_runtime()
    await runtime.auth.change_password(user.id, body.current_password, body.new_password)
    _clear_refresh_cookie(response)
    _clear_device_cookie(response)
    return Envelope(status="ok", data={"status": "changed"})


# -- admin -------------------------------------------------------------------


def _settings_payload(flags) -> AdminSettingsResponse:
    return AdminSettingsResponse(
        auth_disabled=flags.auth_disabled,
        allow_registration=flags.allow_registration,
        updated_at=flags.updated_at,
    )


@router.get("/admin/settings", response_model=Envelope, tags=["admin"])
async def get_admin_settings(admin: User = Depends(get_admin_user)):
    runtime = get_runtime()
    return Envelope(status="ok", data=_settings_payload(await runtime.settings_provider.get()))


@router.patch("/admin/settings", response_model=Envelope, tags=["admin"])
async def update_admin_settings(
    body: AdminSettingsUpdateRequest,
    admin: User = Depends(get_admin_user),
):
    """Update the auth flags; changes apply to the next request."""
    runtime = get_runtime()
    update = body.model_dump(exclude_none=True)
    if not update:
        raise ValidationError("No settings provided to update")
    flags = await runtime.settings_provider.update(**update)
    logger.info("admin_settings_changed", admin_id=admin.id, fields=sorted(update))
    return Envelope(status="ok", data=_settings_payload(flags))


@router.patch("/admin/users/{user_id}/disable", response_model=Envelope, tags=["admin"])
async def disable_user(
    user_id: str = Path(..., max_length=64),
    admin: User = Depends(get_admin_user),
):
    """Disable an account; its sessions and trusted devices are revoked."""
    runtime = get_runtime()
    user = await runtime.auth.set_user_disabled(user_id, True, actor_id=admin.id)
    return Envelope(status="ok", data=_user_to_response(user))


@router.patch("/admin/users/{user_id}/enable", response_model=Envelope, tags=["admin"])
async def enable_user(
    user_id: str = Path(..., max_length=64),
    admin: User = Depends(get_admin_user),
):
    runtime = get_runtime()
    user = await runtime.auth.set_user_disabled(user_id, False, actor_id=admin.id)
    return Envelope(status="ok", data=_user_to_response(user))
