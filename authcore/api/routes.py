from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response

from authcore.api.error_handling import (
    ACCESS_COOKIE,
    REFRESH_COOKIE,
    REFRESH_HEADER,
    clear_auth_cookies,
    remember_rotation,
    set_session_cookies,
)
from authcore.api.schemas import (
    ChangePasswordRequest,
    GoogleLoginRequest,
    LoginRequest,
    ResetOtpRequest,
    ResetPasswordRequest,
    SignupOtpRequest,
    SignupRequest,
    StatusResponse,
    UpdateProfileRequest,
    UserEnvelope,
    UserResponse,
)
from authcore.service.auth import AuthContext
from authcore.service.runtime import get_runtime

router = APIRouter(prefix="/auth", tags=["auth"])

RESET_SENT_MESSAGE = (
    "If an account exists for this email, a verification code has been sent"
)


@dataclass
class PresentedCredentials:
    access_token: Optional[str]
    refresh_token: Optional[str]
    via_headers: bool = False


def _read_credentials(request: Request) -> PresentedCredentials:
    """Cookies first; bearer headers for clients that cannot hold cookies."""
    access = request.cookies.get(ACCESS_COOKIE)
    refresh = request.cookies.get(REFRESH_COOKIE)
    via_headers = False
    if not access:
        authorization = request.headers.get("authorization") or ""
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            access = value.strip()
            via_headers = True
    if not refresh:
        header_refresh = request.headers.get(REFRESH_HEADER)
        if header_refresh:
            refresh = header_refresh.strip()
            via_headers = True
    return PresentedCredentials(access, refresh, via_headers)


def _client_meta(request: Request) -> dict[str, Optional[str]]:
    return {
        "user_agent": request.headers.get("user-agent"),
        "ip_addr": request.client.host if request.client else None,
    }


async def get_auth_context(request: Request, response: Response) -> AuthContext:
    """Authenticate the caller and re-issue credentials after a rotation."""
    runtime = get_runtime()
    creds = _read_credentials(request)
    ctx = await runtime.auth.authenticate(
        creds.access_token, creds.refresh_token, **_client_meta(request)
    )
    if ctx.rotated is not None:
        set_session_cookies(
            response, ctx.rotated, runtime.settings, echo_headers=creds.via_headers
        )
        remember_rotation(request, ctx.rotated, echo_headers=creds.via_headers)
    return ctx


def _context_user(ctx: AuthContext) -> UserEnvelope:
    return UserEnvelope(
        user=UserResponse(
            id=ctx.user_id,
            name=ctx.display_name,
            email=ctx.email,
            profile_picture=ctx.avatar_url,
        )
    )


@router.post("/signup/send-otp", response_model=StatusResponse)
async def send_signup_otp(body: SignupOtpRequest):
    """Email a six-digit code that gates account creation.

    Raises:
        400: If an account already exists for this email
        429: If a code was sent less than a minute ago
    """
    runtime = get_runtime()
    await runtime.auth.request_signup_otp(body.email, body.name)
    return StatusResponse(message="Verification code sent")


@router.post("/signup", response_model=UserEnvelope, status_code=201)
async def signup(body: SignupRequest, request: Request, response: Response):
    """Create an account from a verified code and start a session."""
    runtime = get_runtime()
    user, _session, tokens = await runtime.auth.signup(
        body.email,
        body.password,
        body.otp,
        body.name,
        **_client_meta(request),
    )
    set_session_cookies(response, tokens, runtime.settings)
    return UserEnvelope(user=UserResponse.from_user(user))


@router.post("/login", response_model=UserEnvelope)
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Raises:
        401: With one undifferentiated message for unknown email, Google-only
            account, or wrong password
    """
    runtime = get_runtime()
    user, _session, tokens = await runtime.auth.login(
        body.email, body.password, **_client_meta(request)
    )
    set_session_cookies(response, tokens, runtime.settings)
    return UserEnvelope(user=UserResponse.from_user(user))


@router.post("/google", response_model=UserEnvelope)
async def google_login(body: GoogleLoginRequest, request: Request, response: Response):
    runtime = get_runtime()
    user, _session, tokens = await runtime.auth.google_login(
        body.credential, **_client_meta(request)
    )
    set_session_cookies(response, tokens, runtime.settings)
    return UserEnvelope(user=UserResponse.from_user(user))


@router.get("/me", response_model=UserEnvelope)
async def me(ctx: AuthContext = Depends(get_auth_context)):
    return _context_user(ctx)


@router.post("/refresh", response_model=UserEnvelope)
async def refresh(request: Request, response: Response):
    """Exchange the refresh token for a new pair. The old refresh token dies."""
    runtime = get_runtime()
    creds = _read_credentials(request)
    ctx = await runtime.auth.refresh(creds.refresh_token, **_client_meta(request))
    if ctx.rotated is not None:
        set_session_cookies(
            response, ctx.rotated, runtime.settings, echo_headers=creds.via_headers
        )
    return _context_user(ctx)


@router.post("/logout", response_model=StatusResponse)
async def logout(request: Request, response: Response):
    runtime = get_runtime()
    creds = _read_credentials(request)
    await runtime.auth.logout(creds.refresh_token)
    clear_auth_cookies(response, secure=runtime.settings.secure_cookies)
    return StatusResponse(message="Logged out")


@router.post("/logout-all", response_model=StatusResponse)
async def logout_all(response: Response, ctx: AuthContext = Depends(get_auth_context)):
    """End every session of the caller and void all outstanding access tokens."""
    runtime = get_runtime()
    await runtime.auth.logout_all(ctx.user_id)
    clear_auth_cookies(response, secure=runtime.settings.secure_cookies)
    return StatusResponse(message="Logged out from all devices")


@router.post("/send-reset-otp", response_model=StatusResponse)
async def send_reset_otp(body: ResetOtpRequest):
    """Same answer whether or not the account exists; 429 only on cooldown."""
    runtime = get_runtime()
    await runtime.auth.request_password_reset(body.email)
    return StatusResponse(message=RESET_SENT_MESSAGE)


@router.post("/reset-password", response_model=StatusResponse)
async def reset_password(body: ResetPasswordRequest, response: Response):
    runtime = get_runtime()
    await runtime.auth.reset_password(body.email, body.otp, body.new_password)
    clear_auth_cookies(response, secure=runtime.settings.secure_cookies)
    return StatusResponse(message="Password reset successful")


@router.put("/update-profile", response_model=UserEnvelope)
async def update_profile(
    body: UpdateProfileRequest, ctx: AuthContext = Depends(get_auth_context)
):
    runtime = get_runtime()
    user = await runtime.auth.update_profile(
        ctx.user_id, display_name=body.name, avatar_url=body.profile_picture
    )
    return UserEnvelope(user=UserResponse.from_user(user))


@router.post("/change-password", response_model=StatusResponse)
async def change_password(
    body: ChangePasswordRequest,
    request: Request,
    ctx: AuthContext = Depends(get_auth_context),
):
    """Replace the password; other devices are signed out, this one stays."""
    runtime = get_runtime()
    refresh_token = (
        ctx.rotated.refresh_token
        if ctx.rotated is not None
        else _read_credentials(request).refresh_token
    )
    await runtime.auth.change_password(
        ctx.user_id,
        body.current_password,
        body.new_password,
        refresh_token=refresh_token,
    )
    return StatusResponse(message="Password changed")


@router.delete("/delete-account", response_model=StatusResponse)
async def delete_account(response: Response, ctx: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    await runtime.auth.delete_account(ctx.user_id)
    clear_auth_cookies(response, secure=runtime.settings.secure_cookies)
    return StatusResponse(message="Account deleted")
