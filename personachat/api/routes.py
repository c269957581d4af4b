from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response

from personachat.api.schemas import (
    AuthResponse,
    EmailVerificationRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    PasswordChangeRequest,
    RegisterRequest,
    ResendVerificationRequest,
    ResetPasswordRequest,
    TokenPairResponse,
    TokenRefreshRequest,
)
from personachat.logging import get_logger, redact_email, sanitize_error_message
from personachat.service.auth import AuthContext, AuthTokens
from personachat.service.errors import RateLimitedError, ServiceError
from personachat.service.runtime import Runtime, check_rate_limit, get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/api/auth")

_RESET_SENT_MESSAGE = "If an account with that email exists, a password reset link has been sent"
_VERIFICATION_SENT_MESSAGE = (
    "If an account with that email exists, a verification email has been sent"
)


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


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
        runtime, key, limit, window_seconds
    )
    if response is not None:
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, remaining))
    if not allowed:
        raise RateLimitedError(
            "Too many attempts, please try again later",
            detail={"retry_after": max(1, reset_seconds)},
        )


async def _auth_rate_limit(
    runtime: Runtime, scope: str, request: Request, response: Response
) -> None:
    await _enforce_rate_limit(
        runtime,
        f"auth:{scope}:{_client_ip(request) or 'unknown'}",
        runtime.settings.auth_rate_limit_per_window,
        runtime.settings.auth_rate_limit_window_seconds,
        response=response,
    )


async def _dispatch_email(send: Callable[..., bool], to_email: str, *args: Any) -> None:
    """Send mail in a worker thread; delivery problems never fail the request."""
    sent = await asyncio.to_thread(send, to_email, *args)
    if not sent:
        logger.warning("email_dispatch_failed", to=redact_email(to_email), kind=send.__name__)


def _tokens_payload(tokens: AuthTokens) -> TokenPairResponse:
    return TokenPairResponse(**tokens.as_dict())


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return runtime.auth.authenticate(authorization)


@router.post("/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an account and sign it in.

    A verification email goes out with a 7-day token; the account works
    before verification.

    Raises:
        403: If signup is disabled in settings
        409: If an active account already uses the email
        429: If rate limit exceeded for this client
    """
    runtime = get_runtime()
    if not runtime.settings.allow_signup:
        raise _http_error("forbidden", "signup disabled", status_code=403)
    await _auth_rate_limit(runtime, "register", request, response)
    result = await runtime.auth.register(
        body.email,
        body.password,
        body.name,
        user_agent=request.headers.get("user-agent"),
        ip_address=_client_ip(request),
    )
    await _dispatch_email(
        runtime.email.send_welcome,
        result.user["email"],
        result.user["profile"]["name"],
        result.verification_token,
    )
    return Envelope(
        status="ok",
        data=AuthResponse(user=result.user, tokens=_tokens_payload(result.tokens)),
    )


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Raises:
        401: If credentials are invalid
        403: If the account is locked after repeated failures
        429: If rate limit exceeded for this client
    """
    runtime = get_runtime()
    await _auth_rate_limit(runtime, "login", request, response)
    result = await runtime.auth.login(
        body.email,
        body.password,
        remember_me=body.remember_me,
        user_agent=request.headers.get("user-agent"),
        ip_address=_client_ip(request),
    )
    return Envelope(
        status="ok",
        data=AuthResponse(user=result.user, tokens=_tokens_payload(result.tokens)),
    )


@router.post("/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: TokenRefreshRequest, request: Request):
    runtime = get_runtime()
    tokens = await runtime.auth.refresh_tokens(
        body.refresh_token,
        user_agent=request.headers.get("user-agent"),
        ip_address=_client_ip(request),
    )
    return Envelope(status="ok", data={"tokens": _tokens_payload(tokens)})


@router.post("/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    authorization: Optional[str] = Header(None),
):
    """Revoke the given refresh token, or all of the caller's tokens.

    Always succeeds; an unknown or already revoked token is not an error.
    """
    runtime = get_runtime()
    refresh_token = body.refresh_token if body else None
    user_id: Optional[str] = None
    if authorization:
        try:
            user_id = runtime.auth.authenticate(authorization).user_id
        except ServiceError:
            user_id = None
    try:
        await runtime.auth.logout(refresh_token, user_id)
    except Exception as exc:
        logger.warning(
            "logout_failed",
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
        )
    return Envelope(status="ok", data=MessageResponse(message="Logout successful"))


@router.post("/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _auth_rate_limit(runtime, "forgot", request, response)
    try:
        token = await runtime.auth.generate_password_reset_token(
            body.email, ip_address=_client_ip(request)
        )
        user = runtime.store.get_user_by_email(body.email)
        if user:
            await _dispatch_email(
                runtime.email.send_password_reset, user.email, user.profile.name, token
            )
    except Exception as exc:
        # Same answer whether or not anything happened
        logger.warning(
            "password_reset_request_failed",
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
        )
    return Envelope(status="ok", data=MessageResponse(message=_RESET_SENT_MESSAGE))


@router.post("/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _auth_rate_limit(runtime, "reset", request, response)
    await runtime.auth.use_password_reset_token(body.token, body.password)
    return Envelope(status="ok", data=MessageResponse(message="Password reset successful"))


@router.post("/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerificationRequest, request: Request):
    runtime = get_runtime()
    # Guards against token guessing
    await _enforce_rate_limit(
        runtime,
        f"verify:email:{_client_ip(request) or 'unknown'}",
        limit=10,
        window_seconds=300,
    )
    await runtime.auth.use_email_verification_token(body.token)
    return Envelope(status="ok", data=MessageResponse(message="Email verified successfully"))


@router.post("/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(
    body: ResendVerificationRequest, request: Request, response: Response
):
    runtime = get_runtime()
    await _auth_rate_limit(runtime, "resend", request, response)
    issued = await runtime.auth.resend_email_verification(body.email)
    if issued is not None:
        user, token = issued
        await _dispatch_email(
            runtime.email.send_email_verification, user.email, user.profile.name, token
        )
    return Envelope(status="ok", data=MessageResponse(message=_VERIFICATION_SENT_MESSAGE))


@router.post("/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"password:change:{principal.user_id}",
        limit=5,
        window_seconds=300,
    )
    await runtime.auth.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    user = runtime.auth.get_current_user(principal.user_id)
    await _dispatch_email(runtime.email.send_password_changed, user.email, user.profile.name)
    return Envelope(status="ok", data=MessageResponse(message="Password changed successfully"))


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.auth.get_current_user(principal.user_id)
    return Envelope(status="ok", data={"user": user.public_dict()})
