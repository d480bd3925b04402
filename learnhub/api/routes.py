from __future__ import annotations

import uuid
from typing import Optional

from fastapi import APIRouter, Body, Depends, Header, Query, Request, Response

from learnhub.api.schemas import (
    AdminUpdateUserRequest,
    CompleteProfileRequest,
    CreateInstructorRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    RefreshRequest,
    ResetPasswordForgotRequest,
    ResetPasswordRequest,
    SetPasswordRequest,
    StatusUpdateRequest,
    StudentSignupRequest,
    VerifyOtpRequest,
)
from learnhub.config import CookieConfig
from learnhub.logging import get_logger
from learnhub.service import messages
from learnhub.service.auth import (
    VIEW_ENROLLMENTS,
    VIEW_PAYMENT_KEY,
    require_capability,
)
from learnhub.service.errors import AuthenticationError, RateLimitedError, ValidationError
from learnhub.service.runtime import check_rate_limit, get_runtime
from learnhub.service.tokens import AccessContext, TokenPair

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

RATE_LIMIT_WINDOW_SECONDS = 60


async def _enforce_rate_limit(runtime, key: str, limit: int, window_seconds: int) -> None:
    """Raise 429 when the token bucket for ``key`` is empty."""
    allowed = await check_rate_limit(runtime, key, limit, window_seconds)
    if not allowed:
        logger.warning("rate_limit_exceeded", bucket=key.split(":", 1)[0])
        raise RateLimitedError(messages.TOO_MANY_REQUESTS)


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        return None
    return credentials.strip()


async def get_principal(
    request: Request, authorization: Optional[str] = Header(None)
) -> AccessContext:
    """Resolve the caller from the access cookie, falling back to the bearer header."""
    runtime = get_runtime()
    token = request.cookies.get(runtime.cookies.access_name) or _bearer_token(authorization)
    if not token:
        raise AuthenticationError(messages.UNAUTHORIZED)
    return runtime.auth.authenticate(token)


def _parse_user_id(user_id: str) -> str:
    try:
        return str(uuid.UUID(user_id))
    except ValueError:
        raise ValidationError(messages.INVALID_ID, detail={"user_id": user_id})


def _apply_auth_cookies(response: Response, cookies: CookieConfig, tokens: TokenPair) -> None:
    response.set_cookie(
        cookies.access_name,
        tokens.access_token,
        max_age=cookies.access_max_age,
        httponly=True,
        secure=cookies.secure,
        samesite=cookies.samesite,
        path=cookies.path,
    )
    response.set_cookie(
        cookies.refresh_name,
        tokens.refresh_token,
        max_age=cookies.refresh_max_age,
        httponly=True,
        secure=cookies.secure,
        samesite=cookies.samesite,
        path=cookies.path,
    )


def _clear_auth_cookies(response: Response, cookies: CookieConfig) -> None:
    # Browsers only drop a cookie when path, secure and samesite match the set call
    for name in (cookies.access_name, cookies.refresh_name):
        response.delete_cookie(
            name,
            path=cookies.path,
            secure=cookies.secure,
            httponly=True,
            samesite=cookies.samesite,
        )


def _message(message: str, **extra) -> dict:
    return {"message": message, **extra}


# -- auth --------------------------------------------------------------------


@router.post("/auth/signup/student", response_model=Envelope, status_code=201, tags=["auth"])
@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup_student(body: StudentSignupRequest, response: Response):
    """Register a student and start a session.

    Raises:
        400: validation failure, password mismatch or duplicate email
        429: rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"signup:{body.email}",
        runtime.settings.signup_rate_limit_per_minute,
        RATE_LIMIT_WINDOW_SECONDS,
    )
    result = await runtime.auth.signup_student(
        first_name=body.first_name,
        last_name=body.last_name,
        email=body.email,
        password=body.password,
        confirm_password=body.confirm_password,
        mobile_no=body.mobile_no,
        gender=body.gender,
    )
    _apply_auth_cookies(response, runtime.cookies, result.tokens)
    return Envelope(
        success=True,
        data={**result.to_response(), "message": messages.SIGNUP_SUCCESS},
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
@router.post("/auth/admin/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Authenticate with a password or a one-time code.

    Raises:
        401: invalid credentials, deactivated account or unapproved instructor
        429: OTP attempt budget or login rate limit exhausted
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        RATE_LIMIT_WINDOW_SECONDS,
    )
    result = await runtime.auth.login(body.email, password=body.password, otp=body.otp)
    _apply_auth_cookies(response, runtime.cookies, result.tokens)
    return Envelope(
        success=True,
        data={**result.to_response(), "message": messages.LOGIN_SUCCESS},
    )


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp:{body.email}",
        runtime.settings.otp_rate_limit_per_minute,
        RATE_LIMIT_WINDOW_SECONDS,
    )
    await runtime.auth.forgot_password(body.email)
    return Envelope(success=True, data=_message(messages.OTP_SENT))


@router.post("/auth/verify-otp-login", response_model=Envelope, tags=["auth"])
async def verify_otp_login(body: VerifyOtpRequest, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp_verify:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        RATE_LIMIT_WINDOW_SECONDS,
    )
    result = await runtime.auth.verify_otp_login(body.email, body.otp)
    _apply_auth_cookies(response, runtime.cookies, result.tokens)
    return Envelope(
        success=True,
        data={**result.to_response(), "message": messages.OTP_LOGIN_SUCCESS},
    )


@router.post("/auth/set-password", response_model=Envelope, tags=["auth"])
async def set_password(
    body: SetPasswordRequest, principal: AccessContext = Depends(get_principal)
):
    """First-login password for a provisioned instructor."""
    runtime = get_runtime()
    user = await runtime.auth.set_initial_password(
        principal.user, body.new_password, body.confirm_password
    )
    return Envelope(success=True, data=_message(messages.PASSWORD_SET, user=user.to_public()))


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(
    body: ResetPasswordRequest, principal: AccessContext = Depends(get_principal)
):
    runtime = get_runtime()
    await runtime.auth.reset_password(
        principal.user, body.current_password, body.new_password, body.confirm_password
    )
    return Envelope(success=True, data=_message(messages.PASSWORD_RESET))


@router.post("/auth/reset-password-forgot", response_model=Envelope, tags=["auth"])
async def reset_password_forgot(
    body: ResetPasswordForgotRequest, principal: AccessContext = Depends(get_principal)
):
    runtime = get_runtime()
    await runtime.auth.reset_password_forgot(
        principal.user, body.new_password, body.confirm_password
    )
    return Envelope(success=True, data=_message(messages.PASSWORD_RESET))


@router.post("/auth/refresh-token", response_model=Envelope, tags=["auth"])
async def refresh_token(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = Body(None),
):
    """Rotate the session; only the access token is returned in the body."""
    runtime = get_runtime()
    presented = request.cookies.get(runtime.cookies.refresh_name) or (
        body.refresh_token if body else None
    )
    tokens = await runtime.auth.refresh(presented)
    _apply_auth_cookies(response, runtime.cookies, tokens)
    return Envelope(success=True, data={"accessToken": tokens.access_token})


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = Body(None),
    principal: AccessContext = Depends(get_principal),
):
    runtime = get_runtime()
    presented = request.cookies.get(runtime.cookies.refresh_name) or (
        body.refresh_token if body else None
    )
    await runtime.auth.logout(presented)
    _clear_auth_cookies(response, runtime.cookies)
    logger.info("user_logout", user_id=principal.user_id)
    return Envelope(success=True, data=_message(messages.LOGOUT_SUCCESS))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: AccessContext = Depends(get_principal)):
    return Envelope(success=True, data=principal.user.to_public())


@router.put("/auth/complete-profile", response_model=Envelope, tags=["auth"])
async def complete_profile(
    body: CompleteProfileRequest, principal: AccessContext = Depends(get_principal)
):
    runtime = get_runtime()
    user = await runtime.auth.complete_profile(
        principal.user,
        address=body.address.model_dump(exclude_none=True) if body.address else None,
        education=body.education.model_dump(exclude_none=True) if body.education else None,
        bio=body.bio,
        phone=body.phone,
        profile_image=body.profile_image,
    )
    return Envelope(success=True, data=user.to_public())


@router.post(
    "/auth/admin/create-instructor", response_model=Envelope, status_code=201, tags=["admin"]
)
async def create_instructor(
    body: CreateInstructorRequest, principal: AccessContext = Depends(get_principal)
):
    """Provision an instructor; the temporary password goes out by email only."""
    runtime = get_runtime()
    user = await runtime.auth.create_instructor(
        principal.user,
        first_name=body.first_name,
        last_name=body.last_name,
        email=body.email,
    )
    return Envelope(
        success=True, data=_message(messages.INSTRUCTOR_CREATED, user=user.to_public())
    )


# -- admin -------------------------------------------------------------------


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    role: Optional[str] = Query(None, max_length=32),
    status: Optional[str] = Query(None, max_length=32),
    search: Optional[str] = Query(None, max_length=200),
    principal: AccessContext = Depends(get_principal),
):
    runtime = get_runtime()
    users = runtime.admin.list_users(principal.user, role=role, status=status, search=search)
    return Envelope(
        success=True,
        data={"total": len(users), "users": [u.to_public() for u in users]},
    )


@router.get("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_get_user(user_id: str, principal: AccessContext = Depends(get_principal)):
    runtime = get_runtime()
    user = runtime.admin.get_user(principal.user, _parse_user_id(user_id))
    return Envelope(success=True, data=user.to_public())


@router.patch("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_update_user(
    user_id: str,
    body: AdminUpdateUserRequest,
    principal: AccessContext = Depends(get_principal),
):
    runtime = get_runtime()
    user = runtime.admin.update_user(
        principal.user,
        _parse_user_id(user_id),
        first_name=body.first_name,
        last_name=body.last_name,
        email=body.email,
        role=body.role,
    )
    return Envelope(success=True, data=_message("User updated", user=user.to_public()))


@router.delete("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_delete_user(user_id: str, principal: AccessContext = Depends(get_principal)):
    runtime = get_runtime()
    runtime.admin.delete_user(principal.user, _parse_user_id(user_id))
    return Envelope(success=True, data=_message("User deleted successfully"))


@router.patch("/admin/users/{user_id}/status", response_model=Envelope, tags=["admin"])
async def admin_update_status(
    user_id: str,
    body: StatusUpdateRequest,
    principal: AccessContext = Depends(get_principal),
):
    runtime = get_runtime()
    user = runtime.admin.update_status(principal.user, _parse_user_id(user_id), body.status)
    return Envelope(success=True, data=_message("User status updated", user=user.to_public()))


@router.patch("/admin/users/{user_id}/deactivate", response_model=Envelope, tags=["admin"])
async def admin_deactivate_user(
    user_id: str, principal: AccessContext = Depends(get_principal)
):
    runtime = get_runtime()
    user = runtime.admin.set_active(principal.user, _parse_user_id(user_id), False)
    return Envelope(success=True, data=_message("User deactivated", user=user.to_public()))


@router.patch("/admin/users/{user_id}/activate", response_model=Envelope, tags=["admin"])
async def admin_activate_user(user_id: str, principal: AccessContext = Depends(get_principal)):
    runtime = get_runtime()
    user = runtime.admin.set_active(principal.user, _parse_user_id(user_id), True)
    return Envelope(success=True, data=_message("User activated", user=user.to_public()))


@router.get("/admin/dashboard/stats", response_model=Envelope, tags=["admin"])
async def admin_dashboard_stats(principal: AccessContext = Depends(get_principal)):
    runtime = get_runtime()
    return Envelope(success=True, data=runtime.admin.dashboard_stats(principal.user))


@router.get("/admin/otps", response_model=Envelope, tags=["admin"])
async def admin_list_otps(
    email: Optional[str] = Query(None, max_length=254),
    principal: AccessContext = Depends(get_principal),
):
    runtime = get_runtime()
    otps = runtime.admin.list_otps(principal.user, email=email)
    return Envelope(success=True, data={"otps": otps})


# -- enrollments & payments --------------------------------------------------


@router.get("/enrollments/me", response_model=Envelope, tags=["enrollments"])
async def my_enrollments(principal: AccessContext = Depends(get_principal)):
    require_capability(principal.role, VIEW_ENROLLMENTS)
    runtime = get_runtime()
    enrollments = runtime.store.list_enrollments(principal.user_id)
    return Envelope(success=True, data=[e.to_public() for e in enrollments])


@router.get("/payments/key", response_model=Envelope, tags=["payments"])
async def payment_key(principal: AccessContext = Depends(get_principal)):
    require_capability(principal.role, VIEW_PAYMENT_KEY)
    runtime = get_runtime()
    return Envelope(success=True, data={"key": runtime.settings.razorpay_key_id or ""})
