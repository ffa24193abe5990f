"""Authentication endpoints: login gate, sessions and account flows.

Endpoints:
- GET /auth/csrf: issue the CSRF cookie and token
- POST /auth/login: password login (deferred behind 2FA when enabled)
- POST /auth/logout: delete the session, clear the cookie
- GET /auth/me: current user
- POST /auth/sessions/sign-out-others: delete every other session
- POST /auth/signup: e-mail a signup code
- POST /auth/complete-signup: create the account after verification
- POST /auth/forgot-password: e-mail a reset code (enumeration-safe)
- POST /auth/reset-password: set a new password after verification
- POST /auth/change-password: replace the password of the signed-in user
- POST /auth/change-email: e-mail a code to the new address

Security considerations:
- Every unsafe request passes the honeypot and CSRF guards first
- login: constant-time comparison via DUMMY_HASH prevents user enumeration
- reset-password: deletes all sessions of the account
- change-password: checks the current password, keeps only this session
"""

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator
from starlette.responses import Response

from barfly.api.deps import (
    Context,
    CurrentSession,
    DbSession,
    reject_honeypot,
    require_csrf,
)
from barfly.api.flow_responses import outcome_response
from barfly.core.auth import clear_session_cookie, set_csrf_cookie
from barfly.core.config import settings
from barfly.core.csrf import issue_csrf_token, is_signed_token
from barfly.core.errors import UnauthorizedError
from barfly.core.rate_limiting import limiter
from barfly.core.responses import DataResponse
from barfly.models.verification import VerificationType
from barfly.repositories.user_repository import UserRepository
from barfly.repositories.verification_repository import VerificationRepository
from barfly.services import account_service, login_gate

router = APIRouter(dependencies=[Depends(reject_honeypot), Depends(require_csrf)])

_PASSWORD_MISMATCH_MSG = "The passwords must match"  # nosec B105


# ===================================================================
# Request models
# ===================================================================
# Guard fields (``csrf``, honeypot) may ride along in any body, so the
# models ignore unknown keys instead of forbidding them.


class LoginRequest(BaseModel):
    """Request body for POST /auth/login."""

    model_config = ConfigDict(extra="ignore")

    email: EmailStr
    password: str = Field(min_length=1, max_length=128)
    remember_me: bool = False
    redirect_to: str | None = Field(None, max_length=2048)


class EmailRequest(BaseModel):
    """Request body for POST /auth/signup and /auth/forgot-password."""

    model_config = ConfigDict(extra="ignore")

    email: EmailStr
    redirect_to: str | None = Field(None, max_length=2048)


class _NewPassword(BaseModel):
    password: str = Field(min_length=1, max_length=128)
    confirm_password: str = Field(min_length=1, max_length=128)

    @model_validator(mode="after")
    def passwords_match(self) -> "_NewPassword":
        if self.password != self.confirm_password:
            raise ValueError(_PASSWORD_MISMATCH_MSG)
        return self


class CompleteSignupRequest(_NewPassword):
    """Request body for POST /auth/complete-signup."""

    model_config = ConfigDict(extra="ignore")

    username: str = Field(min_length=3, max_length=20, pattern=r"^[a-zA-Z0-9_]+$")
    remember_me: bool = False
    redirect_to: str | None = Field(None, max_length=2048)


class ResetPasswordRequest(_NewPassword):
    """Request body for POST /auth/reset-password."""

    model_config = ConfigDict(extra="ignore")


class ChangePasswordRequest(_NewPassword):
    """Request body for POST /auth/change-password."""

    model_config = ConfigDict(extra="ignore")

    current_password: str = Field(min_length=1, max_length=128)


class ChangeEmailRequest(BaseModel):
    """Request body for POST /auth/change-email."""

    model_config = ConfigDict(extra="ignore")

    email: EmailStr
    redirect_to: str | None = Field(None, max_length=2048)


# ===================================================================
# CSRF
# ===================================================================


@router.get("/csrf")
async def get_csrf_token(request: Request, response: Response) -> DataResponse[dict]:
    """Issue the CSRF token.

    Reuses the browser's current token when it is still signed by us so
    several open tabs keep working.
    """
    token = request.cookies.get(settings.csrf_cookie_name)
    if not token or not is_signed_token(token):
        token = issue_csrf_token()
        set_csrf_cookie(response, token)
    return DataResponse(data={"csrf": token})


# ===================================================================
# Login / logout / sessions
# ===================================================================


@router.post("/login")
@limiter.limit(lambda: settings.rate_limit_auth)
async def login(
    request: Request,  # noqa: ARG001 - required by @limiter.limit()
    body: LoginRequest,
    ctx: Context,
) -> Response:
    """Verify e-mail + password and open a session.

    Without 2FA: 303 to ``redirect_to`` with the session cookie set.
    With 2FA: 303 to the verify page with only the handoff cookie set;
    the session cookie follows once the code checks out.
    """
    outcome = await login_gate.login(
        ctx,
        email=body.email,
        password=body.password,
        remember_me=body.remember_me,
        redirect_to=body.redirect_to,
    )
    return outcome_response(outcome)


@router.post("/logout")
async def logout(ctx: Context, response: Response) -> DataResponse[dict]:
    """Delete the current session and clear the cookie.

    No auth required: clears the cookie regardless.
    """
    await login_gate.logout(ctx)
    clear_session_cookie(response)
    return DataResponse(data={"message": "Signed out"})


@router.get("/me")
async def get_me(session: CurrentSession, db: DbSession) -> DataResponse[dict]:
    """Return the signed-in user.

    Returns 401 unless the request carries a committed, live session.
    """
    user = await UserRepository.get_by_id(db, session.user_id)
    if user is None:
        raise UnauthorizedError()

    two_factor = await VerificationRepository.exists(
        db, target=str(user.id), type=VerificationType.TWO_FACTOR
    )
    return DataResponse(
        data={
            "id": str(user.id),
            "email": user.email,
            "username": user.username,
            "two_factor_enabled": two_factor,
            "session_expires_at": session.expires_at.isoformat(),
        }
    )


@router.post("/sessions/sign-out-others")
async def sign_out_other_sessions(
    session: CurrentSession,  # noqa: ARG001 - requires a live session
    ctx: Context,
) -> DataResponse[dict]:
    """Delete every session of the user except the current one."""
    removed = await login_gate.sign_out_other_sessions(ctx)
    return DataResponse(data={"removed": removed})


# ===================================================================
# Signup
# ===================================================================


@router.post("/signup")
@limiter.limit(lambda: settings.rate_limit_auth)
async def signup(
    request: Request,  # noqa: ARG001 - required by @limiter.limit()
    body: EmailRequest,
    ctx: Context,
) -> Response:
    """E-mail a signup code and send the browser to the verify page."""
    outcome = await account_service.request_signup(
        ctx, email=body.email, redirect_to=body.redirect_to
    )
    return outcome_response(outcome)


@router.post("/complete-signup")
@limiter.limit(lambda: settings.rate_limit_auth)
async def complete_signup(
    request: Request,  # noqa: ARG001 - required by @limiter.limit()
    body: CompleteSignupRequest,
    ctx: Context,
) -> Response:
    """Create the account for the e-mail verified in this browser."""
    outcome = await account_service.complete_signup(
        ctx,
        username=body.username,
        password=body.password,
        remember_me=body.remember_me,
        redirect_to=body.redirect_to,
    )
    return outcome_response(outcome)


# ===================================================================
# Password reset
# ===================================================================


@router.post("/forgot-password")
@limiter.limit(lambda: settings.rate_limit_auth)
async def forgot_password(
    request: Request,  # noqa: ARG001 - required by @limiter.limit()
    body: EmailRequest,
    ctx: Context,
) -> Response:
    """E-mail a reset code. Same response whether the account exists or not."""
    outcome = await account_service.request_password_reset(
        ctx, email=body.email, redirect_to=body.redirect_to
    )
    return outcome_response(outcome)


@router.post("/reset-password")
@limiter.limit(lambda: settings.rate_limit_auth)
async def reset_password(
    request: Request,  # noqa: ARG001 - required by @limiter.limit()
    body: ResetPasswordRequest,
    ctx: Context,
) -> Response:
    """Set a new password for the account verified in this browser."""
    outcome = await account_service.reset_password(ctx, password=body.password)
    return outcome_response(outcome)


@router.post("/change-password")
@limiter.limit(lambda: settings.rate_limit_auth)
async def change_password(
    request: Request,  # noqa: ARG001 - required by @limiter.limit()
    body: ChangePasswordRequest,
    session: CurrentSession,  # noqa: ARG001 - requires a live session
    ctx: Context,
) -> DataResponse[dict]:
    """Change the password after checking the current one.

    The current session stays valid; every other session is deleted.
    """
    removed = await account_service.change_password(
        ctx, current_password=body.current_password, password=body.password
    )
    return DataResponse(data={"message": "Password changed", "removed": removed})


# ===================================================================
# Change e-mail
# ===================================================================


@router.post("/change-email")
@limiter.limit(lambda: settings.rate_limit_auth)
async def change_email(
    request: Request,  # noqa: ARG001 - required by @limiter.limit()
    body: ChangeEmailRequest,
    session: CurrentSession,  # noqa: ARG001 - requires a live session
    ctx: Context,
) -> Response:
    """E-mail a code to the new address; the switch happens on verify."""
    outcome = await account_service.request_email_change(
        ctx, new_email=body.email, redirect_to=body.redirect_to
    )
    return outcome_response(outcome)
