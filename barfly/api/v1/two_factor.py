"""Two-factor authentication settings endpoints.

Endpoints:
- POST /auth/2fa/enable: start setup, return the otpauth:// URI
- POST /auth/2fa/verify: confirm setup with a code from the app
- POST /auth/2fa/cancel: abandon a pending setup
- POST /auth/2fa/disable: remove the enabled secret

All endpoints require a live session.
"""

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field
from starlette.responses import Response

from barfly.api.deps import (
    Context,
    CurrentUserId,
    reject_honeypot,
    require_csrf,
)
from barfly.api.flow_responses import outcome_response
from barfly.core.config import settings
from barfly.core.rate_limiting import limiter
from barfly.models.verification import VerificationType
from barfly.services import account_service
from barfly.services.verification_service import cancel_challenge, submit_code

router = APIRouter(dependencies=[Depends(reject_honeypot), Depends(require_csrf)])


class EnableTwoFactorRequest(BaseModel):
    """Request body for POST /auth/2fa/enable."""

    model_config = ConfigDict(extra="ignore")

    redirect_to: str | None = Field(None, max_length=2048)


class TwoFactorCodeRequest(BaseModel):
    """Request body for POST /auth/2fa/verify."""

    model_config = ConfigDict(extra="ignore")

    code: str = Field(min_length=6, max_length=6, pattern=r"^\d{6}$")


class DisableTwoFactorRequest(BaseModel):
    """Request body for POST /auth/2fa/disable.

    ``code`` is only checked when TWO_FACTOR_DISABLE_REQUIRES_CODE is on.
    """

    model_config = ConfigDict(extra="ignore")

    code: str | None = Field(None, max_length=10)


@router.post("/2fa/enable")
async def enable_two_factor(
    body: EnableTwoFactorRequest,
    user_id: CurrentUserId,  # noqa: ARG001 - requires a live session
    ctx: Context,
) -> Response:
    """Issue a setup secret. Calling again replaces the pending one."""
    outcome = await account_service.enable_two_factor(
        ctx, redirect_to=body.redirect_to
    )
    return outcome_response(outcome, redirect=False)


@router.post("/2fa/verify")
@limiter.limit(lambda: settings.rate_limit_auth)
async def verify_two_factor(
    request: Request,  # noqa: ARG001 - required by @limiter.limit()
    body: TwoFactorCodeRequest,
    user_id: CurrentUserId,
    ctx: Context,
) -> Response:
    """Confirm setup; the pending secret becomes the enabled secret."""
    outcome = await submit_code(
        ctx,
        code=body.code,
        type=VerificationType.TWO_FACTOR_SETUP,
        target=str(user_id),
    )
    return outcome_response(outcome, redirect=False)


@router.post("/2fa/cancel")
async def cancel_two_factor_setup(user_id: CurrentUserId, ctx: Context) -> Response:
    """Abandon a pending setup."""
    outcome = await cancel_challenge(
        ctx, type=VerificationType.TWO_FACTOR_SETUP, target=str(user_id)
    )
    return outcome_response(outcome, redirect=False)


@router.post("/2fa/disable")
@limiter.limit(lambda: settings.rate_limit_auth)
async def disable_two_factor(
    request: Request,  # noqa: ARG001 - required by @limiter.limit()
    body: DisableTwoFactorRequest,
    user_id: CurrentUserId,  # noqa: ARG001 - requires a live session
    ctx: Context,
) -> Response:
    """Turn 2FA off."""
    outcome = await account_service.disable_two_factor(ctx, code=body.code)
    return outcome_response(outcome, redirect=False)
