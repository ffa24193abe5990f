"""Verify step endpoints shared by every code-based flow.

Endpoints:
- GET /auth/verify: describe the challenge, or redeem a magic link when
  the query carries a code
- POST /auth/verify: submit a typed code

Magic links are followed from an e-mail client and cannot carry a CSRF
token; GET is a safe method and skips the guard. The code itself is the
proof of possession.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict, Field
from starlette.responses import Response

from barfly.api.deps import Context, reject_honeypot, require_csrf
from barfly.api.flow_responses import outcome_response
from barfly.core.config import settings
from barfly.core.rate_limiting import limiter
from barfly.models.verification import VerificationType
from barfly.services.verification_service import describe_challenge, submit_code

router = APIRouter(dependencies=[Depends(reject_honeypot), Depends(require_csrf)])


class VerifyRequest(BaseModel):
    """Request body for POST /auth/verify.

    Guard fields (``csrf``, honeypot) may ride along and are ignored here.
    """

    model_config = ConfigDict(extra="ignore")

    code: str = Field(min_length=4, max_length=10)
    type: VerificationType
    target: str = Field(min_length=1, max_length=255)
    redirect_to: str | None = Field(None, max_length=2048)


@router.get("/verify")
@limiter.limit(lambda: settings.rate_limit_auth)
async def get_verify(
    request: Request,  # noqa: ARG001 - required by @limiter.limit()
    ctx: Context,
    type: Annotated[VerificationType, Query()],
    target: Annotated[str, Query(min_length=1, max_length=255)],
    code: Annotated[str | None, Query(min_length=4, max_length=10)] = None,
    redirect_to: Annotated[
        str | None, Query(alias="redirectTo", max_length=2048)
    ] = None,
) -> Response:
    """Display the verify step, or redeem a magic link.

    Without a code: 200 with the idle flow description, no ledger read
    and no mutation. With a code: same as POST /auth/verify.
    """
    if code is None:
        outcome = describe_challenge(
            type=type, target=target, redirect_to=redirect_to
        )
        return outcome_response(outcome, redirect=False)

    outcome = await submit_code(
        ctx, code=code, type=type, target=target, redirect_to=redirect_to
    )
    response = outcome_response(outcome)
    # Keep the code in the URL out of Referer headers
    response.headers["Referrer-Policy"] = "no-referrer"
    return response


@router.post("/verify")
@limiter.limit(lambda: settings.rate_limit_auth)
async def post_verify(
    request: Request,  # noqa: ARG001 - required by @limiter.limit()
    body: VerifyRequest,
    ctx: Context,
) -> Response:
    """Submit a one-time code.

    Success: 303 to the flow's next page with session / handoff cookies
    applied. Failure: 400 INVALID_CODE (retry allowed) or DEVICE_MISMATCH.
    """
    outcome = await submit_code(
        ctx,
        code=body.code,
        type=body.type,
        target=body.target,
        redirect_to=body.redirect_to,
    )
    return outcome_response(outcome)
