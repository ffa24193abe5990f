"""Login gate: credential check with deferred session commit.

A correct password always creates a Session row. Whether the browser
learns its id right away depends on 2FA:

- no durable 2FA secret: the session is committed to the cookie now
- 2FA enabled: the id is parked in a TwoFactorLoginHandoff and only
  committed to the cookie after the login challenge is verified
  (see verification_service._complete_two_factor_login)

Until then the browser holds only the handoff cookie, so every
authenticated endpoint still sees an anonymous request.
"""

import logging
import uuid

from barfly.core.auth import check_password, frontend_url, safe_redirect
from barfly.core.errors import ConflictError, UnauthorizedError
from barfly.models.verification import VerificationType
from barfly.repositories.session_repository import SessionRepository, session_expiry
from barfly.repositories.user_repository import UserRepository
from barfly.repositories.verification_repository import VerificationRepository
from barfly.services.handoff_store import TwoFactorLoginHandoff
from barfly.services.verification_service import (
    FlowOutcome,
    FlowState,
    RequestContext,
    verify_page_url,
)

logger = logging.getLogger(__name__)

_INVALID_CREDENTIALS_MSG = "Invalid email or password"


async def start_session(
    ctx: RequestContext,
    *,
    user_id: uuid.UUID,
    remember: bool,
    redirect_to: str | None = None,
    type: VerificationType = VerificationType.SIGNUP,
) -> FlowOutcome:
    """Create a session and commit it to the browser immediately.

    Used after signup completion and after a password login without 2FA.
    """
    session = await SessionRepository.create(
        ctx.db, user_id=user_id, expires_at=session_expiry(ctx.now)
    )
    await ctx.commit()
    return FlowOutcome(
        state=FlowState.COMPLETED,
        type=type,
        target=str(user_id),
        redirect_to=frontend_url(safe_redirect(redirect_to)),
        session=session,
        remember=remember,
    )


async def login(
    ctx: RequestContext,
    *,
    email: str,
    password: str,
    remember_me: bool = False,
    redirect_to: str | None = None,
) -> FlowOutcome:
    """Check credentials and open a session, deferring it behind 2FA.

    Security: check_password() runs bcrypt against DUMMY_HASH when the
    user is unknown, so timing does not reveal account existence.

    Args:
        ctx: Request context.
        email: Submitted e-mail address.
        password: Submitted password.
        remember_me: Persist the session cookie beyond the browser session.
        redirect_to: Where to go after login (same-site paths only).

    Returns:
        FlowOutcome carrying either the session to commit (COMPLETED) or
        the handoff to bind and the 2FA verify page (AWAITING_CODE).

    Raises:
        ConflictError: The request is already authenticated.
        UnauthorizedError: Wrong e-mail or password.
    """
    if ctx.user_id is not None:
        raise ConflictError(code="ALREADY_AUTHENTICATED", message="Already signed in")

    user = await UserRepository.get_by_email(ctx.db, email)
    password_hash = user.password_hash if user else None
    if not check_password(password, password_hash) or user is None:
        raise UnauthorizedError(_INVALID_CREDENTIALS_MSG)

    redirect_to = safe_redirect(redirect_to, default="") or None
    has_two_factor = await VerificationRepository.exists(
        ctx.db, target=str(user.id), type=VerificationType.TWO_FACTOR, now=ctx.now
    )
    if not has_two_factor:
        return await start_session(
            ctx,
            user_id=user.id,
            remember=remember_me,
            redirect_to=redirect_to,
            type=VerificationType.TWO_FACTOR_LOGIN,
        )

    session = await SessionRepository.create(
        ctx.db, user_id=user.id, expires_at=session_expiry(ctx.now)
    )
    await ctx.commit()

    handoff = ctx.handoffs.put(
        TwoFactorLoginHandoff(pending_session_id=session.id, remember_me=remember_me),
        handoff_id=ctx.handoff_id,
        now=ctx.now,
    )
    logger.info("Login for user %s awaiting two-factor code", user.id)
    return FlowOutcome(
        state=FlowState.AWAITING_CODE,
        type=VerificationType.TWO_FACTOR_LOGIN,
        target=str(user.id),
        redirect_to=verify_page_url(
            VerificationType.TWO_FACTOR_LOGIN, str(user.id), redirect_to
        ),
        handoff=handoff,
    )


async def logout(ctx: RequestContext) -> None:
    """Delete the request's session row, if any."""
    if ctx.session_id is not None:
        await SessionRepository.delete(ctx.db, ctx.session_id)
        await ctx.commit()


async def sign_out_other_sessions(ctx: RequestContext) -> int:
    """Delete every session of the current user except the current one.

    Returns:
        Number of sessions removed.
    """
    if ctx.user_id is None or ctx.session_id is None:
        raise UnauthorizedError()
    removed = await SessionRepository.delete_for_user(
        ctx.db, ctx.user_id, except_id=ctx.session_id
    )
    await ctx.commit()
    return removed
