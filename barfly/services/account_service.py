"""Account flows built on the verification orchestrator.

Entry points that start a challenge (signup, forgot password, change
e-mail, 2FA setup) and the second steps that consume handoff state
(complete signup, reset password). Password change and 2FA disable
live here as well since they act on the signed-in account directly
rather than answering a challenge.
"""

import logging

from sqlalchemy.exc import IntegrityError

from barfly.core.auth import (
    check_password,
    frontend_url,
    hash_password,
    safe_redirect,
    validate_password_strength,
)
from barfly.core.config import settings
from barfly.core.errors import (
    ConflictError,
    DeviceMismatchError,
    UnauthorizedError,
    ValidationError,
)
from barfly.core.otp import totp_auth_uri
from barfly.models.user import User
from barfly.models.verification import VerificationType
from barfly.repositories.session_repository import SessionRepository
from barfly.repositories.user_repository import UserRepository
from barfly.repositories.verification_repository import VerificationRepository
from barfly.services.handoff_store import (
    ChangeEmailHandoff,
    ResetPasswordHandoff,
    SignupHandoff,
)
from barfly.services.login_gate import start_session
from barfly.services.verification_service import (
    FlowOutcome,
    FlowState,
    RequestContext,
    request_challenge,
    verified_record,
    verify_page_url,
)

logger = logging.getLogger(__name__)

_EMAIL_TAKEN_MSG = "A user already exists with this email"
_USERNAME_TAKEN_MSG = "A user already exists with this username"
_RESTART_SIGNUP_MSG = "Please verify your email address again to finish signing up."
_RESTART_RESET_MSG = "Please request a new password reset code on this device."
_WRONG_PASSWORD_MSG = "Incorrect password"  # nosec B105


async def _current_user(ctx: RequestContext) -> User:
    if ctx.user_id is None:
        raise UnauthorizedError()
    user = await UserRepository.get_by_id(ctx.db, ctx.user_id)
    if user is None:
        raise UnauthorizedError()
    return user


# ===================================================================
# Signup
# ===================================================================


async def request_signup(
    ctx: RequestContext, *, email: str, redirect_to: str | None = None
) -> FlowOutcome:
    """E-mail a signup code to an address that is not registered yet.

    Raises:
        ConflictError: Already signed in, or the address is taken.
    """
    if ctx.user_id is not None:
        raise ConflictError(code="ALREADY_AUTHENTICATED", message="Already signed in")

    email = email.strip().lower()
    if await UserRepository.get_by_email(ctx.db, email) is not None:
        raise ConflictError(code="EMAIL_ALREADY_EXISTS", message=_EMAIL_TAKEN_MSG)

    return await request_challenge(
        ctx, type=VerificationType.SIGNUP, target=email, redirect_to=redirect_to
    )


async def complete_signup(
    ctx: RequestContext,
    *,
    username: str,
    password: str,
    remember_me: bool = False,
    redirect_to: str | None = None,
) -> FlowOutcome:
    """Create the account for the verified signup e-mail and sign it in.

    Raises:
        DeviceMismatchError: No verified signup e-mail in this browser.
        ValidationError: Weak password.
        ConflictError: E-mail or username already taken.
    """
    pending = ctx.handoffs.peek(ctx.handoff_id, SignupHandoff, now=ctx.now)
    if pending is None:
        raise DeviceMismatchError(_RESTART_SIGNUP_MSG)

    validate_password_strength(password)
    if await UserRepository.get_by_username(ctx.db, username) is not None:
        raise ConflictError(code="USERNAME_TAKEN", message=_USERNAME_TAKEN_MSG)

    try:
        user = await UserRepository.create(
            ctx.db,
            email=pending.email,
            username=username,
            password_hash=hash_password(password),
        )
    except IntegrityError as exc:
        await ctx.rollback()
        raise ConflictError(
            code="EMAIL_ALREADY_EXISTS", message=_EMAIL_TAKEN_MSG
        ) from exc

    outcome = await start_session(
        ctx, user_id=user.id, remember=remember_me, redirect_to=redirect_to
    )
    ctx.handoffs.take(ctx.handoff_id, SignupHandoff, now=ctx.now)
    outcome.clear_handoff = True
    logger.info("User %s signed up", user.id)
    return outcome


# ===================================================================
# Password reset
# ===================================================================


async def request_password_reset(
    ctx: RequestContext, *, email: str, redirect_to: str | None = None
) -> FlowOutcome:
    """E-mail a reset code if an account uses ``email``.

    Security: the outcome is identical whether or not the account exists,
    so the endpoint cannot be used to enumerate users.
    """
    email = email.strip().lower()
    user = await UserRepository.get_by_email(ctx.db, email)
    if user is not None:
        return await request_challenge(
            ctx,
            type=VerificationType.RESET_PASSWORD,
            target=user.email,
            redirect_to=redirect_to,
        )

    redirect_to = safe_redirect(redirect_to, default="") or None
    return FlowOutcome(
        state=FlowState.AWAITING_CODE,
        type=VerificationType.RESET_PASSWORD,
        target=email,
        redirect_to=verify_page_url(
            VerificationType.RESET_PASSWORD, email, redirect_to
        ),
    )


async def reset_password(ctx: RequestContext, *, password: str) -> FlowOutcome:
    """Set a new password for the account verified in this browser.

    Every session of the account is deleted; the user signs in again.

    Raises:
        DeviceMismatchError: No verified reset in this browser.
        ValidationError: Weak password.
    """
    pending = ctx.handoffs.peek(ctx.handoff_id, ResetPasswordHandoff, now=ctx.now)
    if pending is None:
        raise DeviceMismatchError(_RESTART_RESET_MSG)

    validate_password_strength(password)
    user = await UserRepository.update(
        ctx.db, pending.user_id, password_hash=hash_password(password)
    )
    if user is None:
        ctx.handoffs.discard(ctx.handoff_id)
        raise DeviceMismatchError(_RESTART_RESET_MSG)

    await SessionRepository.delete_for_user(ctx.db, user.id)
    await ctx.commit()
    ctx.handoffs.take(ctx.handoff_id, ResetPasswordHandoff, now=ctx.now)
    logger.info("Password reset for user %s", user.id)

    return FlowOutcome(
        state=FlowState.COMPLETED,
        type=VerificationType.RESET_PASSWORD,
        target=user.email,
        redirect_to=frontend_url("/login"),
        clear_handoff=True,
    )


async def change_password(
    ctx: RequestContext, *, current_password: str, password: str
) -> int:
    """Replace the signed-in user's password.

    The current session survives; every other session of the account
    is deleted.

    Returns:
        Number of other sessions removed.

    Raises:
        UnauthorizedError: Not signed in.
        ValidationError: Wrong current password, or weak new password.
    """
    user = await _current_user(ctx)
    if not check_password(current_password, user.password_hash):
        raise ValidationError(
            _WRONG_PASSWORD_MSG,
            details=[{"field": "current_password", "message": _WRONG_PASSWORD_MSG}],
        )
    validate_password_strength(password)

    await UserRepository.update(
        ctx.db, user.id, password_hash=hash_password(password)
    )
    removed = await SessionRepository.delete_for_user(
        ctx.db, user.id, except_id=ctx.session_id
    )
    await ctx.commit()
    logger.info("Password changed for user %s", user.id)
    return removed


# ===================================================================
# Change e-mail
# ===================================================================


async def request_email_change(
    ctx: RequestContext, *, new_email: str, redirect_to: str | None = None
) -> FlowOutcome:
    """E-mail a code to the new address and remember it in this browser.

    Raises:
        UnauthorizedError: Not signed in.
        ValidationError: New address equals the current one.
        ConflictError: Address taken by another account.
    """
    user = await _current_user(ctx)
    new_email = new_email.strip().lower()
    if new_email == user.email:
        raise ValidationError(
            "New email must differ from the current one",
            details=[{"field": "email", "message": "This is already your email"}],
        )
    if await UserRepository.get_by_email(ctx.db, new_email) is not None:
        raise ConflictError(code="EMAIL_ALREADY_EXISTS", message=_EMAIL_TAKEN_MSG)

    outcome = await request_challenge(
        ctx,
        type=VerificationType.CHANGE_EMAIL,
        target=str(user.id),
        deliver_to=new_email,
        redirect_to=redirect_to,
    )
    outcome.handoff = ctx.handoffs.put(
        ChangeEmailHandoff(user_id=user.id, new_email=new_email),
        handoff_id=ctx.handoff_id,
        now=ctx.now,
    )
    return outcome


# ===================================================================
# Two-factor authentication
# ===================================================================


async def is_two_factor_enabled(ctx: RequestContext) -> bool:
    """Whether the signed-in user has a durable 2FA secret."""
    if ctx.user_id is None:
        return False
    return await VerificationRepository.exists(
        ctx.db,
        target=str(ctx.user_id),
        type=VerificationType.TWO_FACTOR,
        now=ctx.now,
    )


async def enable_two_factor(
    ctx: RequestContext, *, redirect_to: str | None = None
) -> FlowOutcome:
    """Start 2FA setup: issue a secret for the user's authenticator app.

    Calling it again replaces the pending setup secret.

    Returns:
        AWAITING_CODE outcome whose data carries the otpauth:// URI and
        the secret for manual entry.

    Raises:
        UnauthorizedError: Not signed in.
        ConflictError: 2FA already enabled.
    """
    user = await _current_user(ctx)
    if await is_two_factor_enabled(ctx):
        raise ConflictError(
            code="TWO_FACTOR_ALREADY_ENABLED",
            message="Two-factor authentication is already enabled",
        )

    outcome = await request_challenge(
        ctx,
        type=VerificationType.TWO_FACTOR_SETUP,
        target=str(user.id),
        redirect_to=redirect_to,
    )
    totp = outcome.challenge
    if totp is not None:
        outcome.data = {
            "otpauth_uri": totp_auth_uri(
                secret=totp.secret,
                account_name=user.email,
                issuer=settings.two_factor_issuer,
                algorithm=totp.algorithm,
                digits=totp.digits,
                period=totp.period,
            ),
            "secret": totp.secret,
        }
    return outcome


async def disable_two_factor(
    ctx: RequestContext, *, code: str | None = None
) -> FlowOutcome:
    """Remove the durable 2FA secret.

    With TWO_FACTOR_DISABLE_REQUIRES_CODE a current authenticator code
    must be supplied.

    Raises:
        UnauthorizedError: Not signed in.
        InvalidCodeError: Code required and wrong or missing.
    """
    user = await _current_user(ctx)
    target = str(user.id)
    if settings.two_factor_disable_requires_code:
        await verified_record(
            ctx, code=code or "", type=VerificationType.TWO_FACTOR, target=target
        )

    await VerificationRepository.delete(
        ctx.db, target=target, type=VerificationType.TWO_FACTOR
    )
    await ctx.commit()
    logger.info("Two-factor authentication disabled for user %s", user.id)
    return FlowOutcome(
        state=FlowState.COMPLETED,
        type=VerificationType.TWO_FACTOR,
        target=target,
        data={"enabled": False},
    )
