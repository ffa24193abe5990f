"""Verification orchestrator: one TOTP challenge flow for every purpose.

Drives signup confirmation, password reset, e-mail change and the two
2FA flows (authenticator setup, login challenge) through the same
request / display / submit / cancel steps, then hands off to a
per-type completion handler.

States per (target, type):
- IDLE: the display step; the form is shown without reading the ledger
- AWAITING_CODE: live record, code not yet accepted
- COMPLETED: code accepted, completion handler ran
- CANCELLED: challenge abandoned (2FA setup)

Invariants:
- A wrong, expired or already redeemed code raises InvalidCodeError and
  mutates nothing.
- A code completes its flow at most once (conditional delete/update in
  VerificationRepository).
- Second steps that need handoff state fail closed with
  DeviceMismatchError before the record is touched.
- Notifications run only after the transaction that triggered them has
  committed.
"""

import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any, assert_never
from urllib.parse import urlencode

from fastapi import BackgroundTasks
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from barfly.core.auth import frontend_url, safe_redirect
from barfly.core.config import settings
from barfly.core.email import Notifier
from barfly.core.errors import (
    ConflictError,
    DeviceMismatchError,
    InvalidCodeError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from barfly.core.otp import BASE36, DIGITS, TOTPResult, generate_totp, verify_totp
from barfly.models.session import Session
from barfly.models.verification import Verification, VerificationType
from barfly.repositories.session_repository import SessionRepository
from barfly.repositories.user_repository import UserRepository
from barfly.repositories.verification_repository import (
    VerificationParams,
    VerificationRepository,
)
from barfly.services.handoff_store import (
    ChangeEmailHandoff,
    HandoffPayload,
    HandoffStore,
    ResetPasswordHandoff,
    SignupHandoff,
    TwoFactorLoginHandoff,
)

logger = logging.getLogger(__name__)

CHANGE_EMAIL_DEVICE_MISMATCH_MSG = (
    "You must submit the code on the same device that requested the email change."
)
TWO_FACTOR_DEVICE_MISMATCH_MSG = (
    "Please sign in again on this device to finish two-factor authentication."
)


class FlowState(StrEnum):
    """Where a (target, type) challenge stands."""

    IDLE = "idle"
    AWAITING_CODE = "awaiting-code"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ChallengePolicy:
    """How codes for one verification type are generated and delivered.

    Attributes:
        digits: Code length.
        period: TOTP time step in seconds.
        algorithm: HMAC algorithm name.
        char_set: Alphabet the code is spelled in.
        ttl: How long the challenge record stays redeemable.
        emailed: Whether the code is sent through the notifier.
    """

    digits: int
    period: int
    algorithm: str
    char_set: str
    ttl: timedelta
    emailed: bool = True


_EMAIL_CODE_PERIOD = 15 * 60

POLICIES: dict[VerificationType, ChallengePolicy] = {
    VerificationType.SIGNUP: ChallengePolicy(
        digits=5,
        period=_EMAIL_CODE_PERIOD,
        algorithm="SHA256",
        char_set=BASE36,
        ttl=timedelta(minutes=15),
    ),
    VerificationType.RESET_PASSWORD: ChallengePolicy(
        digits=5,
        period=_EMAIL_CODE_PERIOD,
        algorithm="SHA256",
        char_set=BASE36,
        ttl=timedelta(minutes=15),
    ),
    VerificationType.CHANGE_EMAIL: ChallengePolicy(
        digits=6,
        period=_EMAIL_CODE_PERIOD,
        algorithm="SHA256",
        char_set=BASE36,
        ttl=timedelta(minutes=15),
    ),
    # Authenticator apps only speak SHA1 / 6 digits / 30 seconds
    VerificationType.TWO_FACTOR_SETUP: ChallengePolicy(
        digits=6,
        period=30,
        algorithm="SHA1",
        char_set=DIGITS,
        ttl=timedelta(minutes=10),
        emailed=False,
    ),
}


# ===================================================================
# Request context
# ===================================================================


PostCommitTask = Callable[..., Awaitable[None]]


@dataclass
class RequestContext:
    """Everything one request's flow step needs, passed explicitly.

    Attributes:
        db: Request-scoped database session.
        notifier: Out-of-band code delivery.
        handoffs: Handoff store.
        handoff_id: Handoff entry id read from the browser's cookie.
        user_id: Authenticated user, when the request carries a session.
        session_id: Session the request is authenticated with.
        background_tasks: Where post-commit tasks are scheduled. Without it
            they are awaited inline right after the commit.
        now: Clock for the whole request.
    """

    db: AsyncSession
    notifier: Notifier
    handoffs: HandoffStore
    handoff_id: str | None = None
    user_id: uuid.UUID | None = None
    session_id: uuid.UUID | None = None
    background_tasks: BackgroundTasks | None = None
    now: datetime = field(default_factory=lambda: datetime.now(UTC))
    _post_commit: list[tuple[PostCommitTask, dict[str, Any]]] = field(
        default_factory=list, repr=False
    )

    def after_commit(self, task: PostCommitTask, /, **kwargs: Any) -> None:
        """Queue a side effect that must only happen once data is durable."""
        self._post_commit.append((task, kwargs))

    async def commit(self) -> None:
        """Commit the transaction, then release queued post-commit tasks.

        If the commit raises, the queue is dropped along with the
        transaction.
        """
        pending, self._post_commit = self._post_commit, []
        await self.db.commit()
        for task, kwargs in pending:
            if self.background_tasks is not None:
                self.background_tasks.add_task(task, **kwargs)
            else:
                await task(**kwargs)

    async def rollback(self) -> None:
        """Roll back and forget queued post-commit tasks."""
        self._post_commit = []
        await self.db.rollback()


@dataclass
class FlowOutcome:
    """Result of a flow step, translated into an HTTP response by the router.

    Attributes:
        state: Flow state after the step.
        type: Verification type.
        target: Challenge target.
        redirect_to: Absolute URL the browser should go to next, if any.
        session: Session to commit to the browser's session cookie.
        remember: Persist the session cookie beyond the browser session.
        handoff: (handoff_id, expires_at) to bind to the browser.
        clear_handoff: Delete the browser's handoff cookie.
        challenge: Freshly issued TOTP (request step only, never serialized
            for e-mailed codes).
        data: Extra response data.
    """

    state: FlowState
    type: VerificationType
    target: str
    redirect_to: str | None = None
    session: Session | None = None
    remember: bool = False
    handoff: tuple[str, datetime] | None = None
    clear_handoff: bool = False
    challenge: TOTPResult | None = None
    data: dict[str, Any] = field(default_factory=dict)


# ===================================================================
# URLs
# ===================================================================


def _flow_query(
    type: VerificationType,
    target: str,
    redirect_to: str | None,
    code: str | None = None,
) -> str:
    params = {"type": type.value, "target": target}
    if code is not None:
        params["code"] = code
    if redirect_to:
        params["redirectTo"] = redirect_to
    return urlencode(params)


def verify_page_url(
    type: VerificationType, target: str, redirect_to: str | None = None
) -> str:
    """Frontend page where the user types the code."""
    return frontend_url(f"/verify?{_flow_query(type, target, redirect_to)}")


def magic_link_url(
    type: VerificationType, target: str, code: str, redirect_to: str | None = None
) -> str:
    """Link that redeems the code in one click (GET /api/v1/auth/verify)."""
    query = _flow_query(type, target, redirect_to, code=code)
    return f"{settings.backend_url.rstrip('/')}/api/v1/auth/verify?{query}"


# ===================================================================
# Request / display / cancel
# ===================================================================


async def request_challenge(
    ctx: RequestContext,
    *,
    type: VerificationType,
    target: str,
    deliver_to: str | None = None,
    redirect_to: str | None = None,
) -> FlowOutcome:
    """Issue a new code for (target, type), replacing any earlier one.

    Resending is the same operation: the record is overwritten, so only
    the newest code verifies (last-write-wins).

    Args:
        ctx: Request context.
        type: Flow to start. Must have a ChallengePolicy.
        target: Record key (e-mail address or user id).
        deliver_to: Address the code is e-mailed to. Defaults to target.
        redirect_to: Where to send the user once the flow completes.

    Returns:
        FlowOutcome in AWAITING_CODE pointing at the verify page.

    Raises:
        ValueError: If the type cannot be requested directly.
    """
    policy = POLICIES.get(type)
    if policy is None:
        msg = f"Verification type {type.value!r} cannot be requested directly"
        raise ValueError(msg)

    totp = generate_totp(
        digits=policy.digits,
        period=policy.period,
        algorithm=policy.algorithm,
        char_set=policy.char_set,
        now=ctx.now.timestamp(),
    )
    await VerificationRepository.upsert(
        ctx.db,
        target=target,
        type=type,
        params=VerificationParams(
            secret=totp.secret,
            algorithm=totp.algorithm,
            digits=totp.digits,
            period=totp.period,
            char_set=totp.char_set,
            expires_at=ctx.now + policy.ttl,
        ),
    )

    redirect_to = safe_redirect(redirect_to, default="") or None
    if policy.emailed:
        ctx.after_commit(
            ctx.notifier.send,
            target=deliver_to or target,
            code=totp.code,
            verify_link=magic_link_url(type, target, totp.code, redirect_to),
            purpose=type.value,
        )
    await ctx.commit()
    logger.info("Verification challenge issued (type=%s)", type.value)

    return FlowOutcome(
        state=FlowState.AWAITING_CODE,
        type=type,
        target=target,
        redirect_to=verify_page_url(type, target, redirect_to),
        challenge=totp,
    )


def describe_challenge(
    *,
    type: VerificationType,
    target: str,
    redirect_to: str | None = None,
) -> FlowOutcome:
    """Describe the verify step without a code.

    Always IDLE and never reads the ledger, so the response is the same
    whether or not a challenge (or an account) exists for the target.
    """
    return FlowOutcome(
        state=FlowState.IDLE,
        type=type,
        target=target,
        data={
            "type": type.value,
            "target": target,
            "redirect_to": safe_redirect(redirect_to, default="") or None,
        },
    )


async def cancel_challenge(
    ctx: RequestContext,
    *,
    type: VerificationType,
    target: str,
) -> FlowOutcome:
    """Abandon an in-progress challenge by deleting its record.

    Durable 2FA secrets are never removed here; disabling 2FA is a
    separate account operation.
    """
    if type is VerificationType.TWO_FACTOR:
        raise ValidationError("Enabled two-factor authentication cannot be cancelled")
    await VerificationRepository.delete(ctx.db, target=target, type=type)
    await ctx.commit()
    return FlowOutcome(state=FlowState.CANCELLED, type=type, target=target)


# ===================================================================
# Submit
# ===================================================================


async def submit_code(
    ctx: RequestContext,
    *,
    code: str,
    type: VerificationType,
    target: str,
    redirect_to: str | None = None,
) -> FlowOutcome:
    """Verify a submitted code and run the flow's completion handler.

    Raises:
        InvalidCodeError: Wrong, expired or already redeemed code.
        DeviceMismatchError: Required handoff state is missing.
        NotFoundError: The 2FA login's pending session is gone.
        ValidationError: The type cannot be submitted.
    """
    redirect_to = safe_redirect(redirect_to, default="") or None
    match type:
        case VerificationType.SIGNUP:
            return await _complete_signup(ctx, code, target, redirect_to)
        case VerificationType.RESET_PASSWORD:
            return await _complete_reset_password(ctx, code, target, redirect_to)
        case VerificationType.CHANGE_EMAIL:
            return await _complete_change_email(ctx, code, target, redirect_to)
        case VerificationType.TWO_FACTOR_SETUP:
            return await _complete_two_factor_setup(ctx, code, target, redirect_to)
        case VerificationType.TWO_FACTOR_LOGIN:
            return await _complete_two_factor_login(ctx, code, target, redirect_to)
        case VerificationType.TWO_FACTOR:
            raise ValidationError("This verification type cannot be submitted")
        case _:
            assert_never(type)


async def verified_record(
    ctx: RequestContext,
    *,
    code: str,
    type: VerificationType,
    target: str,
) -> Verification:
    """Find the live record for (target, type) and check ``code`` against it.

    Read-only. Raises InvalidCodeError when there is no live record or the
    code does not match.
    """
    record = await VerificationRepository.find(
        ctx.db, target=target, type=type, now=ctx.now
    )
    if record is None:
        raise InvalidCodeError()

    code = code.strip()
    # Alphabets without lowercase symbols accept lowercase input
    if record.char_set == record.char_set.upper():
        code = code.upper()

    if not verify_totp(
        code,
        secret=record.secret,
        period=record.period,
        digits=record.digits,
        char_set=record.char_set,
        algorithm=record.algorithm,
        window=settings.otp_window,
        now=ctx.now.timestamp(),
    ):
        raise InvalidCodeError()
    return record


async def _consume(ctx: RequestContext, record: Verification) -> None:
    consumed = await VerificationRepository.consume(
        ctx.db,
        target=record.target,
        type=VerificationType(record.type),
        secret=record.secret,
    )
    if not consumed:
        # Another request redeemed or replaced the challenge first
        raise InvalidCodeError()


def _put_handoff(ctx: RequestContext, payload: HandoffPayload) -> tuple[str, datetime]:
    return ctx.handoffs.put(payload, handoff_id=ctx.handoff_id, now=ctx.now)


def _parse_user_id(target: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(target)
    except ValueError:
        return None


async def _complete_signup(
    ctx: RequestContext, code: str, target: str, redirect_to: str | None
) -> FlowOutcome:
    record = await verified_record(
        ctx, code=code, type=VerificationType.SIGNUP, target=target
    )
    await _consume(ctx, record)
    await ctx.commit()

    handoff = _put_handoff(ctx, SignupHandoff(email=target))
    query = f"?{urlencode({'redirectTo': redirect_to})}" if redirect_to else ""
    return FlowOutcome(
        state=FlowState.COMPLETED,
        type=VerificationType.SIGNUP,
        target=target,
        redirect_to=frontend_url(f"/complete-your-signup{query}"),
        handoff=handoff,
    )


async def _complete_reset_password(
    ctx: RequestContext, code: str, target: str, redirect_to: str | None
) -> FlowOutcome:
    record = await verified_record(
        ctx, code=code, type=VerificationType.RESET_PASSWORD, target=target
    )
    user = await UserRepository.get_by_email(ctx.db, target)
    if user is None:
        # Same answer as a wrong code so the flow cannot enumerate accounts
        raise InvalidCodeError()

    await _consume(ctx, record)
    await ctx.commit()

    handoff = _put_handoff(
        ctx,
        ResetPasswordHandoff(user_id=user.id, email=user.email, username=user.username),
    )
    return FlowOutcome(
        state=FlowState.COMPLETED,
        type=VerificationType.RESET_PASSWORD,
        target=target,
        redirect_to=frontend_url("/reset-password"),
        handoff=handoff,
    )


async def _complete_change_email(
    ctx: RequestContext, code: str, target: str, redirect_to: str | None
) -> FlowOutcome:
    pending = ctx.handoffs.peek(ctx.handoff_id, ChangeEmailHandoff, now=ctx.now)
    if pending is None or str(pending.user_id) != target:
        raise DeviceMismatchError(CHANGE_EMAIL_DEVICE_MISMATCH_MSG)

    record = await verified_record(
        ctx, code=code, type=VerificationType.CHANGE_EMAIL, target=target
    )
    user = await UserRepository.get_by_id(ctx.db, pending.user_id)
    if user is None:
        raise NotFoundError("User")

    old_email = user.email
    await _consume(ctx, record)
    try:
        await UserRepository.update(ctx.db, user.id, email=pending.new_email)
    except IntegrityError as exc:
        await ctx.rollback()
        raise ConflictError(
            code="EMAIL_ALREADY_EXISTS",
            message="A user already exists with this email",
        ) from exc

    ctx.after_commit(
        ctx.notifier.notify_email_changed,
        to_email=old_email,
        new_email=pending.new_email,
    )
    await ctx.commit()
    ctx.handoffs.take(ctx.handoff_id, ChangeEmailHandoff, now=ctx.now)
    logger.info("Email changed for user %s", user.id)

    return FlowOutcome(
        state=FlowState.COMPLETED,
        type=VerificationType.CHANGE_EMAIL,
        target=target,
        redirect_to=frontend_url(redirect_to or "/settings/profile"),
        clear_handoff=True,
        data={"email": pending.new_email},
    )


async def _complete_two_factor_setup(
    ctx: RequestContext, code: str, target: str, redirect_to: str | None
) -> FlowOutcome:
    # Only the signed-in owner may finish their own setup
    if ctx.user_id is None or str(ctx.user_id) != target:
        raise UnauthorizedError()

    record = await verified_record(
        ctx, code=code, type=VerificationType.TWO_FACTOR_SETUP, target=target
    )
    promoted = await VerificationRepository.promote(
        ctx.db,
        target=target,
        type=VerificationType.TWO_FACTOR_SETUP,
        new_type=VerificationType.TWO_FACTOR,
        secret=record.secret,
        new_expires_at=None,
    )
    if not promoted:
        raise InvalidCodeError()
    await ctx.commit()
    logger.info("Two-factor authentication enabled for user %s", target)

    return FlowOutcome(
        state=FlowState.COMPLETED,
        type=VerificationType.TWO_FACTOR_SETUP,
        target=target,
        redirect_to=frontend_url(redirect_to or "/settings/profile/two-factor"),
        data={"enabled": True},
    )


async def _complete_two_factor_login(
    ctx: RequestContext, code: str, target: str, redirect_to: str | None
) -> FlowOutcome:
    pending = ctx.handoffs.peek(ctx.handoff_id, TwoFactorLoginHandoff, now=ctx.now)
    if pending is None:
        raise DeviceMismatchError(TWO_FACTOR_DEVICE_MISMATCH_MSG)

    # Checked against the durable secret, which stays in place
    await verified_record(
        ctx, code=code, type=VerificationType.TWO_FACTOR, target=target
    )

    session = await SessionRepository.get_live(
        ctx.db, pending.pending_session_id, now=ctx.now
    )
    if session is None or session.user_id != _parse_user_id(target):
        ctx.handoffs.discard(ctx.handoff_id)
        raise NotFoundError("Session")

    ctx.handoffs.take(ctx.handoff_id, TwoFactorLoginHandoff, now=ctx.now)
    logger.info("Two-factor login completed for user %s", session.user_id)

    return FlowOutcome(
        state=FlowState.COMPLETED,
        type=VerificationType.TWO_FACTOR_LOGIN,
        target=target,
        redirect_to=frontend_url(redirect_to or "/"),
        session=session,
        remember=pending.remember_me,
        clear_handoff=True,
    )
