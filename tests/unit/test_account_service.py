"""Tests for account flows: signup, password reset, e-mail change, 2FA."""

import uuid
from collections.abc import Callable
from urllib.parse import parse_qs, urlparse

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from barfly.core.auth import check_password
from barfly.core.config import settings
from barfly.core.errors import (
    ConflictError,
    DeviceMismatchError,
    InvalidCodeError,
    UnauthorizedError,
    ValidationError,
)
from barfly.core.otp import DIGITS, totp_code
from barfly.models.user import User
from barfly.models.verification import VerificationType
from barfly.repositories.session_repository import SessionRepository
from barfly.repositories.user_repository import UserRepository
from barfly.repositories.verification_repository import VerificationRepository
from barfly.services.account_service import (
    change_password,
    complete_signup,
    disable_two_factor,
    enable_two_factor,
    is_two_factor_enabled,
    request_email_change,
    request_password_reset,
    request_signup,
    reset_password,
)
from barfly.services.handoff_store import (
    ChangeEmailHandoff,
    HandoffStore,
    ResetPasswordHandoff,
    SignupHandoff,
)
from barfly.services.verification_service import (
    FlowState,
    RequestContext,
    submit_code,
)
from tests.conftest import TEST_USER_EMAIL, TEST_USER_PASSWORD, RecordingNotifier

MakeCtx = Callable[..., RequestContext]

_NEW_PASSWORD = "Old-Fashioned-42"


class TestSignup:
    """Tests for request_signup() / complete_signup()."""

    async def test_request_signup_sends_code(
        self, make_ctx: MakeCtx, notifier: RecordingNotifier
    ) -> None:
        """A free address gets a signup code."""
        outcome = await request_signup(make_ctx(), email=" Newbie@Barfly.app ")
        assert outcome.state is FlowState.AWAITING_CODE
        assert outcome.target == "newbie@barfly.app"
        assert notifier.sent[0]["target"] == "newbie@barfly.app"

    async def test_request_signup_taken_email(
        self, make_ctx: MakeCtx, notifier: RecordingNotifier, test_user: User
    ) -> None:
        """Registered addresses are refused and nothing is sent."""
        with pytest.raises(ConflictError) as exc_info:
            await request_signup(make_ctx(), email=TEST_USER_EMAIL)
        assert exc_info.value.code == "EMAIL_ALREADY_EXISTS"
        assert notifier.sent == []

    async def test_request_signup_while_signed_in(
        self, make_ctx: MakeCtx, test_user: User
    ) -> None:
        """Signed-in users cannot start a signup."""
        with pytest.raises(ConflictError):
            await request_signup(make_ctx(user_id=test_user.id), email="x@barfly.app")

    async def test_full_signup_creates_user_and_session(
        self,
        make_ctx: MakeCtx,
        notifier: RecordingNotifier,
        handoffs: HandoffStore,
        db_session: AsyncSession,
    ) -> None:
        """Verified e-mail + username + password yields a signed-in account."""
        await request_signup(make_ctx(), email="newbie@barfly.app")
        verified = await submit_code(
            make_ctx(),
            code=notifier.last_code(),
            type=VerificationType.SIGNUP,
            target="newbie@barfly.app",
        )
        assert verified.handoff is not None
        handoff_id = verified.handoff[0]

        outcome = await complete_signup(
            make_ctx(handoff_id=handoff_id),
            username="Newbie",
            password=_NEW_PASSWORD,
            remember_me=True,
            redirect_to="/bars",
        )

        assert outcome.state is FlowState.COMPLETED
        assert outcome.session is not None
        assert outcome.remember is True
        assert outcome.clear_handoff is True
        user = await UserRepository.get_by_email(db_session, "newbie@barfly.app")
        assert user is not None
        assert user.username == "newbie"
        assert check_password(_NEW_PASSWORD, user.password_hash)
        assert outcome.session.user_id == user.id
        assert handoffs.peek(handoff_id, SignupHandoff) is None

    async def test_complete_signup_without_handoff(self, make_ctx: MakeCtx) -> None:
        """Another browser cannot finish the signup."""
        with pytest.raises(DeviceMismatchError):
            await complete_signup(
                make_ctx(handoff_id=None), username="newbie", password=_NEW_PASSWORD
            )

    async def test_complete_signup_weak_password_keeps_handoff(
        self, make_ctx: MakeCtx, handoffs: HandoffStore
    ) -> None:
        """Validation errors leave the flow resumable."""
        handoff_id, _ = handoffs.put(SignupHandoff(email="newbie@barfly.app"))
        with pytest.raises(ValidationError):
            await complete_signup(
                make_ctx(handoff_id=handoff_id), username="newbie", password="short"
            )
        assert handoffs.peek(handoff_id, SignupHandoff) is not None

    async def test_complete_signup_username_taken(
        self, make_ctx: MakeCtx, handoffs: HandoffStore, test_user: User
    ) -> None:
        """Usernames are unique."""
        handoff_id, _ = handoffs.put(SignupHandoff(email="newbie@barfly.app"))
        with pytest.raises(ConflictError) as exc_info:
            await complete_signup(
                make_ctx(handoff_id=handoff_id),
                username=test_user.username,
                password=_NEW_PASSWORD,
            )
        assert exc_info.value.code == "USERNAME_TAKEN"

    async def test_complete_signup_email_registered_meanwhile(
        self, make_ctx: MakeCtx, handoffs: HandoffStore, test_user: User
    ) -> None:
        """A race on the e-mail surfaces as a conflict."""
        handoff_id, _ = handoffs.put(SignupHandoff(email=TEST_USER_EMAIL))
        with pytest.raises(ConflictError) as exc_info:
            await complete_signup(
                make_ctx(handoff_id=handoff_id),
                username="another",
                password=_NEW_PASSWORD,
            )
        assert exc_info.value.code == "EMAIL_ALREADY_EXISTS"


class TestPasswordReset:
    """Tests for request_password_reset() / reset_password()."""

    async def test_unknown_and_known_email_look_the_same(
        self, make_ctx: MakeCtx, notifier: RecordingNotifier, test_user: User
    ) -> None:
        """The outcome does not reveal whether an account exists."""
        known = await request_password_reset(make_ctx(), email=TEST_USER_EMAIL)
        unknown = await request_password_reset(make_ctx(), email="ghost@barfly.app")

        assert known.state is unknown.state is FlowState.AWAITING_CODE
        assert known.redirect_to is not None
        assert unknown.redirect_to is not None
        assert urlparse(known.redirect_to).path == urlparse(unknown.redirect_to).path
        assert [m["target"] for m in notifier.sent] == [TEST_USER_EMAIL]

    async def test_reset_sets_password_and_signs_out_everywhere(
        self,
        make_ctx: MakeCtx,
        notifier: RecordingNotifier,
        handoffs: HandoffStore,
        db_session: AsyncSession,
        test_user: User,
    ) -> None:
        """New password works, old sessions are gone."""
        old_session = await SessionRepository.create(db_session, user_id=test_user.id)
        await db_session.commit()

        await request_password_reset(make_ctx(), email=TEST_USER_EMAIL)
        verified = await submit_code(
            make_ctx(),
            code=notifier.last_code(),
            type=VerificationType.RESET_PASSWORD,
            target=TEST_USER_EMAIL,
        )
        assert verified.handoff is not None
        handoff_id = verified.handoff[0]

        outcome = await reset_password(
            make_ctx(handoff_id=handoff_id), password=_NEW_PASSWORD
        )

        assert outcome.state is FlowState.COMPLETED
        assert outcome.clear_handoff is True
        assert outcome.redirect_to is not None
        assert outcome.redirect_to.endswith("/login")
        user = await UserRepository.get_by_id(db_session, test_user.id)
        assert user is not None
        await db_session.refresh(user)
        assert check_password(_NEW_PASSWORD, user.password_hash)
        assert await SessionRepository.get_live(db_session, old_session.id) is None
        assert handoffs.peek(handoff_id, ResetPasswordHandoff) is None

    async def test_reset_without_handoff(self, make_ctx: MakeCtx) -> None:
        """Reset needs the verified handoff from this browser."""
        with pytest.raises(DeviceMismatchError):
            await reset_password(make_ctx(handoff_id="nope"), password=_NEW_PASSWORD)

    async def test_reset_for_deleted_account(
        self, make_ctx: MakeCtx, handoffs: HandoffStore
    ) -> None:
        """A handoff naming a vanished account is dropped."""
        handoff_id, _ = handoffs.put(
            ResetPasswordHandoff(user_id=uuid.uuid4(), email="x@y.app", username="x")
        )
        with pytest.raises(DeviceMismatchError):
            await reset_password(
                make_ctx(handoff_id=handoff_id), password=_NEW_PASSWORD
            )
        assert handoffs.peek(handoff_id, ResetPasswordHandoff) is None


class TestChangePassword:
    """Tests for change_password()."""

    async def test_change_keeps_only_current_session(
        self, make_ctx: MakeCtx, db_session: AsyncSession, test_user: User
    ) -> None:
        """New password works; this session survives, the others go."""
        current = await SessionRepository.create(db_session, user_id=test_user.id)
        other = await SessionRepository.create(db_session, user_id=test_user.id)
        await db_session.commit()

        removed = await change_password(
            make_ctx(user_id=test_user.id, session_id=current.id),
            current_password=TEST_USER_PASSWORD,
            password=_NEW_PASSWORD,
        )

        assert removed == 1
        user = await UserRepository.get_by_id(db_session, test_user.id)
        assert user is not None
        await db_session.refresh(user)
        assert check_password(_NEW_PASSWORD, user.password_hash)
        assert not check_password(TEST_USER_PASSWORD, user.password_hash)
        assert await SessionRepository.get_live(db_session, current.id) is not None
        assert await SessionRepository.get_live(db_session, other.id) is None

    async def test_wrong_current_password(
        self, make_ctx: MakeCtx, db_session: AsyncSession, test_user: User
    ) -> None:
        """The current password must check out; nothing changes otherwise."""
        other = await SessionRepository.create(db_session, user_id=test_user.id)
        await db_session.commit()

        with pytest.raises(ValidationError) as exc_info:
            await change_password(
                make_ctx(user_id=test_user.id),
                current_password="not-the-password",
                password=_NEW_PASSWORD,
            )

        assert exc_info.value.details == [
            {"field": "current_password", "message": "Incorrect password"}
        ]
        user = await UserRepository.get_by_id(db_session, test_user.id)
        assert user is not None
        assert check_password(TEST_USER_PASSWORD, user.password_hash)
        assert await SessionRepository.get_live(db_session, other.id) is not None

    async def test_weak_new_password(
        self, make_ctx: MakeCtx, test_user: User
    ) -> None:
        """The new password goes through the strength rules."""
        with pytest.raises(ValidationError):
            await change_password(
                make_ctx(user_id=test_user.id),
                current_password=TEST_USER_PASSWORD,
                password="short",
            )

    async def test_requires_user(self, make_ctx: MakeCtx) -> None:
        """Anonymous callers are unauthorized."""
        with pytest.raises(UnauthorizedError):
            await change_password(
                make_ctx(),
                current_password=TEST_USER_PASSWORD,
                password=_NEW_PASSWORD,
            )


class TestEmailChange:
    """Tests for request_email_change()."""

    async def test_request_binds_pending_address(
        self,
        make_ctx: MakeCtx,
        notifier: RecordingNotifier,
        handoffs: HandoffStore,
        test_user: User,
    ) -> None:
        """Code goes to the new address; the address is remembered here."""
        outcome = await request_email_change(
            make_ctx(user_id=test_user.id), new_email="New@Barfly.app"
        )

        assert outcome.state is FlowState.AWAITING_CODE
        assert outcome.target == str(test_user.id)
        assert notifier.sent[0]["target"] == "new@barfly.app"
        assert outcome.handoff is not None
        assert handoffs.peek(outcome.handoff[0], ChangeEmailHandoff) == (
            ChangeEmailHandoff(user_id=test_user.id, new_email="new@barfly.app")
        )

    async def test_same_address_rejected(
        self, make_ctx: MakeCtx, test_user: User
    ) -> None:
        """Changing to the current address is a validation error."""
        with pytest.raises(ValidationError):
            await request_email_change(
                make_ctx(user_id=test_user.id), new_email=TEST_USER_EMAIL.upper()
            )

    async def test_taken_address_rejected(
        self, make_ctx: MakeCtx, db_session: AsyncSession, test_user: User
    ) -> None:
        """Addresses of other accounts are refused."""
        await UserRepository.create(db_session, email="lou@barfly.app", username="lou")
        await db_session.commit()
        with pytest.raises(ConflictError):
            await request_email_change(
                make_ctx(user_id=test_user.id), new_email="lou@barfly.app"
            )

    async def test_requires_sign_in(self, make_ctx: MakeCtx) -> None:
        """Anonymous requests are rejected."""
        with pytest.raises(UnauthorizedError):
            await request_email_change(make_ctx(), new_email="new@barfly.app")


class TestTwoFactor:
    """Tests for enable_two_factor() / disable_two_factor()."""

    async def _enable(self, make_ctx: MakeCtx, user: User) -> str:
        outcome = await enable_two_factor(make_ctx(user_id=user.id))
        secret = outcome.data["secret"]
        ctx = make_ctx(user_id=user.id)
        await submit_code(
            ctx,
            code=totp_code(
                secret=secret,
                period=30,
                digits=6,
                algorithm="SHA1",
                char_set=DIGITS,
                now=ctx.now.timestamp(),
            ),
            type=VerificationType.TWO_FACTOR_SETUP,
            target=str(user.id),
        )
        return secret

    async def test_enable_returns_provisioning_uri(
        self, make_ctx: MakeCtx, notifier: RecordingNotifier, test_user: User
    ) -> None:
        """The authenticator app gets the secret through an otpauth URI."""
        outcome = await enable_two_factor(make_ctx(user_id=test_user.id))

        assert outcome.state is FlowState.AWAITING_CODE
        uri = urlparse(outcome.data["otpauth_uri"])
        assert uri.scheme == "otpauth"
        query = parse_qs(uri.query)
        assert query["secret"] == [outcome.data["secret"]]
        assert query["issuer"] == [settings.two_factor_issuer]
        assert notifier.sent == []

    async def test_enable_then_verify(
        self, make_ctx: MakeCtx, test_user: User
    ) -> None:
        """After the setup code the account has 2FA."""
        ctx = make_ctx(user_id=test_user.id)
        assert await is_two_factor_enabled(ctx) is False
        await self._enable(make_ctx, test_user)
        assert await is_two_factor_enabled(make_ctx(user_id=test_user.id)) is True

    async def test_enable_twice_conflicts(
        self, make_ctx: MakeCtx, test_user: User
    ) -> None:
        """Enabled accounts must disable first."""
        await self._enable(make_ctx, test_user)
        with pytest.raises(ConflictError) as exc_info:
            await enable_two_factor(make_ctx(user_id=test_user.id))
        assert exc_info.value.code == "TWO_FACTOR_ALREADY_ENABLED"

    async def test_anonymous_is_not_enabled(self, make_ctx: MakeCtx) -> None:
        """No user, no 2FA."""
        assert await is_two_factor_enabled(make_ctx()) is False

    async def test_disable_removes_secret(
        self, make_ctx: MakeCtx, db_session: AsyncSession, test_user: User
    ) -> None:
        """Disabling deletes the durable secret."""
        await self._enable(make_ctx, test_user)
        outcome = await disable_two_factor(make_ctx(user_id=test_user.id))
        assert outcome.data == {"enabled": False}
        assert not await VerificationRepository.exists(
            db_session, target=str(test_user.id), type=VerificationType.TWO_FACTOR
        )

    async def test_disable_with_required_code(
        self, make_ctx: MakeCtx, db_session: AsyncSession, test_user: User
    ) -> None:
        """With the setting on, a wrong code keeps 2FA enabled."""
        settings.two_factor_disable_requires_code = True
        secret = await self._enable(make_ctx, test_user)

        with pytest.raises(InvalidCodeError):
            await disable_two_factor(make_ctx(user_id=test_user.id), code="xxxxxx")
        assert await is_two_factor_enabled(make_ctx(user_id=test_user.id))

        ctx = make_ctx(user_id=test_user.id)
        code = totp_code(
            secret=secret,
            period=30,
            digits=6,
            algorithm="SHA1",
            char_set=DIGITS,
            now=ctx.now.timestamp(),
        )
        await disable_two_factor(ctx, code=code)
        assert not await VerificationRepository.exists(
            db_session, target=str(test_user.id), type=VerificationType.TWO_FACTOR
        )

    async def test_disable_requires_sign_in(self, make_ctx: MakeCtx) -> None:
        """Anonymous requests are rejected."""
        with pytest.raises(UnauthorizedError):
            await disable_two_factor(make_ctx())
