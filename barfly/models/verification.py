"""Verification model - one-time code challenges and enabled 2FA secrets.

One row per (target, type). Ephemeral challenges carry an expiry; the
enabled-2FA secret is durable (expires_at IS NULL). Re-requesting a code
overwrites the row, which invalidates the previous code.
"""

import uuid
from datetime import datetime
from enum import StrEnum

from sqlalchemy import CheckConstraint, Integer, String, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from barfly.models.base import Base


class VerificationType(StrEnum):
    """Kinds of verification records.

    The first five are flows a user can be in the middle of; TWO_FACTOR is
    the durable secret an enabled account logs in with.
    """

    SIGNUP = "signup"
    RESET_PASSWORD = "reset-password"
    CHANGE_EMAIL = "change-email"
    TWO_FACTOR_SETUP = "2fa-setup"
    TWO_FACTOR_LOGIN = "2fa-login-challenge"
    TWO_FACTOR = "2fa-enabled"


_TYPE_VALUES = ", ".join(f"'{t.value}'" for t in VerificationType)


class Verification(Base):
    """Stored TOTP parameters for one (target, type) pair.

    Attributes:
        id: UUID primary key.
        target: E-mail address (signup, reset-password) or user id.
        type: VerificationType value.
        secret: Base32 TOTP secret.
        algorithm: HMAC algorithm name.
        digits: Code length.
        period: Time step in seconds.
        char_set: Alphabet codes are spelled in.
        expires_at: Challenge expiry. NULL for the durable 2FA secret.
        created_at: When the current secret was issued.
    """

    __tablename__ = "verifications"
    __table_args__ = (
        UniqueConstraint("target", "type", name="uq_verifications_target_type"),
        CheckConstraint(f"type IN ({_TYPE_VALUES})", name="ck_verifications_type"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=uuid.uuid4,
    )
    target: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    secret: Mapped[str] = mapped_column(String(128), nullable=False)
    algorithm: Mapped[str] = mapped_column(String(16), nullable=False)
    digits: Mapped[int] = mapped_column(Integer, nullable=False)
    period: Mapped[int] = mapped_column(Integer, nullable=False)
    char_set: Mapped[str] = mapped_column(String(128), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        nullable=False,
    )

    @property
    def is_durable(self) -> bool:
        """True for records that never expire (enabled 2FA secret)."""
        return self.expires_at is None
