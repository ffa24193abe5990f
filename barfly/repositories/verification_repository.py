"""Repository for the verification ledger.

Stores one TOTP challenge (or enabled 2FA secret) per (target, type).

Single-completion guarantee: consume() and promote() are single
conditional statements keyed on the secret that was verified, checked
by rowcount. Of several concurrent submissions of a valid code only one
sees rowcount == 1; the rest report False and must treat the code as
already used.
"""

from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from barfly.models.verification import Verification, VerificationType


@dataclass(frozen=True)
class VerificationParams:
    """TOTP parameters written by upsert()."""

    secret: str
    algorithm: str
    digits: int
    period: int
    char_set: str
    expires_at: datetime | None


def _is_live(now: datetime):
    return or_(Verification.expires_at.is_(None), Verification.expires_at > now)


class VerificationRepository:
    """Stateless repository for Verification table operations."""

    @staticmethod
    async def upsert(
        db: AsyncSession,
        *,
        target: str,
        type: VerificationType,
        params: VerificationParams,
    ) -> Verification:
        """Create or overwrite the record for (target, type).

        Overwriting replaces the secret, so any code issued before is dead.

        Args:
            db: Async database session.
            target: E-mail address or user id.
            type: Verification type.
            params: New TOTP parameters.

        Returns:
            The stored Verification.
        """
        stmt = select(Verification).where(
            Verification.target == target,
            Verification.type == type.value,
        )
        record = (await db.execute(stmt)).scalar_one_or_none()
        if record is None:
            record = Verification(target=target, type=type.value)
            db.add(record)

        record.secret = params.secret
        record.algorithm = params.algorithm
        record.digits = params.digits
        record.period = params.period
        record.char_set = params.char_set
        record.expires_at = params.expires_at
        record.created_at = datetime.now(UTC)

        await db.flush()
        return record

    @staticmethod
    async def find(
        db: AsyncSession,
        *,
        target: str,
        type: VerificationType,
        now: datetime | None = None,
    ) -> Verification | None:
        """Fetch the live record for (target, type).

        Expired challenges are filtered out in SQL; durable records
        (expires_at IS NULL) are always returned.
        """
        stmt = select(Verification).where(
            Verification.target == target,
            Verification.type == type.value,
            _is_live(now or datetime.now(UTC)),
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def exists(
        db: AsyncSession,
        *,
        target: str,
        type: VerificationType,
        now: datetime | None = None,
    ) -> bool:
        """Check whether a live record exists for (target, type)."""
        stmt = select(Verification.id).where(
            Verification.target == target,
            Verification.type == type.value,
            _is_live(now or datetime.now(UTC)),
        )
        result = await db.execute(stmt)
        return result.first() is not None

    @staticmethod
    async def delete(
        db: AsyncSession,
        *,
        target: str,
        type: VerificationType,
    ) -> int:
        """Delete the record for (target, type). Returns rows deleted."""
        result = await db.execute(
            delete(Verification).where(
                Verification.target == target,
                Verification.type == type.value,
            )
        )
        return result.rowcount

    @staticmethod
    async def consume(
        db: AsyncSession,
        *,
        target: str,
        type: VerificationType,
        secret: str,
    ) -> bool:
        """Delete the record only if it still carries ``secret``.

        Returns:
            True if this call removed the record, False if it was already
            consumed or replaced by a newer challenge.
        """
        result = await db.execute(
            delete(Verification).where(
                Verification.target == target,
                Verification.type == type.value,
                Verification.secret == secret,
            )
        )
        return result.rowcount == 1

    @staticmethod
    async def promote(
        db: AsyncSession,
        *,
        target: str,
        type: VerificationType,
        new_type: VerificationType,
        secret: str,
        new_expires_at: datetime | None = None,
    ) -> bool:
        """Change a record's type and expiry, keeping its secret.

        Any existing record of ``new_type`` for the target is replaced.

        Returns:
            True if this call promoted the record, False if the source
            record was already promoted, consumed or replaced.
        """
        await db.execute(
            delete(Verification).where(
                Verification.target == target,
                Verification.type == new_type.value,
            )
        )
        result = await db.execute(
            update(Verification)
            .where(
                Verification.target == target,
                Verification.type == type.value,
                Verification.secret == secret,
            )
            .values(type=new_type.value, expires_at=new_expires_at)
        )
        return result.rowcount == 1

    @staticmethod
    async def delete_expired(db: AsyncSession, *, now: datetime | None = None) -> int:
        """Purge expired challenges. Durable records are kept."""
        result = await db.execute(
            delete(Verification).where(
                Verification.expires_at.is_not(None),
                Verification.expires_at <= (now or datetime.now(UTC)),
            )
        )
        return result.rowcount
