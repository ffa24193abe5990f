"""Repository for login sessions.

A session is live while its row exists and ``expires_at`` is in the
future. Expired rows are treated as absent and purged by delete_expired().
"""

import uuid
from datetime import UTC, datetime, timedelta

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from barfly.core.config import settings
from barfly.models.session import Session


def session_expiry(now: datetime | None = None) -> datetime:
    """Expiry for a session created at ``now``."""
    return (now or datetime.now(UTC)) + timedelta(days=settings.session_ttl_days)


class SessionRepository:
    """Stateless repository for Session table operations."""

    @staticmethod
    async def create(
        db: AsyncSession,
        *,
        user_id: uuid.UUID,
        expires_at: datetime | None = None,
    ) -> Session:
        """Create a session row for a user.

        Args:
            db: Async database session.
            user_id: Owner of the session.
            expires_at: Hard expiry. Defaults to now + SESSION_TTL_DAYS.

        Returns:
            Created Session.
        """
        session = Session(user_id=user_id, expires_at=expires_at or session_expiry())
        db.add(session)
        await db.flush()
        await db.refresh(session)
        return session

    @staticmethod
    async def get_live(
        db: AsyncSession,
        session_id: uuid.UUID,
        *,
        now: datetime | None = None,
    ) -> Session | None:
        """Fetch a session that has not expired yet.

        Args:
            db: Async database session.
            session_id: Session primary key.
            now: Reference time (defaults to current UTC time).

        Returns:
            Session if it exists and is live, None otherwise.
        """
        stmt = select(Session).where(
            Session.id == session_id,
            Session.expires_at > (now or datetime.now(UTC)),
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def delete(db: AsyncSession, session_id: uuid.UUID) -> int:
        """Delete one session. Returns number of rows deleted."""
        result = await db.execute(delete(Session).where(Session.id == session_id))
        return result.rowcount

    @staticmethod
    async def delete_for_user(
        db: AsyncSession,
        user_id: uuid.UUID,
        *,
        except_id: uuid.UUID | None = None,
    ) -> int:
        """Delete every session of a user, optionally keeping one.

        Args:
            db: Async database session.
            user_id: Owner whose sessions are removed.
            except_id: Session to keep (the caller's own).

        Returns:
            Number of rows deleted.
        """
        stmt = delete(Session).where(Session.user_id == user_id)
        if except_id is not None:
            stmt = stmt.where(Session.id != except_id)
        result = await db.execute(stmt)
        return result.rowcount

    @staticmethod
    async def delete_expired(db: AsyncSession, *, now: datetime | None = None) -> int:
        """Purge sessions past their expiry. Returns number of rows deleted."""
        result = await db.execute(
            delete(Session).where(Session.expires_at <= (now or datetime.now(UTC)))
        )
        return result.rowcount
