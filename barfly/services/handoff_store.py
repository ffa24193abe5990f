"""In-memory store for cookie-bound flow handoff state.

Carries what one step of a verification flow hands to the next: the
verified signup e-mail, the account a reset applies to, the pending
address of an e-mail change, or the session parked behind a 2FA login
challenge. The entry id travels in a signed httpOnly cookie, so only the
browser that started a flow can finish it.

Entries live for HANDOFF_TTL_MINUTES (15 by default) in process memory;
a restart or a second instance means the user restarts the flow.
"""

import secrets
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TypeVar

from barfly.core.config import settings


@dataclass(frozen=True)
class SignupHandoff:
    """Signup e-mail whose ownership was just verified."""

    email: str


@dataclass(frozen=True)
class ResetPasswordHandoff:
    """Account whose password may now be reset."""

    user_id: uuid.UUID
    email: str
    username: str


@dataclass(frozen=True)
class ChangeEmailHandoff:
    """Address the user asked to switch to, pending code verification."""

    user_id: uuid.UUID
    new_email: str


@dataclass(frozen=True)
class TwoFactorLoginHandoff:
    """Session created by a password login, not yet given to the browser."""

    pending_session_id: uuid.UUID
    remember_me: bool


HandoffPayload = (
    SignupHandoff | ResetPasswordHandoff | ChangeEmailHandoff | TwoFactorLoginHandoff
)

P = TypeVar(
    "P", SignupHandoff, ResetPasswordHandoff, ChangeEmailHandoff, TwoFactorLoginHandoff
)


@dataclass
class _Entry:
    payload: HandoffPayload
    expires_at: datetime


class HandoffStore:
    """In-memory store for handoff payloads keyed by random ids.

    Note: This implementation is safe for async/await usage (single-threaded
    event loop) but not for multi-threaded access. For multi-instance
    deployments, replace with a Redis-backed implementation.

    Lookups are typed: asking for a payload class the entry does not hold
    behaves as if the entry were missing, so state from one flow can never
    satisfy another.
    """

    def __init__(self, ttl_minutes: int | None = None) -> None:
        """Initialize the store.

        Args:
            ttl_minutes: Entry time-to-live. Defaults to HANDOFF_TTL_MINUTES.
        """
        self._store: dict[str, _Entry] = {}
        self._ttl_minutes = (
            ttl_minutes if ttl_minutes is not None else settings.handoff_ttl_minutes
        )

    def put(
        self,
        payload: HandoffPayload,
        *,
        handoff_id: str | None = None,
        now: datetime | None = None,
    ) -> tuple[str, datetime]:
        """Store a payload, replacing whatever ``handoff_id`` held before.

        Expired entries are swept on every put, so abandoned flows do not
        accumulate.

        Args:
            payload: State for the next step.
            handoff_id: Existing id to reuse (the browser's current cookie).
            now: Reference time (tests).

        Returns:
            Tuple of (handoff_id, expires_at).
        """
        now = now or datetime.now(UTC)
        self.cleanup_expired(now=now)
        handoff_id = handoff_id or secrets.token_urlsafe(32)
        expires_at = now + timedelta(minutes=self._ttl_minutes)
        self._store[handoff_id] = _Entry(payload=payload, expires_at=expires_at)
        return handoff_id, expires_at

    def peek(
        self,
        handoff_id: str | None,
        kind: type[P],
        *,
        now: datetime | None = None,
    ) -> P | None:
        """Return the payload if it exists, is live and has type ``kind``."""
        if not handoff_id:
            return None
        entry = self._store.get(handoff_id)
        if entry is None:
            return None

        if (now or datetime.now(UTC)) >= entry.expires_at:
            del self._store[handoff_id]
            return None

        if not isinstance(entry.payload, kind):
            return None
        return entry.payload

    def take(
        self,
        handoff_id: str | None,
        kind: type[P],
        *,
        now: datetime | None = None,
    ) -> P | None:
        """Get and remove the payload (one-time use)."""
        payload = self.peek(handoff_id, kind, now=now)
        if payload is not None and handoff_id is not None:
            del self._store[handoff_id]
        return payload

    def discard(self, handoff_id: str | None) -> None:
        """Drop an entry regardless of its payload type."""
        if handoff_id:
            self._store.pop(handoff_id, None)

    def cleanup_expired(self, *, now: datetime | None = None) -> int:
        """Remove all expired entries.

        Returns:
            Number of entries removed.
        """
        now = now or datetime.now(UTC)
        expired = [
            key for key, entry in self._store.items() if now >= entry.expires_at
        ]
        for key in expired:
            del self._store[key]
        return len(expired)

    def clear(self) -> None:
        """Clear all entries (for testing)."""
        self._store.clear()


# Singleton instance for the application
_handoff_store: HandoffStore | None = None


def get_handoff_store() -> HandoffStore:
    """Get the singleton handoff store instance."""
    global _handoff_store
    if _handoff_store is None:
        _handoff_store = HandoffStore()
    return _handoff_store


def reset_handoff_store() -> None:
    """Reset the handoff store singleton (for testing)."""
    global _handoff_store
    if _handoff_store is not None:
        _handoff_store.clear()
    _handoff_store = None
