"""SQLAlchemy ORM models for Barfly.

All models are exported from this module for convenient imports:
    from barfly.models import User, Session, Verification

Models:
- user.py: User
- session.py: Session (login sessions)
- verification.py: Verification, VerificationType (one-time code ledger)
"""

from barfly.models.base import Base, TimestampMixin, UTCDateTime
from barfly.models.session import Session
from barfly.models.user import User
from barfly.models.verification import Verification, VerificationType

__all__ = [
    # Base classes
    "Base",
    "TimestampMixin",
    "UTCDateTime",
    # Tables
    "User",
    "Session",
    "Verification",
    # Enums
    "VerificationType",
]
