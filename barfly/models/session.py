"""Session model - server-side login sessions.

A row exists from the moment credentials check out. The browser only
learns the id once every required factor has been verified; see
services/login_gate.py.
"""

import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import ForeignKey, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from barfly.models.base import Base

if TYPE_CHECKING:
    from barfly.models.user import User


class Session(Base):
    """Login session.

    Attributes:
        id: UUID primary key, the value committed to the session cookie.
        user_id: Owner of the session.
        expires_at: Hard expiry; expired rows are treated as absent.
        created_at: When the session was created.
    """

    __tablename__ = "sessions"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    expires_at: Mapped[datetime] = mapped_column(nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        nullable=False,
    )

    user: Mapped["User"] = relationship("User", back_populates="sessions")
