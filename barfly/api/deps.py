"""Shared dependencies for API endpoints.

Session authentication, request guards and the per-request context the
verification services run with.

Guards run before any handler code, so a rejected request has no side
effects.
"""

import json
import logging
import uuid
from collections.abc import Mapping
from typing import Annotated, Any

from fastapi import BackgroundTasks, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from barfly.core.auth import decode_signed_value
from barfly.core.config import settings
from barfly.core.csrf import CSRF_FORM_FIELD, CSRF_HEADER, validate_csrf
from barfly.core.database import get_db
from barfly.core.email import Notifier, get_notifier
from barfly.core.errors import SecurityRejection, StaleSessionError, UnauthorizedError
from barfly.core.honeypot import is_honeypot_filled
from barfly.models.session import Session
from barfly.repositories.session_repository import SessionRepository
from barfly.services.handoff_store import HandoffStore, get_handoff_store
from barfly.services.verification_service import RequestContext

logger = logging.getLogger(__name__)

_SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "TRACE"})
_FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")

DbSession = Annotated[AsyncSession, Depends(get_db)]
NotifierDep = Annotated[Notifier, Depends(get_notifier)]
HandoffStoreDep = Annotated[HandoffStore, Depends(get_handoff_store)]


# ===================================================================
# Sessions
# ===================================================================


async def get_optional_session(request: Request, db: DbSession) -> Session | None:
    """Resolve the session cookie to a live Session row.

    Validation steps:
    1. No cookie: anonymous request (None)
    2. Decode + verify signature, expiry, audience, issuer, purpose
    3. Look up the live session row and check its owner

    A cookie that fails any check after step 1 is stale: the request is
    rejected and the error handler deletes the cookie.

    Raises:
        StaleSessionError: Cookie present but no longer valid.
    """
    token = request.cookies.get(settings.session_cookie_name)
    if not token:
        return None

    claims = decode_signed_value(token, purpose="session")
    if claims is None:
        raise StaleSessionError()
    try:
        session_id = uuid.UUID(claims["sid"])
        user_id = uuid.UUID(claims["sub"])
    except (KeyError, TypeError, ValueError) as exc:
        raise StaleSessionError() from exc

    session = await SessionRepository.get_live(db, session_id)
    if session is None or session.user_id != user_id:
        raise StaleSessionError()
    return session


async def get_current_session(
    session: Annotated[Session | None, Depends(get_optional_session)],
) -> Session:
    """Require a live session.

    Raises:
        UnauthorizedError: Anonymous request.
    """
    if session is None:
        raise UnauthorizedError()
    return session


def get_current_user_id(
    session: Annotated[Session, Depends(get_current_session)],
) -> uuid.UUID:
    """UUID of the signed-in user."""
    return session.user_id


# Reusable type aliases for dependency injection
OptionalSession = Annotated[Session | None, Depends(get_optional_session)]
CurrentSession = Annotated[Session, Depends(get_current_session)]
CurrentUserId = Annotated[uuid.UUID, Depends(get_current_user_id)]


# ===================================================================
# Request guards
# ===================================================================


async def _submitted_fields(request: Request) -> Mapping[str, Any]:
    """Body fields of a form or JSON request; empty for anything else.

    Starlette caches the parsed body, so the endpoint can read it again.
    """
    content_type = request.headers.get("content-type", "")
    if content_type.startswith(_FORM_CONTENT_TYPES):
        return await request.form()
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            # Malformed JSON is reported by body validation
            return {}
        return body if isinstance(body, dict) else {}
    return {}


async def reject_honeypot(request: Request) -> None:
    """Reject unsafe requests that filled the hidden honeypot field.

    Raises:
        SecurityRejection: Honeypot field carries a value.
    """
    if request.method in _SAFE_METHODS:
        return
    if is_honeypot_filled(await _submitted_fields(request)):
        logger.warning("Honeypot field filled on %s", request.url.path)
        raise SecurityRejection()


async def require_csrf(request: Request) -> None:
    """Validate the double-submitted CSRF token on unsafe requests.

    The token may be echoed in the ``X-CSRF-Token`` header or the ``csrf``
    body field.

    Raises:
        SecurityRejection: Token missing, mismatched or not signed by us.
    """
    if request.method in _SAFE_METHODS:
        return
    submitted = request.headers.get(CSRF_HEADER)
    if not submitted:
        value = (await _submitted_fields(request)).get(CSRF_FORM_FIELD)
        submitted = value if isinstance(value, str) else None

    if not validate_csrf(request.cookies.get(settings.csrf_cookie_name), submitted):
        logger.warning("CSRF validation failed on %s", request.url.path)
        raise SecurityRejection()


def has_csrf_header(request: Request) -> bool:
    """Whether a request is safe or echoes a valid token in the header.

    For requests whose body could not be parsed, where the ``csrf`` body
    field is unavailable.
    """
    if request.method in _SAFE_METHODS:
        return True
    return validate_csrf(
        request.cookies.get(settings.csrf_cookie_name),
        request.headers.get(CSRF_HEADER),
    )


# ===================================================================
# Request context
# ===================================================================


def get_handoff_id(request: Request) -> str | None:
    """Handoff entry id from the signed handoff cookie, if valid."""
    token = request.cookies.get(settings.handoff_cookie_name)
    if not token:
        return None
    claims = decode_signed_value(token, purpose="handoff")
    handoff_id = claims.get("hid") if claims else None
    return handoff_id if isinstance(handoff_id, str) else None


def get_request_context(
    db: DbSession,
    notifier: NotifierDep,
    handoffs: HandoffStoreDep,
    session: OptionalSession,
    background_tasks: BackgroundTasks,
    handoff_id: Annotated[str | None, Depends(get_handoff_id)],
) -> RequestContext:
    """Build the RequestContext for a flow step."""
    return RequestContext(
        db=db,
        notifier=notifier,
        handoffs=handoffs,
        handoff_id=handoff_id,
        user_id=session.user_id if session else None,
        session_id=session.id if session else None,
        background_tasks=background_tasks,
    )


Context = Annotated[RequestContext, Depends(get_request_context)]
