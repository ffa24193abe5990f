"""Authentication helpers for credentials, signed cookies and redirects.

Shared utilities used by the login gate, the verification flows and the
request dependencies.

Pipeline:
- hash_password / check_password: bcrypt credential verifier
- validate_password_strength: Format rules (sync, no network)
- encode_signed_value / decode_signed_value: HS256 cookie payloads
- set_*_cookie / clear_*_cookie: cookie issuance with one set of attributes
- safe_redirect: same-site redirect targets only
- DUMMY_HASH: Timing-safe constant for user enumeration defense
"""

import re
import uuid
from datetime import UTC, datetime
from typing import Any, Literal

import bcrypt
import jwt
from starlette.responses import Response

from barfly.core.config import settings
from barfly.core.errors import ValidationError

# bcrypt cost factor for password hashing
BCRYPT_ROUNDS = 12

# Audience shared by every signed cookie value
_AUDIENCE = "barfly"

SignedValuePurpose = Literal["session", "handoff"]

# Pre-computed bcrypt hash for timing-safe comparison on user-not-found.
# Security: prevents user enumeration via response time differences.
# Pre-generated to avoid ~300ms bcrypt computation on every app startup.
DUMMY_HASH = b"$2b$12$ZP2PVB8yI35X.mkRqcUPUuSzJA1CNRt4dZ7X3cyrfJu.2S3w.Qen2"

# bcrypt only accepts inputs up to 72 bytes
MAX_PASSWORD_BYTES = 72


# ===================================================================
# Credential verifier
# ===================================================================


def hash_password(password: str, *, rounds: int = BCRYPT_ROUNDS) -> str:
    """Hash a password with bcrypt.

    Args:
        password: Plain-text password.
        rounds: bcrypt cost factor.

    Returns:
        bcrypt hash as text.
    """
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=rounds)).decode()


def check_password(password: str, password_hash: str | None) -> bool:
    """Compare a password against a stored hash.

    Security: when there is no hash (unknown user) or the password is
    longer than bcrypt accepts, the comparison still runs against
    DUMMY_HASH so response time does not reveal whether the account exists.

    Args:
        password: Plain-text password from the request.
        password_hash: Stored bcrypt hash, or None.

    Returns:
        True only if a hash exists and matches.
    """
    encoded = password.encode()
    if not password_hash or len(encoded) > MAX_PASSWORD_BYTES:
        bcrypt.checkpw(encoded[:MAX_PASSWORD_BYTES], DUMMY_HASH)
        return False
    return bcrypt.checkpw(encoded, password_hash.encode())


def validate_password_strength(password: str) -> None:
    """Validate password meets strength requirements.

    8-128 chars and at most 72 bytes of UTF-8, letter + number + special
    character.

    Args:
        password: Plain-text password to validate.

    Raises:
        ValidationError: If password doesn't meet requirements.
    """
    if len(password) < 8:
        raise ValidationError("Password must be at least 8 characters")
    if len(password) > 128:
        raise ValidationError("Password must be at most 128 characters")
    if len(password.encode()) > MAX_PASSWORD_BYTES:
        raise ValidationError(
            f"Password must be at most {MAX_PASSWORD_BYTES} bytes long"
        )
    if not re.search(r"[a-zA-Z]", password):
        raise ValidationError("Password must contain at least one letter")
    if not re.search(r"\d", password):
        raise ValidationError("Password must contain at least one number")
    if not re.search(r"[^a-zA-Z\d]", password):
        raise ValidationError("Password must contain at least one special character")


# ===================================================================
# Signed cookie values
# ===================================================================


def encode_signed_value(
    claims: dict[str, Any],
    *,
    purpose: SignedValuePurpose,
    expires_at: datetime,
) -> str:
    """Sign a small payload for storage in a cookie.

    The ``typ`` claim binds the value to one cookie so a handoff value can
    never be replayed as a session value and vice versa.

    Args:
        claims: Payload claims (string values).
        purpose: Which cookie the value is for.
        expires_at: Hard expiry, enforced on decode.

    Returns:
        Encoded JWT string.
    """
    payload = {
        **claims,
        "typ": purpose,
        "aud": _AUDIENCE,
        "iss": settings.auth_issuer,
        "iat": datetime.now(UTC),
        "exp": expires_at,
    }
    return jwt.encode(payload, settings.auth_secret.get_secret_value(), algorithm="HS256")


def decode_signed_value(
    token: str, *, purpose: SignedValuePurpose
) -> dict[str, Any] | None:
    """Verify and decode a cookie value produced by encode_signed_value().

    Args:
        token: Raw cookie value.
        purpose: Expected cookie purpose.

    Returns:
        Claims if signature, expiry, audience, issuer and purpose all check
        out, None otherwise.
    """
    try:
        payload = jwt.decode(
            token,
            settings.auth_secret.get_secret_value(),
            algorithms=["HS256"],
            audience=_AUDIENCE,
            issuer=settings.auth_issuer,
        )
    except jwt.InvalidTokenError:
        return None
    if payload.get("typ") != purpose:
        return None
    return payload


# ===================================================================
# Cookies
# ===================================================================


def _cookie_attributes() -> dict[str, Any]:
    # Attributes must be identical for set and delete or browsers keep the cookie
    return {
        "path": "/",
        "httponly": True,
        "secure": settings.cookie_secure,
        "samesite": settings.cookie_samesite,
        "domain": settings.cookie_domain or None,
    }


def set_session_cookie(
    response: Response,
    *,
    session_id: uuid.UUID,
    user_id: uuid.UUID,
    expires_at: datetime,
    remember: bool,
) -> None:
    """Commit a session id to the browser.

    With ``remember`` the cookie persists until the session row expires;
    without it the cookie lives for the browser session only. The signed
    value expires with the session row either way.

    Args:
        response: Outgoing response.
        session_id: Live session row id.
        user_id: Owner of the session.
        expires_at: Session row expiry.
        remember: Persist beyond the browser session.
    """
    token = encode_signed_value(
        {"sid": str(session_id), "sub": str(user_id)},
        purpose="session",
        expires_at=expires_at,
    )
    max_age = None
    if remember:
        max_age = max(int((expires_at - datetime.now(UTC)).total_seconds()), 0)
    response.set_cookie(
        key=settings.session_cookie_name,
        value=token,
        max_age=max_age,
        **_cookie_attributes(),
    )


def clear_session_cookie(response: Response) -> None:
    """Delete the session cookie from the browser."""
    response.delete_cookie(key=settings.session_cookie_name, **_cookie_attributes())


def set_handoff_cookie(
    response: Response, *, handoff_id: str, expires_at: datetime
) -> None:
    """Bind a handoff entry to this browser."""
    token = encode_signed_value(
        {"hid": handoff_id}, purpose="handoff", expires_at=expires_at
    )
    response.set_cookie(
        key=settings.handoff_cookie_name,
        value=token,
        max_age=max(int((expires_at - datetime.now(UTC)).total_seconds()), 0),
        **_cookie_attributes(),
    )


def clear_handoff_cookie(response: Response) -> None:
    """Delete the handoff cookie from the browser."""
    response.delete_cookie(key=settings.handoff_cookie_name, **_cookie_attributes())


def set_csrf_cookie(response: Response, token: str) -> None:
    """Store the CSRF token in its httpOnly cookie (browser session lifetime)."""
    response.set_cookie(
        key=settings.csrf_cookie_name,
        value=token,
        **_cookie_attributes(),
    )


# ===================================================================
# Redirects
# ===================================================================


def safe_redirect(to: str | None, default: str = "/") -> str:
    """Return ``to`` if it is a same-site relative path, else ``default``.

    Security: rejects absolute URLs, protocol-relative ``//host`` paths and
    backslash tricks that some browsers normalise to ``//``.
    """
    if not to or not to.startswith("/") or to.startswith("//") or "\\" in to:
        return default
    return to


def frontend_url(path: str) -> str:
    """Absolute frontend URL for a same-site path."""
    return f"{settings.frontend_url.rstrip('/')}{path}"
