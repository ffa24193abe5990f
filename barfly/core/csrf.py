"""CSRF protection using the double-submit cookie pattern.

The token lives in an httpOnly cookie and the client echoes it back in
the request body (``csrf`` field) or the ``X-CSRF-Token`` header. Both
copies must match and the token must carry a valid HMAC signature, so a
cookie planted from a sibling subdomain cannot be paired with a forged
form value.
"""

import hashlib
import hmac
import secrets

from barfly.core.config import settings

CSRF_FORM_FIELD = "csrf"
CSRF_HEADER = "X-CSRF-Token"

_TOKEN_BYTES = 32


def _sign(raw: str) -> str:
    key = settings.auth_secret.get_secret_value().encode()
    return hmac.new(key, f"csrf:{raw}".encode(), hashlib.sha256).hexdigest()


def issue_csrf_token() -> str:
    """Create a new signed CSRF token (``<random>.<signature>``)."""
    raw = secrets.token_urlsafe(_TOKEN_BYTES)
    return f"{raw}.{_sign(raw)}"


def is_signed_token(token: str) -> bool:
    """Check that a token was issued by this server."""
    raw, sep, signature = token.rpartition(".")
    if not sep or not raw:
        return False
    return hmac.compare_digest(signature.encode(), _sign(raw).encode())


def validate_csrf(cookie_token: str | None, submitted_token: str | None) -> bool:
    """Validate a double-submitted CSRF token.

    Args:
        cookie_token: Value of the CSRF cookie.
        submitted_token: Value echoed in the form body or header.

    Returns:
        True if both are present, identical and signed by this server.
    """
    if not cookie_token or not submitted_token:
        return False
    if not hmac.compare_digest(cookie_token.encode(), submitted_token.encode()):
        return False
    return is_signed_token(cookie_token)
