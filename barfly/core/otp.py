"""Time-based one-time codes (RFC 4226 / RFC 6238) over arbitrary alphabets.

One codec backs every verification flow: e-mailed signup, password reset
and change-email codes (base-36, 15 minute steps) and authenticator-app
2FA codes (decimal, 30 second steps).

Pipeline:
- hotp: HMAC(secret, counter) -> dynamic truncation -> symbols of char_set
- generate_totp: fresh random secret + code for the current time step
- verify_totp: constant-time check against current step +/- window
- totp_auth_uri: otpauth:// URI for authenticator apps

Truncation keeps the RFC 4226 31-bit value and then spells it in base
len(char_set), least significant symbol last. With the decimal alphabet
this is the standard HOTP value zero-padded to ``digits``.
"""

import base64
import hashlib
import hmac
import secrets
import time
from dataclasses import dataclass
from urllib.parse import quote, urlencode

DIGITS = "0123456789"
BASE36 = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"

# 160-bit secrets, the RFC 4226 recommended length
_SECRET_BYTES = 20

_ALGORITHMS: dict[str, str] = {
    "SHA1": "sha1",
    "SHA256": "sha256",
    "SHA512": "sha512",
}


@dataclass(frozen=True)
class TOTPResult:
    """A freshly generated secret with its current code.

    Attributes:
        secret: Base32 encoded shared secret (no padding).
        code: Code for the time step the secret was generated in.
        algorithm: HMAC algorithm name ("SHA1", "SHA256", "SHA512").
        digits: Number of symbols in a code.
        period: Time step length in seconds.
        char_set: Alphabet codes are spelled in.
    """

    secret: str
    code: str
    algorithm: str
    digits: int
    period: int
    char_set: str


def _digest_name(algorithm: str) -> str:
    try:
        return _ALGORITHMS[algorithm.upper()]
    except KeyError:
        msg = f"Unsupported OTP algorithm: {algorithm}"
        raise ValueError(msg) from None


def _decode_secret(secret: str) -> bytes:
    """Decode a base32 secret, tolerating lowercase and missing padding."""
    normalized = secret.strip().replace(" ", "").upper()
    padding = "=" * (-len(normalized) % 8)
    return base64.b32decode(normalized + padding)


def generate_secret() -> str:
    """Return a random base32 secret without padding."""
    return base64.b32encode(secrets.token_bytes(_SECRET_BYTES)).decode().rstrip("=")


def counter_at(timestamp: float, period: int) -> int:
    """Time step index for a unix timestamp."""
    return int(timestamp // period)


def hotp(
    secret: str,
    counter: int,
    *,
    digits: int,
    algorithm: str,
    char_set: str,
) -> str:
    """Compute the code for one counter value.

    Args:
        secret: Base32 encoded shared secret.
        counter: Moving factor (time step for TOTP).
        digits: Number of symbols to emit.
        algorithm: HMAC algorithm name.
        char_set: Alphabet to spell the code in. Must hold 2+ symbols.

    Returns:
        Code of exactly ``digits`` symbols from ``char_set``.
    """
    if len(char_set) < 2:
        msg = "char_set must contain at least two symbols"
        raise ValueError(msg)
    if digits < 1:
        msg = "digits must be positive"
        raise ValueError(msg)

    mac = hmac.new(
        _decode_secret(secret),
        counter.to_bytes(8, "big"),
        _digest_name(algorithm),
    ).digest()

    # RFC 4226 §5.3 dynamic truncation
    offset = mac[-1] & 0x0F
    value = int.from_bytes(mac[offset : offset + 4], "big") & 0x7FFFFFFF

    base = len(char_set)
    symbols = []
    for _ in range(digits):
        value, index = divmod(value, base)
        symbols.append(char_set[index])
    return "".join(reversed(symbols))


def generate_totp(
    *,
    digits: int = 6,
    period: int = 30,
    algorithm: str = "SHA1",
    char_set: str = DIGITS,
    now: float | None = None,
) -> TOTPResult:
    """Generate a new secret and the code for the current time step.

    Args:
        digits: Number of symbols in a code.
        period: Time step length in seconds.
        algorithm: HMAC algorithm name.
        char_set: Alphabet codes are spelled in.
        now: Unix timestamp override (tests).

    Returns:
        TOTPResult with everything needed to persist and later verify.
    """
    _digest_name(algorithm)
    secret = generate_secret()
    timestamp = time.time() if now is None else now
    code = hotp(
        secret,
        counter_at(timestamp, period),
        digits=digits,
        algorithm=algorithm,
        char_set=char_set,
    )
    return TOTPResult(
        secret=secret,
        code=code,
        algorithm=algorithm.upper(),
        digits=digits,
        period=period,
        char_set=char_set,
    )


def totp_code(
    *,
    secret: str,
    period: int,
    digits: int,
    algorithm: str,
    char_set: str,
    now: float | None = None,
) -> str:
    """Code for an existing secret at ``now`` (defaults to current time)."""
    timestamp = time.time() if now is None else now
    return hotp(
        secret,
        counter_at(timestamp, period),
        digits=digits,
        algorithm=algorithm,
        char_set=char_set,
    )


def verify_totp(
    code: str,
    *,
    secret: str,
    period: int,
    digits: int,
    char_set: str,
    algorithm: str,
    window: int = 1,
    now: float | None = None,
) -> bool:
    """Check a submitted code against the secret.

    Accepts codes for the current time step and ``window`` steps on either
    side. Every candidate is compared in constant time and the loop never
    exits early, so timing does not reveal which step matched.

    Args:
        code: Code submitted by the user.
        secret: Base32 encoded shared secret.
        period: Time step length in seconds.
        digits: Expected code length.
        char_set: Alphabet codes are spelled in.
        algorithm: HMAC algorithm name.
        window: Adjacent steps tolerated on each side (0 = current only).
        now: Unix timestamp override (tests).

    Returns:
        True if the code matches any step in the window.
    """
    if len(code) != digits:
        return False

    timestamp = time.time() if now is None else now
    current = counter_at(timestamp, period)
    submitted = code.encode()

    matched = False
    for counter in range(current - window, current + window + 1):
        if counter < 0:
            continue
        expected = hotp(
            secret,
            counter,
            digits=digits,
            algorithm=algorithm,
            char_set=char_set,
        )
        if hmac.compare_digest(expected.encode(), submitted):
            matched = True
    return matched


def totp_auth_uri(
    *,
    secret: str,
    account_name: str,
    issuer: str,
    algorithm: str = "SHA1",
    digits: int = 6,
    period: int = 30,
) -> str:
    """Build an ``otpauth://totp/`` URI for authenticator apps (QR codes).

    Args:
        secret: Base32 encoded shared secret.
        account_name: Label shown in the app, usually the e-mail address.
        issuer: Service name shown in the app.
        algorithm: HMAC algorithm name.
        digits: Code length.
        period: Time step length in seconds.

    Returns:
        Key URI in the Google Authenticator format.
    """
    label = quote(f"{issuer}:{account_name}", safe="")
    params = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": algorithm.upper(),
            "digits": digits,
            "period": period,
        },
        quote_via=quote,
    )
    return f"otpauth://totp/{label}?{params}"
