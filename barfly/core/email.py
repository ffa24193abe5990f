"""Out-of-band delivery of verification codes via Resend.

Plain-text e-mails: the code itself plus a magic link that carries the code
so a click redeems it without typing.

The Notifier protocol is what the verification flows depend on; the
Resend implementation posts to the HTTP API and the logging implementation
is used in development when no API key is configured.
"""

import logging
from typing import Protocol

import httpx

from barfly.core.config import settings

logger = logging.getLogger(__name__)

_RESEND_API_URL = "https://api.resend.com/emails"
_RESEND_TIMEOUT = 10.0

_SUBJECTS: dict[str, str] = {
    "signup": "Confirm your Email Address",
    "reset-password": "Reset your Barfly password",
    "change-email": "Change Email Verification",
}

_INTROS: dict[str, str] = {
    "signup": (
        "We need to verify your email address before you can create "
        "your Barfly account."
    ),
    "reset-password": "Use this code to reset your Barfly password.",
    "change-email": (
        "If you did not request a change to the email address associated "
        "with your Barfly account, you can safely ignore this email."
    ),
}


class Notifier(Protocol):
    """Delivers verification codes and account notices out of band."""

    async def send(
        self, *, target: str, code: str, verify_link: str, purpose: str
    ) -> None:
        """Deliver a one-time code.

        Args:
            target: Recipient address.
            code: One-time code to type in.
            verify_link: Magic link that redeems the code directly.
            purpose: Verification type the code belongs to.
        """
        ...

    async def notify_email_changed(self, *, to_email: str, new_email: str) -> None:
        """Tell the previous address that the account e-mail changed."""
        ...


class ResendNotifier:
    """Notifier that sends plain-text e-mail through the Resend API.

    Delivery failures are logged and swallowed: notifications run after the
    triggering state change has committed, so there is nothing to roll back.
    """

    def __init__(self, *, api_key: str, sender: str) -> None:
        self._api_key = api_key
        self._sender = sender

    async def _post(self, *, to_email: str, subject: str, text: str) -> None:
        try:
            async with httpx.AsyncClient() as client:
                resp = await client.post(
                    _RESEND_API_URL,
                    headers={"Authorization": f"Bearer {self._api_key}"},
                    json={
                        "from": self._sender,
                        "to": to_email,
                        "subject": subject,
                        "text": text,
                    },
                    timeout=_RESEND_TIMEOUT,
                )
                resp.raise_for_status()
        except Exception:
            logger.warning("Failed to send email", exc_info=True)

    async def send(
        self, *, target: str, code: str, verify_link: str, purpose: str
    ) -> None:
        """Send a verification code e-mail."""
        intro = _INTROS.get(purpose, "Use this code to continue.")
        await self._post(
            to_email=target,
            subject=_SUBJECTS.get(purpose, "Your Barfly verification code"),
            text=(
                f"{intro}\n\n"
                f"Your verification code: {code}\n\n"
                f"Or click this link:\n\n{verify_link}\n\n"
                "This code expires in 15 minutes."
            ),
        )

    async def notify_email_changed(self, *, to_email: str, new_email: str) -> None:
        """Send the e-mail changed notice to the previous address."""
        await self._post(
            to_email=to_email,
            subject="Your Barfly email has been changed",
            text=(
                f"The email address on your Barfly account was changed to "
                f"{new_email}.\n\n"
                "If you did not make this change, contact support immediately."
            ),
        )


class LoggingNotifier:
    """Development notifier: writes codes to the application log.

    Security: never use in production, codes end up in log files.
    """

    async def send(
        self, *, target: str, code: str, verify_link: str, purpose: str
    ) -> None:
        """Log the code and magic link."""
        logger.info(
            "Verification code for %s (%s): %s %s", target, purpose, code, verify_link
        )

    async def notify_email_changed(self, *, to_email: str, new_email: str) -> None:
        """Log the e-mail changed notice."""
        logger.info("Email changed notice for %s (now %s)", to_email, new_email)


def get_notifier() -> Notifier:
    """Return the notifier for the current configuration.

    Falls back to LoggingNotifier outside production when no Resend key is
    configured.
    """
    api_key = settings.resend_api_key.get_secret_value()
    if not api_key and settings.environment != "production":
        return LoggingNotifier()
    return ResendNotifier(api_key=api_key, sender=settings.email_from)
