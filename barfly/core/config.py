"""Application configuration loaded from environment variables.

Settings for database, cookies, one-time codes, e-mail delivery and rate
limiting. Uses pydantic-settings for validation and .env file support.
"""

from typing import Literal

from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Known insecure default password that must not be used in production
# Security: Runtime check in check_production_security() prevents use in production
_INSECURE_DEFAULT_PASSWORD = "barfly_dev_password"  # nosec B105

# Minimum length for AUTH_SECRET in production (256 bits = 32 bytes)
_MIN_AUTH_SECRET_LENGTH = 32


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Database
    database_host: str = "localhost"
    database_port: int = 5432
    database_name: str = "barfly"
    database_user: str = "barfly_user"
    database_password: str = _INSECURE_DEFAULT_PASSWORD

    # API
    # 0.0.0.0 binds to all network interfaces (required for Docker containers)
    api_host: str = "0.0.0.0"  # nosec B104
    api_port: int = 8000

    # CORS (Security)
    # CRITICAL: Never set to ["*"] when allow_credentials=True
    allowed_origins: list[str] = ["http://localhost:3000"]

    # Application
    environment: str = "development"
    log_level: str = "INFO"

    # Signing secret for session, handoff and CSRF cookies
    auth_secret: SecretStr = SecretStr("")
    auth_issuer: str = "barfly"

    # Cookies
    session_cookie_name: str = "barfly.session"
    handoff_cookie_name: str = "barfly.handoff"
    csrf_cookie_name: str = "barfly.csrf"
    cookie_secure: bool = True
    cookie_samesite: Literal["lax", "strict", "none"] = "lax"
    cookie_domain: str = ""

    # Lifetimes
    session_ttl_days: int = 30
    handoff_ttl_minutes: int = 15

    # One-time codes
    # Number of adjacent time steps accepted on either side of the current one
    otp_window: int = 1
    two_factor_issuer: str = "Barfly"
    two_factor_disable_requires_code: bool = False

    # Anti-automation
    honeypot_field_name: str = "name__confirm"

    # Email
    email_from: str = "Barfly <noreply@barfly.ca>"
    resend_api_key: SecretStr = SecretStr("")

    # Frontend URL (verify / reset / signup pages are rendered there)
    frontend_url: str = "http://localhost:3000"

    # Backend URL (for magic link emails that must hit the API directly)
    backend_url: str = "http://localhost:8000"

    # Rate Limiting (Security)
    # Format: "count/period" (e.g., "10/minute", "100/hour")
    rate_limit_auth: str = "10/minute"
    rate_limit_enabled: bool = True  # Disable for testing

    @property
    def database_url(self) -> str:
        """Async database URL for SQLAlchemy."""
        return (
            f"postgresql+asyncpg://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @model_validator(mode="after")
    def check_production_security(self) -> "Settings":
        """Validate production security requirements.

        Security: Prevents deployment with known insecure defaults.
        Checks:
        - SameSite=None requires Secure flag (browser requirement)
        - CORS must not use wildcard origin (incompatible with credentials)
        - OTP window must be non-negative
        - Database password must not be the default in production
        - AUTH_SECRET must be set and >= 32 chars in production
        """
        # Cookie security invariant: SameSite=None requires Secure (all environments)
        if self.cookie_samesite == "none" and not self.cookie_secure:
            msg = (
                "COOKIE_SECURE must be true when COOKIE_SAMESITE=none. "
                "Browsers reject SameSite=None cookies without the Secure flag."
            )
            raise ValueError(msg)

        # CORS wildcard with credentials is invalid (all environments)
        if "*" in self.allowed_origins:
            msg = (
                "ALLOWED_ORIGINS must not contain '*' (wildcard). "
                "This application uses credentials (cookies) which are "
                "incompatible with wildcard CORS origins."
            )
            raise ValueError(msg)

        if self.otp_window < 0:
            msg = f"OTP_WINDOW cannot be negative. Got: {self.otp_window}"
            raise ValueError(msg)

        if self.environment == "production":
            if self.database_password == _INSECURE_DEFAULT_PASSWORD:
                msg = (
                    "Cannot use default database password in production. "
                    "Set DATABASE_PASSWORD environment variable to a secure value."
                )
                raise ValueError(msg)

            secret_value = self.auth_secret.get_secret_value()
            if not secret_value:
                msg = (
                    "AUTH_SECRET must be set in production. "
                    'Generate with: python -c "import secrets; '
                    'print(secrets.token_hex(32))"'
                )
                raise ValueError(msg)
            if len(secret_value) < _MIN_AUTH_SECRET_LENGTH:
                msg = (
                    f"AUTH_SECRET must be at least {_MIN_AUTH_SECRET_LENGTH} "
                    "characters for adequate security."
                )
                raise ValueError(msg)

        return self


settings = Settings()
