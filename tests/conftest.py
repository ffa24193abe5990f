import uuid
from collections.abc import AsyncGenerator, Callable, Iterator
from dataclasses import dataclass, field
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from barfly.core.auth import hash_password
from barfly.core.config import settings
from barfly.core.rate_limiting import limiter
from barfly.models import Base, User
from barfly.services.handoff_store import (
    HandoffStore,
    get_handoff_store,
    reset_handoff_store,
)
from barfly.services.verification_service import RequestContext

# Security: This is a test-only secret. Production uses a real secret from env.
TEST_AUTH_SECRET = "test-secret-key-that-is-at-least-32-characters-long"  # nosec B105  # gitleaks:allow

TEST_USER_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")
TEST_USER_EMAIL = "kody@barfly.app"
TEST_USER_USERNAME = "kody"
TEST_USER_PASSWORD = "Sh4ken-not-stirred"  # nosec B105

API = "/api/v1/auth"


# =============================================================================
# Settings
# =============================================================================


@pytest.fixture(autouse=True)
def test_settings() -> Iterator[None]:
    """Test-friendly settings for every test, restored afterwards.

    - Known signing secret
    - Cookies without the Secure flag (test client talks plain http)
    - Rate limiting off
    - Empty handoff store
    """
    original = {
        "auth_secret": settings.auth_secret,
        "cookie_secure": settings.cookie_secure,
        "two_factor_disable_requires_code": settings.two_factor_disable_requires_code,
        "otp_window": settings.otp_window,
    }
    original_limiter_enabled = limiter.enabled

    settings.auth_secret = SecretStr(TEST_AUTH_SECRET)
    settings.cookie_secure = False
    limiter.enabled = False
    reset_handoff_store()

    yield

    for name, value in original.items():
        setattr(settings, name, value)
    limiter.enabled = original_limiter_enabled
    reset_handoff_store()


# =============================================================================
# Database
# =============================================================================


@pytest_asyncio.fixture(scope="function")
async def db_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """SQLite database file per test, schema created from the models."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'barfly_test.db'}", echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test database."""
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def test_user(db_session: AsyncSession) -> User:
    """A committed user with a known password."""
    user = User(
        id=TEST_USER_ID,
        email=TEST_USER_EMAIL,
        username=TEST_USER_USERNAME,
        password_hash=hash_password(TEST_USER_PASSWORD, rounds=4),
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


# =============================================================================
# Collaborators
# =============================================================================


@dataclass
class RecordingNotifier:
    """Notifier that keeps everything it was asked to deliver."""

    sent: list[dict[str, Any]] = field(default_factory=list)
    changed: list[dict[str, Any]] = field(default_factory=list)

    async def send(
        self, *, target: str, code: str, verify_link: str, purpose: str
    ) -> None:
        self.sent.append(
            {"target": target, "code": code, "verify_link": verify_link, "purpose": purpose}
        )

    async def notify_email_changed(self, *, to_email: str, new_email: str) -> None:
        self.changed.append({"to_email": to_email, "new_email": new_email})

    def last_code(self, target: str | None = None) -> str:
        """Most recent code, optionally for one recipient."""
        for message in reversed(self.sent):
            if target is None or message["target"] == target:
                return message["code"]
        msg = f"No code sent to {target}"
        raise AssertionError(msg)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def handoffs() -> HandoffStore:
    return get_handoff_store()


@pytest.fixture
def make_ctx(
    db_session: AsyncSession, notifier: RecordingNotifier, handoffs: HandoffStore
) -> Callable[..., RequestContext]:
    """Factory for service-level RequestContext objects.

    Post-commit tasks run inline (no BackgroundTasks), so notifier effects
    are visible as soon as the service call returns.
    """

    def _make(**overrides: Any) -> RequestContext:
        values: dict[str, Any] = {
            "db": db_session,
            "notifier": notifier,
            "handoffs": handoffs,
        }
        values.update(overrides)
        return RequestContext(**values)

    return _make


# =============================================================================
# API clients
# =============================================================================


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    notifier: RecordingNotifier,
) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client against the app with test database and notifier.

    Starts without any cookies; see csrf_headers() for unsafe requests.
    """
    from barfly.core.database import get_db
    from barfly.core.email import get_notifier
    from barfly.main import app

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notifier] = lambda: notifier

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


async def csrf_headers(client: AsyncClient) -> dict[str, str]:
    """Fetch a CSRF token (sets the cookie) and return the echo header."""
    response = await client.get(f"{API}/csrf")
    assert response.status_code == 200
    return {"X-CSRF-Token": response.json()["data"]["csrf"]}


async def login(
    client: AsyncClient,
    *,
    email: str = TEST_USER_EMAIL,
    password: str = TEST_USER_PASSWORD,
    remember_me: bool = False,
    redirect_to: str | None = None,
):
    """POST /auth/login with a fresh CSRF token."""
    headers = await csrf_headers(client)
    body: dict[str, Any] = {
        "email": email,
        "password": password,
        "remember_me": remember_me,
    }
    if redirect_to is not None:
        body["redirect_to"] = redirect_to
    return await client.post(f"{API}/login", json=body, headers=headers)
