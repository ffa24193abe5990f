"""Tests for API error classes and the error envelope handlers."""

import pytest
from fastapi.exceptions import RequestValidationError

from barfly.core.config import settings
from barfly.core.errors import (
    APIError,
    ConflictError,
    DeviceMismatchError,
    ForbiddenError,
    InternalError,
    InvalidCodeError,
    NotFoundError,
    SecurityRejection,
    StaleSessionError,
    UnauthorizedError,
    ValidationError,
)
from barfly.main import api_error_handler, validation_error_handler


class TestAPIError:
    """Tests for base APIError class."""

    def test_api_error_has_required_attributes(self):
        """APIError should have code, message, status_code, details."""
        error = APIError(
            code="TEST_ERROR",
            message="Test message",
            status_code=418,
            details=[{"field": "test"}],
        )
        assert error.code == "TEST_ERROR"
        assert error.message == "Test message"
        assert error.status_code == 418
        assert error.details == [{"field": "test"}]

    def test_api_error_defaults_to_500(self):
        """APIError should default to 500 status code."""
        error = APIError(code="TEST", message="Test")
        assert error.status_code == 500
        assert error.details is None

    def test_api_error_is_exception(self):
        """APIError should be an Exception subclass."""
        error = APIError(code="TEST", message="Test")
        assert isinstance(error, Exception)
        assert str(error) == "Test"

    def test_does_not_clear_session_cookie_by_default(self):
        """Only stale-session errors log the browser out."""
        assert APIError(code="TEST", message="Test").clears_session_cookie is False


@pytest.mark.parametrize(
    ("error", "status_code", "code"),
    [
        (ValidationError("bad"), 400, "VALIDATION_ERROR"),
        (InvalidCodeError(), 400, "INVALID_CODE"),
        (DeviceMismatchError(), 400, "DEVICE_MISMATCH"),
        (UnauthorizedError(), 401, "UNAUTHORIZED"),
        (StaleSessionError(), 401, "UNAUTHORIZED"),
        (ForbiddenError(), 403, "FORBIDDEN"),
        (SecurityRejection(), 403, "FORBIDDEN"),
        (NotFoundError("Session"), 404, "NOT_FOUND"),
        (
            ConflictError(code="EMAIL_ALREADY_EXISTS", message="taken"),
            409,
            "EMAIL_ALREADY_EXISTS",
        ),
        (InternalError(), 500, "INTERNAL_ERROR"),
    ],
)
def test_status_and_code(error: APIError, status_code: int, code: str) -> None:
    """Every error maps to its HTTP status and machine-readable code."""
    assert error.status_code == status_code
    assert error.code == code


class TestInvalidCodeError:
    """Tests for InvalidCodeError (400)."""

    def test_details_point_at_code_field(self):
        """Forms render the message next to the code input."""
        error = InvalidCodeError()
        assert error.details == [{"field": "code", "message": "Invalid code"}]

    def test_custom_message(self):
        """Message is carried into details."""
        error = InvalidCodeError("Code expired")
        assert error.message == "Code expired"
        assert error.details == [{"field": "code", "message": "Code expired"}]


class TestSecurityRejection:
    """Tests for SecurityRejection (403)."""

    def test_message_is_generic(self):
        """The response never says which guard tripped."""
        assert SecurityRejection().message == "Forbidden"

    def test_is_forbidden_error(self):
        """Handled like any other 403."""
        assert isinstance(SecurityRejection(), ForbiddenError)


class TestNotFoundError:
    """Tests for NotFoundError (404)."""

    def test_not_found_with_resource_only(self):
        """Message names the resource."""
        assert NotFoundError("Session").message == "Session not found"

    def test_not_found_with_resource_and_id(self):
        """Message includes the id when given."""
        error = NotFoundError("User", "123")
        assert error.message == "User with id '123' not found"


class TestStaleSessionError:
    """Tests for StaleSessionError (401)."""

    def test_clears_session_cookie(self):
        """Stale cookies are removed from the browser."""
        assert StaleSessionError().clears_session_cookie is True

    def test_is_unauthorized(self):
        """Behaves as a 401 everywhere else."""
        assert isinstance(StaleSessionError(), UnauthorizedError)


class TestApiErrorHandler:
    """Tests for api_error_handler()."""

    def test_renders_envelope(self):
        """Errors use the {"error": {...}} envelope."""
        response = api_error_handler(None, InvalidCodeError())  # type: ignore[arg-type]
        assert response.status_code == 400
        assert response.body == (
            b'{"error":{"code":"INVALID_CODE","message":"Invalid code",'
            b'"details":[{"field":"code","message":"Invalid code"}]}}'
        )

    def test_stale_session_clears_cookie(self):
        """The 401 for a stale session deletes the session cookie."""
        response = api_error_handler(None, StaleSessionError())  # type: ignore[arg-type]
        assert response.status_code == 401
        cookie = response.headers["set-cookie"]
        assert cookie.startswith(f'{settings.session_cookie_name}=""')
        assert "Max-Age=0" in cookie

    def test_other_errors_leave_cookies_alone(self):
        """Ordinary errors set no cookies."""
        response = api_error_handler(None, UnauthorizedError())  # type: ignore[arg-type]
        assert "set-cookie" not in response.headers


class TestValidationErrorHandler:
    """Tests for validation_error_handler()."""

    def test_converts_to_400(self):
        """Pydantic errors become VALIDATION_ERROR with field details."""
        exc = RequestValidationError(
            [{"loc": ("body", "code"), "msg": "too short", "type": "string_too_short"}]
        )
        response = validation_error_handler(None, exc)  # type: ignore[arg-type]
        assert response.status_code == 400
        assert b'"VALIDATION_ERROR"' in response.body
        assert b'"loc":["body","code"]' in response.body
