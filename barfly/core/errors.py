"""API error classes.

Verification flows raise InvalidCodeError and DeviceMismatchError;
the request guards raise SecurityRejection.
"""


class APIError(Exception):
    """Base class for API errors.

    All API errors have a code, message, and HTTP status.
    Subclasses set default status_code.

    Attributes:
        code: Machine-readable error code (e.g., "NOT_FOUND").
        message: Human-readable error message.
        status_code: HTTP status code to return.
        details: Optional list of additional error details.
        clears_session_cookie: Whether the error response must also
            delete the session cookie.
    """

    clears_session_cookie = False

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 500,
        details: list[dict] | None = None,
    ) -> None:
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details
        super().__init__(message)


class ValidationError(APIError):
    """Field validation failed (400).

    Use for request body validation errors, query param errors, etc.
    """

    def __init__(
        self,
        message: str,
        details: list[dict] | None = None,
    ) -> None:
        super().__init__(
            code="VALIDATION_ERROR",
            message=message,
            status_code=400,
            details=details,
        )


class InvalidCodeError(APIError):
    """Wrong, expired or already redeemed one-time code (400).

    Retryable: the challenge stays in place, the user may submit again.
    Details point at the ``code`` field so forms can render the message
    next to the input.
    """

    def __init__(self, message: str = "Invalid code") -> None:
        super().__init__(
            code="INVALID_CODE",
            message=message,
            status_code=400,
            details=[{"field": "code", "message": message}],
        )


class DeviceMismatchError(APIError):
    """Second step submitted without the handoff state of the first (400).

    The handoff cookie only exists in the browser that started the flow,
    so the user has to restart on that device.
    """

    def __init__(
        self,
        message: str = (
            "Please finish this step on the same device you started it on."
        ),
    ) -> None:
        super().__init__(
            code="DEVICE_MISMATCH",
            message=message,
            status_code=400,
        )


class UnauthorizedError(APIError):
    """Authentication required (401).

    Use when no valid auth credentials provided.
    """

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(
            code="UNAUTHORIZED",
            message=message,
            status_code=401,
        )


class StaleSessionError(UnauthorizedError):
    """Session cookie no longer maps to a live session (401).

    The error handler also clears the session cookie so the browser stops
    presenting it.
    """

    clears_session_cookie = True


class ForbiddenError(APIError):
    """Not allowed to access resource (403).

    Use when auth is valid but user lacks permission.
    """

    def __init__(self, message: str = "Access denied") -> None:
        super().__init__(
            code="FORBIDDEN",
            message=message,
            status_code=403,
        )


class SecurityRejection(ForbiddenError):
    """CSRF or honeypot check failed (403).

    Security: message is deliberately generic so the response does not
    reveal which guard tripped.
    """

    def __init__(self) -> None:
        super().__init__("Forbidden")


class NotFoundError(APIError):
    """Resource not found (404).

    Use when requested resource doesn't exist OR doesn't belong to user.
    """

    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        if resource_id:
            message = f"{resource} with id '{resource_id}' not found"
        else:
            message = f"{resource} not found"
        super().__init__(
            code="NOT_FOUND",
            message=message,
            status_code=404,
        )


class ConflictError(APIError):
    """Duplicate or conflicting resource (409).

    Use for duplicate entries, conflicting state, etc.
    Accepts custom code for specific conflict types.
    """

    def __init__(
        self,
        code: str,
        message: str,
        details: list[dict] | None = None,
    ) -> None:
        super().__init__(
            code=code,
            message=message,
            status_code=409,
            details=details,
        )


class InternalError(APIError):
    """Unexpected server error (500).

    Use for unhandled exceptions. Never expose stack traces to clients.
    """

    def __init__(self, message: str = "An unexpected error occurred") -> None:
        super().__init__(
            code="INTERNAL_ERROR",
            message=message,
            status_code=500,
        )
