"""AuthKeep error taxonomy.

Every failure surfaced to callers is an ``AuthError`` carrying a machine code
and an HTTP status. Upstream and internal failures are logged where they occur
and reach the caller with an opaque message only.
"""

from sqlalchemy.exc import IntegrityError


class AuthError(Exception):
    """Base auth error with an error code and HTTP status."""

    def __init__(self, message: str, code: str, status_code: int = 400, **extra):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.extra = extra
        super().__init__(message)


class Unauthenticated(AuthError):
    """Missing, invalid or expired credential or session."""

    def __init__(self, message: str = "Invalid credentials", code: str = "unauthenticated"):
        super().__init__(message, code=code, status_code=401)


class Forbidden(AuthError):
    """Valid identity, but not allowed (permission or pending account completion)."""

    def __init__(self, message: str = "Forbidden", code: str = "forbidden"):
        super().__init__(message, code=code, status_code=403)


class NotFound(AuthError):
    def __init__(self, message: str = "Not found", code: str = "not_found"):
        super().__init__(message, code=code, status_code=404)


class ValidationFailed(AuthError):
    """Field-level input error. ``fields`` maps a field name to its reasons."""

    def __init__(self, fields: dict[str, list[str]], message: str = "Validation failed"):
        self.fields = fields
        super().__init__(message, code="validation_failed", status_code=422, fields=fields)


class Conflict(AuthError):
    """Unique-constraint violation mapped to the offending field."""

    def __init__(self, field: str):
        self.field = field
        self.fields = {field: ["taken"]}
        super().__init__(
            f"{field} taken", code="conflict", status_code=409, fields=self.fields,
        )


class UpstreamFailure(AuthError):
    def __init__(self):
        super().__init__(
            "The identity provider could not be reached",
            code="upstream_failure",
            status_code=502,
        )


class InternalError(AuthError):
    def __init__(self):
        super().__init__("Internal server error", code="internal_error", status_code=500)


# PostgreSQL reports the constraint name, SQLite reports "table.column".
_CONSTRAINT_FIELDS = (
    ("uq_users_username", "username"),
    ("users.username", "username"),
    ("uq_emails_email", "email"),
    ("emails.email", "email"),
)


def conflict_from_integrity_error(error: IntegrityError) -> Conflict | None:
    """Map a unique violation to a ``Conflict`` for the field it concerns."""
    text = str(error.orig)
    for marker, field in _CONSTRAINT_FIELDS:
        if marker in text:
            return Conflict(field)
    return None
