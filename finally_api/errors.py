from __future__ import annotations

from sqlalchemy.exc import IntegrityError

VALIDATION_ERROR = "VALIDATION_ERROR"
UNAUTHORIZED = "UNAUTHORIZED"
FORBIDDEN = "FORBIDDEN"
NOT_FOUND = "NOT_FOUND"
ROUTE_NOT_FOUND = "ROUTE_NOT_FOUND"
CONFLICT = "CONFLICT"
UNIQUE_CONSTRAINT = "UNIQUE_CONSTRAINT"
FOREIGN_KEY_CONSTRAINT = "FOREIGN_KEY_CONSTRAINT"
DATABASE_ERROR = "DATABASE_ERROR"
INTERNAL_ERROR = "INTERNAL_ERROR"
HEALTH_CHECK_FAILED = "HEALTH_CHECK_FAILED"

# SQLSTATE codes reported by PostgreSQL drivers.
UNIQUE_VIOLATION = "23505"
FOREIGN_KEY_VIOLATION = "23503"


class ApiError(Exception):
    """An error that maps directly onto an error envelope."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int,
        details: object | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details


def validation_error(message: str, details: object | None = None) -> ApiError:
    return ApiError(VALIDATION_ERROR, message, 400, details)


def unauthorized(message: str = "Unauthorized") -> ApiError:
    return ApiError(UNAUTHORIZED, message, 401)


def forbidden(message: str) -> ApiError:
    return ApiError(FORBIDDEN, message, 403)


def not_found(message: str) -> ApiError:
    return ApiError(NOT_FOUND, message, 404)


def route_not_found() -> ApiError:
    return ApiError(ROUTE_NOT_FOUND, "Route not found", 404)


def conflict(message: str, details: object | None = None) -> ApiError:
    return ApiError(CONFLICT, message, 409, details)


def from_integrity_error(exc: IntegrityError) -> ApiError:
    """Classify a storage constraint failure into the API taxonomy."""
    orig = exc.orig
    sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    text = str(orig).lower()
    if sqlstate == UNIQUE_VIOLATION or "unique" in text:
        return ApiError(UNIQUE_CONSTRAINT, "Record already exists", 409)
    if sqlstate == FOREIGN_KEY_VIOLATION or "foreign key" in text:
        return ApiError(FOREIGN_KEY_CONSTRAINT, "Related record not found", 400)
    return ApiError(DATABASE_ERROR, "Database operation failed", 500)
