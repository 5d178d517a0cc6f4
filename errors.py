"""Error hierarchy and global handlers.

Every failure leaves the API in the same envelope the success paths use:
{"success": false, "message": ..., "code": ...}. Store and unexpected
failures never leak internal details.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

logger = logging.getLogger(__name__)


class EduManageError(Exception):
    """Base class for errors mapped onto an HTTP response."""

    def __init__(self, message: str, code: str, http_status: int = 500):
        super().__init__(message)
        self.message = message
        self.code = code
        self.http_status = http_status

    def to_response(self) -> Dict[str, Any]:
        return {"success": False, "message": self.message, "code": self.code}


# ----------------------
# Client errors
# ----------------------
class ValidationError(EduManageError):
    def __init__(self, message: str, fields: Optional[List[str]] = None):
        super().__init__(message, "VALIDATION_ERROR", status.HTTP_400_BAD_REQUEST)
        self.fields = fields or []


class AuthenticationError(EduManageError):
    def __init__(self, message: str = "No token provided"):
        super().__init__(message, "AUTH_REQUIRED", status.HTTP_401_UNAUTHORIZED)


class InvalidTokenError(EduManageError):
    def __init__(self, message: str = "Invalid token"):
        super().__init__(message, "INVALID_TOKEN", status.HTTP_403_FORBIDDEN)


class ResourceNotFoundError(EduManageError):
    def __init__(self, resource: str):
        super().__init__(f"{resource} not found", "RESOURCE_NOT_FOUND", status.HTTP_404_NOT_FOUND)
        self.resource = resource


class ConflictError(EduManageError):
    def __init__(self, message: str):
        super().__init__(message, "CONFLICT", status.HTTP_409_CONFLICT)


class ClassNotAvailableError(EduManageError):
    def __init__(self, class_id: str):
        super().__init__(
            "Class is not available for enrollment", "CLASS_NOT_AVAILABLE", status.HTTP_400_BAD_REQUEST
        )
        self.class_id = class_id


class PaymentNotSuccessfulError(EduManageError):
    def __init__(self, payment_id: str, provider_status: Optional[str] = None):
        super().__init__("Payment was not successful", "PAYMENT_NOT_SUCCESSFUL", status.HTTP_400_BAD_REQUEST)
        self.payment_id = payment_id
        self.provider_status = provider_status


# ----------------------
# Dependency errors
# ----------------------
class PaymentProviderError(EduManageError):
    def __init__(self, message: str, operation: str):
        super().__init__(message, "PAYMENT_PROVIDER_ERROR", status.HTTP_502_BAD_GATEWAY)
        self.operation = operation


class DatabaseError(EduManageError):
    def __init__(self, operation: str):
        super().__init__("Internal server error", "DATABASE_ERROR", status.HTTP_500_INTERNAL_SERVER_ERROR)
        self.operation = operation


# ----------------------
# Handlers
# ----------------------
MISSING_TYPES = {"missing", "string_too_short"}


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(EduManageError)
    async def edumanage_error_handler(request: Request, exc: EduManageError):
        log = logger.error if exc.http_status >= 500 else logger.warning
        log(exc.message, extra={"error_code": exc.code, "path": request.url.path})
        return JSONResponse(status_code=exc.http_status, content=exc.to_response())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")
        error = ValidationError(*describe_validation_errors(exc.errors()))
        return JSONResponse(status_code=error.http_status, content=error.to_response())

    @app.exception_handler(HTTPException)
    async def http_error_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "message": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "message": "Internal server error", "code": "INTERNAL_ERROR"},
        )


def describe_validation_errors(errors: List[Dict[str, Any]]) -> Tuple[str, List[str]]:
    """Turn pydantic error entries into a message naming the offending fields."""
    missing: List[str] = []
    invalid: List[Tuple[str, str]] = []
    for e in errors:
        loc = [str(part) for part in e.get("loc", ()) if part != "body"]
        name = ".".join(loc) or "body"
        if e.get("type") in MISSING_TYPES:
            if name not in missing:
                missing.append(name)
        else:
            invalid.append((name, e.get("msg", "invalid value")))
    if missing:
        return f"Missing required fields: {', '.join(missing)}", missing
    if invalid:
        name, msg = invalid[0]
        return f"Invalid {name}: {_strip_value_error(msg)}", [n for n, _ in invalid]
    return "Invalid request data", []


def _strip_value_error(msg: str) -> str:
    prefix = "Value error, "
    return msg[len(prefix):] if msg.startswith(prefix) else msg
