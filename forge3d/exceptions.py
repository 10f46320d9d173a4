from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from typing import Any, Dict, Optional
import logging

logger = logging.getLogger(__name__)

class Forge3DException(Exception):
    """Base exception for forge3d.

    ``details`` is a short human-readable string for the error envelope,
    ``extra`` carries structured fields merged into the response body.
    """

    log_level = logging.ERROR

    def __init__(self, message: str, details: Optional[str] = None, extra: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details
        self.extra = extra or {}
        super().__init__(self.message)

        # Log the exception for monitoring
        logger.log(self.log_level, f"{self.__class__.__name__}: {message}", extra={"details": details})

class ValidationError(Forge3DException):
    """Raised for malformed or missing input."""

    log_level = logging.WARNING

class UnknownServiceTypeError(ValidationError):
    """Raised when a service type is not in the catalog."""

    def __init__(self, service_type: str):
        self.service_type = service_type
        super().__init__("Invalid service type", details=f"Unknown service type '{service_type}'")

class AuthenticationError(Forge3DException):
    """Raised when authentication fails."""

    log_level = logging.WARNING

    def __init__(self, reason: str = "Authentication required"):
        super().__init__(reason)

class TokenExpiredError(AuthenticationError):
    """Raised when the session token has expired."""

    def __init__(self):
        super().__init__("Authentication token has expired")

class InvalidTokenError(AuthenticationError):
    """Raised when the session token is invalid."""

    def __init__(self, reason: str = "Invalid token"):
        super().__init__(f"Invalid authentication token: {reason}")

class AdminRequiredError(AuthenticationError):
    """Raised when a non-admin user reaches an admin route."""

    def __init__(self):
        super().__init__("Admin access required")

class InsufficientCreditsError(Forge3DException):
    """Raised when user has insufficient credits for operation."""

    log_level = logging.WARNING

    def __init__(self, required: int, available: int, user_id: str = None):
        message = "Insufficient credits"
        details = f"Required: {required}, Available: {available}"
        self.required = required
        self.available = available
        self.user_id = user_id
        super().__init__(message, details, {"requiredCredits": required, "availableCredits": available})

class NotFoundOrForbiddenError(Forge3DException):
    """Raised when a record is absent or owned by someone else.

    Both cases produce the same response so other users' records cannot be probed.
    """

    log_level = logging.WARNING

    def __init__(self, resource: str = "Model"):
        super().__init__(f"{resource} not found or access denied")

class DuplicateReuseError(Forge3DException):
    """Raised when the user already holds a record for the same model and prompt."""

    log_level = logging.WARNING

    def __init__(self, existing_model: Dict[str, Any]):
        super().__init__("You have already reused this model", extra={"existingModel": existing_model})

class UpstreamProviderError(Forge3DException):
    """Raised when the generation provider fails or returns malformed data."""

    def __init__(self, provider: str, error: str, status_code: int = None):
        self.provider = provider
        self.status_code = status_code
        message = f"Generation provider '{provider}' error"
        details = f"{status_code} - {error}" if status_code else error
        super().__init__(message, details)

class PollingTimeoutError(UpstreamProviderError):
    """Raised when a provider task does not reach a terminal status in time."""

    def __init__(self, task_id: str, attempts: int):
        self.task_id = task_id
        self.attempts = attempts
        super().__init__("poller", f"Task {task_id} did not complete after {attempts} attempts")

class PersistenceError(Forge3DException):
    """Raised when database operations fail."""

    def __init__(self, operation: str, error: str):
        self.operation = operation
        super().__init__(f"Database operation '{operation}' failed", details=error)

class LedgerConflictError(Forge3DException):
    """Raised when a concurrent ledger update could not be serialized. Safe to retry."""

    log_level = logging.WARNING

    def __init__(self, user_id: str, error: str):
        self.user_id = user_id
        super().__init__("Credit ledger is busy, please retry", details=error)

class ConfigurationError(Forge3DException):
    """Raised when application configuration is invalid."""

    def __init__(self, setting: str, reason: str):
        message = f"Configuration error for '{setting}': {reason}"
        super().__init__(message)

# Exception to HTTP status code mapping, most specific class first
STATUS_CODE_MAPPING = (
    (AdminRequiredError, status.HTTP_403_FORBIDDEN),
    (AuthenticationError, status.HTTP_401_UNAUTHORIZED),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (InsufficientCreditsError, status.HTTP_402_PAYMENT_REQUIRED),
    (NotFoundOrForbiddenError, status.HTTP_404_NOT_FOUND),
    (DuplicateReuseError, status.HTTP_409_CONFLICT),
    (LedgerConflictError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (UpstreamProviderError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (PersistenceError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (ConfigurationError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)

def status_code_for(exc: Forge3DException) -> int:
    for exc_type, status_code in STATUS_CODE_MAPPING:
        if isinstance(exc, exc_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR

def error_body(exc: Forge3DException) -> Dict[str, Any]:
    body: Dict[str, Any] = {"error": exc.message}
    if exc.details:
        body["details"] = exc.details
    body.update(exc.extra)
    return body

async def forge3d_exception_handler(request: Request, exc: Forge3DException):
    headers = {"Retry-After": "1"} if isinstance(exc, LedgerConflictError) else None
    return JSONResponse(status_code=status_code_for(exc), content=error_body(exc), headers=headers)

async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    body: Dict[str, Any]
    if isinstance(exc.detail, dict):
        body = exc.detail
    else:
        body = {"error": str(exc.detail)}
    return JSONResponse(status_code=exc.status_code, content=body, headers=getattr(exc, "headers", None))

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    details = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()
    )
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "Invalid request", "details": details},
    )

async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unexpected error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error"},
    )

def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(Forge3DException, forge3d_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
