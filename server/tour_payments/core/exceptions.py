"""Custom exceptions following RFC 9457 Problem Details for HTTP APIs."""

from typing import Any, Dict, Optional
from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import logging
import uuid
from datetime import datetime, timezone


logger = logging.getLogger(__name__)

PAYMENT_RETRY_MESSAGE = "Payment could not be completed, please try again"


class ProblemDetailsException(HTTPException):
    """
    Base exception class following RFC 9457 Problem Details for HTTP APIs.

    https://tools.ietf.org/rfc/rfc9457.txt
    """

    def __init__(
        self,
        status_code: int,
        title: str,
        detail: Optional[str] = None,
        type_uri: Optional[str] = None,
        instance: Optional[str] = None,
        extensions: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        """
        Initialize Problem Details exception.

        Args:
            status_code: HTTP status code
            title: Short, human-readable summary of the problem type
            detail: Human-readable explanation specific to this occurrence
            type_uri: URI reference that identifies the problem type
            instance: URI reference that identifies the specific occurrence
            extensions: Additional problem-specific information
            headers: HTTP headers to include in response
        """
        self.status_code = status_code
        self.title = title
        self.detail = detail
        self.type_uri = type_uri or f"about:blank#{status_code}"
        self.instance = instance
        self.extensions = extensions or {}

        # Create the problem details object
        self.problem_details = {
            "type": self.type_uri,
            "title": self.title,
            "status": self.status_code,
        }

        if self.detail:
            self.problem_details["detail"] = self.detail

        if self.instance:
            self.problem_details["instance"] = self.instance

        # Add extensions
        self.problem_details.update(self.extensions)

        super().__init__(
            status_code=status_code,
            detail=self.problem_details,
            headers=headers
        )

    @property
    def code(self) -> Optional[str]:
        return self.problem_details.get("code")


class ValidationError(ProblemDetailsException):
    """Exception for request validation errors."""

    def __init__(
        self,
        detail: str = "The request data failed validation",
        errors: Optional[Dict[str, Any]] = None,
        instance: Optional[str] = None,
    ):
        extensions: Dict[str, Any] = {"code": "VALIDATION_ERROR", "retryable": False}
        if errors:
            extensions["errors"] = errors

        super().__init__(
            status_code=400,
            title="Validation Error",
            detail=detail,
            type_uri="https://example.com/problems/validation-error",
            instance=instance,
            extensions=extensions,
        )


class AuthenticationError(ProblemDetailsException):
    """Exception for authentication errors."""

    def __init__(
        self,
        detail: str = "Authentication credentials are required",
        instance: Optional[str] = None,
    ):
        super().__init__(
            status_code=401,
            title="Authentication Required",
            detail=detail,
            type_uri="https://example.com/problems/authentication-required",
            instance=instance,
            headers={"WWW-Authenticate": "Bearer"},
        )


class AuthorizationError(ProblemDetailsException):
    """Exception for authorization errors."""

    def __init__(
        self,
        detail: str = "Insufficient permissions to access this resource",
        required_permissions: Optional[list] = None,
        instance: Optional[str] = None,
    ):
        extensions = {}
        if required_permissions:
            extensions["required_permissions"] = required_permissions

        super().__init__(
            status_code=403,
            title="Access Forbidden",
            detail=detail,
            type_uri="https://example.com/problems/access-forbidden",
            instance=instance,
            extensions=extensions,
        )


class NotFoundError(ProblemDetailsException):
    """Exception for resource not found errors."""

    def __init__(
        self,
        resource_type: str = "resource",
        resource_id: Optional[str] = None,
        detail: Optional[str] = None,
        instance: Optional[str] = None,
    ):
        if not detail:
            detail = f"The requested {resource_type}"
            if resource_id:
                detail += f" with ID '{resource_id}'"
            detail += " could not be found"

        extensions = {
            "code": "NOT_FOUND",
            "resource_type": resource_type,
        }
        if resource_id:
            extensions["resource_id"] = resource_id

        super().__init__(
            status_code=404,
            title="Resource Not Found",
            detail=detail,
            type_uri="https://example.com/problems/resource-not-found",
            instance=instance,
            extensions=extensions,
        )


class ConflictError(ProblemDetailsException):
    """Exception for resource conflict errors."""

    def __init__(
        self,
        detail: str = "The request conflicts with the current state of the resource",
        conflicting_resource: Optional[Dict[str, Any]] = None,
        instance: Optional[str] = None,
    ):
        extensions: Dict[str, Any] = {"code": "CONFLICT"}
        if conflicting_resource:
            extensions["conflicting_resource"] = conflicting_resource

        super().__init__(
            status_code=409,
            title="Resource Conflict",
            detail=detail,
            type_uri="https://example.com/problems/resource-conflict",
            instance=instance,
            extensions=extensions,
        )


# Pricing exceptions

class AmountMismatchError(ProblemDetailsException):
    """The client-declared amount does not match the authoritative total."""

    def __init__(self, declared_amount: Any, expected_amount: Any, currency: str):
        super().__init__(
            status_code=422,
            title="Amount Mismatch",
            detail="Payment amount mismatch. Please refresh the page and try again.",
            type_uri="https://example.com/problems/amount-mismatch",
            extensions={
                "code": "AMOUNT_MISMATCH",
                "retryable": False,
                "declared_amount": str(declared_amount),
                "expected_amount": str(expected_amount),
                "currency": currency,
            },
        )


class InvalidRateClassError(ProblemDetailsException):
    """The requested rate class is not one of the known classes."""

    def __init__(self, rate_class: Optional[str], valid_classes: list[str]):
        super().__init__(
            status_code=422,
            title="Invalid Rate Class",
            detail=f"Rate class '{rate_class}' is not recognised",
            type_uri="https://example.com/problems/invalid-rate-class",
            extensions={
                "code": "INVALID_RATE_CLASS",
                "retryable": False,
                "valid_rate_classes": valid_classes,
            },
        )


# Gateway exceptions

class GatewayError(ProblemDetailsException):
    """
    Base class for payment gateway failures.

    The client only ever sees a generic retry message; ``internal_detail``
    (including any raw provider body) is meant for server-side logs.
    """

    code = "GATEWAY_ERROR"
    title = "Payment Gateway Error"
    http_status = 502
    retryable = True

    def __init__(
        self,
        provider: str,
        internal_detail: Optional[str] = None,
        provider_status: Optional[int] = None,
    ):
        self.provider = provider
        self.internal_detail = internal_detail
        self.provider_status = provider_status
        super().__init__(
            status_code=self.http_status,
            title=self.title,
            detail=PAYMENT_RETRY_MESSAGE,
            type_uri=f"https://example.com/problems/{self.code.lower().replace('_', '-')}",
            extensions={
                "code": self.code,
                "retryable": self.retryable,
                "provider": provider,
            },
        )

    def __str__(self) -> str:
        return f"{self.code} ({self.provider}): {self.internal_detail or PAYMENT_RETRY_MESSAGE}"


class GatewayAuthError(GatewayError):
    """Credential exchange with the gateway failed; needs operator attention."""

    code = "GATEWAY_AUTH_FAILED"
    title = "Payment Gateway Authentication Failed"
    retryable = False


class GatewaySubmissionError(GatewayError):
    """A per-request gateway call failed; the caller may retry with a fresh request."""

    code = "GATEWAY_SUBMISSION_FAILED"
    title = "Payment Submission Failed"


class GatewayUnavailableError(GatewaySubmissionError):
    """Network-level failure or 5xx from the gateway."""

    code = "GATEWAY_UNAVAILABLE"
    title = "Payment Gateway Unavailable"


class GatewayTimeoutError(GatewayUnavailableError):
    """The gateway did not answer in time; the true outcome is unknown."""

    code = "GATEWAY_TIMEOUT"
    title = "Payment Gateway Timeout"
    http_status = 504


class GatewayRejectedError(GatewaySubmissionError):
    """The gateway answered but refused the request (business error)."""

    code = "GATEWAY_REJECTED"
    title = "Payment Rejected"
    http_status = 402
    retryable = False


# Persistence and reconciliation exceptions

class PersistenceError(ProblemDetailsException):
    """The booking store could not record a change."""

    def __init__(self, operation: str, booking_id: Optional[str] = None):
        self.operation = operation
        self.booking_id = booking_id
        extensions: Dict[str, Any] = {
            "code": "PERSISTENCE_FAILED",
            "retryable": True,
        }
        if booking_id:
            extensions["booking_id"] = booking_id
        super().__init__(
            status_code=503,
            title="Booking Could Not Be Saved",
            detail=PAYMENT_RETRY_MESSAGE,
            type_uri="https://example.com/problems/persistence-failed",
            extensions=extensions,
        )


class ReconciliationCorrelationError(ProblemDetailsException):
    """A gateway notification could not be matched to exactly one pending booking."""

    def __init__(self, provider: str, correlation_key: Optional[str], candidates: int = 0):
        self.provider = provider
        self.correlation_key = correlation_key
        self.candidates = candidates
        super().__init__(
            status_code=409,
            title="Notification Not Correlated",
            detail=f"No unique pending booking for {provider} notification '{correlation_key}' ({candidates} candidates)",
            type_uri="https://example.com/problems/reconciliation-correlation-failed",
            extensions={
                "code": "CORRELATION_FAILED",
                "retryable": False,
                "provider": provider,
                "candidates": candidates,
            },
        )


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


async def problem_details_handler(request: Request, exc: ProblemDetailsException) -> JSONResponse:
    """
    Exception handler for Problem Details exceptions.

    Args:
        request: FastAPI request object
        exc: Problem Details exception

    Returns:
        JSONResponse: Problem Details formatted response
    """
    content = dict(exc.problem_details)
    content.setdefault("instance", request.url.path)
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        content["request_id"] = request_id
    return JSONResponse(
        status_code=exc.status_code,
        content=content,
        headers=exc.headers,
        media_type="application/problem+json",
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Render request validation failures as 422 Problem Details with violations."""
    violations = [
        {
            "path": ".".join(str(part) for part in error.get("loc", ())),
            "message": error.get("msg", "Invalid value"),
        }
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=422,
        content={
            "type": "https://example.com/problems/validation-error",
            "title": "Validation Error",
            "status": 422,
            "detail": "The request data failed validation",
            "instance": request.url.path,
            "code": "VALIDATION_ERROR",
            "retryable": False,
            "violations": violations,
        },
        media_type="application/problem+json",
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Generic exception handler that converts unhandled exceptions to Problem Details format.

    Args:
        request: FastAPI request object
        exc: Unhandled exception

    Returns:
        JSONResponse: Problem Details formatted response
    """
    error_id = str(uuid.uuid4())

    logger.error(
        "Unhandled exception",
        exc_info=exc,
        extra={"error_id": error_id, "path": request.url.path},
    )

    problem_details = {
        "type": "https://example.com/problems/internal-server-error",
        "title": "Internal Server Error",
        "status": 500,
        "detail": "An unexpected error occurred while processing the request",
        "instance": request.url.path,
        "error_id": error_id,
        "timestamp": _utc_timestamp(),
    }

    return JSONResponse(
        status_code=500,
        content=problem_details,
        media_type="application/problem+json",
    )
