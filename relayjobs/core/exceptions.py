import json
import traceback
import uuid
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from relayjobs.config.logging import get_logger

logger = get_logger(__name__)


class RelayJobsException(Exception):
    """Base exception for Relay Jobs."""

    default_status = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_code = "internal"

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: str | None = None,
        title: str | None = None,
        detail: str | None = None,
    ):
        self.message = message
        self.status_code = status_code or self.default_status
        self.code = code or self.default_code
        self.title = title or message
        self.detail = detail
        super().__init__(self.message)

    @property
    def body(self) -> dict[str, Any]:
        return create_error_response(
            status_code=self.status_code,
            message=self.message,
            code=self.code,
            title=self.title,
            detail=self.detail,
        )


class ValidationError(RelayJobsException):
    """Raised when a submitted payload is rejected."""

    default_status = status.HTTP_400_BAD_REQUEST
    default_code = "invalid"


class UnauthorizedError(RelayJobsException):
    """Raised when authentication fails."""

    default_status = status.HTTP_401_UNAUTHORIZED
    default_code = "unauthorized"

    def __init__(self, message: str = "The token provided is not valid.", **kwargs):
        super().__init__(message, **kwargs)


class ForbiddenError(RelayJobsException):
    """Raised when access is forbidden."""

    default_status = status.HTTP_403_FORBIDDEN
    default_code = "forbidden"


class NotFoundError(RelayJobsException):
    """Raised when a resource is not found."""

    default_status = status.HTTP_404_NOT_FOUND
    default_code = "not found"


class RecordNotFoundError(NotFoundError):
    """Raised when no job record exists for a key."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"No record found for key {key}")


class StoreError(RelayJobsException):
    """Raised when the record store keeps failing after retries."""

    default_code = "store"


class BrokerError(RelayJobsException):
    """Raised when the broker rejects a publish."""

    default_code = "broker"


class TopicNotFoundError(BrokerError):
    """Raised when publishing to a topic that does not exist."""

    def __init__(self, topic: str):
        self.topic = topic
        super().__init__(f"Topic {topic} does not exist")


class EnvelopeError(RelayJobsException):
    """Raised when a broker message cannot be decoded."""

    default_status = status.HTTP_400_BAD_REQUEST
    default_code = "invalid message"


class ControllerMismatchError(RelayJobsException):
    """Raised when a message addressed to another controller is received."""

    default_status = status.HTTP_400_BAD_REQUEST
    default_code = "wrong controller"


def serialize_error(exc: BaseException) -> str:
    """Serialize an exception into the JSON stored on job records."""
    return json.dumps(
        {
            "name": type(exc).__name__,
            "message": str(exc),
            "stack": "".join(
                traceback.format_exception(type(exc), exc, exc.__traceback__)
            ),
        }
    )


def create_error_response(
    status_code: int,
    message: str,
    code: str | None = None,
    title: str | None = None,
    detail: str | None = None,
) -> dict[str, Any]:
    """Create standardized error response envelope."""
    return {
        "errors": [
            {
                "message": message,
                "status": status_code,
                "code": code,
                "title": title or message,
                "detail": detail,
            }
        ]
    }


async def relay_jobs_exception_handler(
    request: Request, exc: RelayJobsException
) -> JSONResponse:
    """Handle Relay Jobs specific exceptions."""
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))

    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "Application exception",
        exception=exc.__class__.__name__,
        message=exc.message,
        status_code=exc.status_code,
        request_id=request_id,
    )

    return JSONResponse(status_code=exc.status_code, content=exc.body)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTP exceptions."""
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))

    logger.warning(
        "HTTP exception",
        status_code=exc.status_code,
        detail=exc.detail,
        request_id=request_id,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(
            status_code=exc.status_code,
            message=str(exc.detail),
            code="not found" if exc.status_code == 404 else "http",
        ),
        headers=getattr(exc, "headers", None),
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))

    logger.error(
        "Unhandled exception",
        exception=exc.__class__.__name__,
        message=str(exc),
        request_id=request_id,
        exc_info=exc,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=create_error_response(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            message="Internal server error",
            code="internal",
        ),
    )


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Middleware to add request context and correlation IDs."""

    async def dispatch(self, request: Request, call_next):
        # Generate correlation ID for request tracking
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        # Add to log context
        from relayjobs.config.logging import add_request_context

        add_request_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        response = await call_next(request)

        # Add request ID to response headers
        response.headers["X-Request-ID"] = request_id

        return response
