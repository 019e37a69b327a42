"""
Custom exceptions and global exception handlers.
"""
from typing import Optional

import httpx
from fastapi import Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import logging

logger = logging.getLogger(__name__)


class AppException(Exception):
    """Base application exception."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail: str = None,
    ):
        self.message = message
        self.status_code = status_code
        self.detail = detail or message
        super().__init__(self.message)


class InputValidationError(AppException):
    """Input rejected before any work is done."""

    def __init__(self, message: str = "Invalid input"):
        super().__init__(message, status.HTTP_400_BAD_REQUEST)


class EmptyInputError(InputValidationError):
    """Empty text or empty list passed where content is required."""

    def __init__(self, message: str = "Input must not be empty"):
        super().__init__(message)


class DimensionMismatchError(InputValidationError):
    """Two vectors (or a vector and the configured dimension) differ in length."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Vector dimension mismatch: expected {expected}, got {actual}")


class NotFoundError(AppException):
    """Resource not found."""

    def __init__(self, message: str = "Resource not found"):
        super().__init__(message, status.HTTP_404_NOT_FOUND)


class ForbiddenError(AppException):
    """Access denied."""

    def __init__(self, message: str = "Access denied"):
        super().__init__(message, status.HTTP_403_FORBIDDEN)


class ProviderError(AppException):
    """
    Failure talking to an embedding or chat-completion provider.

    ``retryable`` marks transient failures (timeouts, transport errors,
    HTTP 5xx and 429) that the retry loop may attempt again.
    """

    def __init__(
        self,
        message: str = "Model provider request failed",
        retryable: bool = False,
        upstream_status: Optional[int] = None,
    ):
        self.retryable = retryable
        self.upstream_status = upstream_status
        super().__init__(message, status.HTTP_503_SERVICE_UNAVAILABLE)


class EmbeddingProviderError(ProviderError):
    """Embedding generation error."""


class LLMProviderError(ProviderError):
    """LLM server error."""


class RetrievalError(AppException):
    """Vector search or profile lookup failed. Absorbed by the context builder."""

    def __init__(self, message: str = "Context retrieval failed"):
        super().__init__(message, status.HTTP_500_INTERNAL_SERVER_ERROR)


class PersistenceError(AppException):
    """Writing a chat exchange or chunk failed."""

    def __init__(self, message: str = "Failed to persist data"):
        super().__init__(message, status.HTTP_500_INTERNAL_SERVER_ERROR)


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or 500 <= status_code < 600


def provider_error_from_exception(
    exc: Exception,
    error_cls: type = ProviderError,
    provider: str = "provider",
) -> ProviderError:
    """
    Classify an httpx failure into a ProviderError.

    Timeouts, transport errors and 5xx/429 responses are retryable; every
    other HTTP status is terminal. The ``{"error": {...}}`` body returned by
    OpenAI-compatible servers is folded into the message.
    """
    if isinstance(exc, ProviderError):
        return exc

    if isinstance(exc, httpx.TimeoutException):
        return error_cls(f"{provider} request timed out: {exc}", retryable=True)

    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        message = f"{provider} request failed (status {response.status_code})"
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            error = body["error"]
            message += f" - {error.get('message', '')}"
            if error.get("type"):
                message += f" [type: {error['type']}]"
            if error.get("code"):
                message += f" [code: {error['code']}]"
        elif response.text:
            message += f" - {response.text[:200]}"
        return error_cls(
            message,
            retryable=is_retryable_status(response.status_code),
            upstream_status=response.status_code,
        )

    if isinstance(exc, httpx.TransportError):
        return error_cls(f"{provider} connection failed: {exc}", retryable=True)

    return error_cls(f"{provider} request failed: {exc}", retryable=False)


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handle custom application exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "message": exc.message},
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle validation errors with user-friendly messages."""
    errors = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"])
        msg = error["msg"]
        errors.append(f"{field}: {msg}")

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "detail": "Request validation failed",
            "errors": errors,
        },
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger.exception(f"Unexpected error: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "detail": "Internal server error. Please try again later.",
        },
    )
