import logging
from typing import Any, Optional

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.platform.config import settings
from app.platform.response import api_response


class AppError(Exception):
    """Base class for every error the service raises on purpose."""

    code = "INTERNAL_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self, include_details: bool = False) -> dict:
        payload = {"code": self.code, "message": self.message}
        if include_details and self.details is not None:
            payload["details"] = self.details
        return payload


class ValidationError(AppError):
    code = "VALIDATION_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(AppError):
    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND


class SecurityError(AppError):
    """URL rejected by the SSRF gate. Never retried."""

    code = "SECURITY_ERROR"
    status_code = status.HTTP_403_FORBIDDEN


class ProviderError(AppError):
    """
    Failure of an external provider (content fetcher or analysis engine).

    retryable: timeouts, 5xx and rate limiting
    rate_limited: the provider asked us to slow down
    """

    code = "PROVIDER_ERROR"
    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(
        self,
        message: str,
        details: Optional[Any] = None,
        *,
        provider: Optional[str] = None,
        retryable: bool = True,
        rate_limited: bool = False,
    ):
        super().__init__(message, details)
        self.provider = provider
        self.retryable = retryable
        self.rate_limited = rate_limited


class FetchError(ProviderError):
    code = "SCRAPING_ERROR"


class AnalysisEngineError(ProviderError):
    code = "ANALYSIS_ERROR"


class ProviderConfigError(ProviderError):
    """Caller/configuration problem (missing credential, rejected request)."""

    code = "PROVIDER_CONFIG_ERROR"

    def __init__(self, message: str, details: Optional[Any] = None, *, provider: Optional[str] = None):
        super().__init__(message, details, provider=provider, retryable=False)


class MalformedResponseError(AnalysisEngineError):
    """Provider answered, but the body failed schema validation."""

    code = "MALFORMED_RESPONSE"

    def __init__(self, message: str, details: Optional[Any] = None, *, provider: Optional[str] = None):
        super().__init__(message, details, provider=provider, retryable=False)


class DatabaseError(AppError):
    """Store read/write failed; the job's true state may be ambiguous."""

    code = "DATABASE_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


def add_exception_handlers(app):
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logging.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
        else:
            logging.info(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
        return api_response(
            message=exc.message,
            status_code=exc.status_code,
            data={"error": exc.to_dict(include_details=settings.EXPOSE_ERROR_DETAILS)},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return api_response(message=str(exc.detail) or "Error", status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return api_response(
            message="Validation failed",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            data={"errors": exc.errors()},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logging.exception(f"Unhandled exception: {exc}")
        return api_response(
            message="Internal server error",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
