"""
Error taxonomy for the ICI API.

Every error a client can see is rendered as ``{"error": <message>}`` with the
matching status code: ``ApiError`` subclasses, request validation failures
and routing errors such as 404 and 405.
"""

from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException


class ApiError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    message = "Internal error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.message
        super().__init__(self.message)


class IndexNotReady(ApiError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    message = "Index not ready"


class Unauthenticated(ApiError):
    status_code = status.HTTP_401_UNAUTHORIZED
    message = "Missing API key"


class Unauthorized(ApiError):
    status_code = status.HTTP_403_FORBIDDEN
    message = "Invalid API key"


class ValidationFailed(ApiError):
    status_code = status.HTTP_400_BAD_REQUEST
    message = "Invalid request"


class SignatureVerificationFailure(ApiError):
    status_code = status.HTTP_400_BAD_REQUEST
    message = "Webhook Error: invalid signature"


class ConfigurationError(ApiError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    message = "Service is not configured"


class UpstreamFetchError(Exception):
    """An upstream call failed outright (transport error, timeout or non-2xx).

    Raised by the fetchers and only ever handled by the refresh scheduler.
    """

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"{source}: {reason}")


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = "Invalid request body"
        if errors:
            first = errors[0]
            location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
            message = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": message})

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )
