# portal_backend/errors.py
from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .log import get_logger

log = get_logger("errors")


class PortalError(Exception):
    """Base error; `status_code` is what the HTTP layer answers with."""
    status_code = 500
    public_message = "Request failed"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message


class InvalidInput(PortalError):
    status_code = 400
    public_message = "Invalid request"


class SignatureInvalid(PortalError):
    status_code = 400
    public_message = "Webhook signature verification failed"


class NotPaid(PortalError):
    status_code = 400
    public_message = "Payment not completed"


class Unauthorized(PortalError):
    status_code = 401
    public_message = "Not signed in"


class UpstreamUnavailable(PortalError):
    status_code = 500
    public_message = "Upstream service unavailable"


async def _portal_error_handler(request: Request, exc: PortalError) -> JSONResponse:
    if exc.status_code >= 500:
        log.error("request_failed", path=request.url.path, error=exc.message)
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    log.info("request_invalid", path=request.url.path, errors=len(exc.errors()))
    return JSONResponse({"error": InvalidInput.public_message}, status_code=400)


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(PortalError, _portal_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
