from __future__ import annotations

import logging

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.services.exceptions import (
    DeviceCommandFailed,
    DeviceObjectNotFound,
    DeviceUnreachable,
    ProvisioningError,
    ResourceNotFound,
    ValidationError,
)

logger = logging.getLogger(__name__)

# Most specific first.
_PROVISIONING_ERRORS: tuple[tuple[type[ProvisioningError], int, str], ...] = (
    (ValidationError, 400, "validation_error"),
    (ResourceNotFound, 404, "not_found"),
    (DeviceObjectNotFound, 502, "device_object_not_found"),
    (DeviceCommandFailed, 502, "device_command_failed"),
    (DeviceUnreachable, 504, "device_unreachable"),
)


def _error_payload(code: str, message: str, details: object, request_id: str | None):
    return {"code": code, "message": message, "details": details, "request_id": request_id}


def _request_id(request: Request) -> str:
    rid = getattr(request.state, "request_id", None)
    return str(rid) if rid else "unknown"


def _classify(exc: ProvisioningError) -> tuple[int, str]:
    for exc_type, status_code, code in _PROVISIONING_ERRORS:
        if isinstance(exc, exc_type):
            return status_code, code
    return 500, "provisioning_error"


def register_error_handlers(app) -> None:
    @app.exception_handler(ProvisioningError)
    async def provisioning_error_handler(request: Request, exc: ProvisioningError):
        status_code, code = _classify(exc)
        details = {"host": exc.host} if getattr(exc, "host", None) else None
        if status_code >= 500:
            logger.warning(
                "Device error on %s %s: %s", request.method, request.url.path, exc
            )
        return JSONResponse(
            status_code=status_code,
            content=_error_payload(code, str(exc), details, _request_id(request)),
        )

    async def _handle_http_exception(request: Request, status_code: int, detail: object):
        code = f"http_{status_code}"
        message = "Request failed"
        details = None
        if isinstance(detail, dict):
            code = detail.get("code", code)
            message = detail.get("message", message)
            details = detail.get("details")
        elif isinstance(detail, str):
            message = detail
        else:
            details = detail
        return JSONResponse(
            status_code=status_code,
            content=_error_payload(code, message, details, _request_id(request)),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return await _handle_http_exception(request, exc.status_code, exc.detail)

    @app.exception_handler(StarletteHTTPException)
    async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        detail = exc.detail if getattr(exc, "detail", None) is not None else "Request failed"
        return await _handle_http_exception(request, exc.status_code, detail)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = []
        for error in exc.errors():
            error_copy = dict(error)
            error_copy.pop("ctx", None)
            if "input" in error_copy and not isinstance(
                error_copy["input"], (str, int, float, bool, type(None), dict, list)
            ):
                error_copy["input"] = str(error_copy["input"])
            errors.append(error_copy)
        return JSONResponse(
            status_code=422,
            content=_error_payload(
                "validation_error", "Validation error", errors, _request_id(request)
            ),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception(
            "Unhandled exception on %s %s",
            request.method,
            request.url.path,
            extra={"request_id": _request_id(request)},
        )
        return JSONResponse(
            status_code=500,
            content=_error_payload(
                "internal_error", "Internal server error", None, _request_id(request)
            ),
        )
