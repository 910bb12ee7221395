from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from agentdeploy.api.schemas import Envelope, ErrorBody
from agentdeploy.logging import get_correlation_id, get_logger
from agentdeploy.service.container_runtime import ContainerRuntimeError
from agentdeploy.service.errors import ServiceError
from agentdeploy.service.fs import PathTraversalError
from agentdeploy.storage.errors import ConstraintViolation, StoreError

logger = get_logger(__name__)

# Stable error codes mapped to HTTP status codes
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    429: "rate_limited",
    500: "server_error",
    503: "service_unavailable",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: Optional[dict] = None,
) -> JSONResponse:
    """Render the error envelope; ``request_id`` follows the request's correlation id."""
    error_body = ErrorBody(
        code=code or _error_code_for_status(status_code), message=message, details=details
    )
    correlation_id = get_correlation_id()
    envelope = (
        Envelope(status="error", error=error_body, request_id=correlation_id)
        if correlation_id
        else Envelope(status="error", error=error_body)
    )
    return JSONResponse(status_code=status_code, content=envelope.model_dump(), headers=headers)


def _log_failure(request: Request, event: str, status_code: int, **fields: Any) -> None:
    log_fn = logger.error if status_code >= 500 else logger.warning
    log_fn(event, path=request.url.path, method=request.method, status_code=status_code, **fields)


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure as an error envelope.

    Storage and container runtime outages surface as 503 so a client can
    retry; pairing and provisioning failures never reach here because they
    are reported on the session record and its event stream instead.
    """

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        _log_failure(
            request,
            "service_error",
            exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(
            exc.status_code, exc.message, exc.detail or None, code=exc.error_code, headers=exc.headers
        )

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        _log_failure(request, "constraint_violation", 409, message=exc.message, detail=exc.detail)
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(StoreError)
    async def handle_store_error(request: Request, exc: StoreError):
        _log_failure(request, "store_error", 503, operation=exc.operation, error=exc.message)
        return _error_response(
            503,
            "storage unavailable",
            {"code": exc.code, "operation": exc.operation},
            code="service_unavailable",
        )

    @app.exception_handler(ContainerRuntimeError)
    async def handle_container_runtime_error(request: Request, exc: ContainerRuntimeError):
        _log_failure(request, "container_runtime_error", 503, error=str(exc))
        return _error_response(503, "container runtime unavailable", code="service_unavailable")

    @app.exception_handler(PathTraversalError)
    async def handle_path_traversal_error(request: Request, exc: PathTraversalError):
        _log_failure(
            request,
            "path_traversal_attempt",
            400,
            error=str(exc),
            client_ip=request.client.host if request.client else None,
        )
        return _error_response(400, str(exc), code="validation_error")

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
            for err in exc.errors()
        ]
        _log_failure(request, "request_validation_failed", 400, errors=len(errors))
        return _error_response(400, "invalid request", errors, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        # Raised by the framework itself, e.g. 404 for an unknown route
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        details = exc.detail if isinstance(exc.detail, (dict, list)) else None
        if exc.status_code >= 400:
            _log_failure(request, "http_error", exc.status_code, message=message)
        return _error_response(exc.status_code, message, details, headers=exc.headers)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code="server_error")
