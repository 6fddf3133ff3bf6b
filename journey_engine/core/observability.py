import json
import logging
import time
import traceback
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Iterator
from uuid import uuid4

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from journey_engine.core.config import settings
from journey_engine.core.errors import JourneyValidationError

# Request id for API calls, tick id for worker ticks. Every log line carries it.
correlation_id_ctx: ContextVar[str] = ContextVar("correlation_id", default="-")
logger = logging.getLogger("journey_engine")

_STATUS_CODE_MAP = {
    400: "bad_request",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    429: "rate_limited",
}


def setup_observability() -> None:
    if logger.handlers:
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    logger.setLevel(settings.log_level)
    logger.propagate = False


def get_correlation_id() -> str:
    return correlation_id_ctx.get()


@contextmanager
def correlation_scope(correlation_id: str) -> Iterator[str]:
    token = correlation_id_ctx.set(correlation_id)
    try:
        yield correlation_id
    finally:
        correlation_id_ctx.reset(token)


def log_event(event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    if not logger.isEnabledFor(level):
        return
    payload = {"event": event, "correlation_id": get_correlation_id(), **fields}
    logger.log(level, json.dumps(payload, default=str))


def _request_id(request: Request) -> str:
    return (
        getattr(request.state, "request_id", None)
        or request.headers.get("x-request-id")
        or get_correlation_id()
    )


def _error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: list[dict] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        headers=headers,
        content={
            "error": {
                "code": code,
                "message": message,
                "request_id": _request_id(request),
                "path": request.url.path,
                "details": details,
            }
        },
    )


async def request_logging_middleware(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or str(uuid4())
    request.state.request_id = request_id
    started = time.perf_counter()
    status_code = 500
    with correlation_scope(request_id):
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            log_event(
                "request",
                method=request.method,
                path=request.url.path,
                status_code=status_code,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )

    response.headers["X-Request-ID"] = request_id
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    log_event(
        "unhandled_exception",
        level=logging.ERROR,
        path=request.url.path,
        error=str(exc),
        traceback=traceback.format_exc(limit=10),
    )
    return _error_response(request, status_code=500, code="internal_error", message="Internal server error")


async def http_exception_handler(request: Request, exc: HTTPException):
    details: list[dict] | None = None
    if isinstance(exc.detail, dict):
        # manual interventions refuse with {"message", "reason"}
        message = str(exc.detail.get("message") or "HTTP error")
        details = [{"field": "reason", "message": str(exc.detail.get("reason") or ""), "type": "reason_code"}]
    elif isinstance(exc.detail, str):
        message = exc.detail
    else:
        message = "HTTP error"
        details = exc.detail
    return _error_response(
        request,
        status_code=exc.status_code,
        code=_STATUS_CODE_MAP.get(exc.status_code, "http_error"),
        message=message,
        details=details,
        headers=exc.headers,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    details = []
    for err in exc.errors():
        location = [str(part) for part in err.get("loc", []) if part != "body"]
        details.append(
            {
                "field": ".".join(location) if location else "body",
                "message": err.get("msg", "Invalid value"),
                "type": err.get("type"),
            }
        )
    return _error_response(
        request,
        status_code=422,
        code="validation_error",
        message="Validation failed",
        details=details,
    )


async def journey_validation_exception_handler(request: Request, exc: JourneyValidationError):
    log_event("journey_publish_rejected", path=request.url.path, issues=len(exc.issues))
    return _error_response(
        request,
        status_code=422,
        code="validation_error",
        message="Journey definition is invalid",
        details=exc.issues,
    )
