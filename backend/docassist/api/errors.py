"""Error responses and request ids."""

import logging
import uuid
from collections.abc import Awaitable, Callable

from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from backend.docassist.errors import (
    DocAssistError,
    EmptyContentError,
    ExternalServiceError,
    ValidationError,
)

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "x-request-id"
MAX_REQUEST_ID_CHARS = 128

_STATUS_BY_ERROR: dict[type[DocAssistError], int] = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    EmptyContentError: 422,
    ExternalServiceError: status.HTTP_502_BAD_GATEWAY,
}


def request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "") or ""


def error_response(request: Request, status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": message, "request_id": request_id(request)},
    )


async def request_id_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Echo an inbound x-request-id, or assign a new one."""
    inbound = (request.headers.get(REQUEST_ID_HEADER) or "").strip()
    rid = inbound if inbound and len(inbound) <= MAX_REQUEST_ID_CHARS else str(uuid.uuid4())
    request.state.request_id = rid

    response = await call_next(request)
    response.headers[REQUEST_ID_HEADER] = rid
    return response


async def handle_engine_error(request: Request, exc: Exception) -> JSONResponse:
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, code in _STATUS_BY_ERROR.items():
        if isinstance(exc, error_type):
            status_code = code
            break

    if status_code >= 500:
        logger.error(f"[api] {request.url.path} failed: {exc}")
    return error_response(request, status_code, str(exc))


async def handle_request_validation(request: Request, exc: Exception) -> JSONResponse:
    errors = exc.errors() if isinstance(exc, RequestValidationError) else []
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ())[1:]) or "body"
        message = f"Invalid '{field}': {first.get('msg', 'invalid value')}"
    else:
        message = "Invalid JSON body"
    return error_response(request, status.HTTP_400_BAD_REQUEST, message)


async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"[api] {request.url.path} failed", exc_info=exc)
    return error_response(request, status.HTTP_500_INTERNAL_SERVER_ERROR, "Server error")


def install_error_handling(app: FastAPI) -> None:
    """Register the request-id middleware and JSON error handlers."""
    app.middleware("http")(request_id_middleware)
    app.add_exception_handler(DocAssistError, handle_engine_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation)
    app.add_exception_handler(Exception, handle_unexpected)
