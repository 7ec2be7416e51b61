"""Mapping of core error kinds to HTTP responses.

Denials are rendered with a generic message only, so callers cannot discover
which permission they are missing.
"""
import logging
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from ..errors import ConcurrencyError, ErrorKind, InfrastructureError, Result

logger = logging.getLogger("qms-core.api")

STATUS_FOR_ERROR: dict[ErrorKind, int] = {
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.VALIDATION: 422,
    ErrorKind.CONFLICT: 409,
    ErrorKind.INTERNAL: 500,
}

GENERIC_DETAIL: dict[ErrorKind, str] = {
    ErrorKind.UNAUTHORIZED: "Authentication required",
    ErrorKind.FORBIDDEN: "You are not allowed to perform this operation",
    ErrorKind.NOT_FOUND: "Not found",
    ErrorKind.VALIDATION: "Invalid request",
    ErrorKind.CONFLICT: "The resource was modified concurrently, retry the operation",
    ErrorKind.INTERNAL: "Internal server error",
}

# Kinds whose machine-readable detail is safe to return to the caller
_EXPOSE_DETAIL = frozenset({ErrorKind.VALIDATION, ErrorKind.CONFLICT})


def raise_for_result(result: Result) -> Any:
    """
    Return the value of a successful result, raise HTTPException otherwise.

    Raises:
        HTTPException: With the status mapped from the error kind
    """
    if result.ok:
        return result.value

    kind = result.error or ErrorKind.INTERNAL
    detail: Any = GENERIC_DETAIL[kind]
    if kind in _EXPOSE_DETAIL and result.detail:
        detail = {"message": GENERIC_DETAIL[kind], **{k: _jsonable(v) for k, v in result.detail.items()}}
    raise HTTPException(status_code=STATUS_FOR_ERROR[kind], detail=detail)


def _jsonable(value: Any) -> Any:
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


def install_error_handlers(app: FastAPI) -> None:
    """Render InfrastructureError as a 500 and ConcurrencyError as a 409, without leaking internals."""

    @app.exception_handler(InfrastructureError)
    async def infrastructure_error_handler(request: Request, exc: InfrastructureError):
        logger.error(f"Infrastructure failure on {request.method} {request.url.path}: {exc}")
        return JSONResponse(status_code=500, content={"detail": GENERIC_DETAIL[ErrorKind.INTERNAL]})

    @app.exception_handler(ConcurrencyError)
    async def concurrency_error_handler(request: Request, exc: ConcurrencyError):
        logger.warning(f"Concurrent modification on {request.method} {request.url.path}: {exc}")
        return JSONResponse(status_code=409, content={"detail": GENERIC_DETAIL[ErrorKind.CONFLICT]})
