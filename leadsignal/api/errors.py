"""Translate pipeline error codes into HTTP responses."""

from __future__ import annotations

from fastapi import HTTPException, status

from leadsignal.services.errors import PipelineError

_STATUS_BY_PREFIX = {
    "402": status.HTTP_402_PAYMENT_REQUIRED,
    "404": status.HTTP_404_NOT_FOUND,
    "409": status.HTTP_409_CONFLICT,
    "422": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "429": status.HTTP_429_TOO_MANY_REQUESTS,
    "502": status.HTTP_502_BAD_GATEWAY,
    "503": status.HTTP_503_SERVICE_UNAVAILABLE,
}


def map_error_code(code: str) -> int:
    return _STATUS_BY_PREFIX.get((code or "")[:3], status.HTTP_500_INTERNAL_SERVER_ERROR)


def to_http_exception(exc: PipelineError) -> HTTPException:
    return HTTPException(
        status_code=map_error_code(exc.code),
        detail={"error": str(exc), "code": exc.code},
    )
