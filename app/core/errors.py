from __future__ import annotations

import logging
from http import HTTPStatus
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.core.exceptions import LendingError

logger = logging.getLogger(__name__)

STATUS_CODES = {
    400: "bad_request",
    401: "unauthenticated",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    412: "precondition_failed",
    422: "validation_error",
    423: "document_locked",
    429: "rate_limited",
}

# Parts of a pydantic error location that only name the request section.
_REQUEST_SECTIONS = frozenset({"body", "query", "path", "header"})


def _phrase(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return "Request failed"


def _as_details(raw: Any) -> dict:
    """Coerce whatever an exception carries into the envelope's details mapping."""
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, list):
        return {"errors": raw}
    return {"detail": raw if isinstance(raw, str) else str(raw)}


def error_response(status_code: int, code: str, message: str, details: Any = None) -> JSONResponse:
    envelope = {"code": code, "message": message, "data": None, "details": _as_details(details)}
    return JSONResponse(status_code=status_code, content=jsonable_encoder(envelope))


def _unpack_http_detail(status_code: int, detail: Any) -> tuple[str, str, dict]:
    code = STATUS_CODES.get(status_code, "http_error")
    if isinstance(detail, str):
        return code, detail, {"detail": detail}
    if not isinstance(detail, dict):
        return code, _phrase(status_code), _as_details(detail)

    code = detail.get("code") or code
    message = detail.get("message") or detail.get("detail") or _phrase(status_code)
    if "details" in detail:
        return code, message, _as_details(detail["details"])
    extra = {key: value for key, value in detail.items() if key not in ("code", "message", "detail")}
    return code, message, extra


async def lending_exception_handler(request: Request, exc: LendingError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            "Lending operation failed code=%s path=%s details=%s",
            exc.code,
            request.url.path,
            exc.details,
        )
    return error_response(exc.status_code, exc.code, exc.message, exc.details)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message, details = _unpack_http_detail(exc.status_code, exc.detail)
    return error_response(exc.status_code, code, message, details)


def _first_error_message(errors: list[dict]) -> str:
    if not errors:
        return "Validation failed"
    first = errors[0] or {}
    reason = str(first.get("msg") or "Validation failed")
    field = ".".join(str(part) for part in first.get("loc") or () if part not in _REQUEST_SECTIONS)
    return f"{field}: {reason}" if field else reason


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    return error_response(422, "validation_error", _first_error_message(errors), {"errors": errors})


async def rate_limit_exception_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    response = error_response(429, "rate_limited", _phrase(429), getattr(exc, "detail", None))
    headers = getattr(exc, "headers", None)
    if isinstance(headers, dict):
        response.headers.update(headers)
    return response


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return error_response(500, "internal_error", "Internal server error")


def register_exception_handlers(app) -> None:
    app.add_exception_handler(LendingError, lending_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
