from __future__ import annotations

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from authcore.api.schemas import ErrorBody
from authcore.config import Settings, get_settings
from authcore.logging import get_correlation_id, get_logger
from authcore.service.errors import CooldownActiveError, ServiceError
from authcore.service.tokens import TokenPair
from authcore.storage.errors import ConstraintViolation, StorageUnavailable

logger = get_logger(__name__)

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"
ACCESS_HEADER = "X-Access-Token"
REFRESH_HEADER = "X-Refresh-Token"

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    404: "not_found",
    405: "validation_error",
    409: "conflict",
    422: "validation_error",
    429: "cooldown_active",
    503: "upstream_unavailable",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "internal")


def clear_auth_cookies(response, *, secure: bool) -> None:
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(
            name, path="/", secure=secure, httponly=True, samesite="strict"
        )


def set_session_cookies(
    response,
    tokens: TokenPair,
    settings: Settings,
    *,
    echo_headers: bool = False,
) -> None:
    response.set_cookie(
        ACCESS_COOKIE,
        tokens.access_token,
        max_age=settings.access_token_ttl_minutes * 60,
        httponly=True,
        secure=settings.secure_cookies,
        samesite="strict",
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        max_age=settings.refresh_token_ttl_days * 86400,
        httponly=True,
        secure=settings.secure_cookies,
        samesite="strict",
        path="/",
    )
    if echo_headers or settings.expose_token_headers:
        response.headers[ACCESS_HEADER] = tokens.access_token
        response.headers[REFRESH_HEADER] = tokens.refresh_token


def remember_rotation(request: Request, tokens: TokenPair, *, echo_headers: bool) -> None:
    """Keep a freshly rotated pair on the request for error responses."""
    request.state.rotated_tokens = tokens
    request.state.rotated_via_headers = echo_headers


def _reissue_rotated(request: Request, response) -> None:
    # After rotation the presented refresh token matches no session
    tokens = getattr(request.state, "rotated_tokens", None)
    if tokens is None:
        return
    set_session_cookies(
        response,
        tokens,
        get_settings(),
        echo_headers=getattr(request.state, "rotated_via_headers", False),
    )


def _secure_cookies(request: Request) -> bool:
    settings = getattr(request.app.state, "settings", None)
    return bool(settings.secure_cookies) if settings is not None else False


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    *,
    headers: Optional[dict[str, str]] = None,
) -> JSONResponse:
    body = ErrorBody(
        message=message,
        code=code or _error_code_for_status(status_code),
        details=details or None,
    )
    if get_correlation_id():
        body.request_id = get_correlation_id()
    return JSONResponse(
        status_code=status_code, content=body.model_dump(), headers=headers
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Map domain, storage and framework errors onto the JSON error body."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        headers = None
        if isinstance(exc, CooldownActiveError):
            headers = {"Retry-After": str(exc.retry_after)}
        response = _error_response(
            exc.status_code,
            exc.message,
            exc.detail,
            code=exc.error_code,
            headers=headers,
        )
        if exc.clear_credentials:
            clear_auth_cookies(response, secure=_secure_cookies(request))
        else:
            _reissue_rotated(request, response)
        return response

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        response = _error_response(
            400, "User already exists", exc.detail, code="conflict"
        )
        _reissue_rotated(request, response)
        return response

    @app.exception_handler(StorageUnavailable)
    async def handle_storage_unavailable(request: Request, exc: StorageUnavailable):
        logger.error(
            "storage_unavailable",
            path=request.url.path,
            method=request.method,
            backend=exc.backend,
            error=exc.message,
        )
        response = _error_response(
            503, "Service temporarily unavailable", code="upstream_unavailable"
        )
        _reissue_rotated(request, response)
        return response

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        # Only location, message and type: the raw input may hold a password
        errors = [
            {
                "loc": [str(part) for part in err.get("loc", ())],
                "msg": err.get("msg", ""),
                "type": err.get("type", ""),
            }
            for err in exc.errors()
        ]
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=[".".join(e["loc"]) for e in errors],
        )
        first = errors[0]["msg"] if errors else "Invalid request"
        response = _error_response(400, first, errors, code="validation_error")
        _reissue_rotated(request, response)
        return response

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        response = _error_response(
            exc.status_code, message, headers=getattr(exc, "headers", None)
        )
        _reissue_rotated(request, response)
        return response

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        response = _error_response(500, "Internal server error", code="internal")
        _reissue_rotated(request, response)
        return response
