from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from .errors import ApiError, ErrorCode, HTTP_STATUS
from .rate_limit import RateLimitStatus
from .schemas import ErrorResponse

logger = logging.getLogger("tokengate.api")


def generate_request_id() -> str:
    # 9 random bytes -> 12 url-safe characters
    return f"req_{secrets.token_urlsafe(9)}"


def _meta(request_id: Optional[str] = None) -> Dict[str, str]:
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "request_id": request_id or generate_request_id(),
    }


def _headers(
    rate_limit: Optional[RateLimitStatus],
    extra: Optional[Dict[str, str]] = None,
) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    if rate_limit is not None:
        headers.update(rate_limit.headers())
    if extra:
        headers.update(extra)
    return headers


def api_success(
    data: Any,
    status_code: int = 200,
    rate_limit: Optional[RateLimitStatus] = None,
    request_id: Optional[str] = None,
) -> JSONResponse:
    body = {"data": jsonable_encoder(data), "meta": _meta(request_id)}
    return JSONResponse(body, status_code=status_code, headers=_headers(rate_limit))


def api_error(
    message: str,
    code: ErrorCode,
    details: Optional[Dict[str, Any]] = None,
    rate_limit: Optional[RateLimitStatus] = None,
    headers: Optional[Dict[str, str]] = None,
    request_id: Optional[str] = None,
) -> JSONResponse:
    body: Dict[str, Any] = {"error": message, "code": code.value}
    if details:
        body["details"] = details
    body["meta"] = _meta(request_id)
    return JSONResponse(
        body,
        status_code=HTTP_STATUS.get(code, 500),
        headers=_headers(rate_limit, headers),
    )


def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    """Render ApiError raised anywhere in a route or dependency."""
    if exc.status_code >= 500:
        logger.error("%s %s -> %s: %s", request.method, request.url.path, exc.code.value, exc.message)
    return api_error(exc.message, exc.code, details=exc.details, headers=exc.headers)


def log_api_request(method: str, path: str, token_id: str, owner_id: str) -> None:
    logger.info("%s %s | token=%s... | owner=%s...", method, path, token_id[:8], owner_id[:8])


def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Render request-body validation failures as VALIDATION_ERROR (400)."""
    errors = [
        {"field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"), "message": err.get("msg", "")}
        for err in exc.errors()
    ]
    return api_error("Invalid request body", ErrorCode.VALIDATION_ERROR, details={"errors": errors})


def error_responses(*status_codes: int) -> Dict[int, Dict[str, Any]]:
    """OpenAPI ``responses=`` entries documenting the error envelope."""
    return {code: {"model": ErrorResponse} for code in status_codes}
