"""
api/responses.py -- Map AuthResult failures onto HTTP responses.

Every failed AuthResult becomes the shared ErrorResponse envelope:
    {"error": {"code": "<error kind>", "message": "<user-safe text>"}}

RATE_LIMITED carries a Retry-After header. Responses on credential-bearing
endpoints are marked Cache-Control: no-store [M5].
"""

from __future__ import annotations

from fastapi.responses import JSONResponse

from api.models import ErrorDetail, ErrorResponse
from auth.errors import AuthResult, ErrorKind

STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.INVALID_CREDENTIALS: 401,
    ErrorKind.INVALID_TWO_FACTOR_CODE: 401,
    ErrorKind.TWO_FACTOR_REQUIRED: 401,
    ErrorKind.SESSION_INVALID: 401,
    ErrorKind.ACCOUNT_INACTIVE: 403,
    ErrorKind.EMAIL_NOT_VERIFIED: 403,
    ErrorKind.PERMISSION_DENIED: 403,
    ErrorKind.INVALID_OR_EXPIRED_TOKEN: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.ALREADY_EXISTS: 409,
    ErrorKind.INVALID_STATE: 409,
    ErrorKind.WEAK_CREDENTIAL: 422,
    ErrorKind.INVALID_INPUT: 422,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.INTEGRITY_VIOLATION: 409,
    ErrorKind.STORAGE_UNAVAILABLE: 503,
}


def no_store(response: JSONResponse) -> JSONResponse:
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return response


def error_response(result: AuthResult) -> JSONResponse:
    """Build the JSON error response for a failed AuthResult."""
    kind = result.error or ErrorKind.INVALID_STATE
    response = JSONResponse(
        status_code=STATUS_BY_KIND.get(kind, 400),
        content=ErrorResponse(error=ErrorDetail(code=kind.value, message=result.message)).model_dump(),
    )
    if kind is ErrorKind.RATE_LIMITED and result.retry_after is not None:
        response.headers["Retry-After"] = str(result.retry_after)
    return no_store(response)


def client_ip(request) -> str | None:
    return request.client.host if request.client else None


def user_agent(request) -> str | None:
    return request.headers.get("User-Agent")
