"""
Error taxonomy shared by the services and the HTTP layer.

Every failure leaves the API as ``{"success": false, "error": <code>}``
with the status code carried by the exception class.
"""

from __future__ import annotations

from typing import Optional

from fastapi.responses import JSONResponse


class ApiError(Exception):
    code = "internal"
    status_code = 500

    def __init__(self, message: Optional[str] = None, *, status_code: Optional[int] = None):
        super().__init__(message or self.code)
        if status_code is not None:
            self.status_code = status_code


class InternalError(ApiError):
    code = "internal"
    status_code = 500


class InvalidInputError(ApiError):
    code = "invalid_input"
    status_code = 400


class InvalidEmailError(InvalidInputError):
    code = "invalid_email"


class NotWhitelistedError(ApiError):
    code = "not_whitelisted"
    status_code = 403


class InvalidTokenError(ApiError):
    code = "invalid_token"
    status_code = 401


class DeviceMismatchError(ApiError):
    code = "device_mismatch"
    status_code = 403


class UnauthorizedError(ApiError):
    code = "unauthorized"
    status_code = 401


class NotFoundError(ApiError):
    code = "not_found"
    status_code = 404


class ConflictError(ApiError):
    code = "conflict"
    status_code = 409


class RateLimitedError(ApiError):
    code = "rate_limited"
    status_code = 429


class UpstreamUnavailableError(ApiError):
    code = "upstream_unavailable"
    status_code = 502


def error_response(code: str, status_code: int, **extra) -> JSONResponse:
    content = {"success": False, **extra, "error": code}
    return JSONResponse(status_code=status_code, content=content)
