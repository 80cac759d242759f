# portal/errors.py
"""
Error taxonomy shared by the processors and the HTTP layer.

Each error carries the HTTP status and error code it maps to, so handlers can
raise at the point of detection and app.py renders a single response shape:

    {"error": "<message>", "error_code": "E_...", ...extra}
"""

from typing import Any, Dict, Optional

E_UNAUTHENTICATED = "E_UNAUTHENTICATED"
E_FORBIDDEN = "E_FORBIDDEN"
E_NOT_FOUND = "E_NOT_FOUND"
E_VALIDATION = "E_VALIDATION"
E_RATE_LIMIT = "E_RATE_LIMIT"
E_UPSTREAM = "E_UPSTREAM"
E_CONFIG = "E_CONFIG"
E_INTERNAL = "E_INTERNAL"


class PortalError(Exception):
    status_code = 500
    error_code = E_INTERNAL

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def extra_body(self) -> Dict[str, Any]:
        """Additional top-level fields for the client response."""
        return {}

    def to_body(self) -> Dict[str, Any]:
        body = {"error": self.message, "error_code": self.error_code}
        body.update(self.extra_body())
        return body


class Unauthenticated(PortalError):
    status_code = 401
    error_code = E_UNAUTHENTICATED


class Forbidden(PortalError):
    status_code = 403
    error_code = E_FORBIDDEN


class NotFound(PortalError):
    status_code = 404
    error_code = E_NOT_FOUND


class ValidationFailed(PortalError):
    status_code = 400
    error_code = E_VALIDATION


class RateLimited(PortalError):
    status_code = 429
    error_code = E_RATE_LIMIT

    def __init__(self, message: str, blocked_until=None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.blocked_until = blocked_until

    def extra_body(self) -> Dict[str, Any]:
        if self.blocked_until is None:
            return {"blockedUntil": None}
        return {"blockedUntil": self.blocked_until.isoformat() + "Z"}


class UpstreamFailure(PortalError):
    status_code = 500
    error_code = E_UPSTREAM


class ConfigurationError(PortalError):
    status_code = 500
    error_code = E_CONFIG


class InternalError(PortalError):
    status_code = 500
    error_code = E_INTERNAL
