"""
Error taxonomy for the update server.

Every error carries the HTTP status it maps to and a message that is safe
to show to the caller. Anything that is not an ``UpdateServerError`` is
treated as internal and never echoed back.
"""

from typing import Optional


class UpdateServerError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(UpdateServerError):
    status_code = 400
    default_message = "Invalid request"


class InvalidVersionFormat(ValidationError):
    default_message = "Invalid version format"


class Unauthorized(UpdateServerError):
    status_code = 401
    default_message = "Invalid or missing credentials"


class Forbidden(UpdateServerError):
    status_code = 403
    default_message = "Insufficient permissions"


class NotFound(UpdateServerError):
    status_code = 404
    default_message = "Not found"


class Conflict(UpdateServerError):
    status_code = 409
    default_message = "Resource already exists"


class RateLimited(UpdateServerError):
    status_code = 429
    default_message = "Too many requests"

    def __init__(self, retry_after: int, message: Optional[str] = None):
        super().__init__(message)
        self.retry_after = retry_after


class UpstreamUnavailable(UpdateServerError):
    """A call to GitHub or the asset host failed; the caller may retry."""

    status_code = 503
    default_message = "Upstream service unavailable"


class ServiceNotConfigured(UpdateServerError):
    status_code = 503
    default_message = "Service not configured properly."
