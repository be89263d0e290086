"""Error taxonomy shared by every operation.

Each error knows the HTTP status it maps to; ``main.py`` turns any
``AppError`` into a ``{"success": false, "code", "message"}`` body.
"""

from typing import Any, Dict, Optional


class AppError(Exception):
    status_code = 500
    code = "error"
    default_message = "Something went wrong"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "code": self.code, "message": self.message}


class Unauthorized(AppError):
    status_code = 401
    code = "unauthorized"
    default_message = "Please log in"


class Forbidden(AppError):
    status_code = 403
    code = "forbidden"
    default_message = "Not authorized to access this resource"


class NotFound(AppError):
    status_code = 404
    code = "not_found"
    default_message = "Resource not found"


class Conflict(AppError):
    status_code = 409
    code = "conflict"
    default_message = "Resource already exists"


class DuplicateReview(Conflict):
    code = "duplicate_review"
    default_message = "You have already reviewed this product"


class InvalidOrExpiredToken(AppError):
    status_code = 400
    code = "invalid_or_expired_token"
    default_message = "Invalid or expired reset token"


class InvalidInput(AppError):
    status_code = 400
    code = "invalid_input"
    default_message = "Invalid input"


class UpstreamFailure(AppError):
    status_code = 502
    code = "upstream_failure"
    default_message = "An upstream service failed"


class InvalidToken(Exception):
    """Raised by the token codec; never surfaced to clients directly."""
