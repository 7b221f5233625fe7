"""
API error taxonomy.

Services raise these; main.py renders every one of them as
``{"message": ...}`` with the matching status code.
"""


class ApiError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def payload(self) -> dict:
        return {"message": self.message}


class Unauthorized(ApiError):
    status_code = 401
    default_message = "Not authorized, no user"


class NotFound(ApiError):
    status_code = 404
    default_message = "Not found"


class Forbidden(ApiError):
    status_code = 403
    default_message = "Not authorized"


class InvalidArgument(ApiError):
    status_code = 400
    default_message = "Invalid request"


class InvalidState(ApiError):
    status_code = 400
    default_message = "Operation not allowed"


class VerificationFailure(ApiError):
    """Payment signature mismatch. A normal unsuccessful result, not a crash."""

    status_code = 400
    default_message = "Payment verification failed"

    def payload(self) -> dict:
        return {"success": False, "message": self.message}


class Unavailable(ApiError):
    status_code = 503
    default_message = "Service unavailable"


class Internal(ApiError):
    status_code = 500
