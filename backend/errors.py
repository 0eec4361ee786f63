# errors.py — Error taxonomy for the gateway, key-management and identity surfaces
# Every class maps to one HTTP status; main.py renders them as
# {"status": ..., "message": ..., "request_id": ...}


class GatewayError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"status": self.status_code, "message": self.message}


class ValidationFailure(GatewayError):
    status_code = 400
    default_message = "Invalid request"


class AuthenticationFailure(GatewayError):
    """Missing, malformed, unknown, revoked or expired credential.

    Callers must not be able to tell these apart, so the message stays generic.
    """
    status_code = 401
    default_message = "Unauthorized"


class AuthorizationFailure(GatewayError):
    status_code = 403
    default_message = "Forbidden"


class NotFound(GatewayError):
    """Entity missing or outside the caller's tenant; both look the same."""
    status_code = 404
    default_message = "Not found"


class MethodNotAllowed(GatewayError):
    status_code = 405
    default_message = "Method not allowed"


class Conflict(GatewayError):
    status_code = 409
    default_message = "Conflict"


class RateLimitExceeded(GatewayError):
    status_code = 429
    default_message = "Rate limit exceeded"


class StorageFailure(GatewayError):
    status_code = 500
    default_message = "Storage error"


class PolicyViolation(StorageFailure):
    """Raised by the row-level policy engine; surfaces like any storage error."""

    def __init__(self, table: str, message=None):
        self.table = table
        super().__init__(message or f'new row violates row-level security policy for table "{table}"')
