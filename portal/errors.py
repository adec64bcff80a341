"""Error taxonomy shared by the auth layer, the storage backends and the API."""
from __future__ import annotations


class PortalError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(PortalError):
    status_code = 400
    default_message = "Invalid request data"


class Unauthorized(PortalError):
    status_code = 401
    default_message = "Unauthorized"


class InvalidCredentials(Unauthorized):
    # Same message for unknown email and wrong password.
    default_message = "Invalid credentials"


class Forbidden(PortalError):
    status_code = 403
    default_message = "Admin access required"


class NotFound(PortalError):
    status_code = 404
    default_message = "Not found"


class InternalError(PortalError):
    pass
