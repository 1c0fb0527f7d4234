"""Application error taxonomy.

Every error carries the HTTP status it maps to and a public message that is
safe to return to clients. Underlying causes are logged server-side only.
"""

from typing import Optional


class AppError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class AuthenticationError(AppError):
    status_code = 401
    default_message = "Unauthorized"


class AuthorizationError(AppError):
    status_code = 403
    default_message = "Forbidden"


class ValidationError(AppError):
    status_code = 400
    default_message = "Invalid payload"


class NotFoundError(AppError):
    status_code = 404
    default_message = "Not found"


class ConflictError(AppError):
    status_code = 409
    default_message = "Conflict"


class ConfigurationError(AppError):
    # message names the missing setting
    status_code = 500
    default_message = "Server is not configured"


class ConnectorError(AppError):
    status_code = 500
    default_message = "External data source request failed"


class ConnectorReadError(ConnectorError):
    default_message = "Failed to read from external data source"


class PersistenceError(AppError):
    status_code = 500
    default_message = "Database operation failed"
