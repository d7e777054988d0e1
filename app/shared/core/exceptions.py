from typing import Optional, Dict, Any


class AdminTrustException(Exception):
    """Base exception for all admin trust boundary errors."""

    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}


class StoreUnavailableError(AdminTrustException):
    """Raised when the shared TTL store or the approval database cannot be reached."""

    def __init__(self, message: str, store: str = "unknown", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message,
            code="store_unavailable",
            status_code=503,
            details={"store": store, **(details or {})},
        )
        self.store = store


class InvalidRequestError(AdminTrustException):
    """Raised for malformed identifiers or payloads, before any store is touched."""

    def __init__(self, message: str, code: str = "validation_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=422, details=details)


class AuthError(AdminTrustException):
    """Raised when authentication fails."""

    def __init__(self, message: str, code: str = "auth_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=401, details=details)


class ForbiddenError(AdminTrustException):
    """Raised when an authenticated caller is not allowed to perform an action."""

    def __init__(self, message: str, code: str = "forbidden", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=403, details=details)


class ConfigurationError(AdminTrustException):
    """Raised when application configuration is invalid or missing."""

    def __init__(self, message: str, code: str = "config_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=500, details=details)


class ResourceNotFoundError(AdminTrustException):
    """Raised when a session or approval does not exist or is not visible to the caller."""

    def __init__(self, message: str, code: str = "not_found", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=404, details=details)
