"""
Relay exceptions.
"""
from typing import Any, Dict, Optional


class RelayError(Exception):
    """
    Base exception for relay errors.

    All relay exceptions inherit from this class so callers can
    handle every failure raised by the relay in one place.
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for structured logging."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(RelayError):
    """Raised when the settings document is missing, unreadable or invalid."""

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        errors: Optional[list] = None,
    ):
        self.path = path
        self.errors = errors or []
        super().__init__(
            message=message,
            code="CONFIGURATION_ERROR",
            details={"path": path, "errors": self.errors},
        )


class PublishError(RelayError):
    """Raised when the transport fails to send or acknowledge a message."""

    def __init__(self, message: str, rc: Optional[int] = None):
        self.rc = rc
        super().__init__(
            message=message,
            code="PUBLISH_ERROR",
            details={"rc": rc},
        )
