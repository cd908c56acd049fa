"""
Custom Exceptions for Koffers

Hierarchical exception classes for proper error handling across layers.
"""

from typing import Optional, Dict, Any, Union


class KoffersError(Exception):
    """Base exception for all Koffers errors."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.original_error = original_error

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details
        }


class ValidationError(KoffersError):
    """Raised when input validation fails."""
    pass


class CorruptPreferenceDataError(ValidationError):
    """Raised when a stored subscription preference fails schema validation."""

    def __init__(
        self,
        message: str,
        errors: Optional[list] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if errors:
            details["errors"] = errors
        super().__init__(message, details, original_error)


class LimitExceededError(KoffersError):
    """Raised when an action would consume beyond a plan entitlement."""

    def __init__(
        self,
        resource: str,
        used: Union[int, float],
        limit: Union[int, float],
        message: Optional[str] = None,
    ):
        super().__init__(
            message or f"{resource} limit reached ({used}/{limit})",
            {"resource": resource, "used": used, "limit": limit},
        )
        self.resource = resource
        self.used = used
        self.limit = limit


class DatabaseError(KoffersError):
    """Raised when database operations fail."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if table:
            details["table"] = table
        super().__init__(message, details, original_error)


class NotFoundError(DatabaseError):
    """Raised when a requested resource is not found."""
    pass


class ConcurrencyConflictError(DatabaseError):
    """Raised when a version-checked write loses to a concurrent writer."""
    pass


class ConfigurationError(KoffersError):
    """Raised when configuration is missing or invalid."""

    def __init__(
        self,
        message: str,
        missing_keys: Optional[list] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if missing_keys:
            details["missing_keys"] = missing_keys
        super().__init__(message, details, original_error)
